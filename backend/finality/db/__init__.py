# Database module
from finality.db.session import create_engine_from_settings, create_session_maker
from finality.db.models import Base, StorageEventModel, UserModel, ContactModel, CronJobModel

__all__ = [
    "create_engine_from_settings",
    "create_session_maker",
    "Base",
    "StorageEventModel",
    "UserModel",
    "ContactModel",
    "CronJobModel",
]
