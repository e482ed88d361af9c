"""
Finality Worker - SQLAlchemy ORM Models
Tables read and written by the storage events finality job
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class UserModel(Base):
    """Accounts that request transfers, with rolling unknown-report counters."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    unknown_reports_started: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    unknown_reports_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_reports_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("unknown_reports_bytes >= 0", name="users_unknown_bytes_non_negative"),
        CheckConstraint(
            "unknown_reports_bytes <= total_reports_bytes",
            name="users_unknown_bytes_within_total",
        ),
    )


class ContactModel(Base):
    """Farmer nodes and their reputation."""

    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # node id
    reputation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_points_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class StorageEventModel(Base):
    """Exchange reports awaiting (or past) finality."""

    __tablename__ = "storage_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    user: Mapped[Optional[str]] = mapped_column(
        String(255), ForeignKey("users.id", ondelete="SET NULL")
    )
    farmer: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("contacts.id"))
    client: Mapped[Optional[str]] = mapped_column(String(64))
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # {"exchange_result_code": 1000, "exchange_start": ..., "exchange_end": ...}
    client_report: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    farmer_report: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)

    storage: Mapped[Optional[int]] = mapped_column(BigInteger)
    download_bandwidth: Mapped[Optional[int]] = mapped_column(BigInteger)

    __table_args__ = (
        CheckConstraint(
            "storage IS NULL OR download_bandwidth IS NULL",
            name="storage_events_single_byte_count",
        ),
        Index(
            "idx_storage_events_unprocessed",
            "timestamp",
            postgresql_where="processed = false AND \"user\" IS NOT NULL",
        ),
    )


class CronJobModel(Base):
    """Distributed job locks with lease and checkpoint payload."""

    __tablename__ = "cron_jobs"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    locked_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    raw_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
