from finality.jobs.storage_events import StorageEventsFinalityJob

__all__ = ["StorageEventsFinalityJob"]
