"""Persistence for the job mirror."""

from bounty_sync.storage.sqlite import SQLiteJobStore

__all__ = ["SQLiteJobStore"]
