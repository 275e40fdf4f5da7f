"""Store implementations."""

from .base import CloseOutcome, EmailLogRecord, Repository
from .sqlite_store import SQLiteStore

__all__ = ["CloseOutcome", "EmailLogRecord", "Repository", "SQLiteStore"]
