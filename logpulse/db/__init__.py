"""
Log Pulse - Persistence Package
"""

from logpulse.db.database import Database
from logpulse.db.models import (
    Base,
    ErrorGroupRecord,
    ErrorOccurrenceRecord,
    LogSessionRecord,
    SessionEntryRecord,
)

__all__ = [
    "Database",
    "Base",
    "ErrorGroupRecord",
    "ErrorOccurrenceRecord",
    "LogSessionRecord",
    "SessionEntryRecord",
]
