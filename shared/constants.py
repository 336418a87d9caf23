"""
Log Pulse - Shared Constants
============================

Centralized constants used across the log engine.
Tunables that operators may want to change live in the service Settings;
the values here are fixed by the log format or by observed behavior.
"""

from enum import Enum


class LogLevel(str, Enum):
    """Severity levels recognised in application log headers."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    NOTICE = "NOTICE"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"
    ALERT = "ALERT"
    EMERGENCY = "EMERGENCY"


class LevelBucket(str, Enum):
    """Coarse level groups used when filtering session entries."""
    ERRORS = "errors"
    WARNINGS = "warnings"
    INFO = "info"
    DEBUG = "debug"


class ErrorStatus(str, Enum):
    """Lifecycle status of an error group."""
    OPEN = "open"
    RESOLVED = "resolved"


class SessionStatus(str, Enum):
    """Lifecycle status of a bulk import session."""
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"


# Levels that are indexed into error groups
ERROR_LEVELS = frozenset({
    LogLevel.ERROR.value,
    LogLevel.CRITICAL.value,
    LogLevel.EMERGENCY.value,
    LogLevel.ALERT.value,
})

# Raw levels belonging to each bucket
LEVEL_BUCKETS: dict[LevelBucket, frozenset[str]] = {
    LevelBucket.ERRORS: ERROR_LEVELS,
    LevelBucket.WARNINGS: frozenset({LogLevel.WARNING.value}),
    LevelBucket.INFO: frozenset({LogLevel.INFO.value}),
    LevelBucket.DEBUG: frozenset({LogLevel.DEBUG.value}),
}


class Limits:
    """Size limits applied while building entries."""
    TITLE_MAX_CHARS = 200           # Group title truncation
    FINGERPRINT_MESSAGE_CHARS = 100 # Message prefix used when no frames exist
    FALLBACK_ENVIRONMENT = "unknown"


class Timing:
    """Timing constants for spike detection."""
    SPIKE_WINDOW_SECONDS = 3600     # Recent window: now-1h..now, previous: now-2h..now-1h
