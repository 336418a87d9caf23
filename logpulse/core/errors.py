"""
Log Pulse - Error Taxonomy
==========================

Exceptions raised by the engine. Malformed log text never raises: the
parser degrades to fallback entries instead.
"""


class LogPulseError(Exception):
    """Base class for engine errors."""
    pass


class FileAccessError(LogPulseError):
    """A log file is missing or cannot be read."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot access {path}: {reason}")
        self.path = path
        self.reason = reason


class StoreFailure(LogPulseError):
    """A write or transaction against the backing store failed."""

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Store operation '{operation}' failed: {reason}")
        self.operation = operation
        self.reason = reason


class NotFoundError(LogPulseError):
    """A queried error group or session does not exist."""

    def __init__(self, kind: str, identifier: object):
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class ImportFailed(LogPulseError):
    """
    A bulk import stopped before the end of the file.

    Batches committed before the failure stay queryable under session_id.
    """

    def __init__(self, session_id: int, entries_written: int, reason: str):
        super().__init__(
            f"Import into session {session_id} failed after "
            f"{entries_written} entries: {reason}"
        )
        self.session_id = session_id
        self.entries_written = entries_written
        self.reason = reason
