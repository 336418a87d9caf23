"""
Log Pulse - API Schemas
=======================

Pydantic models shared by the parser, the stores and the HTTP surface.
"""

from datetime import datetime
from typing import Optional, Any
from pydantic import BaseModel, Field
from enum import Enum

from shared.constants import ErrorStatus, SessionStatus


# =============================================================================
# PARSED ENTRIES
# =============================================================================

class StackFrame(BaseModel):
    """One frame of a stack trace, in the order it appeared."""

    file: str = Field(..., description="Source file as written in the log")
    line: int = Field(..., description="Line number within the file")
    call: str = Field(..., description="Call description (function/method)")


class PartialEntry(BaseModel):
    """
    An entry whose header has been read but whose continuation lines may
    still be arriving. Owned by whoever drives the parser.
    """

    timestamp: datetime
    environment: str
    level: str
    message: str
    raw_lines: list[str] = Field(default_factory=list)


class Entry(BaseModel):
    """One logical log record, possibly spanning many physical lines."""

    timestamp: datetime = Field(
        ...,
        description="When the record was emitted (parse time if unparseable)"
    )
    environment: str = Field(
        ...,
        description="Environment tag from the header"
    )
    level: str = Field(
        ...,
        description="Upper-cased level as written in the header"
    )
    message: str = Field(
        ...,
        description="First-line message text"
    )
    exception_type: Optional[str] = Field(
        None,
        description="Exception class extracted from the body"
    )
    stack_frames: list[StackFrame] = Field(
        default_factory=list,
        description="Stack frames in original order"
    )
    raw_text: str = Field(
        ...,
        description="All physical lines of the entry"
    )
    fingerprint: str = Field(
        ...,
        description="Grouping key shared by recurrences of the same error"
    )
    title: str = Field(
        ...,
        description="Short display text"
    )

    class Config:
        frozen = True


class ParseResult(BaseModel):
    """Outcome of feeding one line to the incremental parser."""

    is_new: bool
    entry: PartialEntry


# =============================================================================
# ERROR GROUPS
# =============================================================================

class ErrorGroup(BaseModel):
    """Aggregate of all error entries sharing a fingerprint for one source."""

    id: int
    source_id: str
    fingerprint: str
    title: str
    message: str
    sample_stack_trace: list[StackFrame] = Field(default_factory=list)
    count: int = Field(..., ge=1)
    first_seen: datetime
    last_seen: datetime
    status: ErrorStatus
    tags: list[str] = Field(default_factory=list)


class UpsertResult(BaseModel):
    """Result of indexing one error entry."""

    is_new: bool
    group_id: int
    source_id: str
    fingerprint: str


class IndexStats(BaseModel):
    """Totals for a bulk indexing run."""

    total: int = 0
    new: int = 0
    updated: int = 0


class ErrorGroupStats(BaseModel):
    """Per-source error totals."""

    total_groups: int
    total_occurrences: int
    open_groups: int


class Spike(BaseModel):
    """A fingerprint whose recent hour is well above the hour before."""

    fingerprint: str
    group_id: int
    title: str
    recent_count: int
    previous_count: int
    multiplier: float


# =============================================================================
# IMPORT SESSIONS
# =============================================================================

class Session(BaseModel):
    """One bulk import run over one file."""

    id: int
    filename: str
    file_path: str
    file_size_bytes: int
    total_entries: int
    status: SessionStatus
    created_at: datetime
    completed_at: Optional[datetime] = None


class EntryContext(BaseModel):
    """Derived fields stored alongside each session entry."""

    exception_type: Optional[str] = None
    stack_frames: list[StackFrame] = Field(default_factory=list)
    fingerprint: str
    title: str


class SessionEntry(BaseModel):
    """A parsed entry stored verbatim within a session."""

    id: int
    session_id: int
    timestamp: datetime
    environment: str
    level: str
    message: str
    context: EntryContext
    raw_content: str
    line_number: int


class EntryPage(BaseModel):
    """One page of session entries."""

    entries: list[SessionEntry]
    page: int
    limit: int
    total: int
    total_pages: int


class SessionStats(BaseModel):
    """Per-level counts over a session."""

    total: int = 0
    errors: int = 0
    warnings: int = 0
    info: int = 0
    debug: int = 0


# =============================================================================
# TAIL EVENTS
# =============================================================================

class TailEventType(str, Enum):
    """Kinds of notification a tail delivers to its subscribers."""
    ENTRY = "entry"
    ERROR_INDEXED = "error_indexed"
    ERROR = "error"


class TailEvent(BaseModel):
    """A notification from a running tail."""

    type: TailEventType
    source_id: str
    emitted_at: datetime = Field(default_factory=datetime.now)
    entry: Optional[Entry] = None
    result: Optional[UpsertResult] = None
    error: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class TailStatus(BaseModel):
    """State of one running tail."""

    source_id: str
    path: str
    watching: bool
    offset: int
    has_partial_entry: bool


# =============================================================================
# REQUEST BODIES
# =============================================================================

class StartTailRequest(BaseModel):
    """Request to start tailing a file for a source."""

    path: str = Field(..., min_length=1, description="Log file to tail")
    backfill: bool = Field(
        default=True,
        description="Emit entries from the end of the existing file first"
    )


class FilePathRequest(BaseModel):
    """Request naming a log file on the server's filesystem."""

    path: str = Field(..., min_length=1)


class StatusUpdateRequest(BaseModel):
    """Request to change an error group's status."""

    status: ErrorStatus


class TagRequest(BaseModel):
    """Request to tag an error group."""

    tag: str = Field(..., min_length=1, max_length=64)
