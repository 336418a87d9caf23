"""
Log Pulse - ORM Models
======================

SQLAlchemy models backing the error and session stores.

Timestamps are naive datetimes in the time zone the log was written in;
log headers carry no zone, so no conversion is attempted.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shared.constants import ErrorStatus, SessionStatus


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


class ErrorGroupRecord(Base):
    """One row per (source, fingerprint)."""

    __tablename__ = "error_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    sample_stack_trace: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ErrorStatus.OPEN.value)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    occurrences: Mapped[list["ErrorOccurrenceRecord"]] = relationship(
        back_populates="group", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("source_id", "fingerprint", name="uq_error_groups_source_fingerprint"),
        Index("idx_error_groups_source_last_seen", "source_id", "last_seen"),
    )

    def __repr__(self):
        return f"<ErrorGroupRecord(id={self.id}, source='{self.source_id}', count={self.count})>"


class ErrorOccurrenceRecord(Base):
    """One row per indexed error entry; feeds spike detection."""

    __tablename__ = "error_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("error_groups.id", ondelete="CASCADE"), nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    group: Mapped[ErrorGroupRecord] = relationship(back_populates="occurrences")

    __table_args__ = (
        Index("idx_error_occurrences_group_time", "group_id", "occurred_at"),
    )


class LogSessionRecord(Base):
    """One bulk import run."""

    __tablename__ = "log_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_entries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SessionStatus.IMPORTING.value)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class SessionEntryRecord(Base):
    """A parsed entry within a session. Append-only; id is insertion order."""

    __tablename__ = "session_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("log_sessions.id", ondelete="CASCADE"), nullable=False
    )

    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    environment: Mapped[str] = mapped_column(String(64), nullable=False)
    level: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    raw_content: Mapped[str] = mapped_column(Text, nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_session_entries_session_level", "session_id", "level"),
    )
