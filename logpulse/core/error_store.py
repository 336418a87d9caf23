"""
Log Pulse - Error Store
=======================

Deduplicates error entries per source into aggregate groups.
One group exists per (source, fingerprint); each indexed entry bumps its
count and is also recorded as an occurrence for spike detection.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from threading import Lock
from typing import Iterable, Optional

from sqlalchemy import case, func, select

from shared.constants import ERROR_LEVELS, ErrorStatus, Timing
from shared.utils.logging import get_logger
from logpulse.api.schemas import (
    Entry,
    ErrorGroup,
    ErrorGroupStats,
    IndexStats,
    Spike,
    StackFrame,
    UpsertResult,
)
from logpulse.core.errors import NotFoundError
from logpulse.db import Database, ErrorGroupRecord, ErrorOccurrenceRecord

logger = get_logger(__name__)


def is_error_level(level: str) -> bool:
    """Check whether a level is indexed into error groups."""
    return level.upper() in ERROR_LEVELS


class ErrorStore:
    """
    Thread-safe, persistent error group storage.

    Writes for the same source are serialized by a per-source lock so that
    concurrent upserts of one fingerprint never lose an increment and
    last_seen only moves in finalization order.
    """

    def __init__(self, database: Database):
        self.db = database
        self._locks: defaultdict[str, Lock] = defaultdict(Lock)
        self._locks_guard = Lock()

    def _source_lock(self, source_id: str) -> Lock:
        with self._locks_guard:
            return self._locks[source_id]

    @staticmethod
    def _to_model(record: ErrorGroupRecord) -> ErrorGroup:
        return ErrorGroup(
            id=record.id,
            source_id=record.source_id,
            fingerprint=record.fingerprint,
            title=record.title,
            message=record.message,
            sample_stack_trace=[StackFrame(**frame) for frame in record.sample_stack_trace or []],
            count=record.count,
            first_seen=record.first_seen,
            last_seen=record.last_seen,
            status=ErrorStatus(record.status),
            tags=list(record.tags or []),
        )

    def _upsert_in(self, session, source_id: str, entry: Entry) -> UpsertResult:
        existing = session.scalars(
            select(ErrorGroupRecord).where(
                ErrorGroupRecord.source_id == source_id,
                ErrorGroupRecord.fingerprint == entry.fingerprint,
            )
        ).one_or_none()

        frames = [frame.model_dump() for frame in entry.stack_frames]

        if existing:
            existing.count += 1
            existing.last_seen = max(existing.last_seen, entry.timestamp)
            existing.first_seen = min(existing.first_seen, entry.timestamp)
            existing.sample_stack_trace = frames
            record = existing
            is_new = False
        else:
            record = ErrorGroupRecord(
                source_id=source_id,
                fingerprint=entry.fingerprint,
                title=entry.title,
                message=entry.message,
                sample_stack_trace=frames,
                count=1,
                first_seen=entry.timestamp,
                last_seen=entry.timestamp,
                status=ErrorStatus.OPEN.value,
                tags=[],
            )
            session.add(record)
            session.flush()
            is_new = True

        session.add(ErrorOccurrenceRecord(group_id=record.id, occurred_at=entry.timestamp))

        return UpsertResult(
            is_new=is_new,
            group_id=record.id,
            source_id=source_id,
            fingerprint=entry.fingerprint,
        )

    def upsert(self, source_id: str, entry: Entry) -> UpsertResult:
        """
        Record one occurrence of an error entry.

        Args:
            source_id: Log source the entry came from
            entry: Finalized entry (callers filter by level)

        Returns:
            Whether a new group was created, and its id

        Raises:
            StoreFailure: If the transaction fails; nothing is written
        """
        with self._source_lock(source_id):
            with self.db.transaction("error_upsert") as session:
                result = self._upsert_in(session, source_id, entry)

        logger.debug(
            f"{'Created' if result.is_new else 'Updated'} error group {result.group_id}",
            extra={"group_id": result.group_id, "fingerprint": result.fingerprint}
        )
        return result

    def index_entries(self, source_id: str, entries: Iterable[Entry]) -> IndexStats:
        """
        Index many entries in one transaction, skipping non-error levels.

        Returns:
            Counts of error entries seen, groups created and groups updated
        """
        stats = IndexStats()
        with self._source_lock(source_id):
            with self.db.transaction("error_index_batch") as session:
                for entry in entries:
                    if not is_error_level(entry.level):
                        continue
                    result = self._upsert_in(session, source_id, entry)
                    stats.total += 1
                    if result.is_new:
                        stats.new += 1
                    else:
                        stats.updated += 1
        return stats

    def list_groups(
        self,
        source_id: str,
        status: Optional[ErrorStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> list[ErrorGroup]:
        """List a source's groups, most recently seen first."""
        query = select(ErrorGroupRecord).where(ErrorGroupRecord.source_id == source_id)
        if status:
            query = query.where(ErrorGroupRecord.status == ErrorStatus(status).value)
        query = query.order_by(
            ErrorGroupRecord.last_seen.desc(), ErrorGroupRecord.id.desc()
        ).limit(limit).offset(offset)

        with self.db.session() as session:
            return [self._to_model(record) for record in session.scalars(query)]

    def get_group(self, group_id: int) -> ErrorGroup:
        """
        Get a group by id.

        Raises:
            NotFoundError: If no such group exists
        """
        with self.db.session() as session:
            record = session.get(ErrorGroupRecord, group_id)
            if record is None:
                raise NotFoundError("Error group", group_id)
            return self._to_model(record)

    def set_status(self, group_id: int, status: ErrorStatus) -> ErrorGroup:
        """Change a group's status (open/resolved)."""
        status = ErrorStatus(status)
        with self.db.transaction("error_set_status") as session:
            record = session.get(ErrorGroupRecord, group_id)
            if record is None:
                raise NotFoundError("Error group", group_id)
            record.status = status.value
            group = self._to_model(record)

        logger.info(
            f"Error group {group_id} marked {status.value}",
            extra={"group_id": group_id, "status": status.value}
        )
        return group

    def add_tag(self, group_id: int, tag: str) -> ErrorGroup:
        """Add a tag to a group; adding an existing tag is a no-op."""
        with self.db.transaction("error_add_tag") as session:
            record = session.get(ErrorGroupRecord, group_id)
            if record is None:
                raise NotFoundError("Error group", group_id)
            tags = list(record.tags or [])
            if tag not in tags:
                # Reassign so the JSON column is marked dirty
                record.tags = tags + [tag]
            return self._to_model(record)

    def stats(self, source_id: str) -> ErrorGroupStats:
        """Totals for a source."""
        query = select(
            func.count(ErrorGroupRecord.id),
            func.coalesce(func.sum(ErrorGroupRecord.count), 0),
            func.coalesce(func.sum(case(
                (ErrorGroupRecord.status == ErrorStatus.OPEN.value, 1), else_=0
            )), 0),
        ).where(ErrorGroupRecord.source_id == source_id)

        with self.db.session() as session:
            total_groups, total_occurrences, open_groups = session.execute(query).one()

        return ErrorGroupStats(
            total_groups=total_groups,
            total_occurrences=int(total_occurrences),
            open_groups=open_groups,
        )

    def _count_occurrences(self, session, source_id: str, start: datetime, end: datetime) -> dict[int, int]:
        query = (
            select(ErrorOccurrenceRecord.group_id, func.count(ErrorOccurrenceRecord.id))
            .join(ErrorGroupRecord, ErrorGroupRecord.id == ErrorOccurrenceRecord.group_id)
            .where(
                ErrorGroupRecord.source_id == source_id,
                ErrorOccurrenceRecord.occurred_at > start,
                ErrorOccurrenceRecord.occurred_at <= end,
            )
            .group_by(ErrorOccurrenceRecord.group_id)
        )
        return {group_id: count for group_id, count in session.execute(query)}

    def detect_spikes(
        self,
        source_id: str,
        threshold_multiplier: float = 3.0,
        now: Optional[datetime] = None
    ) -> list[Spike]:
        """
        Find fingerprints whose last hour is well above the hour before.

        A fingerprint with no occurrences in the previous hour is new, not a
        spike, and is never reported.

        Args:
            source_id: Log source to examine
            threshold_multiplier: Required recent/previous ratio (exclusive)
            now: End of the recent window (defaults to the current time)

        Returns:
            Spikes ordered by multiplier, largest first
        """
        now = now or datetime.now()
        window = timedelta(seconds=Timing.SPIKE_WINDOW_SECONDS)
        one_window_ago = now - window
        two_windows_ago = now - 2 * window

        with self.db.session() as session:
            recent = self._count_occurrences(session, source_id, one_window_ago, now)
            previous = self._count_occurrences(session, source_id, two_windows_ago, one_window_ago)

            spikes = []
            for group_id, recent_count in recent.items():
                previous_count = previous.get(group_id, 0)
                if previous_count > 0 and recent_count > previous_count * threshold_multiplier:
                    record = session.get(ErrorGroupRecord, group_id)
                    spikes.append(Spike(
                        fingerprint=record.fingerprint,
                        group_id=group_id,
                        title=record.title,
                        recent_count=recent_count,
                        previous_count=previous_count,
                        multiplier=recent_count / previous_count,
                    ))

        spikes.sort(key=lambda s: s.multiplier, reverse=True)
        if spikes:
            logger.info(
                f"Detected {len(spikes)} error spikes",
                extra={"spike_count": len(spikes), "threshold": threshold_multiplier}
            )
        return spikes
