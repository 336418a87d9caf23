"""
Log Pulse - Entry Parser
========================

Turns physical log lines into logical entries.

Header lines look like:
    [2024-01-01 10:00:00] production.ERROR: Something failed

Every other line continues the current entry (stack frames, multi-line
messages, JSON context). An entry is only complete once the next header
arrives or the stream ends, so parsing runs in two phases: accumulate
lines into a PartialEntry, then finalize it into an Entry.
"""

from datetime import datetime
from typing import Iterable, Iterator, Optional
import hashlib
import re

from shared.constants import LogLevel, Limits
from shared.utils.logging import get_logger
from logpulse.api.schemas import Entry, PartialEntry, ParseResult, StackFrame

logger = get_logger(__name__)


class EntryParser:
    """
    Stateless line classifier, entry assembler and fingerprinter.

    The caller owns the in-progress PartialEntry and passes it back on each
    call to parse_incremental, so one parser can serve any number of files
    concurrently.
    """

    HEADER_PATTERN = re.compile(
        r"^\[(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)\]"
        r" ([\w-]+)\.(\w+): ?(.*)$"
    )

    # Optionally namespaced class name ending in Exception/Error, then a colon
    EXCEPTION_PATTERN = re.compile(
        r"(?<![\w\\])(\\?(?:[A-Za-z_]\w*\\)*\w*(?:Exception|Error)):(?:\s+|$)"
    )

    # "#3 /var/www/app/Http/Kernel.php(128): Illuminate\Pipeline->then()"
    FRAME_PATTERN = re.compile(r"#(\d+) (.+?)\((\d+)\): (.+)")

    PATH_ROOT_PATTERN = re.compile(r"^.*?/(app|vendor)/")

    def __init__(self, fallback_environment: str = Limits.FALLBACK_ENVIRONMENT):
        """
        Initialize the entry parser.

        Args:
            fallback_environment: Environment given to lines without a header
        """
        self.fallback_environment = fallback_environment

    # -------------------------------------------------------------------------
    # Line classification
    # -------------------------------------------------------------------------

    def is_entry_start(self, line: str) -> bool:
        """Check whether a line is a canonical entry header."""
        return self.HEADER_PATTERN.match(line) is not None

    def parse_timestamp(self, ts_str: str) -> datetime:
        """
        Parse a header timestamp into a naive local datetime.

        Falls back to the current time for values the pattern accepts but
        the calendar does not (e.g. month 13).
        """
        try:
            parsed = datetime.fromisoformat(ts_str.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now()

        if parsed.tzinfo is not None:
            parsed = parsed.astimezone().replace(tzinfo=None)
        return parsed

    def parse_header(self, line: str) -> PartialEntry:
        """
        Start a new entry from a line.

        Lines that are not headers become a fallback entry stamped with the
        current time, so this never raises on arbitrary input.
        """
        match = self.HEADER_PATTERN.match(line)
        if match:
            return PartialEntry(
                timestamp=self.parse_timestamp(match.group(1)),
                environment=match.group(2),
                level=match.group(3).upper(),
                message=match.group(4),
                raw_lines=[line],
            )

        return PartialEntry(
            timestamp=datetime.now(),
            environment=self.fallback_environment,
            level=LogLevel.INFO.value,
            message=line,
            raw_lines=[line],
        )

    def parse_incremental(
        self,
        line: str,
        previous: Optional[PartialEntry] = None
    ) -> Optional[ParseResult]:
        """
        Feed a single line to the two-state machine.

        Args:
            line: One physical line without its line terminator
            previous: The entry currently being accumulated, if any

        Returns:
            ParseResult with is_new=True and a fresh entry when the line
            starts one, is_new=False with ``previous`` extended otherwise.
            None for a blank line while no entry is active.
        """
        if self.is_entry_start(line):
            return ParseResult(is_new=True, entry=self.parse_header(line))

        if previous is not None:
            previous.raw_lines.append(line)
            return ParseResult(is_new=False, entry=previous)

        if not line.strip():
            return None

        # Text before the first header still has to go somewhere
        return ParseResult(is_new=True, entry=self.parse_header(line))

    # -------------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------------

    def extract_exception(self, partial: PartialEntry) -> tuple[Optional[str], Optional[str]]:
        """
        Find the first exception declaration in the entry.

        The header message is checked first, then each continuation line.

        Returns:
            (exception type, text following it on the same line)
        """
        candidates = [partial.message, *partial.raw_lines[1:]]
        for text in candidates:
            match = self.EXCEPTION_PATTERN.search(text)
            if match:
                return match.group(1), text[match.end():].strip()
        return None, None

    def extract_stack_frames(self, lines: Iterable[str]) -> list[StackFrame]:
        """Collect every stack frame line, keeping their order."""
        frames = []
        for line in lines:
            match = self.FRAME_PATTERN.search(line)
            if match:
                frames.append(StackFrame(
                    file=match.group(2),
                    line=int(match.group(3)),
                    call=match.group(4).rstrip(),
                ))
        return frames

    def normalize_frame_file(self, path: str) -> str:
        """
        Make a frame path comparable across machines.

        Separators become forward slashes and everything before the first
        ``app/`` or ``vendor/`` segment is dropped.
        """
        normalized = path.replace("\\", "/")
        return self.PATH_ROOT_PATTERN.sub(r"\1/", normalized, count=1)

    def generate_fingerprint(
        self,
        exception_type: Optional[str],
        stack_frames: list[StackFrame],
        message: str
    ) -> str:
        """
        Build the grouping key for an entry.

        Exceptions with a trace are keyed on their type and the first frame
        (without its line number, which shifts between deploys). Anything
        else is keyed on its message prefix.
        """
        base = exception_type or "unknown"

        if exception_type and stack_frames:
            first = stack_frames[0]
            base += ":" + self.normalize_frame_file(first.file) + ":" + first.call
        else:
            base += ":" + message[:Limits.FINGERPRINT_MESSAGE_CHARS]

        return hashlib.md5(base.encode("utf-8", errors="replace")).hexdigest()

    def extract_title(self, message: str, exception_message: Optional[str]) -> str:
        """Short display text: the exception message if any, else the first message line."""
        if exception_message:
            return exception_message[:Limits.TITLE_MAX_CHARS]
        first_line = message.split("\n", 1)[0]
        return first_line[:Limits.TITLE_MAX_CHARS]

    def finalize(self, partial: PartialEntry) -> Entry:
        """
        Close an entry once no more continuation lines can arrive.

        Args:
            partial: The accumulated entry

        Returns:
            Immutable Entry with exception type, frames, fingerprint and title
        """
        raw_lines = list(partial.raw_lines)
        while len(raw_lines) > 1 and not raw_lines[-1].strip():
            raw_lines.pop()

        exception_type, exception_message = self.extract_exception(partial)
        stack_frames = self.extract_stack_frames(raw_lines)

        return Entry(
            timestamp=partial.timestamp,
            environment=partial.environment,
            level=partial.level,
            message=partial.message,
            exception_type=exception_type,
            stack_frames=stack_frames,
            raw_text="\n".join(raw_lines),
            fingerprint=self.generate_fingerprint(
                exception_type, stack_frames, partial.message
            ),
            title=self.extract_title(partial.message, exception_message),
        )

    # -------------------------------------------------------------------------
    # Whole-stream parsing
    # -------------------------------------------------------------------------

    def parse_lines(self, lines: Iterable[str]) -> Iterator[Entry]:
        """
        Lazily parse a sequence of lines into entries.

        Line terminators are stripped. Each call starts from a clean state,
        so the generator can be restarted by calling again.
        """
        current: Optional[PartialEntry] = None

        for line in lines:
            result = self.parse_incremental(line.rstrip("\r\n"), current)
            if result is None:
                continue
            if result.is_new and current is not None:
                yield self.finalize(current)
            current = result.entry

        if current is not None:
            yield self.finalize(current)

    def parse_text(self, text: str) -> list[Entry]:
        """Parse a complete block of log text."""
        entries = list(self.parse_lines(text.splitlines()))
        logger.debug(f"Parsed {len(entries)} entries", extra={"entry_count": len(entries)})
        return entries
