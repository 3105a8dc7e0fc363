"""Base parser interface."""

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from conv_memory.exceptions import ParseError, RolloutReadError, TimestampError
from conv_memory.models import ConversationRecord

__all__ = ["Parser", "parse_timestamp"]

# fromisoformat also takes ISO 8601 basic and week forms; RFC 3339 does not
_RFC3339 = re.compile(
    r"\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:[Zz]|[+-]\d{2}:\d{2})"
)


def parse_timestamp(timestamp_str: str) -> datetime:
    """Parse an RFC 3339 timestamp.

    Args:
        timestamp_str: Timestamp string (e.g., "2026-01-22T15:52:33.575Z")

    Returns:
        Timezone-aware datetime

    Raises:
        TimestampError: If the string is not a valid RFC 3339 timestamp
    """
    if not _RFC3339.fullmatch(timestamp_str):
        raise TimestampError(timestamp_str)
    value = timestamp_str
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError as exc:
        raise TimestampError(timestamp_str, exc) from exc
    if dt.tzinfo is None:
        raise TimestampError(timestamp_str)
    return dt


class Parser(ABC):
    """Base class for rollout parsers.

    Subclasses set `source_name` and implement `parse_lines()`, which turns
    an iterable of text lines into one ConversationRecord.
    """

    source_name: str

    @abstractmethod
    def parse_lines(self, lines: Iterable[str]) -> ConversationRecord:
        """Parse transcript lines into a conversation record.

        Args:
            lines: Lines of the transcript, in file order

        Returns:
            The normalised conversation
        """

    def parse_bytes(self, data: bytes) -> ConversationRecord:
        """Parse a whole transcript held in memory."""
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError("Rollout is not valid UTF-8", {"cause": str(exc)}) from exc
        return self.parse_lines(text.split("\n"))

    def parse_file(self, path: Path) -> ConversationRecord:
        """Read and parse a transcript file."""
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise RolloutReadError(str(path), exc) from exc
        return self.parse_bytes(data)
