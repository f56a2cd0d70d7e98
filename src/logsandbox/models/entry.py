"""Log entry and parse result models.

These are produced by the ABI bridge from guest output and handed to the
caller unchanged.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class Severity(IntEnum):
    """Log severity, numbered like DLT log levels (lower is more severe)."""

    FATAL = 1
    ERROR = 2
    WARN = 3
    INFO = 4
    DEBUG = 5
    VERBOSE = 6

    @classmethod
    def from_name(cls, name: str) -> "Severity":
        """Look up a severity by its lowercase name (e.g. 'warn')."""
        return cls[name.upper()]


class NextState(str, Enum):
    """Session state reported by the guest after a parse call."""

    READY = "ready"
    NEED_MORE_INPUT = "need_more_input"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class LogEntry:
    """A single structured log entry decoded from guest output."""

    timestamp: int | None
    level: Severity | None
    payload: str | bytes
    source_tag: str

    def to_dict(self) -> dict:
        """Convert to a JSON-friendly dict."""
        payload = self.payload
        if isinstance(payload, bytes):
            payload = payload.hex()
        return {
            "timestamp": self.timestamp,
            "level": self.level.name.lower() if self.level is not None else None,
            "payload": payload,
            "source_tag": self.source_tag,
        }


@dataclass(frozen=True)
class ParseResult:
    """Result of feeding one chunk to a session."""

    entries: tuple[LogEntry, ...] = field(default_factory=tuple)
    bytes_consumed: int = 0
    next_state: NextState = NextState.READY
    offset: int = 0

    def to_dict(self) -> dict:
        """Convert to a JSON-friendly dict."""
        return {
            "entries": [e.to_dict() for e in self.entries],
            "bytes_consumed": self.bytes_consumed,
            "next_state": self.next_state.value,
            "offset": self.offset,
        }
