"""Per-session counters for plugin sessions."""

import time
from typing import Any


class SessionMetrics:
    """Collects counters for one plugin session.

    Updated only while the owning session's lock is held.
    """

    def __init__(self, session_id: int, format_id: str):
        self.session_id = session_id
        self.format_id = format_id
        self.start_time = time.perf_counter()
        self.end_time: float | None = None

        self.calls_total = 0
        self.calls_plugin = 0
        self.entries = 0
        self.bytes_consumed = 0
        self.need_more_input = 0
        self.exhausted = 0
        self.faults = 0
        self.guest_time_ms = 0.0

    def stop(self) -> None:
        """Mark the end of the session."""
        if self.end_time is None:
            self.end_time = time.perf_counter()

    @property
    def duration_ms(self) -> int:
        """Session lifetime in milliseconds."""
        end = self.end_time or time.perf_counter()
        return int((end - self.start_time) * 1000)

    def add_call(self) -> None:
        self.calls_total += 1

    def add_plugin_call(self, elapsed_ms: float) -> None:
        self.calls_plugin += 1
        self.guest_time_ms += elapsed_ms

    def add_result(self, entries: int, bytes_consumed: int) -> None:
        self.entries += entries
        self.bytes_consumed += bytes_consumed

    def add_need_more_input(self) -> None:
        self.need_more_input += 1

    def add_exhausted(self) -> None:
        self.exhausted += 1

    def add_fault(self) -> None:
        self.faults += 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging or JSON output."""
        return {
            "session_id": self.session_id,
            "format_id": self.format_id,
            "duration_ms": self.duration_ms,
            "calls_total": self.calls_total,
            "calls_plugin": self.calls_plugin,
            "entries": self.entries,
            "bytes_consumed": self.bytes_consumed,
            "need_more_input": self.need_more_input,
            "exhausted": self.exhausted,
            "faults": self.faults,
            "guest_time_ms": round(self.guest_time_ms, 3),
        }
