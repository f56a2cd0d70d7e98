"""Pydantic and dataclass models for logsandbox."""

from logsandbox.models.entry import LogEntry, NextState, ParseResult, Severity
from logsandbox.models.error import StructuredError

__all__ = [
    "StructuredError",
    "LogEntry",
    "NextState",
    "ParseResult",
    "Severity",
]
