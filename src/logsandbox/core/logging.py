"""Logging and progress utilities for the logsandbox plugin host.

All progress and log output goes to stderr to keep stdout clean
for machine-readable results (JSON/JSONL). Sessions may log from
parsing threads, so each line is written under a lock.
"""

import json
import sys
import threading
import time
from datetime import UTC, datetime
from typing import Any, Literal

LogLevel = Literal["debug", "info", "warning", "error"]

_verbose = False
_quiet = False
_log_format: Literal["text", "json"] = "text"
_write_lock = threading.Lock()


def set_verbose(verbose: bool) -> None:
    """Set verbose mode."""
    global _verbose
    _verbose = verbose


def set_quiet(quiet: bool) -> None:
    """Set quiet mode."""
    global _quiet
    _quiet = quiet


def configure_logging(
    log_format: Literal["text", "json"] = "text",
    quiet: bool = False,
) -> None:
    """Configure logging settings.

    Args:
        log_format: Output format for log messages
        quiet: Suppress info and progress output
    """
    global _log_format, _quiet
    _log_format = log_format
    _quiet = quiet


def _emit(line: str, end: str = "\n") -> None:
    with _write_lock:
        print(line, end=end, file=sys.stderr)


def log(
    message: str,
    level: LogLevel = "info",
    **context: Any,
) -> None:
    """Log a message to stderr.

    Args:
        message: Log message
        level: Log level
        **context: Additional context to include
    """
    if _quiet and level in ("debug", "info"):
        return

    if level == "debug" and not _verbose:
        return

    if _log_format == "json":
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": level,
            "message": message,
            **context,
        }
        _emit(json.dumps(log_entry, default=str))
    else:
        prefix = f"[{level.upper()}]" if level != "info" else ""
        suffix = ""
        if context and _verbose:
            suffix = " " + " ".join(f"{k}={v}" for k, v in context.items())
        if prefix:
            _emit(f"{prefix} {message}{suffix}")
        else:
            _emit(f"{message}{suffix}")


def debug(message: str, **context: Any) -> None:
    """Log a debug message."""
    log(message, level="debug", **context)


def info(message: str, **context: Any) -> None:
    """Log an info message."""
    log(message, level="info", **context)


def warning(message: str, **context: Any) -> None:
    """Log a warning message."""
    log(message, level="warning", **context)


def error(message: str, **context: Any) -> None:
    """Log an error message."""
    log(message, level="error", **context)


class ProgressReporter:
    """Reports progress to stderr.

    Used while streaming a source file through a plugin session.
    """

    def __init__(
        self,
        total: int | None = None,
        description: str = "Parsing",
        unit: str = "bytes",
    ):
        self.total = total
        self.description = description
        self.unit = unit
        self.current = 0
        self.start_time = time.perf_counter()
        self._last_update = 0.0

    def update(self, amount: int = 1) -> None:
        """Update progress by amount.

        Args:
            amount: Number of units processed
        """
        if _quiet:
            return

        self.current += amount

        now = time.perf_counter()
        if now - self._last_update < 0.1:  # Max 10 updates/second
            return
        self._last_update = now

        self._print_progress()

    def _print_progress(self) -> None:
        elapsed = time.perf_counter() - self.start_time
        rate = self.current / elapsed if elapsed > 0 else 0

        if _log_format == "json":
            progress = {
                "description": self.description,
                "current": self.current,
                "total": self.total,
                "rate": round(rate, 1),
                "unit": self.unit,
            }
            _emit(json.dumps({"progress": progress}))
        elif self.total:
            percentage = (self.current / self.total) * 100
            _emit(
                f"\r{self.description}: {self.current}/{self.total} "
                f"({percentage:.1f}%) - {rate:.1f} {self.unit}/s",
                end="",
            )
        else:
            _emit(
                f"\r{self.description}: {self.current} {self.unit} "
                f"({rate:.1f} {self.unit}/s)",
                end="",
            )

    def finish(self) -> None:
        """Mark progress as complete."""
        if _quiet:
            return

        elapsed = time.perf_counter() - self.start_time

        if _log_format == "json":
            complete = {
                "description": self.description,
                "total": self.current,
                "duration_seconds": round(elapsed, 2),
                "unit": self.unit,
            }
            _emit(json.dumps({"complete": complete}))
        else:
            _emit(
                f"\n{self.description}: Complete - {self.current} {self.unit} "
                f"in {_format_duration(elapsed)}"
            )


def _format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"
