"""Structured error handling for the logsandbox plugin host.

The hierarchy mirrors the propagation policy: load errors and unknown
formats abort an open request, config errors leave the session usable,
and traps, timeouts and bridge errors are terminal for the session.
"""

from typing import Any

from logsandbox.models.error import ErrorCategory, ErrorCode, StructuredError


class PluginHostError(Exception):
    """Base exception for plugin host errors.

    Wraps a StructuredError for consistent error handling.
    """

    def __init__(
        self,
        code: str,
        message: str,
        remediation: str,
        category: ErrorCategory,
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ):
        self.error = StructuredError(
            code=code,
            message=message,
            remediation=remediation,
            retryable=retryable,
            category=category,
            context=context,
        )
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def category(self) -> ErrorCategory:
        return self.error.category

    def to_structured(self) -> StructuredError:
        """Convert to StructuredError."""
        return self.error

    def to_structured_error(self) -> dict:
        """Convert to JSON-serializable dict for output."""
        return self.error.model_dump(mode="json", exclude_none=True)


# Load errors


class LoadError(PluginHostError):
    """The plugin artifact could not be turned into a sandbox instance."""


class IncompatibleAbiError(LoadError):
    """Artifact declares an ABI version outside the supported range."""

    def __init__(self, path: str, declared: int | None, supported: tuple[int, int]):
        declared_text = "no ABI version" if declared is None else f"ABI version {declared}"
        super().__init__(
            code=ErrorCode.INCOMPATIBLE_ABI,
            message=f"Artifact {path} declares {declared_text}, host supports {supported[0]}..{supported[1]}",
            remediation="Rebuild the plugin against a supported ABI version",
            category="incompatible",
            context={"path": path, "declared": declared, "supported": list(supported)},
        )


class CorruptArtifactError(LoadError):
    """Artifact failed structural validation or instantiation."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            code=ErrorCode.CORRUPT_ARTIFACT,
            message=f"Corrupt plugin artifact {path}: {reason}",
            remediation="Rebuild or reinstall the plugin binary",
            category="incompatible",
            context={"path": path, "reason": reason},
        )


class ArtifactIOError(LoadError):
    """Artifact file could not be read."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            code=ErrorCode.IO_ERROR,
            message=f"Cannot read plugin artifact {path}: {reason}",
            remediation="Check file permissions and path accessibility",
            category="host",
            retryable=True,
            context={"path": path},
        )


# Config errors


class ConfigError(PluginHostError):
    """Options were rejected; the session stays in Created.

    ``session_id`` is set when the error comes from a live session so the
    caller can re-submit corrected options against it.
    """

    session_id: int | None = None


class MalformedOptionsError(ConfigError):
    """Options blob or values are structurally invalid."""

    def __init__(self, reason: str, format_id: str | None = None):
        super().__init__(
            code=ErrorCode.MALFORMED_OPTIONS,
            message=f"Malformed parse options: {reason}",
            remediation="Fix the option values and configure the session again",
            category="caller",
            context={"format_id": format_id, "reason": reason} if format_id else {"reason": reason},
        )


class UnsupportedOptionError(ConfigError):
    """Option is not supported by the plugin."""

    def __init__(self, option: str, format_id: str | None = None):
        super().__init__(
            code=ErrorCode.UNSUPPORTED_OPTION,
            message=f"Option '{option}' is not supported"
            + (f" by format '{format_id}'" if format_id else ""),
            remediation="Remove the option or pick a format whose capabilities include it",
            category="caller",
            context={"option": option, "format_id": format_id},
        )


# Bridge errors


class BridgeError(PluginHostError):
    """Guest/host protocol violation. Always terminal for the session."""


class MalformedOutputError(BridgeError):
    """Guest output failed validation."""

    def __init__(self, reason: str, context: dict[str, Any] | None = None):
        super().__init__(
            code=ErrorCode.MALFORMED_OUTPUT,
            message=f"Malformed plugin output: {reason}",
            remediation="The plugin violated the host ABI; report it to the plugin author",
            category="plugin",
            context={"reason": reason, **(context or {})},
        )


class AllocationFailedError(BridgeError):
    """Guest allocator could not provide a buffer."""

    def __init__(self, length: int, ptr: int | None = None):
        super().__init__(
            code=ErrorCode.ALLOCATION_FAILED,
            message=f"Guest allocation of {length} bytes failed",
            remediation="Raise the plugin memory ceiling or feed smaller chunks",
            category="plugin",
            context={"length": length, "ptr": ptr},
        )


# Runtime faults


class GuestTrapError(PluginHostError):
    """Guest code trapped during a call."""

    def __init__(self, function: str, reason: str, context: dict[str, Any] | None = None):
        super().__init__(
            code=ErrorCode.GUEST_TRAP,
            message=f"Plugin trapped in '{function}': {reason}",
            remediation="Open a fresh session; the plugin cannot continue with this input",
            category="plugin",
            context={"function": function, "reason": reason, **(context or {})},
        )


class PluginTimeoutError(PluginHostError):
    """Guest call exceeded its execution budget."""

    def __init__(self, function: str, budget_seconds: float):
        super().__init__(
            code=ErrorCode.TIMEOUT,
            message=f"Plugin call '{function}' exceeded {budget_seconds:g}s budget",
            remediation="Open a fresh session; consider a larger timeout for slow plugins",
            category="plugin",
            context={"function": function, "budget_seconds": budget_seconds},
        )


# Session errors


class SessionClosedError(PluginHostError):
    """Session no longer accepts calls."""

    def __init__(self, session_id: int | None, message: str | None = None, code: str = ErrorCode.SESSION_CLOSED):
        super().__init__(
            code=code,
            message=message or f"Session {session_id} is closed",
            remediation="Open a new session for the source",
            category="caller",
            context={"session_id": session_id},
        )


class SessionFaultedError(SessionClosedError):
    """Session faulted earlier and rejects further calls until closed."""

    def __init__(self, session_id: int | None):
        super().__init__(
            session_id,
            message=f"Session {session_id} is faulted; close it and open a new one",
            code=ErrorCode.SESSION_FAULTED,
        )


class InvalidSessionStateError(PluginHostError):
    """Operation is not valid in the session's current state."""

    def __init__(self, session_id: int, state: str, operation: str):
        super().__init__(
            code=ErrorCode.INVALID_SESSION_STATE,
            message=f"Cannot {operation} session {session_id} in state '{state}'",
            remediation="Configure the session before feeding it",
            category="caller",
            context={"session_id": session_id, "state": state, "operation": operation},
        )


class SourceInUseError(PluginHostError):
    """A session for the same source is still open."""

    def __init__(self, source_id: str, session_id: int):
        super().__init__(
            code=ErrorCode.SOURCE_IN_USE,
            message=f"Source '{source_id}' is still bound to session {session_id}",
            remediation="Close the existing session before opening the source again",
            category="caller",
            context={"source_id": source_id, "session_id": session_id},
        )


class UnknownFormatError(PluginHostError):
    """No plugin is registered for the format id."""

    def __init__(self, format_id: str, supported: list[str]):
        super().__init__(
            code=ErrorCode.UNKNOWN_FORMAT,
            message=f"Format '{format_id}' is not registered",
            remediation=f"Registered formats: {', '.join(supported) or 'none'}",
            category="caller",
            context={"format_id": format_id, "supported": supported},
        )


def describe_error(error: Exception) -> StructuredError:
    """Get a StructuredError for any exception.

    Args:
        error: The error to describe

    Returns:
        StructuredError instance
    """
    if isinstance(error, PluginHostError):
        return error.to_structured()
    return StructuredError(
        code=ErrorCode.INTERNAL_ERROR,
        message=str(error),
        remediation="This is an unexpected error. Please report it.",
        retryable=False,
        category="host",
        context={"type": type(error).__name__},
    )
