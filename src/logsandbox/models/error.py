"""Structured error model for logsandbox."""

from typing import Any, Literal

from pydantic import BaseModel, Field

ErrorCategory = Literal["caller", "plugin", "incompatible", "host"]


class StructuredError(BaseModel):
    """Structured error response format.

    All errors raised by the plugin host follow this schema so callers can
    tell bad input apart from a crashed plugin or an unusable artifact.
    """

    code: str = Field(
        ...,
        pattern=r"^[A-Z][A-Z0-9_]*$",
        description="Error code (e.g., UNKNOWN_FORMAT)",
        examples=[
            "UNKNOWN_FORMAT",
            "INCOMPATIBLE_ABI",
            "MALFORMED_OPTIONS",
            "GUEST_TRAP",
            "TIMEOUT",
        ],
    )

    message: str = Field(
        ...,
        description="Human-readable error message",
    )

    remediation: str = Field(
        ...,
        description="Suggested fix or next step",
    )

    retryable: bool = Field(
        ...,
        description="Whether retry may succeed",
    )

    category: ErrorCategory = Field(
        ...,
        description="Who is at fault: caller, plugin, incompatible artifact or host",
    )

    context: dict[str, Any] | None = Field(
        default=None,
        description="Additional context (format_id, session_id, path, etc.)",
    )

    model_config = {"extra": "forbid"}


class ErrorCode:
    """Standard error codes for logsandbox."""

    INCOMPATIBLE_ABI = "INCOMPATIBLE_ABI"
    CORRUPT_ARTIFACT = "CORRUPT_ARTIFACT"
    IO_ERROR = "IO_ERROR"
    MALFORMED_OPTIONS = "MALFORMED_OPTIONS"
    UNSUPPORTED_OPTION = "UNSUPPORTED_OPTION"
    MALFORMED_OUTPUT = "MALFORMED_OUTPUT"
    ALLOCATION_FAILED = "ALLOCATION_FAILED"
    GUEST_TRAP = "GUEST_TRAP"
    TIMEOUT = "TIMEOUT"
    SESSION_CLOSED = "SESSION_CLOSED"
    SESSION_FAULTED = "SESSION_FAULTED"
    INVALID_SESSION_STATE = "INVALID_SESSION_STATE"
    SOURCE_IN_USE = "SOURCE_IN_USE"
    UNKNOWN_FORMAT = "UNKNOWN_FORMAT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
