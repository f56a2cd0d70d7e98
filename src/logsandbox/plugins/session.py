"""Plugin session: one live plugin instance bound to one log source.

State machine::

    Created --configure--> Ready <--> Parsing --> Ready | NeedMoreInput | Exhausted | Faulted
    any state --close--> Closed

A ConfigError keeps the session in Created. Traps, timeouts and bridge
errors move it to Faulted, after which only close() is accepted. Calls
on one session are serialized by a per-session lock because the guest's
parse cursor is not reentrant.
"""

import threading
import time
from collections.abc import Mapping
from enum import Enum
from typing import Any

from logsandbox.core import logging as log
from logsandbox.core.errors import (
    BridgeError,
    ConfigError,
    InvalidSessionStateError,
    SessionClosedError,
    SessionFaultedError,
)
from logsandbox.core.metrics import SessionMetrics
from logsandbox.models.entry import NextState, ParseResult
from logsandbox.plugins import bridge
from logsandbox.plugins.bridge import ParseRequest
from logsandbox.plugins.manifest import PluginDescriptor
from logsandbox.plugins.options import ParseOptions, prepare_options
from logsandbox.plugins.sandbox import SandboxInstance


class SessionState(str, Enum):
    """Lifecycle state of a plugin session."""

    CREATED = "created"
    READY = "ready"
    PARSING = "parsing"
    NEED_MORE_INPUT = "need_more_input"
    EXHAUSTED = "exhausted"
    FAULTED = "faulted"
    CLOSED = "closed"


_STATE_AFTER_PARSE = {
    NextState.READY: SessionState.READY,
    NextState.NEED_MORE_INPUT: SessionState.NEED_MORE_INPUT,
    NextState.EXHAUSTED: SessionState.EXHAUSTED,
}


class PluginSession:
    """Owns a sandbox instance, its parse cursor and its configuration."""

    def __init__(
        self,
        session_id: int,
        descriptor: PluginDescriptor,
        sandbox: SandboxInstance,
        source_id: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.descriptor = descriptor
        self.source_id = source_id
        self._sandbox = sandbox
        self._lock = threading.Lock()
        self._state = SessionState.CREATED
        self._cursor = 0
        self.metrics = SessionMetrics(session_id, descriptor.format_id)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def cursor(self) -> int:
        """Bytes of the source consumed so far; never decreases."""
        return self._cursor

    @property
    def format_id(self) -> str:
        return self.descriptor.format_id

    def _check_usable(self) -> None:
        if self._state is SessionState.CLOSED:
            raise SessionClosedError(self.session_id)
        if self._state is SessionState.FAULTED:
            raise SessionFaultedError(self.session_id)

    def _fault(self, error: Exception) -> None:
        self._state = SessionState.FAULTED
        self.metrics.add_fault()
        log.warning(
            f"Session {self.session_id} faulted: {error}",
            session_id=self.session_id,
            format_id=self.format_id,
        )

    def _log_violation(self, operation: str, error: BridgeError, **context: Any) -> None:
        fields = dict(error.error.context or {})
        fields.update(context, session_id=self.session_id, format_id=self.format_id)
        log.error(f"Protocol violation during {operation}: {error}", **fields)

    def configure(self, options: ParseOptions | Mapping[str, Any] | bytes | None = None) -> None:
        """Deliver options to the guest and move to Ready.

        Raises:
            ConfigError: Options rejected; the session stays in Created
            InvalidSessionStateError: If the session is already configured
            GuestTrapError, PluginTimeoutError, BridgeError: Guest failed; the session faults
        """
        with self._lock:
            self._check_usable()
            if self._state is not SessionState.CREATED:
                raise InvalidSessionStateError(self.session_id, self._state.value, "configure")

            try:
                prepared = prepare_options(options, self.descriptor)
                self._sandbox.grant_files(list(prepared.auxiliary_files))
                bridge.configure(self._sandbox, prepared.blob, self.format_id)
            except ConfigError as e:
                self._sandbox.grant_files([])
                e.session_id = self.session_id
                log.debug(
                    f"Session {self.session_id} options rejected: {e}",
                    session_id=self.session_id,
                    code=e.code,
                )
                raise
            except Exception as e:
                if isinstance(e, BridgeError):
                    self._log_violation("configure", e)
                self._fault(e)
                raise

            self._state = SessionState.READY
            log.debug(f"Session {self.session_id} ready", session_id=self.session_id, format_id=self.format_id)

    def feed(self, chunk: bytes) -> ParseResult:
        """Parse one chunk.

        After a NeedMoreInput result the caller must feed the unconsumed
        tail of the previous chunk followed by new bytes.

        Raises:
            SessionClosedError: If the session is closed
            SessionFaultedError: If the session faulted earlier
            InvalidSessionStateError: If the session is not configured
            GuestTrapError, PluginTimeoutError, BridgeError: Guest failed; the session faults
        """
        with self._lock:
            self._check_usable()
            if self._state is SessionState.CREATED:
                raise InvalidSessionStateError(self.session_id, self._state.value, "feed")
            self.metrics.add_call()
            if self._state is SessionState.EXHAUSTED:
                return ParseResult(next_state=NextState.EXHAUSTED, offset=self._cursor)
            if not chunk:
                resting = (
                    NextState.NEED_MORE_INPUT
                    if self._state is SessionState.NEED_MORE_INPUT
                    else NextState.READY
                )
                return ParseResult(next_state=resting, offset=self._cursor)

            request = ParseRequest(bytes(chunk), self._cursor, self.session_id)
            self._state = SessionState.PARSING
            started = time.perf_counter()
            try:
                result = bridge.parse(self._sandbox, request)
            except Exception as e:
                if isinstance(e, BridgeError):
                    self._log_violation(
                        "parse",
                        e,
                        chunk_offset=request.chunk_offset,
                        chunk_length=len(request.input_chunk),
                    )
                self._fault(e)
                raise

            self.metrics.add_plugin_call((time.perf_counter() - started) * 1000)
            self.metrics.add_result(len(result.entries), result.bytes_consumed)
            if result.next_state is NextState.NEED_MORE_INPUT:
                self.metrics.add_need_more_input()
            elif result.next_state is NextState.EXHAUSTED:
                self.metrics.add_exhausted()

            self._cursor += result.bytes_consumed
            self._state = _STATE_AFTER_PARSE[result.next_state]
            return result

    def close(self) -> None:
        """Release the sandbox. Waits for an in-flight call; idempotent."""
        with self._lock:
            if self._state is SessionState.CLOSED:
                return
            self._sandbox.close()
            self._state = SessionState.CLOSED
            self.metrics.stop()
            log.debug(f"Session {self.session_id} closed", **self.metrics.to_dict())

    def __enter__(self) -> "PluginSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
