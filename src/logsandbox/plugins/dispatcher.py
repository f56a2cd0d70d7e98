"""Dispatcher: the caller-facing surface of the plugin host.

Routes "open source as format X with options O" requests to plugin
sessions, feeds chunks and hands structured entries back. Sessions are
addressed by integer handles from a process-wide counter. The dispatcher
only locks its own tables; calls on distinct sessions run concurrently
and each session serializes its own calls.
"""

import itertools
import threading
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

from logsandbox.core import logging as log
from logsandbox.core.config import HostSettings
from logsandbox.core.errors import ConfigError, SessionClosedError, SourceInUseError
from logsandbox.models.entry import NextState, ParseResult
from logsandbox.plugins.loader import ArtifactLoader
from logsandbox.plugins.options import ParseOptions
from logsandbox.plugins.registry import FormatRegistry
from logsandbox.plugins.session import PluginSession, SessionState

DEFAULT_CHUNK_SIZE = 64 * 1024

OptionsValue = ParseOptions | Mapping[str, Any] | bytes | None

_session_ids = itertools.count(1)
_session_ids_lock = threading.Lock()


def next_session_id() -> int:
    """Next process-wide session identifier."""
    with _session_ids_lock:
        return next(_session_ids)


class Dispatcher:
    """Owns every open plugin session."""

    def __init__(
        self,
        registry: FormatRegistry,
        loader: ArtifactLoader | None = None,
        settings: HostSettings | None = None,
    ) -> None:
        self.registry = registry
        self.loader = loader or ArtifactLoader(settings)
        self._lock = threading.Lock()
        self._sessions: dict[int, PluginSession] = {}
        self._sources: dict[str, int] = {}

    def open_source(
        self,
        format_id: str,
        options: OptionsValue = None,
        source_id: str | None = None,
    ) -> int:
        """Open a session for a source and configure it.

        Args:
            format_id: Registered format to parse with
            options: Parse options for the plugin
            source_id: Optional identity of the source; one open session per source

        Returns:
            Session handle

        Raises:
            UnknownFormatError: If the format is not registered
            SourceInUseError: If source_id is bound to an open session
            LoadError: If the plugin cannot be loaded
            ConfigError: If options are rejected; the session stays open
                in Created and the error carries its session_id
        """
        handle = self.create_session(format_id, source_id)
        try:
            self.configure(handle, options)
        except ConfigError:
            raise
        except Exception:
            self.close(handle)
            raise
        return handle

    def create_session(self, format_id: str, source_id: str | None = None) -> int:
        """Load a plugin into a new session in Created state."""
        descriptor = self.registry.resolve(format_id)
        session_id = next_session_id()

        if source_id is not None:
            with self._lock:
                bound = self._sources.get(source_id)
                if bound is not None:
                    raise SourceInUseError(source_id, bound)
                self._sources[source_id] = session_id

        try:
            sandbox = self.loader.load(descriptor, instance_id=session_id)
        except Exception:
            if source_id is not None:
                with self._lock:
                    self._sources.pop(source_id, None)
            raise

        session = PluginSession(session_id, descriptor, sandbox, source_id)
        with self._lock:
            self._sessions[session_id] = session

        log.debug(
            f"Opened session {session_id} for format '{format_id}'",
            session_id=session_id,
            source_id=source_id,
        )
        return session_id

    def session(self, handle: int) -> PluginSession:
        """Look up a session by handle.

        Raises:
            SessionClosedError: If no open session has this handle
        """
        with self._lock:
            session = self._sessions.get(handle)
        if session is None:
            raise SessionClosedError(handle)
        return session

    def configure(self, handle: int, options: OptionsValue = None) -> None:
        """Deliver options to a session in Created state."""
        self.session(handle).configure(options)

    def feed(self, handle: int, data: bytes) -> ParseResult:
        """Feed one chunk to a session."""
        return self.session(handle).feed(data)

    def state(self, handle: int) -> SessionState:
        return self.session(handle).state

    def stream(self, handle: int, chunks: Iterable[bytes]) -> Iterator[ParseResult]:
        """Feed a sequence of chunks, carrying unconsumed bytes forward.

        Whatever a call leaves unconsumed is prepended to the next chunk,
        so callers can split input at arbitrary boundaries.
        """
        session = self.session(handle)
        pending = b""
        for chunk in chunks:
            data = pending + bytes(chunk) if pending else bytes(chunk)
            if not data:
                continue
            result = session.feed(data)
            yield result
            if result.next_state is NextState.EXHAUSTED:
                return
            pending = data[result.bytes_consumed :]

        if pending:
            log.warning(
                f"Session {handle}: {len(pending)} trailing bytes left unparsed",
                session_id=handle,
                offset=session.cursor,
            )

    def open_file(
        self,
        format_id: str,
        path: Path,
        options: OptionsValue = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Iterator[ParseResult]:
        """Stream a file through a fresh session, closing it afterwards.

        The file path doubles as the source id, so the same file cannot be
        opened twice at once.
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        handle = self.create_session(format_id, source_id=str(Path(path).resolve()))
        try:
            self.configure(handle, options)
            with open(path, "rb") as f:
                yield from self.stream(handle, iter(lambda: f.read(chunk_size), b""))
        finally:
            self.close(handle)

    def close(self, handle: int) -> None:
        """Close a session and release its sandbox.

        Raises:
            SessionClosedError: If the handle is unknown or already closed
        """
        with self._lock:
            session = self._sessions.pop(handle, None)
            if session is None:
                raise SessionClosedError(handle)
            if session.source_id is not None:
                self._sources.pop(session.source_id, None)
        session.close()

    def close_all(self) -> None:
        """Close every open session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._sources.clear()
        for session in sessions:
            session.close()

    def open_handles(self) -> list[int]:
        with self._lock:
            return sorted(self._sessions)

    def list_formats(self) -> list[dict[str, Any]]:
        """Registered formats with their capability flags, for option dialogs."""
        return [
            {
                "format_id": d.format_id,
                "name": d.name,
                "version": d.version,
                "description": d.description,
                "abi_version": d.abi_version,
                "execution_model": d.execution_model.value,
                "file_extensions": list(d.file_extensions),
                "capabilities": d.capability_flags(),
            }
            for d in self.registry.descriptors()
        ]

    def __enter__(self) -> "Dispatcher":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close_all()
