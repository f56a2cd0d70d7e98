"""Sandbox runtime for plugin guest modules.

Each SandboxInstance owns its own wasmtime engine, store and linear
memory. Calls go through ``invoke``, which bounds guest execution with a
watchdog: the engine runs with epoch interruption and a timer thread
bumps the epoch when the budget expires, trapping the guest at its next
loop header or call. Traps and timeouts are contained at the call
boundary and mark the instance faulted.

Two variants share the same call surface:

- ImportedSandbox: the guest imports nothing and only computes over
  bytes the host writes into its memory.
- ReactorSandbox: the guest may import ``host.read_file``,
  ``host.write_log``, ``host.get_time`` and WASI, and is initialized
  once through its ``_initialize`` export.
"""

import threading
import time
from pathlib import Path
from typing import Any, Callable, ClassVar

from wasmtime import (
    Caller,
    Config,
    Engine,
    FuncType,
    Linker,
    Memory,
    MemoryType,
    Module,
    Store,
    Trap,
    ValType,
    WasiConfig,
    WasmtimeError,
)

from logsandbox.core import logging as log
from logsandbox.core.errors import (
    AllocationFailedError,
    GuestTrapError,
    PluginTimeoutError,
    SessionClosedError,
    SessionFaultedError,
)
from logsandbox.models.entry import Severity
from logsandbox.plugins.artifact import ArtifactFormatError
from logsandbox.plugins.manifest import ExecutionModel, PluginDescriptor

REQUIRED_FUNCTIONS = ("alloc", "dealloc", "configure", "parse")
MEMORY_EXPORT = "memory"
INITIALIZE_EXPORT = "_initialize"

HOST_MODULE = "host"
WASI_MODULE = "wasi_snapshot_preview1"

# host.read_file return codes
READ_DENIED = -1
READ_IO_ERROR = -2

MAX_GUEST_LOG_BYTES = 16 * 1024

_U32_MASK = 0xFFFFFFFF


class HostCallError(Exception):
    """Raised inside a host function; surfaces as a guest trap."""


def _to_signed_i32(value: int) -> int:
    value &= _U32_MASK
    return value - (1 << 32) if value >= (1 << 31) else value


def _trap_reason(exc: BaseException) -> str:
    if isinstance(exc, Trap):
        code = exc.trap_code
        message = exc.message.splitlines()[0] if exc.message else ""
        if code is not None:
            return f"{code.name.lower()}: {message}" if message else code.name.lower()
        return message or "trap"
    return str(exc).splitlines()[0] if str(exc) else type(exc).__name__


class _Watchdog:
    """Bumps the engine epoch when a call outlives its budget."""

    def __init__(self, engine: Engine, budget_seconds: float) -> None:
        self._engine = engine
        self._budget = budget_seconds
        self._timer: threading.Timer | None = None
        self.expired = False

    def _expire(self) -> None:
        self.expired = True
        self._engine.increment_epoch()

    def __enter__(self) -> "_Watchdog":
        self._timer = threading.Timer(self._budget, self._expire)
        self._timer.daemon = True
        self._timer.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._timer is not None:
            self._timer.cancel()


class HostContext:
    """Per-instance state visible to host functions."""

    def __init__(
        self,
        instance_id: int,
        format_id: str,
        allowed_dirs: list[Path] | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.format_id = format_id
        self.allowed_dirs = [d.resolve() for d in allowed_dirs or []]
        self.allowed_files: set[Path] = set()

    def grant_files(self, paths: list[Path]) -> None:
        """Permit the guest to read exactly these files (plus allowed_dirs)."""
        self.allowed_files = {Path(path).resolve() for path in paths}

    def permits(self, path: Path) -> bool:
        """Check whether a guest-requested path may be read."""
        if not path.is_absolute():
            return False
        resolved = path.resolve()
        if resolved in self.allowed_files:
            return True
        return any(d == resolved or d in resolved.parents for d in self.allowed_dirs)


class SandboxInstance:
    """One instantiated guest module and its linear memory.

    Not safe for concurrent use; the owning session serializes calls.
    """

    execution_model: ClassVar[ExecutionModel]

    def __init__(
        self,
        instance_id: int,
        descriptor: PluginDescriptor,
        timeout_seconds: float,
        memory_limit_bytes: int,
        host_context: HostContext | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.descriptor = descriptor
        self.timeout_seconds = timeout_seconds
        self.memory_limit_bytes = memory_limit_bytes
        self.host_context = host_context or HostContext(instance_id, descriptor.format_id)

        config = Config()
        config.epoch_interruption = True
        self._engine: Engine | None = Engine(config)
        self._store: Store | None = Store(self._engine)
        self._store.set_limits(memory_size=memory_limit_bytes)
        self._store.set_epoch_deadline(1)
        self._exports: Any = None
        self._memory: Memory | None = None
        self._instance: Any = None

        self._faulted = False
        self._closed = False

    @property
    def faulted(self) -> bool:
        return self._faulted

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise SessionClosedError(self.instance_id)
        return self._engine

    @classmethod
    def check_module(cls, module: Module) -> None:
        """Verify a compiled module's exports fit the host ABI.

        Raises:
            ArtifactFormatError: If a required export is missing or mistyped
        """
        exports = {e.name: e.type for e in module.exports}
        if not isinstance(exports.get(MEMORY_EXPORT), MemoryType):
            raise ArtifactFormatError(f"missing '{MEMORY_EXPORT}' memory export")
        for name in cls.required_functions():
            if not isinstance(exports.get(name), FuncType):
                raise ArtifactFormatError(f"missing '{name}' function export")
        cls.check_imports(module)

    @classmethod
    def required_functions(cls) -> tuple[str, ...]:
        return REQUIRED_FUNCTIONS

    @classmethod
    def check_imports(cls, module: Module) -> None:
        raise NotImplementedError

    def define_imports(self, linker: Linker) -> None:
        """Define the host functions this variant offers the guest."""
        raise NotImplementedError

    def instantiate(self, module: Module) -> None:
        """Link and instantiate the module, then run variant setup.

        Raises:
            GuestTrapError: If the start function or initializer traps
            PluginTimeoutError: If setup exceeds the invoke budget
            WasmtimeError: If linking or instantiation is rejected
        """
        linker = Linker(self.engine)
        self.define_imports(linker)

        watchdog = _Watchdog(self.engine, self.timeout_seconds)
        try:
            with watchdog:
                self._instance = linker.instantiate(self._store, module)
        except Trap as e:
            self._fault(teardown=True)
            if watchdog.expired:
                raise PluginTimeoutError("<start>", self.timeout_seconds) from e
            raise GuestTrapError("<start>", _trap_reason(e)) from e

        self._exports = self._instance.exports(self._store)
        memory = self._exports.get(MEMORY_EXPORT)
        if not isinstance(memory, Memory):
            raise ArtifactFormatError(f"'{MEMORY_EXPORT}' export is not a memory")
        self._memory = memory
        log.debug(
            f"Instantiated {self.execution_model.value} sandbox",
            instance=self.instance_id,
            format_id=self.descriptor.format_id,
            memory_bytes=self.memory_size(),
        )
        self._after_instantiate()

    def _after_instantiate(self) -> None:
        pass

    def _ensure_usable(self) -> None:
        if self._closed and not self._faulted:
            raise SessionClosedError(self.instance_id)
        if self._faulted:
            raise SessionFaultedError(self.instance_id)

    def _fault(self, teardown: bool = False) -> None:
        self._faulted = True
        if teardown:
            self._release()

    def invoke(self, function_name: str, *args: int) -> int | None:
        """Call an exported guest function under the execution budget.

        Args:
            function_name: Export to call
            *args: Integer arguments (u32 values are passed as i32)

        Returns:
            The i32 result as an unsigned value, or None for no result

        Raises:
            GuestTrapError: If the guest traps; the instance becomes faulted
            PluginTimeoutError: If the budget expires; the instance is torn down
            SessionClosedError: If the instance is closed or faulted
        """
        self._ensure_usable()
        func = self._exports.get(function_name)
        if func is None or not isinstance(func.type(self._store), FuncType):
            raise ValueError(f"guest has no function export '{function_name}'")

        func_type = func.type(self._store)
        params = [
            _to_signed_i32(a) if ty == ValType.i32() else a
            for a, ty in zip(args, func_type.params)
        ]

        self._store.set_epoch_deadline(1)
        watchdog = _Watchdog(self._engine, self.timeout_seconds)
        try:
            with watchdog:
                result = func(self._store, *params)
        except (Trap, WasmtimeError, HostCallError) as e:
            if watchdog.expired:
                self._fault(teardown=True)
                log.error(
                    f"Plugin call '{function_name}' timed out, instance torn down",
                    instance=self.instance_id,
                    format_id=self.descriptor.format_id,
                    budget_seconds=self.timeout_seconds,
                )
                raise PluginTimeoutError(function_name, self.timeout_seconds) from e
            self._fault()
            reason = _trap_reason(e)
            log.error(
                f"Plugin trapped in '{function_name}': {reason}",
                instance=self.instance_id,
                format_id=self.descriptor.format_id,
            )
            raise GuestTrapError(
                function_name, reason, {"instance": self.instance_id}
            ) from e

        results = func_type.results
        if len(results) == 1 and results[0] == ValType.i32() and isinstance(result, int):
            return result & _U32_MASK
        return result

    def alloc(self, length: int) -> int:
        """Allocate a guest buffer through the guest's own allocator.

        Raises:
            AllocationFailedError: If the guest returns null or an out-of-memory region
        """
        ptr = self.invoke("alloc", length)
        if not ptr or ptr + length > self.memory_size():
            raise AllocationFailedError(length, ptr)
        return ptr

    def dealloc(self, ptr: int, length: int) -> None:
        """Return a buffer to the guest allocator."""
        self.invoke("dealloc", ptr, length)

    def memory_size(self) -> int:
        """Current size of the guest's linear memory in bytes."""
        self._ensure_usable()
        return self._memory.data_len(self._store)

    def read_memory(self, ptr: int, length: int) -> bytes:
        """Copy bytes out of guest memory.

        Raises:
            IndexError: If the range lies outside guest memory
        """
        size = self.memory_size()
        if ptr < 0 or length < 0 or ptr + length > size:
            raise IndexError(f"guest read [{ptr}, {ptr + length}) outside memory of {size} bytes")
        return bytes(self._memory.read(self._store, ptr, ptr + length))

    def write_memory(self, ptr: int, data: bytes) -> None:
        """Copy bytes into guest memory.

        Raises:
            IndexError: If the range lies outside guest memory
        """
        size = self.memory_size()
        if ptr < 0 or ptr + len(data) > size:
            raise IndexError(f"guest write [{ptr}, {ptr + len(data)}) outside memory of {size} bytes")
        self._memory.write(self._store, data, ptr)

    def grant_files(self, paths: list[Path]) -> None:
        """Set the files host-mediated reads may touch, where the model has any."""
        self.host_context.grant_files(list(paths))

    def _release(self) -> None:
        self._exports = None
        self._memory = None
        self._instance = None
        self._store = None
        self._engine = None
        self._closed = True

    def close(self) -> None:
        """Release the instance and its memory. Safe to call repeatedly."""
        if self._store is None:
            self._closed = True
            return
        self._release()
        log.debug("Sandbox released", instance=self.instance_id, format_id=self.descriptor.format_id)


class ImportedSandbox(SandboxInstance):
    """Guest with no host imports."""

    execution_model = ExecutionModel.IMPORTED

    @classmethod
    def check_imports(cls, module: Module) -> None:
        if module.imports:
            names = ", ".join(f"{i.module}.{i.name}" for i in module.imports)
            raise ArtifactFormatError(f"imported-model artifact declares imports: {names}")

    def define_imports(self, linker: Linker) -> None:
        pass


class ReactorSandbox(SandboxInstance):
    """Guest that performs host-mediated I/O and is initialized once."""

    execution_model = ExecutionModel.REACTOR

    @classmethod
    def required_functions(cls) -> tuple[str, ...]:
        return REQUIRED_FUNCTIONS + (INITIALIZE_EXPORT,)

    @classmethod
    def check_imports(cls, module: Module) -> None:
        for imp in module.imports:
            if imp.module == WASI_MODULE:
                continue
            if imp.module == HOST_MODULE and imp.name in HOST_FUNCTIONS:
                continue
            raise ArtifactFormatError(f"reactor artifact imports unknown function {imp.module}.{imp.name}")

    def define_imports(self, linker: Linker) -> None:
        wasi = WasiConfig()
        self._store.set_wasi(wasi)
        linker.define_wasi()

        for name, (params, results, factory, needs_caller) in HOST_FUNCTIONS.items():
            ty = FuncType(params(), results())
            linker.define_func(
                HOST_MODULE, name, ty, factory(self.host_context), access_caller=needs_caller
            )

    def _after_instantiate(self) -> None:
        self.invoke(INITIALIZE_EXPORT)
        log.debug("Reactor initialized", instance=self.instance_id, format_id=self.descriptor.format_id)


# Host functions


def _guest_memory(caller: Caller) -> Memory:
    memory = caller.get(MEMORY_EXPORT)
    if not isinstance(memory, Memory):
        raise HostCallError("guest exports no memory")
    return memory


def _read_guest(caller: Caller, ptr: int, length: int) -> bytes:
    memory = _guest_memory(caller)
    ptr &= _U32_MASK
    length &= _U32_MASK
    if ptr + length > memory.data_len(caller):
        raise HostCallError(f"guest pointer [{ptr}, {ptr + length}) outside memory")
    return bytes(memory.read(caller, ptr, ptr + length))


def _write_guest(caller: Caller, ptr: int, data: bytes) -> None:
    memory = _guest_memory(caller)
    ptr &= _U32_MASK
    if ptr + len(data) > memory.data_len(caller):
        raise HostCallError(f"guest pointer [{ptr}, {ptr + len(data)}) outside memory")
    memory.write(caller, data, ptr)


_GUEST_LOG_LEVELS = {
    Severity.FATAL: "error",
    Severity.ERROR: "error",
    Severity.WARN: "warning",
    Severity.INFO: "info",
    Severity.DEBUG: "debug",
    Severity.VERBOSE: "debug",
}


def _make_write_log(ctx: HostContext) -> Callable[..., None]:
    def write_log(caller: Caller, level: int, ptr: int, length: int) -> None:
        length = min(length & _U32_MASK, MAX_GUEST_LOG_BYTES)
        text = _read_guest(caller, ptr, length).decode("utf-8", errors="replace")
        try:
            log_level = _GUEST_LOG_LEVELS[Severity(level)]
        except ValueError:
            log_level = "info"
        log.log(
            f"[{ctx.format_id}#{ctx.instance_id}] {text}",
            level=log_level,
            plugin=ctx.format_id,
            instance=ctx.instance_id,
        )

    return write_log


def _make_get_time(ctx: HostContext) -> Callable[[], int]:
    def get_time() -> int:
        return time.time_ns()

    return get_time


def _make_read_file(ctx: HostContext) -> Callable[..., int]:
    def read_file(
        caller: Caller,
        path_ptr: int,
        path_len: int,
        buf_ptr: int,
        buf_len: int,
        offset: int,
    ) -> int:
        raw_path = _read_guest(caller, path_ptr, path_len)
        if b"\x00" in raw_path:
            return READ_DENIED
        try:
            path = Path(raw_path.decode("utf-8"))
        except UnicodeDecodeError:
            return READ_DENIED
        if not ctx.permits(path):
            log.warning(
                f"Plugin read of '{path}' denied",
                plugin=ctx.format_id,
                instance=ctx.instance_id,
            )
            return READ_DENIED
        if offset < 0:
            return READ_IO_ERROR
        buf_len &= _U32_MASK
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                data = f.read(min(buf_len, 0x7FFFFFFF))
        except OSError as e:
            log.warning(
                f"Plugin read of '{path}' failed: {e}",
                plugin=ctx.format_id,
                instance=ctx.instance_id,
            )
            return READ_IO_ERROR
        _write_guest(caller, buf_ptr, data)
        return len(data)

    return read_file


# name -> (param types, result types, factory, takes caller)
HOST_FUNCTIONS: dict[str, tuple[Callable[[], list], Callable[[], list], Callable[[HostContext], Callable], bool]] = {
    "write_log": (
        lambda: [ValType.i32(), ValType.i32(), ValType.i32()],
        lambda: [],
        _make_write_log,
        True,
    ),
    "get_time": (
        lambda: [],
        lambda: [ValType.i64()],
        _make_get_time,
        False,
    ),
    "read_file": (
        lambda: [ValType.i32(), ValType.i32(), ValType.i32(), ValType.i32(), ValType.i64()],
        lambda: [ValType.i32()],
        _make_read_file,
        True,
    ),
}

SANDBOX_TYPES: dict[ExecutionModel, type[SandboxInstance]] = {
    ExecutionModel.IMPORTED: ImportedSandbox,
    ExecutionModel.REACTOR: ReactorSandbox,
}
