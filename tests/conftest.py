"""Shared pytest fixtures for logsandbox tests.

Guest modules are written in WAT and compiled with wasmtime.wat2wasm.
"""

import json
import struct
from pathlib import Path

import pytest
import wasmtime

from logsandbox.core.config import HostSettings
from logsandbox.core.logging import configure_logging, set_verbose
from logsandbox.plugins.artifact import build_abi_section
from logsandbox.plugins.dispatcher import Dispatcher
from logsandbox.plugins.loader import ArtifactLoader
from logsandbox.plugins.manifest import PluginDescriptor, PluginManifest
from logsandbox.plugins.registry import FormatRegistry

# ---------------------------------------------------------------------------
# Guest modules
# ---------------------------------------------------------------------------

# Bump allocator shared by most guests. Heap starts at 1024; dealloc
# rewinds the heap when the freed buffer is the most recent one(s).
RUNTIME = r"""
  (memory (export "memory") 2)
  (global $heap (mut i32) (i32.const 1024))

  (func $alloc (export "alloc") (param $len i32) (result i32)
    (local $ptr i32) (local $end i32) (local $have i32)
    (local.set $ptr (global.get $heap))
    (local.set $end (i32.add (local.get $ptr) (local.get $len)))
    (local.set $have (i32.shl (memory.size) (i32.const 16)))
    (if (i32.gt_u (local.get $end) (local.get $have))
      (then
        (if (i32.eq
              (memory.grow
                (i32.add
                  (i32.shr_u (i32.sub (local.get $end) (local.get $have)) (i32.const 16))
                  (i32.const 1)))
              (i32.const -1))
          (then (return (i32.const 0))))))
    (global.set $heap (local.get $end))
    (local.get $ptr))

  (func $dealloc (export "dealloc") (param $ptr i32) (param $len i32)
    (if (i32.and
          (i32.ge_u (local.get $ptr) (i32.const 1024))
          (i32.lt_u (local.get $ptr) (global.get $heap)))
      (then (global.set $heap (local.get $ptr)))))
"""

CONFIGURE_OK = r"""
  (func (export "configure") (param i32 i32) (result i32)
    (i32.const 0))
"""

# Records: u8 level, u8 kind (0 text, 1 binary), u16 length, payload.
# Level 0 marks end of stream. Entries above the configured threshold
# are dropped.
DLT_GUEST = (
    "(module"
    + RUNTIME
    + r"""
  (global $threshold (mut i32) (i32.const 6))

  (data (i32.const 16) "\"log_level\":\"")
  (data (i32.const 32) "\00\00\00\05\02\01\00\00\04\00\00\00\00\00\00\00\00\00\00\00\00\06\03\00\00\00")
  (data (i32.const 64) "dlt")

  (func $matches (param $p i32) (result i32)
    (local $k i32)
    (block $fail
      (loop $next
        (br_if $fail
          (i32.ne
            (i32.load8_u (i32.add (local.get $p) (local.get $k)))
            (i32.load8_u (i32.add (i32.const 16) (local.get $k)))))
        (local.set $k (i32.add (local.get $k) (i32.const 1)))
        (br_if $next (i32.lt_u (local.get $k) (i32.const 13))))
      (return (i32.const 1)))
    (i32.const 0))

  (func (export "configure") (param $ptr i32) (param $len i32) (result i32)
    (local $i i32) (local $end i32) (local $c i32)
    (if (i32.lt_u (local.get $len) (i32.const 8))
      (then (return (i32.const 1))))
    (if (i32.ne
          (i32.load offset=4 (local.get $ptr))
          (i32.sub (local.get $len) (i32.const 8)))
      (then (return (i32.const 1))))
    (global.set $threshold (i32.const 6))
    (if (i32.lt_u (local.get $len) (i32.const 22))
      (then (return (i32.const 0))))
    (local.set $i (i32.add (local.get $ptr) (i32.const 8)))
    (local.set $end (i32.sub (i32.add (local.get $ptr) (local.get $len)) (i32.const 14)))
    (block $done
      (loop $scan
        (br_if $done (i32.gt_u (local.get $i) (local.get $end)))
        (if (call $matches (local.get $i))
          (then
            (local.set $c (i32.sub (i32.load8_u offset=13 (local.get $i)) (i32.const 97)))
            (if (i32.ge_u (local.get $c) (i32.const 26))
              (then (return (i32.const 2))))
            (local.set $c (i32.load8_u offset=32 (local.get $c)))
            (if (i32.eqz (local.get $c))
              (then (return (i32.const 2))))
            (global.set $threshold (local.get $c))
            (br $done)))
        (local.set $i (i32.add (local.get $i) (i32.const 1)))
        (br $scan)))
    (i32.const 0))

  (func (export "parse") (param $ptr i32) (param $len i32) (result i32)
    (local $out i32) (local $w i32) (local $pos i32) (local $count i32)
    (local $state i32) (local $lvl i32) (local $plen i32) (local $rec i32)
    (local.set $out
      (call $alloc (i32.add (i32.mul (local.get $len) (i32.const 5)) (i32.const 16))))
    (if (i32.eqz (local.get $out))
      (then (return (i32.const 0))))
    (local.set $w (i32.add (local.get $out) (i32.const 16)))
    (block $done
      (loop $next
        (if (i32.gt_u (i32.add (local.get $pos) (i32.const 4)) (local.get $len))
          (then
            (local.set $state (i32.ne (local.get $pos) (local.get $len)))
            (br $done)))
        (local.set $rec (i32.add (local.get $ptr) (local.get $pos)))
        (local.set $lvl (i32.load8_u (local.get $rec)))
        (if (i32.eqz (local.get $lvl))
          (then
            (local.set $pos (i32.add (local.get $pos) (i32.const 4)))
            (local.set $state (i32.const 2))
            (br $done)))
        (local.set $plen (i32.load16_u offset=2 (local.get $rec)))
        (if (i32.gt_u
              (i32.add (i32.add (local.get $pos) (i32.const 4)) (local.get $plen))
              (local.get $len))
          (then
            (local.set $state (i32.const 1))
            (br $done)))
        (if (i32.le_u (local.get $lvl) (global.get $threshold))
          (then
            (i32.store8 (local.get $w)
              (select (i32.const 6) (i32.const 2)
                (i32.eqz (i32.load8_u offset=1 (local.get $rec)))))
            (i32.store8 offset=1 (local.get $w) (local.get $lvl))
            (i32.store16 offset=2 (local.get $w) (i32.const 3))
            (i64.store offset=4 (local.get $w) (i64.const 0))
            (memory.copy (i32.add (local.get $w) (i32.const 12)) (i32.const 64) (i32.const 3))
            (i32.store offset=15 (local.get $w) (local.get $plen))
            (memory.copy
              (i32.add (local.get $w) (i32.const 19))
              (i32.add (local.get $rec) (i32.const 4))
              (local.get $plen))
            (local.set $w (i32.add (local.get $w) (i32.add (local.get $plen) (i32.const 19))))
            (local.set $count (i32.add (local.get $count) (i32.const 1)))))
        (local.set $pos (i32.add (i32.add (local.get $pos) (i32.const 4)) (local.get $plen)))
        (br $next)))
    (i32.store (local.get $out) (i32.sub (i32.sub (local.get $w) (local.get $out)) (i32.const 4)))
    (i32.store8 offset=4 (local.get $out) (i32.const 1))
    (i32.store8 offset=5 (local.get $out) (local.get $state))
    (i32.store16 offset=6 (local.get $out) (i32.const 0))
    (i32.store offset=8 (local.get $out) (local.get $pos))
    (i32.store offset=12 (local.get $out) (local.get $count))
    (local.get $out))
)"""
)


def _simple_guest(parse_body: str, configure: str = CONFIGURE_OK, extra: str = "") -> str:
    return (
        "(module"
        + RUNTIME
        + configure
        + extra
        + '\n  (func (export "parse") (param $ptr i32) (param $len i32) (result i32)\n'
        + parse_body
        + ")\n)"
    )


# Reactor guest: reads the file named by the chunk through host.read_file
# when permitted, otherwise echoes the chunk. One text entry per call.
REACTOR_GUEST = (
    r"""(module
  (import "host" "write_log" (func $write_log (param i32 i32 i32)))
  (import "host" "get_time" (func $get_time (result i64)))
  (import "host" "read_file" (func $read_file (param i32 i32 i32 i32 i64) (result i32)))
"""
    + RUNTIME
    + CONFIGURE_OK
    + r"""
  (global $ready (mut i32) (i32.const 0))
  (data (i32.const 64) "reactor")
  (data (i32.const 80) "initialized")

  (func (export "_initialize")
    (global.set $ready (i32.const 1))
    (call $write_log (i32.const 4) (i32.const 80) (i32.const 11)))

  (func (export "parse") (param $ptr i32) (param $len i32) (result i32)
    (local $out i32) (local $n i32) (local $src i32)
    (if (i32.eqz (global.get $ready))
      (then (unreachable)))
    (local.set $n
      (call $read_file
        (local.get $ptr) (local.get $len) (i32.const 256) (i32.const 256) (i64.const 0)))
    (local.set $src (i32.const 256))
    (if (i32.lt_s (local.get $n) (i32.const 0))
      (then
        (local.set $n (local.get $len))
        (local.set $src (local.get $ptr))))
    (local.set $out (call $alloc (i32.add (local.get $n) (i32.const 64))))
    (i32.store (local.get $out) (i32.add (local.get $n) (i32.const 35)))
    (i32.store8 offset=4 (local.get $out) (i32.const 1))
    (i32.store8 offset=5 (local.get $out) (i32.const 0))
    (i32.store16 offset=6 (local.get $out) (i32.const 0))
    (i32.store offset=8 (local.get $out) (local.get $len))
    (i32.store offset=12 (local.get $out) (i32.const 1))
    (i32.store8 offset=16 (local.get $out) (i32.const 5))
    (i32.store8 offset=17 (local.get $out) (i32.const 0))
    (i32.store16 offset=18 (local.get $out) (i32.const 7))
    (i64.store offset=20 (local.get $out) (call $get_time))
    (memory.copy (i32.add (local.get $out) (i32.const 28)) (i32.const 64) (i32.const 7))
    (i32.store offset=35 (local.get $out) (local.get $n))
    (memory.copy (i32.add (local.get $out) (i32.const 39)) (local.get $src) (local.get $n))
    (local.get $out))
)"""
)

GUESTS = {
    "dlt": DLT_GUEST,
    "reactor": REACTOR_GUEST,
    # never returns from parse
    "spin": _simple_guest("    (loop $spin (br $spin))\n    (i32.const 0)"),
    "trap": _simple_guest("    (unreachable)"),
    # result header at 512 declares a body far past the end of memory
    "overrun": _simple_guest(
        "    (i32.store (i32.const 512) (i32.const 0x7ffffff0))\n    (i32.const 512)"
    ),
    "null_result": _simple_guest("    (i32.const 0)"),
    "bad_status": _simple_guest(
        "    (i32.const 0)",
        configure='\n  (func (export "configure") (param i32 i32) (result i32)\n    (i32.const 7))\n',
    ),
    "no_parse": "(module" + RUNTIME + CONFIGURE_OK + ")",
    "imports_host": (
        '(module\n  (import "host" "get_time" (func $get_time (result i64)))'
        + RUNTIME
        + CONFIGURE_OK
        + '\n  (func (export "parse") (param i32 i32) (result i32) (i32.const 0))\n)'
    ),
    "start_trap": _simple_guest(
        "    (i32.const 0)",
        extra="\n  (func $boom (unreachable))\n  (start $boom)\n",
    ),
}


def compile_guest(name: str, abi_version: int | None = 1) -> bytes:
    """Compile a named guest and append its ABI section."""
    binary = bytes(wasmtime.wat2wasm(GUESTS[name]))
    if abi_version is not None:
        binary += build_abi_section(abi_version)
    return binary


def record(level: int, payload: bytes | str, kind: int = 0) -> bytes:
    """Encode one record for the dlt guest."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return struct.pack("<BBH", level, kind, len(payload)) + payload


END_OF_STREAM = b"\x00\x00\x00\x00"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    configure_logging(log_format="text", quiet=False)
    set_verbose(False)
    yield
    configure_logging(log_format="text", quiet=False)
    set_verbose(False)


@pytest.fixture()
def plugin_root(tmp_path: Path) -> Path:
    root = tmp_path / "plugins"
    root.mkdir()
    return root


@pytest.fixture()
def make_plugin(plugin_root: Path):
    """Return a factory that writes a plugin directory and returns its descriptor."""

    def _make(
        guest: str,
        format_id: str | None = None,
        execution_model: str = "imported",
        capabilities: tuple[str, ...] = (),
        abi_version: int | None = 1,
        manifest_abi: int | None = None,
        **manifest: object,
    ) -> PluginDescriptor:
        format_id = format_id or guest.replace("_", "-")
        plugin_dir = plugin_root / format_id
        plugin_dir.mkdir()
        (plugin_dir / "plugin.wasm").write_bytes(compile_guest(guest, abi_version))
        data = {
            "format_id": format_id,
            "name": f"{format_id} test plugin",
            "version": "1.0.0",
            "abi_version": manifest_abi if manifest_abi is not None else (abi_version or 1),
            "execution_model": execution_model,
            "binary": "plugin.wasm",
            "capabilities": list(capabilities),
            **manifest,
        }
        (plugin_dir / "plugin.json").write_text(json.dumps(data), encoding="utf-8")
        return PluginManifest(**data).to_descriptor(plugin_dir)

    return _make


@pytest.fixture()
def settings(plugin_root: Path, tmp_path: Path) -> HostSettings:
    return HostSettings(
        plugin_dirs=[plugin_root],
        auxiliary_dirs=[],
        invoke_timeout_seconds=2.0,
        max_memory_mb=16,
    )


@pytest.fixture()
def loader(settings: HostSettings) -> ArtifactLoader:
    return ArtifactLoader(settings)


@pytest.fixture()
def dlt(make_plugin) -> PluginDescriptor:
    return make_plugin(
        "dlt",
        capabilities=("log_level_filter", "auxiliary_files"),
        file_extensions=[".dlt"],
    )


@pytest.fixture()
def dispatcher(dlt: PluginDescriptor, loader: ArtifactLoader):
    d = Dispatcher(FormatRegistry([dlt]), loader)
    yield d
    d.close_all()
