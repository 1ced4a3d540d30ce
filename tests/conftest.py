"""Shared pytest fixtures for all tests.

Most tests drive small hand-written WAT guests so they run without the
CPython interpreter binary. Tests that need the real interpreter use the
``interpreter_path`` fixture and are skipped when python.wasm is absent.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import wasmtime

from wasm_python_sandbox.core.models import SandboxConfig
from wasm_python_sandbox.runtime import SharedRuntime
from wasm_python_sandbox.runtime_paths import get_interpreter_path

# _start returns immediately
EMPTY_GUEST_WAT = """
(module
  (memory (export "memory") 1)
  (func (export "_start")))
"""

# Writes "hello\\n" to stdout through WASI fd_write
HELLO_GUEST_WAT = """
(module
  (import "wasi_snapshot_preview1" "fd_write"
    (func $fd_write (param i32 i32 i32 i32) (result i32)))
  (memory (export "memory") 1)
  (data (i32.const 16) "hello\\n")
  (func (export "_start")
    (i32.store (i32.const 0) (i32.const 16))
    (i32.store (i32.const 4) (i32.const 6))
    (drop (call $fd_write (i32.const 1) (i32.const 0) (i32.const 1) (i32.const 8)))))
"""

# Writes "partial\\n" to stdout, then spins forever
SPIN_GUEST_WAT = """
(module
  (import "wasi_snapshot_preview1" "fd_write"
    (func $fd_write (param i32 i32 i32 i32) (result i32)))
  (memory (export "memory") 1)
  (data (i32.const 16) "partial\\n")
  (func (export "_start")
    (i32.store (i32.const 0) (i32.const 16))
    (i32.store (i32.const 4) (i32.const 8))
    (drop (call $fd_write (i32.const 1) (i32.const 0) (i32.const 1) (i32.const 8)))
    (loop $forever
      (br $forever))))
"""

# Exits through WASI proc_exit with status 3
EXIT_GUEST_WAT = """
(module
  (import "wasi_snapshot_preview1" "proc_exit" (func $exit (param i32)))
  (memory (export "memory") 1)
  (func (export "_start")
    (call $exit (i32.const 3))))
"""

# Executes an unreachable instruction
UNREACHABLE_GUEST_WAT = """
(module
  (memory (export "memory") 1)
  (func (export "_start")
    unreachable))
"""

# Grows memory by two pages, then returns
GROW_GUEST_WAT = """
(module
  (memory (export "memory") 1)
  (func (export "_start")
    (drop (memory.grow (i32.const 2)))))
"""

# Asks for four more pages; on refusal prints a MemoryError traceback and exits 1
OOM_GUEST_WAT = """
(module
  (import "wasi_snapshot_preview1" "fd_write"
    (func $fd_write (param i32 i32 i32 i32) (result i32)))
  (import "wasi_snapshot_preview1" "proc_exit" (func $exit (param i32)))
  (memory (export "memory") 1)
  (data (i32.const 32)
    "Traceback (most recent call last):\\n  File \\"<string>\\", line 1, in <module>\\nMemoryError\\n")
  (func (export "_start")
    (if (i32.eq (memory.grow (i32.const 4)) (i32.const -1))
      (then
        (i32.store (i32.const 0) (i32.const 32))
        (i32.store (i32.const 4) (i32.const 86))
        (drop (call $fd_write (i32.const 2) (i32.const 0) (i32.const 1) (i32.const 8)))
        (call $exit (i32.const 1))))))
"""

# Prints a bare "MemoryError: spoofed" line to stderr and exits 1 without allocating
SPOOFED_OOM_GUEST_WAT = """
(module
  (import "wasi_snapshot_preview1" "fd_write"
    (func $fd_write (param i32 i32 i32 i32) (result i32)))
  (import "wasi_snapshot_preview1" "proc_exit" (func $exit (param i32)))
  (memory (export "memory") 1)
  (data (i32.const 32) "MemoryError: spoofed\\n")
  (func (export "_start")
    (i32.store (i32.const 0) (i32.const 32))
    (i32.store (i32.const 4) (i32.const 21))
    (drop (call $fd_write (i32.const 2) (i32.const 0) (i32.const 1) (i32.const 8)))
    (call $exit (i32.const 1))))
"""

# Valid module without a WASI entry point
NO_START_WAT = """
(module
  (memory (export "memory") 1))
"""


def write_guest(directory: Path, name: str, wat: str) -> Path:
    """Assemble WAT text into a .wasm file and return its path."""
    path = directory / f"{name}.wasm"
    path.write_bytes(bytes(wasmtime.wat2wasm(wat)))
    return path


@pytest.fixture
def guest_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "guests"
    directory.mkdir()
    return directory


@pytest.fixture
def empty_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "empty", EMPTY_GUEST_WAT)


@pytest.fixture
def hello_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "hello", HELLO_GUEST_WAT)


@pytest.fixture
def spin_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "spin", SPIN_GUEST_WAT)


@pytest.fixture
def exit_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "exit", EXIT_GUEST_WAT)


@pytest.fixture
def unreachable_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "unreachable", UNREACHABLE_GUEST_WAT)


@pytest.fixture
def grow_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "grow", GROW_GUEST_WAT)


@pytest.fixture
def oom_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "oom", OOM_GUEST_WAT)


@pytest.fixture
def spoofed_oom_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "spoofed_oom", SPOOFED_OOM_GUEST_WAT)


@pytest.fixture
def no_start_guest(guest_dir: Path) -> Path:
    return write_guest(guest_dir, "no_start", NO_START_WAT)


@pytest.fixture
def runtime():
    """SharedRuntime released after the test."""
    rt = SharedRuntime(epoch_tick_interval=0.01)
    yield rt
    rt.release()


@pytest.fixture
def fuel_runtime():
    """Fuel-metering SharedRuntime released after the test."""
    rt = SharedRuntime(enable_fuel=True, epoch_tick_interval=0.01)
    yield rt
    rt.release()


@pytest.fixture
def interpreter_path() -> Path:
    """Path to python.wasm, skipping the test when it is not installed."""
    try:
        return get_interpreter_path()
    except FileNotFoundError:
        pytest.skip("python.wasm not found in bin/ - interpreter tests skipped")


@pytest.fixture
def python_config(interpreter_path: Path) -> SandboxConfig:
    """Interpreter config with limits suited to tests."""
    return SandboxConfig(
        interpreter_path=interpreter_path,
        timeout=10.0,
        max_memory_bytes=128 * 1024 * 1024,
    )
