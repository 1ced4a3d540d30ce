"""Run untrusted Python inside a CPython WebAssembly guest.

Each execution instantiates the precompiled interpreter in a fresh wasmtime
store bounded by a memory cap, an epoch deadline and an optional fuel
budget. Compiled modules are shared through a SharedRuntime.

Example:
    >>> from wasm_python_sandbox import PythonSandbox, SandboxConfig
    >>> sandbox = PythonSandbox(SandboxConfig(timeout=5))
    >>> sandbox.execute("print(1 + 1)").stdout
    '2\\n'
"""

from __future__ import annotations

from wasm_python_sandbox.clock import InterruptionClock
from wasm_python_sandbox.config import DEFAULT_CONFIG, SandboxConfigBuilder, load_config
from wasm_python_sandbox.core import (
    BaseSandbox,
    ConfigError,
    ExecutionMetadata,
    ExecutionResult,
    ExecutionStatus,
    FuelExhausted,
    GuestException,
    LoadError,
    ResourceExceeded,
    SandboxConfig,
    SandboxError,
    SandboxIOError,
    SandboxLogger,
    SandboxState,
    SandboxStateError,
    TimedOut,
    Trapped,
    configure_structlog,
)
from wasm_python_sandbox.core.factory import create_sandbox
from wasm_python_sandbox.core.tracebacks import parse_python_exception
from wasm_python_sandbox.guest_io import GuestIo
from wasm_python_sandbox.limits import FuelBudget, ResourceLimiter
from wasm_python_sandbox.runtime import SandboxOptions, SharedRuntime
from wasm_python_sandbox.runtime_paths import get_interpreter_path
from wasm_python_sandbox.sandbox import PythonSandbox

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_CONFIG",
    "BaseSandbox",
    "ConfigError",
    "ExecutionMetadata",
    "ExecutionResult",
    "ExecutionStatus",
    "FuelBudget",
    "FuelExhausted",
    "GuestException",
    "GuestIo",
    "InterruptionClock",
    "LoadError",
    "PythonSandbox",
    "ResourceExceeded",
    "ResourceLimiter",
    "SandboxConfig",
    "SandboxConfigBuilder",
    "SandboxError",
    "SandboxIOError",
    "SandboxLogger",
    "SandboxOptions",
    "SandboxState",
    "SandboxStateError",
    "SharedRuntime",
    "TimedOut",
    "Trapped",
    "configure_structlog",
    "create_sandbox",
    "get_interpreter_path",
    "load_config",
    "parse_python_exception",
]
