"""Pydantic models for type-safe sandbox configuration and results.

Provides the frozen SandboxConfig, lifecycle/status enums and the
ExecutionResult/ExecutionMetadata output contract. Validation happens once,
at construction; invalid input raises ConfigError.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from wasm_python_sandbox.core.errors import ConfigError

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_MEMORY_BYTES = 64 * 1024 * 1024
DEFAULT_EPOCH_TICK_SECONDS = 0.01

# Upper bound for timeout and epoch_tick_interval (one week)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60.0


def _default_interpreter_path() -> Path:
    # Import here to avoid a hard dependency on binary discovery at import time
    from wasm_python_sandbox.runtime_paths import get_interpreter_path

    try:
        return get_interpreter_path()
    except FileNotFoundError:
        return Path("bin/python.wasm")


class ExecutionStatus(str, Enum):
    """Terminal outcome of one guest run."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"
    FUEL_EXHAUSTED = "fuel_exhausted"
    TRAPPED = "trapped"


class SandboxState(str, Enum):
    """Lifecycle of a PythonSandbox.

    created -> configuring -> instantiated -> running -> terminal state.
    LOAD_ERROR is only reachable while configuring.
    """

    CREATED = "created"
    CONFIGURING = "configuring"
    INSTANTIATED = "instantiated"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"
    FUEL_EXHAUSTED = "fuel_exhausted"
    TRAPPED = "trapped"
    LOAD_ERROR = "load_error"


class SandboxConfig(BaseModel):
    """Immutable configuration for one sandbox.

    Defines resource limits (timeout, memory, optional fuel), the interpreter
    binary and the guest's inputs. All fields are validated at construction
    time and the model is frozen afterwards.

    Attributes:
        timeout: Wall-clock budget in seconds (also accepts a timedelta)
        max_memory_bytes: Linear memory cap in bytes (alias: max_memory)
        max_fuel: Optional instruction budget; None disables fuel limiting
        interpreter_path: Path to the precompiled python.wasm binary
        epoch_tick_interval: Seconds between epoch ticks (also accepts a timedelta)
        stdin: Text bound to the guest's stdin (None = immediate EOF)
        env: Ordered (key, value) pairs visible to the guest, unique keys
        prelude: Python source prepended to every submitted program
        stdout_max_bytes: Optional cap on captured stdout
        stderr_max_bytes: Optional cap on captured stderr
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    timeout: float = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        gt=0,
        le=MAX_DURATION_SECONDS,
        allow_inf_nan=False,
        description="Wall-clock budget in seconds",
    )

    max_memory_bytes: int = Field(
        default=DEFAULT_MAX_MEMORY_BYTES,
        gt=0,
        validation_alias=AliasChoices("max_memory_bytes", "max_memory"),
        description="Linear memory cap in bytes",
    )

    max_fuel: int | None = Field(
        default=None,
        gt=0,
        description="Instruction budget (None = unlimited)",
    )

    interpreter_path: Path = Field(
        default_factory=_default_interpreter_path,
        description="Precompiled Python interpreter WASM binary",
    )

    epoch_tick_interval: float = Field(
        default=DEFAULT_EPOCH_TICK_SECONDS,
        gt=0,
        le=MAX_DURATION_SECONDS,
        allow_inf_nan=False,
        description="Seconds between epoch ticks",
    )

    stdin: str | None = Field(
        default=None,
        description="Text bound to guest stdin",
    )

    env: tuple[tuple[str, str], ...] = Field(
        default=(),
        description="Environment variables exposed to the guest (nothing is inherited)",
    )

    prelude: str | None = Field(
        default=None,
        description="Source prepended to user code",
    )

    stdout_max_bytes: int | None = Field(
        default=None,
        gt=0,
        description="Maximum stdout capture size (None = unbounded)",
    )

    stderr_max_bytes: int | None = Field(
        default=None,
        gt=0,
        description="Maximum stderr capture size (None = unbounded)",
    )

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid sandbox configuration: {e}") from e

    @classmethod
    def model_validate(
        cls,
        obj: Any,
        *,
        strict: bool | None = None,
        context: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> SandboxConfig:
        try:
            return super().model_validate(obj, strict=strict, context=context, **kwargs)
        except ValidationError as e:
            raise ConfigError(f"Invalid sandbox configuration: {e}") from e

    @classmethod
    def builder(cls) -> Any:
        """Return a fluent SandboxConfigBuilder."""
        from wasm_python_sandbox.config import SandboxConfigBuilder

        return SandboxConfigBuilder()

    @field_validator("timeout", "epoch_tick_interval", mode="before")
    @classmethod
    def coerce_duration(cls, v: Any) -> Any:
        """Accept timedelta values for durations."""
        if isinstance(v, timedelta):
            return v.total_seconds()
        return v

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> Any:
        """Normalize env to ordered unique pairs; reject malformed keys."""
        if v is None:
            return ()
        pairs = list(v.items()) if isinstance(v, Mapping) else list(v)

        seen: set[str] = set()
        normalized: list[tuple[str, str]] = []
        for pair in pairs:
            if len(pair) != 2:
                raise ValueError(f"env entries must be (key, value) pairs, got {pair!r}")
            key, value = pair
            key, value = str(key), str(value)
            if not key or "=" in key or "\0" in key:
                raise ValueError(f"invalid environment variable name: {key!r}")
            if "\0" in value:
                raise ValueError(f"environment value for {key!r} contains NUL")
            if key in seen:
                raise ValueError(f"duplicate environment variable: {key!r}")
            seen.add(key)
            normalized.append((key, value))
        return tuple(normalized)

    @property
    def env_dict(self) -> dict[str, str]:
        """The configured environment as a dict (insertion ordered)."""
        return dict(self.env)

    @property
    def fuel_enabled(self) -> bool:
        return self.max_fuel is not None

    def with_overrides(self, **changes: Any) -> SandboxConfig:
        """Return a new validated config with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        if "max_memory" in changes:
            data.pop("max_memory_bytes", None)
        return type(self)(**data)


class GuestException(BaseModel):
    """Python exception reported by the guest on stderr.

    Attributes:
        exception_type: Exception class name (e.g. "ValueError")
        message: Text after the colon ("" if none)
        traceback: Traceback block ending at the exception line, if present
    """

    exception_type: str
    message: str = ""
    traceback: str | None = None


class ExecutionMetadata(BaseModel):
    """Resource accounting for one guest run.

    Attributes:
        duration_ms: Wall-clock time from instantiation to return
        peak_memory_bytes: Largest linear memory size observed
        fuel_consumed: Instructions consumed (None if fuel was not enabled)
        timed_out: Whether the epoch deadline or wall-clock supervisor fired
        used_cached_module: Whether the compiled module came from a cache
        stdout_truncated: Whether stdout hit stdout_max_bytes
        stderr_truncated: Whether stderr hit stderr_max_bytes
        trap_message: Raw wasmtime trap text when the guest trapped
    """

    duration_ms: float = Field(default=0.0, ge=0)
    peak_memory_bytes: int = Field(default=0, ge=0)
    fuel_consumed: int | None = None
    timed_out: bool = False
    used_cached_module: bool = False
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    trap_message: str | None = None


class ExecutionResult(BaseModel):
    """Output contract of PythonSandbox.execute().

    Attributes:
        stdout: Captured guest stdout (lossy UTF-8)
        stderr: Captured guest stderr (lossy UTF-8)
        exit_code: Guest exit status (0 = success)
        status: Terminal ExecutionStatus
        metadata: ExecutionMetadata for the run
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "stdout": "2\n",
                    "stderr": "",
                    "exit_code": 0,
                    "status": "completed",
                    "metadata": {
                        "duration_ms": 84.2,
                        "peak_memory_bytes": 12_058_624,
                        "fuel_consumed": None,
                        "timed_out": False,
                        "used_cached_module": True,
                    },
                }
            ]
        }
    }

    @property
    def success(self) -> bool:
        """True when the guest ran to completion and exited with 0."""
        return self.status is ExecutionStatus.COMPLETED and self.exit_code == 0

    def exception(self) -> GuestException | None:
        """Parse the guest's Python exception from stderr, if any."""
        from wasm_python_sandbox.core.tracebacks import parse_python_exception

        return parse_python_exception(self.stderr)
