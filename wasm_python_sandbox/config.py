"""Configuration management for sandbox execution.

Provides default limits, TOML-based configuration loading and a fluent
builder for SandboxConfig. Every entry point ends in SandboxConfig
validation, so invalid settings always surface as ConfigError.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Iterable, Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

from wasm_python_sandbox.core.errors import ConfigError
from wasm_python_sandbox.core.models import (
    DEFAULT_EPOCH_TICK_SECONDS,
    DEFAULT_MAX_MEMORY_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
    SandboxConfig,
)

DEFAULT_CONFIG: dict[str, Any] = {
    # Wall-clock budget - bounds infinite loops via epoch interruption
    "timeout": DEFAULT_TIMEOUT_SECONDS,

    # Linear memory cap - prevents memory bombs
    "max_memory_bytes": DEFAULT_MAX_MEMORY_BYTES,

    # Epoch granularity - smaller is more responsive, slightly more overhead
    "epoch_tick_interval": DEFAULT_EPOCH_TICK_SECONDS,

    # Environment whitelist - the guest sees nothing else
    "env": {},
}


def load_config(path: str | os.PathLike[str] = "config/sandbox.toml", **overrides: Any) -> SandboxConfig:
    """Load and merge user configuration with defaults.

    Performs a shallow merge of TOML settings over DEFAULT_CONFIG. The ``env``
    table is merged key by key so a file can add variables without restating
    the defaults. Keyword overrides win over both.

    Args:
        path: Path to the TOML file. If it doesn't exist, defaults are used.
        **overrides: Field values applied last (e.g. ``timeout=5``)

    Returns:
        SandboxConfig: Validated, frozen configuration.

    Raises:
        ConfigError: If the file is malformed or contains invalid values
        OSError: If the file exists but cannot be read
    """
    data: dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Malformed configuration file {path}: {e}") from e

    data = _canonical_names(data)
    merged = DEFAULT_CONFIG | data
    merged["env"] = dict(DEFAULT_CONFIG["env"]) | dict(data.get("env", {}))
    merged |= _canonical_names(overrides)

    # TOML has no native path type
    if "interpreter_path" in merged:
        merged["interpreter_path"] = Path(merged["interpreter_path"])

    return SandboxConfig(**merged)


def _canonical_names(values: Mapping[str, Any]) -> dict[str, Any]:
    """Rename the short ``max_memory`` option to its field name."""
    values = dict(values)
    if "max_memory" in values:
        values["max_memory_bytes"] = values.pop("max_memory")
    return values


class SandboxConfigBuilder:
    """Fluent builder producing a validated SandboxConfig.

    Setters only record values; validation happens once in build().

    Example:
        >>> config = (
        ...     SandboxConfig.builder()
        ...     .timeout(5)
        ...     .max_memory(32 * 1024 * 1024)
        ...     .env("MODE", "test")
        ...     .build()
        ... )
    """

    def __init__(self) -> None:
        self._fields: dict[str, Any] = {}
        self._env: list[tuple[str, str]] = []

    def timeout(self, timeout: float | timedelta) -> SandboxConfigBuilder:
        self._fields["timeout"] = timeout
        return self

    def max_memory(self, max_memory_bytes: int) -> SandboxConfigBuilder:
        self._fields["max_memory_bytes"] = max_memory_bytes
        return self

    def max_fuel(self, fuel: int) -> SandboxConfigBuilder:
        """Enable deterministic instruction limiting."""
        self._fields["max_fuel"] = fuel
        return self

    def interpreter_path(self, path: str | os.PathLike[str]) -> SandboxConfigBuilder:
        self._fields["interpreter_path"] = Path(path)
        return self

    def epoch_tick_interval(self, interval: float | timedelta) -> SandboxConfigBuilder:
        self._fields["epoch_tick_interval"] = interval
        return self

    def stdin(self, data: str) -> SandboxConfigBuilder:
        """Bind text to the guest's stdin (readable via input() / sys.stdin)."""
        self._fields["stdin"] = data
        return self

    def env(self, key: str, value: str) -> SandboxConfigBuilder:
        self._env.append((key, value))
        return self

    def envs(self, pairs: Mapping[str, str] | Iterable[tuple[str, str]]) -> SandboxConfigBuilder:
        items = pairs.items() if isinstance(pairs, Mapping) else pairs
        for key, value in items:
            self._env.append((key, value))
        return self

    def prelude(self, source: str) -> SandboxConfigBuilder:
        """Set source executed before user code in the same namespace."""
        self._fields["prelude"] = source
        return self

    def stdout_max_bytes(self, cap: int) -> SandboxConfigBuilder:
        self._fields["stdout_max_bytes"] = cap
        return self

    def stderr_max_bytes(self, cap: int) -> SandboxConfigBuilder:
        self._fields["stderr_max_bytes"] = cap
        return self

    def build(self) -> SandboxConfig:
        """Validate and return the immutable configuration.

        Raises:
            ConfigError: If any recorded value is invalid
        """
        return SandboxConfig(**self._fields, env=tuple(self._env))
