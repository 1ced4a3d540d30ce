"""Tests for SandboxConfig validation, the fluent builder and TOML loading."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from wasm_python_sandbox.config import DEFAULT_CONFIG, SandboxConfigBuilder, load_config
from wasm_python_sandbox.core.errors import ConfigError, SandboxError
from wasm_python_sandbox.core.models import (
    DEFAULT_EPOCH_TICK_SECONDS,
    DEFAULT_MAX_MEMORY_BYTES,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_DURATION_SECONDS,
    SandboxConfig,
)


class TestSandboxConfigDefaults:
    """Test default values of SandboxConfig."""

    def test_default_limits(self):
        """Defaults are 30s timeout, 64 MiB memory, 10ms ticks, no fuel."""
        config = SandboxConfig()

        assert config.timeout == DEFAULT_TIMEOUT_SECONDS == 30.0
        assert config.max_memory_bytes == DEFAULT_MAX_MEMORY_BYTES == 64 * 1024 * 1024
        assert config.epoch_tick_interval == DEFAULT_EPOCH_TICK_SECONDS == 0.01
        assert config.max_fuel is None
        assert config.fuel_enabled is False

    def test_default_inputs_are_empty(self):
        """No stdin, no env and no prelude unless configured."""
        config = SandboxConfig()

        assert config.stdin is None
        assert config.env == ()
        assert config.env_dict == {}
        assert config.prelude is None
        assert config.stdout_max_bytes is None
        assert config.stderr_max_bytes is None

    def test_default_interpreter_path_is_a_path(self):
        """interpreter_path falls back to bin/python.wasm when nothing is installed."""
        config = SandboxConfig()
        assert isinstance(config.interpreter_path, Path)
        assert config.interpreter_path.name == "python.wasm"


class TestSandboxConfigValidation:
    """Test that invalid values raise ConfigError before anything runs."""

    @pytest.mark.parametrize("timeout", [0, -1, -0.5])
    def test_non_positive_timeout_rejected(self, timeout):
        with pytest.raises(ConfigError):
            SandboxConfig(timeout=timeout)

    @pytest.mark.parametrize("memory", [0, -1])
    def test_non_positive_memory_rejected(self, memory):
        with pytest.raises(ConfigError):
            SandboxConfig(max_memory_bytes=memory)

    def test_non_positive_tick_rejected(self):
        with pytest.raises(ConfigError):
            SandboxConfig(epoch_tick_interval=0)

    def test_non_positive_fuel_rejected(self):
        with pytest.raises(ConfigError):
            SandboxConfig(max_fuel=0)

    @pytest.mark.parametrize("timeout", [float("inf"), float("nan"), 1e10])
    def test_unbounded_timeout_rejected(self, timeout):
        with pytest.raises(ConfigError):
            SandboxConfig(timeout=timeout)

    @pytest.mark.parametrize("interval", [float("inf"), float("nan"), 1e10])
    def test_unbounded_tick_rejected(self, interval):
        with pytest.raises(ConfigError):
            SandboxConfig(epoch_tick_interval=interval)

    def test_timeout_at_upper_bound_accepted(self):
        assert SandboxConfig(timeout=MAX_DURATION_SECONDS).timeout == MAX_DURATION_SECONDS

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigError):
            SandboxConfig(fuel_budget=100)

    def test_config_error_is_sandbox_error(self):
        """ConfigError belongs to the SandboxError hierarchy and has no result."""
        with pytest.raises(SandboxError) as exc_info:
            SandboxConfig(timeout=-1)
        assert isinstance(exc_info.value, ConfigError)
        assert exc_info.value.result is None

    def test_model_validate_wraps_errors(self):
        with pytest.raises(ConfigError):
            SandboxConfig.model_validate({"max_memory_bytes": "lots"})

    @pytest.mark.parametrize(
        "env",
        [
            {"": "x"},
            {"A=B": "x"},
            {"A\0": "x"},
            {"OK": "bad\0value"},
            [("DUP", "1"), ("DUP", "2")],
            [("ONLY_KEY",)],
        ],
    )
    def test_malformed_env_rejected(self, env):
        with pytest.raises(ConfigError):
            SandboxConfig(env=env)


class TestSandboxConfigCoercion:
    """Test accepted input shapes."""

    def test_timedelta_durations(self):
        config = SandboxConfig(
            timeout=timedelta(seconds=2), epoch_tick_interval=timedelta(milliseconds=5)
        )
        assert config.timeout == 2.0
        assert config.epoch_tick_interval == 0.005

    def test_max_memory_alias(self):
        """max_memory is accepted as an alias of max_memory_bytes."""
        config = SandboxConfig(max_memory=1024 * 1024)
        assert config.max_memory_bytes == 1024 * 1024

    def test_env_dict_preserves_order(self):
        config = SandboxConfig(env={"B": "2", "A": "1"})
        assert config.env == (("B", "2"), ("A", "1"))
        assert list(config.env_dict) == ["B", "A"]

    def test_env_values_coerced_to_str(self):
        config = SandboxConfig(env=[("N", 5)])
        assert config.env_dict == {"N": "5"}

    def test_interpreter_path_from_string(self):
        config = SandboxConfig(interpreter_path="custom/python.wasm")
        assert config.interpreter_path == Path("custom/python.wasm")

    def test_fuel_enabled_with_budget(self):
        config = SandboxConfig(max_fuel=1_000)
        assert config.fuel_enabled is True


class TestSandboxConfigImmutability:
    """Test that configs are frozen and overrides produce new configs."""

    def test_assignment_raises(self):
        config = SandboxConfig()
        with pytest.raises(ValidationError):
            config.timeout = 5

    def test_with_overrides_returns_new_config(self):
        config = SandboxConfig(timeout=5)
        changed = config.with_overrides(timeout=7, env={"A": "1"})

        assert config.timeout == 5
        assert changed.timeout == 7
        assert changed.env_dict == {"A": "1"}

    def test_with_overrides_max_memory_alias(self):
        config = SandboxConfig(max_memory_bytes=2 * 1024 * 1024)
        assert config.with_overrides(max_memory=4 * 1024 * 1024).max_memory_bytes == 4 * 1024 * 1024

    def test_with_overrides_validates(self):
        with pytest.raises(ConfigError):
            SandboxConfig().with_overrides(timeout=0)


class TestSandboxConfigBuilder:
    """Test the fluent builder."""

    def test_builder_from_config_class(self):
        assert isinstance(SandboxConfig.builder(), SandboxConfigBuilder)

    def test_builder_sets_every_field(self):
        config = (
            SandboxConfig.builder()
            .timeout(timedelta(seconds=3))
            .max_memory(8 * 1024 * 1024)
            .max_fuel(5_000)
            .interpreter_path("bin/other.wasm")
            .epoch_tick_interval(0.02)
            .stdin("line\n")
            .env("A", "1")
            .envs({"B": "2"})
            .envs([("C", "3")])
            .prelude("import math")
            .stdout_max_bytes(100)
            .stderr_max_bytes(200)
            .build()
        )

        assert config.timeout == 3.0
        assert config.max_memory_bytes == 8 * 1024 * 1024
        assert config.max_fuel == 5_000
        assert config.interpreter_path == Path("bin/other.wasm")
        assert config.epoch_tick_interval == 0.02
        assert config.stdin == "line\n"
        assert config.env == (("A", "1"), ("B", "2"), ("C", "3"))
        assert config.prelude == "import math"
        assert config.stdout_max_bytes == 100
        assert config.stderr_max_bytes == 200

    def test_builder_validates_on_build(self):
        """Setters only record values; build() raises."""
        builder = SandboxConfig.builder().timeout(-1)
        with pytest.raises(ConfigError):
            builder.build()

    def test_builder_rejects_duplicate_env(self):
        builder = SandboxConfig.builder().env("A", "1").env("A", "2")
        with pytest.raises(ConfigError):
            builder.build()


class TestLoadConfig:
    """Test TOML configuration loading."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.toml")

        assert config.timeout == DEFAULT_CONFIG["timeout"]
        assert config.max_memory_bytes == DEFAULT_CONFIG["max_memory_bytes"]
        assert config.env == ()

    def test_file_values_override_defaults(self, tmp_path):
        path = tmp_path / "sandbox.toml"
        path.write_text(
            'timeout = 5.0\n'
            'max_memory = 33554432\n'
            'max_fuel = 1000000\n'
            'interpreter_path = "bin/python.wasm"\n'
            'prelude = "import json"\n'
            '\n'
            '[env]\n'
            'MODE = "test"\n'
        )

        config = load_config(path)

        assert config.timeout == 5.0
        assert config.max_memory_bytes == 33554432
        assert config.max_fuel == 1_000_000
        assert config.interpreter_path == Path("bin/python.wasm")
        assert config.prelude == "import json"
        assert config.env_dict == {"MODE": "test"}

    def test_keyword_overrides_win(self, tmp_path):
        path = tmp_path / "sandbox.toml"
        path.write_text("timeout = 5.0\n")

        config = load_config(path, timeout=1.5)
        assert config.timeout == 1.5

    def test_keyword_override_beats_file_alias(self, tmp_path):
        path = tmp_path / "sandbox.toml"
        path.write_text("max_memory = 1048576\n")

        config = load_config(path, max_memory_bytes=2 * 1024 * 1024)
        assert config.max_memory_bytes == 2 * 1024 * 1024

    def test_keyword_alias_beats_file_value(self, tmp_path):
        path = tmp_path / "sandbox.toml"
        path.write_text("max_memory_bytes = 1048576\n")

        config = load_config(path, max_memory=2 * 1024 * 1024)
        assert config.max_memory_bytes == 2 * 1024 * 1024

    def test_malformed_toml_raises_config_error(self, tmp_path):
        path = tmp_path / "sandbox.toml"
        path.write_text("timeout = = 5\n")

        with pytest.raises(ConfigError, match="Malformed"):
            load_config(path)

    def test_invalid_values_raise_config_error(self, tmp_path):
        path = tmp_path / "sandbox.toml"
        path.write_text("max_memory_bytes = -1\n")

        with pytest.raises(ConfigError):
            load_config(path)

    def test_default_config_not_mutated(self, tmp_path):
        path = tmp_path / "sandbox.toml"
        path.write_text('[env]\nA = "1"\n')

        load_config(path)
        assert DEFAULT_CONFIG["env"] == {}
