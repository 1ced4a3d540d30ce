"""Tests for the create_sandbox() factory."""

from __future__ import annotations

import pytest

from wasm_python_sandbox.core.errors import ConfigError, LoadError
from wasm_python_sandbox.core.factory import create_sandbox
from wasm_python_sandbox.core.logging import SandboxLogger
from wasm_python_sandbox.core.models import SandboxConfig
from wasm_python_sandbox.sandbox import PythonSandbox


class TestCreateSandbox:
    """Test create_sandbox() configuration handling."""

    def test_from_overrides_only(self, hello_guest):
        sandbox = create_sandbox(interpreter_path=hello_guest, timeout=4)
        try:
            assert isinstance(sandbox, PythonSandbox)
            assert sandbox.config.timeout == 4
            assert sandbox.execute("print('hello')").stdout == "hello\n"
        finally:
            sandbox.close()

    def test_config_with_overrides(self, hello_guest):
        config = SandboxConfig(interpreter_path=hello_guest, timeout=4)
        sandbox = create_sandbox(config, max_memory=8 * 1024 * 1024)
        try:
            assert sandbox.config.timeout == 4
            assert sandbox.config.max_memory_bytes == 8 * 1024 * 1024
            # Passed-in config is untouched
            assert config.max_memory_bytes != 8 * 1024 * 1024
        finally:
            sandbox.close()

    def test_config_used_as_is(self, hello_guest):
        config = SandboxConfig(interpreter_path=hello_guest)
        sandbox = create_sandbox(config)
        try:
            assert sandbox.config is config
        finally:
            sandbox.close()

    def test_mapping_config(self, hello_guest):
        sandbox = create_sandbox({"interpreter_path": str(hello_guest)}, timeout=2)
        try:
            assert sandbox.config.timeout == 2
        finally:
            sandbox.close()

    def test_shared_runtime(self, runtime, hello_guest):
        first = create_sandbox(runtime=runtime, interpreter_path=hello_guest)
        second = create_sandbox(runtime=runtime, interpreter_path=hello_guest)

        assert first.runtime is runtime
        assert second.used_cached_module is True
        assert runtime.compile_count == 1

    def test_custom_logger(self, hello_guest):
        logger = SandboxLogger("factory-test")
        sandbox = create_sandbox(interpreter_path=hello_guest, logger=logger)
        try:
            assert sandbox.logger is logger
        finally:
            sandbox.close()

    def test_invalid_override(self, hello_guest):
        with pytest.raises(ConfigError):
            create_sandbox(interpreter_path=hello_guest, timeout=-1)

    def test_missing_binary(self, tmp_path):
        with pytest.raises(LoadError):
            create_sandbox(interpreter_path=tmp_path / "missing.wasm")
