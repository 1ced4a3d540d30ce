"""Factory function for creating sandbox instances.

Provides create_sandbox(), the one-call way to get a PythonSandbox from a
config (or keyword overrides) and an optional SharedRuntime.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from wasm_python_sandbox.core.logging import SandboxLogger
from wasm_python_sandbox.core.models import SandboxConfig

if TYPE_CHECKING:
    from wasm_python_sandbox.runtime import SharedRuntime
    from wasm_python_sandbox.sandbox import PythonSandbox


def create_sandbox(
    config: SandboxConfig | Mapping[str, Any] | None = None,
    runtime: SharedRuntime | None = None,
    logger: SandboxLogger | None = None,
    **overrides: Any,
) -> PythonSandbox:
    """Create a PythonSandbox.

    Args:
        config: Optional SandboxConfig or mapping of config fields. If None,
                defaults are used.
        runtime: Optional SharedRuntime to run on. If None, the sandbox gets a
                 dedicated runtime that is released by PythonSandbox.close().
        logger: Optional SandboxLogger. If None, the sandbox creates a default logger.
        **overrides: Config fields applied over ``config`` (e.g. ``timeout=5``)

    Returns:
        PythonSandbox ready to execute code.

    Raises:
        ConfigError: If the resulting configuration is invalid
        LoadError: If the interpreter binary cannot be loaded

    Examples:
        >>> sandbox = create_sandbox(timeout=5, max_memory=32 * 1024 * 1024)
        >>> sandbox.execute("print('hi')").stdout
        'hi\\n'

        >>> with SharedRuntime() as runtime:
        ...     workers = [create_sandbox(runtime=runtime) for _ in range(4)]
    """
    # Import here to avoid circular dependency
    from wasm_python_sandbox.runtime import SandboxOptions
    from wasm_python_sandbox.sandbox import PythonSandbox

    if config is None:
        resolved = SandboxConfig(**overrides)
    elif isinstance(config, SandboxConfig):
        resolved = config.with_overrides(**overrides) if overrides else config
    else:
        resolved = SandboxConfig.model_validate({**dict(config), **overrides})

    options = SandboxOptions(runtime=runtime) if runtime is not None else SandboxOptions()
    return PythonSandbox(config=resolved, options=options, logger=logger)
