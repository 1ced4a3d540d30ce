"""Abstract base class for sandbox implementations.

Provides BaseSandbox ABC that defines the contract every sandbox exposes:
synchronous and asyncio execution plus side-effect-free syntax validation,
with shared configuration and logging setup.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wasm_python_sandbox.core.logging import SandboxLogger
    from wasm_python_sandbox.core.models import ExecutionResult, SandboxConfig


class BaseSandbox(ABC):
    """Abstract base class for sandbox implementations.

    Attributes:
        config: Frozen SandboxConfig with validated limits
        logger: SandboxLogger for structured event logging
    """

    def __init__(self, config: SandboxConfig, logger: SandboxLogger | None = None) -> None:
        """Initialize BaseSandbox with configuration and logger.

        Args:
            config: SandboxConfig with validated resource limits
            logger: Optional SandboxLogger for structured events.
                    If None, creates default logger named 'wasm_python_sandbox'.
        """
        self.config = config

        if logger is None:
            # Import here to avoid circular dependency
            from wasm_python_sandbox.core.logging import SandboxLogger
            self.logger = SandboxLogger()
        else:
            self.logger = logger

    @abstractmethod
    def execute(self, source: str, stdin: str | None = None) -> ExecutionResult:
        """Execute untrusted source in a fresh guest instantiation.

        Implementations must:
        1. Compose guest input (prelude + source, stdin, env)
        2. Instantiate the interpreter with fresh memory bound to the limits
        3. Run it isolated from the caller, racing it against the timeout
        4. Return an ExecutionResult, or raise a SandboxError subclass whose
           ``result`` holds the output captured before the failure

        Args:
            source: Untrusted Python source
            stdin: Optional stdin text overriding the configured one

        Returns:
            ExecutionResult with captured output and metadata
        """

    @abstractmethod
    async def execute_async(self, source: str, stdin: str | None = None) -> ExecutionResult:
        """asyncio variant of execute(); the guest still runs off the event loop."""

    @abstractmethod
    def validate_code(self, source: str) -> bool:
        """Validate source syntax without executing it.

        Args:
            source: Python source to validate

        Returns:
            True if syntax is valid, False otherwise
        """
