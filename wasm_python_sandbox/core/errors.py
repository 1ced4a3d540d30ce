"""Exception classes for sandbox errors and validation failures.

Every failure path of a sandboxed run maps to exactly one subclass of
SandboxError. Runtime failures carry the partial ExecutionResult captured up to
the point of failure so callers never lose guest output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wasm_python_sandbox.core.models import ExecutionResult


class SandboxError(Exception):
    """Base exception for all sandbox failures.

    Catch this type to handle any sandbox-related error. Errors raised after
    the guest started expose whatever was captured through ``result``.

    Attributes:
        result: Partial ExecutionResult (stdout, stderr, metadata) or None
            when the failure happened before any guest code ran.
    """

    def __init__(self, message: str, result: ExecutionResult | None = None) -> None:
        super().__init__(message)
        self.result = result

    @property
    def stdout(self) -> str:
        """Guest stdout captured before the failure ("" if none)."""
        return self.result.stdout if self.result is not None else ""

    @property
    def stderr(self) -> str:
        """Guest stderr captured before the failure ("" if none)."""
        return self.result.stderr if self.result is not None else ""


class ConfigError(SandboxError):
    """Raised when a sandbox configuration is invalid.

    Wraps pydantic ValidationError with a domain-specific name. No guest code
    runs when this is raised.
    """

    pass


class LoadError(SandboxError):
    """Raised when the interpreter binary is missing, unreadable or malformed."""

    pass


class ResourceExceeded(SandboxError):
    """Raised when the guest hit the linear memory cap.

    The store refuses a ``memory.grow`` past the cap, but wasmtime-py exposes
    no limiter callback, so the refusal itself is not observable. A run is
    reported here when it trapped with an allocation failure on stderr, or
    exited non-zero with stderr ending in a ``MemoryError`` traceback. Both
    signals are guest-written text: a program that prints such a traceback
    and exits non-zero is reported the same way.
    """

    pass


class FuelExhausted(SandboxError):
    """Raised when the guest consumed its whole instruction budget."""

    pass


class TimedOut(SandboxError):
    """Raised when the epoch deadline or the wall-clock supervisor fired."""

    pass


class Trapped(SandboxError):
    """Raised for guest-level WASM faults unrelated to configured limits.

    Examples are ``unreachable`` instructions, stack overflow or out-of-bounds
    memory access inside the interpreter binary.
    """

    pass


class SandboxIOError(SandboxError):
    """Raised when the host fails to set up or read guest streams."""

    pass


class SandboxStateError(SandboxError):
    """Raised when a sandbox is used after its guest was interrupted."""

    pass
