"""Core sandbox abstractions and models.

This module provides the foundational types and interfaces for the WASM
Python sandbox: Pydantic models for configuration and results, the base
sandbox abstraction, the error taxonomy and structured logging.
"""

from __future__ import annotations

from .base import BaseSandbox
from .errors import (
    ConfigError,
    FuelExhausted,
    LoadError,
    ResourceExceeded,
    SandboxError,
    SandboxIOError,
    SandboxStateError,
    TimedOut,
    Trapped,
)
from .logging import SandboxLogger, configure_structlog
from .models import (
    ExecutionMetadata,
    ExecutionResult,
    ExecutionStatus,
    GuestException,
    SandboxConfig,
    SandboxState,
)

__all__ = [
    "BaseSandbox",
    "ConfigError",
    "ExecutionMetadata",
    "ExecutionResult",
    "ExecutionStatus",
    "FuelExhausted",
    "GuestException",
    "LoadError",
    "ResourceExceeded",
    "SandboxConfig",
    "SandboxError",
    "SandboxIOError",
    "SandboxLogger",
    "SandboxState",
    "SandboxStateError",
    "TimedOut",
    "Trapped",
    "configure_structlog",
]
