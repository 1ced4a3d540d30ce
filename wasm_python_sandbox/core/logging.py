"""Structured logging for sandbox execution events and security monitoring.

Provides SandboxLogger class that uses structlog for structured event emission
(execution.start, execution.complete, security events, module cache and clock
lifecycle). Configures structlog with console rendering by default but allows
custom configuration.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from wasm_python_sandbox.core.models import ExecutionResult, SandboxConfig


def configure_structlog(level: int = logging.INFO, use_json: bool = False) -> None:
    """Route sandbox events through structlog.

    Args:
        level: Minimum log level (default: logging.INFO)
        use_json: Render one JSON object per event instead of console output
    """
    renderer: Any = (
        structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class SandboxLogger:
    """Emits sandbox lifecycle and security events.

    Every event has a short name (``execution.start``) and a namespaced
    ``log_message`` (``sandbox.execution.start``). The wrapped logger may be a
    structlog logger or a stdlib ``logging.Logger``; the latter receives the
    fields through ``extra``.
    """

    _PATH_TRUNCATION_SUFFIX = "...[truncated]"
    _MAX_PATH_LENGTH = 140

    def __init__(self, logger: Any = None) -> None:
        """Wrap ``logger``.

        Args:
            logger: structlog logger, logging.Logger, a logger name, or None for
                    the structlog logger named 'wasm_python_sandbox'.
        """
        if logger is None or isinstance(logger, str):
            logger = structlog.get_logger(logger or "wasm_python_sandbox")
        self._logger = logger

    @property
    def logger(self) -> Any:
        return self._logger

    def _emit(self, level: int, event: str, **fields: Any) -> None:
        log_message = f"sandbox.{event}"
        if isinstance(self._logger, logging.Logger):
            self._logger.log(
                level, log_message, extra={"event": event, "log_message": log_message, **fields}
            )
            return
        method = getattr(self._logger, logging.getLevelName(level).lower())
        method(event, log_message=log_message, **fields)

    def _truncate_path(self, path: str) -> str:
        if len(path) <= self._MAX_PATH_LENGTH:
            return path
        return path[: self._MAX_PATH_LENGTH - len(self._PATH_TRUNCATION_SUFFIX)] + (
            self._PATH_TRUNCATION_SUFFIX
        )

    def log_execution_start(
        self, config: SandboxConfig, source_bytes: int, **extra: Any
    ) -> None:
        """Log the start of a sandbox execution with the effective limits.

        Args:
            config: SandboxConfig in effect for the run
            source_bytes: Size of the composed guest source
            **extra: Additional key-value pairs to include in log event
        """
        limits = {
            "timeout": config.timeout,
            "max_memory_bytes": config.max_memory_bytes,
            "max_fuel": config.max_fuel,
            "epoch_tick_interval": config.epoch_tick_interval,
            "env_count": len(config.env),
            "has_stdin": config.stdin is not None,
            "has_prelude": config.prelude is not None,
            "interpreter_path": self._truncate_path(str(config.interpreter_path)),
        }

        self._emit(
            logging.INFO,
            "execution.start",
            source_bytes=source_bytes,
            **limits,
            **extra,
        )

    def log_execution_complete(self, result: ExecutionResult, **extra: Any) -> None:
        """Log the completion of a sandbox execution with result metrics.

        Args:
            result: ExecutionResult (possibly partial) of the run
            **extra: Additional key-value pairs to include in log event
        """
        metadata = result.metadata
        self._emit(
            logging.INFO,
            "execution.complete",
            status=result.status.value,
            success=result.success,
            exit_code=result.exit_code,
            duration_ms=metadata.duration_ms,
            peak_memory_bytes=metadata.peak_memory_bytes,
            fuel_consumed=metadata.fuel_consumed,
            timed_out=metadata.timed_out,
            used_cached_module=metadata.used_cached_module,
            stdout_bytes=len(result.stdout),
            stderr_bytes=len(result.stderr),
            stdout_truncated=metadata.stdout_truncated,
            stderr_truncated=metadata.stderr_truncated,
            **extra,
        )

    def log_security_event(self, event_type: str, details: dict[str, Any]) -> None:
        """Log a security-relevant event at WARNING level.

        Args:
            event_type: Type of security event (e.g., "timeout",
                       "memory_limit_exceeded", "fuel_exhausted", "trap")
            details: Dict containing event-specific details
        """
        self._emit(logging.WARNING, f"security.{event_type}", **details)

    def log_module_compiled(
        self, path: str, digest: str, duration_ms: float, source: str
    ) -> None:
        """Log that a module was compiled or loaded into the cache.

        Args:
            path: Interpreter binary path
            digest: SHA-256 of the binary
            duration_ms: Time spent compiling or deserializing
            source: "compile" or "disk_cache"
        """
        self._emit(
            logging.INFO,
            "module.compiled",
            path=self._truncate_path(path),
            digest=digest,
            duration_ms=duration_ms,
            source=source,
        )

    def log_module_cache_hit(self, path: str, digest: str) -> None:
        self._emit(
            logging.DEBUG,
            "module.cache_hit",
            path=self._truncate_path(path),
            digest=digest,
        )

    def log_disk_cache_error(self, artifact: str, error: str) -> None:
        """Log an unusable on-disk artifact; the module is recompiled."""
        self._emit(
            logging.WARNING,
            "module.disk_cache_error",
            artifact=self._truncate_path(artifact),
            error=error,
        )

    def log_clock_started(self, tick_interval: float) -> None:
        self._emit(logging.DEBUG, "clock.started", tick_interval=tick_interval)

    def log_clock_stopped(self, epoch: int) -> None:
        self._emit(logging.DEBUG, "clock.stopped", epoch=epoch)

    def log_runtime_released(self, cached_modules: int) -> None:
        self._emit(logging.INFO, "runtime.released", cached_modules=cached_modules)
