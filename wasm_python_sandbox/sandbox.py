"""PythonSandbox: orchestration layer for running untrusted Python in WASM.

Provides the PythonSandbox class that wraps the low-level host.run_guest()
with a validated SandboxConfig, a shared or dedicated runtime, a wall-clock
supervisor, structured logging and the typed ExecutionResult/SandboxError
contract.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
import time
from collections.abc import Mapping
from typing import Any, NoReturn

from wasmtime import Module

from wasm_python_sandbox.clock import deadline_ticks
from wasm_python_sandbox.core.base import BaseSandbox
from wasm_python_sandbox.core.errors import (
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
from wasm_python_sandbox.core.logging import SandboxLogger
from wasm_python_sandbox.core.models import (
    ExecutionMetadata,
    ExecutionResult,
    ExecutionStatus,
    SandboxConfig,
    SandboxState,
)
from wasm_python_sandbox.guest_io import CapturedOutput, GuestIo, compose_source
from wasm_python_sandbox.host import (
    GuestOutcome,
    guest_raised_memory_error,
    guest_reported_oom,
    run_guest,
    trap_notice,
)
from wasm_python_sandbox.limits import FuelBudget, ResourceLimiter
from wasm_python_sandbox.runtime import SandboxOptions, SharedRuntime

# Extra ticks the wall-clock supervisor waits beyond the epoch deadline
SUPERVISOR_GRACE_TICKS = 2

# Once the supervisor fires, how long to wait for the epoch trap to end the worker
SUPERVISOR_DRAIN_SECONDS = 0.5

_STATUS_ERRORS: dict[ExecutionStatus, type[SandboxError]] = {
    ExecutionStatus.TIMED_OUT: TimedOut,
    ExecutionStatus.RESOURCE_EXCEEDED: ResourceExceeded,
    ExecutionStatus.FUEL_EXHAUSTED: FuelExhausted,
    ExecutionStatus.TRAPPED: Trapped,
}

_STATUS_MESSAGES: dict[ExecutionStatus, str] = {
    ExecutionStatus.TIMED_OUT: "Execution exceeded the {timeout}s timeout",
    ExecutionStatus.RESOURCE_EXCEEDED: "Execution exceeded the {max_memory_bytes} byte memory limit",
    ExecutionStatus.FUEL_EXHAUSTED: "Execution exhausted its fuel budget of {max_fuel}",
    ExecutionStatus.TRAPPED: "Guest trapped: {trap}",
}

_SECURITY_EVENTS: dict[ExecutionStatus, str] = {
    ExecutionStatus.TIMED_OUT: "timeout",
    ExecutionStatus.RESOURCE_EXCEEDED: "memory_limit_exceeded",
    ExecutionStatus.FUEL_EXHAUSTED: "fuel_exhausted",
    ExecutionStatus.TRAPPED: "trap",
}


class _GuestRun:
    """One in-flight execution: its I/O, limiter, fuel budget and worker thread."""

    def __init__(self, sandbox: PythonSandbox, source: str, stdin: str | None) -> None:
        config = sandbox.config
        self.io = GuestIo(
            source=source,
            env=config.env,
            stdin=stdin,
            stdout_max_bytes=config.stdout_max_bytes,
            stderr_max_bytes=config.stderr_max_bytes,
        )
        self.limiter = ResourceLimiter(config.max_memory_bytes)
        self.fuel = FuelBudget(config.max_fuel, sandbox.runtime.fuel_enabled)
        self.future: concurrent.futures.Future[tuple[GuestOutcome, CapturedOutput]] = (
            concurrent.futures.Future()
        )
        self.supervisor_timeout = config.timeout + (
            SUPERVISOR_GRACE_TICKS * sandbox.runtime.epoch_tick_interval
        )
        self._sandbox = sandbox
        self.started = 0.0
        self.finished: float | None = None
        self.partial = CapturedOutput("", "")

    @property
    def duration_ms(self) -> float:
        end = self.finished if self.finished is not None else time.perf_counter()
        return (end - self.started) * 1000

    def start(self) -> None:
        self.io.open()
        clock = self._sandbox.runtime.clock
        clock.acquire()
        self.started = time.perf_counter()
        worker = threading.Thread(target=self._work, name="sandbox-guest", daemon=True)
        try:
            worker.start()
        except RuntimeError:
            clock.release()
            self.io.close()
            raise

    def _work(self) -> None:
        sandbox = self._sandbox
        self.future.set_running_or_notify_cancel()
        try:
            try:
                outcome = run_guest(
                    engine=sandbox.runtime.engine,
                    module=sandbox.module,
                    guest_io=self.io,
                    limiter=self.limiter,
                    fuel=self.fuel,
                    epoch_deadline_ticks=sandbox.epoch_deadline_ticks,
                    on_instantiated=sandbox._mark_instantiated,
                    on_start=sandbox._mark_running,
                )
                self.finished = time.perf_counter()
            finally:
                # Released before the result is visible to the caller
                sandbox.runtime.clock.release()
            captured = self.io.finish()
        except Exception as e:
            try:
                self.partial = self.io.snapshot()
            except SandboxIOError as unreadable:
                self.partial = CapturedOutput("", f"Captured output unavailable: {unreadable}")
            self.io.close()
            self.future.set_exception(e)
        else:
            self.future.set_result((outcome, captured))


class PythonSandbox(BaseSandbox):
    """Runs untrusted Python source inside the CPython WASM interpreter.

    Each execute() call instantiates a fresh guest from the shared compiled
    module, so no state survives between runs. The guest runs on a worker
    thread while the caller waits on a wall-clock supervisor; whichever of
    the epoch deadline or the supervisor fires first ends the run.

    Attributes:
        config: Frozen SandboxConfig
        options: SandboxOptions used to obtain the runtime
        runtime: SharedRuntime handle owning the engine, module cache and clock
        module: Compiled interpreter module
        used_cached_module: Whether ``module`` came from a cache
        epoch_deadline_ticks: Epoch ticks granted to each run
        logger: SandboxLogger for structured event emission

    Example:
        >>> sandbox = PythonSandbox(SandboxConfig(timeout=5))
        >>> sandbox.execute("print(1 + 1)").stdout
        '2\\n'
    """

    def __init__(
        self,
        config: SandboxConfig | Mapping[str, Any] | None = None,
        options: SandboxOptions | None = None,
        logger: SandboxLogger | None = None,
    ) -> None:
        """Validate the config, resolve the runtime and load the interpreter.

        Args:
            config: SandboxConfig, a mapping of config fields, or None for defaults
            options: SandboxOptions; None creates a dedicated caching runtime
            logger: Optional SandboxLogger (created if None)

        Raises:
            ConfigError: If the config is invalid or needs fuel the runtime lacks
            LoadError: If the interpreter binary cannot be loaded
        """
        self._state = SandboxState.CREATED
        super().__init__(_coerce_config(config), logger)
        self.options = options or SandboxOptions()
        self._state_lock = threading.Lock()
        self._interrupted = False
        self._closed = False
        self._state = SandboxState.CONFIGURING

        self.runtime, self._owns_runtime = self._resolve_runtime()
        try:
            self.module, self.used_cached_module = self._resolve_module()
        except LoadError:
            self._state = SandboxState.LOAD_ERROR
            self._release_runtime()
            raise

        self.epoch_deadline_ticks = deadline_ticks(
            self.config.timeout, self.runtime.epoch_tick_interval
        )

    @property
    def state(self) -> SandboxState:
        return self._state

    def _resolve_runtime(self) -> tuple[SharedRuntime, bool]:
        runtime = self.options.runtime
        if runtime is not None:
            if self.config.max_fuel is not None and not runtime.fuel_enabled:
                raise ConfigError(
                    "max_fuel requires a SharedRuntime created with enable_fuel=True"
                )
            return runtime, False

        return (
            SharedRuntime(
                enable_fuel=self.config.fuel_enabled,
                epoch_tick_interval=self.config.epoch_tick_interval,
                cache_dir=self.options.cache_dir,
                logger=self.logger,
            ),
            True,
        )

    def _resolve_module(self) -> tuple[Module, bool]:
        path = self.config.interpreter_path
        if self.options.runtime is not None or self.options.use_cache:
            return self.runtime.acquire_module(path)
        return self.runtime.compile_uncached(path), False

    def _mark_instantiated(self) -> None:
        self._advance(SandboxState.INSTANTIATED)

    def _mark_running(self) -> None:
        self._advance(SandboxState.RUNNING)

    def _advance(self, state: SandboxState) -> None:
        # Called from the worker; a run abandoned by the supervisor stays TIMED_OUT
        with self._state_lock:
            if not self._interrupted:
                self._state = state

    def _check_usable(self) -> None:
        if self._closed:
            raise SandboxStateError("Sandbox has been closed")
        if self._interrupted:
            raise SandboxStateError(
                "Sandbox was interrupted by a timeout; create a new sandbox"
            )
        if self._state is SandboxState.LOAD_ERROR:
            raise SandboxStateError("Sandbox could not load its interpreter")

    def _begin(self, source: str, stdin: str | None) -> _GuestRun:
        self._check_usable()
        composed = compose_source(source, self.config.prelude)
        effective_stdin = stdin if stdin is not None else self.config.stdin

        self.logger.log_execution_start(
            self.config,
            source_bytes=len(composed.encode("utf-8")),
            used_cached_module=self.used_cached_module,
            stdin_override=stdin is not None,
        )

        run = _GuestRun(self, composed, effective_stdin)
        run.start()
        return run

    def execute(self, source: str, stdin: str | None = None) -> ExecutionResult:
        """Execute untrusted Python source and return its captured output.

        Workflow:
        1. Compose prelude + source and bind stdin/env into a fresh GuestIo
        2. Start the guest on a worker thread with a fresh store and limiter
        3. Wait for it, at most timeout plus a short grace for the epoch trap
        4. Map the outcome to ExecutionResult, raising the matching
           SandboxError (with the partial result attached) when the run did
           not complete

        Args:
            source: Untrusted Python source code
            stdin: Optional stdin text overriding config.stdin for this call

        Returns:
            ExecutionResult with status COMPLETED (exit_code may be non-zero
            when the guest raised an exception)

        Raises:
            TimedOut, ResourceExceeded, FuelExhausted, Trapped: The run ended
                early; ``error.result`` carries captured output and metadata
            LoadError, SandboxIOError: The guest could not be set up
            SandboxStateError: The sandbox was closed or previously timed out
        """
        run = self._begin(source, stdin)
        for timeout in (run.supervisor_timeout, SUPERVISOR_DRAIN_SECONDS):
            done, _ = concurrent.futures.wait([run.future], timeout=timeout)
            if done:
                return self._complete(run)
        self._raise_supervisor_timeout(run)

    async def execute_async(self, source: str, stdin: str | None = None) -> ExecutionResult:
        """asyncio variant of execute().

        The guest runs on its own worker thread and the event loop only awaits
        its completion, so other coroutines keep running. Cancelling the
        awaiting task does not stop the guest; its epoch deadline still does.
        """
        run = self._begin(source, stdin)
        waiter = asyncio.wrap_future(run.future)
        for timeout in (run.supervisor_timeout, SUPERVISOR_DRAIN_SECONDS):
            done, _ = await asyncio.wait({waiter}, timeout=timeout)
            if done:
                return self._complete(run)
        self._raise_supervisor_timeout(run)

    def _complete(self, run: _GuestRun) -> ExecutionResult:
        # Re-raises LoadError / SandboxIOError from the worker
        try:
            outcome, captured = run.future.result()
        except LoadError:
            with self._state_lock:
                self._state = SandboxState.LOAD_ERROR
            self._release_runtime()
            raise
        except SandboxIOError as e:
            if e.result is None:
                e.result = ExecutionResult(
                    stdout=run.partial.stdout,
                    stderr=run.partial.stderr,
                    exit_code=1,
                    metadata=ExecutionMetadata(
                        duration_ms=run.duration_ms,
                        peak_memory_bytes=run.limiter.peak_memory_bytes,
                        used_cached_module=self.used_cached_module,
                    ),
                )
            raise

        status = outcome.status
        if status is ExecutionStatus.TRAPPED and guest_reported_oom(captured.stderr):
            status = ExecutionStatus.RESOURCE_EXCEEDED
        elif (
            status is ExecutionStatus.COMPLETED
            and outcome.exit_code != 0
            and guest_raised_memory_error(captured.stderr)
        ):
            status = ExecutionStatus.RESOURCE_EXCEEDED
        if status is ExecutionStatus.RESOURCE_EXCEEDED:
            run.limiter.mark_exceeded()

        stderr = captured.stderr
        if status is not ExecutionStatus.COMPLETED:
            notice = trap_notice(GuestOutcome(status, outcome.exit_code, outcome.trap_message))
            if notice is not None:
                stderr = _append_notice(stderr, notice)

        result = ExecutionResult(
            stdout=captured.stdout,
            stderr=stderr,
            exit_code=outcome.exit_code,
            status=status,
            metadata=ExecutionMetadata(
                duration_ms=run.duration_ms,
                peak_memory_bytes=run.limiter.peak_memory_bytes,
                fuel_consumed=run.fuel.consumed(exhausted=status is ExecutionStatus.FUEL_EXHAUSTED),
                timed_out=status is ExecutionStatus.TIMED_OUT,
                used_cached_module=self.used_cached_module,
                stdout_truncated=captured.stdout_truncated,
                stderr_truncated=captured.stderr_truncated,
                trap_message=outcome.trap_message,
            ),
        )
        return self._settle(result, outcome.trap_message)

    def _raise_supervisor_timeout(self, run: _GuestRun) -> NoReturn:
        try:
            captured = run.io.snapshot()
        except SandboxIOError as e:
            captured = CapturedOutput("", f"Captured output unavailable: {e}")
        stderr = _append_notice(captured.stderr, "Execution interrupted: wall-clock timeout")

        result = ExecutionResult(
            stdout=captured.stdout,
            stderr=stderr,
            exit_code=1,
            status=ExecutionStatus.TIMED_OUT,
            metadata=ExecutionMetadata(
                duration_ms=run.duration_ms,
                peak_memory_bytes=run.limiter.peak_memory_bytes,
                fuel_consumed=None,
                timed_out=True,
                used_cached_module=self.used_cached_module,
                stdout_truncated=captured.stdout_truncated,
                stderr_truncated=captured.stderr_truncated,
            ),
        )
        self._settle(result, "wall-clock supervisor fired", supervisor=True)

    def _settle(
        self, result: ExecutionResult, trap: str | None, supervisor: bool = False
    ) -> ExecutionResult:
        """Record the terminal state, log, and raise for non-completed runs."""
        status = result.status
        with self._state_lock:
            self._state = SandboxState(status.value)
            if status is ExecutionStatus.TIMED_OUT:
                self._interrupted = True

        self.logger.log_execution_complete(result)
        if status is ExecutionStatus.COMPLETED:
            return result

        self.logger.log_security_event(
            _SECURITY_EVENTS[status],
            {
                "timeout": self.config.timeout,
                "max_memory_bytes": self.config.max_memory_bytes,
                "max_fuel": self.config.max_fuel,
                "duration_ms": result.metadata.duration_ms,
                "trap_message": trap,
                "supervisor": supervisor,
            },
        )
        message = _STATUS_MESSAGES[status].format(
            timeout=self.config.timeout,
            max_memory_bytes=self.config.max_memory_bytes,
            max_fuel=self.config.max_fuel,
            trap=trap,
        )
        raise _STATUS_ERRORS[status](message, result)

    def validate_code(self, source: str) -> bool:
        """Validate Python syntax without executing it.

        Uses the host's compile() builtin; nothing is executed or imported.
        The prelude is not included.

        Args:
            source: Python source code to validate

        Returns:
            True if syntax is valid, False if syntax errors exist
        """
        try:
            compile(source, "<sandbox>", "exec")
            return True
        except (SyntaxError, ValueError):
            return False

    def close(self) -> None:
        """Release the runtime if this sandbox created it. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._release_runtime()

    def _release_runtime(self) -> None:
        if self._owns_runtime:
            self.runtime.release()

    def __enter__(self) -> PythonSandbox:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _append_notice(stderr: str, notice: str) -> str:
    if stderr and not stderr.endswith("\n"):
        return f"{stderr}\n{notice}"
    return stderr + notice


def _coerce_config(config: SandboxConfig | Mapping[str, Any] | None) -> SandboxConfig:
    if config is None:
        return SandboxConfig()
    if isinstance(config, SandboxConfig):
        return config
    if isinstance(config, Mapping):
        return SandboxConfig.model_validate(dict(config))
    raise ConfigError(f"Expected SandboxConfig or mapping, got {type(config).__name__}")
