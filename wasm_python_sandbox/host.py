"""WASM host layer for a single guest run.

Runs the precompiled CPython binary once inside a fresh wasmtime Store with:
- WASM memory safety and a per-store memory/table cap
- A WASI context with no preopened directories, no inherited environment
  and no sockets
- An epoch deadline for cooperative interruption
- An optional fuel budget for deterministic instruction limiting

The caller owns the Engine/Module (shared, immutable) and the GuestIo; this
module only wires them into a store, runs ``_start`` and classifies how the
guest ended. It is synchronous and runs on the worker thread.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from wasmtime import (
    Engine,
    ExitTrap,
    Linker,
    Module,
    Store,
    Trap,
    TrapCode,
    WasiConfig,
    WasmtimeError,
)

from wasm_python_sandbox.core.errors import LoadError
from wasm_python_sandbox.core.models import ExecutionStatus
from wasm_python_sandbox.core.tracebacks import parse_python_exception
from wasm_python_sandbox.guest_io import GuestIo
from wasm_python_sandbox.limits import FuelBudget, ResourceLimiter

GUEST_MEMORY_EXPORT = "memory"
GUEST_ENTRY_EXPORT = "_start"

# Guest-side signatures of a denied memory.grow
_GUEST_OOM_MARKERS = ("MemoryError", "Cannot allocate memory", "out of memory")


@dataclass
class GuestOutcome:
    """How one guest run ended, before output is attached."""

    status: ExecutionStatus
    exit_code: int
    trap_message: str | None = None


def classify_trap(error: BaseException) -> ExecutionStatus:
    """Map a wasmtime trap or error to an ExecutionStatus.

    Prefers the structured trap code and falls back to the message text for
    errors that wasmtime reports without one.
    """
    code = getattr(error, "trap_code", None)
    if code is not None:
        if code == TrapCode.INTERRUPT:
            return ExecutionStatus.TIMED_OUT
        out_of_fuel = getattr(TrapCode, "OUT_OF_FUEL", None)
        if out_of_fuel is not None and code == out_of_fuel:
            return ExecutionStatus.FUEL_EXHAUSTED

    lowered = str(error).lower()
    if "interrupt" in lowered or "epoch" in lowered:
        return ExecutionStatus.TIMED_OUT
    if "fuel" in lowered:
        return ExecutionStatus.FUEL_EXHAUSTED
    if is_limit_message(lowered):
        return ExecutionStatus.RESOURCE_EXCEEDED
    return ExecutionStatus.TRAPPED


def is_limit_message(message: str) -> bool:
    """Whether a wasmtime error message reports a store resource limit."""
    lowered = message.lower()
    return "resource limit" in lowered or (
        ("memory" in lowered or "table" in lowered)
        and ("limit" in lowered or "exceed" in lowered or "maximum" in lowered)
    )


def guest_reported_oom(stderr: str) -> bool:
    """Whether the guest's stderr shows an allocation failure."""
    return any(marker in stderr for marker in _GUEST_OOM_MARKERS)


def guest_raised_memory_error(stderr: str) -> bool:
    """Whether stderr ends in an interpreter traceback for MemoryError.

    CPython reports a refused ``memory.grow`` this way. The text is written by
    the guest, so a program can print the same thing; see ResourceExceeded.
    """
    exc = parse_python_exception(stderr)
    if exc is None or exc.exception_type != "MemoryError" or exc.traceback is None:
        return False
    return stderr.rstrip().splitlines()[-1].startswith("MemoryError")


def trap_notice(outcome: GuestOutcome) -> str | None:
    """One-line notice appended to stderr for runs that did not complete."""
    if outcome.status is ExecutionStatus.FUEL_EXHAUSTED:
        return "Execution trapped: OutOfFuel"
    if outcome.status is ExecutionStatus.TIMED_OUT:
        return "Execution trapped: interrupt (deadline reached)"
    if outcome.trap_message:
        return f"Execution trapped: {outcome.trap_message}"
    return None


def build_store(
    engine: Engine,
    guest_io: GuestIo,
    limiter: ResourceLimiter,
    fuel: FuelBudget,
    epoch_deadline_ticks: int,
) -> Store:
    """Create a fresh store with WASI, limits, fuel and epoch deadline applied."""
    wasi = WasiConfig()
    guest_io.configure(wasi)

    store = Store(engine)
    store.set_wasi(wasi)
    limiter.apply(store)
    fuel.apply(store)
    store.set_epoch_deadline(epoch_deadline_ticks)
    return store


def run_guest(
    engine: Engine,
    module: Module,
    guest_io: GuestIo,
    limiter: ResourceLimiter,
    fuel: FuelBudget,
    epoch_deadline_ticks: int,
    on_instantiated: Callable[[], None] | None = None,
    on_start: Callable[[], None] | None = None,
) -> GuestOutcome:
    """Instantiate the interpreter and run it to completion or trap.

    Args:
        engine: Engine the module was compiled for
        module: Compiled interpreter module (shared, immutable)
        guest_io: Opened GuestIo providing argv, env and streams
        limiter: Fresh ResourceLimiter for this run
        fuel: FuelBudget for this run
        epoch_deadline_ticks: Epoch ticks after which the guest is interrupted
        on_instantiated: Optional callback invoked once the instance exists
        on_start: Optional callback invoked right before ``_start`` is called

    Returns:
        GuestOutcome with status, exit code and raw trap message.

    Raises:
        LoadError: If the module cannot be linked or lacks a WASI ``_start``
    """
    store = build_store(engine, guest_io, limiter, fuel, epoch_deadline_ticks)

    linker = Linker(engine)
    linker.define_wasi()

    try:
        instance = linker.instantiate(store, module)
    except (Trap, WasmtimeError) as e:
        status = classify_trap(e)
        if status is ExecutionStatus.TRAPPED:
            raise LoadError(f"Failed to instantiate interpreter: {e}") from e
        if status is ExecutionStatus.RESOURCE_EXCEEDED:
            limiter.mark_exceeded()
        return GuestOutcome(status=status, exit_code=1, trap_message=str(e))

    if on_instantiated is not None:
        on_instantiated()

    exports = instance.exports(store)
    try:
        start = exports[GUEST_ENTRY_EXPORT]
    except (KeyError, IndexError) as e:
        raise LoadError("Interpreter binary does not export a WASI _start function") from e

    if on_start is not None:
        on_start()

    try:
        start(store)  # type: ignore[operator]
        outcome = GuestOutcome(status=ExecutionStatus.COMPLETED, exit_code=0)
    except ExitTrap as trap:
        # Normal WASI proc_exit - the guest chose its exit status
        outcome = GuestOutcome(status=ExecutionStatus.COMPLETED, exit_code=trap.code)
    except (Trap, WasmtimeError) as trap:
        status = classify_trap(trap)
        if status is ExecutionStatus.RESOURCE_EXCEEDED:
            limiter.mark_exceeded()
        outcome = GuestOutcome(status=status, exit_code=1, trap_message=str(trap))

    fuel.read_remaining(store)

    try:
        memory = exports[GUEST_MEMORY_EXPORT]
    except (KeyError, IndexError):
        memory = None
    if memory is not None:
        limiter.observe(memory.data_len(store))  # type: ignore[union-attr,call-arg]

    return outcome
