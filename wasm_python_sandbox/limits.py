"""Resource limiting for guest stores.

ResourceLimiter is the memory-growth gate for one guest instantiation. The
same caps are installed on the wasmtime Store, which enforces them
synchronously on every ``memory.grow``/``table.grow`` the guest performs; the
limiter keeps the bookkeeping (peak size, whether a request was denied) that
ends up in ExecutionMetadata.

FuelBudget carries the optional instruction budget for a run.
"""

from __future__ import annotations

from typing import Any

WASM_PAGE_SIZE = 64 * 1024
DEFAULT_MAX_TABLE_ELEMENTS = 10_000

# Budget handed to fuel-metering stores when the config sets no limit
UNLIMITED_FUEL = 2**63 - 1


class ResourceLimiter:
    """Memory and table growth gate for a single guest store.

    Attributes:
        max_memory_bytes: Hard cap on linear memory
        max_table_elements: Hard cap on table elements
        current_memory_bytes: Last allowed linear memory size
        peak_memory_bytes: Largest allowed linear memory size
        limit_exceeded: Whether any growth request was denied
    """

    def __init__(
        self, max_memory_bytes: int, max_table_elements: int = DEFAULT_MAX_TABLE_ELEMENTS
    ) -> None:
        if max_memory_bytes <= 0:
            raise ValueError("max_memory_bytes must be positive")
        self.max_memory_bytes = max_memory_bytes
        self.max_table_elements = max_table_elements
        self.current_memory_bytes = 0
        self.peak_memory_bytes = 0
        self.limit_exceeded = False
        self.denied_request_bytes: int | None = None

    def memory_growing(self, current: int, desired: int, maximum: int | None = None) -> bool:
        """Decide whether linear memory may grow from ``current`` to ``desired`` bytes.

        Args:
            current: Current memory size in bytes
            desired: Requested memory size in bytes
            maximum: Module-declared maximum, if any

        Returns:
            True to allow the growth, False to deny it (the guest sees a
            failed ``memory.grow``).
        """
        if desired > self.max_memory_bytes or (maximum is not None and desired > maximum):
            self.limit_exceeded = True
            self.denied_request_bytes = desired
            return False

        self.current_memory_bytes = desired
        if desired > self.peak_memory_bytes:
            self.peak_memory_bytes = desired
        return True

    def table_growing(self, current: int, desired: int, maximum: int | None = None) -> bool:
        """Decide whether a table may grow to ``desired`` elements."""
        if desired > self.max_table_elements or (maximum is not None and desired > maximum):
            self.limit_exceeded = True
            return False
        return True

    def observe(self, size_bytes: int) -> None:
        """Record a linear memory size read back from the guest.

        Linear memory never shrinks, so the final size of a run is its peak.
        """
        if size_bytes > self.current_memory_bytes:
            self.memory_growing(self.current_memory_bytes, size_bytes)

    def mark_exceeded(self) -> None:
        """Record a denial that the VM reported without a size (e.g. at instantiation)."""
        self.limit_exceeded = True

    def apply(self, store: Any) -> None:
        """Install the caps on a wasmtime Store.

        Raises:
            RuntimeError: If the wasmtime build cannot enforce store limits
        """
        if not hasattr(store, "set_limits"):
            raise RuntimeError(
                "Memory limit enforcement is unavailable: wasmtime.Store.set_limits is missing"
            )
        store.set_limits(
            memory_size=int(self.max_memory_bytes),
            table_elements=int(self.max_table_elements),
        )


class FuelBudget:
    """Instruction budget for a single run.

    ``max_fuel`` is the configured budget or None when fuel limiting is off.
    When the engine meters fuel but no budget is configured the store receives
    UNLIMITED_FUEL and consumption is not reported.
    """

    def __init__(self, max_fuel: int | None, metering: bool) -> None:
        if max_fuel is not None and not metering:
            raise ValueError("a fuel budget requires a fuel-metering engine")
        self.max_fuel = max_fuel
        self.metering = metering
        self.remaining: int | None = None

    @property
    def initial(self) -> int | None:
        if not self.metering:
            return None
        return self.max_fuel if self.max_fuel is not None else UNLIMITED_FUEL

    def apply(self, store: Any) -> None:
        """Inject the budget into a store before the guest starts."""
        if self.metering:
            store.set_fuel(self.initial)

    def read_remaining(self, store: Any) -> None:
        if self.metering:
            self.remaining = int(store.get_fuel())

    def consumed(self, exhausted: bool = False) -> int | None:
        """Fuel consumed by the run, or None when no budget is configured.

        On exhaustion this is the configured maximum.
        """
        if self.max_fuel is None:
            return None
        if exhausted:
            return self.max_fuel
        if self.remaining is None:
            return None
        return max(0, self.max_fuel - self.remaining)
