"""Shared wasmtime engine and compiled-module cache.

A SharedRuntime owns one wasmtime Engine (configured for epoch
interruption), the Interruption Clock that ticks that engine's epoch and a
cache of compiled interpreter modules. Handles are cheap to clone and can be
passed to any number of sandboxes; compiled modules are immutable, so after
warm-up the only synchronization is the insertion lock taken on a cache miss.
"""

from __future__ import annotations

import hashlib
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from wasmtime import Config, Engine, Module, WasmtimeError

from wasm_python_sandbox.clock import InterruptionClock
from wasm_python_sandbox.core.errors import LoadError, SandboxStateError
from wasm_python_sandbox.core.logging import SandboxLogger
from wasm_python_sandbox.core.models import DEFAULT_EPOCH_TICK_SECONDS

ARTIFACT_SUFFIX = ".cwasm"


def create_engine(enable_fuel: bool = False) -> Engine:
    """Create an Engine with epoch interruption and optional fuel metering."""
    cfg = Config()
    cfg.epoch_interruption = True
    cfg.consume_fuel = enable_fuel
    return Engine(cfg)


@dataclass(frozen=True)
class ModuleKey:
    """Identity of an interpreter binary: resolved path plus content hash."""

    path: str
    digest: str


class _RuntimeState:
    """State shared by every handle cloned from one SharedRuntime."""

    def __init__(
        self,
        enable_fuel: bool,
        epoch_tick_interval: float,
        cache_dir: Path | None,
        logger: SandboxLogger,
    ) -> None:
        self.engine = create_engine(enable_fuel)
        self.fuel_enabled = enable_fuel
        self.clock = InterruptionClock(self.engine, epoch_tick_interval, logger)
        self.cache_dir = cache_dir
        self.logger = logger
        self.modules: dict[ModuleKey, Module] = {}
        self.digests: dict[tuple[str, int, int], str] = {}
        self.insert_lock = threading.Lock()
        self.handle_lock = threading.Lock()
        self.handles = 1
        self.compile_count = 0
        self.released = False


class SharedRuntime:
    """Reference-counted handle on an engine, module cache and epoch clock.

    Example:
        >>> runtime = SharedRuntime()
        >>> options = SandboxOptions(runtime=runtime)
        >>> a = PythonSandbox(config, options)
        >>> b = PythonSandbox(config, SandboxOptions(runtime=runtime.clone()))
        >>> # python.wasm was compiled once and both sandboxes share it
    """

    def __init__(
        self,
        enable_fuel: bool = False,
        epoch_tick_interval: float = DEFAULT_EPOCH_TICK_SECONDS,
        cache_dir: str | os.PathLike[str] | None = None,
        logger: SandboxLogger | None = None,
    ) -> None:
        """Create a runtime with a fresh engine.

        Args:
            enable_fuel: Meter fuel on every store (required for max_fuel configs)
            epoch_tick_interval: Seconds between epoch ticks for this engine
            cache_dir: Optional directory for serialized compiled modules
            logger: Optional SandboxLogger for cache and clock events
        """
        self._state = _RuntimeState(
            enable_fuel=enable_fuel,
            epoch_tick_interval=epoch_tick_interval,
            cache_dir=Path(cache_dir) if cache_dir is not None else None,
            logger=logger or SandboxLogger(),
        )
        self._released = False

    @classmethod
    def _from_state(cls, state: _RuntimeState) -> SharedRuntime:
        handle = cls.__new__(cls)
        handle._state = state
        handle._released = False
        return handle

    def clone(self) -> SharedRuntime:
        """Return another handle onto the same engine, cache and clock."""
        self._check_alive()
        with self._state.handle_lock:
            self._state.handles += 1
        return SharedRuntime._from_state(self._state)

    def release(self) -> None:
        """Drop this handle; the last release empties the cache and rejects further use."""
        if self._released:
            return
        self._released = True
        state = self._state
        with state.handle_lock:
            state.handles -= 1
            last = state.handles == 0
            if last:
                state.released = True
        if last:
            # The clock stops by itself once in-flight runs release it
            with state.insert_lock:
                cached = len(state.modules)
                state.modules.clear()
            state.logger.log_runtime_released(cached)

    def __enter__(self) -> SharedRuntime:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

    def _check_alive(self) -> None:
        if self._released or self._state.released:
            raise SandboxStateError("SharedRuntime has been released")

    @property
    def engine(self) -> Engine:
        return self._state.engine

    @property
    def clock(self) -> InterruptionClock:
        return self._state.clock

    @property
    def fuel_enabled(self) -> bool:
        return self._state.fuel_enabled

    @property
    def epoch_tick_interval(self) -> float:
        return self._state.clock.tick_interval

    @property
    def compile_count(self) -> int:
        """Number of modules compiled or deserialized by this runtime."""
        return self._state.compile_count

    @property
    def handle_count(self) -> int:
        return self._state.handles

    def shares_state_with(self, other: SharedRuntime) -> bool:
        return self._state is other._state

    def __len__(self) -> int:
        return len(self._state.modules)

    def contains(self, path: str | os.PathLike[str]) -> bool:
        """Whether the binary currently at ``path`` has a cached module."""
        try:
            key = self._key_for(path)
        except LoadError:
            return False
        return key in self._state.modules

    def remove(self, path: str | os.PathLike[str]) -> bool:
        """Evict the cached module for ``path``. Returns True if one was present."""
        try:
            key = self._key_for(path)
        except LoadError:
            return False
        with self._state.insert_lock:
            return self._state.modules.pop(key, None) is not None

    def clear(self) -> None:
        with self._state.insert_lock:
            self._state.modules.clear()

    def get_or_compile(self, path: str | os.PathLike[str]) -> Module:
        """Return the compiled module for ``path``, compiling it on first use.

        Concurrent first requests for the same binary block behind a single
        compile and then share its result.

        Raises:
            LoadError: If the binary is missing, unreadable or not valid WASM
        """
        module, _ = self.acquire_module(path)
        return module

    def acquire_module(self, path: str | os.PathLike[str]) -> tuple[Module, bool]:
        """Like get_or_compile() but also reports whether the cache was hit."""
        self._check_alive()
        state = self._state
        key = self._key_for(path)

        module = state.modules.get(key)
        if module is not None:
            state.logger.log_module_cache_hit(key.path, key.digest)
            return module, True

        with state.insert_lock:
            # Another caller may have compiled while we waited for the lock
            module = state.modules.get(key)
            if module is not None:
                state.logger.log_module_cache_hit(key.path, key.digest)
                return module, True
            module, from_disk = self._load_module(key)
            state.modules[key] = module
            return module, from_disk

    def compile_uncached(self, path: str | os.PathLike[str]) -> Module:
        """Compile ``path`` without consulting or populating the cache."""
        self._check_alive()
        key = self._key_for(path)
        return self._compile(key)

    def _key_for(self, path: str | os.PathLike[str]) -> ModuleKey:
        resolved = Path(path)
        try:
            resolved = resolved.resolve(strict=True)
            st = resolved.stat()
        except FileNotFoundError as e:
            raise LoadError(f"Python interpreter wasm not found at: {path}") from e
        except OSError as e:
            raise LoadError(f"Cannot access interpreter binary {path}: {e}") from e
        if not resolved.is_file():
            raise LoadError(f"Interpreter path is not a file: {path}")

        memo_key = (str(resolved), st.st_mtime_ns, st.st_size)
        digest = self._state.digests.get(memo_key)
        if digest is None:
            digest = _file_digest(resolved)
            self._state.digests[memo_key] = digest
        return ModuleKey(path=str(resolved), digest=digest)

    def _artifact_path(self, key: ModuleKey) -> Path | None:
        if self._state.cache_dir is None:
            return None
        flavour = "fuel" if self._state.fuel_enabled else "epoch"
        return self._state.cache_dir / f"{key.digest}-{flavour}{ARTIFACT_SUFFIX}"

    def _load_module(self, key: ModuleKey) -> tuple[Module, bool]:
        artifact = self._artifact_path(key)
        if artifact is not None and artifact.is_file():
            start = time.perf_counter()
            try:
                module = Module.deserialize_file(self._state.engine, str(artifact))
            except WasmtimeError as e:
                self._state.logger.log_disk_cache_error(str(artifact), str(e))
            else:
                self._state.compile_count += 1
                self._state.logger.log_module_compiled(
                    key.path, key.digest, (time.perf_counter() - start) * 1000, "disk_cache"
                )
                return module, True

        module = self._compile(key)
        if artifact is not None:
            self._store_artifact(artifact, module)
        return module, False

    def _compile(self, key: ModuleKey) -> Module:
        start = time.perf_counter()
        try:
            with open(key.path, "rb") as f:
                wasm_bytes = f.read()
        except OSError as e:
            raise LoadError(f"Cannot read interpreter binary {key.path}: {e}") from e

        try:
            module = Module(self._state.engine, wasm_bytes)
        except WasmtimeError as e:
            raise LoadError(f"Failed to compile interpreter binary {key.path}: {e}") from e

        self._state.compile_count += 1
        self._state.logger.log_module_compiled(
            key.path, key.digest, (time.perf_counter() - start) * 1000, "compile"
        )
        return module

    def _store_artifact(self, artifact: Path, module: Module) -> None:
        try:
            artifact.parent.mkdir(parents=True, exist_ok=True)
            data = module.serialize()
            fd, tmp_path = tempfile.mkstemp(dir=artifact.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_path, artifact)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except (OSError, WasmtimeError) as e:
            self._state.logger.log_disk_cache_error(str(artifact), str(e))


def _file_digest(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass(frozen=True)
class SandboxOptions:
    """How a PythonSandbox obtains its runtime.

    Attributes:
        runtime: Shared runtime handle; None creates a dedicated runtime
        use_cache: Cache the compiled module in the dedicated runtime
        cache_dir: On-disk artifact cache for a dedicated runtime
    """

    runtime: SharedRuntime | None = None
    use_cache: bool = True
    cache_dir: str | os.PathLike[str] | None = None

    @classmethod
    def no_cache(cls) -> SandboxOptions:
        return cls(use_cache=False)

    @classmethod
    def with_runtime(cls, runtime: SharedRuntime) -> SandboxOptions:
        return cls(runtime=runtime)
