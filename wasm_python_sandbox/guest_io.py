"""Guest input composition and output capture.

GuestIo owns everything the guest can see of the outside world: its argv
(the composed source), its environment (only configured pairs), its stdin and
the files its stdout/stderr are captured into. Nothing else is exposed: no
directory is preopened and WASI preview 1 has no socket capability, so
isolation is structural.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import threading
from collections.abc import Sequence
from typing import Any, NamedTuple

from wasm_python_sandbox.core.errors import SandboxIOError

GUEST_ARGV0 = "python"


def compose_source(source: str, prelude: str | None = None) -> str:
    """Prepend the prelude (if any) to user source.

    The two are joined with a single newline and otherwise kept verbatim;
    line numbers reported by the guest refer to the composed text.
    """
    if not prelude:
        return source
    return f"{prelude}\n{source}"


def decode_capped(data: bytes, cap: int | None) -> tuple[str, bool]:
    """Decode captured bytes as lossy UTF-8, truncating to ``cap`` bytes."""
    truncated = cap is not None and len(data) > cap
    if truncated:
        data = data[:cap]
    return data.decode("utf-8", errors="replace"), truncated


class CapturedOutput(NamedTuple):
    stdout: str
    stderr: str
    stdout_truncated: bool = False
    stderr_truncated: bool = False


class GuestIo:
    """I/O mediator for one guest run.

    Usage is ``open()`` -> ``configure(wasi)`` -> guest runs -> ``finish()``.
    ``snapshot()`` may be called from another thread at any point to read
    what has been captured so far; ``finish()`` freezes the capture and
    removes the temporary directory.

    Attributes:
        source: Composed guest program
        env: Environment pairs bound into the guest
        stdin: Text bound to guest stdin (None = immediate EOF)
    """

    def __init__(
        self,
        source: str,
        env: Sequence[tuple[str, str]] = (),
        stdin: str | None = None,
        stdout_max_bytes: int | None = None,
        stderr_max_bytes: int | None = None,
    ) -> None:
        self.source = source
        self.env = list(env)
        self.stdin = stdin
        self.stdout_max_bytes = stdout_max_bytes
        self.stderr_max_bytes = stderr_max_bytes
        self._lock = threading.Lock()
        self._tmp: str | None = None
        self._final: CapturedOutput | None = None

    @property
    def argv(self) -> tuple[str, ...]:
        return (GUEST_ARGV0, "-c", self.source)

    @property
    def stdin_path(self) -> str:
        return self._path("stdin.txt")

    @property
    def stdout_path(self) -> str:
        return self._path("stdout.log")

    @property
    def stderr_path(self) -> str:
        return self._path("stderr.log")

    def _path(self, name: str) -> str:
        if self._tmp is None:
            raise SandboxIOError("guest streams are not open")
        return os.path.join(self._tmp, name)

    def open(self) -> GuestIo:
        """Create the private stream files.

        Raises:
            SandboxIOError: If the temporary files cannot be created
        """
        try:
            self._tmp = tempfile.mkdtemp(prefix="wasm-python-io-")
            with open(self.stdin_path, "wb") as f:
                if self.stdin is not None:
                    f.write(self.stdin.encode("utf-8"))
            for path in (self.stdout_path, self.stderr_path):
                open(path, "wb").close()
        except OSError as e:
            self.close()
            raise SandboxIOError(f"Failed to prepare guest streams: {e}") from e
        return self

    def configure(self, wasi: Any) -> None:
        """Bind argv, env and streams into a wasmtime WasiConfig.

        Nothing is inherited from the host process and no directory is
        preopened.
        """
        wasi.argv = self.argv
        wasi.env = [(k, v) for k, v in self.env]
        wasi.stdin_file = self.stdin_path
        wasi.stdout_file = self.stdout_path
        wasi.stderr_file = self.stderr_path

    def _read(self) -> CapturedOutput:
        try:
            with open(self.stdout_path, "rb") as f:
                out = f.read()
            with open(self.stderr_path, "rb") as f:
                err = f.read()
        except OSError as e:
            raise SandboxIOError(f"Failed to read guest output: {e}") from e

        stdout, stdout_truncated = decode_capped(out, self.stdout_max_bytes)
        stderr, stderr_truncated = decode_capped(err, self.stderr_max_bytes)
        return CapturedOutput(stdout, stderr, stdout_truncated, stderr_truncated)

    def snapshot(self) -> CapturedOutput:
        """Output captured so far (final output once finish() ran)."""
        with self._lock:
            if self._final is not None:
                return self._final
            if self._tmp is None:
                return CapturedOutput("", "")
            return self._read()

    def finish(self) -> CapturedOutput:
        """Freeze the captured output and release the stream files.

        Raises:
            SandboxIOError: If captured output cannot be read back
        """
        with self._lock:
            if self._final is None:
                try:
                    self._final = self._read() if self._tmp is not None else CapturedOutput("", "")
                finally:
                    self._remove_tmp()
            return self._final

    def close(self) -> None:
        with self._lock:
            self._remove_tmp()

    def _remove_tmp(self) -> None:
        if self._tmp is not None:
            shutil.rmtree(self._tmp, ignore_errors=True)
            self._tmp = None

    def __enter__(self) -> GuestIo:
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()
