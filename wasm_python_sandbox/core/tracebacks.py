"""Parsing of Python exceptions reported by the guest on stderr.

The guest interpreter prints tracebacks in CPython's standard format. These
helpers extract the exception type, message and traceback block so callers can
react to guest errors without scraping stderr themselves.
"""

from __future__ import annotations

from wasm_python_sandbox.core.models import GuestException

TRACEBACK_HEADER = "Traceback (most recent call last):"

_EXCEPTION_SUFFIXES = ("Error", "Exception", "Warning")
_STANDALONE_EXCEPTIONS = (
    "KeyboardInterrupt",
    "SystemExit",
    "StopIteration",
    "GeneratorExit",
)


def _ends_name(line: str, end: int) -> bool:
    return end >= len(line) or line[end] in ": \n"


def looks_like_exception(line: str) -> bool:
    """Check whether a stderr line looks like ``ExceptionType[: message]``."""
    if not line or not line[0].isascii() or not line[0].isupper():
        return False

    for suffix in _EXCEPTION_SUFFIXES:
        idx = line.find(suffix)
        if idx != -1 and _ends_name(line, idx + len(suffix)):
            return True

    return any(
        line.startswith(name) and _ends_name(line, len(name))
        for name in _STANDALONE_EXCEPTIONS
    )


def parse_python_exception(stderr: str) -> GuestException | None:
    """Extract the last Python exception from guest stderr.

    Args:
        stderr: Captured guest stderr

    Returns:
        GuestException with type, message and traceback (when a
        ``Traceback (most recent call last):`` header precedes it),
        or None if stderr holds no recognisable exception.
    """
    if not stderr or not stderr.strip():
        return None

    lines = stderr.splitlines()
    exception_at: int | None = None
    traceback_start: int | None = None

    for i, line in enumerate(lines):
        if line.startswith(TRACEBACK_HEADER):
            traceback_start = i
            continue
        if line.startswith(" ") or not line:
            continue
        if looks_like_exception(line):
            exception_at = i

    if exception_at is None:
        return None

    exception_line = lines[exception_at]
    exc_type, sep, message = exception_line.partition(":")
    traceback = None
    if traceback_start is not None and traceback_start <= exception_at:
        traceback = "\n".join(lines[traceback_start : exception_at + 1])

    return GuestException(
        exception_type=exc_type.strip(),
        message=message.strip() if sep else "",
        traceback=traceback,
    )
