"""Interpreter binary path resolution.

Locates the precompiled Python interpreter WASM binary that ships with the
package, falling back to project-relative paths for development workflows.
"""

from __future__ import annotations

from pathlib import Path

INTERPRETER_BINARY_NAME = "python.wasm"


def get_bundled_binary_path(binary_name: str) -> Path:
    """Get path to a bundled WASM binary, with fallback for development.

    Searches for WASM binaries in the following order:
    1. In bin/ next to the package directory (project root, or site-packages
       when installed)
    2. In bin/ under the current working directory

    Args:
        binary_name: Name of WASM binary file (e.g., "python.wasm")

    Returns:
        Path to WASM binary file

    Raises:
        FileNotFoundError: If binary cannot be found in any search location
    """
    package_dir = Path(__file__).parent.parent  # wasm_python_sandbox/ -> project root
    bundled_path = package_dir / "bin" / binary_name
    if bundled_path.is_file():
        return bundled_path

    cwd_bin = Path.cwd() / "bin" / binary_name
    if cwd_bin.is_file():
        return cwd_bin

    search_locations = [str(bundled_path), str(cwd_bin)]
    raise FileNotFoundError(
        f"WASM binary '{binary_name}' not found. Searched locations:\n"
        + "\n".join(f"  - {loc}" for loc in search_locations)
        + "\n\nDownload a WASI build of CPython (e.g. the VMware Labs"
        " webassembly-language-runtimes python-*.wasm) into bin/python.wasm"
    )


def get_interpreter_path() -> Path:
    """Get path to the bundled Python interpreter WASM binary.

    Raises:
        FileNotFoundError: If python.wasm cannot be found
    """
    return get_bundled_binary_path(INTERPRETER_BINARY_NAME)
