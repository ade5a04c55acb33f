"""
Shared utilities for the bannerkit CLI.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
import threading
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

# =============================================================================
# Constants
# =============================================================================

CONFIG_FILENAME = "banner.yaml"

# Entries that never count as banner content
NOISE_NAMES = {".DS_Store"}

PRIVATE_PREFIX = "_"


# =============================================================================
# Logging
# =============================================================================


class Logger:
    """Simple colored logger with --no-color support."""

    COLORS = {
        "reset": "\033[0m",
        "red": "\033[91m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "blue": "\033[94m",
        "magenta": "\033[95m",
        "cyan": "\033[96m",
        "bold": "\033[1m",
        "dim": "\033[2m",
    }

    def __init__(self, use_color: Optional[bool] = None, verbose: Optional[bool] = None):
        if use_color is None:
            self._use_color = sys.stdout.isatty()
        else:
            self._use_color = use_color
        if verbose is None:
            self._verbose = os.environ.get("DEBUG", "").lower() == "true"
        else:
            self._verbose = verbose
        # Watch callbacks and timers print from several threads
        self._lock = threading.Lock()

    def set_color(self, use_color: bool) -> None:
        """Set whether to use color output."""
        self._use_color = use_color

    def set_verbose(self, verbose: bool) -> None:
        """Enable or disable debug output."""
        self._verbose = verbose

    @property
    def verbose(self) -> bool:
        return self._verbose

    def _color(self, text: str, color: str) -> str:
        if not self._use_color:
            return text
        return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"

    def _emit(self, line: str) -> None:
        with self._lock:
            print(line, flush=True)

    def header(self, message: str) -> None:
        """Print a section header."""
        self._emit(f"\n{self._color('===', 'cyan')} {self._color(message, 'bold')} {self._color('===', 'cyan')}")

    def info(self, message: str) -> None:
        """Print an info message."""
        self._emit(f"  {message}")

    def success(self, message: str) -> None:
        """Print a success message."""
        self._emit(f"  {self._color('[OK]', 'green')} {message}")

    def warning(self, message: str) -> None:
        """Print a warning message."""
        self._emit(f"  {self._color('[WARN]', 'yellow')} {message}")

    def error(self, message: str) -> None:
        """Print an error message."""
        self._emit(f"  {self._color('[ERROR]', 'red')} {message}")

    def dim(self, message: str) -> None:
        """Print a dim/secondary message."""
        self._emit(f"  {self._color(message, 'dim')}")

    def debug(self, message: str) -> None:
        """Print a debug message (only with DEBUG=true or --verbose)."""
        if self._verbose:
            self._emit(f"  {self._color('[DEBUG]', 'magenta')} {self._color(message, 'dim')}")


# Global logger instance
log = Logger()


# =============================================================================
# Path Utilities
# =============================================================================


def is_private(name: str) -> bool:
    """Underscore-prefixed files and unit directories are never built."""
    return name.startswith(PRIVATE_PREFIX)


def is_os_metadata(name: str) -> bool:
    """Finder and Explorer droppings (.DS_Store, Thumbs.db)."""
    return name in NOISE_NAMES or name.lower().endswith("thumbs.db")


def is_noise(name: str) -> bool:
    """OS metadata and archives that must not count as unit content."""
    return is_os_metadata(name) or name.lower().endswith(".zip")


def find_project_root(start_dir: Optional[Path] = None) -> Path:
    """Find the project root (directory containing banner.yaml).

    Searches from start_dir (or cwd) upward; falls back to start_dir when
    no config file exists so defaults apply.
    """
    if start_dir is None:
        start_dir = Path.cwd()

    start = start_dir.resolve()
    current = start
    while current != current.parent:
        if (current / CONFIG_FILENAME).exists():
            return current
        current = current.parent

    return start


def list_subdirectories(path: Path) -> list[str]:
    """Names of the immediate subdirectories of ``path``, sorted."""
    return sorted(entry.name for entry in path.iterdir() if entry.is_dir())


def remove_path(path: Path) -> bool:
    """Delete a file or directory tree. Returns True if something was removed."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
        return True
    if path.exists() or path.is_symlink():
        path.unlink()
        return True
    return False


def remove_paths(paths: Iterable[Path]) -> list[Path]:
    """Best-effort delete of several targets. Returns the removed ones."""
    removed: list[Path] = []
    for path in paths:
        try:
            if remove_path(path):
                removed.append(path)
        except OSError as e:
            log.debug(f"Could not remove {path}: {e}")
    return removed


# =============================================================================
# Glob Matching
# =============================================================================


def expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` alternatives: ``*.{jpg,png}`` -> ``*.jpg``, ``*.png``."""
    start = pattern.find("{")
    if start == -1:
        return [pattern]
    end = pattern.find("}", start)
    if end == -1:
        return [pattern]

    head, tail = pattern[:start], pattern[end + 1:]
    expanded: list[str] = []
    for option in pattern[start + 1:end].split(","):
        expanded.extend(expand_braces(head + option + tail))
    return expanded


@lru_cache(maxsize=512)
def _glob_regex(pattern: str) -> "re.Pattern[str]":
    """Translate one brace-free glob into an anchored regex."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(parts) + r"\Z")


def glob_match(rel_path: str, pattern: str) -> bool:
    """Match a POSIX relative path against a watch-style glob.

    ``*`` and ``?`` stay within one path segment, ``**/`` spans zero or more
    directories and ``{a,b}`` expands to alternatives.
    """
    return any(_glob_regex(p).match(rel_path) for p in expand_braces(pattern))


# =============================================================================
# Runtime Utilities
# =============================================================================


def run_cmd(
    cmd: list[str],
    cwd: Optional[Path] = None,
    capture: bool = False,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command with proper error handling."""
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            check=check,
        )
        return result
    except subprocess.CalledProcessError as e:
        if capture:
            log.error(f"Command failed: {' '.join(cmd)}")
            if e.stdout:
                log.error(f"stdout: {e.stdout}")
            if e.stderr:
                log.error(f"stderr: {e.stderr}")
        raise


def format_size(size_bytes: float) -> str:
    """Format bytes as human-readable string."""
    if size_bytes == 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB"):
        if size_bytes < 1024:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"
