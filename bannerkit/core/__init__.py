"""
bannerkit.core - Foundation layer for the bannerkit CLI.

Exports logging, path helpers, glob matching and error types.
"""

from bannerkit.core.utils import (
    # Logging
    log,
    Logger,
    # Constants
    CONFIG_FILENAME,
    PRIVATE_PREFIX,
    # Path utilities
    is_private,
    is_noise,
    is_os_metadata,
    find_project_root,
    list_subdirectories,
    remove_path,
    remove_paths,
    # Globs
    expand_braces,
    glob_match,
    # Runtime utilities
    run_cmd,
    format_size,
)
from bannerkit.core.errors import (
    BannerkitError,
    ConfigError,
    CompileError,
    UploadError,
)

__all__ = [
    "log",
    "Logger",
    "CONFIG_FILENAME",
    "PRIVATE_PREFIX",
    "is_private",
    "is_noise",
    "is_os_metadata",
    "find_project_root",
    "list_subdirectories",
    "remove_path",
    "remove_paths",
    "expand_braces",
    "glob_match",
    "run_cmd",
    "format_size",
    "BannerkitError",
    "ConfigError",
    "CompileError",
    "UploadError",
]
