"""Utility modules for common operations."""

from fedsearch.utils.cli_output import json_response
from fedsearch.utils.paths import ensure_dir, find_files, list_subdirectories, relative_posix

__all__ = [
    "ensure_dir",
    "find_files",
    "json_response",
    "list_subdirectories",
    "relative_posix",
]
