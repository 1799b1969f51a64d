"""Mnemo Helpers package."""

from mnemo.helpers.codebase import (
    compute_file_hash,
    detect_language,
    iter_source_files,
)

__all__ = ["compute_file_hash", "detect_language", "iter_source_files"]
