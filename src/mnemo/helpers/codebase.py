"""
Mnemo Codebase Helper Functions

Pure functions for language classification, source file discovery
and content fingerprinting.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

# =============================================================================
# Language Configuration
# =============================================================================

# Mapping of file extensions to language names
LANGUAGE_MAP = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".py": "python",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".cs": "csharp",
    ".php": "php",
    ".rb": "ruby",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".clj": "clojure",
    ".hs": "haskell",
    ".ml": "ocaml",
    ".fs": "fsharp",
    ".elm": "elm",
    ".dart": "dart",
    ".r": "r",
    ".jl": "julia",
    ".lua": "lua",
    ".pl": "perl",
    ".sh": "bash",
    ".ps1": "powershell",
    ".sql": "sql",
    ".svelte": "svelte",
    ".vue": "vue",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
    ".sass": "sass",
    ".less": "less",
    ".json": "json",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".ini": "ini",
    ".cfg": "ini",
    ".conf": "conf",
    ".md": "markdown",
    ".rst": "rst",
    ".tex": "latex",
}

# Files whose content is read and fingerprinted by the watcher
TEXT_EXTENSIONS = set(LANGUAGE_MAP) | {
    ".txt", ".log", ".gitignore", ".dockerignore", ".editorconfig",
}

# Extensions that count as source code for analysis and staleness checks
SOURCE_EXTENSIONS = {
    ".ts", ".tsx", ".js", ".jsx", ".py", ".rs", ".go", ".java",
    ".c", ".cpp", ".cs", ".php", ".rb", ".svelte", ".vue",
}

# Directories never scanned (build output, dependencies, VCS metadata)
SKIP_DIRS = {
    "__pycache__", ".git", ".svn", ".hg",
    "node_modules", "venv", ".venv", "env",
    "dist", "build", "target", ".next", ".nuxt",
    "coverage", ".pytest_cache", ".mypy_cache",
    ".tox", "eggs",
}

# Minified bundles are generated, not authored
SKIP_SUFFIXES = (".min.js", ".min.css", ".bundle.js", ".chunk.js", ".map")


def detect_language(file_path: str) -> str:
    """
    Classify a file's language from its extension.

    Args:
        file_path: Path to the file

    Returns:
        Language name, or "unknown" for unmapped extensions
    """
    return LANGUAGE_MAP.get(Path(file_path).suffix.lower(), "unknown")


def normalize_path(path: str) -> str:
    """Absolute form used for cache keys, stored project paths and watcher events."""
    return os.path.abspath(os.path.expanduser(path))


def is_text_file(file_path: str) -> bool:
    path = Path(file_path)
    return path.suffix.lower() in TEXT_EXTENSIONS or path.name in TEXT_EXTENSIONS


def should_skip_dir(name: str) -> bool:
    return name in SKIP_DIRS or name.endswith(".egg-info")


def is_source_file(file_path: str) -> bool:
    name = Path(file_path).name.lower()
    if name.endswith(SKIP_SUFFIXES):
        return False
    return Path(name).suffix in SOURCE_EXTENSIONS


# =============================================================================
# File Discovery
# =============================================================================

def iter_source_files(
    root: str,
    extensions: Optional[set[str]] = None,
    strict: bool = False,
) -> Iterator[Path]:
    """
    Walk ``root`` yielding source files, skipping build/dependency dirs.

    Args:
        root: Project root directory
        extensions: Override the set of source extensions
        strict: Raise on unreadable directories instead of skipping them

    Yields:
        Absolute paths of matching files
    """
    wanted = extensions or SOURCE_EXTENSIONS

    def on_error(err: OSError) -> None:
        if strict:
            raise err
        logger.debug(f"Skipping unreadable path during scan: {err}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames[:] = [d for d in dirnames if not should_skip_dir(d)]
        for filename in filenames:
            lowered = filename.lower()
            if lowered.endswith(SKIP_SUFFIXES):
                continue
            if Path(lowered).suffix in wanted:
                yield Path(dirpath) / filename


def count_source_files(root: str) -> int:
    return sum(1 for _ in iter_source_files(root))


# =============================================================================
# Fingerprinting
# =============================================================================

def compute_file_hash(content: str) -> str:
    """
    Compute a content fingerprint used to detect no-op writes.

    Args:
        content: File content string

    Returns:
        SHA-256 hex digest
    """
    return hashlib.sha256(content.encode("utf-8", errors="surrogateescape")).hexdigest()


def compute_stat_fingerprint(size: int, mtime: float) -> str:
    """Fingerprint from size and mtime, for binary files or content-less watching."""
    return hashlib.sha256(f"{size}-{mtime}".encode()).hexdigest()


# =============================================================================
# Framework Detection
# =============================================================================

# Manifest file -> markers -> framework name
FRAMEWORK_MARKERS = {
    "package.json": {
        '"react"': "react",
        '"next"': "nextjs",
        '"express"': "express",
        '"svelte"': "svelte",
        '"vue"': "vue",
        '"@angular/core"': "angular",
    },
    "requirements.txt": {
        "fastapi": "fastapi",
        "flask": "flask",
        "django": "django",
    },
    "pyproject.toml": {
        "fastapi": "fastapi",
        "flask": "flask",
        "django": "django",
    },
    "Cargo.toml": {
        "actix-web": "actix",
        "axum": "axum",
        "tokio": "tokio",
    },
    "go.mod": {
        "gin-gonic": "gin",
    },
}


def detect_frameworks(root: str) -> list[str]:
    """Sniff dependency manifests at the project root for known frameworks."""
    found = []
    for manifest, markers in FRAMEWORK_MARKERS.items():
        path = Path(root) / manifest
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8", errors="replace").lower()
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
            continue
        for marker, name in markers.items():
            if marker in text and name not in found:
                found.append(name)
    return found
