"""Directory enumeration for model and workflow libraries."""

import logging
import os
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from .config import SKIP_DIRECTORIES

logger = logging.getLogger(__name__)


def _should_skip(dirname: str) -> bool:
    return dirname.startswith('.') or dirname in SKIP_DIRECTORIES


def walk_files(root: Path, extensions: Optional[Iterable[str]] = None) -> Iterator[Path]:
    """Yield files under root, skipping hidden and cache directories.

    Args:
        root: Directory to walk recursively
        extensions: Lower-case suffixes to keep (e.g. ".safetensors"). None keeps every file.
    """
    root = Path(root)
    if not root.is_dir():
        logger.warning(f"⚠️ Directory not found: {root}")
        return

    allowed = {ext.lower() for ext in extensions} if extensions else None

    def on_error(error: OSError):
        logger.warning(f"⚠️ Cannot read {error.filename}: {error.strerror}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames[:] = sorted(d for d in dirnames if not _should_skip(d))
        for filename in sorted(filenames):
            if filename.startswith('.'):
                continue
            if allowed is not None and Path(filename).suffix.lower() not in allowed:
                continue
            yield Path(dirpath) / filename


def list_files(root: Path, extensions: Optional[Iterable[str]] = None) -> List[Path]:
    return list(walk_files(root, extensions))


def is_within(path: Path, root: Path) -> bool:
    """True when path is root or lies underneath it."""
    try:
        Path(path).relative_to(root)
        return True
    except ValueError:
        return False
