"""
Project root detection for preview sessions
"""

import logging
import os
from pathlib import Path
from typing import Iterable, Union

from ..exceptions.base import ResolutionError

logger = logging.getLogger(__name__)

DEFAULT_MARKERS = ("package.json", "deno.json", "pyproject.toml")
DEFAULT_MAX_DEPTH = 10

PREVIEWABLE_EXTENSIONS = (".html", ".htm", ".css", ".js", ".mjs", ".py")
SCRIPT_EXTENSIONS = (".py",)
HTML_EXTENSIONS = (".html", ".htm")


def is_previewable(file_path: Union[str, Path]) -> bool:
    """Check if a file type is eligible for preview"""
    return Path(file_path).suffix.lower() in PREVIEWABLE_EXTENSIONS


def resolve_root(
    file_path: Union[str, Path],
    markers: Iterable[str] = DEFAULT_MARKERS,
    max_depth: int = DEFAULT_MAX_DEPTH
) -> Path:
    """
    Find the project root for an edited file.

    The file's own directory is depth 0. Directories up to ``max_depth``
    levels above it are checked for any of ``markers``; the first one that
    has a marker wins. Without a marker the file's directory is returned.

    Args:
        file_path: File being previewed
        markers: File names that identify a project root
        max_depth: Maximum number of parent steps to walk

    Returns:
        Absolute project root directory
    """
    file_dir = Path(os.path.abspath(os.path.normpath(str(file_path)))).parent
    markers = tuple(markers)

    try:
        current = file_dir
        for depth in range(max_depth + 1):
            for marker in markers:
                if (current / marker).is_file():
                    logger.debug(f"Project root {current} (marker {marker}, depth {depth})")
                    return current

            parent = current.parent
            if parent == current:
                break
            current = parent

    except (OSError, ValueError) as e:
        error = ResolutionError(f"Could not resolve project root: {e}", str(file_path))
        logger.warning(f"{error}; using {file_dir}")

    return file_dir
