"""
Session-scoped temporary resources

Tracks every file and directory created for a preview session so that
stopping the session leaves nothing behind.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from ..exceptions.base import CleanupError, GenerationError

logger = logging.getLogger(__name__)

DIRECTORY_MODE = 0o700
FILE_MODE = 0o600


class ResourceKind(str, Enum):
    """Kinds of tracked temporary resources"""
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class TempResource:
    """A file or directory owned by a preview session"""
    kind: ResourceKind
    path: Path


def session_directory(session_id: str, base: Optional[Union[str, Path]] = None) -> Path:
    """Session-scoped base path under the system temp directory"""
    root = Path(base) if base is not None else Path(tempfile.gettempdir())
    return root / f"livepreview-{session_id}"


class TempResourceManager:
    """
    Creates and deletes temporary files for one preview session

    Features:
    - Owner-only permissions on every created directory and file
    - Files deleted before directories
    - Cleanup never raises and always empties the tracking list
    """

    def __init__(self):
        self._resources: List[TempResource] = []

    @property
    def resources(self) -> List[TempResource]:
        return list(self._resources)

    def create_resource(
        self,
        base_path: Union[str, Path],
        name: str,
        content: Optional[str] = None
    ) -> Path:
        """
        Create a tracked resource

        Args:
            base_path: Directory that holds the resource, created if missing
            name: File name inside ``base_path``
            content: Text to write; when omitted only the directory is ensured

        Returns:
            Path of the resource

        Raises:
            GenerationError: If the directory or file cannot be written
        """
        base = Path(base_path)
        target = base / name

        try:
            if not base.exists():
                base.mkdir(mode=DIRECTORY_MODE, parents=True)
                self._track(ResourceKind.DIRECTORY, base)
            os.chmod(base, DIRECTORY_MODE)

            if content is not None:
                fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                os.chmod(target, FILE_MODE)
                self._track(ResourceKind.FILE, target)

        except OSError as e:
            raise GenerationError(
                f"Cannot write temporary file {target}: {e.strerror or e}",
                str(target),
                e
            )

        logger.debug(f"Created temp resource {target}")
        return target

    def _track(self, kind: ResourceKind, path: Path):
        resource = TempResource(kind, path)
        if resource not in self._resources:
            self._resources.append(resource)

    def cleanup(self) -> int:
        """
        Delete every tracked resource

        Returns:
            Number of resources actually removed
        """
        resources, self._resources = self._resources, []
        removed = 0

        for resource in resources:
            if resource.kind != ResourceKind.FILE:
                continue
            try:
                resource.path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                error = CleanupError(f"Failed to remove temporary file: {e}", str(resource.path))
                logger.error(str(error))

        directories = [r for r in resources if r.kind == ResourceKind.DIRECTORY]
        directories.sort(key=lambda r: len(r.path.parts), reverse=True)

        for resource in directories:
            if not resource.path.exists():
                continue
            try:
                shutil.rmtree(resource.path)
                removed += 1
            except OSError as e:
                error = CleanupError(f"Failed to remove temporary directory: {e}", str(resource.path))
                logger.error(str(error))

        if removed:
            logger.debug(f"Removed {removed} temporary resources")

        return removed
