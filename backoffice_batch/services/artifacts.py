"""
ArtifactStore -- the on-disk side of backups.

Every backup owns one directory ``<backup_path>/<name>``; the external
backup procedure writes its archives there.  The store prepares, measures
and removes those directories and never interprets their content.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path

from backoffice_kernel.exceptions import BackupExistsError, MissingArtifactError
from backoffice_kernel.logging_config import get_logger

logger = get_logger("batch.artifacts")

_VALID_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def slugify(value: str) -> str:
    """Turn a free-form label into a valid artifact name fragment."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "_", value).strip("._-")
    return slug or "backup"


class ArtifactStore:
    """Filesystem layout for backup artifacts under ``root``."""

    def __init__(self, root: Path | str):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def validate_name(self, name: str) -> str:
        """Raises ValueError unless ``name`` is a single safe path component."""
        if not _VALID_NAME.match(name) or ".." in name:
            raise ValueError(f"Invalid backup name: {name!r}")
        return name

    def path_for(self, name: str) -> Path:
        return self._root / self.validate_name(name)

    def prepare(self, name: str) -> Path:
        """Create and return a fresh artifact directory for ``name``.

        Raises BackupExistsError if the directory is already there; an
        artifact directory belongs to exactly one backup.
        """
        path = self.path_for(name)
        self._root.mkdir(parents=True, exist_ok=True)
        try:
            path.mkdir()
        except FileExistsError:
            raise BackupExistsError(name) from None
        return path

    def exists(self, path: Path | str) -> bool:
        path = Path(path)
        if path.is_file():
            return True
        return path.is_dir() and any(p.is_file() for p in path.rglob("*"))

    def measure(self, path: Path | str) -> int:
        """Total size in bytes of the artifact.

        Raises:
            MissingArtifactError: If nothing was produced at ``path``.
        """
        path = Path(path)
        if path.is_file():
            return path.stat().st_size
        if not path.is_dir():
            raise MissingArtifactError(str(path))
        files = [p for p in path.rglob("*") if p.is_file()]
        if not files:
            raise MissingArtifactError(str(path))
        return sum(p.stat().st_size for p in files)

    def remove(self, path: Path | str) -> bool:
        """Delete the artifact.  Returns False if it was already gone."""
        path = Path(path)
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            logger.info("artifact_already_absent", extra={"artifact_path": path})
            return False
        logger.info("artifact_removed", extra={"artifact_path": path})
        return True

    def discover(self) -> tuple[Path, ...]:
        """Non-empty artifact directories directly under ``root``."""
        if not self._root.is_dir():
            return ()
        return tuple(
            sorted(
                p for p in self._root.iterdir()
                if p.is_dir() and _VALID_NAME.match(p.name) and self.exists(p)
            )
        )
