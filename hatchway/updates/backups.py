"""Zip backups of installed packages, taken before they are overwritten."""

from __future__ import annotations

import datetime
import logging
import os
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union


@dataclass
class BackupInfo:
    """A stored backup.

    Attributes:
        name: File name of the backup archive
        path: Absolute path of the archive
        slug: Package the backup was taken from
        size: Archive size in bytes
        created_at: Modification time of the archive
    """

    name: str
    path: Path
    slug: str
    size: int
    created_at: datetime.datetime


class BackupManager:
    """Creates, lists, looks up and deletes package backups in ``backup_dir``."""

    def __init__(self, backup_dir: Union[str, Path], logger: Optional[logging.Logger] = None) -> None:
        self.backup_dir = Path(backup_dir)
        self._logger = logger or logging.getLogger(__name__)

    def create_backup(self, source: Union[str, Path], slug: str) -> Optional[Path]:
        """Zip ``source`` into the backup directory.

        Returns:
            Path of the archive, or ``None`` if ``source`` does not exist
        """
        source = Path(source)
        if not source.is_dir():
            self._logger.warning(
                f"Backup skipped; {source} is not a directory",
                extra={"slug": slug},
            )
            return None

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        needed = sum(f.stat().st_size for f in source.rglob("*") if f.is_file())
        free = shutil.disk_usage(self.backup_dir).free
        if free < needed:
            raise OSError(f"Insufficient disk space for backup: need {needed} bytes, have {free}")

        stamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        target = self.backup_dir / f"{slug}-{stamp}.zip"

        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(source.rglob("*")):
                archive.write(path, Path(source.name) / path.relative_to(source))

        self._logger.info(
            f"Backed up {slug} to {target.name}",
            extra={"slug": slug, "backup": str(target), "bytes": needed},
        )
        return target

    def list_backups(self, slug: Optional[str] = None) -> List[BackupInfo]:
        """Backups, newest first, optionally only those of ``slug``."""
        if not self.backup_dir.is_dir():
            return []

        backups: List[BackupInfo] = []
        for path in self.backup_dir.glob("*.zip"):
            info = self._info(path)
            if slug is None or info.slug == slug:
                backups.append(info)

        return sorted(backups, key=lambda b: (b.created_at, b.name), reverse=True)

    @staticmethod
    def _info(path: Path) -> BackupInfo:
        stat = path.stat()
        return BackupInfo(
            name=path.name,
            path=path,
            slug=path.stem.rsplit("-", 3)[0],
            size=stat.st_size,
            created_at=datetime.datetime.fromtimestamp(stat.st_mtime, datetime.timezone.utc),
        )

    def _path(self, name: str) -> Optional[Path]:
        if os.path.basename(name) != name or not name.endswith(".zip"):
            return None
        path = self.backup_dir / name
        return path if path.is_file() else None

    def get_backup(self, name: str) -> Optional[BackupInfo]:
        """Look up a backup by file name; names with path parts are refused."""
        path = self._path(name)
        return self._info(path) if path is not None else None

    def delete_backup(self, name: str) -> bool:
        """Delete a backup by file name; names with path parts are refused."""
        path = self._path(name)
        if path is None:
            return False

        path.unlink()
        self._logger.info(f"Deleted backup {name}")
        return True
