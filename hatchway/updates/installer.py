"""
Download, verify and install one release archive.

An install attempt moves through :class:`InstallStage` in order and stops
at the first failing stage. The downloaded archive and the scratch
directory are removed on every path out of :meth:`PackageInstaller.install`.
:meth:`PackageInstaller.restore` runs the same verify and install stages
against a backup archive.
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
import tempfile
import threading
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Union

from hatchway.core.store import ConfigStore
from hatchway.security.tokens import TokenBroker
from hatchway.updates.host import PackageHost, PackageType, find_marker, safe_members
from hatchway.utils.exceptions import (
    ArchiveError,
    HatchwayError,
    InstallError,
    NetworkError,
    NotFoundError,
)

PACKAGES_CACHE_KEY = "hatchway_merged_packages"


class InstallStage(str, enum.Enum):
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    INSTALLING = "installing"
    CLEANUP = "cleanup"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class InstallResult:
    """Outcome of one install attempt.

    Attributes:
        slug: Target package
        version: Version that was being installed
        stage: ``SUCCESS`` or ``FAILED``
        failed_stage: First stage that failed, if any
        error: Cause of the failure
        path: Installed package path on success
        stages: Every stage entered, in order
    """

    slug: str
    version: str = ""
    stage: InstallStage = InstallStage.RESOLVING
    failed_stage: Optional[InstallStage] = None
    error: Optional[HatchwayError] = None
    path: Optional[Path] = None
    stages: List[InstallStage] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.stage is InstallStage.SUCCESS


def verify_archive(
        archive_path: Union[str, Path],
        scratch_dir: Union[str, Path],
        package_type: PackageType
) -> Path:
    """
    Check that an archive holds exactly one package directory.

    The archive is extracted into ``scratch_dir``. It must contain a single
    top-level directory and no loose files, and that directory must hold
    the package's marker file.

    Returns:
        The extracted package directory

    Raises:
        ArchiveError: If the archive is unreadable or has the wrong shape
    """
    archive_path = str(archive_path)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            names = safe_members(archive.namelist())

            roots = set()
            for name in names:
                parts = PurePosixPath(name.replace("\\", "/")).parts
                if not parts:
                    continue
                if len(parts) == 1 and not name.endswith("/"):
                    raise ArchiveError(
                        f"Archive has a loose top-level file: {name}", archive_path=archive_path
                    )
                roots.add(parts[0])

            if len(roots) != 1:
                raise ArchiveError(
                    f"Archive must have exactly one top-level directory, found {len(roots)}",
                    archive_path=archive_path,
                )

            archive.extractall(scratch_dir, names)
    except zipfile.BadZipFile as e:
        raise ArchiveError(f"Not a valid zip archive: {e}", archive_path=archive_path) from e

    root = Path(scratch_dir) / roots.pop()
    if find_marker(root, package_type) is None:
        marker = "main plugin file" if PackageType(package_type) is PackageType.PLUGIN else "style.css"
        raise ArchiveError(f"Archive is missing the {marker}", archive_path=archive_path)
    return root


class PackageInstaller:
    """Runs install attempts, one at a time per package slug.

    Attributes:
        temp_dir: Where archives and scratch directories are created
    """

    def __init__(
            self,
            host: PackageHost,
            broker: TokenBroker,
            store: ConfigStore,
            temp_dir: Optional[Union[str, Path]] = None,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self._host = host
        self._broker = broker
        self._store = store
        self.temp_dir = Path(temp_dir) if temp_dir else None
        self._logger = logger or logging.getLogger(__name__)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, slug: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(slug, threading.Lock())

    def _enter(self, result: InstallResult, stage: InstallStage) -> None:
        result.stage = stage
        result.stages.append(stage)
        self._logger.debug(
            f"Install of {result.slug} entering {stage.value}",
            extra={"slug": result.slug, "stage": stage.value},
        )

    def install(
            self,
            download_url: Optional[str],
            slug: str,
            package_type: PackageType,
            credential_id: str,
            version: str = ""
    ) -> InstallResult:
        """
        Download ``download_url`` and install it as ``slug``.

        Args:
            download_url: Archive URL, usually from the release resolver
            slug: Target package directory name
            package_type: Plugin or theme
            credential_id: Credential whose token authorizes the download
            version: Version being installed, for reporting

        Returns:
            The outcome; failures carry the failing stage and the cause
        """
        result = InstallResult(slug=slug, version=version)
        self._enter(result, InstallStage.RESOLVING)

        lock = self._lock_for(slug)
        if not lock.acquire(blocking=False):
            return self._fail(result, InstallError(
                f"Another install of {slug} is already running", slug=slug
            ))

        archive_path: Optional[Path] = None
        scratch_dir: Optional[Path] = None
        try:
            if not download_url:
                return self._fail(result, NotFoundError(
                    "Release has nothing installable", resource=slug
                ))

            if self.temp_dir is not None:
                self.temp_dir.mkdir(parents=True, exist_ok=True)

            self._enter(result, InstallStage.DOWNLOADING)
            fd, name = tempfile.mkstemp(prefix=f"{slug}-", suffix=".zip", dir=self.temp_dir)
            os.close(fd)
            archive_path = Path(name)
            try:
                with self._broker.get_client(credential_id) as client:
                    size = client.download(download_url, archive_path)
                if size <= 0:
                    raise NetworkError("Downloaded archive is empty", url=download_url)
            except (HatchwayError, OSError) as e:
                return self._fail(result, self._as_error(e, NetworkError))

            self._enter(result, InstallStage.VERIFYING)
            scratch_dir = Path(tempfile.mkdtemp(prefix=f"{slug}-verify-", dir=self.temp_dir))
            try:
                verify_archive(archive_path, scratch_dir, package_type)
            except ArchiveError as e:
                return self._fail(result, e)

            self._enter(result, InstallStage.INSTALLING)
            try:
                result.path = self._host.install_from_archive(
                    archive_path, slug, package_type, overwrite=True
                )
            except (HatchwayError, OSError) as e:
                return self._fail(result, self._as_error(e, InstallError, slug=slug))

            self._store.delete(PACKAGES_CACHE_KEY)
            result.stage = InstallStage.SUCCESS
            self._logger.info(
                f"Installed {slug} {version}".rstrip(),
                extra={"slug": slug, "version": version},
            )
            return result
        finally:
            self._cleanup(result, archive_path, scratch_dir)
            lock.release()
            result.stages.append(result.stage)

    def restore(
            self,
            archive_path: Union[str, Path],
            slug: str,
            package_type: Optional[PackageType] = None
    ) -> InstallResult:
        """
        Reinstall ``slug`` from a backup archive.

        The archive is verified like a download and left where it is.
        Without ``package_type`` it is restored as whichever kind its marker
        file identifies, plugin first. The package being replaced is backed
        up in turn, so a restore can itself be undone.

        Returns:
            The outcome; failures carry the failing stage and the cause
        """
        result = InstallResult(slug=slug)
        self._enter(result, InstallStage.RESOLVING)

        lock = self._lock_for(slug)
        if not lock.acquire(blocking=False):
            return self._fail(result, InstallError(
                f"Another install of {slug} is already running", slug=slug
            ))

        scratch_dir: Optional[Path] = None
        try:
            if self.temp_dir is not None:
                self.temp_dir.mkdir(parents=True, exist_ok=True)

            self._enter(result, InstallStage.VERIFYING)
            kinds = [PackageType(package_type)] if package_type else [PackageType.PLUGIN, PackageType.THEME]
            error: Optional[ArchiveError] = None
            for kind in kinds:
                if scratch_dir is not None:
                    shutil.rmtree(scratch_dir, ignore_errors=True)
                scratch_dir = Path(tempfile.mkdtemp(prefix=f"{slug}-restore-", dir=self.temp_dir))
                try:
                    verify_archive(archive_path, scratch_dir, kind)
                except ArchiveError as e:
                    error = e
                else:
                    break
            else:
                return self._fail(result, error)

            self._enter(result, InstallStage.INSTALLING)
            try:
                result.path = self._host.install_from_archive(archive_path, slug, kind, overwrite=True)
            except (HatchwayError, OSError) as e:
                return self._fail(result, self._as_error(e, InstallError, slug=slug))

            self._store.delete(PACKAGES_CACHE_KEY)
            result.version = self._host.installed_version(slug, kind) or ""
            result.stage = InstallStage.SUCCESS
            self._logger.info(
                f"Restored {slug} from {Path(archive_path).name}",
                extra={"slug": slug, "version": result.version},
            )
            return result
        finally:
            self._cleanup(result, None, scratch_dir)
            lock.release()
            result.stages.append(result.stage)

    @staticmethod
    def _as_error(error: Exception, kind: type, **kwargs: object) -> HatchwayError:
        if isinstance(error, HatchwayError):
            return error
        return kind(str(error), **kwargs)

    def _fail(self, result: InstallResult, error: HatchwayError) -> InstallResult:
        result.failed_stage = result.stage
        result.error = error
        result.stage = InstallStage.FAILED
        self._logger.error(
            f"Install of {result.slug} failed at {result.failed_stage.value}: {error}",
            extra={
                "slug": result.slug,
                "stage": result.failed_stage.value,
                "error_code": error.code,
            },
        )
        return result

    def _cleanup(
            self,
            result: InstallResult,
            archive_path: Optional[Path],
            scratch_dir: Optional[Path]
    ) -> None:
        final_stage = result.stage
        self._enter(result, InstallStage.CLEANUP)
        if archive_path is not None:
            try:
                archive_path.unlink()
            except FileNotFoundError:
                pass
        if scratch_dir is not None:
            shutil.rmtree(scratch_dir, ignore_errors=True)
        result.stage = final_stage
