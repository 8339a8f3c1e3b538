"""
Filesystem side of package management.

:class:`LocalPackageHost` keeps plugins and themes in two directories,
one sub-directory per package. Packages opt in to updates by declaring
their upstream repository in an ``Update URI:`` header, in the plugin's
main PHP file or the theme's ``style.css``.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Protocol, Union, runtime_checkable

from hatchway.security.credentials import normalize_repository
from hatchway.updates.backups import BackupManager
from hatchway.utils.exceptions import ArchiveError, InstallError

HEADER_BYTES = 8 * 1024
THEME_STYLESHEET = "style.css"

PLUGIN_HEADERS = {
    "name": "Plugin Name",
    "version": "Version",
    "update_uri": "Update URI",
}
THEME_HEADERS = {
    "name": "Theme Name",
    "version": "Version",
    "update_uri": "Update URI",
}


class PackageType(str, enum.Enum):
    PLUGIN = "plugin"
    THEME = "theme"


@dataclass
class ManagedPackage:
    """A locally installed package that tracks an upstream repository.

    Attributes:
        slug: Directory name of the package
        type: Plugin or theme
        repository: Upstream ``owner/repo``
        installed_version: Version declared in the package header
        owner_credential_id: Credential managing ``repository``, if any
        name: Display name from the package header
    """

    slug: str
    type: PackageType
    repository: str
    installed_version: str = ""
    owner_credential_id: Optional[str] = None
    name: str = ""


def read_headers(path: Union[str, Path], headers: Dict[str, str]) -> Dict[str, str]:
    """Read ``Key: value`` header lines from the start of a file.

    Args:
        path: File to read
        headers: Mapping of result key to header label

    Returns:
        Found headers, keyed like ``headers``; missing ones are absent
    """
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read(HEADER_BYTES)

    found: Dict[str, str] = {}
    for key, label in headers.items():
        match = re.search(
            rf"^[ \t/*#@]*{re.escape(label)}:(.*)$", text, re.MULTILINE | re.IGNORECASE
        )
        if match:
            value = re.sub(r"\s*(?:\*/|\?>).*$", "", match.group(1)).strip()
            if value:
                found[key] = value
    return found


def find_plugin_main(directory: Union[str, Path]) -> Optional[Path]:
    """Return the PHP file in ``directory`` that carries a ``Plugin Name`` header."""
    directory = Path(directory)
    for candidate in sorted(directory.glob("*.php")):
        if candidate.is_file() and "name" in read_headers(candidate, {"name": "Plugin Name"}):
            return candidate
    return None


def find_theme_stylesheet(directory: Union[str, Path]) -> Optional[Path]:
    stylesheet = Path(directory) / THEME_STYLESHEET
    return stylesheet if stylesheet.is_file() else None


def find_marker(directory: Union[str, Path], package_type: PackageType) -> Optional[Path]:
    if PackageType(package_type) is PackageType.PLUGIN:
        return find_plugin_main(directory)
    return find_theme_stylesheet(directory)


def safe_members(names: Iterable[str]) -> List[str]:
    """Check archive member names for path traversal.

    Raises:
        ArchiveError: If any member is absolute or escapes the extraction root
    """
    members = []
    for name in names:
        path = PurePosixPath(name.replace("\\", "/"))
        if path.is_absolute() or ".." in path.parts or re.match(r"^[A-Za-z]:", name):
            raise ArchiveError(f"Archive entry escapes the target directory: {name}")
        members.append(name)
    return members


@runtime_checkable
class PackageHost(Protocol):
    """Installs packages and reports what is installed."""

    def extract_archive(self, archive_path: Union[str, Path], dest_dir: Union[str, Path]) -> None:
        ...

    def install_from_archive(
            self,
            archive_path: Union[str, Path],
            slug: str,
            package_type: PackageType,
            overwrite: bool = True
    ) -> Path:
        ...

    def installed_version(self, slug: str, package_type: PackageType) -> Optional[str]:
        ...

    def discover_packages(self) -> List[ManagedPackage]:
        ...


class LocalPackageHost:
    """Package host backed by plugin and theme directories.

    Attributes:
        plugins_dir: Directory holding one sub-directory per plugin
        themes_dir: Directory holding one sub-directory per theme
        backups: Backups taken before an installed package is replaced
    """

    def __init__(
            self,
            plugins_dir: Union[str, Path],
            themes_dir: Union[str, Path],
            backups: Optional[BackupManager] = None,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self.plugins_dir = Path(plugins_dir)
        self.themes_dir = Path(themes_dir)
        self.backups = backups
        self._logger = logger or logging.getLogger(__name__)

    def package_dir(self, package_type: PackageType) -> Path:
        if PackageType(package_type) is PackageType.PLUGIN:
            return self.plugins_dir
        return self.themes_dir

    def package_path(self, slug: str, package_type: PackageType) -> Path:
        if not slug or os.path.basename(slug) != slug or slug in (".", ".."):
            raise InstallError(f"Invalid package slug: {slug!r}", slug=slug)
        return self.package_dir(package_type) / slug

    def extract_archive(self, archive_path: Union[str, Path], dest_dir: Union[str, Path]) -> None:
        """
        Extract a zip archive into ``dest_dir``.

        Raises:
            ArchiveError: If the file is not a zip or has unsafe entries
        """
        try:
            with zipfile.ZipFile(archive_path) as archive:
                members = safe_members(archive.namelist())
                archive.extractall(dest_dir, members)
        except zipfile.BadZipFile as e:
            raise ArchiveError(
                f"Not a valid zip archive: {e}", archive_path=str(archive_path)
            ) from e

    def install_from_archive(
            self,
            archive_path: Union[str, Path],
            slug: str,
            package_type: PackageType,
            overwrite: bool = True
    ) -> Path:
        """
        Install the single top-level directory of an archive as ``slug``.

        The archive is unpacked into a staging directory beside the target,
        then swapped in with renames; a failed swap restores the previous
        installation.

        Returns:
            Path of the installed package

        Raises:
            InstallError: If the package exists and ``overwrite`` is False,
                or the archive cannot be installed
        """
        target = self.package_path(slug, package_type)
        if target.exists() and not overwrite:
            raise InstallError(f"{slug} is already installed", slug=slug)

        parent = target.parent
        parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{slug}.staging-", dir=parent))
        previous: Optional[Path] = None

        try:
            try:
                self.extract_archive(archive_path, staging)
            except ArchiveError as e:
                raise InstallError(str(e), slug=slug) from e

            roots = [entry for entry in staging.iterdir()]
            if len(roots) != 1 or not roots[0].is_dir():
                raise InstallError(
                    "Archive must contain exactly one top-level directory", slug=slug
                )

            if target.exists():
                if self.backups is not None:
                    self.backups.create_backup(target, slug)
                previous = Path(tempfile.mkdtemp(prefix=f".{slug}.previous-", dir=parent))
                os.rmdir(previous)
                os.replace(target, previous)

            try:
                os.replace(roots[0], target)
            except OSError:
                if previous is not None:
                    os.replace(previous, target)
                    previous = None
                raise
        except OSError as e:
            raise InstallError(f"Failed to install {slug}: {e}", slug=slug) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            if previous is not None:
                shutil.rmtree(previous, ignore_errors=True)

        self._logger.info(
            f"Installed {package_type} {slug}",
            extra={"slug": slug, "type": str(PackageType(package_type).value), "path": str(target)},
        )
        return target

    def _headers(self, slug: str, package_type: PackageType) -> Dict[str, str]:
        directory = self.package_dir(package_type) / slug
        if not directory.is_dir():
            return {}

        if PackageType(package_type) is PackageType.PLUGIN:
            main = find_plugin_main(directory)
            return read_headers(main, PLUGIN_HEADERS) if main else {}

        stylesheet = find_theme_stylesheet(directory)
        return read_headers(stylesheet, THEME_HEADERS) if stylesheet else {}

    def installed_version(self, slug: str, package_type: PackageType) -> Optional[str]:
        return self._headers(slug, package_type).get("version")

    def discover_packages(self) -> List[ManagedPackage]:
        """Installed plugins and themes that declare an upstream repository."""
        packages: List[ManagedPackage] = []

        for package_type in (PackageType.PLUGIN, PackageType.THEME):
            directory = self.package_dir(package_type)
            if not directory.is_dir():
                continue

            for entry in sorted(directory.iterdir()):
                if not entry.is_dir() or entry.name.startswith("."):
                    continue

                headers = self._headers(entry.name, package_type)
                repository = normalize_repository(headers.get("update_uri", ""))
                if not repository:
                    continue

                packages.append(ManagedPackage(
                    slug=entry.name,
                    type=package_type,
                    repository=repository,
                    installed_version=headers.get("version", "0.0.0"),
                    name=headers.get("name", entry.name),
                ))

        self._logger.debug(f"Discovered {len(packages)} managed packages")
        return packages
