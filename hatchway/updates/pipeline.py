"""
Update orchestration.

:class:`UpdatePipeline` ties the repository resolver, the release resolver
and the package installer together for the two things callers want: a
list of available updates, and installing (or rolling back to) a given
release of a package.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from hatchway.core.store import ConfigStore
from hatchway.security.credentials import normalize_repository
from hatchway.updates.host import ManagedPackage, PackageHost, PackageType
from hatchway.updates.installer import (
    PACKAGES_CACHE_KEY,
    InstallResult,
    InstallStage,
    PackageInstaller,
)
from hatchway.updates.releases import ReleaseDescriptor, ReleaseResolver
from hatchway.updates.resolver import RepositoryResolver
from hatchway.updates.versions import VersionStatus, classify, normalize_version
from hatchway.utils.exceptions import CredentialError, HatchwayError, NotFoundError

DEFAULT_PACKAGES_TTL = 300.0


@dataclass
class UpdateCandidate:
    """An installed package with a newer release on its channel."""

    slug: str
    type: PackageType
    repository: str
    credential_id: str
    channel: str
    installed_version: str
    available_version: str
    tag: str
    download_url: Optional[str] = None


@dataclass
class InstallOutcome:
    """Result of an install or rollback request.

    Attributes:
        success: Whether the package was installed
        repository: Repository the request was for
        version: Version that was requested or resolved
        stage: Final install stage, or the stage that failed
        error: Typed cause of the failure
    """

    success: bool
    repository: str
    version: str = ""
    stage: InstallStage = InstallStage.RESOLVING
    error: Optional[HatchwayError] = None

    @property
    def reason(self) -> Optional[str]:
        """Machine-readable failure reason, e.g. ``NotFoundError``."""
        return self.error.code if self.error is not None else None

    @property
    def message(self) -> str:
        return self.error.message if self.error is not None else ""

    @classmethod
    def failed(cls, repository: str, error: HatchwayError, version: str = "",
               stage: InstallStage = InstallStage.RESOLVING) -> InstallOutcome:
        return cls(success=False, repository=repository, version=version, stage=stage, error=error)

    @classmethod
    def from_result(cls, repository: str, result: InstallResult) -> InstallOutcome:
        return cls(
            success=result.success,
            repository=repository,
            version=result.version,
            stage=result.failed_stage or result.stage,
            error=result.error,
        )


class UpdatePipeline:
    """Checks for and installs package updates."""

    def __init__(
            self,
            host: PackageHost,
            repositories: RepositoryResolver,
            releases: ReleaseResolver,
            installer: PackageInstaller,
            store: ConfigStore,
            packages_ttl: float = DEFAULT_PACKAGES_TTL,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self._host = host
        self._repositories = repositories
        self._releases = releases
        self._installer = installer
        self._store = store
        self.packages_ttl = packages_ttl
        self._logger = logger or logging.getLogger(__name__)

    def discover_packages(self, force: bool = False) -> List[ManagedPackage]:
        """Managed packages on the host with their owning credentials.

        The host listing is cached until the next install or ``force``;
        owners are resolved on every call.
        """
        packages: Optional[List[ManagedPackage]] = None
        if not force:
            cached = self._store.get(PACKAGES_CACHE_KEY)
            if cached is not None:
                try:
                    packages = [
                        ManagedPackage(**{**item, "type": PackageType(item["type"])})
                        for item in cached
                    ]
                except (KeyError, TypeError, ValueError):
                    self._store.delete(PACKAGES_CACHE_KEY)

        if packages is None:
            packages = self._host.discover_packages()
            self._store.set(
                PACKAGES_CACHE_KEY,
                [
                    {
                        "slug": p.slug,
                        "type": p.type.value,
                        "repository": p.repository,
                        "installed_version": p.installed_version,
                        "name": p.name,
                    }
                    for p in packages
                ],
                self.packages_ttl,
            )

        for package in packages:
            package.owner_credential_id = self._repositories.resolve_owner(package.repository)
        return packages

    def find_package(self, repository: str) -> Optional[ManagedPackage]:
        normalized = normalize_repository(repository)
        for package in self.discover_packages():
            if package.repository == normalized:
                return package
        return None

    def check_for_updates(
            self,
            packages: Optional[List[ManagedPackage]] = None
    ) -> List[UpdateCandidate]:
        """
        Compare installed packages with the newest release on their channel.

        Args:
            packages: Packages to check; discovered from the host when omitted

        Returns:
            One candidate per package whose release is strictly newer
        """
        if packages is None:
            packages = self.discover_packages()

        candidates: List[UpdateCandidate] = []
        quota_checked = False
        for package in packages:
            if not package.repository:
                continue

            credential_id = package.owner_credential_id or self._repositories.resolve_owner(
                package.repository
            )
            if not credential_id:
                self._logger.debug(f"No credential manages {package.repository}; skipping")
                continue

            if not quota_checked:
                self._releases.refresh_rate_limit(credential_id)
                quota_checked = True

            channel = self._releases.get_channel(package.repository).value
            release = self._releases.get_by_channel(package.repository, channel, credential_id)
            if release is None:
                continue

            if classify(package.installed_version, release.tag) is not VersionStatus.OUTDATED:
                continue

            candidates.append(UpdateCandidate(
                slug=package.slug,
                type=package.type,
                repository=package.repository,
                credential_id=credential_id,
                channel=channel,
                installed_version=package.installed_version,
                available_version=release.version,
                tag=release.tag,
                download_url=self._releases.resolve_download_url(release),
            ))

        self._logger.info(
            f"Found {len(candidates)} available updates",
            extra={"checked": len(packages), "updates": len(candidates)},
        )
        return candidates

    def _target(self, repository: str, credential_id: Optional[str]) -> Tuple[ManagedPackage, str]:
        package = self.find_package(repository)
        if package is None:
            raise NotFoundError(
                f"No installed package tracks {repository}", resource=repository
            )

        credential_id = credential_id or package.owner_credential_id
        if not credential_id:
            raise CredentialError(f"No credential manages {repository}")
        return package, credential_id

    def _install_release(
            self,
            package: ManagedPackage,
            release: ReleaseDescriptor,
            credential_id: str
    ) -> InstallOutcome:
        result = self._installer.install(
            self._releases.resolve_download_url(release),
            package.slug,
            package.type,
            credential_id,
            version=release.version,
        )
        return InstallOutcome.from_result(package.repository, result)

    def install_version(
            self,
            repository: str,
            version: str,
            credential_id: Optional[str] = None
    ) -> InstallOutcome:
        """
        Install the release tagged ``version`` over the installed package.

        Args:
            repository: ``owner/repo`` of an installed managed package
            version: Tag or version, with or without a leading ``v``
            credential_id: Credential to use instead of the resolved owner

        Returns:
            The outcome, with a typed error when it failed
        """
        try:
            package, credential_id = self._target(repository, credential_id)
            release = self._releases.fetch_by_version(package.repository, version, credential_id)
        except HatchwayError as e:
            self._logger.warning(
                f"Cannot install {repository} {version}: {e}",
                extra={"repository": repository, "version": version, "error_code": e.code},
            )
            return InstallOutcome.failed(repository, e, version=normalize_version(version))

        return self._install_release(package, release, credential_id)

    def rollback(
            self,
            repository: str,
            target_version: Optional[str] = None,
            credential_id: Optional[str] = None
    ) -> InstallOutcome:
        """
        Install ``target_version``, or the release before the installed one.

        Returns:
            The outcome of the underlying install
        """
        if target_version:
            return self.install_version(repository, target_version, credential_id)

        try:
            package, credential_id = self._target(repository, credential_id)
        except HatchwayError as e:
            return InstallOutcome.failed(repository, e)

        previous = self._releases.get_previous(
            package.repository, package.installed_version, credential_id
        )
        if previous is None:
            return InstallOutcome.failed(
                repository,
                NotFoundError(
                    f"No release older than {package.installed_version} in {package.repository}",
                    resource=package.repository,
                ),
                version=package.installed_version,
            )

        self._logger.info(
            f"Rolling back {package.repository} from {package.installed_version} to {previous.tag}",
            extra={"repository": package.repository, "target": previous.tag},
        )
        return self._install_release(package, previous, credential_id)
