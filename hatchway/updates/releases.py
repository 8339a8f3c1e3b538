"""
Release metadata for managed repositories.

Release listings are fetched with the owning installation's token and
cached in the config store per ``(owner, repo)``. Lookups that find
nothing return ``None``; :meth:`ReleaseResolver.fetch_by_version` is the
raising variant used where the caller needs a typed failure reason.
"""

from __future__ import annotations

import datetime
import enum
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from hatchway.core.store import ConfigStore
from hatchway.security.credentials import normalize_repository
from hatchway.security.tokens import TokenBroker
from hatchway.updates.versions import normalize_version, versions_equal
from hatchway.utils.exceptions import HatchwayError, NetworkError, NotFoundError

RELEASES_KEY = "hatchway_releases_{owner}_{repo}"
LATEST_RELEASE_KEY = "hatchway_latest_release_{owner}_{repo}"
CHANNEL_KEY = "hatchway_channel_{owner}_{repo}"

ZIP_CONTENT_TYPES = ("application/zip", "application/x-zip-compressed")
DEFAULT_RELEASE_TTL = 3 * 60 * 60


class Channel(str, enum.Enum):
    STABLE = "stable"
    BETA = "beta"


def split_repository(repository: str) -> Tuple[str, str]:
    """Split ``owner/repo`` into its parts.

    Raises:
        NotFoundError: If ``repository`` is not a recognizable repository
    """
    normalized = normalize_repository(repository)
    if not normalized:
        raise NotFoundError(f"Invalid repository: {repository!r}", resource=repository)
    owner, repo = normalized.split("/")
    return owner, repo


class ReleaseAsset(BaseModel):
    name: str = ""
    content_type: str = ""
    url: str = ""
    size: int = 0


class ReleaseDescriptor(BaseModel):
    """One GitHub release.

    Attributes:
        tag: Git tag, e.g. ``v1.2.0``
        name: Release title
        published_at: Publication time, ``None`` for drafts
        draft: Whether the release is an unpublished draft
        prerelease: Whether the release is marked as a prerelease
        assets: Uploaded release assets
        archive_url: Source zipball URL, the fallback download
        body: Release notes
        html_url: Release page
    """

    tag: str
    name: str = ""
    published_at: Optional[datetime.datetime] = None
    draft: bool = False
    prerelease: bool = False
    assets: List[ReleaseAsset] = Field(default_factory=list)
    archive_url: str = ""
    body: str = ""
    html_url: str = ""

    @property
    def version(self) -> str:
        return normalize_version(self.tag)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> ReleaseDescriptor:
        """Build a descriptor from a GitHub release payload.

        Asset API URLs are preferred over browser URLs since only the former
        accept token authorization for private repositories.
        """
        assets = [
            ReleaseAsset(
                name=asset.get("name") or "",
                content_type=asset.get("content_type") or "",
                url=asset.get("url") or asset.get("browser_download_url") or "",
                size=asset.get("size") or 0,
            )
            for asset in payload.get("assets") or []
        ]
        return cls(
            tag=payload.get("tag_name") or "",
            name=payload.get("name") or "",
            published_at=payload.get("published_at"),
            draft=bool(payload.get("draft")),
            prerelease=bool(payload.get("prerelease")),
            assets=assets,
            archive_url=payload.get("zipball_url") or "",
            body=payload.get("body") or "",
            html_url=payload.get("html_url") or "",
        )


def _newest_first(releases: List[ReleaseDescriptor]) -> List[ReleaseDescriptor]:
    # Drafts have no publication date and are listed first, like GitHub does.
    epoch = datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)
    far_future = datetime.datetime.max.replace(tzinfo=datetime.timezone.utc)

    def key(release: ReleaseDescriptor) -> datetime.datetime:
        if release.published_at is None:
            return far_future if release.draft else epoch
        if release.published_at.tzinfo is None:
            return release.published_at.replace(tzinfo=datetime.timezone.utc)
        return release.published_at

    return sorted(releases, key=key, reverse=True)


class ChannelPreferences:
    """Per-repository release channel, persisted in the config store."""

    def __init__(self, store: ConfigStore) -> None:
        self._store = store

    def get(self, repository: str) -> Channel:
        owner, repo = split_repository(repository)
        value = self._store.get(CHANNEL_KEY.format(owner=owner, repo=repo))
        try:
            return Channel(value) if value else Channel.STABLE
        except ValueError:
            return Channel.STABLE

    def set(self, repository: str, channel: str) -> Channel:
        owner, repo = split_repository(repository)
        selected = Channel(channel)
        self._store.set(CHANNEL_KEY.format(owner=owner, repo=repo), selected.value)
        return selected


class ReleaseResolver:
    """Fetches, caches and selects releases.

    Attributes:
        ttl: Lifetime of cached release data in seconds
        channels: Stored channel preferences
    """

    def __init__(
            self,
            broker: TokenBroker,
            store: ConfigStore,
            ttl: float = DEFAULT_RELEASE_TTL,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self._broker = broker
        self._store = store
        self.ttl = ttl
        self.channels = ChannelPreferences(store)
        self._logger = logger or logging.getLogger(__name__)

    def _fetch(self, credential_id: str, path: str, **kwargs: Any) -> Optional[Any]:
        """GET ``path`` as the credential; ``None`` means 404."""
        with self._broker.get_client(credential_id) as client:
            response = client.get(path, **kwargs)

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise NetworkError(
                f"GET {path} returned {response.status_code}",
                status_code=response.status_code,
                url=path,
            )
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"GET {path} returned invalid JSON", url=path) from e

    def _load_cached(self, key: str) -> Optional[List[ReleaseDescriptor]]:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            return [ReleaseDescriptor.model_validate(item) for item in raw]
        except (ValidationError, TypeError):
            self._store.delete(key)
            return None

    def list_releases(
            self,
            repository: str,
            credential_id: str,
            force: bool = False
    ) -> List[ReleaseDescriptor]:
        """All releases of ``repository``, newest first; ``[]`` on failure."""
        try:
            owner, repo = split_repository(repository)
        except NotFoundError as e:
            self._logger.warning(str(e))
            return []

        key = RELEASES_KEY.format(owner=owner, repo=repo)
        if not force:
            cached = self._load_cached(key)
            if cached is not None:
                return cached

        try:
            payload = self._fetch(
                credential_id, f"/repos/{owner}/{repo}/releases", params={"per_page": 100}
            )
        except HatchwayError as e:
            self._logger.error(
                f"Failed to list releases for {owner}/{repo}: {e}",
                extra={"repository": f"{owner}/{repo}", "credential_id": credential_id},
            )
            return []

        releases: List[ReleaseDescriptor] = []
        for item in payload or []:
            try:
                releases.append(ReleaseDescriptor.from_api(item))
            except ValidationError as e:
                self._logger.warning(f"Skipping malformed release in {owner}/{repo}: {e}")

        releases = _newest_first(releases)
        self._store.set(key, [release.model_dump(mode="json") for release in releases], self.ttl)
        return releases

    def get_latest(self, repository: str, credential_id: str) -> Optional[ReleaseDescriptor]:
        """The repository's latest published, non-prerelease release."""
        try:
            owner, repo = split_repository(repository)
        except NotFoundError as e:
            self._logger.warning(str(e))
            return None

        key = LATEST_RELEASE_KEY.format(owner=owner, repo=repo)
        cached = self._store.get(key)
        if cached:
            try:
                return ReleaseDescriptor.model_validate(cached)
            except ValidationError:
                self._store.delete(key)

        try:
            payload = self._fetch(credential_id, f"/repos/{owner}/{repo}/releases/latest")
        except HatchwayError as e:
            self._logger.error(
                f"Failed to fetch latest release for {owner}/{repo}: {e}",
                extra={"repository": f"{owner}/{repo}", "credential_id": credential_id},
            )
            return None

        if not payload:
            return None

        try:
            release = ReleaseDescriptor.from_api(payload)
        except ValidationError as e:
            self._logger.warning(
                f"Malformed latest release for {owner}/{repo}: {e}",
                extra={"repository": f"{owner}/{repo}"},
            )
            return None
        self._store.set(key, release.model_dump(mode="json"), self.ttl)
        return release

    def get_by_channel(
            self,
            repository: str,
            channel: Optional[str],
            credential_id: str
    ) -> Optional[ReleaseDescriptor]:
        """Newest release matching ``channel``, falling back to :meth:`get_latest`.

        ``stable`` selects published full releases; any other channel
        selects published prereleases.
        """
        want_prerelease = (channel or Channel.STABLE.value) != Channel.STABLE.value
        for release in self.list_releases(repository, credential_id):
            if not release.draft and release.prerelease == want_prerelease:
                return release
        return self.get_latest(repository, credential_id)

    def fetch_by_version(
            self,
            repository: str,
            version: str,
            credential_id: str
    ) -> ReleaseDescriptor:
        """
        Fetch the release tagged ``version``, with or without a leading ``v``.

        Raises:
            NotFoundError: If no such release exists
            NetworkError: If GitHub could not be reached
            AuthError: If no installation token is available
        """
        owner, repo = split_repository(repository)
        normalized = normalize_version(version)
        if not normalized:
            raise NotFoundError(f"Invalid version: {version!r}", resource=repository)

        for release in self._load_cached(RELEASES_KEY.format(owner=owner, repo=repo)) or []:
            if not release.draft and versions_equal(release.tag, normalized):
                return release

        candidates: List[str] = []
        for tag in (version.strip(), f"v{normalized}", normalized):
            if tag not in candidates:
                candidates.append(tag)

        for tag in candidates:
            payload = self._fetch(credential_id, f"/repos/{owner}/{repo}/releases/tags/{tag}")
            if not payload:
                continue
            try:
                return ReleaseDescriptor.from_api(payload)
            except ValidationError as e:
                raise NetworkError(
                    f"Malformed release {tag} in {owner}/{repo}: {e}",
                    url=f"/repos/{owner}/{repo}/releases/tags/{tag}",
                ) from e

        raise NotFoundError(
            f"No release {version} in {owner}/{repo}",
            resource=f"{owner}/{repo}@{version}",
        )

    def get_by_version(
            self,
            repository: str,
            version: str,
            credential_id: str
    ) -> Optional[ReleaseDescriptor]:
        try:
            return self.fetch_by_version(repository, version, credential_id)
        except NotFoundError:
            return None
        except HatchwayError as e:
            self._logger.error(
                f"Failed to fetch release {version} of {repository}: {e}",
                extra={"repository": repository, "version": version},
            )
            return None

    def get_previous(
            self,
            repository: str,
            current_version: str,
            credential_id: str
    ) -> Optional[ReleaseDescriptor]:
        """The non-draft release immediately older than ``current_version``."""
        found = False
        for release in self.list_releases(repository, credential_id):
            if release.draft:
                continue
            if found:
                return release
            if versions_equal(release.tag, current_version):
                found = True
        return None

    @staticmethod
    def resolve_download_url(descriptor: Optional[ReleaseDescriptor]) -> Optional[str]:
        """First zip asset's URL, else the source archive URL, else ``None``."""
        if descriptor is None:
            return None
        for asset in descriptor.assets:
            if asset.content_type in ZIP_CONTENT_TYPES and asset.url:
                return asset.url
        return descriptor.archive_url or None

    def refresh_rate_limit(self, credential_id: str) -> None:
        """Ask the rate-limit endpoint for the quota unless it is already known."""
        if self._broker.api.rate_limiter.remaining is not None:
            return
        try:
            with self._broker.get_client(credential_id) as client:
                client.rate_limit_status()
        except HatchwayError as e:
            self._logger.warning(f"Could not read the rate limit quota: {e}")

    def invalidate(self, repository: str) -> None:
        try:
            owner, repo = split_repository(repository)
        except NotFoundError:
            return
        self._store.delete(RELEASES_KEY.format(owner=owner, repo=repo))
        self._store.delete(LATEST_RELEASE_KEY.format(owner=owner, repo=repo))
        self._logger.debug(f"Release cache cleared for {owner}/{repo}")

    def get_channel(self, repository: str) -> Channel:
        return self.channels.get(repository)

    def set_channel(self, repository: str, channel: str) -> Channel:
        """Store the channel for ``repository`` and drop its cached releases.

        Raises:
            ValueError: If ``channel`` is not a known channel
        """
        selected = self.channels.set(repository, channel)
        self.invalidate(repository)
        self._logger.info(
            f"Channel for {repository} set to {selected.value}",
            extra={"repository": repository, "channel": selected.value},
        )
        return selected
