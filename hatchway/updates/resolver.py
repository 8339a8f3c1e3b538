from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from hatchway.security.credentials import CredentialRecord, CredentialStore, normalize_repository
from hatchway.security.tokens import InstallationClient
from hatchway.utils.exceptions import CredentialError, NetworkError

DEFAULT_INDEX_TTL = 300.0
INSTALLATION_REPOSITORIES_PATH = "/installation/repositories"
REPOSITORIES_PAGE_SIZE = 100


class RepositoryResolver:
    """Maps repositories to the credential that manages them.

    The reverse index is built from every record's managed repositories in
    store order. When two records claim the same repository the first one
    keeps it; the clash is logged and reported by :meth:`conflicts`. The
    index is dropped whenever a credential changes and otherwise expires
    after ``ttl`` seconds.
    """

    def __init__(
            self,
            credentials: CredentialStore,
            ttl: float = DEFAULT_INDEX_TTL,
            clock: Callable[[], float] = time.time,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self._credentials = credentials
        self.ttl = ttl
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._index: Optional[Dict[str, str]] = None
        self._conflicts: Dict[str, List[str]] = {}
        self._built_at = 0.0
        credentials.add_listener(self._on_credentials_changed)

    def _on_credentials_changed(self, credential_id: str, record: Optional[CredentialRecord]) -> None:
        self.invalidate()

    def invalidate(self) -> None:
        with self._lock:
            self._index = None

    def _build(self) -> Dict[str, str]:
        index: Dict[str, str] = {}
        conflicts: Dict[str, List[str]] = {}

        for record in self._credentials.all():
            for repository in record.managed_repositories:
                owner = index.setdefault(repository, record.id)
                if owner != record.id:
                    claimants = conflicts.setdefault(repository, [owner])
                    if record.id not in claimants:
                        claimants.append(record.id)

        for repository, claimants in conflicts.items():
            self._logger.warning(
                f"Repository {repository} is claimed by several credentials; "
                f"using {claimants[0]}",
                extra={"repository": repository, "credential_ids": claimants},
            )

        self._conflicts = conflicts
        self._built_at = self._clock()
        return index

    def _get_index(self) -> Dict[str, str]:
        with self._lock:
            if self._index is None or self._clock() - self._built_at >= self.ttl:
                self._index = self._build()
            return self._index

    def resolve_owner(self, repository: str) -> Optional[str]:
        """Return the id of the credential managing ``repository``, if any."""
        normalized = normalize_repository(repository)
        if not normalized:
            return None
        return self._get_index().get(normalized)

    def conflicts(self) -> Dict[str, List[str]]:
        """Repositories claimed by more than one credential, winner first."""
        self._get_index()
        with self._lock:
            return {repository: list(ids) for repository, ids in self._conflicts.items()}

    def list_managed_repositories(self, credential_id: Optional[str] = None) -> List[str]:
        """Repositories of one credential, or of all credentials when ``None``."""
        if credential_id is not None:
            record = self._credentials.get(credential_id)
            return list(record.managed_repositories) if record else []

        repositories: List[str] = []
        for record in self._credentials.all():
            for repository in record.managed_repositories:
                if repository not in repositories:
                    repositories.append(repository)
        return repositories

    def sync_repositories(self, client: InstallationClient) -> List[str]:
        """Replace a credential's managed repositories with those its installation can access.

        Pages through ``GET /installation/repositories`` as the client's
        credential and saves the result, in the order GitHub lists it.

        Returns:
            The stored repository list

        Raises:
            CredentialError: If the credential does not exist
            AuthError: If no installation token is available
            NetworkError: If a page could not be fetched or parsed
        """
        credential_id = client.credential_id
        if self._credentials.get(credential_id) is None:
            raise CredentialError(
                f"Credential {credential_id} does not exist",
                credential_id=credential_id,
            )

        repositories: List[str] = []
        page = 1
        while True:
            response = client.get(
                INSTALLATION_REPOSITORIES_PATH,
                params={"per_page": REPOSITORIES_PAGE_SIZE, "page": page},
            )
            if not response.is_success:
                raise NetworkError(
                    f"Listing installation repositories returned {response.status_code}",
                    status_code=response.status_code,
                    url=INSTALLATION_REPOSITORIES_PATH,
                )
            try:
                payload = response.json()
                items = payload.get("repositories") or []
                total = payload.get("total_count")
            except (ValueError, AttributeError) as e:
                raise NetworkError(
                    "Installation repository listing is not a JSON object",
                    url=INSTALLATION_REPOSITORIES_PATH,
                ) from e

            for item in items:
                full_name = item.get("full_name") if isinstance(item, dict) else None
                repository = normalize_repository(full_name or "")
                if not repository:
                    self._logger.warning("Skipping installation repository without a full name")
                    continue
                if repository not in repositories:
                    repositories.append(repository)

            if len(items) < REPOSITORIES_PAGE_SIZE:
                break
            if total is not None and page * REPOSITORIES_PAGE_SIZE >= total:
                break
            page += 1

        saved = self._credentials.save({"id": credential_id, "managed_repositories": repositories})
        self._logger.info(
            f"Synced {len(saved.managed_repositories)} repositories for credential {credential_id}",
            extra={"credential_id": credential_id, "pages": page},
        )
        return list(saved.managed_repositories)
