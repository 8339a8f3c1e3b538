"""Per-installation GitHub App credentials.

Records are persisted as JSON in the key-value store under a single key.
Secrets are only ever stored encrypted; plaintext is produced on demand by
:meth:`CredentialStore.find` and never leaves the store through
:meth:`CredentialStore.sanitize`.
"""

from __future__ import annotations

import datetime
import enum
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from hatchway.core.store import ConfigStore
from hatchway.security.cache import TokenCache
from hatchway.security.cipher import SecretCipher
from hatchway.utils.exceptions import CredentialError

CREDENTIALS_KEY = "hatchway_credentials"

SECRET_FIELDS = ("private_key", "webhook_secret")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def normalize_repository(value: str) -> str:
    """Normalize a repository reference to lower-case ``owner/repo``.

    Accepts plain ``owner/repo`` slugs as well as GitHub URLs, with or
    without a trailing ``.git``. Returns ``""`` if no slug can be found.
    """
    if not value:
        return ""

    slug = value.strip()
    for prefix in ("https://", "http://", "git@"):
        if slug.startswith(prefix):
            slug = slug[len(prefix):]
            break
    slug = slug.replace(":", "/")
    if slug.lower().startswith("github.com/"):
        slug = slug[len("github.com/"):]
    slug = slug.strip("/")
    if slug.endswith(".git"):
        slug = slug[:-4]

    parts = [part for part in slug.split("/") if part]
    if len(parts) != 2:
        return ""
    return f"{parts[0]}/{parts[1]}".lower()


class AccountType(str, enum.Enum):
    USER = "user"
    ORGANIZATION = "organization"


class CredentialStatus(str, enum.Enum):
    PENDING = "pending"
    REQUIRES_INSTALLATION = "requires_installation"
    INSTALLED = "installed"
    ERROR = "error"


class CredentialRecord(BaseModel):
    """One authorized binding between Hatchway and a GitHub account.

    Attributes:
        id: Opaque identifier, generated once
        name: Display name of the app
        slug: App slug on GitHub, used to build the install URL
        account_type: Whether the app is owned by a user or organization
        org_slug: Organization login when ``account_type`` is organization
        signing_id: Numeric GitHub App id, used as the JWT issuer
        installation_id: Installation id once the app has been installed
        encrypted_private_key: Encrypted PEM private key, ``""`` if absent
        encrypted_webhook_secret: Encrypted webhook secret, ``""`` if absent
        managed_repositories: Ordered ``owner/repo`` list this installation manages
        status: Lifecycle status
        html_url: App page on GitHub
        created_at: Creation time
        updated_at: Last modification time
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    slug: str = ""
    account_type: AccountType = AccountType.USER
    org_slug: str = ""
    signing_id: int = 0
    installation_id: Optional[int] = None
    encrypted_private_key: str = ""
    encrypted_webhook_secret: str = ""
    managed_repositories: List[str] = Field(default_factory=list)
    status: CredentialStatus = CredentialStatus.PENDING
    html_url: str = ""
    created_at: datetime.datetime = Field(default_factory=_utcnow)
    updated_at: datetime.datetime = Field(default_factory=_utcnow)

    @field_validator("installation_id", mode="before")
    @classmethod
    def _zero_means_missing(cls, value: Any) -> Any:
        if value in (None, "", 0, "0"):
            return None
        return value

    @field_validator("managed_repositories", mode="before")
    @classmethod
    def _normalize_repositories(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]

        seen: List[str] = []
        for item in value:
            repository = normalize_repository(str(item))
            if repository and repository not in seen:
                seen.append(repository)
        return seen

    @model_validator(mode="after")
    def _installed_requires_installation_id(self) -> "CredentialRecord":
        if self.status == CredentialStatus.INSTALLED and not self.installation_id:
            raise ValueError("An installed credential must have an installation id.")
        return self

    @property
    def has_private_key(self) -> bool:
        return bool(self.encrypted_private_key)

    @property
    def install_url(self) -> Optional[str]:
        if self.slug:
            return f"https://github.com/apps/{self.slug}/installations/new"
        if self.html_url:
            return self.html_url.rstrip("/") + "/installations/new"
        return None


@dataclass
class UnlockedCredential:
    """A credential record together with its decrypted secrets.

    Attributes:
        record: The stored record
        private_key: Decrypted PEM private key, ``""`` if absent or unreadable
        webhook_secret: Decrypted webhook secret, ``""`` if absent or unreadable
        repaired: Whether the record was reset because its key was unreadable
    """

    record: CredentialRecord
    private_key: str = ""
    webhook_secret: str = ""
    repaired: bool = False

    @property
    def usable(self) -> bool:
        return bool(self.private_key) and self.record.signing_id > 0


CredentialListener = Callable[[str, Optional[CredentialRecord]], None]


class CredentialStore:
    """CRUD over credential records.

    Attributes:
        cipher: Cipher used for the private key and webhook secret
    """

    def __init__(
            self,
            store: ConfigStore,
            cipher: SecretCipher,
            token_cache: TokenCache,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self._store = store
        self.cipher = cipher
        self._token_cache = token_cache
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._listeners: List[CredentialListener] = []

    def add_listener(self, callback: CredentialListener) -> None:
        """Register a callback invoked with ``(credential_id, record_or_None)`` on change."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: CredentialListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self, credential_id: str, record: Optional[CredentialRecord]) -> None:
        for callback in list(self._listeners):
            try:
                callback(credential_id, record)
            except Exception as e:
                self._logger.error(
                    f"Credential listener failed for {credential_id}: {e}",
                    exc_info=True,
                )

    def _load(self) -> Dict[str, CredentialRecord]:
        raw = self._store.get(CREDENTIALS_KEY) or {}
        records: Dict[str, CredentialRecord] = {}

        for record_id, data in raw.items():
            try:
                records[record_id] = CredentialRecord.model_validate(data)
            except ValidationError as e:
                self._logger.warning(f"Skipping unreadable credential record {record_id}: {e}")

        return records

    def _persist(self, records: Mapping[str, CredentialRecord]) -> None:
        self._store.set(
            CREDENTIALS_KEY,
            {record_id: record.model_dump(mode="json") for record_id, record in records.items()},
        )

    def save(self, data: Union[CredentialRecord, Mapping[str, Any]]) -> CredentialRecord:
        """Create a record, or merge the given fields into an existing one.

        ``data`` may carry plaintext ``private_key`` and ``webhook_secret``
        values; they are encrypted before storage. Fields that are not
        given keep their stored value.

        Raises:
            CredentialError: If the merged record is invalid
        """
        if isinstance(data, CredentialRecord):
            changes = data.model_dump(exclude_unset=True)
            changes.setdefault("id", data.id)
        else:
            changes = dict(data)

        secrets = {field: changes.pop(field) for field in SECRET_FIELDS if field in changes}
        if "private_key" in secrets:
            changes["encrypted_private_key"] = self.cipher.encrypt(secrets["private_key"] or "")
        if "webhook_secret" in secrets:
            changes["encrypted_webhook_secret"] = self.cipher.encrypt(secrets["webhook_secret"] or "")

        with self._lock:
            records = self._load()
            existing = records.get(changes.get("id") or "")

            if existing is not None:
                merged = existing.model_dump()
                merged.update(changes)
            else:
                merged = changes
                merged.pop("created_at", None)
            merged["updated_at"] = _utcnow()

            try:
                record = CredentialRecord.model_validate(merged)
            except ValidationError as e:
                raise CredentialError(
                    f"Invalid credential record: {e}",
                    credential_id=merged.get("id"),
                ) from e

            records[record.id] = record
            self._persist(records)

        if existing is not None and (
                existing.encrypted_private_key != record.encrypted_private_key
                or existing.installation_id != record.installation_id
        ):
            self._token_cache.invalidate(existing.installation_id)

        self._logger.info(
            f"Saved credential record {record.id}",
            extra={"credential_id": record.id, "status": record.status.value},
        )
        self._notify(record.id, record)
        return record

    def get(self, credential_id: str) -> Optional[CredentialRecord]:
        """Return the stored record without decrypting anything."""
        with self._lock:
            return self._load().get(credential_id)

    def find(self, credential_id: str) -> Optional[UnlockedCredential]:
        """Return the record with its secrets decrypted.

        If the stored private key can no longer be decrypted the record is
        reset to ``pending`` (key, webhook secret and installation id are
        cleared), persisted, and returned with empty secrets and
        ``repaired=True``. Once cleared there is nothing left to decrypt, so
        later calls return the pending record without repairing again.
        """
        with self._lock:
            records = self._load()
            record = records.get(credential_id)
            if record is None:
                return None

            private_key = self.cipher.decrypt(record.encrypted_private_key)
            webhook_secret = self.cipher.decrypt(record.encrypted_webhook_secret)

            if record.encrypted_private_key and not private_key:
                old_installation_id = record.installation_id
                record = record.model_copy(update={
                    "encrypted_private_key": "",
                    "encrypted_webhook_secret": "",
                    "installation_id": None,
                    "status": CredentialStatus.PENDING,
                    "updated_at": _utcnow(),
                })
                records[record.id] = record
                self._persist(records)
                self._token_cache.invalidate(old_installation_id)
                self._logger.error(
                    f"Private key for credential {credential_id} could not be decrypted; "
                    f"record reset to pending",
                    extra={"credential_id": credential_id},
                )
                repaired = UnlockedCredential(record=record, repaired=True)
            else:
                repaired = None

        if repaired is not None:
            self._notify(credential_id, repaired.record)
            return repaired

        return UnlockedCredential(
            record=record,
            private_key=private_key,
            webhook_secret=webhook_secret,
        )

    def unlock(self, credential_id: str) -> UnlockedCredential:
        """Like :meth:`find`, but raise when no usable key is available.

        Raises:
            CredentialError: If the record is missing, was just repaired, or
                lacks a private key or app id
        """
        credential = self.find(credential_id)
        if credential is None:
            raise CredentialError(
                f"Credential {credential_id} does not exist",
                credential_id=credential_id,
            )
        if credential.repaired:
            raise CredentialError(
                f"Credential {credential_id} was corrupted and has been reset",
                credential_id=credential_id,
                reason="corrupted",
            )
        if not credential.usable:
            raise CredentialError(
                f"Credential {credential_id} has no usable private key or app id",
                credential_id=credential_id,
                reason="missing",
            )
        return credential

    def all(self) -> List[CredentialRecord]:
        with self._lock:
            return list(self._load().values())

    def delete(self, credential_id: str) -> bool:
        """Delete a record and drop any cached token for its installation."""
        with self._lock:
            records = self._load()
            record = records.pop(credential_id, None)
            if record is None:
                return False
            self._persist(records)

        self._token_cache.invalidate(record.installation_id)
        self._logger.info(
            f"Deleted credential record {credential_id}",
            extra={"credential_id": credential_id},
        )
        self._notify(credential_id, None)
        return True

    def resolve_default(self) -> Optional[str]:
        """Return the first record with a readable private key and an app id."""
        for record in self.all():
            if record.signing_id > 0 and self.cipher.is_readable(record.encrypted_private_key):
                return record.id
        return None

    def iter_webhook_secrets(self) -> Iterator[Tuple[CredentialRecord, str]]:
        """Yield ``(record, webhook_secret)`` for records with a readable secret."""
        for record in self.all():
            secret = self.cipher.decrypt(record.encrypted_webhook_secret)
            if secret:
                yield record, secret

    @staticmethod
    def sanitize(record: CredentialRecord) -> Dict[str, Any]:
        """Public view of a record; never contains secrets."""
        data = record.model_dump(
            mode="json",
            exclude={"encrypted_private_key", "encrypted_webhook_secret"},
        )
        data["has_private_key"] = bool(record.encrypted_private_key)
        data["has_webhook_secret"] = bool(record.encrypted_webhook_secret)
        data["install_url"] = record.install_url
        return data
