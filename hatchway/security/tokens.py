"""GitHub App authentication.

Installation tokens are minted in two legs: an RS256 signing token (a JWT
issued by the app) is exchanged for a short-lived installation access
token. Installation tokens are cached until shortly before they expire.
"""

from __future__ import annotations

import datetime
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Union

import httpx
import jwt

from hatchway.remote.github import GitHubAPI
from hatchway.security.cache import CachedToken, TokenCache
from hatchway.security.credentials import CredentialStore
from hatchway.utils.exceptions import AuthError, CredentialError, NetworkError

JWT_ALGORITHM = "RS256"
DEFAULT_JWT_LIFETIME = 540
# Allows for clock drift between us and GitHub.
JWT_BACKDATE = 30


def parse_timestamp(value: Union[str, int, float, None]) -> Optional[float]:
    """Parse an ISO 8601 timestamp (``2024-01-01T00:00:00Z``) to epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        parsed = datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.timestamp()


class InstallationClient:
    """API handle bound to one credential's installation token.

    The token is fetched lazily from the broker for every call, so a
    long-lived handle keeps working across token rotations. Callers never
    see the token itself.
    """

    def __init__(self, broker: TokenBroker, credential_id: str) -> None:
        self._broker = broker
        self.credential_id = credential_id

    def __enter__(self) -> InstallationClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        pass

    def _token(self) -> str:
        token = self._broker.get_installation_token(self.credential_id)
        if not token:
            raise AuthError(
                "No installation token is available",
                credential_id=self.credential_id,
            )
        return token

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return self._broker.api.request(method, path, token=self._token(), **kwargs)

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", path, **kwargs)

    def download(self, url: str, destination: Any) -> int:
        return self._broker.api.download(url, destination, token=self._token())

    def rate_limit_status(self) -> Dict[str, Any]:
        return self._broker.api.rate_limit_status(token=self._token())


class TokenBroker:
    """Mints and caches installation tokens for stored credentials.

    Attributes:
        api: Client used for the token exchange
        jwt_lifetime: Lifetime of signing tokens in seconds
    """

    def __init__(
            self,
            credentials: CredentialStore,
            cache: TokenCache,
            api: GitHubAPI,
            clock: Callable[[], float] = time.time,
            jwt_lifetime: int = DEFAULT_JWT_LIFETIME,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self._credentials = credentials
        self._cache = cache
        self.api = api
        self._clock = clock
        self.jwt_lifetime = jwt_lifetime
        self._logger = logger or logging.getLogger(__name__)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, credential_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(credential_id, threading.Lock())

    def create_signing_token(self, signing_id: int, private_key: str) -> Optional[str]:
        """Sign an app JWT, or return ``None`` if the key cannot sign."""
        if not signing_id or not private_key:
            return None

        issued_at = int(self._clock())
        claims = {
            "iat": issued_at - JWT_BACKDATE,
            "exp": issued_at + self.jwt_lifetime,
            "iss": str(signing_id),
        }

        try:
            return jwt.encode(claims, private_key, algorithm=JWT_ALGORITHM)
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            self._logger.error(
                f"Failed to sign app token for app {signing_id}: {e}",
                extra={"signing_id": signing_id},
            )
            return None

    def exchange(self, installation_id: int, signing_token: str) -> Optional[CachedToken]:
        """Exchange a signing token for an installation token.

        Returns ``None`` and logs the cause on any HTTP or payload failure.
        """
        path = f"/app/installations/{installation_id}/access_tokens"
        try:
            response = self.api.post(path, token=signing_token)
        except NetworkError as e:
            self._logger.error(
                f"Token exchange for installation {installation_id} failed: {e}",
                extra={"installation_id": installation_id},
            )
            return None

        if not response.is_success:
            self._logger.error(
                f"Token exchange for installation {installation_id} returned "
                f"{response.status_code}: {response.text[:500]}",
                extra={"installation_id": installation_id, "status_code": response.status_code},
            )
            return None

        try:
            payload = response.json()
            token = payload["token"]
            expires_at = parse_timestamp(payload.get("expires_at"))
        except (ValueError, KeyError, TypeError) as e:
            self._logger.error(
                f"Malformed token exchange response for installation {installation_id}: {e}",
                extra={"installation_id": installation_id},
            )
            return None

        if not token or expires_at is None:
            self._logger.error(
                f"Token exchange response for installation {installation_id} lacks a token or expiry",
                extra={"installation_id": installation_id},
            )
            return None

        return CachedToken(installation_id=installation_id, token=token, expires_at=expires_at)

    def get_installation_token(self, credential_id: str) -> Optional[str]:
        """Return a valid installation token for the credential, or ``None``.

        Cache misses are single-flighted per credential: concurrent callers
        wait for the first one and then read its cached result.
        """
        found = self._credentials.find(credential_id)
        if found is None or found.repaired or not found.usable:
            self._logger.warning(
                f"Credential {credential_id} has no usable private key",
                extra={"credential_id": credential_id},
            )
            return None

        record = found.record
        if not record.installation_id:
            self._logger.warning(
                f"Credential {credential_id} is not installed",
                extra={"credential_id": credential_id},
            )
            return None

        cached = self._cache.get(record.installation_id)
        if cached is not None:
            return cached.token

        with self._lock_for(credential_id):
            cached = self._cache.get(record.installation_id)
            if cached is not None:
                return cached.token

            try:
                credential = self._credentials.unlock(credential_id)
            except CredentialError as e:
                self._logger.error(str(e), extra={"credential_id": credential_id})
                return None

            installation_id = credential.record.installation_id
            if not installation_id:
                return None

            signing_token = self.create_signing_token(
                credential.record.signing_id, credential.private_key
            )
            if signing_token is None:
                return None

            minted = self.exchange(installation_id, signing_token)
            if minted is None:
                return None

            if minted.expires_at <= self._clock():
                self._logger.error(
                    f"Installation {installation_id} returned an already expired token",
                    extra={"installation_id": installation_id},
                )
                return None

            self._cache.put(minted)
            self._logger.info(
                f"Minted installation token for credential {credential_id}",
                extra={"credential_id": credential_id, "installation_id": installation_id},
            )
            return minted.token

    def get_client(self, credential_id: str) -> InstallationClient:
        return InstallationClient(self, credential_id)

    def invalidate(self, credential_id: str) -> None:
        record = self._credentials.get(credential_id)
        if record is not None:
            self._cache.invalidate(record.installation_id)
