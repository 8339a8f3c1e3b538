from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from hatchway.core.store import ConfigStore

TOKEN_KEY = "hatchway_installation_token_{installation_id}"


@dataclass(frozen=True)
class CachedToken:
    """Installation access token with its absolute expiry.

    Attributes:
        installation_id: Installation the token is scoped to
        token: Opaque bearer token
        expires_at: Epoch seconds at which the provider stops accepting it
    """

    installation_id: int
    token: str
    expires_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CachedToken:
        return cls(
            installation_id=int(data["installation_id"]),
            token=str(data["token"]),
            expires_at=float(data["expires_at"]),
        )


class TokenCache:
    """Caches installation tokens in the key-value store.

    A token is stored with a TTL of ``expires_at - now - safety_margin``
    (at least one second) and is treated as a miss once it is within the
    safety margin of its expiry, even if the store still holds it.
    """

    def __init__(
            self,
            store: ConfigStore,
            safety_margin: float = 60.0,
            clock: Callable[[], float] = time.time
    ) -> None:
        self._store = store
        self.safety_margin = safety_margin
        self._clock = clock

    @staticmethod
    def _key(installation_id: int) -> str:
        return TOKEN_KEY.format(installation_id=installation_id)

    def get(self, installation_id: int) -> Optional[CachedToken]:
        raw = self._store.get(self._key(installation_id))
        if not raw:
            return None

        try:
            cached = CachedToken.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            self.invalidate(installation_id)
            return None

        if cached.expires_at - self.safety_margin <= self._clock():
            self.invalidate(installation_id)
            return None

        return cached

    def put(self, token: CachedToken) -> None:
        ttl = max(1.0, token.expires_at - self._clock() - self.safety_margin)
        self._store.set(self._key(token.installation_id), token.to_dict(), ttl)

    def invalidate(self, installation_id: Optional[int]) -> None:
        if installation_id:
            self._store.delete(self._key(installation_id))
