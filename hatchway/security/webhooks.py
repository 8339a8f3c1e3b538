"""GitHub webhook verification and dispatch."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from hatchway.security.credentials import (
    CredentialRecord,
    CredentialStatus,
    CredentialStore,
    normalize_repository,
)
from hatchway.utils.exceptions import AuthError

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """Return the ``X-Hub-Signature-256`` header value for ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature)


@dataclass
class WebhookResult:
    """Outcome of handling one delivery.

    Attributes:
        event: ``X-GitHub-Event`` name, with ``.action`` appended when present
        credential_id: Record whose secret verified the delivery
        handled: Whether the event changed anything
        message: Short human-readable summary
        repositories: Repositories affected by the event
    """

    event: str
    credential_id: Optional[str] = None
    handled: bool = False
    message: str = ""
    repositories: List[str] = field(default_factory=list)


class WebhookHandler:
    """Verifies deliveries and applies them to credentials and caches.

    ``on_release`` is called with the repository of every published
    release so the owner can drop its cached release and package data.
    """

    def __init__(
            self,
            credentials: CredentialStore,
            on_release: Optional[Callable[[str], None]] = None,
            logger: Optional[logging.Logger] = None
    ) -> None:
        self._credentials = credentials
        self._on_release = on_release
        self._logger = logger or logging.getLogger(__name__)
        self._handlers: Dict[str, Callable[[CredentialRecord, Mapping[str, Any], WebhookResult], None]] = {
            "ping": self._handle_ping,
            "release": self._handle_release,
            "installation": self._handle_installation,
            "installation_repositories": self._handle_installation_repositories,
        }

    def authenticate(self, body: bytes, signature: Optional[str]) -> CredentialRecord:
        """Find the record whose webhook secret produced ``signature``.

        Raises:
            AuthError: If no stored secret matches
        """
        for record, secret in self._credentials.iter_webhook_secrets():
            if verify_signature(secret, body, signature):
                return record

        raise AuthError("Webhook signature did not match any stored secret", reason="signature")

    def handle(
            self,
            event: str,
            payload: Mapping[str, Any],
            body: Union[bytes, str],
            signature: Optional[str]
    ) -> WebhookResult:
        """
        Verify and dispatch one webhook delivery.

        Args:
            event: Value of the ``X-GitHub-Event`` header
            payload: Decoded JSON body
            body: Raw request body, used for the signature check
            signature: Value of the ``X-Hub-Signature-256`` header

        Returns:
            What the delivery did; unknown events are acknowledged as unhandled

        Raises:
            AuthError: If the signature is invalid
        """
        raw = body.encode("utf-8") if isinstance(body, str) else body
        record = self.authenticate(raw, signature)

        action = payload.get("action")
        result = WebhookResult(
            event=f"{event}.{action}" if action else event,
            credential_id=record.id,
        )

        handler = self._handlers.get(event)
        if handler is None:
            result.message = f"Ignored event {result.event}"
            self._logger.debug(result.message)
            return result

        handler(record, payload, result)
        self._logger.info(
            f"Webhook {result.event}: {result.message}",
            extra={"webhook_event": result.event, "credential_id": record.id, "handled": result.handled},
        )
        return result

    def _handle_ping(self, record: CredentialRecord, payload: Mapping[str, Any],
                     result: WebhookResult) -> None:
        result.handled = True
        result.message = "pong"

    def _handle_release(self, record: CredentialRecord, payload: Mapping[str, Any],
                        result: WebhookResult) -> None:
        if payload.get("action") != "published":
            result.message = "Release action ignored"
            return

        repository = normalize_repository((payload.get("repository") or {}).get("full_name", ""))
        if not repository:
            result.message = "Release payload has no repository"
            return

        if self._on_release is not None:
            self._on_release(repository)
        result.handled = True
        result.repositories = [repository]
        result.message = f"Release caches cleared for {repository}"

    def _handle_installation(self, record: CredentialRecord, payload: Mapping[str, Any],
                             result: WebhookResult) -> None:
        action = payload.get("action")
        installation_id = (payload.get("installation") or {}).get("id")

        if action == "created" and installation_id:
            repositories = [
                repo.get("full_name", "") for repo in payload.get("repositories") or []
            ]
            changes: Dict[str, Any] = {
                "id": record.id,
                "installation_id": installation_id,
                "status": CredentialStatus.INSTALLED,
            }
            if repositories:
                changes["managed_repositories"] = list(record.managed_repositories) + repositories
            saved = self._credentials.save(changes)
            result.handled = True
            result.repositories = list(saved.managed_repositories)
            result.message = f"Installation {installation_id} recorded"
        elif action in ("deleted", "suspend"):
            self._credentials.save({
                "id": record.id,
                "installation_id": None,
                "status": CredentialStatus.REQUIRES_INSTALLATION,
            })
            result.handled = True
            result.message = f"Installation {action}; credential requires installation"
        else:
            result.message = f"Installation action {action} ignored"

    def _handle_installation_repositories(self, record: CredentialRecord, payload: Mapping[str, Any],
                                          result: WebhookResult) -> None:
        added = [
            normalize_repository(repo.get("full_name", ""))
            for repo in payload.get("repositories_added") or []
        ]
        removed = {
            normalize_repository(repo.get("full_name", ""))
            for repo in payload.get("repositories_removed") or []
        }

        repositories = [repo for repo in record.managed_repositories if repo not in removed]
        repositories.extend(repo for repo in added if repo)
        self._credentials.save({"id": record.id, "managed_repositories": repositories})

        result.handled = True
        result.repositories = sorted({repo for repo in added if repo} | removed)
        result.message = f"{len(added)} repositories added, {len(removed)} removed"
