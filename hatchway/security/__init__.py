"""Credential storage, token brokering and webhook verification."""

from hatchway.security.cache import CachedToken, TokenCache
from hatchway.security.cipher import SecretCipher, decrypt_secret, encrypt_secret
from hatchway.security.credentials import (
    CredentialRecord,
    CredentialStatus,
    CredentialStore,
    UnlockedCredential,
)
from hatchway.security.tokens import InstallationClient, TokenBroker
from hatchway.security.webhooks import WebhookHandler, WebhookResult
