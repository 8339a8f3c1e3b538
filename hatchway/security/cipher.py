"""Symmetric encryption for small secrets such as private keys.

Ciphertext is ``base64(iv || AES-256-CBC(pkcs7(plaintext)))`` with a fresh
random IV per call. The AES key is the SHA-256 digest of the configured
secret, so any non-empty string can serve as the encryption key.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from typing import Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from hatchway.utils.exceptions import ConfigurationError

IV_LENGTH = 16

logger = logging.getLogger(__name__)


def derive_key(secret: Union[str, bytes]) -> bytes:
    """Derive a 32-byte AES key from an arbitrary secret."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return hashlib.sha256(secret).digest()


class SecretCipher:
    """Encrypts and decrypts secrets with a single derived key.

    ``decrypt`` never raises: any failure (bad base64, truncated input,
    wrong key, bad padding) yields an empty string, and the caller decides
    what an unreadable secret means.
    """

    def __init__(self, secret: Union[str, bytes]) -> None:
        if not secret:
            raise ConfigurationError(
                "An encryption key is required to store credentials",
                config_key="security.encryption_key",
            )
        self._key = derive_key(secret)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext``; the empty string encrypts to the empty string."""
        if not plaintext:
            return ""

        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt ``ciphertext``, returning ``""`` when it cannot be read."""
        if not ciphertext:
            return ""

        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Secret is not valid base64")
            return ""

        body = raw[IV_LENGTH:]
        if len(raw) <= IV_LENGTH or len(body) % IV_LENGTH:
            logger.debug("Secret has an invalid length")
            return ""

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(raw[:IV_LENGTH])).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()

        try:
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            logger.debug("Secret could not be decrypted with the configured key")
            return ""

    def is_readable(self, ciphertext: str) -> bool:
        """Check whether ``ciphertext`` decrypts to a non-empty secret."""
        return bool(ciphertext) and bool(self.decrypt(ciphertext))


def encrypt_secret(plaintext: str, key: Union[str, bytes]) -> str:
    """Encrypt ``plaintext`` with ``key``."""
    return SecretCipher(key).encrypt(plaintext)


def decrypt_secret(ciphertext: str, key: Union[str, bytes]) -> str:
    """Decrypt ``ciphertext`` with ``key``; ``""`` means empty or unreadable."""
    return SecretCipher(key).decrypt(ciphertext)
