"""
AES-256-GCM custody for session delegate keys.

Blobs are ``base64(nonce || auth_tag || ciphertext)`` with a fresh 12-byte
nonce per call. The key is process-wide configuration loaded once at startup.
"""
import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from django.core.exceptions import ImproperlyConfigured

from payflix.errors import IntegrityError

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


class KeyVault:
    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ImproperlyConfigured(
                f'Session encryption key must be {KEY_SIZE} bytes.')
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, key_hex: str) -> 'KeyVault':
        """Build the vault from the configured hex key, failing fast."""
        if not key_hex:
            raise ImproperlyConfigured('SESSION_ENCRYPTION_KEY is not configured.')
        try:
            key = bytes.fromhex(key_hex.strip())
        except ValueError as exc:
            raise ImproperlyConfigured(
                'SESSION_ENCRYPTION_KEY must be hex encoded.') from exc
        return cls(key)

    def encrypt(self, raw_key: bytes) -> str:
        nonce = os.urandom(NONCE_SIZE)
        # AESGCM appends the tag; store it ahead of the ciphertext
        sealed = self._aesgcm.encrypt(nonce, bytes(raw_key), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return base64.b64encode(nonce + tag + ciphertext).decode()

    def decrypt(self, blob: str) -> bytes:
        try:
            data = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise IntegrityError('Encrypted key blob is not valid base64.') from exc

        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise IntegrityError('Encrypted key blob is truncated.')

        nonce = data[:NONCE_SIZE]
        tag = data[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = data[NONCE_SIZE + TAG_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise IntegrityError(
                'Encrypted key failed authentication (tampered or corrupted).'
            ) from exc
