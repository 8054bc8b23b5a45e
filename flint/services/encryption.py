"""AES-256-GCM encryption for provider secrets at rest."""

import base64
import binascii
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from flint.config import Settings
from flint.exceptions import ConfigurationError, CredentialError

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000


class EncryptionService:
    """
    Symmetric encryption for secrets stored in the database.

    The key is derived once from the configured master key and salt with
    PBKDF2-HMAC-SHA256. Output layout is base64(iv || tag || ciphertext).
    """

    def __init__(self, master_key: str, salt: str):
        if not master_key:
            raise ConfigurationError("encryption_master_key is not set")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt.encode(),
            iterations=PBKDF2_ITERATIONS,
        )
        self._aead = AESGCM(kdf.derive(master_key.encode()))

    @classmethod
    def from_settings(cls, settings: Settings) -> "EncryptionService":
        return cls(settings.encryption_master_key, settings.encryption_salt)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode(), None)
        # AESGCM appends the tag; store it ahead of the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CredentialError("Stored secret is not valid base64") from e
        if len(raw) < IV_LENGTH + TAG_LENGTH:
            raise CredentialError("Stored secret is truncated")

        iv = raw[:IV_LENGTH]
        tag = raw[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
        ciphertext = raw[IV_LENGTH + TAG_LENGTH :]
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None).decode()
        except InvalidTag as e:
            raise CredentialError("Stored secret failed authentication") from e


def generate_token(nbytes: int = 32) -> str:
    """Random hex token, used for idempotency keys."""
    return secrets.token_hex(nbytes)
