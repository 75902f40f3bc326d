"""Authenticated encryption for Solid tokens stored at rest.

Token bundles are serialized as canonical JSON and sealed with AES-256-GCM under a
single pre-shared key. The persisted envelope is four colon-joined hex fields::

    iv:authTag:salt:ciphertext

The 64-byte salt is carried for format stability only. It is not used for key
derivation.
"""

import json
import logging
import os
import secrets
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from social.quotevote.podsync.errors import EncryptionKeyError, TokenDecryptionError

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "SOLID_TOKEN_ENCRYPTION_KEY"
KEY_HEX_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
SALT_LENGTH = 64


def load_encryption_key(key: Optional[str]) -> bytes:
    """
    Decode a 64 hex character key into 32 key bytes.

    Raises:
        EncryptionKeyError: If the key is missing, the wrong length, or not hex.
    """
    if not key:
        raise EncryptionKeyError.missing()

    if len(key) != KEY_HEX_LENGTH:
        raise EncryptionKeyError.malformed()

    try:
        return bytes.fromhex(key)
    except ValueError as e:
        raise EncryptionKeyError.malformed() from e


def validate_encryption_key(key: Optional[str] = None) -> bool:
    """
    Check whether a key would load, without raising.

    When ``key`` is None the SOLID_TOKEN_ENCRYPTION_KEY environment variable is checked.
    Intended for readiness probes.
    """
    if key is None:
        key = os.environ.get(ENCRYPTION_KEY_ENV)
    try:
        load_encryption_key(key)
        return True
    except EncryptionKeyError:
        return False


def generate_encryption_key() -> str:
    """Generate a new hex encoded 32 byte key."""
    return secrets.token_bytes(32).hex()


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class TokenCipher:
    """
    Encrypts and decrypts JSON-serializable secrets with AES-256-GCM.

    The key is decoded once at construction, so building a cipher with a bad key fails
    immediately with ``EncryptionKeyError``.
    """

    def __init__(self, key: Optional[str]) -> None:
        self._aesgcm = AESGCM(load_encryption_key(key))

    @classmethod
    def from_env(cls) -> "TokenCipher":
        return cls(os.environ.get(ENCRYPTION_KEY_ENV))

    def encrypt(self, value: Any) -> str:
        iv = secrets.token_bytes(IV_LENGTH)
        salt = secrets.token_bytes(SALT_LENGTH)

        # AESGCM appends the tag to the ciphertext.
        sealed = self._aesgcm.encrypt(iv, canonical_json(value).encode("utf-8"), None)
        ciphertext, auth_tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return ":".join([iv.hex(), auth_tag.hex(), salt.hex(), ciphertext.hex()])

    def decrypt(self, envelope: str) -> Any:
        parts = envelope.split(":")
        if len(parts) != 4:
            raise TokenDecryptionError("Invalid encrypted data format")

        iv_hex, auth_tag_hex, _, ciphertext_hex = parts

        try:
            iv = bytes.fromhex(iv_hex)
            auth_tag = bytes.fromhex(auth_tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError as e:
            raise TokenDecryptionError(f"Failed to decrypt tokens: {e}") from e

        if len(auth_tag) != TAG_LENGTH:
            raise TokenDecryptionError("Failed to decrypt tokens: invalid tag length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag as e:
            raise TokenDecryptionError(
                "Failed to decrypt tokens: authentication failed"
            ) from e
        except ValueError as e:
            # Raised for an unusable IV length.
            raise TokenDecryptionError(f"Failed to decrypt tokens: {e}") from e

        return json.loads(plaintext.decode("utf-8"))
