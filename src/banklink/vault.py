"""Credential vault: symmetric encryption of long-lived secrets at rest.

Secrets (aggregator access tokens, scraper login credentials) are stored as an
opaque envelope string:

    {"version": 1, "algorithm": "AES-256-GCM", "nonce": "<b64>", "ciphertext": "<b64>"}

Two older shapes still exist in stored connections and must keep working:

- Legacy plaintext: a bare token string written before encryption existed.
  Read paths return it unchanged and log a migration signal.
- Version 0 records ``{"encrypted", "iv", "salt", "tag"}`` (hex fields) from the
  previous per-record PBKDF2 scheme. They decrypt when the vault was built from
  a passphrase and are flagged for migration.

A value that *looks* like an envelope but fails to decrypt is an
``EncryptionError``. It is never treated as plaintext.
"""

import base64
import binascii
import json
import logging
import os
import re
import secrets
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import VaultConfig
from .errors import EncryptionError, ValidationError

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
ALGORITHM = "AES-256-GCM"
KEY_LENGTH = 32
NONCE_LENGTH = 12
MIN_PASSPHRASE_LENGTH = 32
LEGACY_ITERATIONS = 100_000

_ENVELOPE_KEYS = frozenset({"version", "algorithm", "nonce", "ciphertext"})
_V0_KEYS = frozenset({"encrypted", "iv", "salt", "tag"})
_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class RevealedSecret:
    """Plaintext secret plus whether its stored form should be rewritten."""

    secret: str
    needs_migration: bool


def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _parse_json_object(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    if not isinstance(value, str) or not value.lstrip().startswith("{"):
        return None
    try:
        parsed = json.loads(value)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _is_v1(obj: dict[str, Any]) -> bool:
    return set(obj) == _ENVELOPE_KEYS and all(
        isinstance(obj[k], str) for k in ("algorithm", "nonce", "ciphertext")
    ) and isinstance(obj["version"], int)


def _is_v0(obj: dict[str, Any]) -> bool:
    return set(obj) == _V0_KEYS and all(isinstance(v, str) for v in obj.values())


class CredentialVault:
    """Encrypts and decrypts secrets with one process-wide key.

    The key is fixed at construction and never rotated at runtime.
    """

    def __init__(self, key: bytes, *, passphrase: str | None = None):
        if len(key) != KEY_LENGTH:
            raise EncryptionError(f"Vault key must be {KEY_LENGTH} bytes")
        self._aead = AESGCM(key)
        # Only kept to open version 0 records, which salt every value
        self._passphrase = passphrase

    @classmethod
    def from_config(cls, config: VaultConfig) -> "CredentialVault":
        """Build a vault from configuration.

        A 64-character hex string is used as the raw key. Any other string of
        at least 32 characters is treated as a passphrase and stretched once
        with PBKDF2-HMAC-SHA256.

        Raises:
            EncryptionError: If the key is missing or too short
        """
        material = config.encryption_key
        if not material:
            raise EncryptionError("Vault encryption key is not configured")
        if _HEX_KEY.match(material):
            return cls(bytes.fromhex(material))
        if len(material) < MIN_PASSPHRASE_LENGTH:
            raise EncryptionError(
                f"Vault passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
            )
        key = _derive_key(material, config.kdf_salt.encode("utf-8"), config.kdf_iterations)
        return cls(key, passphrase=material)

    @staticmethod
    def generate_key() -> str:
        """Return a new random 256-bit key as hex, for initial setup."""
        return secrets.token_hex(KEY_LENGTH)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret into a version 1 envelope string."""
        if not isinstance(plaintext, str) or not plaintext:
            raise ValidationError("Cannot encrypt an empty secret")

        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        envelope = {
            "version": ENVELOPE_VERSION,
            "algorithm": ALGORITHM,
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        }
        return json.dumps(envelope, separators=(",", ":"))

    def is_encrypted(self, value: Any) -> bool:
        """True for a vault envelope (current or version 0), False for plaintext."""
        obj = _parse_json_object(value)
        return obj is not None and (_is_v1(obj) or _is_v0(obj))

    def decrypt(self, blob: str | dict[str, Any]) -> str:
        """Decrypt an envelope produced by this vault (or a version 0 record).

        Raises:
            EncryptionError: If the value is not an envelope, or is corrupt,
                tampered with, or was encrypted under a different key
        """
        obj = _parse_json_object(blob)
        if obj is None:
            raise EncryptionError("Value is not an encrypted envelope")
        if _is_v1(obj):
            return self._decrypt_v1(obj)
        if _is_v0(obj):
            return self._decrypt_v0(obj)
        raise EncryptionError("Unrecognized envelope structure")

    def _decrypt_v1(self, obj: dict[str, Any]) -> str:
        if obj["version"] != ENVELOPE_VERSION or obj["algorithm"] != ALGORITHM:
            raise EncryptionError(
                f"Unsupported envelope version={obj['version']} algorithm={obj['algorithm']}"
            )
        try:
            nonce = base64.b64decode(obj["nonce"], validate=True)
            ciphertext = base64.b64decode(obj["ciphertext"], validate=True)
            return self._aead.decrypt(nonce, ciphertext, None).decode("utf-8")
        except (binascii.Error, InvalidTag, ValueError) as e:
            raise EncryptionError("Decryption failed") from e

    def _decrypt_v0(self, obj: dict[str, Any]) -> str:
        if self._passphrase is None:
            raise EncryptionError(
                "Version 0 records need the original passphrase to decrypt"
            )
        try:
            salt = bytes.fromhex(obj["salt"])
            iv = bytes.fromhex(obj["iv"])
            tag = bytes.fromhex(obj["tag"])
            encrypted = bytes.fromhex(obj["encrypted"])
            key = _derive_key(self._passphrase, salt, LEGACY_ITERATIONS)
            return AESGCM(key).decrypt(iv, encrypted + tag, None).decode("utf-8")
        except (InvalidTag, ValueError) as e:
            raise EncryptionError("Decryption of version 0 record failed") from e

    def needs_migration(self, stored: Any) -> bool:
        """True for plaintext and version 0 records."""
        obj = _parse_json_object(stored)
        return obj is None or not _is_v1(obj)

    def reveal(self, stored: Any) -> RevealedSecret:
        """Read-path helper: decrypt envelopes, pass legacy plaintext through.

        Raises:
            EncryptionError: If the stored value is an envelope that fails to
                decrypt, or is empty / not a string
        """
        if isinstance(stored, str) and stored and not self.is_encrypted(stored):
            logger.warning(
                "Read legacy plaintext secret; it should be re-encrypted (migration pending)"
            )
            return RevealedSecret(secret=stored, needs_migration=True)
        if not stored:
            raise EncryptionError("No stored secret")
        secret = self.decrypt(stored)
        return RevealedSecret(secret=secret, needs_migration=self.needs_migration(stored))

    def migrate(self, stored: Any) -> str:
        """Return the stored secret re-encrypted as a current envelope."""
        return self.encrypt(self.reveal(stored).secret)
