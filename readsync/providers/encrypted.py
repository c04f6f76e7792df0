"""
End-to-end encryption of the shared snapshot.

``EncryptedProvider`` wraps a provider that can move raw JSON objects and
stores the snapshot as an encrypted blob instead:

    {
        "version": 1,
        "algorithm": "AES-GCM",
        "salt": "<base64>",        # PBKDF2 salt, shared by every device
        "iv": "<base64>",          # fresh for every upload
        "ciphertext": "<base64>",
        "iterations": 100000,
        "encrypted_at": 1700000000000
    }

The AES-256 key is derived from a passphrase with PBKDF2-HMAC-SHA256. The
passphrase lives in memory only; the salt is kept in the provider config.
"""

import base64
import json
import logging
import os
import time
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import ConfigError, EncryptionError, SyncError
from ..types import SyncStateDocument
from .base import PayloadProvider, parse_snapshot

logger = logging.getLogger(__name__)

BLOB_VERSION = 1
ALGORITHM = "AES-GCM"
PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32
MIN_PASSPHRASE_LENGTH = 8


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64_decode(value: Any) -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"expected base64 text, got {type(value).__name__}")
    return base64.b64decode(value.encode("ascii"), validate=True)


def generate_salt() -> bytes:
    return os.urandom(SALT_LENGTH)


def encode_salt(salt: bytes) -> str:
    return _b64(salt)


def decode_salt(value: str) -> bytes:
    try:
        salt = _b64_decode(value)
    except ValueError as e:
        raise ConfigError(f"Invalid encryption salt: {e}", "configuration") from e
    if len(salt) != SALT_LENGTH:
        raise ConfigError(f"Encryption salt must be {SALT_LENGTH} bytes", "configuration")
    return salt


def derive_key(passphrase: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive the AES-256 key for ``passphrase`` and ``salt``."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def is_encrypted_blob(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and data.get("algorithm") == ALGORITHM
        and "ciphertext" in data
    )


def salt_from_blob(blob: dict[str, Any]) -> bytes:
    try:
        return _b64_decode(blob.get("salt"))
    except ValueError as e:
        raise EncryptionError(f"Corrupt encrypted snapshot: {e}", "decrypt") from e


def seal(
    payload: dict[str, Any],
    key: bytes,
    salt: bytes,
    *,
    iterations: int = PBKDF2_ITERATIONS,
    encrypted_at: Optional[int] = None,
) -> dict[str, Any]:
    """Encrypt ``payload`` with an already derived key."""
    iv = os.urandom(IV_LENGTH)
    plaintext = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
    return {
        "version": BLOB_VERSION,
        "algorithm": ALGORITHM,
        "salt": _b64(salt),
        "iv": _b64(iv),
        "ciphertext": _b64(ciphertext),
        "iterations": iterations,
        "encrypted_at": encrypted_at if encrypted_at is not None else int(time.time() * 1000),
    }


def unseal(blob: dict[str, Any], key: bytes) -> dict[str, Any]:
    """
    Decrypt a blob with an already derived key.

    Raises:
        EncryptionError: Wrong key, tampered or malformed blob
    """
    if blob.get("version") != BLOB_VERSION or blob.get("algorithm") != ALGORITHM:
        raise EncryptionError("Unsupported encryption format", "decrypt")
    try:
        iv = _b64_decode(blob.get("iv"))
        ciphertext = _b64_decode(blob.get("ciphertext"))
    except ValueError as e:
        raise EncryptionError(f"Corrupt encrypted snapshot: {e}", "decrypt") from e
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except (InvalidTag, ValueError) as e:
        raise EncryptionError(
            "Decryption failed. Incorrect passphrase or corrupted data.", "decrypt",
        ) from e
    try:
        return json.loads(plaintext.decode("utf-8"))
    except ValueError as e:
        raise EncryptionError(f"Decrypted snapshot is not valid JSON: {e}", "decrypt") from e


def _blob_iterations(blob: dict[str, Any]) -> int:
    try:
        return int(blob.get("iterations", PBKDF2_ITERATIONS))
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"Corrupt encrypted snapshot: {e}", "decrypt") from e


def encrypt_payload(
    payload: dict[str, Any],
    passphrase: str,
    salt: Optional[bytes] = None,
    *,
    iterations: int = PBKDF2_ITERATIONS,
) -> dict[str, Any]:
    """Encrypt ``payload`` with a key derived from ``passphrase``."""
    salt = salt or generate_salt()
    return seal(payload, derive_key(passphrase, salt, iterations), salt, iterations=iterations)


def decrypt_payload(blob: dict[str, Any], passphrase: str) -> dict[str, Any]:
    key = derive_key(passphrase, salt_from_blob(blob), _blob_iterations(blob))
    return unseal(blob, key)


def verify_passphrase(blob: dict[str, Any], passphrase: str) -> bool:
    """True if ``passphrase`` decrypts ``blob``."""
    try:
        decrypt_payload(blob, passphrase)
    except EncryptionError:
        return False
    return True


def check_passphrase(passphrase: str) -> None:
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise ConfigError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters", "configuration",
        )


async def resolve_salt(
    inner: PayloadProvider,
    passphrase: str,
) -> bytes:
    """
    Salt for a new encrypted setup.

    When the remote already holds an encrypted snapshot, its salt is reused
    after checking that ``passphrase`` opens it, so every device derives
    the same key. Otherwise a fresh salt is generated.

    Raises:
        ConfigError: Passphrase too short
        SyncError: Remote is encrypted with a different passphrase
    """
    check_passphrase(passphrase)
    data = await inner.download_payload()
    if data is not None and is_encrypted_blob(data):
        if not verify_passphrase(data, passphrase):
            raise SyncError("Incorrect passphrase for existing sync data", "decrypt")
        logger.info("Joining existing encrypted sync data on %s", inner.name)
        return salt_from_blob(data)
    return generate_salt()


class EncryptedProvider:
    """A provider whose remote snapshot is encrypted with a passphrase."""

    def __init__(
        self,
        inner: PayloadProvider,
        salt: bytes,
        passphrase: Optional[str] = None,
        *,
        iterations: int = PBKDF2_ITERATIONS,
    ):
        self._inner = inner
        self._salt = salt
        self._iterations = iterations
        self._passphrase = passphrase
        self._keys: dict[tuple[bytes, int], bytes] = {}

    @property
    def name(self) -> str:
        return self._inner.name

    @property
    def inner(self) -> PayloadProvider:
        return self._inner

    @property
    def salt(self) -> bytes:
        return self._salt

    @property
    def has_passphrase(self) -> bool:
        return self._passphrase is not None

    def set_passphrase(self, passphrase: Optional[str]) -> None:
        self._passphrase = passphrase
        self._keys.clear()

    async def is_ready_to_sync(self) -> bool:
        if self._passphrase is None:
            return False
        return await self._inner.is_ready_to_sync()

    def _key(self, salt: bytes, iterations: int, operation: str) -> bytes:
        if self._passphrase is None:
            raise EncryptionError("Passphrase not set", operation)
        cached = self._keys.get((salt, iterations))
        if cached is None:
            cached = derive_key(self._passphrase, salt, iterations)
            self._keys[(salt, iterations)] = cached
        return cached

    async def upload_snapshot(self, doc: SyncStateDocument) -> None:
        key = self._key(self._salt, self._iterations, "encrypt")
        blob = seal(doc.to_dict(), key, self._salt, iterations=self._iterations)
        await self._inner.upload_payload(blob)

    async def download_snapshot(self) -> Optional[SyncStateDocument]:
        data = await self._inner.download_payload()
        if data is None:
            return None
        if not is_encrypted_blob(data):
            # Left by a device that synced before encryption was turned on
            logger.info("Remote snapshot on %s is not encrypted", self.name)
            return parse_snapshot(data, self.name)
        key = self._key(salt_from_blob(data), _blob_iterations(data), "decrypt")
        return parse_snapshot(unseal(data, key), self.name)

    async def delete_item_content(self, identifier: str) -> None:
        await self._inner.delete_item_content(identifier)

    async def aclose(self) -> None:
        if hasattr(self._inner, "aclose"):
            await self._inner.aclose()
