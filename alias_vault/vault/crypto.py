"""
Vault Crypto — AES-GCM blobs, wrapping-key derivation and payload encoding.

Implements the primitives used for envelope encryption of master keys and for
encrypting sync event payloads:
- Wrapping key: PBKDF2-HMAC-SHA256(service_secret, salt, 100000) → 32 bytes
- AEAD: AES-256-GCM → base64([nonce 12B][ciphertext + GCM tag 16B])

Security Note:
    Never log plaintext, ciphertext or key material.
    Every blob gets a fresh random 96-bit nonce from os.urandom.
"""
import os
import base64
import binascii
import logging
from typing import Any

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptionError

logger = logging.getLogger("alias_vault.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256
SALT_SIZE = 16
PBKDF2_ITERATIONS = 100_000

MIN_BLOB_SIZE = NONCE_SIZE + TAG_SIZE


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_wrapping_key(
    salt: bytes,
    service_secret: str,
    iterations: int = PBKDF2_ITERATIONS,
) -> bytes:
    """Derive a 32-byte wrapping key using PBKDF2-HMAC-SHA256.

    The service secret is process-wide, not a user secret: the derived key
    protects master keys against a raw database read, not against an attacker
    who also holds the service secret.

    Args:
        salt: Per-user 16-byte salt.
        service_secret: Process-wide secret string.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte derived key.
    """
    if len(salt) != SALT_SIZE:
        raise ValueError(f"salt must be {SALT_SIZE} bytes, got {len(salt)}")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(service_secret.encode("utf-8"))


# ---------------------------------------------------------------------------
# AEAD encryption
# ---------------------------------------------------------------------------

def _check_key(key: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise ValueError(f"key must be {KEY_LENGTH} bytes, got {len(key)}")


def encrypt(plaintext: bytes, key: bytes) -> str:
    """Encrypt plaintext with AES-256-GCM under a fresh random nonce.

    Format: base64([nonce 12B][encrypted_payload + GCM tag 16B])

    Args:
        plaintext: Data to encrypt.
        key: Raw 32-byte key.

    Returns:
        Opaque base64 blob.
    """
    _check_key(key)
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(bytes(key)).encrypt(nonce, plaintext, None)
    return base64.b64encode(nonce + ct).decode("ascii")


def decrypt(blob: str, key: bytes) -> bytes:
    """Decrypt a blob produced by :func:`encrypt`.

    Args:
        blob: base64([nonce 12B][payload+tag]).
        key: Raw 32-byte key.

    Returns:
        Decrypted plaintext bytes.

    Raises:
        DecryptionError: If the blob is malformed, too short, or the
            authentication tag does not verify.
    """
    _check_key(key)
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError, TypeError) as err:
        raise DecryptionError("ciphertext blob is not valid base64") from err
    if len(raw) < MIN_BLOB_SIZE:
        raise DecryptionError(
            f"ciphertext blob too short: {len(raw)} bytes "
            f"(minimum {MIN_BLOB_SIZE})"
        )
    nonce = raw[:NONCE_SIZE]
    ct = raw[NONCE_SIZE:]
    try:
        return AESGCM(bytes(key)).decrypt(nonce, ct, None)
    except InvalidTag as err:
        raise DecryptionError(
            "authentication failed: wrong key or corrupted data"
        ) from err


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_payload(value: Any) -> bytes:
    """Serialize a change payload to compact JSON bytes for encryption.

    Supports: str, int, float, dict, list, bool, None, datetime, UUID and
    pydantic models (dumped by alias in JSON mode).

    Args:
        value: Python value to serialize.

    Returns:
        orjson-encoded bytes.
    """
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", by_alias=True)
    return orjson.dumps(value)


def deserialize_payload(data: bytes) -> Any:
    """Deserialize bytes back to a Python value.

    Raises:
        DecryptionError: If the decrypted bytes are not valid JSON, which
            means the payload was not produced by :func:`serialize_payload`.
    """
    try:
        return orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise DecryptionError("decrypted payload is not valid JSON") from err
