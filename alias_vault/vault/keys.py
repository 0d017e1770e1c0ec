"""
Vault Key Management — Master key generation, wrapping and unwrapping.

Each user owns one 256-bit master key. At rest it is stored only in wrapped
form: AES-GCM encrypted under a key derived from the service secret and the
user's salt (see :func:`~alias_vault.vault.crypto.derive_wrapping_key`).

Stored columns:
    encryption_key  = base64([nonce 12B][enc(base64(master_key)) + tag])
    master_key_salt = "b0,b1,...,b15"  (decimal byte values)

Security Note:
    Unwrapped keys live only in memory for the duration of a request.
    Call ``MasterKey.wipe()`` (or use it as a context manager) when done.
"""
import os
import base64
import binascii
import hmac
import logging
from typing import Optional, Union

from .config import VaultConfig
from .crypto import (
    KEY_LENGTH,
    SALT_SIZE,
    decrypt,
    derive_wrapping_key,
    encrypt,
)
from ..exceptions import DecryptionError

logger = logging.getLogger("alias_vault.vault")


class MasterKey:
    """Mutable holder for raw master key bytes that can be zeroed.

    Python cannot guarantee every copy is erased (the AEAD backend receives
    an immutable copy), so wiping is best-effort.
    """

    __slots__ = ("_key",)

    def __init__(self, key: Union[bytes, bytearray]):
        if len(key) != KEY_LENGTH:
            raise ValueError(
                f"master key must be {KEY_LENGTH} bytes, got {len(key)}"
            )
        self._key = bytearray(key)

    @classmethod
    def generate(cls) -> "MasterKey":
        return cls(os.urandom(KEY_LENGTH))

    @property
    def wiped(self) -> bool:
        return len(self._key) == 0

    def raw(self) -> bytes:
        """Return the key bytes for use by a cipher."""
        if self.wiped:
            raise RuntimeError("master key has been wiped")
        return bytes(self._key)

    def wipe(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0
        self._key = bytearray()

    def __enter__(self) -> "MasterKey":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __len__(self) -> int:
        return len(self._key)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MasterKey):
            return hmac.compare_digest(bytes(self._key), bytes(other._key))
        if isinstance(other, (bytes, bytearray)):
            return hmac.compare_digest(bytes(self._key), bytes(other))
        return NotImplemented

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        state = "wiped" if self.wiped else "loaded"
        return f"<MasterKey {state}>"


KeyLike = Union[MasterKey, bytes, bytearray]


def key_bytes(key: KeyLike) -> bytes:
    """Normalize a MasterKey or raw bytes to raw bytes."""
    if isinstance(key, MasterKey):
        return key.raw()
    return bytes(key)


# ---------------------------------------------------------------------------
# Export formats
# ---------------------------------------------------------------------------

def export_key(key: KeyLike) -> str:
    """Export raw key bytes as standard base64 text."""
    return base64.b64encode(key_bytes(key)).decode("ascii")


def import_key(exported: str) -> MasterKey:
    """Import a key previously produced by :func:`export_key`.

    Raises:
        ValueError: If the text is not base64 of exactly 32 bytes.
    """
    try:
        raw = base64.b64decode(exported, validate=True)
    except binascii.Error as err:
        raise ValueError("exported key is not valid base64") from err
    return MasterKey(raw)


def encode_salt(salt: bytes) -> str:
    """Encode salt bytes as a comma-separated list of decimal values."""
    return ",".join(str(b) for b in salt)


def decode_salt(text: str) -> bytes:
    """Decode a comma-separated salt string.

    Raises:
        ValueError: If any element is not an integer in 0..255.
    """
    try:
        return bytes(int(part) for part in text.split(","))
    except ValueError as err:
        raise ValueError(f"malformed salt: {err}") from err


def _salt_bytes(salt: Union[bytes, str]) -> bytes:
    if isinstance(salt, str):
        return decode_salt(salt)
    return salt


class KeyManager:
    """Generate, wrap and unwrap per-user master keys.

    Args:
        config: Validated vault configuration holding the service secret.
    """

    def __init__(self, config: VaultConfig):
        self._service_secret = config.service_secret
        self._iterations = config.kdf_iterations

    def _wrapping_key(self, salt: Union[bytes, str]) -> bytes:
        return derive_wrapping_key(
            _salt_bytes(salt), self._service_secret, self._iterations,
        )

    def generate_master_key(self) -> tuple[MasterKey, bytes]:
        """Generate a fresh master key and an independent fresh salt.

        Returns:
            Tuple of (master_key, salt).
        """
        salt = os.urandom(SALT_SIZE)
        return MasterKey.generate(), salt

    def wrap_master_key(self, key: KeyLike, salt: Union[bytes, str]) -> str:
        """Encrypt a master key for storage.

        Args:
            key: Master key to wrap.
            salt: The owning user's salt (bytes or stored string form).

        Returns:
            WrappedMasterKey blob.
        """
        exported = export_key(key).encode("ascii")
        return encrypt(exported, self._wrapping_key(salt))

    def unwrap_master_key(
        self, wrapped: str, salt: Union[bytes, str]
    ) -> MasterKey:
        """Decrypt a wrapped master key.

        Raises:
            DecryptionError: If the blob or salt do not match (wrong user,
                corrupted row) or the plaintext is not a key export.
        """
        exported = decrypt(wrapped, self._wrapping_key(salt))
        try:
            return import_key(exported.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as err:
            raise DecryptionError(
                "wrapped blob does not contain a valid master key"
            ) from err

    def create_wrapped_key(self) -> tuple[MasterKey, str, str]:
        """Generate and wrap a master key for a new account.

        Returns:
            Tuple of (master_key, wrapped_key, encoded_salt) where the last
            two are ready to be stored on the user record.
        """
        master_key, salt = self.generate_master_key()
        wrapped = self.wrap_master_key(master_key, salt)
        logger.debug("Generated and wrapped a new master key")
        return master_key, wrapped, encode_salt(salt)

    def unwrap_for_user(
        self, encryption_key: str, master_key_salt: str, user_id: Optional[str] = None
    ) -> MasterKey:
        """Unwrap the master key stored on a user record."""
        try:
            return self.unwrap_master_key(encryption_key, master_key_salt)
        except DecryptionError:
            logger.warning("Failed to unwrap master key for user=%s", user_id)
            raise
