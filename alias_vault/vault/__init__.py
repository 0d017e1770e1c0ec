"""Alias Vault key management — envelope encryption of per-user master keys.

Security Note (Threat Model):
    Master keys are wrapped with a key derived from a process-wide service
    secret and a per-user salt. This protects keys against a raw database
    read, not against an attacker who also obtains the service secret.
    This is an accepted trust boundary: it allows a master key to be
    unwrapped after a passwordless (emailed code) login.
"""

from .config import VaultConfig, load_service_secret, generate_service_secret
from .crypto import decrypt, derive_wrapping_key, encrypt
from .keys import (
    KeyManager,
    MasterKey,
    decode_salt,
    encode_salt,
    export_key,
    import_key,
)

__all__ = [
    "VaultConfig",
    "load_service_secret",
    "generate_service_secret",
    "encrypt",
    "decrypt",
    "derive_wrapping_key",
    "KeyManager",
    "MasterKey",
    "encode_salt",
    "decode_salt",
    "export_key",
    "import_key",
]
