"""Alias Vault.

Disposable forwarding aliases whose metadata is encrypted at rest and kept
consistent across a user's devices through an append-only encrypted
change log.
"""
from .version import __version__
from .exceptions import (
    AliasVaultError,
    DecryptionError,
    AliasExhaustionError,
    AliasCollisionError,
    UnknownDeviceError,
    PersistenceError,
    VerificationError,
)
from .aliases import generate_alias, generate_unique_alias
from .repository import AliasRepository
from .sync import SyncCoordinator, SyncLog
from .vault import KeyManager, MasterKey, VaultConfig

__all__ = [
    "__version__",
    "AliasVaultError",
    "DecryptionError",
    "AliasExhaustionError",
    "AliasCollisionError",
    "UnknownDeviceError",
    "PersistenceError",
    "VerificationError",
    "generate_alias",
    "generate_unique_alias",
    "AliasRepository",
    "SyncCoordinator",
    "SyncLog",
    "KeyManager",
    "MasterKey",
    "VaultConfig",
]
