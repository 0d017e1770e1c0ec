"""Alias Vault exceptions.

Every error raised by the core derives from ``AliasVaultError`` so callers
(e.g. an HTTP layer) can map the whole family to responses in one place.
"""


class AliasVaultError(Exception):
    """Base class for all Alias Vault errors."""


class DecryptionError(AliasVaultError):
    """Authentication tag mismatch or malformed ciphertext blob.

    Treat as "wrong key or corrupted data". Never carries plaintext.
    """


class AliasExhaustionError(AliasVaultError):
    """Unique alias generation ran out of attempts."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Could not generate a unique alias after {attempts} attempt(s)"
        )


class AliasCollisionError(AliasVaultError):
    """The storage layer rejected an alias token as already in use."""

    def __init__(self, alias: str):
        self.alias = alias
        super().__init__(f"Alias {alias!r} is already in use")


class UnknownDeviceError(AliasVaultError):
    """Device does not exist or does not belong to the requesting user."""

    def __init__(self, user_id: str, device_id: str):
        self.user_id = user_id
        self.device_id = device_id
        super().__init__(
            f"Device {device_id} is not registered for user {user_id}"
        )


class PersistenceError(AliasVaultError):
    """Underlying repository failure. Never retried inside the core."""


class VerificationError(AliasVaultError):
    """Invalid or expired one-time verification code."""


class AccountError(AliasVaultError):
    """Account level failure (registration, login, ownership)."""


class UserExistsError(AccountError):
    """An account already exists for this email."""


class UserNotFoundError(AccountError):
    """No account matches the given identifier."""


class AliasNotFoundError(AccountError):
    """Alias does not exist or belongs to another user."""
