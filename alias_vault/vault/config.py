"""
Vault Configuration — Service secret loading and validated settings.

Reads settings from environment variables:
    ALIAS_VAULT_SERVICE_SECRET = <process-wide secret used to wrap master keys>
    ALIAS_VAULT_KDF_ITERATIONS = <int, default 100000>
    ALIAS_VAULT_ALIAS_LENGTH = <int, default 12>
    ALIAS_VAULT_ALIAS_ATTEMPTS = <int, default 10>
    ALIAS_VAULT_CODE_TTL = <seconds, default 600>
    RESEND_API_KEY = <optional, enables real email delivery>
    ALIAS_VAULT_EMAIL_FROM = <sender address for verification emails>

Security Note:
    Never log the service secret or any key material.
"""
import os
import base64
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("alias_vault.vault")

SERVICE_SECRET_ENV = "ALIAS_VAULT_SERVICE_SECRET"
DEFAULT_KDF_ITERATIONS = 100_000
DEFAULT_EMAIL_FROM = "EmailAlies <noreply@emailalies.com>"


def load_service_secret() -> str:
    """Load the service secret from ALIAS_VAULT_SERVICE_SECRET.

    Returns:
        The secret string.

    Raises:
        RuntimeError: If the variable is missing or empty.
    """
    secret = os.environ.get(SERVICE_SECRET_ENV)
    if not secret:
        raise RuntimeError(
            f"{SERVICE_SECRET_ENV} environment variable is not set. "
            f"Generate one with alias_vault.vault.generate_service_secret()"
        )
    return secret


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def generate_service_secret() -> str:
    """Generate a random 32-byte service secret as base64 string.

    This is a utility for operators provisioning a new deployment.
    """
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    service_secret: str = Field(min_length=1, repr=False)
    kdf_iterations: int = Field(default=DEFAULT_KDF_ITERATIONS, ge=1000)
    alias_length: int = Field(default=12, ge=6, le=64)
    alias_max_attempts: int = Field(default=10, ge=1, le=100)
    code_ttl: int = Field(default=600, ge=30)
    resend_api_key: Optional[str] = Field(default=None, repr=False)
    email_from: str = Field(default=DEFAULT_EMAIL_FROM)

    @field_validator("resend_api_key")
    @classmethod
    def empty_key_is_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat an empty API key as absent."""
        if v is not None and not v.strip():
            return None
        return v

    @property
    def email_delivery_enabled(self) -> bool:
        return self.resend_api_key is not None

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        config = cls(
            service_secret=load_service_secret(),
            kdf_iterations=_env_int(
                "ALIAS_VAULT_KDF_ITERATIONS", DEFAULT_KDF_ITERATIONS
            ),
            alias_length=_env_int("ALIAS_VAULT_ALIAS_LENGTH", 12),
            alias_max_attempts=_env_int("ALIAS_VAULT_ALIAS_ATTEMPTS", 10),
            code_ttl=_env_int("ALIAS_VAULT_CODE_TTL", 600),
            resend_api_key=os.environ.get("RESEND_API_KEY"),
            email_from=os.environ.get("ALIAS_VAULT_EMAIL_FROM", DEFAULT_EMAIL_FROM),
        )
        logger.debug(
            "Vault config loaded (kdf_iterations=%d, email_delivery=%s)",
            config.kdf_iterations, config.email_delivery_enabled,
        )
        return config
