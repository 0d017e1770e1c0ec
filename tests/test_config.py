"""Tests for VaultConfig loading and validation."""
import base64

import pytest
from pydantic import ValidationError

from alias_vault.vault.config import (
    SERVICE_SECRET_ENV,
    VaultConfig,
    generate_service_secret,
    load_service_secret,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        SERVICE_SECRET_ENV,
        "ALIAS_VAULT_KDF_ITERATIONS",
        "ALIAS_VAULT_ALIAS_LENGTH",
        "ALIAS_VAULT_ALIAS_ATTEMPTS",
        "ALIAS_VAULT_CODE_TTL",
        "RESEND_API_KEY",
        "ALIAS_VAULT_EMAIL_FROM",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestLoadServiceSecret:

    def test_missing_secret_raises(self, clean_env):
        with pytest.raises(RuntimeError, match=SERVICE_SECRET_ENV):
            load_service_secret()

    def test_reads_secret(self, clean_env):
        clean_env.setenv(SERVICE_SECRET_ENV, "s3cret")
        assert load_service_secret() == "s3cret"

    def test_generate_service_secret(self):
        assert len(base64.b64decode(generate_service_secret())) == 32


class TestVaultConfig:

    def test_defaults(self):
        config = VaultConfig(service_secret="x")
        assert config.kdf_iterations == 100_000
        assert config.alias_length == 12
        assert config.alias_max_attempts == 10
        assert config.code_ttl == 600
        assert config.email_delivery_enabled is False

    def test_secret_not_in_repr(self):
        assert "hidden-value" not in repr(VaultConfig(service_secret="hidden-value"))

    def test_empty_secret_rejected(self):
        with pytest.raises(ValidationError):
            VaultConfig(service_secret="")

    def test_blank_resend_key_is_none(self):
        config = VaultConfig(service_secret="x", resend_api_key="  ")
        assert config.resend_api_key is None

    def test_from_env(self, clean_env):
        clean_env.setenv(SERVICE_SECRET_ENV, "env-secret")
        clean_env.setenv("ALIAS_VAULT_KDF_ITERATIONS", "5000")
        clean_env.setenv("ALIAS_VAULT_ALIAS_LENGTH", "16")
        clean_env.setenv("RESEND_API_KEY", "re_123")
        config = VaultConfig.from_env()
        assert config.service_secret == "env-secret"
        assert config.kdf_iterations == 5000
        assert config.alias_length == 16
        assert config.email_delivery_enabled is True

    def test_from_env_invalid_value(self, clean_env):
        clean_env.setenv(SERVICE_SECRET_ENV, "env-secret")
        clean_env.setenv("ALIAS_VAULT_ALIAS_LENGTH", "2")
        with pytest.raises(ValidationError):
            VaultConfig.from_env()
