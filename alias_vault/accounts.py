"""
Account and alias flows built on the core.

``AccountService`` drives passwordless registration/login: a verified code
either creates a user (fresh master key, wrapped and stored with its salt) or
returns the existing one. ``AliasService`` performs alias CRUD and records
every change in the sync log, encrypted with the user's master key.

Alias creation has one attempt budget. A pre-check hit and an insert-time
collision (the unique constraint firing after the pre-check) each spend one
attempt; once the budget is spent the call fails with ``AliasExhaustionError``.
"""
import uuid
import logging
from typing import Any, Optional

from .aliases import generate_alias
from .exceptions import (
    AliasCollisionError,
    AliasExhaustionError,
    AliasNotFoundError,
    UserExistsError,
    UserNotFoundError,
    VerificationError,
)
from .models import DataType, EmailAlias, Operation, User
from .sync.coordinator import SyncCoordinator
from .vault.config import VaultConfig
from .vault.keys import KeyLike, KeyManager, MasterKey
from .verification import VerificationManager, VerificationPurpose

logger = logging.getLogger("alias_vault.accounts")


class AccountService:
    """Registration, login and master key unlocking."""

    def __init__(
        self,
        repository: Any,
        key_manager: KeyManager,
        verification: VerificationManager,
    ):
        self._repo = repository
        self._keys = key_manager
        self._verification = verification

    async def start_registration(self, email: str) -> bool:
        """Send a registration code.

        Raises:
            UserExistsError: If the email already has an account.
        """
        if await self._repo.get_user_by_email(email) is not None:
            raise UserExistsError(f"User {email} already exists. Try signing in instead.")
        return await self._verification.request_code(email, VerificationPurpose.REGISTER)

    async def start_login(self, email: str) -> bool:
        """Send a login code.

        Raises:
            UserNotFoundError: If no account exists for the email.
        """
        if await self._repo.get_user_by_email(email) is None:
            raise UserNotFoundError(f"No account found for {email}. Please register first.")
        return await self._verification.request_code(email, VerificationPurpose.LOGIN)

    async def complete_verification(self, email: str, code: str) -> tuple[User, bool]:
        """Check a code and finish registration or login.

        Returns:
            Tuple of (user, is_new_user).

        Raises:
            VerificationError: Invalid or expired code.
            UserExistsError: Registration raced with another registration.
            UserNotFoundError: Login for an account that no longer exists.
        """
        verification = self._verification.verify_code(email, code)
        if verification is None:
            raise VerificationError("Invalid or expired verification code")

        if verification.purpose is VerificationPurpose.REGISTER:
            if await self._repo.get_user_by_email(email) is not None:
                raise UserExistsError(f"User {email} already exists")
            master_key, wrapped, salt = self._keys.create_wrapped_key()
            master_key.wipe()
            user = await self._repo.create_user(str(uuid.uuid4()), email, wrapped, salt)
            logger.info("Registered user=%s", user.id)
            return user, True

        user = await self._repo.get_user_by_email(email)
        if user is None:
            raise UserNotFoundError(f"User {email} not found")
        logger.info("Login verified for user=%s", user.id)
        return user, False

    def unlock_master_key(self, user: User) -> MasterKey:
        """Unwrap the user's master key for the current request.

        Raises:
            DecryptionError: The stored envelope or salt is corrupted.
        """
        return self._keys.unwrap_for_user(
            user.encryption_key, user.master_key_salt, user.id,
        )


class AliasService:
    """Alias CRUD that keeps the sync log in step with the alias table."""

    def __init__(
        self,
        repository: Any,
        coordinator: SyncCoordinator,
        config: Optional[VaultConfig] = None,
    ):
        self._repo = repository
        self._sync = coordinator
        self._alias_length = config.alias_length if config else 12
        self._max_attempts = config.alias_max_attempts if config else 10

    async def list_aliases(self, user: User) -> list[EmailAlias]:
        return await self._repo.get_aliases_by_user_id(user.id)

    async def _owned_alias(self, user: User, alias_id: str) -> EmailAlias:
        alias = await self._repo.get_alias(user.id, alias_id)
        if alias is None or alias.user_id != user.id:
            raise AliasNotFoundError(f"Alias {alias_id} not found")
        return alias

    async def create_alias(
        self,
        user: User,
        device_id: str,
        forwarding_email: str,
        master_key: KeyLike,
        description: Optional[str] = None,
    ) -> EmailAlias:
        """Create a uniquely named alias and record a ``create`` event.

        Raises:
            AliasExhaustionError: Pre-check and insert-time collisions used up
                the attempt budget.
        """
        alias = None
        for attempt in range(1, self._max_attempts + 1):
            token = generate_alias(self._alias_length)
            if await self._repo.alias_exists(token):
                logger.debug("Alias pre-check collision %d/%d", attempt, self._max_attempts)
                continue
            try:
                alias = await self._repo.create_alias(
                    str(uuid.uuid4()), user.id, token, forwarding_email, description,
                )
            except AliasCollisionError:
                logger.debug("Alias insert collision %d/%d", attempt, self._max_attempts)
                continue
            break
        if alias is None:
            logger.warning("Alias generation exhausted after %d attempts", self._max_attempts)
            raise AliasExhaustionError(self._max_attempts)

        await self._sync.record_change(
            user.id, device_id, DataType.ALIAS, alias.id, Operation.CREATE,
            alias.to_wire(), master_key,
        )
        logger.info("Created alias id=%s for user=%s", alias.id, user.id)
        return alias

    async def update_alias(
        self,
        user: User,
        device_id: str,
        alias_id: str,
        master_key: KeyLike,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> EmailAlias:
        """Update description and/or active flag and record an ``update`` event."""
        await self._owned_alias(user, alias_id)
        alias = await self._repo.update_alias(alias_id, description, is_active)
        if alias is None:
            raise AliasNotFoundError(f"Alias {alias_id} not found")
        await self._sync.record_change(
            user.id, device_id, DataType.ALIAS, alias.id, Operation.UPDATE,
            alias.to_wire(), master_key,
        )
        return alias

    async def delete_alias(self, user: User, device_id: str, alias_id: str) -> None:
        """Delete an alias and record a payload-less ``delete`` event."""
        await self._owned_alias(user, alias_id)
        await self._repo.delete_alias(alias_id)
        await self._sync.record_change(
            user.id, device_id, DataType.ALIAS, alias_id, Operation.DELETE,
        )
        logger.info("Deleted alias id=%s for user=%s", alias_id, user.id)
