"""
Alias Repository — asyncpg-backed persistence for users, aliases, devices
and the sync change log.

The core only talks to storage through :class:`AliasRepository`. Any object
with the same coroutine methods can be injected instead (tests use an
in-memory implementation).

Ordering:
    ``create_sync_event`` serializes appends per user with a transaction-level
    advisory lock and assigns ``timestamp = greatest(clock_timestamp(),
    last + 1µs)``, so ``(timestamp, id)`` keys are strictly increasing for a
    given user even when two devices append concurrently. ``now(user_id)``
    reads the clock under the same lock, so a sync cursor never passes an
    append that is still in flight.

Security Note:
    Rows only ever contain wrapped keys and encrypted payloads. Never log
    column values other than ids.
"""
import logging
from typing import Any, Optional
from datetime import datetime
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

import asyncpg

from .exceptions import AliasCollisionError, AliasVaultError, PersistenceError
from .models import Device, EmailAlias, SyncEvent, User

logger = logging.getLogger("alias_vault.repository")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    encryption_key TEXT NOT NULL,
    master_key_salt TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS email_aliases (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users (id),
    alias TEXT UNIQUE NOT NULL,
    description TEXT,
    forwarding_email TEXT NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,
    alias_id TEXT NOT NULL REFERENCES email_aliases (id),
    from_email TEXT NOT NULL,
    to_email TEXT NOT NULL,
    subject TEXT NOT NULL,
    content TEXT NOT NULL,
    is_read BOOLEAN NOT NULL DEFAULT FALSE,
    received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users (id),
    device_name TEXT NOT NULL,
    device_key TEXT NOT NULL,
    last_sync TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sync_data (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users (id),
    device_id TEXT NOT NULL REFERENCES devices (id),
    data_type TEXT NOT NULL,
    data_id TEXT NOT NULL,
    encrypted_data TEXT NOT NULL,
    operation TEXT NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_email_aliases_user_id ON email_aliases (user_id);
CREATE INDEX IF NOT EXISTS idx_emails_alias_id ON emails (alias_id);
CREATE INDEX IF NOT EXISTS idx_devices_user_id ON devices (user_id);
CREATE INDEX IF NOT EXISTS idx_sync_data_user_ts ON sync_data (user_id, timestamp, id);
"""

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_SELECT_USER_BY_ID = "SELECT * FROM users WHERE id = $1"

_SELECT_USER_BY_EMAIL = "SELECT * FROM users WHERE email = $1"

_INSERT_USER = """
INSERT INTO users (id, email, encryption_key, master_key_salt)
VALUES ($1, $2, $3, $4)
RETURNING *
"""

_ALIAS_EXISTS = "SELECT EXISTS (SELECT 1 FROM email_aliases WHERE alias = $1)"

_SELECT_ALIASES_BY_USER = """
SELECT * FROM email_aliases
WHERE user_id = $1
ORDER BY created_at DESC, id
"""

_SELECT_ALIAS = "SELECT * FROM email_aliases WHERE id = $1 AND user_id = $2"

_INSERT_ALIAS = """
INSERT INTO email_aliases (id, user_id, alias, description, forwarding_email, is_active)
VALUES ($1, $2, $3, $4, $5, $6)
RETURNING *
"""

_UPDATE_ALIAS = """
UPDATE email_aliases
SET description = COALESCE($2, description),
    is_active = COALESCE($3, is_active),
    updated_at = NOW()
WHERE id = $1
RETURNING *
"""

_DELETE_ALIAS_EMAILS = "DELETE FROM emails WHERE alias_id = $1"

_DELETE_ALIAS = "DELETE FROM email_aliases WHERE id = $1"

_SELECT_DEVICES_BY_USER = """
SELECT * FROM devices
WHERE user_id = $1
ORDER BY created_at DESC, id
"""

_SELECT_DEVICE = "SELECT * FROM devices WHERE id = $1 AND user_id = $2"

_INSERT_DEVICE = """
INSERT INTO devices (id, user_id, device_name, device_key)
VALUES ($1, $2, $3, $4)
RETURNING *
"""

_UPDATE_DEVICE_LAST_SYNC = "UPDATE devices SET last_sync = $2 WHERE id = $1"

_LOCK_USER_LOG = "SELECT pg_advisory_xact_lock(hashtext($1))"

_INSERT_SYNC_EVENT = """
INSERT INTO sync_data
    (id, user_id, device_id, data_type, data_id, encrypted_data, operation, timestamp)
SELECT $1, $2, $3, $4, $5, $6, $7,
       GREATEST(
           clock_timestamp(),
           COALESCE(MAX(timestamp) + INTERVAL '1 microsecond', clock_timestamp())
       )
FROM sync_data
WHERE user_id = $2
RETURNING timestamp
"""

_SELECT_SYNC_EVENTS_AFTER = """
SELECT * FROM sync_data
WHERE user_id = $1 AND timestamp > $2
ORDER BY timestamp ASC, id ASC
"""

_SELECT_SYNC_EVENTS_BETWEEN = """
SELECT * FROM sync_data
WHERE user_id = $1 AND timestamp > $2 AND timestamp <= $3
ORDER BY timestamp ASC, id ASC
"""

_SELECT_NOW = "SELECT clock_timestamp()"


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _user(row: Any) -> Optional[User]:
    if row is None:
        return None
    return User(
        id=row["id"],
        email=row["email"],
        encryption_key=row["encryption_key"],
        master_key_salt=row["master_key_salt"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _alias(row: Any) -> Optional[EmailAlias]:
    if row is None:
        return None
    return EmailAlias(
        id=row["id"],
        user_id=row["user_id"],
        alias=row["alias"],
        description=row["description"],
        forwarding_email=row["forwarding_email"],
        is_active=row["is_active"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _device(row: Any) -> Optional[Device]:
    if row is None:
        return None
    return Device(
        id=row["id"],
        user_id=row["user_id"],
        device_name=row["device_name"],
        device_key=row["device_key"],
        last_sync=row["last_sync"],
        created_at=row["created_at"],
    )


def _event(row: Any) -> SyncEvent:
    return SyncEvent(
        id=row["id"],
        user_id=row["user_id"],
        device_id=row["device_id"],
        data_type=row["data_type"],
        data_id=row["data_id"],
        encrypted_data=row["encrypted_data"],
        operation=row["operation"],
        timestamp=row["timestamp"],
    )


class AliasRepository:
    """Narrow storage interface consumed by the core.

    Args:
        db_pool: asyncpg-compatible connection pool.
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[Any]:
        """Acquire a connection, translating driver errors to PersistenceError."""
        try:
            async with self._db.acquire() as conn:
                yield conn
        except AliasVaultError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as err:
            logger.error("Repository %s failed: %s", operation, type(err).__name__)
            raise PersistenceError(f"{operation} failed: {err}") from err

    async def create_schema(self) -> None:
        async with self._connection("create_schema") as conn:
            await conn.execute(SCHEMA)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        async with self._connection("get_user_by_id") as conn:
            return _user(await conn.fetchrow(_SELECT_USER_BY_ID, user_id))

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._connection("get_user_by_email") as conn:
            return _user(await conn.fetchrow(_SELECT_USER_BY_EMAIL, email))

    async def create_user(
        self, user_id: str, email: str, encryption_key: str, master_key_salt: str
    ) -> User:
        async with self._connection("create_user") as conn:
            row = await conn.fetchrow(
                _INSERT_USER, user_id, email, encryption_key, master_key_salt,
            )
        logger.debug("Created user=%s", user_id)
        return _user(row)

    # ------------------------------------------------------------------
    # Aliases
    # ------------------------------------------------------------------

    async def alias_exists(self, alias: str) -> bool:
        async with self._connection("alias_exists") as conn:
            return bool(await conn.fetchval(_ALIAS_EXISTS, alias))

    async def get_aliases_by_user_id(self, user_id: str) -> list[EmailAlias]:
        async with self._connection("get_aliases_by_user_id") as conn:
            rows = await conn.fetch(_SELECT_ALIASES_BY_USER, user_id)
        return [_alias(row) for row in rows]

    async def get_alias(self, user_id: str, alias_id: str) -> Optional[EmailAlias]:
        async with self._connection("get_alias") as conn:
            return _alias(await conn.fetchrow(_SELECT_ALIAS, alias_id, user_id))

    async def create_alias(
        self,
        alias_id: str,
        user_id: str,
        alias: str,
        forwarding_email: str,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> EmailAlias:
        """Insert an alias.

        Raises:
            AliasCollisionError: If the token violates the unique constraint.
        """
        async with self._connection("create_alias") as conn:
            try:
                row = await conn.fetchrow(
                    _INSERT_ALIAS,
                    alias_id, user_id, alias, description, forwarding_email, is_active,
                )
            except asyncpg.UniqueViolationError as err:
                raise AliasCollisionError(alias) from err
        return _alias(row)

    async def update_alias(
        self,
        alias_id: str,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[EmailAlias]:
        async with self._connection("update_alias") as conn:
            row = await conn.fetchrow(_UPDATE_ALIAS, alias_id, description, is_active)
        return _alias(row)

    async def delete_alias(self, alias_id: str) -> None:
        async with self._connection("delete_alias") as conn:
            async with conn.transaction():
                await conn.execute(_DELETE_ALIAS_EMAILS, alias_id)
                await conn.execute(_DELETE_ALIAS, alias_id)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def get_devices_by_user_id(self, user_id: str) -> list[Device]:
        async with self._connection("get_devices_by_user_id") as conn:
            rows = await conn.fetch(_SELECT_DEVICES_BY_USER, user_id)
        return [_device(row) for row in rows]

    async def get_device(self, user_id: str, device_id: str) -> Optional[Device]:
        async with self._connection("get_device") as conn:
            return _device(await conn.fetchrow(_SELECT_DEVICE, device_id, user_id))

    async def create_device(
        self, device_id: str, user_id: str, device_name: str, device_key: str
    ) -> Device:
        async with self._connection("create_device") as conn:
            row = await conn.fetchrow(
                _INSERT_DEVICE, device_id, user_id, device_name, device_key,
            )
        return _device(row)

    async def update_device_last_sync(self, device_id: str, timestamp: datetime) -> None:
        async with self._connection("update_device_last_sync") as conn:
            await conn.execute(_UPDATE_DEVICE_LAST_SYNC, device_id, timestamp)

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    async def create_sync_event(self, event: SyncEvent) -> SyncEvent:
        """Append one event atomically and return it with its timestamp."""
        async with self._connection("create_sync_event") as conn:
            tx = conn.transaction()
            await tx.start()
            try:
                await conn.execute(_LOCK_USER_LOG, event.user_id)
                timestamp = await conn.fetchval(
                    _INSERT_SYNC_EVENT,
                    event.id,
                    event.user_id,
                    event.device_id,
                    event.data_type.value,
                    event.data_id,
                    event.encrypted_data,
                    event.operation.value,
                )
                await tx.commit()
            except Exception:
                await tx.rollback()
                raise
        return event.model_copy(update={"timestamp": timestamp})

    async def get_sync_events_after_timestamp(
        self,
        user_id: str,
        timestamp: datetime,
        until: Optional[datetime] = None,
    ) -> list[SyncEvent]:
        async with self._connection("get_sync_events_after_timestamp") as conn:
            if until is None:
                rows = await conn.fetch(_SELECT_SYNC_EVENTS_AFTER, user_id, timestamp)
            else:
                rows = await conn.fetch(
                    _SELECT_SYNC_EVENTS_BETWEEN, user_id, timestamp, until,
                )
        return [_event(row) for row in rows]

    async def now(self, user_id: Optional[str] = None) -> datetime:
        """Current storage clock, used to stamp sync cursors.

        With ``user_id`` the clock is read while holding that user's log
        lock, so every append that took the lock earlier has committed and
        is visible to a read bounded by the returned timestamp.
        """
        async with self._connection("now") as conn:
            if user_id is None:
                return await conn.fetchval(_SELECT_NOW)
            async with conn.transaction():
                await conn.execute(_LOCK_USER_LOG, user_id)
                return await conn.fetchval(_SELECT_NOW)
