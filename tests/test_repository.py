"""Tests for AliasRepository against a mocked asyncpg pool."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from alias_vault.exceptions import AliasCollisionError, PersistenceError
from alias_vault.models import DataType, Operation, SyncEvent
from alias_vault.repository import AliasRepository

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class FakePool:
    """asyncpg-compatible pool handing out one mocked connection."""

    def __init__(self):
        self.conn = MagicMock()
        self.conn.fetch = AsyncMock(return_value=[])
        self.conn.fetchrow = AsyncMock(return_value=None)
        self.conn.fetchval = AsyncMock(return_value=None)
        self.conn.execute = AsyncMock(return_value="OK")
        self.tx = MagicMock()
        self.tx.start = AsyncMock()
        self.tx.commit = AsyncMock()
        self.tx.rollback = AsyncMock()
        self.tx.__aenter__ = AsyncMock(return_value=self.tx)
        self.tx.__aexit__ = AsyncMock(return_value=False)
        self.conn.transaction = MagicMock(return_value=self.tx)

    def acquire(self):
        return _Acquire(self.conn)


def alias_row(**overrides):
    row = {
        "id": "a1",
        "user_id": "u1",
        "alias": "abcdefghijkl",
        "description": None,
        "forwarding_email": "me@example.com",
        "is_active": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def repository(pool):
    return AliasRepository(pool)


class TestUsers:

    @pytest.mark.asyncio
    async def test_get_user_by_email_maps_row(self, repository, pool):
        pool.conn.fetchrow.return_value = {
            "id": "u1", "email": "me@example.com", "encryption_key": "wrapped",
            "master_key_salt": "1,2,3", "created_at": NOW, "updated_at": NOW,
        }
        user = await repository.get_user_by_email("me@example.com")
        assert user.id == "u1"
        assert user.master_key_salt == "1,2,3"
        assert pool.conn.fetchrow.await_args.args[1] == "me@example.com"

    @pytest.mark.asyncio
    async def test_missing_user_is_none(self, repository):
        assert await repository.get_user_by_id("nope") is None


class TestAliases:

    @pytest.mark.asyncio
    async def test_alias_exists(self, repository, pool):
        pool.conn.fetchval.return_value = True
        assert await repository.alias_exists("abcdefghijkl") is True

    @pytest.mark.asyncio
    async def test_list_aliases(self, repository, pool):
        pool.conn.fetch.return_value = [alias_row(), alias_row(id="a2", alias="bbbbbbbbbbbb")]
        aliases = await repository.get_aliases_by_user_id("u1")
        assert [a.id for a in aliases] == ["a1", "a2"]
        assert aliases[0].forwarding_email == "me@example.com"

    @pytest.mark.asyncio
    async def test_unique_violation_is_collision(self, repository, pool):
        pool.conn.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key")
        with pytest.raises(AliasCollisionError) as excinfo:
            await repository.create_alias("a1", "u1", "abcdefghijkl", "me@example.com")
        assert excinfo.value.alias == "abcdefghijkl"

    @pytest.mark.asyncio
    async def test_driver_error_is_persistence_error(self, repository, pool):
        pool.conn.fetch.side_effect = asyncpg.PostgresError("connection lost")
        with pytest.raises(PersistenceError):
            await repository.get_aliases_by_user_id("u1")

    @pytest.mark.asyncio
    async def test_os_error_is_persistence_error(self, repository, pool):
        pool.conn.fetchrow.side_effect = ConnectionResetError("reset")
        with pytest.raises(PersistenceError):
            await repository.get_alias("u1", "a1")

    @pytest.mark.asyncio
    async def test_delete_removes_emails_first(self, repository, pool):
        await repository.delete_alias("a1")
        statements = [c.args[0] for c in pool.conn.execute.await_args_list]
        assert "emails" in statements[0]
        assert "email_aliases" in statements[1]


class TestSyncEvents:

    @pytest.mark.asyncio
    async def test_create_sync_event_locks_and_returns_timestamp(self, repository, pool):
        pool.conn.fetchval.return_value = NOW
        event = SyncEvent(
            id="e1", user_id="u1", device_id="d1", data_type=DataType.ALIAS,
            data_id="a1", encrypted_data="", operation=Operation.DELETE,
        )
        stored = await repository.create_sync_event(event)
        assert stored.timestamp == NOW
        assert event.timestamp is None
        lock_sql = pool.conn.execute.await_args.args[0]
        assert "pg_advisory_xact_lock" in lock_sql
        args = pool.conn.fetchval.await_args.args
        assert args[1:] == ("e1", "u1", "d1", "alias", "a1", "", "delete")
        pool.tx.commit.assert_awaited_once()
        pool.tx.rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_sync_event_rolls_back(self, repository, pool):
        pool.conn.fetchval.side_effect = asyncpg.PostgresError("serialization failure")
        event = SyncEvent(
            id="e1", user_id="u1", device_id="d1", data_type=DataType.ALIAS,
            data_id="a1", operation=Operation.DELETE,
        )
        with pytest.raises(PersistenceError):
            await repository.create_sync_event(event)
        pool.tx.rollback.assert_awaited_once()
        pool.tx.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_events_after_timestamp(self, repository, pool):
        pool.conn.fetch.return_value = [{
            "id": "e1", "user_id": "u1", "device_id": "d1", "data_type": "alias",
            "data_id": "a1", "encrypted_data": "", "operation": "delete",
            "timestamp": NOW,
        }]
        events = await repository.get_sync_events_after_timestamp("u1", NOW)
        assert events[0].operation is Operation.DELETE
        sql = pool.conn.fetch.await_args.args[0]
        assert "ORDER BY timestamp ASC, id ASC" in sql

    @pytest.mark.asyncio
    async def test_events_between_uses_upper_bound(self, repository, pool):
        await repository.get_sync_events_after_timestamp("u1", NOW, NOW)
        sql, *params = pool.conn.fetch.await_args.args
        assert "timestamp <= $3" in sql
        assert params == ["u1", NOW, NOW]

    @pytest.mark.asyncio
    async def test_now_for_user_waits_on_log_lock(self, repository, pool):
        pool.conn.fetchval.return_value = NOW
        assert await repository.now("u1") == NOW
        lock_sql, user = pool.conn.execute.await_args.args
        assert "pg_advisory_xact_lock" in lock_sql
        assert user == "u1"
        pool.conn.transaction.assert_called_once()
        assert "clock_timestamp" in pool.conn.fetchval.await_args.args[0]

    @pytest.mark.asyncio
    async def test_now_without_user_takes_no_lock(self, repository, pool):
        pool.conn.fetchval.return_value = NOW
        assert await repository.now() == NOW
        pool.conn.execute.assert_not_awaited()
