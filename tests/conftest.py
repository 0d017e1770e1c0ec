"""Shared fixtures: an in-memory repository and ready-made core objects."""
from typing import Optional
from datetime import datetime, timedelta, timezone

import pytest

from alias_vault.exceptions import AliasCollisionError
from alias_vault.models import Device, EmailAlias, SyncEvent, User
from alias_vault.sync import SyncCoordinator
from alias_vault.vault import KeyManager, MasterKey, VaultConfig


class InMemoryRepository:
    """Dict-backed stand-in for AliasRepository.

    Uses a logical clock that advances by ``tick`` on every read, so event
    timestamps and sync cursors are strictly increasing and distinct. The
    default tick is one millisecond; pass a sub-millisecond tick to mimic
    the microsecond resolution of the storage clock.
    """

    def __init__(self, tick: timedelta = timedelta(milliseconds=1)):
        self.tick = tick
        self.now_calls: list[Optional[str]] = []
        self.users: dict[str, User] = {}
        self.aliases: dict[str, EmailAlias] = {}
        self.devices: dict[str, Device] = {}
        self.events: list[SyncEvent] = []
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += self.tick
        return self._clock

    async def now(self, user_id: Optional[str] = None) -> datetime:
        self.now_calls.append(user_id)
        return self._tick()

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    async def create_user(self, user_id, email, encryption_key, master_key_salt) -> User:
        now = self._tick()
        user = User(
            id=user_id, email=email, encryption_key=encryption_key,
            master_key_salt=master_key_salt, created_at=now, updated_at=now,
        )
        self.users[user_id] = user
        return user

    async def alias_exists(self, alias: str) -> bool:
        return any(a.alias == alias for a in self.aliases.values())

    async def get_aliases_by_user_id(self, user_id: str) -> list[EmailAlias]:
        return [a for a in self.aliases.values() if a.user_id == user_id]

    async def get_alias(self, user_id: str, alias_id: str) -> Optional[EmailAlias]:
        alias = self.aliases.get(alias_id)
        if alias is None or alias.user_id != user_id:
            return None
        return alias

    async def create_alias(
        self, alias_id, user_id, alias, forwarding_email, description=None, is_active=True
    ) -> EmailAlias:
        if await self.alias_exists(alias):
            raise AliasCollisionError(alias)
        now = self._tick()
        row = EmailAlias(
            id=alias_id, user_id=user_id, alias=alias, description=description,
            forwarding_email=forwarding_email, is_active=is_active,
            created_at=now, updated_at=now,
        )
        self.aliases[alias_id] = row
        return row

    async def update_alias(self, alias_id, description=None, is_active=None):
        current = self.aliases.get(alias_id)
        if current is None:
            return None
        updates = {"updated_at": self._tick()}
        if description is not None:
            updates["description"] = description
        if is_active is not None:
            updates["is_active"] = is_active
        self.aliases[alias_id] = current.model_copy(update=updates)
        return self.aliases[alias_id]

    async def delete_alias(self, alias_id: str) -> None:
        self.aliases.pop(alias_id, None)

    async def get_devices_by_user_id(self, user_id: str) -> list[Device]:
        return [d for d in self.devices.values() if d.user_id == user_id]

    async def get_device(self, user_id: str, device_id: str) -> Optional[Device]:
        device = self.devices.get(device_id)
        if device is None or device.user_id != user_id:
            return None
        return device

    async def create_device(self, device_id, user_id, device_name, device_key) -> Device:
        device = Device(
            id=device_id, user_id=user_id, device_name=device_name,
            device_key=device_key, created_at=self._tick(),
        )
        self.devices[device_id] = device
        return device

    async def update_device_last_sync(self, device_id: str, timestamp: datetime) -> None:
        device = self.devices[device_id]
        self.devices[device_id] = device.model_copy(update={"last_sync": timestamp})

    async def create_sync_event(self, event: SyncEvent) -> SyncEvent:
        stored = event.model_copy(update={"timestamp": self._tick()})
        self.events.append(stored)
        return stored

    async def get_sync_events_after_timestamp(self, user_id, timestamp, until=None):
        events = [
            e for e in self.events
            if e.user_id == user_id and e.timestamp > timestamp
            and (until is None or e.timestamp <= until)
        ]
        return sorted(events, key=lambda e: e.sort_key)


@pytest.fixture
def config():
    """Vault config with a low iteration count to keep tests fast."""
    return VaultConfig(service_secret="test-service-secret", kdf_iterations=1000)


@pytest.fixture
def key_manager(config):
    return KeyManager(config)


@pytest.fixture
def master_key():
    return MasterKey.generate()


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def coordinator(repo):
    return SyncCoordinator(repo)


@pytest.fixture
def user_id():
    return "user-1"


@pytest.fixture
def micro_repo():
    """Repository whose clock ticks 400µs, below wire millisecond resolution."""
    return InMemoryRepository(tick=timedelta(microseconds=400))


@pytest.fixture
def micro_coordinator(micro_repo):
    return SyncCoordinator(micro_repo)
