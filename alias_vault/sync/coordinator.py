"""
Sync Coordinator — device registration, change recording and device sync.

Per (user, device) the lifecycle is::

    Unregistered --register_device--> Registered --sync_device--> Synced
                                                   Synced --sync_device--> Synced

``sync_device`` replays the user's change log after the device cursor,
reducing events last-write-wins per ``(data_type, data_id)`` on top of the
current alias rows, and returns the merged alias list. The repository table
is the current-state projection; the log is the merge and audit trail.

Security Note:
    Payloads are decrypted in memory only while reducing. Never log payload
    contents; only event ids, counts and device ids.
"""
import uuid
import logging
from typing import Any, Optional, Union
from datetime import datetime

from pydantic import ValidationError

from ..exceptions import DecryptionError, UnknownDeviceError
from ..models import (
    EPOCH,
    DataType,
    Device,
    DeviceRegistration,
    DeviceState,
    EmailAlias,
    Operation,
    SyncEvent,
    SyncResult,
    ensure_utc,
)
from ..vault.crypto import decrypt, deserialize_payload, encrypt, serialize_payload
from ..vault.keys import KeyLike, MasterKey, export_key, key_bytes
from .log import SyncLog

logger = logging.getLogger("alias_vault.sync")


class SyncCoordinator:
    """Orchestrates the cross-device sync protocol for one repository.

    Args:
        repository: Storage collaborator (see :class:`~alias_vault.repository.AliasRepository`).
        sync_log: Optional pre-built SyncLog over the same repository.
    """

    def __init__(self, repository: Any, sync_log: Optional[SyncLog] = None):
        self._repo = repository
        self._log = sync_log or SyncLog(repository)

    @property
    def log(self) -> SyncLog:
        return self._log

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def register_device(self, user_id: str, device_name: str) -> DeviceRegistration:
        """Create a new device with a fresh identity and device-local key.

        Devices are never deduplicated by name: two calls with the same
        name create two devices.
        """
        if not device_name:
            raise ValueError("device_name cannot be empty")
        device_id = str(uuid.uuid4())
        with MasterKey.generate() as device_key:
            exported = export_key(device_key)
        await self._repo.create_device(device_id, user_id, device_name, exported)
        logger.info("Registered device=%s for user=%s", device_id, user_id)
        return DeviceRegistration(
            device_id=device_id, device_name=device_name, device_key=exported,
        )

    async def list_devices(self, user_id: str) -> list[Device]:
        return await self._repo.get_devices_by_user_id(user_id)

    async def get_device(self, user_id: str, device_id: str) -> Device:
        """Return the device if it belongs to the user.

        Raises:
            UnknownDeviceError: If the device is unknown or owned by someone else.
        """
        device = await self._repo.get_device(user_id, device_id)
        if device is None or device.user_id != user_id:
            raise UnknownDeviceError(user_id, device_id)
        return device

    async def device_state(self, user_id: str, device_id: str) -> DeviceState:
        try:
            device = await self.get_device(user_id, device_id)
        except UnknownDeviceError:
            return DeviceState.UNREGISTERED
        return device.state

    # ------------------------------------------------------------------
    # Change recording
    # ------------------------------------------------------------------

    async def record_change(
        self,
        user_id: str,
        device_id: str,
        data_type: Union[DataType, str],
        data_id: str,
        operation: Union[Operation, str],
        payload: Any = None,
        key: Optional[KeyLike] = None,
    ) -> SyncEvent:
        """Encrypt a change payload and append it to the user's log.

        Delete events never carry a payload: ``encrypted_data`` is ``""``
        and only the identity of the deleted record is logged.

        Raises:
            ValueError: If a payload is given without a key.
            PersistenceError: If the append fails.
        """
        data_type = DataType(data_type)
        operation = Operation(operation)
        encrypted_data = ""
        if operation is not Operation.DELETE and payload is not None:
            if key is None:
                raise ValueError("an encryption key is required to record a payload")
            encrypted_data = encrypt(serialize_payload(payload), key_bytes(key))
        event = SyncEvent(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            data_type=data_type,
            data_id=data_id,
            encrypted_data=encrypted_data,
            operation=operation,
        )
        return await self._log.append(event)

    def decrypt_event(self, event: SyncEvent, key: KeyLike) -> Any:
        """Return the decrypted payload of an event, or None if it has none.

        Raises:
            DecryptionError: Wrong key or corrupted payload.
        """
        if not event.encrypted_data:
            return None
        return deserialize_payload(decrypt(event.encrypted_data, key_bytes(key)))

    async def pending_events(
        self, user_id: str, since: Optional[datetime] = None
    ) -> list[SyncEvent]:
        """Return the events a device with cursor ``since`` has not seen."""
        return [e async for e in self._log.read_after(user_id, since or EPOCH)]

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def _reduce(
        self,
        user_id: str,
        since: datetime,
        until: datetime,
        key: KeyLike,
    ) -> dict[tuple[DataType, str], tuple[SyncEvent, Any]]:
        """Last-write-wins reduction of the log window ``(since, until]``."""
        latest: dict[tuple[DataType, str], tuple[SyncEvent, Any]] = {}
        async for event in self._log.read_after(user_id, since, until):
            payload = None
            if event.operation is not Operation.DELETE:
                payload = self.decrypt_event(event, key)
            latest[(event.data_type, event.data_id)] = (event, payload)
        return latest

    @staticmethod
    def _apply(
        current: Optional[EmailAlias], event: SyncEvent, payload: Any
    ) -> Optional[EmailAlias]:
        """Apply the winning event for one alias to its current row.

        Payloads are aliases in wire (camelCase) form; their fields overlay
        the stored row. Identity always comes from the event.
        """
        if event.operation is Operation.DELETE:
            return None
        if not isinstance(payload, dict):
            # nothing to overlay, the stored row stays authoritative
            return current
        fields = current.to_wire() if current is not None else {}
        fields.update(payload)
        fields["id"] = event.data_id
        fields["userId"] = event.user_id
        try:
            return EmailAlias.model_validate(fields)
        except ValidationError as err:
            raise DecryptionError(
                f"sync event {event.id} carries an invalid alias payload"
            ) from err

    async def sync_device(
        self,
        user_id: str,
        device_id: str,
        master_key: KeyLike,
        since: Optional[datetime] = None,
        delta: bool = False,
    ) -> SyncResult:
        """Replay the log for a device and return the merged alias state.

        The sync timestamp is read from the storage clock under the user's log
        lock, after any in-flight append has committed. Only events with
        ``since < timestamp <= sync_timestamp`` are replayed, so events
        appended mid-sync are delivered exactly once, on the next call.

        Args:
            user_id: Owner of the device.
            device_id: Device being synchronized.
            master_key: The user's unwrapped master key.
            since: Device cursor; ``None`` replays from the epoch.
            delta: Return only aliases touched since the cursor, plus the ids
                of deleted aliases, instead of the full list.

        Raises:
            UnknownDeviceError: Device does not belong to the user.
            DecryptionError: An event payload does not decrypt under the key.
            PersistenceError: Repository failure (not retried).
        """
        await self.get_device(user_id, device_id)
        sync_timestamp = await self._log.now(user_id)
        effective_since = ensure_utc(since) if since is not None else EPOCH

        latest = await self._reduce(user_id, effective_since, sync_timestamp, master_key)

        current = {a.id: a for a in await self._repo.get_aliases_by_user_id(user_id)}
        order = list(current)
        deleted: list[str] = []
        touched: list[str] = []
        for (data_type, data_id), (event, payload) in latest.items():
            if data_type is not DataType.ALIAS:
                continue
            merged = self._apply(current.get(data_id), event, payload)
            if event.operation is Operation.DELETE:
                current.pop(data_id, None)
                deleted.append(data_id)
                continue
            if merged is None:
                continue
            if data_id not in current:
                order.append(data_id)
            current[data_id] = merged
            touched.append(data_id)

        if delta:
            aliases = [current[i] for i in touched if i in current]
        else:
            aliases = [current[i] for i in order if i in current]

        await self._repo.update_device_last_sync(device_id, sync_timestamp)
        logger.info(
            "Synced device=%s user=%s: %d event(s), %d alias(es)",
            device_id, user_id, len(latest), len(aliases),
        )
        return SyncResult(
            aliases=aliases,
            sync_timestamp=sync_timestamp,
            deleted=deleted,
            delta=delta,
        )
