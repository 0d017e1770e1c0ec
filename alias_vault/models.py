"""
Domain models and the JSON wire format.

Field names are snake_case in Python and camelCase on the wire
(``forwardingEmail``, ``lastSyncTimestamp``...). Timestamps are emitted as
ISO-8601 UTC with microsecond precision and a ``Z`` suffix.
"""
from enum import Enum
from typing import Any, Optional
from datetime import datetime, timezone
from collections.abc import Mapping

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SS.ffffffZ``.

    Full microsecond precision: a cursor echoed back by a client must compare
    equal to the storage timestamp it came from.
    """
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted) into UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


class DataType(str, Enum):
    ALIAS = "alias"
    EMAIL = "email"


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DeviceState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    SYNCED = "synced"


class WireModel(BaseModel):
    """Base model with camelCase aliases and stable timestamp output."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class User(WireModel):
    id: str
    email: str
    encryption_key: str = Field(repr=False)
    master_key_salt: str = Field(repr=False)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_serializer("created_at", "updated_at", when_used="json")
    def serialize_timestamps(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value else None


class EmailAlias(WireModel):
    id: str
    user_id: str
    alias: str
    description: Optional[str] = None
    forwarding_email: str
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_serializer("created_at", "updated_at", when_used="json")
    def serialize_timestamps(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value else None


class Device(WireModel):
    id: str
    user_id: str
    device_name: str
    device_key: str = Field(repr=False, exclude=True)
    last_sync: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def state(self) -> DeviceState:
        if self.last_sync is None:
            return DeviceState.REGISTERED
        return DeviceState.SYNCED

    @field_serializer("last_sync", "created_at", when_used="json")
    def serialize_timestamps(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value else None


class SyncEvent(WireModel):
    """One immutable entry of a user's change log."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str
    user_id: str
    device_id: str
    data_type: DataType
    data_id: str
    encrypted_data: str = ""
    operation: Operation
    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def sort_key(self) -> tuple[datetime, str]:
        if self.timestamp is None:
            raise ValueError(f"sync event {self.id} has no timestamp yet")
        return (self.timestamp, self.id)

    @field_serializer("timestamp", when_used="json")
    def serialize_timestamps(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value else None


class DeviceRegistration(WireModel):
    device_id: str
    device_name: str
    # exported device-local key, to be persisted client-side by the caller
    device_key: str = Field(repr=False)

    def to_response(self) -> dict[str, Any]:
        return {"deviceId": self.device_id}


class SyncRequest(WireModel):
    device_id: str = Field(min_length=1)
    last_sync_timestamp: Optional[datetime] = None

    @field_validator("last_sync_timestamp")
    @classmethod
    def normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


def parse_sync_request(data: Any) -> SyncRequest:
    """Build a SyncRequest from a mapping or raw JSON bytes/str."""
    if isinstance(data, (bytes, str)):
        data = orjson.loads(data)
    if not isinstance(data, Mapping):
        raise ValueError("sync request must be a JSON object")
    return SyncRequest.model_validate(data)


class SyncResult(WireModel):
    aliases: list[EmailAlias]
    sync_timestamp: datetime
    # alias ids removed by replayed delete events
    deleted: list[str] = Field(default_factory=list)
    delta: bool = False

    def to_response(self) -> dict[str, Any]:
        response = {
            "aliases": [a.to_wire() for a in self.aliases],
            "syncTimestamp": format_timestamp(self.sync_timestamp),
        }
        if self.delta:
            response["deleted"] = list(self.deleted)
        return response

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_response())
