"""
Sync Log — append-only, per-user ordered store of encrypted change events.

The log is a thin layer over the repository: it never retries, never mutates
or deletes an event, and hands out events in ``(timestamp, id)`` order as a
one-shot async iterator.
"""
import logging
from typing import Any, Optional
from datetime import datetime
from collections.abc import AsyncIterator

from ..exceptions import AliasVaultError, PersistenceError
from ..models import SyncEvent, ensure_utc

logger = logging.getLogger("alias_vault.sync")


class SyncLog:
    """Append/read interface over the external repository.

    Args:
        repository: Object providing ``create_sync_event``,
            ``get_sync_events_after_timestamp`` and ``now``.
    """

    def __init__(self, repository: Any):
        self._repo = repository

    async def append(self, event: SyncEvent) -> SyncEvent:
        """Append one event.

        Returns:
            The stored event, carrying the timestamp assigned by storage.

        Raises:
            PersistenceError: If the repository write fails.
        """
        try:
            stored = await self._repo.create_sync_event(event)
        except AliasVaultError:
            raise
        except Exception as err:
            raise PersistenceError(
                f"failed to append sync event {event.id}: {err}"
            ) from err
        logger.debug(
            "Appended sync event id=%s user=%s %s/%s",
            stored.id, stored.user_id, stored.data_type.value, stored.operation.value,
        )
        return stored

    async def read_after(
        self,
        user_id: str,
        cursor: datetime,
        until: Optional[datetime] = None,
    ) -> AsyncIterator[SyncEvent]:
        """Yield events with ``cursor < timestamp`` (and ``<= until`` if given).

        The sequence is lazy, finite and one-shot: iterate it once, call again
        to re-read.

        Raises:
            PersistenceError: On repository failure, or if storage returns
                events out of ``(timestamp, id)`` order.
        """
        cursor = ensure_utc(cursor)
        if until is not None:
            until = ensure_utc(until)
        try:
            events = await self._repo.get_sync_events_after_timestamp(
                user_id, cursor, until,
            )
        except AliasVaultError:
            raise
        except Exception as err:
            raise PersistenceError(
                f"failed to read sync events for user {user_id}: {err}"
            ) from err

        previous = None
        for event in events:
            key = event.sort_key
            if previous is not None and key <= previous:
                raise PersistenceError(
                    f"sync log for user {user_id} returned event {event.id} "
                    f"out of order"
                )
            previous = key
            yield event

    async def now(self, user_id: Optional[str] = None) -> datetime:
        """Return the storage clock used for sync cursors.

        Pass ``user_id`` to read it after that user's in-flight appends.
        """
        if user_id is None:
            return ensure_utc(await self._repo.now())
        return ensure_utc(await self._repo.now(user_id))
