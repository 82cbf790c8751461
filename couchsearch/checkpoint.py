"""Sequence checkpointing so a restarted pipeline resumes where it left off.

The checkpoint is the last feed sequence dispatched to a worker. It is saved
only when it has moved more than ``sync_interval`` sequences past the last
saved value, so a crash replays at most one interval of events.
"""

from __future__ import annotations

import asyncio
import typing as typ

from .errors import CheckpointPersistError, ConnectivityError, StartupFailure
from .observability import SyncEventLogger


class CheckpointStore(typ.Protocol):
    """Durable single-value store for the last synced sequence."""

    async def read_checkpoint(self) -> int | None:
        """Return the stored sequence, or ``None`` when none was saved."""
        ...

    async def write_checkpoint(self, sequence: int) -> None:
        """Persist ``sequence``, overwriting any previous value."""
        ...


class Checkpointer:
    """Serialize checkpoint writes coming from concurrent workers."""

    def __init__(
        self,
        store: CheckpointStore,
        *,
        sync_interval: int = 1000,
        event_logger: SyncEventLogger | None = None,
    ) -> None:
        """Bind to ``store`` with the configured sequence gap."""
        self._store = store
        self._sync_interval = sync_interval
        self._event_logger = event_logger or SyncEventLogger()
        self._lock = asyncio.Lock()
        self._last_checkpointed = 0

    @property
    def last_checkpointed(self) -> int:
        """Return the last sequence accepted as the checkpoint."""
        return self._last_checkpointed

    async def initialise(self, start_sequence: int | None = None) -> int:
        """Establish the baseline sequence the feed starts from.

        An explicit ``start_sequence`` overwrites whatever is stored; otherwise
        the stored value is used, defaulting to 0.

        Raises
        ------
        StartupFailure
            If the store cannot be reached.

        """
        async with self._lock:
            try:
                if start_sequence is not None:
                    await self._store.write_checkpoint(start_sequence)
                    baseline = start_sequence
                else:
                    stored = await self._store.read_checkpoint()
                    baseline = stored if stored is not None else 0
            except ConnectivityError as exc:
                raise StartupFailure.store_unreachable(exc) from exc
            self._last_checkpointed = baseline
            return baseline

    async def advance(self, sequence: int) -> bool:
        """Persist ``sequence`` if it is far enough past the last checkpoint.

        Returns True when the in-memory checkpoint moved. A failed write is
        logged and the in-memory value still advances.
        """
        async with self._lock:
            if sequence - self._last_checkpointed <= self._sync_interval:
                return False
            self._last_checkpointed = sequence
            await self._persist(sequence)
            return True

    async def flush(self, sequence: int) -> bool:
        """Persist ``sequence`` regardless of the interval, never moving back."""
        async with self._lock:
            if sequence <= self._last_checkpointed:
                return False
            self._last_checkpointed = sequence
            await self._persist(sequence)
            return True

    async def _persist(self, sequence: int) -> None:
        try:
            await self._store.write_checkpoint(sequence)
        except ConnectivityError as exc:
            error = CheckpointPersistError.for_sequence(sequence, exc)
            self._event_logger.log_checkpoint_failed(sequence, error)
        else:
            self._event_logger.log_checkpoint_synced(sequence)
