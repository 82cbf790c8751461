"""Project change events onto the search index.

Each event walks ``Received -> Deleting | Normalizing -> Skipped | Enriching
-> Projecting -> Done``. The registry redelivers a package update twice (once
for the manifest, once for its tarball), so a write is suppressed when the
stored version already matches the incoming one.
"""

from __future__ import annotations

import enum
import typing as typ

import msgspec

from .errors import ConnectivityError, IndexWriteError
from .normalize import count_stars, normalize_document
from .observability import SyncEventLogger

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from .enrichment import EnrichmentClient
    from .index import SearchIndexClient
    from .models import ChangeEvent, Entity

# Elasticsearch rejects object keys containing the path separator.
RESERVED_KEY_SEPARATOR = "."

# Timestamp maps keyed by version number; every key contains a separator.
DROPPED_FIELDS = frozenset({"time", "times"})


class ProjectionOutcome(enum.StrEnum):
    """Terminal state reached by one change event."""

    DELETED = "deleted"
    SKIPPED = "skipped"
    UNCHANGED = "unchanged"
    CREATED = "created"
    UPDATED = "updated"
    FAILED = "failed"


def _strip_value(value: object) -> object:
    if isinstance(value, dict):
        return {
            key: _strip_value(item)
            for key, item in value.items()
            if RESERVED_KEY_SEPARATOR not in str(key)
        }
    if isinstance(value, list):
        return [_strip_value(item) for item in value]
    return value


def strip_disallowed_fields(document: dict[str, typ.Any]) -> dict[str, typ.Any]:
    """Return ``document`` without field names the index would reject."""
    return {
        key: _strip_value(value)
        for key, value in document.items()
        if key not in DROPPED_FIELDS and RESERVED_KEY_SEPARATOR not in key
    }


def merge_documents(
    existing: dict[str, typ.Any] | None, incoming: Entity
) -> dict[str, typ.Any]:
    """Merge ``incoming`` over the stored body field by field.

    Known fields with a value override the stored ones, passthrough fields are
    unioned, and stored fields the incoming payload lacks are preserved.
    """
    merged: dict[str, typ.Any] = dict(existing or {})
    merged.update(incoming.to_document())
    return strip_disallowed_fields(merged)


class IndexProjector:
    """Apply one change event to the search index."""

    def __init__(
        self,
        index: SearchIndexClient,
        enrichment: EnrichmentClient,
        *,
        backlog: cabc.Callable[[], int] = lambda: 0,
        event_logger: SyncEventLogger | None = None,
    ) -> None:
        """Bind the projector to its index and enrichment collaborators.

        ``backlog`` reports the current work-queue length for logging.
        """
        self._index = index
        self._enrichment = enrichment
        self._backlog = backlog
        self._event_logger = event_logger or SyncEventLogger()

    async def project(self, event: ChangeEvent) -> ProjectionOutcome:
        """Process ``event`` and return the state it finished in.

        Index failures are logged with the package name and sequence and
        reported as :attr:`ProjectionOutcome.FAILED`; they are not retried.
        """
        name = event.id
        try:
            if event.deleted:
                return await self._delete(event)

            entity = normalize_document(event.document)
            if entity is None:
                self._event_logger.log_skipped(event.id, event.sequence)
                return ProjectionOutcome.SKIPPED

            name = entity.name
            entity = msgspec.structs.replace(
                entity, star_count=count_stars(event.document)
            )
            entity = await self._enrichment.enrich(entity)
            return await self._upsert(event, entity)
        except (ConnectivityError, IndexWriteError) as exc:
            self._event_logger.log_failed(name, event.sequence, exc)
            return ProjectionOutcome.FAILED

    async def _delete(self, event: ChangeEvent) -> ProjectionOutcome:
        found = await self._index.delete_entity(event.id)
        self._event_logger.log_deleted(event.id, event.sequence, found=found)
        return ProjectionOutcome.DELETED

    async def _upsert(self, event: ChangeEvent, entity: Entity) -> ProjectionOutcome:
        existing = await self._index.get_entity(entity.name)
        if existing is not None and existing.get("version") == entity.version:
            self._event_logger.log_unchanged(
                entity.name, entity.version, event.sequence, self._backlog()
            )
            return ProjectionOutcome.UNCHANGED

        created = await self._index.put_entity(
            entity.name, merge_documents(existing, entity)
        )
        self._event_logger.log_indexed(
            entity.name, event.sequence, created=created, backlog=self._backlog()
        )
        return ProjectionOutcome.CREATED if created else ProjectionOutcome.UPDATED
