"""Typed records flowing through the sync pipeline."""

from __future__ import annotations

import typing as typ

import msgspec

# Index field names, kept compatible with documents written by npm2es.
FIELD_NAME = "name"
FIELD_VERSION = "version"
FIELD_STARS = "stars"
FIELD_DL_DAY = "dlDay"
FIELD_DL_WEEK = "dlWeek"
FIELD_DL_MONTH = "dlMonth"
FIELD_DL_SCORE = "dlScore"
FIELD_DEPENDENCIES = "numberOfDependencies"
FIELD_DEV_DEPENDENCIES = "numberOfDevDependencies"


class ChangeEvent(msgspec.Struct, kw_only=True, frozen=True):
    """One row of the source change feed.

    Attributes
    ----------
    id : str
        Document identifier in the source store.
    sequence : int
        Source-assigned, monotonically increasing feed sequence.
    deleted : bool
        True when the row records a deletion.
    document : dict[str, Any] | None
        Raw document body, absent for deletions.

    """

    id: str
    sequence: int
    deleted: bool = False
    document: dict[str, typ.Any] | None = None


class DownloadStats(msgspec.Struct, kw_only=True, frozen=True):
    """Popularity windows for one package; ``None`` marks a failed fetch."""

    day: int | None = None
    week: int | None = None
    month: int | None = None
    score: float | None = None


class Entity(msgspec.Struct, kw_only=True, frozen=True):
    """Normalized package record projected into the search index.

    Attributes
    ----------
    name : str
        Identity key in the index.
    version : str
        Latest published version.
    star_count : int
        Number of registry users that starred the package.
    download_stats : DownloadStats
        Enrichment result.
    dependency_count : int | None
        Runtime dependency count, ``None`` when the manifest lists none.
    dev_dependency_count : int | None
        Development dependency count, ``None`` when the manifest lists none.
    extra_fields : dict[str, Any]
        Passthrough attributes copied verbatim into the index document.

    """

    name: str
    version: str
    star_count: int = 0
    download_stats: DownloadStats = msgspec.field(default_factory=DownloadStats)
    dependency_count: int | None = None
    dev_dependency_count: int | None = None
    extra_fields: dict[str, typ.Any] = msgspec.field(default_factory=dict)

    def to_document(self) -> dict[str, typ.Any]:
        """Return the index body, omitting fields that carry no value."""
        document: dict[str, typ.Any] = dict(self.extra_fields)
        known: dict[str, typ.Any] = {
            FIELD_NAME: self.name,
            FIELD_VERSION: self.version,
            FIELD_STARS: self.star_count,
            FIELD_DL_DAY: self.download_stats.day,
            FIELD_DL_WEEK: self.download_stats.week,
            FIELD_DL_MONTH: self.download_stats.month,
            FIELD_DL_SCORE: self.download_stats.score,
            FIELD_DEPENDENCIES: self.dependency_count,
            FIELD_DEV_DEPENDENCIES: self.dev_dependency_count,
        }
        document.update({key: value for key, value in known.items() if value is not None})
        return document


class LagSample(msgspec.Struct, kw_only=True, frozen=True):
    """Leader and follower feed positions at one instant."""

    leader_sequence: int
    follower_sequence: int

    @property
    def offset(self) -> int:
        """Return how many sequences the follower trails the leader by."""
        return self.leader_sequence - self.follower_sequence

    def as_status(self) -> dict[str, int]:
        """Return the triple published on ``/status``."""
        return {
            "sequence": self.follower_sequence,
            "leaderSequence": self.leader_sequence,
            "sequenceOffset": self.offset,
        }
