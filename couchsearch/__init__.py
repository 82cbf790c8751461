"""Mirror a CouchDB change feed into a search index.

The public surface is the pipeline and its collaborators; the runtime wires
them together from environment configuration.
"""

from __future__ import annotations

from .checkpoint import Checkpointer, CheckpointStore
from .enrichment import DownloadsConfig, EnrichmentClient, compute_score
from .feed import ChangeFeedConsumer, FeedConfig
from .index import IndexConfig, SearchIndexClient
from .lag import LagMonitor, LagMonitorConfig, SequenceTracker
from .models import ChangeEvent, DownloadStats, Entity, LagSample
from .pipeline import PipelineConfig, PipelineState, SyncPipeline
from .projector import IndexProjector, ProjectionOutcome, merge_documents
from .queue import ThrottledWorkQueue

__all__ = [
    "ChangeEvent",
    "ChangeFeedConsumer",
    "CheckpointStore",
    "Checkpointer",
    "DownloadStats",
    "DownloadsConfig",
    "EnrichmentClient",
    "Entity",
    "FeedConfig",
    "IndexConfig",
    "IndexProjector",
    "LagMonitor",
    "LagMonitorConfig",
    "LagSample",
    "PipelineConfig",
    "PipelineState",
    "ProjectionOutcome",
    "SearchIndexClient",
    "SequenceTracker",
    "SyncPipeline",
    "ThrottledWorkQueue",
    "compute_score",
    "merge_documents",
]
