"""couchsearch runtime entrypoint.

``create_app`` is the Granian factory target: it reads :class:`SyncConfig`
from the environment, assembles the pipeline and returns the Falcon app whose
lifespan runs it. ``main`` configures logging and starts Granian on the
monitor address.

Configuration is driven by ``COUCHSEARCH_*`` environment variables; see
:mod:`couchsearch.config`. Run the service with ``python -m couchsearch.runtime``
or through the ``couchsearch`` command.
"""

from __future__ import annotations

import dataclasses
import typing as typ

from couchsearch.checkpoint import Checkpointer
from couchsearch.config import SyncConfig
from couchsearch.enrichment import DownloadsConfig, EnrichmentClient
from couchsearch.errors import ConfigError
from couchsearch.feed import ChangeFeedConsumer, FeedConfig
from couchsearch.index import IndexConfig, SearchIndexClient
from couchsearch.lag import LagMonitor, LagMonitorConfig
from couchsearch.logging import configure_logging, get_logger, log_error, log_info, log_warning
from couchsearch.observability import SyncEventLogger
from couchsearch.pipeline import PipelineConfig, SyncPipeline

if typ.TYPE_CHECKING:
    import falcon.asgi

__all__ = ["Components", "build_components", "create_app", "main"]

logger = get_logger(__name__)

_MS_PER_SECOND = 1000.0


@dataclasses.dataclass(frozen=True, slots=True)
class Components:
    """Everything the runtime builds from one configuration."""

    pipeline: SyncPipeline
    consumer: ChangeFeedConsumer
    index: SearchIndexClient
    enrichment: EnrichmentClient

    async def aclose(self) -> None:
        """Close the HTTP clients owned by the components."""
        await self.index.aclose()
        await self.enrichment.aclose()


def build_components(config: SyncConfig) -> Components:
    """Assemble the pipeline and its collaborators from ``config``."""
    event_logger = SyncEventLogger()
    consumer = ChangeFeedConsumer(
        FeedConfig(url=config.couch_url), event_logger=event_logger
    )
    index = SearchIndexClient(IndexConfig(url=config.es_url))
    enrichment = EnrichmentClient(
        DownloadsConfig(base_url=config.downloads_url), event_logger=event_logger
    )
    checkpointer = Checkpointer(
        index, sync_interval=config.sync_interval, event_logger=event_logger
    )
    lag_monitor = LagMonitor(
        consumer.fetch_update_seq,
        config=LagMonitorConfig(
            leader_poll_interval_s=config.leader_poll_interval_ms / _MS_PER_SECOND,
            metrics_interval_s=config.metrics_interval_ms / _MS_PER_SECOND,
        ),
        event_logger=event_logger,
    )
    pipeline = SyncPipeline(
        consumer,
        checkpointer,
        lag_monitor,
        index,
        enrichment,
        config=PipelineConfig(
            queue_depth=config.queue_depth,
            concurrency=config.concurrency,
            since=config.since,
            shutdown_grace_s=float(config.shutdown_grace_s),
        ),
        event_logger=event_logger,
    )
    return Components(
        pipeline=pipeline, consumer=consumer, index=index, enrichment=enrichment
    )


def create_app() -> falcon.asgi.App:
    """Create the Falcon ASGI application with the pipeline in its lifespan.

    Raises
    ------
    SystemExit
        If the environment configuration is invalid.

    """
    from couchsearch.api.app import AppDependencies
    from couchsearch.api.app import create_app as _create_api_app

    try:
        config = SyncConfig.from_env()
    except ConfigError as exc:
        log_error(logger, "Invalid configuration: %s", exc)
        raise SystemExit(1) from exc

    components = build_components(config)
    return _create_api_app(
        AppDependencies(pipeline=components.pipeline, on_shutdown=components.aclose)
    )


def main(config: SyncConfig | None = None) -> None:
    """Start the sync process under Granian.

    ``config`` defaults to the environment. Granian workers rebuild the
    configuration from the environment, so the caller must have exported
    any overrides beforehand (see :mod:`couchsearch.cli`).
    """
    from granian import Granian
    from granian.constants import Interfaces

    if config is None:
        try:
            config = SyncConfig.from_env()
        except ConfigError as exc:
            log_error(logger, "Invalid configuration: %s", exc)
            raise SystemExit(1) from exc

    normalized_level, invalid_level = configure_logging(config.log_level)
    if invalid_level:
        log_warning(
            logger,
            "Invalid COUCHSEARCH_LOG_LEVEL %r, falling back to %s",
            config.log_level,
            normalized_level,
        )

    log_info(
        logger,
        "Starting couchsearch: following %s into %s, status on %s:%d",
        config.couch_url,
        config.es_url,
        config.monitor_host,
        config.monitor_port,
    )

    # One worker: the pipeline owns a single feed subscription.
    server = Granian(
        "couchsearch.runtime:create_app",
        address=config.monitor_host,
        port=config.monitor_port,
        interface=Interfaces.ASGI,
        factory=True,
        workers=1,
    )
    server.serve()


if __name__ == "__main__":
    main()
