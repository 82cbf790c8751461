"""ASGI lifespan middleware that runs the sync pipeline.

The pipeline starts when the server finishes booting and stops when the
server shuts down. A :class:`~couchsearch.errors.StartupFailure` raised while
establishing the checkpoint baseline propagates out of ``process_startup``,
which aborts server startup so the process never consumes the feed without
a baseline.

Usage
-----
Register the middleware when creating the Falcon app::

    app = falcon.asgi.App(middleware=[PipelineLifespan(pipeline)])

"""

from __future__ import annotations

import typing as typ

from couchsearch.errors import StartupFailure
from couchsearch.logging import get_logger, log_error

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from couchsearch.pipeline import SyncPipeline

__all__ = ["PipelineLifespan"]

logger = get_logger(__name__)


class PipelineLifespan:
    """Falcon middleware tying the pipeline to the ASGI lifespan."""

    def __init__(
        self,
        pipeline: SyncPipeline,
        *,
        on_shutdown: cabc.Callable[[], cabc.Awaitable[None]] | None = None,
    ) -> None:
        """Bind the middleware to ``pipeline``.

        ``on_shutdown`` runs after the pipeline stops, typically to close
        HTTP clients.
        """
        self._pipeline = pipeline
        self._on_shutdown = on_shutdown

    async def process_startup(self, _scope: object, _event: object) -> None:
        """Start the pipeline once the server is up."""
        try:
            await self._pipeline.start()
        except StartupFailure as exc:
            log_error(logger, "refusing to follow the change feed: %s", exc)
            raise

    async def process_shutdown(self, _scope: object, _event: object) -> None:
        """Stop the pipeline and release its resources."""
        try:
            await self._pipeline.stop()
        finally:
            if self._on_shutdown is not None:
                await self._on_shutdown()
