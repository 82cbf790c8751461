"""Application factory for the couchsearch Falcon ASGI application.

This module provides ``create_app()`` which builds the Falcon ASGI
application with health probes and, when a pipeline is supplied, the
``/status`` endpoint and the lifespan middleware that runs the pipeline.

Usage
-----
Create a health-only app::

    app = create_app()

Create the full app::

    from couchsearch.api.app import AppDependencies, create_app

    app = create_app(AppDependencies(pipeline=pipeline))

"""

from __future__ import annotations

import dataclasses as dc
import typing as typ

import falcon.asgi

from couchsearch.api.health.resources import (
    HealthResource,
    ReadyResource,
    StatusResource,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from couchsearch.pipeline import SyncPipeline

__all__ = ["AppDependencies", "create_app"]


@dc.dataclass(frozen=True, slots=True)
class AppDependencies:
    """Dependencies for the Falcon ASGI application.

    Attributes
    ----------
    pipeline
        Sync pipeline to run inside the ASGI lifespan and report on.
    on_shutdown
        Optional coroutine factory run after the pipeline stops.
    manage_lifespan
        Whether the app starts and stops the pipeline itself. Tests that
        drive the pipeline directly turn this off.

    """

    pipeline: SyncPipeline | None = None
    on_shutdown: cabc.Callable[[], cabc.Awaitable[None]] | None = None
    manage_lifespan: bool = True


def create_app(dependencies: AppDependencies | None = None) -> falcon.asgi.App:
    """Create and configure the Falcon ASGI application.

    Parameters
    ----------
    dependencies
        Optional application dependencies. When ``None`` or without a
        pipeline, only ``/health`` and ``/ready`` are available.

    Returns
    -------
    falcon.asgi.App
        Configured Falcon ASGI application.

    """
    pipeline = dependencies.pipeline if dependencies is not None else None
    middleware: list[object] = []

    if dependencies is not None and pipeline is not None and dependencies.manage_lifespan:
        from couchsearch.api.middleware import PipelineLifespan

        middleware.append(
            PipelineLifespan(pipeline, on_shutdown=dependencies.on_shutdown)
        )

    app = falcon.asgi.App(middleware=middleware)  # type: ignore[no-matching-overload]  # Falcon stubs

    app.add_route("/health", HealthResource())
    app.add_route("/ready", ReadyResource(pipeline))
    if pipeline is not None:
        app.add_route("/status", StatusResource(pipeline))

    return app
