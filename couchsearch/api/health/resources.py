"""Liveness, readiness and sync status resources.

``/health`` only reports that the process is alive. ``/ready`` and
``/status`` consult the pipeline: once the feed follower has stopped or
failed they answer 503 so an orchestrator can restart the process, which
then resumes from the stored checkpoint.

Usage
-----
Register the resources on the Falcon app::

    app.add_route("/health", HealthResource())
    app.add_route("/ready", ReadyResource(pipeline))
    app.add_route("/status", StatusResource(pipeline))

"""

from __future__ import annotations

import typing as typ
from http import HTTPStatus

if typ.TYPE_CHECKING:
    from falcon.asgi import Request, Response

__all__ = ["HealthResource", "ReadyResource", "StatusProvider", "StatusResource"]


class StatusProvider(typ.Protocol):
    """Anything that can report sync progress."""

    @property
    def healthy(self) -> bool:
        """Return True while the feed is being followed."""
        ...

    def status(self) -> dict[str, typ.Any]:
        """Return the status payload."""
        ...


class HealthResource:
    """Liveness probe resource returning ``{"status": "ok"}``."""

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /health requests."""
        resp.media = {"status": "ok"}
        resp.status = HTTPStatus.OK


class ReadyResource:
    """Readiness probe that follows the pipeline's health.

    Without a pipeline the process is always ready.
    """

    def __init__(self, provider: StatusProvider | None = None) -> None:
        """Bind the probe to an optional status provider."""
        self._provider = provider

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /ready requests."""
        if self._provider is None or self._provider.healthy:
            resp.media = {"status": "ready"}
            resp.status = HTTPStatus.OK
            return
        resp.media = {"status": "unavailable"}
        resp.status = HTTPStatus.SERVICE_UNAVAILABLE


class StatusResource:
    """Report leader/follower sequences, backlog and health.

    The body carries ``sequence``, ``leaderSequence`` and ``sequenceOffset``
    together with ``health`` (``ok`` or ``failed``) and queue details.

    """

    def __init__(self, provider: StatusProvider) -> None:
        """Bind the resource to the pipeline it reports on."""
        self._provider = provider

    async def on_get(self, _req: Request, resp: Response) -> None:
        """Handle GET /status requests.

        Parameters
        ----------
        _req
            Falcon request (unused).
        resp
            Falcon response populated with the status payload.

        """
        healthy = self._provider.healthy
        resp.media = {**self._provider.status(), "health": "ok" if healthy else "failed"}
        resp.status = HTTPStatus.OK if healthy else HTTPStatus.SERVICE_UNAVAILABLE
