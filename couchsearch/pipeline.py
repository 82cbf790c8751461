"""Wire the change feed, work queue, checkpoint, lag monitor and projector.

Events flow one way: the consumer yields an event, the admission check
makes sure the backlog has room, and a queue worker advances the checkpoint,
records the follower sequence, then projects the event onto the index.

When the backlog reaches ``queue_depth`` the feed is paused and the held
event waits until the queue has drained completely; there is no low
watermark.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import dataclasses
import enum
import typing as typ

from .logging import get_logger, log_exception, log_info, log_warning
from .observability import SyncEventLogger
from .projector import IndexProjector, ProjectionOutcome
from .queue import DEFAULT_CONCURRENCY, ThrottledWorkQueue

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from .checkpoint import Checkpointer
    from .enrichment import EnrichmentClient
    from .index import SearchIndexClient
    from .lag import LagMonitor
    from .models import ChangeEvent

logger = get_logger(__name__)


class ChangeFeed(typ.Protocol):
    """What the pipeline needs from a change feed consumer."""

    @property
    def paused(self) -> bool:
        """Return True while delivery is paused."""
        ...

    def subscribe(self, start_sequence: int) -> cabc.AsyncIterator[ChangeEvent]:
        """Yield events after ``start_sequence``."""
        ...

    def pause(self) -> None:
        """Stop delivering events."""
        ...

    def resume(self) -> None:
        """Resume delivering events."""
        ...

    async def aclose(self) -> None:
        """End the subscription."""
        ...


class PipelineState(enum.StrEnum):
    """Lifecycle of a :class:`SyncPipeline`."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Admission and shutdown settings."""

    queue_depth: int = 2048
    concurrency: int = DEFAULT_CONCURRENCY
    since: int | None = None
    shutdown_grace_s: float = 30.0
    bootstrap_index: bool = True


class SyncPipeline:
    """Mirror the change feed into the search index."""

    def __init__(  # noqa: PLR0913
        self,
        consumer: ChangeFeed,
        checkpointer: Checkpointer,
        lag_monitor: LagMonitor,
        index: SearchIndexClient,
        enrichment: EnrichmentClient,
        *,
        config: PipelineConfig | None = None,
        event_logger: SyncEventLogger | None = None,
    ) -> None:
        """Assemble the pipeline from its collaborators."""
        self._consumer = consumer
        self._checkpointer = checkpointer
        self._lag = lag_monitor
        self._index = index
        self._config = config or PipelineConfig()
        self._event_logger = event_logger or SyncEventLogger()
        self._queue: ThrottledWorkQueue[ChangeEvent] = ThrottledWorkQueue(
            self._process, concurrency=self._config.concurrency
        )
        self._projector = IndexProjector(
            index,
            enrichment,
            backlog=self._queue.length,
            event_logger=self._event_logger,
        )
        self._state = PipelineState.IDLE
        self._follow_task: asyncio.Task[None] | None = None
        self._highest_dispatched: int | None = None
        self.outcomes: collections.Counter[ProjectionOutcome] = collections.Counter()

    @property
    def state(self) -> PipelineState:
        """Return the lifecycle state."""
        return self._state

    @property
    def healthy(self) -> bool:
        """Return True while the feed is being followed."""
        return self._state is PipelineState.RUNNING

    def backlog(self) -> int:
        """Return the number of queued and in-flight events."""
        return self._queue.length()

    async def start(self) -> int:
        """Establish the checkpoint baseline and begin following the feed.

        Returns the sequence the subscription starts from.

        Raises
        ------
        StartupFailure
            If no checkpoint baseline can be established.

        """
        if self._config.bootstrap_index:
            await self._index.bootstrap()
        try:
            since = await self._checkpointer.initialise(self._config.since)
        except Exception:
            self._state = PipelineState.FAILED
            raise
        self._lag.record_follower(since)
        self._lag.start()
        self._event_logger.log_follow_started(since)
        self._state = PipelineState.RUNNING
        self._follow_task = asyncio.create_task(
            self._follow(since), name="couchsearch-follow"
        )
        return since

    async def wait(self) -> None:
        """Wait until the feed ends and every dispatched event is processed."""
        if self._follow_task is not None:
            await self._follow_task
        await self._queue.join()

    async def stop(self) -> None:
        """Stop following, let in-flight work finish, then save the checkpoint.

        The final checkpoint is only written when every dispatched event
        finished within ``shutdown_grace_s``.
        """
        if self._state in {PipelineState.STOPPING, PipelineState.STOPPED}:
            return
        if self._state is not PipelineState.FAILED:
            self._state = PipelineState.STOPPING
        # The leader poll shares the consumer's HTTP client.
        await self._lag.stop()
        await self._consumer.aclose()
        if self._follow_task is not None and not self._follow_task.done():
            self._follow_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._follow_task

        drained = await self._queue.join(self._config.shutdown_grace_s)
        if drained and self._highest_dispatched is not None:
            await self._checkpointer.flush(self._highest_dispatched)
        elif not drained:
            log_warning(
                logger,
                "shutdown grace expired with %d events in flight; "
                "checkpoint left at %d",
                self._queue.length(),
                self._checkpointer.last_checkpointed,
            )
        await self._queue.close()
        if self._state is not PipelineState.FAILED:
            self._state = PipelineState.STOPPED
        log_info(
            logger,
            "pipeline stopped at checkpoint %d",
            self._checkpointer.last_checkpointed,
        )

    def status(self) -> dict[str, typ.Any]:
        """Return the payload published on ``/status``."""
        return {
            **self._lag.sample().as_status(),
            "state": str(self._state),
            "checkpoint": self._checkpointer.last_checkpointed,
            "queueBacklog": self._queue.length(),
            "paused": self._consumer.paused,
            "outcomes": {str(key): count for key, count in self.outcomes.items()},
        }

    async def _follow(self, since: int) -> None:
        try:
            async for event in self._consumer.subscribe(since):
                if self._queue.length() >= self._config.queue_depth:
                    await self._wait_for_drain(event)
                self._highest_dispatched = event.sequence
                self._queue.push(event)
        except Exception as exc:
            self._state = PipelineState.FAILED
            log_exception(logger, "change feed follower crashed", exc)
            raise

    async def _wait_for_drain(self, event: ChangeEvent) -> None:
        resumed = asyncio.Event()

        def _resume() -> None:
            self._consumer.resume()
            self._event_logger.log_resumed()
            resumed.set()

        self._consumer.pause()
        self._event_logger.log_paused(event.sequence, self._queue.length())
        self._queue.on_drain(_resume)
        await resumed.wait()

    async def _process(self, event: ChangeEvent) -> None:
        await self._checkpointer.advance(event.sequence)
        self._lag.record_follower(event.sequence)
        outcome = await self._projector.project(event)
        self.outcomes[outcome] += 1
