"""Leader/follower sequence tracking for the sync pipeline.

The follower sequence is the last event a worker picked up; the leader
sequence is the source database's ``update_seq``. Their difference is how far
behind the index is. Two timers run independently: one polls the leader,
the other publishes the three gauges.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import threading
import typing as typ

from .errors import ConnectivityError, FeedFormatError
from .logging import get_logger, log_exception, log_info
from .models import LagSample
from .observability import SyncEventLogger

if typ.TYPE_CHECKING:
    import collections.abc as cabc

logger = get_logger(__name__)

METRIC_LEADER = "sequence.leader"
METRIC_FOLLOWER = "sequence.follower"
METRIC_OFFSET = "sequence.offset"


class SequenceTracker:
    """Lock-guarded leader/follower pair.

    Every update clamps the leader to at least the follower, so a stale poll
    or a follower racing ahead can never produce a negative offset.
    """

    def __init__(self, *, leader: int = 0, follower: int = 0) -> None:
        """Start both sequences at the given values."""
        self._lock = threading.Lock()
        self._follower = follower
        self._leader = max(leader, follower)

    def record_follower(self, sequence: int) -> None:
        """Record the sequence of an event a worker has picked up."""
        with self._lock:
            self._follower = sequence
            self._leader = max(self._leader, self._follower)

    def record_leader(self, sequence: int) -> None:
        """Record a polled leader sequence; the leader never moves back."""
        with self._lock:
            self._leader = max(self._leader, sequence, self._follower)

    def sample(self) -> LagSample:
        """Return a consistent snapshot of both sequences."""
        with self._lock:
            return LagSample(
                leader_sequence=self._leader, follower_sequence=self._follower
            )


class MetricsEmitter(typ.Protocol):
    """Sink for periodic gauge values."""

    def emit(self, name: str, value: int) -> None:
        """Publish ``value`` under ``name``."""
        ...


class LoggingMetricsEmitter:
    """Publish gauges as structured log lines."""

    def emit(self, name: str, value: int) -> None:
        """Log ``name`` and ``value`` at INFO."""
        log_info(logger, "[metric] name=%s value=%d", name, value)


@dataclasses.dataclass(frozen=True, slots=True)
class LagMonitorConfig:
    """Timer periods for the lag monitor, in seconds."""

    leader_poll_interval_s: float = 10.0
    metrics_interval_s: float = 10.0


class LagMonitor:
    """Poll the leader sequence and publish lag gauges on two timers."""

    def __init__(
        self,
        fetch_leader: cabc.Callable[[], cabc.Awaitable[int]],
        *,
        tracker: SequenceTracker | None = None,
        config: LagMonitorConfig | None = None,
        emitter: MetricsEmitter | None = None,
        event_logger: SyncEventLogger | None = None,
    ) -> None:
        """Bind the monitor to a leader-sequence source."""
        self._fetch_leader = fetch_leader
        self.tracker = tracker or SequenceTracker()
        self._config = config or LagMonitorConfig()
        self._emitter = emitter or LoggingMetricsEmitter()
        self._event_logger = event_logger or SyncEventLogger()
        self._tasks: list[asyncio.Task[None]] = []

    def record_follower(self, sequence: int) -> None:
        """Record a processed event's sequence."""
        self.tracker.record_follower(sequence)

    def sample(self) -> LagSample:
        """Return the current leader/follower snapshot."""
        return self.tracker.sample()

    async def poll_leader(self) -> bool:
        """Fetch the leader sequence once; return False if the poll failed."""
        try:
            leader = await self._fetch_leader()
        except (ConnectivityError, FeedFormatError) as exc:
            self._event_logger.log_leader_poll_failed(exc)
            return False
        self.tracker.record_leader(leader)
        return True

    def emit_metrics(self) -> None:
        """Publish the leader, follower and offset gauges once."""
        sample = self.tracker.sample()
        self._emitter.emit(METRIC_LEADER, sample.leader_sequence)
        self._emitter.emit(METRIC_FOLLOWER, sample.follower_sequence)
        self._emitter.emit(METRIC_OFFSET, sample.offset)

    def start(self) -> None:
        """Start both timers on the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._poll_loop(), name="couchsearch-leader-poll"),
            asyncio.create_task(self._metrics_loop(), name="couchsearch-metrics"),
        ]

    async def stop(self) -> None:
        """Cancel both timers and wait for them to exit."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.leader_poll_interval_s)
            try:
                await self.poll_leader()
            except Exception as exc:  # noqa: BLE001 - polling continues after any failure
                log_exception(logger, "leader sequence poll crashed", exc)

    async def _metrics_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.metrics_interval_s)
            self.emit_metrics()
