"""CouchDB change feed consumer.

A background producer task streams ``_changes?feed=continuous`` into a
bounded channel and :meth:`ChangeFeedConsumer.subscribe` yields from it.
Pausing gates consumption of the channel rather than tearing the connection
down: once the channel fills, the producer blocks and the socket applies
backpressure to the server. Transport failures reconnect from the last
delivered sequence with exponential backoff. A line that keeps failing to
decode at the same position is logged and skipped.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import typing as typ

import httpx
import msgspec

from .errors import ConnectivityError, FeedFormatError
from .models import ChangeEvent
from .observability import SyncEventLogger

if typ.TYPE_CHECKING:
    import collections.abc as cabc

_HTTP_ERROR_STATUS_THRESHOLD = 400

# Reconnects that fail to decode at the same position before the offending
# line is skipped.
_UNDECODABLE_RETRIES = 2


@dataclasses.dataclass(frozen=True, slots=True)
class FeedConfig:
    """Connection settings for the source database feed."""

    url: str
    heartbeat_ms: int = 30_000
    buffer_size: int = 256
    reconnect_initial_s: float = 1.0
    reconnect_max_s: float = 60.0
    connect_timeout_s: float = 30.0


class _FeedRow(msgspec.Struct):
    seq: int | str | None = None
    id: str | None = None
    deleted: bool = False
    doc: dict[str, typ.Any] | None = None
    last_seq: int | str | None = None


class _DatabaseInfo(msgspec.Struct):
    update_seq: int | str


def parse_sequence(value: int | str) -> int:
    """Return the numeric part of a CouchDB sequence.

    CouchDB 2+ sequences look like ``"1234-g1AAAA..."``; the leading integer
    is the position in the feed.
    """
    if isinstance(value, int):
        return value
    head = value.split("-", 1)[0]
    try:
        return int(head)
    except ValueError as exc:
        msg = f"unparseable sequence: {value!r}"
        raise FeedFormatError(msg) from exc


def decode_feed_line(line: str) -> tuple[int | None, ChangeEvent | None]:
    """Decode one feed line into ``(sequence, event)``.

    ``event`` is ``None`` for rows that carry no document id, including the
    trailing ``last_seq`` row.

    Raises
    ------
    FeedFormatError
        If the line is not a valid feed row.

    """
    try:
        row = msgspec.json.decode(line, type=_FeedRow)
    except msgspec.DecodeError as exc:
        raise FeedFormatError.bad_line(line, exc) from exc

    raw_seq = row.seq if row.seq is not None else row.last_seq
    sequence = None if raw_seq is None else parse_sequence(raw_seq)
    if sequence is None or not row.id:
        return sequence, None
    return sequence, ChangeEvent(
        id=row.id,
        sequence=sequence,
        deleted=row.deleted,
        document=row.doc,
    )


class _Closed:
    """Channel sentinel marking the end of a subscription."""


_CLOSED = _Closed()


class ChangeFeedConsumer:
    """Follow the source change feed from a given sequence."""

    def __init__(
        self,
        config: FeedConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        event_logger: SyncEventLogger | None = None,
        sleep: cabc.Callable[[float], cabc.Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Create a consumer, owning an HTTP client unless one is supplied."""
        self._config = config
        self._base = config.url.rstrip("/")
        self._event_logger = event_logger or SyncEventLogger()
        self._sleep = sleep
        self._owns_client = http_client is None
        # Continuous feeds stay open indefinitely; only connecting is bounded.
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=config.connect_timeout_s),
            headers={"Accept": "application/json"},
        )
        self._channel: asyncio.Queue[ChangeEvent | _Closed] | None = None
        self._producer: asyncio.Task[None] | None = None
        self._gate = asyncio.Event()
        self._gate.set()
        self._position = 0

    @property
    def paused(self) -> bool:
        """Return True while delivery is paused."""
        return not self._gate.is_set()

    @property
    def position(self) -> int:
        """Return the last sequence read from the feed."""
        return self._position

    def pause(self) -> None:
        """Stop delivering events; the connection stays open."""
        self._gate.clear()

    def resume(self) -> None:
        """Resume delivering events."""
        self._gate.set()

    def subscribe(self, start_sequence: int) -> cabc.AsyncIterator[ChangeEvent]:
        """Return events with sequences after ``start_sequence``, in order.

        A previous subscription on this consumer is stopped first.
        """
        self._stop_producer()
        self._position = start_sequence
        channel: asyncio.Queue[ChangeEvent | _Closed] = asyncio.Queue(
            maxsize=self._config.buffer_size
        )
        self._channel = channel
        self._gate.set()
        self._producer = asyncio.create_task(
            self._produce(channel, start_sequence), name="couchsearch-feed"
        )
        return self._consume(channel)

    async def aclose(self) -> None:
        """End the subscription and close any owned HTTP resources."""
        producer = self._stop_producer()
        if producer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await producer
        if self._owns_client:
            await self._client.aclose()

    async def fetch_update_seq(self) -> int:
        """Return the source database's current maximum sequence."""
        try:
            response = await self._client.get(self._base)
        except httpx.HTTPError as exc:
            raise ConnectivityError.unreachable(self._base, exc) from exc
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise ConnectivityError.http_error(self._base, response.status_code)
        try:
            info = msgspec.json.decode(response.content, type=_DatabaseInfo)
        except msgspec.DecodeError as exc:
            raise FeedFormatError.bad_line(response.text, exc) from exc
        return parse_sequence(info.update_seq)

    def _stop_producer(self) -> asyncio.Task[None] | None:
        producer, self._producer = self._producer, None
        if producer is not None:
            producer.cancel()
        channel, self._channel = self._channel, None
        if channel is not None:
            while not channel.empty():
                channel.get_nowait()
            channel.put_nowait(_CLOSED)
        self._gate.set()
        return producer

    async def _consume(
        self, channel: asyncio.Queue[ChangeEvent | _Closed]
    ) -> cabc.AsyncIterator[ChangeEvent]:
        while True:
            await self._gate.wait()
            item = await channel.get()
            if isinstance(item, _Closed):
                return
            # pause() may have been called while waiting on an empty channel.
            await self._gate.wait()
            if self._channel is not channel:
                return
            yield item

    async def _produce(
        self, channel: asyncio.Queue[ChangeEvent | _Closed], since: int
    ) -> None:
        delay = self._config.reconnect_initial_s
        failed_since: int | None = None
        decode_failures = 0
        while True:
            skip_undecodable = (
                failed_since == since and decode_failures >= _UNDECODABLE_RETRIES
            )
            try:
                async with contextlib.aclosing(
                    self._stream(since, skip_undecodable=skip_undecodable)
                ) as rows:
                    async for sequence, event in rows:
                        if sequence is not None:
                            since = max(since, sequence)
                            self._position = since
                        if event is None:
                            self._event_logger.log_row_skipped(sequence)
                            continue
                        await channel.put(event)
                        delay = self._config.reconnect_initial_s
            except FeedFormatError as exc:
                if failed_since == since:
                    decode_failures += 1
                else:
                    failed_since, decode_failures = since, 1
                self._event_logger.log_reconnecting(since, delay, exc)
                await self._sleep(delay)
                delay = min(delay * 2, self._config.reconnect_max_s)
            except ConnectivityError as exc:
                self._event_logger.log_reconnecting(since, delay, exc)
                await self._sleep(delay)
                delay = min(delay * 2, self._config.reconnect_max_s)
            else:
                # The server closed the feed cleanly; pick it up again.
                await self._sleep(self._config.reconnect_initial_s)

    async def _stream(
        self, since: int, *, skip_undecodable: bool = False
    ) -> cabc.AsyncIterator[tuple[int | None, ChangeEvent | None]]:
        params = {
            "feed": "continuous",
            "include_docs": "true",
            "since": str(since),
            "heartbeat": str(self._config.heartbeat_ms),
        }
        url = f"{self._base}/_changes"
        try:
            async with self._client.stream("GET", url, params=params) as response:
                if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
                    raise ConnectivityError.http_error(url, response.status_code)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        row = decode_feed_line(line)
                    except FeedFormatError as exc:
                        if not skip_undecodable:
                            raise
                        self._event_logger.log_row_undecodable(since, exc)
                        continue
                    yield row
        except httpx.HTTPError as exc:
            raise ConnectivityError.unreachable(url, exc) from exc
