"""Unit tests for the change feed consumer."""

from __future__ import annotations

import asyncio
import json
import typing as typ

import httpx
import pytest

from couchsearch.errors import ConnectivityError, FeedFormatError
from couchsearch.feed import (
    ChangeFeedConsumer,
    FeedConfig,
    decode_feed_line,
    parse_sequence,
)

_DB = "http://couch.example.test/registry"

_ROWS: list[dict[str, typ.Any]] = [
    {"seq": 1, "id": "foo", "doc": {"_id": "foo", "name": "foo"}},
    {"seq": 2},
    {"seq": 3, "id": "bar", "deleted": True},
    {"seq": 4, "id": "baz", "doc": {"_id": "baz", "name": "baz"}},
]


class _FeedServer:
    """Serves ``_ROWS`` after the requested ``since``, failing first if asked."""

    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            self.failures -= 1
            raise httpx.ConnectError("refused", request=request)
        since = int(request.url.params["since"])
        lines = [json.dumps(row) for row in _ROWS if row["seq"] > since]
        # Heartbeats arrive as blank lines between rows.
        body = "\n\n".join(lines) + "\n"
        return httpx.Response(200, content=body.encode())


class _RecordingSleep:
    """Records requested delays; blocks after a clean disconnect if asked."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.block = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)
        await self.block.wait()


def _consumer(server: _FeedServer, sleep: _RecordingSleep) -> ChangeFeedConsumer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return ChangeFeedConsumer(
        FeedConfig(url=_DB, reconnect_initial_s=1.0, reconnect_max_s=3.0),
        http_client=client,
        sleep=sleep,
    )


class TestDecoding:
    """Tests for feed line and sequence parsing."""

    def test_document_row_becomes_event(self) -> None:
        """Rows with an id decode into change events."""
        sequence, event = decode_feed_line(
            '{"seq": 7, "id": "foo", "changes": [{"rev": "1-a"}], "doc": {"name": "foo"}}'
        )

        assert sequence == 7
        assert event is not None
        assert event.id == "foo"
        assert event.document == {"name": "foo"}
        assert not event.deleted

    def test_trailing_last_seq_row_has_no_event(self) -> None:
        """The end-of-feed row only reports a sequence."""
        assert decode_feed_line('{"last_seq": "12-g1AAA"}') == (12, None)

    def test_malformed_line_raises(self) -> None:
        """Undecodable lines are schema drift."""
        with pytest.raises(FeedFormatError):
            decode_feed_line("{not json")

    @pytest.mark.parametrize(
        ("raw", "expected"), [(5, 5), ("5", 5), ("1234-g1AAAAxyz", 1234)]
    )
    def test_parse_sequence(self, raw: int | str, expected: int) -> None:
        """Opaque sequences are reduced to their numeric prefix."""
        assert parse_sequence(raw) == expected

    def test_parse_sequence_rejects_garbage(self) -> None:
        """Sequences without a numeric prefix are rejected."""
        with pytest.raises(FeedFormatError):
            parse_sequence("g1AAAA")


class TestSubscribe:
    """Tests for following the continuous feed."""

    @pytest.mark.asyncio
    async def test_yields_events_in_order_after_start(self) -> None:
        """Rows without ids and heartbeats are skipped."""
        server = _FeedServer()
        consumer = _consumer(server, _RecordingSleep())

        events = consumer.subscribe(0)
        received = [await anext(events) for _ in range(3)]
        await consumer.aclose()

        assert [event.sequence for event in received] == [1, 3, 4]
        assert received[1].deleted
        params = server.requests[0].url.params
        assert params["feed"] == "continuous"
        assert params["include_docs"] == "true"
        assert params["since"] == "0"
        assert server.requests[0].url.path == "/registry/_changes"

    @pytest.mark.asyncio
    async def test_start_sequence_is_exclusive(self) -> None:
        """Subscribing from a checkpoint resumes after it."""
        server = _FeedServer()
        consumer = _consumer(server, _RecordingSleep())

        events = consumer.subscribe(3)
        first = await anext(events)
        await consumer.aclose()

        assert first.sequence == 4
        assert server.requests[0].url.params["since"] == "3"

    @pytest.mark.asyncio
    async def test_reconnects_with_backoff_from_last_position(self) -> None:
        """Connection failures back off exponentially up to the cap."""
        server = _FeedServer(failures=3)
        sleep = _RecordingSleep()
        sleep.block.set()
        consumer = _consumer(server, sleep)

        events = consumer.subscribe(0)
        first = await anext(events)
        await consumer.aclose()

        assert first.sequence == 1
        assert sleep.delays[:3] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_clean_disconnect_resumes_from_position(self) -> None:
        """After the server closes the feed it is reopened past the last row."""
        server = _FeedServer()
        sleep = _RecordingSleep()
        consumer = _consumer(server, sleep)

        events = consumer.subscribe(0)
        for _ in range(3):
            await anext(events)
        while not sleep.delays:
            await asyncio.sleep(0)
        sleep.block.set()
        while len(server.requests) < 2:
            await asyncio.sleep(0)
        await consumer.aclose()

        assert consumer.position == 4
        assert server.requests[1].url.params["since"] == "4"

    @pytest.mark.asyncio
    async def test_pause_holds_delivery_until_resume(self) -> None:
        """A paused consumer delivers nothing until resumed."""
        consumer = _consumer(_FeedServer(), _RecordingSleep())
        events = consumer.subscribe(0)

        consumer.pause()
        pending = asyncio.create_task(anext(events))
        await asyncio.sleep(0.05)
        assert consumer.paused
        assert not pending.done()

        consumer.resume()
        event = await asyncio.wait_for(pending, timeout=1)
        await consumer.aclose()

        assert event.sequence == 1
        assert not consumer.paused

    @pytest.mark.asyncio
    async def test_aclose_ends_iteration(self) -> None:
        """Closing the consumer finishes the subscription."""
        consumer = _consumer(_FeedServer(), _RecordingSleep())
        events = consumer.subscribe(0)
        await anext(events)

        await consumer.aclose()

        remaining = [event async for event in events]
        assert remaining == []


class TestFetchUpdateSeq:
    """Tests for reading the leader sequence."""

    @pytest.mark.asyncio
    async def test_reads_numeric_prefix(self) -> None:
        """The database info sequence is parsed like feed sequences."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url == _DB
            return httpx.Response(200, json={"db_name": "registry", "update_seq": "88-g1A"})

        consumer = ChangeFeedConsumer(
            FeedConfig(url=_DB),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        assert await consumer.fetch_update_seq() == 88

    @pytest.mark.asyncio
    async def test_http_error_raises_connectivity_error(self) -> None:
        """A failing source is reported as a connectivity error."""
        consumer = ChangeFeedConsumer(
            FeedConfig(url=_DB),
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda _request: httpx.Response(503))
            ),
        )

        with pytest.raises(ConnectivityError):
            await consumer.fetch_update_seq()


class _HeldFeedServer:
    """Streams one row only once ``release`` is set."""

    def __init__(self) -> None:
        self.release = asyncio.Event()

    async def _body(self) -> typ.AsyncIterator[bytes]:
        await self.release.wait()
        yield (json.dumps(_ROWS[0]) + "\n").encode()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if int(request.url.params["since"]) >= 1:
            return httpx.Response(200, content=b"\n")
        return httpx.Response(200, content=self._body())


class _UndecodableFeedServer:
    """Serves a row whose sequence can never be parsed between good rows."""

    _LINES: typ.ClassVar[list[tuple[int, str]]] = [
        (1, json.dumps({"seq": 1, "id": "foo", "doc": {"name": "foo"}})),
        (2, json.dumps({"seq": "garbage", "id": "bad"})),
        (3, json.dumps({"seq": 3, "id": "bar", "doc": {"name": "bar"}})),
    ]

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        since = int(request.url.params["since"])
        body = "\n".join(line for position, line in self._LINES if position > since)
        return httpx.Response(200, content=(body + "\n").encode())


class TestDeliveryEdges:
    """Pause races and rows that never decode."""

    @pytest.mark.asyncio
    async def test_pause_while_waiting_on_empty_channel_holds_event(self) -> None:
        """An event arriving after pause() is not delivered until resume()."""
        server = _HeldFeedServer()
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        consumer = ChangeFeedConsumer(
            FeedConfig(url=_DB), http_client=client, sleep=_RecordingSleep()
        )
        events = consumer.subscribe(0)

        pending = asyncio.create_task(anext(events))
        await asyncio.sleep(0.05)
        consumer.pause()
        server.release.set()
        await asyncio.sleep(0.05)

        assert not pending.done()

        consumer.resume()
        event = await asyncio.wait_for(pending, timeout=1)
        await consumer.aclose()

        assert event.sequence == 1

    @pytest.mark.asyncio
    async def test_repeatedly_undecodable_row_is_skipped(self) -> None:
        """The feed moves past a row that fails at the same position again."""
        server = _UndecodableFeedServer()
        sleep = _RecordingSleep()
        sleep.block.set()
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        consumer = ChangeFeedConsumer(
            FeedConfig(url=_DB), http_client=client, sleep=sleep
        )

        events = consumer.subscribe(0)
        received = [await asyncio.wait_for(anext(events), timeout=1) for _ in range(2)]
        await consumer.aclose()

        assert [event.sequence for event in received] == [1, 3]
        sinces = [request.url.params["since"] for request in server.requests[:3]]
        assert sinces == ["0", "1", "1"]
