"""Unit tests for the search index HTTP client."""

from __future__ import annotations

import json
import typing as typ

import httpx
import pytest

from couchsearch.errors import ConnectivityError, IndexWriteError
from couchsearch.index import IndexConfig, SearchIndexClient

if typ.TYPE_CHECKING:
    import collections.abc as cabc

_BASE = "http://es.example.test/npm"


def _client(
    handler: cabc.Callable[[httpx.Request], httpx.Response],
) -> SearchIndexClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SearchIndexClient(IndexConfig(url=f"{_BASE}/"), http_client=http_client)


class TestCheckpointRecord:
    """Tests for reading and writing the checkpoint document."""

    @pytest.mark.asyncio
    async def test_reads_stored_value(self) -> None:
        """The checkpoint comes from ``_source.value``."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url == f"{_BASE}/config/sequence"
            return httpx.Response(200, json={"found": True, "_source": {"value": 42}})

        assert await _client(handler).read_checkpoint() == 42

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(404, json={"found": False}),
            httpx.Response(200, json={"found": False}),
            httpx.Response(200, json={"found": True, "_source": {}}),
            httpx.Response(200, json={"found": True, "_source": {"value": "x"}}),
        ],
    )
    async def test_missing_value_reads_as_none(self, response: httpx.Response) -> None:
        """Absent or malformed records mean no checkpoint was saved."""
        assert await _client(lambda _request: response).read_checkpoint() is None

    @pytest.mark.asyncio
    async def test_server_error_raises_connectivity_error(self) -> None:
        """A 5xx on read is a connectivity failure."""
        client = _client(lambda _request: httpx.Response(503))

        with pytest.raises(ConnectivityError) as excinfo:
            await client.read_checkpoint()

        assert excinfo.value.status_code == 503

    @pytest.mark.asyncio
    async def test_transport_error_raises_connectivity_error(self) -> None:
        """Connection failures surface as connectivity errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ConnectivityError):
            await _client(handler).read_checkpoint()

    @pytest.mark.asyncio
    async def test_write_puts_value_record(self) -> None:
        """Writes overwrite the record with ``{"value": seq}``."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"result": "updated"})

        await _client(handler).write_checkpoint(1234)

        assert seen[0].method == "PUT"
        assert json.loads(seen[0].content) == {"value": 1234}

    @pytest.mark.asyncio
    async def test_failed_write_raises(self) -> None:
        """Rejected checkpoint writes raise for the caller to log."""
        client = _client(lambda _request: httpx.Response(500))

        with pytest.raises(ConnectivityError):
            await client.write_checkpoint(1)


class TestEntityDocuments:
    """Tests for package document reads and writes."""

    @pytest.mark.asyncio
    async def test_scoped_name_is_a_single_path_segment(self) -> None:
        """Scoped package names are percent-encoded."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(404, json={"found": False})

        assert await _client(handler).get_entity("@scope/pkg") is None
        assert seen[0].url.raw_path == b"/npm/package/package/%40scope%2Fpkg"

    @pytest.mark.asyncio
    async def test_get_returns_source(self) -> None:
        """Stored documents are returned without the envelope."""
        body = {"found": True, "_source": {"name": "foo", "version": "1.0.0"}}
        client = _client(lambda _request: httpx.Response(200, json=body))

        assert await client.get_entity("foo") == {"name": "foo", "version": "1.0.0"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("response", "created"),
        [
            (httpx.Response(201, json={"result": "created"}), True),
            (httpx.Response(200, json={"result": "updated"}), False),
            (httpx.Response(201, json={"ok": True}), True),
            (httpx.Response(200, json={"ok": True}), False),
        ],
    )
    async def test_put_reports_creation(
        self, response: httpx.Response, *, created: bool
    ) -> None:
        """Creation is read from the result field, else the status code."""
        client = _client(lambda _request: response)

        assert await client.put_entity("foo", {"name": "foo"}) is created

    @pytest.mark.asyncio
    async def test_put_error_body_raises_index_write_error(self) -> None:
        """An error payload is a rejected write."""
        client = _client(
            lambda _request: httpx.Response(
                400, json={"error": "MapperParsingException[failed]"}
            )
        )

        with pytest.raises(IndexWriteError) as excinfo:
            await client.put_entity("foo", {"name": "foo"})

        assert excinfo.value.name == "foo"
        assert excinfo.value.status_code == 400

    @pytest.mark.asyncio
    async def test_put_transport_error_raises_index_write_error(self) -> None:
        """Transport failures on write carry the package name."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(IndexWriteError) as excinfo:
            await _client(handler).put_entity("foo", {"name": "foo"})

        assert excinfo.value.status_code is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("status", "found"), [(200, True), (404, False)])
    async def test_delete_reports_whether_found(self, status: int, *, found: bool) -> None:
        """Deleting an absent document is not an error."""
        client = _client(lambda _request: httpx.Response(status, json={}))

        assert await client.delete_entity("foo") is found

    @pytest.mark.asyncio
    async def test_delete_server_error_raises(self) -> None:
        """Other delete failures are rejected writes."""
        client = _client(lambda _request: httpx.Response(500))

        with pytest.raises(IndexWriteError):
            await client.delete_entity("foo")


class TestBootstrap:
    """Tests for the best-effort schema bootstrap."""

    @pytest.mark.asyncio
    async def test_pushes_settings_and_merged_mapping(self) -> None:
        """The name mapping is merged into an existing package mapping."""
        seen: list[tuple[str, str, typ.Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content) if request.content else None
            seen.append((request.method, request.url.path, body))
            if request.method == "GET":
                return httpx.Response(
                    200,
                    json={"package": {"properties": {"readme": {"type": "string"}}}},
                )
            return httpx.Response(200, json={"acknowledged": True})

        await _client(handler).bootstrap()

        methods = [(method, path) for method, path, _ in seen]
        assert methods == [
            ("PUT", "/npm"),
            ("GET", "/npm/package/_mapping"),
            ("PUT", "/npm/package/_mapping"),
        ]
        assert "analysis" in seen[0][2]
        properties = seen[2][2]["package"]["properties"]
        assert properties["readme"] == {"type": "string"}
        assert properties["name"]["type"] == "multi_field"

    @pytest.mark.asyncio
    async def test_unreachable_index_is_tolerated(self) -> None:
        """Bootstrap never raises on connectivity failures."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        await _client(handler).bootstrap()
