"""Unit tests for download-count enrichment."""

from __future__ import annotations

import asyncio
import math
import typing as typ

import httpx
import pytest

from couchsearch.enrichment import DownloadsConfig, EnrichmentClient, compute_score
from couchsearch.errors import EnrichmentError
from couchsearch.models import Entity

_BASE_URL = "https://downloads.example.test/downloads"


def _make_client(
    responses: dict[str, tuple[int, dict[str, typ.Any]] | Exception],
    *,
    delays: dict[str, float] | None = None,
) -> tuple[EnrichmentClient, list[str]]:
    calls: list[str] = []

    async def _handler(request: httpx.Request) -> httpx.Response:
        period = request.url.path.split("/")[3]
        calls.append(request.url.path)
        if delays and period in delays:
            await asyncio.sleep(delays[period])
        outcome = responses[period]
        if isinstance(outcome, Exception):
            raise outcome
        status, payload = outcome
        return httpx.Response(status_code=status, json=payload)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    client = EnrichmentClient(
        DownloadsConfig(base_url=_BASE_URL), http_client=http_client
    )
    return client, calls


class TestComputeScore:
    """Tests for the trend score."""

    def test_week_over_quarter_month(self) -> None:
        """70 weekly against 120 monthly downloads scores 70 / 30."""
        score = compute_score(70, 120)
        assert score is not None
        assert math.isclose(score, 70 / 30)

    @pytest.mark.parametrize(
        ("week", "month"),
        [(70, 0), (0, 0), (None, 120), (70, None), (None, None)],
    )
    def test_undefined_inputs_yield_no_score(
        self, week: int | None, month: int | None
    ) -> None:
        """An empty or missing window never produces a non-finite score."""
        assert compute_score(week, month) is None


class TestEnrich:
    """Tests for the concurrent enrichment fetches."""

    @pytest.mark.asyncio
    async def test_populates_all_windows_and_score(self) -> None:
        """Three successful fetches fill every field."""
        client, calls = _make_client(
            {
                "last-day": (200, {"downloads": 10}),
                "last-week": (200, {"downloads": 70}),
                "last-month": (200, {"downloads": 120}),
            }
        )

        entity = await client.enrich(Entity(name="foo", version="1.0.0"))

        stats = entity.download_stats
        assert (stats.day, stats.week, stats.month) == (10, 70, 120)
        assert stats.score is not None
        assert math.isclose(stats.score, 70 / 30)
        assert sorted(calls) == [
            "/downloads/point/last-day/foo",
            "/downloads/point/last-month/foo",
            "/downloads/point/last-week/foo",
        ]

    @pytest.mark.asyncio
    async def test_one_failing_window_leaves_only_that_field_unset(self) -> None:
        """Failures are isolated to their own window."""
        client, _ = _make_client(
            {
                "last-day": httpx.ConnectError("refused"),
                "last-week": (200, {"downloads": 70}),
                "last-month": (200, {"downloads": 120}),
            }
        )

        entity = await client.enrich(Entity(name="foo", version="1.0.0"))

        assert entity.download_stats.day is None
        assert entity.download_stats.week == 70
        assert entity.download_stats.score is not None

    @pytest.mark.asyncio
    async def test_error_payload_is_treated_as_failure(self) -> None:
        """An ``error`` body leaves the month unset and the score undefined."""
        client, _ = _make_client(
            {
                "last-day": (200, {"downloads": 1}),
                "last-week": (200, {"downloads": 70}),
                "last-month": (404, {"error": "package foo not found"}),
            }
        )

        entity = await client.enrich(Entity(name="foo", version="1.0.0"))

        assert entity.download_stats.month is None
        assert entity.download_stats.score is None

    @pytest.mark.asyncio
    async def test_zero_month_produces_no_score(self) -> None:
        """A brand-new package with no monthly downloads gets no score."""
        client, _ = _make_client(
            {
                "last-day": (200, {"downloads": 0}),
                "last-week": (200, {"downloads": 0}),
                "last-month": (200, {"downloads": 0}),
            }
        )

        entity = await client.enrich(Entity(name="fresh", version="0.0.1"))

        assert entity.download_stats.month == 0
        assert entity.download_stats.score is None

    @pytest.mark.asyncio
    async def test_completion_order_does_not_change_result(self) -> None:
        """Slow windows still land in the right fields."""
        responses: dict[str, tuple[int, dict[str, typ.Any]] | Exception] = {
            "last-day": (200, {"downloads": 3}),
            "last-week": (200, {"downloads": 21}),
            "last-month": (200, {"downloads": 84}),
        }
        fast, _ = _make_client(responses)
        slow, _ = _make_client(
            responses, delays={"last-day": 0.03, "last-week": 0.02, "last-month": 0.0}
        )

        first = await fast.enrich(Entity(name="foo", version="1.0.0"))
        second = await slow.enrich(Entity(name="foo", version="1.0.0"))

        assert first.download_stats == second.download_stats

    @pytest.mark.asyncio
    async def test_fetch_downloads_raises_enrichment_error(self) -> None:
        """The single-window fetch surfaces failures with identity."""
        client, _ = _make_client({"last-week": (500, {"message": "oops"})})

        with pytest.raises(EnrichmentError) as excinfo:
            await client.fetch_downloads("foo", "last-week")

        assert excinfo.value.name == "foo"
        assert excinfo.value.period == "last-week"

    @pytest.mark.asyncio
    async def test_scoped_names_keep_their_slash(self) -> None:
        """Scoped package names are sent as ``@scope/name``."""
        client, calls = _make_client({"last-day": (200, {"downloads": 5})})

        assert await client.fetch_downloads("@scope/pkg", "last-day") == 5
        assert calls == ["/downloads/point/last-day/@scope/pkg"]
