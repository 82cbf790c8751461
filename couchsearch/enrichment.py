"""Download-count enrichment from the npm downloads API.

Three windows are fetched concurrently for every package. Each one may fail
on its own; the entity is still indexed with whatever counts arrived.
"""

from __future__ import annotations

import asyncio
import dataclasses
import math
from urllib.parse import quote

import httpx
import msgspec

from .errors import EnrichmentError
from .models import DownloadStats, Entity
from .observability import SyncEventLogger

WEEKS_PER_MONTH = 4

_HTTP_ERROR_STATUS_THRESHOLD = 400

PERIOD_DAY = "last-day"
PERIOD_WEEK = "last-week"
PERIOD_MONTH = "last-month"


@dataclasses.dataclass(frozen=True, slots=True)
class DownloadsConfig:
    """Location of the downloads API."""

    base_url: str = "https://api.npmjs.org/downloads"
    timeout_s: float = 10.0
    user_agent: str = "couchsearch/0.1"


class _DownloadsPoint(msgspec.Struct):
    downloads: int | None = None
    error: str | None = None


def compute_score(week: int | None, month: int | None) -> float | None:
    """Return the trend score ``week / (month / 4)``.

    ``None`` is returned whenever the ratio is undefined (a missing window or
    an empty month) so no non-finite value ever reaches the index.

    >>> round(compute_score(70, 120), 4)
    2.3333
    >>> compute_score(70, 0) is None
    True

    """
    if week is None or month is None or month == 0:
        return None
    score = week / (month / WEEKS_PER_MONTH)
    return score if math.isfinite(score) else None


class EnrichmentClient:
    """Fetch download counts and attach them to an entity."""

    def __init__(
        self,
        config: DownloadsConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        event_logger: SyncEventLogger | None = None,
    ) -> None:
        """Create the client, owning an HTTP client unless one is supplied."""
        self._config = config or DownloadsConfig()
        self._event_logger = event_logger or SyncEventLogger()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self._config.timeout_s,
            headers={
                "User-Agent": self._config.user_agent,
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    async def fetch_downloads(self, name: str, period: str) -> int:
        """Return the download count for ``name`` over ``period``.

        Raises
        ------
        EnrichmentError
            On transport failure, HTTP error, or an ``error`` payload.

        """
        base = self._config.base_url.rstrip("/")
        url = f"{base}/point/{period}/{quote(name, safe='@/')}"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise EnrichmentError.api_error(name, period, exc) from exc
        try:
            point = msgspec.json.decode(response.content, type=_DownloadsPoint)
        except msgspec.DecodeError as exc:
            raise EnrichmentError.api_error(name, period, exc) from exc
        if point.error:
            raise EnrichmentError.api_error(name, period, point.error)
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise EnrichmentError.api_error(
                name, period, f"HTTP {response.status_code}"
            )
        if point.downloads is None:
            raise EnrichmentError.api_error(name, period, "missing downloads field")
        return point.downloads

    async def _fetch_or_none(self, name: str, period: str) -> int | None:
        try:
            return await self.fetch_downloads(name, period)
        except EnrichmentError as exc:
            self._event_logger.log_enrichment_failed(name, period, exc)
            return None

    async def enrich(self, entity: Entity) -> Entity:
        """Return ``entity`` with its download stats populated best-effort."""
        async with asyncio.TaskGroup() as group:
            day = group.create_task(self._fetch_or_none(entity.name, PERIOD_DAY))
            week = group.create_task(self._fetch_or_none(entity.name, PERIOD_WEEK))
            month = group.create_task(self._fetch_or_none(entity.name, PERIOD_MONTH))

        score = compute_score(week.result(), month.result())
        if score is None:
            self._event_logger.log_score_undefined(
                entity.name, week.result(), month.result()
            )
        stats = DownloadStats(
            day=day.result(),
            week=week.result(),
            month=month.result(),
            score=score,
        )
        return msgspec.structs.replace(entity, download_stats=stats)
