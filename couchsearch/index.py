"""HTTP client for the Elasticsearch-style search index.

The index holds two kinds of documents: one record per package under
``package/package/{name}`` and the sync checkpoint under ``config/sequence``.
Identity keys are percent-encoded so scoped names such as ``@scope/pkg``
survive as a single path segment.
"""

from __future__ import annotations

import dataclasses
import typing as typ
from urllib.parse import quote

import httpx
import msgspec

from .errors import ConnectivityError, IndexWriteError
from .logging import get_logger, log_warning

logger = get_logger(__name__)

_HTTP_NOT_FOUND = 404
_HTTP_CREATED = 201
_HTTP_ERROR_STATUS_THRESHOLD = 400

# Bootstrapped once at startup; the "letter" analyzer keeps hyphenated
# package names searchable by their parts.
INDEX_SETTINGS: dict[str, typ.Any] = {
    "analysis": {
        "filter": {
            "worddelimiter": {"type": "word_delimiter", "preserve_original": True}
        },
        "analyzer": {
            "letter_analyzer": {"tokenizer": "letter", "filter": ["worddelimiter"]}
        },
    }
}

_NAME_FIELD_MAPPING: dict[str, typ.Any] = {
    "type": "multi_field",
    "fields": {
        "name": {"type": "string", "index": "analyzed"},
        "untouched": {"type": "string", "index": "not_analyzed"},
    },
}


@dataclasses.dataclass(frozen=True, slots=True)
class IndexConfig:
    """Location and layout of the search index."""

    url: str
    entity_path: str = "package/package"
    mapping_path: str = "package/_mapping"
    checkpoint_path: str = "config/sequence"
    timeout_s: float = 30.0


class _StoredDocument(msgspec.Struct):
    found: bool | None = None
    source: dict[str, typ.Any] | None = msgspec.field(default=None, name="_source")


class _WriteResult(msgspec.Struct):
    result: str | None = None
    error: typ.Any = None


def _decode[T](content: bytes, type_: type[T], target: str) -> T:
    try:
        return msgspec.json.decode(content, type=type_)
    except msgspec.DecodeError as exc:
        msg = f"{target} returned an undecodable body: {exc}"
        raise ConnectivityError(msg) from exc


class SearchIndexClient:
    """Read and write package documents and the checkpoint record."""

    def __init__(
        self,
        config: IndexConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Bind the client to an index, creating an HTTP client if needed."""
        self._config = config
        self._base = config.url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=config.timeout_s,
            headers={"Accept": "application/json"},
        )

    @property
    def url(self) -> str:
        """Return the index base URL."""
        return self._base

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    def _entity_url(self, name: str) -> str:
        return f"{self._base}/{self._config.entity_path}/{quote(name, safe='')}"

    async def _request(
        self, method: str, url: str, *, json: object | None = None
    ) -> httpx.Response:
        try:
            return await self._client.request(method, url, json=json)
        except httpx.HTTPError as exc:
            raise ConnectivityError.unreachable(self._base, exc) from exc

    async def _get_source(self, url: str) -> dict[str, typ.Any] | None:
        response = await self._request("GET", url)
        if response.status_code == _HTTP_NOT_FOUND:
            return None
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise ConnectivityError.http_error(url, response.status_code)
        stored = _decode(response.content, _StoredDocument, url)
        if stored.found is False:
            return None
        return stored.source

    async def read_checkpoint(self) -> int | None:
        """Return the stored sequence, or ``None`` when none was saved."""
        source = await self._get_source(f"{self._base}/{self._config.checkpoint_path}")
        if not source:
            return None
        value = source.get("value")
        if isinstance(value, bool) or not isinstance(value, int | str):
            return None
        try:
            return int(value)
        except ValueError:
            return None

    async def write_checkpoint(self, sequence: int) -> None:
        """Overwrite the checkpoint record with ``sequence``."""
        url = f"{self._base}/{self._config.checkpoint_path}"
        response = await self._request("PUT", url, json={"value": sequence})
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise ConnectivityError.http_error(url, response.status_code)

    async def get_entity(self, name: str) -> dict[str, typ.Any] | None:
        """Return the stored body for ``name``, or ``None`` if absent."""
        return await self._get_source(self._entity_url(name))

    async def put_entity(self, name: str, document: dict[str, typ.Any]) -> bool:
        """Write ``document`` under ``name`` and report whether it was created.

        Raises
        ------
        IndexWriteError
            If the request fails or the index answers with an error body.

        """
        try:
            response = await self._client.put(self._entity_url(name), json=document)
        except httpx.HTTPError as exc:
            raise IndexWriteError.transport(name, exc) from exc
        try:
            result = msgspec.json.decode(response.content, type=_WriteResult)
        except msgspec.DecodeError:
            result = _WriteResult()
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD or result.error:
            raise IndexWriteError.rejected(
                name, response.status_code, result.error or response.reason_phrase
            )
        if result.result is not None:
            return result.result == "created"
        return response.status_code == _HTTP_CREATED

    async def delete_entity(self, name: str) -> bool:
        """Delete ``name`` and report whether a document was found."""
        try:
            response = await self._client.delete(self._entity_url(name))
        except httpx.HTTPError as exc:
            raise IndexWriteError.transport(name, exc) from exc
        if response.status_code == _HTTP_NOT_FOUND:
            return False
        if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
            raise IndexWriteError.rejected(
                name, response.status_code, response.reason_phrase
            )
        return True

    async def bootstrap(self) -> None:
        """Push analysis settings and the ``name`` mapping.

        Failures are logged and tolerated: an index that already has its
        schema keeps working without them.
        """
        try:
            response = await self._request("PUT", self._base, json=INDEX_SETTINGS)
            if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
                log_warning(
                    logger,
                    "could not put settings into %s: HTTP %d",
                    self._base,
                    response.status_code,
                )
            mapping_url = f"{self._base}/{self._config.mapping_path}"
            mapping = await self._merged_mapping(mapping_url)
            response = await self._request("PUT", mapping_url, json=mapping)
            if response.status_code >= _HTTP_ERROR_STATUS_THRESHOLD:
                log_warning(
                    logger,
                    "could not put mapping into %s: HTTP %d",
                    mapping_url,
                    response.status_code,
                )
        except ConnectivityError as exc:
            log_warning(logger, "index bootstrap skipped: %s", exc)

    async def _merged_mapping(self, mapping_url: str) -> dict[str, typ.Any]:
        response = await self._request("GET", mapping_url)
        existing: object = None
        if response.status_code < _HTTP_ERROR_STATUS_THRESHOLD:
            try:
                existing = msgspec.json.decode(response.content)
            except msgspec.DecodeError:
                existing = None
        package = existing.get("package") if isinstance(existing, dict) else None
        if isinstance(package, dict) and isinstance(package.get("properties"), dict):
            package["properties"]["name"] = _NAME_FIELD_MAPPING
            return {"package": package}
        return {
            "package": {
                "_all": {"index_analyzer": "letter_analyzer"},
                "properties": {"name": _NAME_FIELD_MAPPING},
            }
        }
