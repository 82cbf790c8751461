"""Runtime configuration for the sync pipeline.

Every setting has a ``COUCHSEARCH_*`` environment variable; the command line
(:mod:`couchsearch.cli`) overrides individual values.

Usage
-----
>>> import os
>>> os.environ["COUCHSEARCH_COUCH_URL"] = "http://localhost:5984/registry"
>>> os.environ["COUCHSEARCH_ES_URL"] = "http://localhost:9200/npm"
>>> config = SyncConfig.from_env()
>>> config.queue_depth
2048

"""

from __future__ import annotations

import dataclasses as dc
import os
import typing as typ

from .errors import ConfigError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

ENV_PREFIX = "COUCHSEARCH_"

# TCP port number range limits
_MIN_PORT = 1
_MAX_PORT = 65535


def _read(env: cabc.Mapping[str, str], name: str) -> str:
    return env.get(ENV_PREFIX + name, "").strip()


def _parse_int(
    env: cabc.Mapping[str, str], name: str, default: int, *, minimum: int
) -> int:
    raw = _read(env, name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError.not_integer(ENV_PREFIX + name, raw) from exc
    if value < minimum:
        raise ConfigError.out_of_range(ENV_PREFIX + name, value, minimum)
    return value


def _parse_optional_int(env: cabc.Mapping[str, str], name: str) -> int | None:
    if not _read(env, name):
        return None
    return _parse_int(env, name, 0, minimum=0)


def _parse_port(env: cabc.Mapping[str, str], name: str, default: int) -> int:
    port = _parse_int(env, name, default, minimum=_MIN_PORT)
    if port > _MAX_PORT:
        msg = f"{ENV_PREFIX}{name} must be <= {_MAX_PORT}, got: {port}"
        raise ConfigError(msg)
    return port


@dc.dataclass(frozen=True, slots=True)
class SyncConfig:
    """Settings for one sync process.

    Attributes
    ----------
    couch_url
        Source database to follow, e.g. ``http://host:5984/registry``.
    es_url
        Search index to populate, e.g. ``http://host:9200/npm``.
    downloads_url
        Base URL of the downloads API.
    queue_depth
        Maximum backlog before the feed is paused.
    concurrency
        Maximum number of events processed at once.
    since
        Explicit start sequence; overwrites the stored checkpoint when set.
    sync_interval
        Sequence gap that triggers a checkpoint write.
    metrics_interval_ms
        Period of the lag gauge emission.
    leader_poll_interval_ms
        Period of the leader sequence poll.
    monitor_host, monitor_port
        Bind address of the status server.
    log_level
        femtologging level name.
    shutdown_grace_s
        How long shutdown waits for in-flight events before giving up.

    """

    couch_url: str
    es_url: str
    downloads_url: str = "https://api.npmjs.org/downloads"
    queue_depth: int = 2048
    concurrency: int = 16
    since: int | None = None
    sync_interval: int = 1000
    metrics_interval_ms: int = 10_000
    leader_poll_interval_ms: int = 10_000
    monitor_host: str = "0.0.0.0"  # noqa: S104 - bind all interfaces for container
    monitor_port: int = 5000
    log_level: str = "INFO"
    shutdown_grace_s: int = 30

    def __post_init__(self) -> None:
        """Reject values no environment parser would have accepted."""
        minimums = {
            "queue_depth": 1,
            "concurrency": 1,
            "sync_interval": 0,
            "metrics_interval_ms": 1,
            "leader_poll_interval_ms": 1,
            "monitor_port": _MIN_PORT,
            "shutdown_grace_s": 0,
        }
        for field, minimum in minimums.items():
            value = getattr(self, field)
            if value < minimum:
                raise ConfigError.out_of_range(field, value, minimum)
        if self.monitor_port > _MAX_PORT:
            msg = f"monitor_port must be <= {_MAX_PORT}, got: {self.monitor_port}"
            raise ConfigError(msg)
        if self.since is not None and self.since < 0:
            raise ConfigError.out_of_range("since", self.since, 0)

    @classmethod
    def from_env(cls, env: cabc.Mapping[str, str] | None = None) -> SyncConfig:
        """Build a configuration from ``COUCHSEARCH_*`` variables.

        ``ELASTIC_SEARCH`` (a bare ``host:port/index``) and ``COUCH_URL`` are
        honoured as fallbacks for deployments written for npm2es.

        Raises
        ------
        ConfigError
            If a required URL is missing or a number is malformed.

        """
        source = os.environ if env is None else env
        couch_url = _read(source, "COUCH_URL") or source.get("COUCH_URL", "").strip()
        if not couch_url:
            raise ConfigError.missing(ENV_PREFIX + "COUCH_URL")
        es_url = _read(source, "ES_URL")
        if not es_url and source.get("ELASTIC_SEARCH", "").strip():
            es_url = f"http://{source['ELASTIC_SEARCH'].strip()}"
        if not es_url:
            raise ConfigError.missing(ENV_PREFIX + "ES_URL")

        defaults = cls(couch_url=couch_url, es_url=es_url)
        return cls(
            couch_url=couch_url,
            es_url=es_url,
            downloads_url=_read(source, "DOWNLOADS_URL") or defaults.downloads_url,
            queue_depth=_parse_int(source, "QUEUE_DEPTH", defaults.queue_depth, minimum=1),
            concurrency=_parse_int(source, "CONCURRENCY", defaults.concurrency, minimum=1),
            since=_parse_optional_int(source, "SINCE"),
            sync_interval=_parse_int(
                source, "SYNC_INTERVAL", defaults.sync_interval, minimum=0
            ),
            metrics_interval_ms=_parse_int(
                source, "METRICS_INTERVAL_MS", defaults.metrics_interval_ms, minimum=1
            ),
            leader_poll_interval_ms=_parse_int(
                source,
                "LEADER_POLL_INTERVAL_MS",
                defaults.leader_poll_interval_ms,
                minimum=1,
            ),
            monitor_host=_read(source, "MONITOR_HOST") or defaults.monitor_host,
            monitor_port=_parse_port(source, "MONITOR_PORT", defaults.monitor_port),
            log_level=_read(source, "LOG_LEVEL") or defaults.log_level,
            shutdown_grace_s=_parse_int(
                source, "SHUTDOWN_GRACE_S", defaults.shutdown_grace_s, minimum=0
            ),
        )

    def to_env(self) -> dict[str, str]:
        """Return the ``COUCHSEARCH_*`` variables that reproduce this config."""
        env = {
            "COUCH_URL": self.couch_url,
            "ES_URL": self.es_url,
            "DOWNLOADS_URL": self.downloads_url,
            "QUEUE_DEPTH": str(self.queue_depth),
            "CONCURRENCY": str(self.concurrency),
            "SINCE": "" if self.since is None else str(self.since),
            "SYNC_INTERVAL": str(self.sync_interval),
            "METRICS_INTERVAL_MS": str(self.metrics_interval_ms),
            "LEADER_POLL_INTERVAL_MS": str(self.leader_poll_interval_ms),
            "MONITOR_HOST": self.monitor_host,
            "MONITOR_PORT": str(self.monitor_port),
            "LOG_LEVEL": self.log_level,
            "SHUTDOWN_GRACE_S": str(self.shutdown_grace_s),
        }
        return {ENV_PREFIX + key: value for key, value in env.items()}
