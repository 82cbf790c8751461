"""Command-line entrypoint for the sync process.

Flags override the matching ``COUCHSEARCH_*`` environment variables. The
resolved configuration is exported back into the environment because the
Granian worker rebuilds it from there.
"""

from __future__ import annotations

import argparse
import dataclasses
import os
import typing as typ

from .config import SyncConfig
from .errors import ConfigError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

_FLAG_FIELDS = {
    "couch": "couch_url",
    "es": "es_url",
    "downloads": "downloads_url",
    "queue_depth": "queue_depth",
    "concurrency": "concurrency",
    "since": "since",
    "sync_interval": "sync_interval",
    "metrics_report_frequency": "metrics_interval_ms",
    "leader_sequence_poll_frequency": "leader_poll_interval_ms",
    "monitor_host": "monitor_host",
    "monitor_port": "monitor_port",
    "log_level": "log_level",
}


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for ``couchsearch``."""
    parser = argparse.ArgumentParser(
        prog="couchsearch",
        description="Mirror a CouchDB change feed into a search index.",
    )
    parser.add_argument("--couch", help="CouchDB database to replicate from")
    parser.add_argument("--es", help="Search index to populate")
    parser.add_argument("--downloads", help="Base URL of the downloads API")
    parser.add_argument(
        "--queue-depth", type=int, help="Max number of docs in the backlog"
    )
    parser.add_argument(
        "--concurrency", type=int, help="Max number of docs processed at once"
    )
    parser.add_argument(
        "--since", type=int, help="Sequence to begin indexing from (overwrites)"
    )
    parser.add_argument(
        "--sync-interval", type=int, help="Sequence gap between checkpoint writes"
    )
    parser.add_argument(
        "--metrics-report-frequency",
        type=int,
        help="Milliseconds between lag metric reports",
    )
    parser.add_argument(
        "--leader-sequence-poll-frequency",
        type=int,
        help="Milliseconds between polls of the leader's max sequence",
    )
    parser.add_argument("--monitor-host", help="Status server bind address")
    parser.add_argument("--monitor-port", type=int, help="Status server port")
    parser.add_argument("--log-level", help="Log level name")
    return parser


def resolve_config(
    argv: list[str] | None = None,
    env: cabc.Mapping[str, str] | None = None,
) -> SyncConfig:
    """Merge CLI flags over ``env`` and return the validated configuration."""
    target = os.environ if env is None else env
    args = build_parser().parse_args(argv)
    overrides = {
        field: value
        for flag, field in _FLAG_FIELDS.items()
        if (value := getattr(args, flag)) is not None
    }
    merged_env = dict(target)
    if "couch_url" in overrides:
        merged_env["COUCHSEARCH_COUCH_URL"] = overrides["couch_url"]
    if "es_url" in overrides:
        merged_env["COUCHSEARCH_ES_URL"] = overrides["es_url"]
    base = SyncConfig.from_env(merged_env)
    return dataclasses.replace(base, **overrides)


def main(argv: list[str] | None = None) -> int:
    """Parse flags, export the configuration and run the sync process.

    Returns
    -------
    int
        Exit code: 1 when the configuration is invalid.

    """
    try:
        config = resolve_config(argv)
    except ConfigError as exc:
        print(f"couchsearch: {exc}")
        return 1

    os.environ.update(config.to_env())

    from .runtime import main as run

    run(config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
