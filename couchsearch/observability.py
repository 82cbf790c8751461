"""Structured log events for the sync pipeline.

Each event is a single line of the form ``[event.type] key=value ...`` so log
aggregators can count skips, writes, and failures without parsing free text.
Lines carry the package name and feed sequence so a failed event can be
replayed by restarting from an earlier checkpoint.
"""

from __future__ import annotations

import enum

from .errors import categorize_error
from .logging import get_logger, log_debug, log_error, log_info, log_warning

logger = get_logger(__name__)


class SyncEventType(enum.StrEnum):
    """Structured log event types."""

    FOLLOW_STARTED = "sync.follow.started"
    FEED_ROW_SKIPPED = "sync.feed.row_skipped"
    FEED_RECONNECTING = "sync.feed.reconnecting"
    FEED_ROW_UNDECODABLE = "sync.feed.row_undecodable"
    BACKPRESSURE_PAUSED = "sync.backpressure.paused"
    BACKPRESSURE_RESUMED = "sync.backpressure.resumed"
    CHECKPOINT_SYNCED = "sync.checkpoint.synced"
    CHECKPOINT_FAILED = "sync.checkpoint.failed"
    DOCUMENT_DELETED = "sync.document.deleted"
    DOCUMENT_SKIPPED = "sync.document.skipped"
    DOCUMENT_UNCHANGED = "sync.document.unchanged"
    DOCUMENT_INDEXED = "sync.document.indexed"
    DOCUMENT_FAILED = "sync.document.failed"
    ENRICHMENT_FAILED = "sync.enrichment.failed"
    SCORE_UNDEFINED = "sync.enrichment.score_undefined"
    LEADER_POLL_FAILED = "sync.lag.leader_poll_failed"


class SyncEventLogger:
    """Emit structured pipeline events via femtologging.

    Successful work is logged at INFO, recoverable degradation at WARNING,
    and dropped events at ERROR.
    """

    def log_follow_started(self, sequence: int) -> None:
        """Log the sequence the feed subscription starts from."""
        log_info(logger, "[%s] since=%d", SyncEventType.FOLLOW_STARTED, sequence)

    def log_row_skipped(self, sequence: int | None) -> None:
        """Log a feed row that carried no document id."""
        log_info(logger, "[%s] seq=%s", SyncEventType.FEED_ROW_SKIPPED, sequence)

    def log_row_undecodable(self, since: int, error: BaseException) -> None:
        """Log a feed line skipped after it failed to decode repeatedly."""
        log_error(
            logger,
            "[%s] since=%d error_type=%s error_message=%s",
            SyncEventType.FEED_ROW_UNDECODABLE,
            since,
            type(error).__name__,
            str(error),
        )

    def log_reconnecting(
        self, sequence: int, delay_seconds: float, error: BaseException
    ) -> None:
        """Log a feed connection failure ahead of a reconnect."""
        log_warning(
            logger,
            "[%s] since=%d delay_seconds=%.1f error_type=%s error_category=%s "
            "error_message=%s",
            SyncEventType.FEED_RECONNECTING,
            sequence,
            delay_seconds,
            type(error).__name__,
            categorize_error(error),
            str(error),
        )

    def log_paused(self, sequence: int, backlog: int) -> None:
        """Log that the feed was paused because the backlog saturated."""
        log_warning(
            logger,
            "[%s] seq=%d queue_backlog=%d",
            SyncEventType.BACKPRESSURE_PAUSED,
            sequence,
            backlog,
        )

    def log_resumed(self) -> None:
        """Log that the backlog drained and the feed resumed."""
        log_info(logger, "[%s] queue_backlog=0", SyncEventType.BACKPRESSURE_RESUMED)

    def log_checkpoint_synced(self, sequence: int) -> None:
        """Log a persisted checkpoint."""
        log_info(logger, "[%s] seq=%d", SyncEventType.CHECKPOINT_SYNCED, sequence)

    def log_checkpoint_failed(self, sequence: int, error: BaseException) -> None:
        """Log a checkpoint write that did not reach the store."""
        log_error(
            logger,
            "[%s] seq=%d error_type=%s error_message=%s",
            SyncEventType.CHECKPOINT_FAILED,
            sequence,
            type(error).__name__,
            str(error),
        )

    def log_deleted(self, name: str, sequence: int, *, found: bool) -> None:
        """Log a delete issued against the index."""
        log_info(
            logger,
            "[%s] name=%s seq=%d found=%s",
            SyncEventType.DOCUMENT_DELETED,
            name,
            sequence,
            found,
        )

    def log_skipped(self, doc_id: str, sequence: int) -> None:
        """Log a document dropped because it normalized to no identity."""
        log_info(
            logger, "[%s] id=%s seq=%d", SyncEventType.DOCUMENT_SKIPPED, doc_id, sequence
        )

    def log_unchanged(
        self, name: str, version: str, sequence: int, backlog: int
    ) -> None:
        """Log a write suppressed because the stored version already matches."""
        log_debug(
            logger,
            "[%s] name=%s version=%s seq=%d queue_backlog=%d",
            SyncEventType.DOCUMENT_UNCHANGED,
            name,
            version,
            sequence,
            backlog,
        )

    def log_indexed(
        self, name: str, sequence: int, *, created: bool, backlog: int
    ) -> None:
        """Log a successful upsert together with the current backlog."""
        log_info(
            logger,
            "[%s] name=%s seq=%d result=%s queue_backlog=%d",
            SyncEventType.DOCUMENT_INDEXED,
            name,
            sequence,
            "created" if created else "updated",
            backlog,
        )

    def log_failed(self, name: str, sequence: int, error: BaseException) -> None:
        """Log an event dropped after an index failure."""
        log_error(
            logger,
            "[%s] name=%s seq=%d error_type=%s error_category=%s error_message=%s",
            SyncEventType.DOCUMENT_FAILED,
            name,
            sequence,
            type(error).__name__,
            categorize_error(error),
            str(error),
        )

    def log_enrichment_failed(self, name: str, period: str, error: BaseException) -> None:
        """Log one download window that could not be fetched."""
        log_warning(
            logger,
            "[%s] name=%s period=%s error_message=%s",
            SyncEventType.ENRICHMENT_FAILED,
            name,
            period,
            str(error),
        )

    def log_score_undefined(
        self, name: str, week: int | None, month: int | None
    ) -> None:
        """Log a trend score left unset because its inputs are unusable."""
        log_debug(
            logger,
            "[%s] name=%s dl_week=%s dl_month=%s",
            SyncEventType.SCORE_UNDEFINED,
            name,
            week,
            month,
        )

    def log_leader_poll_failed(self, error: BaseException) -> None:
        """Log a failed poll of the leader's update sequence."""
        log_warning(
            logger,
            "[%s] error_type=%s error_message=%s",
            SyncEventType.LEADER_POLL_FAILED,
            type(error).__name__,
            str(error),
        )
