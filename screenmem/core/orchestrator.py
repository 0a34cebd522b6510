"""
Ingestion orchestrator - drives each capture event through the pipeline.

    received -> deduplicated (kept | dropped) -> asset_generated
             -> persisted -> enqueued -> done

The keyword store write is the only step that must succeed for an event to
count as ingested. Thumbnails and vector indexing are best-effort: their
failures are logged and recorded on the outcome, never raised.
"""

import sqlite3
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from .config import (
    DUPLICATE_TEXT_POLICY,
    POLL_BATCH_LIMIT,
    POLL_INTERVAL_SEC,
    RETENTION_DAYS,
    VERSION,
)
from .dedup import FrameDeduplicator
from .errors import CaptureSourceError, InvalidEventError, StartupError
from .keyword_store import KeywordStore
from .schema import CaptureEvent, MemoryRecord
from ..util.logging import logger, sanitize_text

STAGE_RECEIVED = "received"
STAGE_DEDUPLICATED = "deduplicated"
STAGE_ASSET_GENERATED = "asset_generated"
STAGE_PERSISTED = "persisted"
STAGE_ENQUEUED = "enqueued"
STAGE_DONE = "done"

# Start one minute back on a fresh run so the first cycle picks up recent captures
INITIAL_LOOKBACK_MS = 60_000
# Capture timestamps further ahead of our clock than this are treated as malformed
MAX_CLOCK_SKEW_MS = 24 * 60 * 60 * 1000
RETENTION_INTERVAL_SEC = 3600
DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class EventOutcome:
    event_id: Optional[str]
    app: str
    status: str  # success | duplicate | skipped | failed
    stage: str
    reason: Optional[str] = None
    thumb_path: Optional[str] = None
    similarity_score: float = 0.0
    vector_pending: bool = False


@dataclass
class CycleSummary:
    source_available: bool = True
    per_app: Dict[str, Dict[str, int]] = field(default_factory=dict)
    outcomes: List[EventOutcome] = field(default_factory=list)
    duration_ms: float = 0.0

    def record(self, outcome: EventOutcome) -> None:
        counts = self.per_app.setdefault(
            outcome.app, {"success": 0, "failed": 0, "skipped": 0, "duplicate": 0}
        )
        counts[outcome.status] += 1
        self.outcomes.append(outcome)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def count(self, status: str) -> int:
        return sum(counts.get(status, 0) for counts in self.per_app.values())


class IngestionOrchestrator:
    """Polls the capture source and runs each event through dedup, thumbnails, storage and indexing."""

    def __init__(self, store: KeywordStore, capture_client=None,
                 deduplicator: FrameDeduplicator = None, thumbnails=None, indexer=None,
                 artifact_retention=None, duplicate_policy: str = DUPLICATE_TEXT_POLICY,
                 poll_interval_sec: float = POLL_INTERVAL_SEC, batch_limit: int = POLL_BATCH_LIMIT,
                 retention_days: int = RETENTION_DAYS):
        if duplicate_policy not in ("index", "drop"):
            raise ValueError(f"Unknown duplicate text policy: {duplicate_policy}")

        self.store = store
        self.capture_client = capture_client
        self.deduplicator = deduplicator if deduplicator is not None else FrameDeduplicator()
        self.thumbnails = thumbnails
        self.indexer = indexer
        self.artifact_retention = artifact_retention
        self.duplicate_policy = duplicate_policy
        self.poll_interval_sec = poll_interval_sec
        self.batch_limit = batch_limit
        self.retention_days = retention_days

        self.cursor_ts: Optional[int] = None
        self._stop_event = threading.Event()
        self._running = False
        self._last_retention = 0.0
        self._started_at = time.time()
        self.totals = {"cycles": 0, "events": 0, "success": 0, "duplicate": 0, "skipped": 0, "failed": 0,
                       "source_errors": 0, "pruned": 0}

    @classmethod
    def from_config(cls) -> "IngestionOrchestrator":
        """Wire every component from screenmem.core.config."""
        from . import config
        from ..capture.client import CaptureSourceClient
        from ..media.retention import ArtifactRetentionPolicy
        from ..media.thumbnails import ThumbnailGenerator
        from ..vector.indexer import VectorIndexer

        indexer = None
        provider = config.get_embedding_provider()
        if provider is not None:
            indexer = VectorIndexer(config.get_vector_store(provider.get_dimension()), provider)

        return cls(
            store=KeywordStore(config.DB_PATH),
            capture_client=CaptureSourceClient(),
            deduplicator=FrameDeduplicator(),
            thumbnails=ThumbnailGenerator(config.THUMBS_DIR),
            indexer=indexer,
            artifact_retention=ArtifactRetentionPolicy(config.ARTIFACT_RETENTION),
        )

    # Lifecycle

    def initialize(self) -> None:
        """Open the store (schema before the loop), start the indexer, run a first retention pass."""
        try:
            self.store.initialize()
        except (sqlite3.Error, OSError) as e:
            raise StartupError(f"Cannot open keyword store at {self.store.db_path}: {e}") from e

        if self.indexer is not None and not self.indexer.is_running():
            self.indexer.start()

        self.apply_retention()
        logger.log_operation("orchestrator.initialize", "ready", {
            "duplicate_policy": self.duplicate_policy,
            "vector_enabled": self.indexer is not None,
            "poll_interval_sec": self.poll_interval_sec,
        })

    def stop(self) -> None:
        """Ask run_forever() to exit once the in-flight cycle completes."""
        self._stop_event.set()

    def shutdown(self, timeout: float = 10.0) -> None:
        self.stop()
        try:
            if self.indexer is not None:
                self.indexer.stop(timeout)
        except Exception as e:
            logger.error(f"Vector indexer stop failed: {e}")
        finally:
            if self.capture_client is not None:
                self.capture_client.close()
            self.store.close()
        logger.log_operation("orchestrator.shutdown", "completed", self.totals)

    # Per-event pipeline

    def process_event(self, event: CaptureEvent) -> EventOutcome:
        """Run one event through the pipeline. Never raises."""
        app = event.app if isinstance(event.app, str) and event.app else "unknown"

        try:
            event.validate(max_ts=int(time.time() * 1000) + MAX_CLOCK_SKEW_MS)
        except InvalidEventError as e:
            logger.log_event_stage(e.event_id or "<unknown>", STAGE_RECEIVED, "skipped",
                                   {"reason": e.reason, "ocr_text": sanitize_text(event.ocr_text)})
            return EventOutcome(event.id if isinstance(event.id, str) else None, app, "skipped",
                                STAGE_RECEIVED, reason="invalid")

        if self.store.exists(event.id):
            logger.debug(f"Event already ingested: {event.id}")
            return EventOutcome(event.id, app, "skipped", STAGE_RECEIVED, reason="already_ingested")

        record = MemoryRecord.from_event(event)

        # Frame dedup needs an artifact path; text-only events are always kept
        kept = True
        if record.media_path:
            decision = self.deduplicator.evaluate(record.id, record.media_path, record.ocr_text, record.ts)
            kept = decision.keep
            record.video_processed = True
            record.video_kept = kept
            record.similarity_score = decision.similarity_score
            if not kept and self.duplicate_policy == "drop":
                logger.log_event_stage(record.id, STAGE_DEDUPLICATED, "skipped", {
                    "reason": "duplicate",
                    "matched": decision.matched_prior_id,
                    "score": round(decision.similarity_score, 3),
                })
                return EventOutcome(record.id, app, "skipped", STAGE_DEDUPLICATED, reason="duplicate",
                                    similarity_score=decision.similarity_score)
        logger.log_event_stage(record.id, STAGE_DEDUPLICATED, "kept" if kept else "duplicate")

        if kept and record.media_path:
            record.thumb_path = self._generate_thumbnail(record)
        logger.log_event_stage(record.id, STAGE_ASSET_GENERATED, "success",
                               {"thumbnail": record.thumb_path is not None})

        if not self.store.put(record):
            logger.log_event_stage(record.id, STAGE_PERSISTED, "failed", {"reason": "store_failed"})
            return EventOutcome(record.id, app, "failed", STAGE_PERSISTED, reason="store_failed",
                                similarity_score=record.similarity_score)
        logger.log_event_stage(record.id, STAGE_PERSISTED)

        if self.artifact_retention is not None:
            self.artifact_retention.apply(record.id, record.media_path, kept)

        status = "success" if kept else "duplicate"
        vector_pending = not self._enqueue_vector(record)
        if vector_pending:
            return EventOutcome(record.id, app, status, STAGE_PERSISTED, reason="vector_pending",
                                thumb_path=record.thumb_path, similarity_score=record.similarity_score,
                                vector_pending=True)

        logger.log_event_stage(record.id, STAGE_DONE)
        return EventOutcome(record.id, app, status, STAGE_DONE, thumb_path=record.thumb_path,
                            similarity_score=record.similarity_score)

    def _generate_thumbnail(self, record: MemoryRecord) -> Optional[str]:
        if self.thumbnails is None:
            return None
        try:
            return self.thumbnails.generate_thumbnail(record.media_path, record.id)
        except Exception as e:
            # Decoder errors (cv2.error and friends) must not cost us the record
            logger.log_media_operation("thumbnail", record.id, {"error": str(e)}, status="failed")
            return None

    def _enqueue_vector(self, record: MemoryRecord) -> bool:
        """True when the record needs no further vector work from this loop."""
        if self.indexer is None or not record.embedding_text():
            return True
        try:
            enqueued = self.indexer.enqueue(record)
        except Exception as e:
            logger.log_vector_operation("enqueue", record.id, {"error": str(e)}, status="failed")
            return False
        if enqueued:
            logger.log_event_stage(record.id, STAGE_ENQUEUED)
        return enqueued

    # Polling

    def run_cycle(self) -> CycleSummary:
        """Poll the capture source once and process what it returns, in arrival order.

        Raises CaptureSourceError when the source cannot be reached.
        """
        start = time.time()
        summary = CycleSummary()

        health = self.capture_client.health_check()
        if not self.capture_client.is_acceptable(health):
            logger.warning(
                f"Capture source not ready (status={health.get('status')}, "
                f"frame_status={health.get('frame_status')}); skipping cycle"
            )
            summary.source_available = False
            return summary

        if self.cursor_ts is None:
            self.cursor_ts = int(time.time() * 1000) - INITIAL_LOOKBACK_MS

        events = self.capture_client.get_recent_events(self.cursor_ts, self.batch_limit)
        for event in events:
            outcome = self.process_event(event)
            summary.record(outcome)
            # Invalid events never move the cursor
            if outcome.reason != "invalid":
                self.cursor_ts = max(self.cursor_ts, int(event.timestamp))

        summary.duration_ms = (time.time() - start) * 1000
        self._accumulate(summary)
        if summary.total:
            logger.log_cycle_summary(summary.total, summary.per_app, summary.duration_ms)
        return summary

    def _accumulate(self, summary: CycleSummary) -> None:
        self.totals["cycles"] += 1
        self.totals["events"] += summary.total
        for status in ("success", "duplicate", "skipped", "failed"):
            self.totals[status] += summary.count(status)

    def run_forever(self) -> None:
        """Fixed-interval poll loop until stop(). Source errors back off and never end the loop."""
        self._running = True
        self._stop_event.clear()
        logger.info(f"Ingestion loop started (every {self.poll_interval_sec}s)")

        try:
            while not self._stop_event.is_set():
                delay = self.poll_interval_sec
                try:
                    self.run_cycle()
                except CaptureSourceError as e:
                    self.totals["source_errors"] += 1
                    logger.warning(f"Capture source error, backing off: {e}")
                    delay = self.poll_interval_sec * 2
                except Exception as e:
                    # Error isolation - one bad cycle must not end ingestion
                    logger.error(f"Ingestion cycle failed: {e}")
                    delay = self.poll_interval_sec * 2

                if time.time() - self._last_retention >= RETENTION_INTERVAL_SEC:
                    try:
                        self.apply_retention()
                    except Exception as e:
                        logger.error(f"Retention pass failed: {e}")

                self._stop_event.wait(delay)
        finally:
            self._running = False
            logger.info("Ingestion loop stopped")

    # Retention

    def apply_retention(self, now_ms: Optional[int] = None) -> int:
        """Delete records older than retention_days together with their vectors and thumbnails."""
        self._last_retention = time.time()
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        cutoff = now_ms - self.retention_days * DAY_MS

        try:
            deleted = self.store.prune_before(cutoff)
        except sqlite3.Error as e:
            logger.log_store_operation("prune", details={"cutoff_ts": cutoff, "error": str(e)}, status="failed")
            return 0

        if deleted:
            if self.indexer is not None:
                # Records are already gone; a stale vector resolves to no record at search time
                try:
                    self.indexer.remove(deleted)
                except Exception as e:
                    logger.log_vector_operation("delete", details={"records": len(deleted), "error": str(e)},
                                                status="failed")
            if self.thumbnails is not None:
                for record_id in deleted:
                    self.thumbnails.remove_thumbnail(record_id)
            self.totals["pruned"] += len(deleted)
            logger.info(f"Retention removed {len(deleted)} records older than {self.retention_days} days")
        return len(deleted)

    # Telemetry

    def get_stats(self) -> Dict[str, object]:
        store_stats = self.store.stats() if self.store.is_ready() else None
        return {
            "is_running": self._running,
            "uptime_sec": round(time.time() - self._started_at, 1),
            "cursor_ts": self.cursor_ts,
            "totals": dict(self.totals),
            "store": asdict(store_stats) if store_stats else None,
            "dedup": self.deduplicator.get_stats(),
            "thumbnails": self.thumbnails.get_stats() if self.thumbnails is not None else None,
            "vector": self.indexer.get_stats() if self.indexer is not None else None,
            "artifact_retention": self.artifact_retention.get_stats() if self.artifact_retention is not None else None,
        }

    def health_check(self) -> Dict[str, object]:
        """Per-component up/down plus record totals."""
        errors: List[str] = []
        components: Dict[str, bool] = {}

        components["keyword_store"] = self.store.health_check()
        if not components["keyword_store"]:
            errors.append("Keyword store not ready")

        if self.indexer is not None:
            components["vector_index"] = self.indexer.is_ready()
            if not components["vector_index"]:
                errors.append("Vector index not ready")

        if self.capture_client is not None:
            try:
                components["capture_source"] = self.capture_client.is_acceptable(self.capture_client.health_check())
                if not components["capture_source"]:
                    errors.append("Capture source unhealthy")
            except CaptureSourceError as e:
                components["capture_source"] = False
                errors.append(f"Capture source error: {e}")

        total = 0
        app_count = 0
        if components["keyword_store"]:
            stats = self.store.stats()
            total = stats.total
            app_count = len(stats.app_counts)

        return {
            "healthy": all(components.values()),
            "version": VERSION,
            "components": components,
            "total_records": total,
            "app_count": app_count,
            "errors": errors,
        }
