"""
Vector indexer - asynchronous consumer that embeds persisted records and
upserts them into the vector collection.

Records are keyword-searchable as soon as the keyword store write commits;
they become semantically searchable once this worker catches up. The queue is
bounded: when the provider is persistently slow, new items are counted as
dead-letter instead of growing memory without limit.
"""

import collections
import queue
import threading
import time
from typing import Callable, Deque, Dict, List, Optional

import numpy as np

from .embeddings import IEmbeddingProvider, truncate_text
from .index import IVectorStore
from .types import IndexItem, QueryResult, VectorRecord
from ..core.config import (
    EMBED_BACKOFF_BASE_SEC,
    EMBED_BATCH_SIZE,
    EMBED_MAX_ATTEMPTS,
    EMBED_MAX_QUEUE,
    EMBED_RATE_LIMIT_PER_SEC,
)
from ..core.errors import EmbeddingProviderError
from ..core.schema import MemoryRecord
from ..util.logging import logger


class RateLimiter:
    """Sliding-window limiter: at most max_calls acquisitions per period seconds."""

    def __init__(self, max_calls: int, period: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if max_calls < 1:
            raise ValueError(f"max_calls must be >= 1: {max_calls}")
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = collections.deque()
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Block until a call is allowed. Returns the seconds spent waiting."""
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return waited
                delay = self.period - (now - self._calls[0])
            self._sleep(delay)
            waited += delay


def is_transient(error: Exception) -> bool:
    if isinstance(error, EmbeddingProviderError):
        return error.transient
    return isinstance(error, (ConnectionError, TimeoutError))


class VectorIndexer:
    """Batches (id, text) items, embeds them under a rate limit with retries, and upserts vectors."""

    def __init__(self, vector_store: IVectorStore, embedding_provider: IEmbeddingProvider,
                 batch_size: int = EMBED_BATCH_SIZE, max_queue: int = EMBED_MAX_QUEUE,
                 rate_limit_per_sec: int = EMBED_RATE_LIMIT_PER_SEC,
                 max_attempts: int = EMBED_MAX_ATTEMPTS,
                 backoff_base_sec: float = EMBED_BACKOFF_BASE_SEC,
                 flush_interval_sec: float = 1.0, save_every: int = 100,
                 rate_limiter: Optional[RateLimiter] = None):
        self.vector_store = vector_store
        self.embedding_provider = embedding_provider
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_base_sec = backoff_base_sec
        self.flush_interval_sec = flush_interval_sec
        self.save_every = save_every
        self.rate_limiter = rate_limiter or RateLimiter(rate_limit_per_sec)

        self._queue: "queue.Queue[IndexItem]" = queue.Queue(maxsize=max_queue)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stats_lock = threading.Lock()
        self._unsaved = 0
        self._drain_on_stop = True
        self.stats = {
            "enqueued": 0,
            "indexed": 0,
            "dead_letter": 0,
            "failed_attempts": 0,
            "skipped": 0,
            "batches": 0,
        }

    # Lifecycle

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Vector indexer already running")
        self._stop_event.clear()
        self._drain_on_stop = True
        self._thread = threading.Thread(target=self._run, name="vector-indexer", daemon=True)
        self._thread.start()
        logger.log_vector_operation("indexer", details={"batch_size": self.batch_size}, status="started")

    def stop(self, timeout: float = 10.0, drain: bool = True) -> None:
        """Stop the worker. With drain=True, items already queued are processed first."""
        if self._thread is None:
            return
        self._drain_on_stop = drain
        self._stop_event.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"Vector indexer did not stop within {timeout}s; {self._queue.qsize()} items pending")
        self._thread = None
        self._save()
        logger.log_vector_operation("indexer", details=self.get_stats(), status="stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def is_ready(self) -> bool:
        return self.vector_store is not None and self.embedding_provider is not None

    # Producer side

    def enqueue(self, record: MemoryRecord) -> bool:
        """Queue a persisted record for embedding. Never blocks; a full queue dead-letters the item."""
        return self.enqueue_item(IndexItem(id=record.id, text=record.embedding_text(),
                                           metadata=record.vector_metadata()))

    def enqueue_item(self, item: IndexItem) -> bool:
        if not item.text or not item.text.strip():
            self._count("skipped")
            logger.log_vector_operation("enqueue", item.id, {"reason": "empty_text"}, status="skipped")
            return False
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            self._count("dead_letter")
            logger.log_vector_operation("enqueue", item.id, {"reason": "queue_full"}, status="dead_letter")
            return False
        self._count("enqueued")
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    # Consumer side

    def _run(self) -> None:
        while True:
            if self._stop_event.is_set() and (not self._drain_on_stop or self._queue.empty()):
                break
            batch = self._next_batch()
            if not batch:
                continue
            try:
                self._process_and_ack(batch)
            except Exception as e:
                # The worker outlives any single batch
                logger.log_vector_operation("batch", details={"items": len(batch), "error": str(e)}, status="failed")

    def _next_batch(self) -> List[IndexItem]:
        batch: List[IndexItem] = []
        try:
            batch.append(self._queue.get(timeout=self.flush_interval_sec))
        except queue.Empty:
            return batch
        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return batch

    def _process_and_ack(self, batch: List[IndexItem]) -> None:
        try:
            self._process_batch(batch)
        finally:
            for _ in batch:
                self._queue.task_done()

    def flush(self, timeout: float = 30.0) -> bool:
        """Wait until every queued item has been indexed or dead-lettered.

        Without a running worker the queue is drained in the calling thread.
        Returns False when items are still pending after timeout.
        """
        if not self.is_running():
            self.process_pending()
            return True

        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        self._save()
        return True

    def process_pending(self) -> int:
        """Synchronously drain the queue in the calling thread. Returns the number of items indexed."""
        before = self.stats["indexed"]
        while True:
            batch = []
            while len(batch) < self.batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except queue.Empty:
                    break
            if not batch:
                break
            self._process_and_ack(batch)
        self._save()
        return self.stats["indexed"] - before

    def _process_batch(self, items: List[IndexItem]) -> None:
        self._count("batches")
        texts = [truncate_text(item.text) for item in items]
        vectors = self._embed_with_retry(items, texts)
        if vectors is None:
            return

        records = []
        for item, vector in zip(items, vectors):
            if vector is None or not np.any(np.asarray(vector, dtype=np.float32)):
                # A zero vector has no direction and cannot be stored
                self._count("skipped")
                logger.log_vector_operation("upsert", item.id, {"reason": "zero_vector"}, status="skipped")
                continue
            records.append(VectorRecord(id=item.id, vector=vector, metadata=item.metadata))
        if not records:
            return

        try:
            self.vector_store.batch_add(records)
        except (ValueError, RuntimeError) as e:
            self._count("dead_letter", len(records))
            logger.log_vector_operation("upsert", details={"items": len(records), "error": str(e)}, status="failed")
            return

        self._count("indexed", len(records))
        with self._stats_lock:
            self._unsaved += len(records)
            should_save = self._unsaved >= self.save_every
        if should_save:
            self._save()
        logger.log_vector_operation("upsert", details={"items": len(records)})

    def _embed_with_retry(self, items: List[IndexItem], texts: List[str]) -> Optional[List[List[float]]]:
        """Embed a batch with exponential backoff. Returns None after dead-lettering the batch."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            self.rate_limiter.acquire()
            try:
                return self.embedding_provider.embed_batch(texts)
            except Exception as e:
                last_error = e
                self._count("failed_attempts")
                if not is_transient(e):
                    break
                if attempt < self.max_attempts:
                    delay = self.backoff_base_sec * (2 ** (attempt - 1))
                    logger.log_vector_operation(
                        "embed", details={"attempt": attempt, "delay_sec": delay, "error": str(e)}, status="retry"
                    )
                    self._backoff(delay)

        self._count("dead_letter", len(items))
        logger.log_vector_operation(
            "embed",
            details={"items": [item.id for item in items], "error": str(last_error)},
            status="dead_letter",
        )
        return None

    def _backoff(self, delay: float) -> None:
        # Interruptible so shutdown is not held hostage by a long backoff
        self._stop_event.wait(delay)

    def _save(self) -> None:
        with self._stats_lock:
            if not self._unsaved:
                return
            pending, self._unsaved = self._unsaved, 0
        try:
            self.vector_store.save()
        except Exception as e:
            # Vectors stay in memory; the next save retries them
            with self._stats_lock:
                self._unsaved += pending
            logger.log_vector_operation("save", details={"error": str(e)}, status="failed")

    def _count(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[key] += amount

    # Queries

    def semantic_search(self, text: str, top_k: int = 10,
                        filters: Optional[Dict[str, object]] = None) -> List[QueryResult]:
        """Nearest records by embedding. Provider failures yield no results rather than an error."""
        if not self.is_ready() or not text or not text.strip():
            return []
        try:
            query_vector = self.embedding_provider.embed_text(truncate_text(text))
        except Exception as e:
            logger.log_vector_operation("search", details={"error": str(e)}, status="degraded")
            return []
        return self.vector_store.search(query_vector, top_k, filters)

    def remove(self, record_ids: List[str]) -> None:
        for record_id in record_ids:
            self.vector_store.delete(record_id)
        if record_ids:
            with self._stats_lock:
                self._unsaved += len(record_ids)
            self._save()

    def get_stats(self) -> Dict[str, object]:
        with self._stats_lock:
            stats = dict(self.stats)
        stats["queued"] = self._queue.qsize()
        stats["is_running"] = self.is_running()
        stats["vector_count"] = self.vector_store.count() if self.vector_store is not None else 0
        return stats
