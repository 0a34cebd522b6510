"""
Vector indexer: batching, rate limiting, retry/backoff, dead-letter accounting and
semantic search degradation.
"""

from unittest.mock import MagicMock

import pytest

from screenmem.core.errors import EmbeddingProviderError
from screenmem.vector import DeterministicHashEmbedding, SimpleInMemoryVectorStore
from screenmem.vector.indexer import RateLimiter, VectorIndexer, is_transient
from screenmem.vector.types import IndexItem


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_indexer(provider=None, **kwargs):
    kwargs.setdefault("batch_size", 4)
    kwargs.setdefault("max_queue", 100)
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("backoff_base_sec", 0.5)
    kwargs.setdefault("rate_limit_per_sec", 1000)
    indexer = VectorIndexer(SimpleInMemoryVectorStore(), provider or DeterministicHashEmbedding(dimension=32),
                            **kwargs)
    indexer._backoff = MagicMock()
    return indexer


def flaky_provider(failures, error=None):
    """Provider that raises `failures` times before delegating to the hash embedding."""
    inner = DeterministicHashEmbedding(dimension=32)
    provider = MagicMock()
    error = error or EmbeddingProviderError("upstream 503", transient=True, status_code=503)
    calls = {"n": 0}

    def embed_batch(texts):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error
        return inner.embed_batch(texts)

    provider.embed_batch.side_effect = embed_batch
    provider.embed_text.side_effect = inner.embed_text
    provider.get_dimension.return_value = 32
    return provider


class TestRateLimiter:
    def test_allows_burst_then_waits(self):
        clock = FakeClock()
        limiter = RateLimiter(2, period=1.0, clock=clock, sleep=clock.sleep)

        assert limiter.acquire() == 0.0
        assert limiter.acquire() == 0.0
        assert limiter.acquire() == pytest.approx(1.0)
        assert clock.sleeps == [pytest.approx(1.0)]

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(1, period=1.0, clock=clock, sleep=clock.sleep)

        limiter.acquire()
        clock.now = 1.5
        assert limiter.acquire() == 0.0

    def test_rejects_zero_rate(self):
        with pytest.raises(ValueError):
            RateLimiter(0)


class TestTransientClassification:
    def test_classification(self):
        assert is_transient(EmbeddingProviderError("x", transient=True))
        assert not is_transient(EmbeddingProviderError("x", transient=False))
        assert is_transient(ConnectionError("reset"))
        assert is_transient(TimeoutError())
        assert not is_transient(ValueError("bad"))


class TestEnqueue:
    def test_empty_text_is_skipped(self):
        indexer = make_indexer()
        assert indexer.enqueue_item(IndexItem(id="a", text="   ")) is False
        assert indexer.stats["skipped"] == 1
        assert indexer.pending() == 0

    def test_enqueue_record_uses_window_title_when_no_ocr(self, make_record):
        indexer = make_indexer()
        assert indexer.enqueue(make_record(ocr_text="", window_title="Quarterly planning")) is True
        assert indexer.pending() == 1

    def test_full_queue_dead_letters_without_blocking(self):
        indexer = make_indexer(max_queue=2)
        results = [indexer.enqueue_item(IndexItem(id=str(i), text="hello")) for i in range(3)]

        assert results == [True, True, False]
        assert indexer.stats["dead_letter"] == 1
        assert indexer.stats["enqueued"] == 2


class TestProcessing:
    def test_batches_are_indexed(self):
        indexer = make_indexer(batch_size=4)
        for i in range(10):
            indexer.enqueue_item(IndexItem(id=f"r{i}", text=f"memory number {i}", metadata={"app": "Chrome"}))

        assert indexer.process_pending() == 10
        assert indexer.stats["batches"] == 3
        assert indexer.vector_store.count() == 10

    def test_transient_failures_retry_with_exponential_backoff(self):
        provider = flaky_provider(failures=2)
        indexer = make_indexer(provider, max_attempts=3, backoff_base_sec=0.5)
        indexer.enqueue_item(IndexItem(id="a", text="retry me"))

        assert indexer.process_pending() == 1
        assert [c.args[0] for c in indexer._backoff.call_args_list] == [0.5, 1.0]
        assert indexer.stats["failed_attempts"] == 2
        assert indexer.stats["dead_letter"] == 0

    def test_exhausted_attempts_dead_letter_the_batch(self):
        provider = flaky_provider(failures=10)
        indexer = make_indexer(provider, max_attempts=3)
        indexer.enqueue_item(IndexItem(id="a", text="one"))
        indexer.enqueue_item(IndexItem(id="b", text="two"))

        assert indexer.process_pending() == 0
        assert provider.embed_batch.call_count == 3
        assert indexer.stats["dead_letter"] == 2
        assert indexer.vector_store.count() == 0

    def test_permanent_failure_is_not_retried(self):
        provider = flaky_provider(failures=10, error=EmbeddingProviderError("bad key", transient=False,
                                                                            status_code=401))
        indexer = make_indexer(provider)
        indexer.enqueue_item(IndexItem(id="a", text="one"))

        indexer.process_pending()
        assert provider.embed_batch.call_count == 1
        indexer._backoff.assert_not_called()
        assert indexer.stats["dead_letter"] == 1

    def test_store_rejection_dead_letters(self):
        indexer = make_indexer()
        indexer.vector_store = MagicMock()
        indexer.vector_store.batch_add.side_effect = ValueError("dimension mismatch")
        indexer.enqueue_item(IndexItem(id="a", text="one"))

        assert indexer.process_pending() == 0
        assert indexer.stats["dead_letter"] == 1

    def test_periodic_save(self):
        indexer = make_indexer(batch_size=1, save_every=2)
        indexer.vector_store = MagicMock(wraps=SimpleInMemoryVectorStore())
        for i in range(3):
            indexer.enqueue_item(IndexItem(id=str(i), text="text"))

        indexer.process_pending()
        # once after the second item, once for the remainder at the end of the drain
        assert indexer.vector_store.save.call_count == 2

    def test_zero_vector_counts_as_skipped(self):
        """Punctuation-only text hashes to no buckets; it is skipped, not reported as indexed."""
        indexer = make_indexer()
        indexer.enqueue_item(IndexItem(id="blank", text="!!! ---"))
        indexer.enqueue_item(IndexItem(id="real", text="meeting notes"))

        assert indexer.process_pending() == 1
        assert indexer.stats["indexed"] == 1
        assert indexer.stats["skipped"] == 1
        assert indexer.vector_store.contains("real")
        assert not indexer.vector_store.contains("blank")

    def test_save_failure_is_retried_on_next_save(self):
        indexer = make_indexer(batch_size=1, save_every=1)
        indexer.vector_store = MagicMock(wraps=SimpleInMemoryVectorStore())
        indexer.vector_store.save.side_effect = RuntimeError("could not open index for writing")
        indexer.enqueue_item(IndexItem(id="a", text="first"))

        assert indexer.process_pending() == 1
        assert indexer._unsaved == 1

        indexer.vector_store.save.side_effect = None
        indexer.enqueue_item(IndexItem(id="b", text="second"))
        indexer.process_pending()
        assert indexer._unsaved == 0
        assert indexer.vector_store.count() == 2


class TestSemanticSearch:
    def test_finds_indexed_record(self):
        indexer = make_indexer()
        indexer.enqueue_item(IndexItem(id="watch", text="Omega Seamaster 300M", metadata={"app": "Chrome"}))
        indexer.enqueue_item(IndexItem(id="food", text="grocery list milk eggs", metadata={"app": "Notes"}))
        indexer.process_pending()

        hits = indexer.semantic_search("seamaster omega", top_k=1)
        assert hits[0].id == "watch"
        assert indexer.semantic_search("grocery", filters={"app": "Chrome"})[0].id == "watch"

    def test_provider_outage_degrades_to_empty(self, store, make_record):
        """Keyword search keeps working while the embedding provider is down."""
        provider = MagicMock()
        provider.embed_text.side_effect = EmbeddingProviderError("unreachable", transient=True)
        indexer = make_indexer(provider)

        store.put(make_record())
        assert indexer.semantic_search("Seamaster") == []
        assert [r.id for r in store.query("Seamaster")] == ["e1"]

    def test_blank_query(self):
        assert make_indexer().semantic_search("  ") == []

    def test_remove(self):
        indexer = make_indexer()
        indexer.enqueue_item(IndexItem(id="a", text="hello"))
        indexer.process_pending()
        indexer.remove(["a"])
        assert indexer.vector_store.count() == 0


class TestWorkerThread:
    def test_start_flush_stop(self):
        indexer = make_indexer(flush_interval_sec=0.05)
        indexer.start()
        try:
            with pytest.raises(RuntimeError):
                indexer.start()
            for i in range(5):
                indexer.enqueue_item(IndexItem(id=str(i), text=f"item {i}"))
            assert indexer.flush(timeout=5.0) is True
            assert indexer.vector_store.count() == 5
        finally:
            indexer.stop(timeout=5.0)

        assert indexer.is_running() is False
        stats = indexer.get_stats()
        assert stats["indexed"] == 5
        assert stats["queued"] == 0

    def test_stop_drains_queue(self):
        indexer = make_indexer(flush_interval_sec=0.05)
        for i in range(3):
            indexer.enqueue_item(IndexItem(id=str(i), text="queued before start"))
        indexer.start()
        indexer.stop(timeout=5.0, drain=True)

        assert indexer.vector_store.count() == 3

    def test_flush_without_worker_drains_inline(self):
        indexer = make_indexer()
        indexer.enqueue_item(IndexItem(id="a", text="inline"))
        assert indexer.flush() is True
        assert indexer.vector_store.count() == 1

    def test_worker_survives_save_failure(self):
        indexer = make_indexer(flush_interval_sec=0.05, batch_size=1, save_every=1)
        indexer.vector_store = MagicMock(wraps=SimpleInMemoryVectorStore())
        indexer.vector_store.save.side_effect = RuntimeError("could not open index for writing")
        indexer.start()
        try:
            indexer.enqueue_item(IndexItem(id="a", text="before the failure"))
            assert indexer.flush(timeout=5.0) is True
            indexer.enqueue_item(IndexItem(id="b", text="after the failure"))
            assert indexer.flush(timeout=5.0) is True

            assert indexer.is_running() is True
            assert indexer.vector_store.count() == 2
        finally:
            indexer.stop(timeout=5.0)

    def test_worker_survives_unexpected_batch_error(self):
        indexer = make_indexer(flush_interval_sec=0.05, batch_size=1)
        real_store = SimpleInMemoryVectorStore()
        indexer.vector_store = MagicMock(wraps=real_store)
        calls = {"n": 0}

        def batch_add(records):
            calls["n"] += 1
            if calls["n"] == 1:
                raise KeyError("corrupt id map")
            real_store.batch_add(records)

        indexer.vector_store.batch_add.side_effect = batch_add
        indexer.start()
        try:
            indexer.enqueue_item(IndexItem(id="a", text="lost"))
            assert indexer.flush(timeout=5.0) is True
            indexer.enqueue_item(IndexItem(id="b", text="kept"))
            assert indexer.flush(timeout=5.0) is True

            assert indexer.is_running() is True
            assert real_store.contains("b")
        finally:
            indexer.stop(timeout=5.0)
