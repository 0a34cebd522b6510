#!/usr/bin/env python3
"""
Index Rebuild Utility
Rebuilds the vector collection from the keyword store after lost or corrupted vectors,
or after switching embedding provider.
"""

import sys

from screenmem.core.config import (
    DB_PATH,
    are_vector_features_enabled,
    get_embedding_provider,
    get_vector_store,
)
from screenmem.core.keyword_store import KeywordStore
from screenmem.vector.indexer import VectorIndexer
from screenmem.vector.types import IndexItem


def rebuild(store: KeywordStore, indexer: VectorIndexer) -> int:
    """Clear the vector collection and re-embed every stored record. Returns the number indexed."""
    indexer.vector_store.clear()
    print("✓ Cleared existing vector index")

    queued = 0
    indexed = 0
    for record in store.iter_records():
        item = IndexItem(id=record.id, text=record.embedding_text(), metadata=record.vector_metadata())
        if indexer.enqueue_item(item):
            queued += 1
        if indexer.pending() >= indexer.batch_size:
            indexed += indexer.process_pending()
            print(f"  ... embedded {indexed}/{queued} records")

    indexed += indexer.process_pending()
    indexer.vector_store.save()
    return indexed


def main() -> int:
    """Rebuild the vector index from the keyword store."""
    if not are_vector_features_enabled():
        print("ERROR: Vector features disabled. Set VECTOR_ENABLED=true")
        return 1

    store = KeywordStore(DB_PATH)
    store.initialize()

    provider = get_embedding_provider()
    vector_store = get_vector_store(provider.get_dimension())
    indexer = VectorIndexer(vector_store, provider)

    print(f"Starting vector index rebuild from {DB_PATH} ({store.count()} records)...")
    try:
        indexed = rebuild(store, indexer)
    finally:
        store.close()

    stats = indexer.get_stats()
    print(f"✓ Rebuilt index with {indexed} vectors "
          f"(skipped {stats['skipped']}, dead-letter {stats['dead_letter']})")
    return 0 if stats["dead_letter"] == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
