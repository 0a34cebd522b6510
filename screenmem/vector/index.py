"""
Vector store interface and the in-memory implementation.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import threading
import numpy as np

from .types import VectorRecord, QueryResult


def matches_filters(metadata: Dict[str, object], filters: Optional[Dict[str, object]]) -> bool:
    """Equality match of every filter key against the record metadata."""
    if not filters:
        return True
    return all(metadata.get(key) == value for key, value in filters.items())


class IVectorStore(ABC):
    """Abstract interface for vector storage operations. Adding an existing id replaces it."""

    @abstractmethod
    def add(self, record: VectorRecord) -> None:
        """Upsert a single vector record."""
        pass

    @abstractmethod
    def batch_add(self, records: List[VectorRecord]) -> None:
        """Upsert multiple vector records."""
        pass

    @abstractmethod
    def search(self, query_vector: np.ndarray, top_k: int = 5,
               filters: Optional[Dict[str, object]] = None) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        pass

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Delete a vector record by ID. Unknown ids are ignored."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Clear all records from the store."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def contains(self, record_id: str) -> bool:
        pass

    def save(self) -> None:
        """Persist the store. In-memory stores have nothing to do."""
        pass


class SimpleInMemoryVectorStore(IVectorStore):
    """Simple in-memory implementation of IVectorStore using cosine similarity."""

    def __init__(self):
        self._vectors = {}  # record_id -> VectorRecord
        self._index = {}    # record_id -> normalized_vector (for fast lookup)
        self._lock = threading.Lock()

    def add(self, record: VectorRecord) -> None:
        """Upsert a single vector record."""
        if record.vector is None:
            return

        vector = np.asarray(record.vector, dtype=np.float32)
        norm = np.linalg.norm(vector)
        with self._lock:
            self._vectors[record.id] = record
            # Store normalized vector for similarity calculations
            self._index[record.id] = vector / norm if norm > 0 else vector

    def batch_add(self, records: List[VectorRecord]) -> None:
        """Upsert multiple vector records."""
        for record in records:
            self.add(record)

    def search(self, query_vector: np.ndarray, top_k: int = 5,
               filters: Optional[Dict[str, object]] = None) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        query_vector = np.asarray(query_vector, dtype=np.float32)
        norm = np.linalg.norm(query_vector)
        if norm == 0:
            return []
        normalized_query = query_vector / norm

        with self._lock:
            similarities = {
                record_id: float(np.dot(normalized_query, stored_vector))
                for record_id, stored_vector in self._index.items()
                if matches_filters(self._vectors[record_id].metadata, filters)
            }
            ranked = sorted(similarities.items(), key=lambda x: x[1], reverse=True)[:top_k]
            return [
                QueryResult(id=record_id, score=score, metadata=self._vectors[record_id].metadata)
                for record_id, score in ranked
            ]

    def delete(self, record_id: str) -> None:
        """Delete a vector record by ID."""
        with self._lock:
            self._vectors.pop(record_id, None)
            self._index.pop(record_id, None)

    def clear(self) -> None:
        """Clear all records from the store."""
        with self._lock:
            self._vectors.clear()
            self._index.clear()

    def count(self) -> int:
        return len(self._vectors)

    def contains(self, record_id: str) -> bool:
        return record_id in self._vectors
