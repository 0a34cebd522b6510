"""
FAISS-backed vector collection keyed by memory record id.
"""

import hashlib
import json
import os
import threading
from typing import Dict, List, Optional

import faiss
import numpy as np

from .index import IVectorStore, matches_filters
from .types import VectorRecord, QueryResult
from ..util.logging import logger

INDEX_FILENAME = "mem_text.faiss"
META_FILENAME = "mem_text.meta.json"


def to_faiss_id(record_id: str) -> int:
    """Stable positive int64 for a string record id."""
    digest = hashlib.blake2b(record_id.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


class FaissVectorStore(IVectorStore):
    """FAISS implementation of IVectorStore with upsert and delete support.

    Uses IndexIDMap2 over a flat inner-product index; vectors are L2-normalized
    so inner product equals cosine similarity.
    """

    def __init__(self, dimension: int = 384, persist_dir: Optional[str] = None):
        """
        Initialize FAISS vector store.

        Args:
            dimension: Dimension of the vectors (default: 384 for hash embeddings)
            persist_dir: Directory for save()/load(); None keeps the index in memory only
        """
        self.dimension = dimension
        self.persist_dir = persist_dir
        self._lock = threading.RLock()
        self.index = self._new_index()
        self.id_map: Dict[int, str] = {}  # faiss id -> record id
        self.metadata: Dict[str, Dict[str, object]] = {}

        if persist_dir:
            self.load()

    def _new_index(self):
        return faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimension))

    def _prepare(self, vector) -> Optional[np.ndarray]:
        if vector is None:
            return None
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.dimension:
            raise ValueError(f"Vector dimension {array.shape[0]} does not match expected dimension {self.dimension}")
        norm = np.linalg.norm(array)
        if norm == 0:  # Zero vectors carry no direction
            return None
        return array / norm

    def add(self, record: VectorRecord) -> None:
        """Upsert a single vector record."""
        self.batch_add([record])

    def batch_add(self, records: List[VectorRecord]) -> None:
        """Upsert multiple vector records in one FAISS call."""
        vectors = []
        ids = []
        prepared: Dict[int, VectorRecord] = {}

        for record in records:
            vector = self._prepare(record.vector)
            if vector is None:
                continue
            faiss_id = to_faiss_id(record.id)
            if faiss_id in prepared:
                # Later duplicate in the same batch wins
                idx = ids.index(faiss_id)
                vectors[idx] = vector
            else:
                vectors.append(vector)
                ids.append(faiss_id)
            prepared[faiss_id] = record

        if not vectors:
            return

        id_array = np.asarray(ids, dtype=np.int64)
        with self._lock:
            existing = [fid for fid in ids if fid in self.id_map]
            if existing:
                self.index.remove_ids(np.asarray(existing, dtype=np.int64))
            self.index.add_with_ids(np.vstack(vectors).astype(np.float32), id_array)
            for faiss_id, record in prepared.items():
                self.id_map[faiss_id] = record.id
                self.metadata[record.id] = dict(record.metadata or {})

    def search(self, query_vector: np.ndarray, top_k: int = 5,
               filters: Optional[Dict[str, object]] = None) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        query = self._prepare(query_vector)
        if query is None:
            return []

        with self._lock:
            total = self.index.ntotal
            if not total:
                return []
            # Over-fetch when filtering so post-filtering can still fill top_k
            k = total if filters else min(top_k, total)
            scores, indices = self.index.search(query.reshape(1, -1), k)

            results = []
            for score, faiss_id in zip(scores[0], indices[0]):
                faiss_id = int(faiss_id)
                if faiss_id == -1 or faiss_id not in self.id_map:
                    continue
                record_id = self.id_map[faiss_id]
                metadata = self.metadata.get(record_id, {})
                if not matches_filters(metadata, filters):
                    continue
                results.append(QueryResult(id=record_id, score=float(score), metadata=metadata))
                if len(results) >= top_k:
                    break
            return results

    def delete(self, record_id: str) -> None:
        faiss_id = to_faiss_id(record_id)
        with self._lock:
            if faiss_id not in self.id_map:
                return
            self.index.remove_ids(np.asarray([faiss_id], dtype=np.int64))
            del self.id_map[faiss_id]
            self.metadata.pop(record_id, None)

    def clear(self) -> None:
        """Clear all records from the FAISS store."""
        with self._lock:
            self.index = self._new_index()
            self.id_map.clear()
            self.metadata.clear()

    def count(self) -> int:
        return int(self.index.ntotal)

    def contains(self, record_id: str) -> bool:
        return to_faiss_id(record_id) in self.id_map

    def _paths(self):
        return (os.path.join(self.persist_dir, INDEX_FILENAME),
                os.path.join(self.persist_dir, META_FILENAME))

    def save(self) -> None:
        """Write the index and its id/metadata sidecar to persist_dir."""
        if not self.persist_dir:
            return
        os.makedirs(self.persist_dir, exist_ok=True)
        index_path, meta_path = self._paths()

        with self._lock:
            faiss.write_index(self.index, index_path)
            sidecar = {
                "dimension": self.dimension,
                "ids": {str(fid): rid for fid, rid in self.id_map.items()},
                "metadata": self.metadata,
            }
        tmp_path = meta_path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(sidecar, f)
        os.replace(tmp_path, meta_path)
        logger.log_vector_operation("save", details={"vectors": self.count(), "path": index_path})

    def load(self) -> None:
        """Load a previously saved index; a missing or mismatched index starts empty."""
        index_path, meta_path = self._paths()
        if not (os.path.exists(index_path) and os.path.exists(meta_path)):
            return

        with open(meta_path, "r", encoding="utf-8") as f:
            sidecar = json.load(f)
        if sidecar.get("dimension") != self.dimension:
            logger.warning(
                f"Ignoring saved vector index with dimension {sidecar.get('dimension')} "
                f"(expected {self.dimension})"
            )
            return

        with self._lock:
            self.index = faiss.read_index(index_path)
            self.id_map = {int(fid): rid for fid, rid in sidecar.get("ids", {}).items()}
            self.metadata = sidecar.get("metadata", {})
        logger.log_vector_operation("load", details={"vectors": self.count(), "path": index_path})
