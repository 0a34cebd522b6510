"""
Frame deduplication - cheap near-duplicate detection for captured frames.

The fingerprint is a SHA-256 over the artifact byte size, the first 500
characters of OCR text and the artifact filename with its embedded capture
timestamp normalized away. It is a heuristic stand-in for visual similarity,
not a perceptual or pixel hash: it costs one stat() and one hash per frame and
needs no image decoding, at the price of missing duplicates whose size or text
drifted. A perceptual hash can replace compute_fingerprint() without changing
the FrameDeduplicator.evaluate() contract.
"""

import hashlib
import os
import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from .config import DEDUP_CACHE_SIZE, DEDUP_THRESHOLD, DEDUP_WINDOW_SEC
from ..util.logging import logger

TEXT_PREFIX_CHARS = 500
COMPARE_LIMIT = 10
TIME_BONUS_WINDOW_MS = 10_000
TIME_BONUS = 0.2
HASH_PREFIX_CHARS = 8
HASH_PREFIX_BONUS = 0.3

_FILENAME_TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}[_T ]\d{2}[-:]\d{2}[-:]\d{2}")
_TEXT_TIMESTAMP_RE = re.compile(
    r"\d{4}-\d{2}-\d{2}[T ]\d{1,2}:\d{2}(:\d{2})?"
    r"|\b\d{1,2}:\d{2}(:\d{2})?\s*([AaPp][Mm])?\b"
)


@dataclass
class FrameFingerprint:
    record_id: str
    artifact_path: str
    timestamp: int  # epoch ms
    size: int
    hash: str


@dataclass
class DedupDecision:
    keep: bool
    similarity_score: float
    matched_prior_id: Optional[str]
    fingerprint: FrameFingerprint


def normalize_text(ocr_text: str) -> str:
    """Strip clock readings and dates so an on-screen clock does not defeat dedup."""
    text = _TEXT_TIMESTAMP_RE.sub("TIMESTAMP", ocr_text or "")
    return text[:TEXT_PREFIX_CHARS].strip()


def normalize_filename(artifact_path: str) -> str:
    return _FILENAME_TIMESTAMP_RE.sub("TIMESTAMP", os.path.basename(artifact_path or ""))


def artifact_size(artifact_path: str) -> int:
    """Byte size of the artifact, or 0 when it cannot be read (text-only fingerprint)."""
    try:
        return os.stat(artifact_path).st_size
    except (OSError, TypeError, ValueError):
        return 0


def compute_fingerprint(record_id: str, artifact_path: str, ocr_text: str, timestamp: int) -> FrameFingerprint:
    size = artifact_size(artifact_path)
    content = "|".join([
        str(size),
        normalize_text(ocr_text),
        normalize_filename(artifact_path),
    ])
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return FrameFingerprint(
        record_id=record_id,
        artifact_path=artifact_path,
        timestamp=int(timestamp),
        size=size,
        hash=digest,
    )


def calculate_similarity(frame: FrameFingerprint, previous: FrameFingerprint) -> float:
    """Similarity in [0, 1]: 1.0 on identical hashes, else size closeness plus time and hash-prefix bonuses."""
    if frame.hash == previous.hash:
        return 1.0

    largest = max(frame.size, previous.size)
    if largest:
        size_diff = abs(frame.size - previous.size) / largest
        size_similarity = max(0.0, 1.0 - size_diff * 2)
    else:
        # Neither frame has a readable artifact, size says nothing
        size_similarity = 0.0

    time_bonus = TIME_BONUS if abs(frame.timestamp - previous.timestamp) < TIME_BONUS_WINDOW_MS else 0.0
    prefix_bonus = HASH_PREFIX_BONUS if frame.hash[:HASH_PREFIX_CHARS] == previous.hash[:HASH_PREFIX_CHARS] else 0.0

    return min(1.0, size_similarity + time_bonus + prefix_bonus)


class FingerprintCache:
    """Size-bounded recency cache of kept fingerprints; evicts the oldest timestamp first."""

    def __init__(self, capacity: int = DEDUP_CACHE_SIZE):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be >= 1: {capacity}")
        self.capacity = capacity
        self._entries: Dict[str, FrameFingerprint] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, fingerprint: FrameFingerprint) -> None:
        self._entries[fingerprint.hash] = fingerprint
        while len(self._entries) > self.capacity:
            oldest = min(self._entries.values(), key=lambda f: f.timestamp)
            del self._entries[oldest.hash]

    def recent(self, now_ms: int, window_ms: float, limit: int = COMPARE_LIMIT) -> List[FrameFingerprint]:
        """Most recent entries (newest first) within window_ms of now_ms, capped at limit."""
        candidates = [f for f in self._entries.values() if abs(now_ms - f.timestamp) < window_ms]
        candidates.sort(key=lambda f: f.timestamp, reverse=True)
        return candidates[:limit]

    def entries(self) -> List[FrameFingerprint]:
        return sorted(self._entries.values(), key=lambda f: f.timestamp)

    def total_bytes(self) -> int:
        return sum(f.size for f in self._entries.values())

    def clear(self) -> None:
        self._entries.clear()


class FrameDeduplicator:
    """Decides keep-vs-duplicate for each frame against an owned FingerprintCache."""

    def __init__(self, cache: FingerprintCache = None, threshold: float = DEDUP_THRESHOLD,
                 window_sec: float = DEDUP_WINDOW_SEC):
        self.cache = cache if cache is not None else FingerprintCache()
        self.threshold = threshold
        self.window_ms = window_sec * 1000
        self._lock = threading.Lock()
        self.kept_count = 0
        self.duplicate_count = 0
        self.duplicate_bytes = 0

    def evaluate(self, record_id: str, artifact_path: str, ocr_text: str, timestamp: int) -> DedupDecision:
        fingerprint = compute_fingerprint(record_id, artifact_path, ocr_text, timestamp)

        with self._lock:
            best_score = 0.0
            match = None
            for previous in self.cache.recent(fingerprint.timestamp, self.window_ms):
                score = calculate_similarity(fingerprint, previous)
                if score >= self.threshold:
                    best_score, match = score, previous
                    break

            if match is None:
                self.cache.add(fingerprint)
                self.kept_count += 1
            else:
                self.duplicate_count += 1
                self.duplicate_bytes += fingerprint.size

        if match is None:
            logger.debug(f"Frame kept: {record_id} (hash {fingerprint.hash[:8]}, size {fingerprint.size})")
            return DedupDecision(keep=True, similarity_score=0.0, matched_prior_id=None, fingerprint=fingerprint)

        logger.debug(f"Frame duplicate: {record_id} ~ {match.record_id} (score {best_score:.2f})")
        return DedupDecision(keep=False, similarity_score=best_score, matched_prior_id=match.record_id,
                             fingerprint=fingerprint)

    def get_stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "cache_size": len(self.cache),
                "cache_capacity": self.cache.capacity,
                "kept": self.kept_count,
                "duplicates": self.duplicate_count,
                "estimated_saved_space": f"{self.duplicate_bytes / (1024 * 1024):.2f}MB",
            }

    def clear_cache(self) -> None:
        with self._lock:
            self.cache.clear()
        logger.info("Frame cache cleared")
