"""
Canonical data types for capture events and memory records.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .errors import InvalidEventError


def extract_url_host(url: Optional[str]) -> Optional[str]:
    """Return the hostname of a URL, or None when the URL is empty or unparseable."""
    if not url:
        return None
    try:
        host = urlparse(url if "://" in url else f"http://{url}").hostname
    except ValueError:
        return None
    return host or None


@dataclass
class CaptureEvent:
    """One normalized screen-capture + OCR sample from the capture source."""
    id: str
    timestamp: int
    app: str
    ocr_text: str
    window_title: Optional[str] = None
    url: Optional[str] = None
    media_path: Optional[str] = None

    def validate(self, max_ts: Optional[int] = None) -> None:
        """Raise InvalidEventError when a required field is missing or mistyped.

        Empty OCR text is valid; some frames carry only a little text. Timestamps
        must be finite, non-negative epoch milliseconds no later than max_ts.
        """
        if not isinstance(self.id, str) or not self.id:
            raise InvalidEventError("missing id", self.id if isinstance(self.id, str) else None)
        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, (int, float)):
            raise InvalidEventError("missing timestamp", self.id)
        if not math.isfinite(self.timestamp) or self.timestamp < 0:
            raise InvalidEventError("invalid timestamp", self.id)
        if max_ts is not None and self.timestamp > max_ts:
            raise InvalidEventError("timestamp in the future", self.id)
        if not isinstance(self.app, str) or not self.app:
            raise InvalidEventError("missing app", self.id)
        if not isinstance(self.ocr_text, str):
            raise InvalidEventError("missing ocr_text", self.id)


@dataclass
class MemoryRecord:
    """Canonical, durable unit representing one retained capture event."""
    id: str
    ts: int
    app: str
    ocr_text: str
    session_id: Optional[str] = None
    window_title: Optional[str] = None
    url: Optional[str] = None
    url_host: Optional[str] = None
    media_path: Optional[str] = None
    thumb_path: Optional[str] = None
    asr_text: Optional[str] = None
    entities: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    video_processed: bool = False
    video_kept: bool = True
    similarity_score: float = 0.0

    @classmethod
    def from_event(cls, event: CaptureEvent, session_id: Optional[str] = None) -> "MemoryRecord":
        return cls(
            id=event.id,
            ts=int(event.timestamp),
            session_id=session_id,
            app=event.app,
            window_title=event.window_title or None,
            url=event.url or None,
            url_host=extract_url_host(event.url),
            media_path=event.media_path or None,
            ocr_text=event.ocr_text,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def embedding_text(self) -> str:
        """Text sent to the embedding provider: OCR text, else the window title."""
        return self.ocr_text.strip() or (self.window_title or "").strip()

    def vector_metadata(self) -> Dict[str, Any]:
        """Minimal metadata stored alongside the embedding."""
        return {
            "ts": self.ts,
            "app": self.app,
            "url_host": self.url_host or "",
            "window_title": self.window_title or "",
            "media_path": self.media_path or "",
            "thumb_path": self.thumb_path or "",
        }


@dataclass
class StoreStats:
    total: int
    oldest_ts: Optional[int]
    newest_ts: Optional[int]
    app_counts: Dict[str, int]
