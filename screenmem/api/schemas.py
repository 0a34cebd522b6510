"""
Response models for the search and health API.
"""

from pydantic import BaseModel
from typing import Optional, List, Dict, Any

from ..core.schema import MemoryRecord


class MemoryItem(BaseModel):
    id: str
    ts: int
    app: str
    window_title: Optional[str] = None
    url: Optional[str] = None
    url_host: Optional[str] = None
    media_path: Optional[str] = None
    thumb_path: Optional[str] = None
    ocr_text: str
    session_id: Optional[str] = None
    video_kept: bool = True
    similarity_score: float = 0.0

    @classmethod
    def from_record(cls, record: MemoryRecord) -> "MemoryItem":
        return cls(
            id=record.id,
            ts=record.ts,
            app=record.app,
            window_title=record.window_title,
            url=record.url,
            url_host=record.url_host,
            media_path=record.media_path,
            thumb_path=record.thumb_path,
            ocr_text=record.ocr_text,
            session_id=record.session_id,
            video_kept=record.video_kept,
            similarity_score=record.similarity_score,
        )


class SearchResponse(BaseModel):
    query: str
    results: List[MemoryItem]
    limit: int
    offset: int


class SemanticHit(BaseModel):
    """One vector match; record is None when the keyword store no longer holds it."""
    id: str
    score: float
    metadata: Dict[str, Any]
    record: Optional[MemoryItem] = None


class SemanticSearchResponse(BaseModel):
    query: str
    hits: List[SemanticHit]
    vector_enabled: bool


class RecentResponse(BaseModel):
    results: List[MemoryItem]


class StatsResponse(BaseModel):
    total: int
    oldest_ts: Optional[int] = None
    newest_ts: Optional[int] = None
    app_counts: Dict[str, int]
    ingestion: Dict[str, Any]


class HealthResponse(BaseModel):
    status: str                   # "healthy" or "degraded"
    version: str
    components: Dict[str, bool]
    total_records: int
    app_count: int
    errors: List[str]
