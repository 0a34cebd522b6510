"""
Capture source client - polls the local screen-capture service over HTTP.

The capture service records the screen, runs OCR and exposes the results via
GET /health and GET /search. This client turns its search matches into
CaptureEvent objects for the ingestion loop.
"""

import hashlib
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from ..core.config import CAPTURE_BASE_URL, CAPTURE_TIMEOUT_SEC, POLL_BATCH_LIMIT
from ..core.errors import CaptureSourceError
from ..core.schema import CaptureEvent
from ..util.logging import logger


def parse_timestamp(value: Any) -> Optional[int]:
    """Epoch milliseconds from an ISO-8601 string or a numeric epoch; None when unparseable."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        # JSON bodies may carry NaN or Infinity
        return int(value) if math.isfinite(value) else None
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def to_iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def fallback_event_id(content: Dict[str, Any]) -> str:
    """Stable id for matches without a frame_id, so replays stay idempotent."""
    seed = f"{content.get('timestamp')}|{content.get('file_path')}|{content.get('text') or ''}"
    return f"{content.get('timestamp')}-{hashlib.sha1(seed.encode('utf-8')).hexdigest()[:12]}"


def match_to_event(match: Dict[str, Any]) -> Optional[CaptureEvent]:
    """Translate one search match into a CaptureEvent; None when its timestamp is invalid."""
    content = match.get("content") or match
    timestamp = parse_timestamp(content.get("timestamp"))
    if timestamp is None:
        logger.warning(
            f"Skipping capture match with invalid timestamp: {content.get('timestamp')!r} "
            f"(frame_id={content.get('frame_id')})"
        )
        return None

    frame_id = content.get("frame_id")
    return CaptureEvent(
        id=str(frame_id) if frame_id is not None else fallback_event_id(content),
        timestamp=timestamp,
        app=content.get("app_name") or "unknown",
        ocr_text=content.get("text") or "",
        window_title=content.get("window_name") or None,
        url=content.get("browser_url") or None,
        media_path=content.get("file_path") or None,
    )


class CaptureSourceClient:
    """HTTP client for the capture service's /health and /search endpoints."""

    def __init__(self, base_url: str = CAPTURE_BASE_URL, timeout: float = CAPTURE_TIMEOUT_SEC,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.last_health: Optional[Dict[str, Any]] = None
        self.last_health_check = 0.0

    def _get(self, path: str, params: Dict[str, Any] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            # 4xx other than 429 means the request itself is wrong; retrying will not help
            transient = status is None or status >= 500 or status == 429
            raise CaptureSourceError(f"GET {path} failed with status {status}", transient=transient) from e
        except (requests.ConnectionError, requests.Timeout) as e:
            raise CaptureSourceError(f"Capture source unreachable at {url}: {e}") from e
        except ValueError as e:
            raise CaptureSourceError(f"Invalid JSON from {url}: {e}", transient=False) from e

    def health_check(self) -> Dict[str, Any]:
        """GET /health. Raises CaptureSourceError when the service cannot be reached."""
        start = time.time()
        health = self._get("/health")
        self.last_health = health
        self.last_health_check = time.time()
        logger.debug(f"Capture source health: {health.get('status')} ({(time.time() - start) * 1000:.0f}ms)")
        return health

    @staticmethod
    def is_acceptable(health: Dict[str, Any]) -> bool:
        """Healthy, or degraded while frame capture itself still works."""
        status = health.get("status")
        return status == "healthy" or (status == "degraded" and health.get("frame_status") == "ok")

    def search(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET /search with the given query parameters; returns the raw response body."""
        result = self._get("/search", params=params)
        if not isinstance(result.get("data"), list):
            raise CaptureSourceError("Search response missing 'data' list", transient=False)
        return result

    def get_recent_events(self, since_ts: Optional[int] = None, limit: int = POLL_BATCH_LIMIT) -> List[CaptureEvent]:
        """OCR events captured at or after since_ts (epoch ms), in arrival order."""
        params: Dict[str, Any] = {
            "limit": limit,
            "offset": 0,
            "content_type": "ocr",
            "include_frames": "false",
        }
        if since_ts and since_ts > 0:
            params["start_time"] = to_iso(since_ts)

        result = self.search(params)
        events = []
        for match in result["data"]:
            match_type = str(match.get("type", "OCR")).lower()
            if match_type != "ocr":
                continue
            event = match_to_event(match)
            if event is not None:
                events.append(event)

        logger.debug(f"Retrieved {len(events)} capture events since {to_iso(since_ts) if since_ts else 'beginning'}")
        return events

    def test_connection(self) -> Dict[str, Any]:
        """Health check, recent-events fetch and a one-result search; reports errors instead of raising."""
        errors: List[str] = []
        healthy = False
        response_ms = 0.0
        recent_count = 0
        reachable = False

        try:
            start = time.time()
            health = self.health_check()
            reachable = True
            response_ms = (time.time() - start) * 1000
            healthy = self.is_acceptable(health)
            if health.get("status") != "healthy":
                errors.append(f"Server status: {health.get('status')}")
        except CaptureSourceError as e:
            errors.append(f"Health check failed: {e}")

        if reachable:
            try:
                recent_count = len(self.get_recent_events(int(time.time() * 1000) - 60_000, 10))
            except CaptureSourceError as e:
                errors.append(f"Failed to retrieve recent events: {e}")
            try:
                self.search({"limit": 1})
            except CaptureSourceError as e:
                errors.append(f"Basic search failed: {e}")

        result = {
            "healthy": healthy,
            "response_time_ms": round(response_ms, 2),
            "recent_event_count": recent_count,
            "errors": errors,
        }
        logger.log_operation("capture.test_connection", "completed" if healthy else "failed", result)
        return result

    def close(self) -> None:
        self.session.close()
