"""
Structured logging for the ingestion pipeline.
Thin wrapper over stdlib logging so every component reports operations the same way.
"""

import logging
from typing import Any, Dict


class StructuredLogger:
    """Structured logger for ingestion, keyword store and vector index operations."""

    def __init__(self, name: str = "screenmem"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def set_debug(self, enabled: bool) -> None:
        self.logger.setLevel(logging.DEBUG if enabled else logging.INFO)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_event_stage(self, event_id: str, stage: str, status: str = "success", details: Dict[str, Any] = None):
        """Log one state transition of a capture event through the pipeline."""
        log_details = {"event_id": event_id}
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("failed", "skipped") else logging.DEBUG
        self.log_operation(f"ingest.{stage}", status, log_details, level=level)

    def log_cycle_summary(self, total: int, results: Dict[str, Dict[str, int]], duration_ms: float):
        """Log the per-app outcome of one poll cycle."""
        details = {
            "total_events": total,
            "duration_ms": round(duration_ms, 2),
            "per_app": results,
        }
        for counter in ("success", "failed", "skipped", "duplicate"):
            details[f"{counter}_total"] = sum(r.get(counter, 0) for r in results.values())

        self.log_operation("ingest.cycle", "completed", details)

    def log_store_operation(self, operation: str, record_id: str = None, details: Dict[str, Any] = None, status: str = "success"):
        """Log a keyword store operation."""
        log_details = {}
        if record_id is not None:
            log_details["record_id"] = record_id
        if details:
            log_details.update(details)

        level = logging.ERROR if status == "failed" else logging.DEBUG
        self.log_operation(f"store.{operation}", status, log_details, level=level)

    def log_vector_operation(self, operation: str, record_id: str = None, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector operation."""
        log_details = {}
        if record_id is not None:
            log_details["record_id"] = record_id
        if details:
            log_details.update(details)

        if status == "failed":
            level = logging.ERROR
        elif status in ("retry", "dead_letter"):
            level = logging.WARNING
        else:
            level = logging.DEBUG
        self.log_operation(f"vector.{operation}", status, log_details, level=level)

    def log_media_operation(self, operation: str, record_id: str = None, details: Dict[str, Any] = None, status: str = "success"):
        """Log thumbnail generation and artifact retention."""
        log_details = {}
        if record_id is not None:
            log_details["record_id"] = record_id
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("failed", "fallback") else logging.DEBUG
        self.log_operation(f"media.{operation}", status, log_details, level=level)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)

# Global logger instance
logger = StructuredLogger()


def sanitize_text(text: Any, limit: int = 50) -> Any:
    """Truncate OCR text before it reaches a log line."""
    if isinstance(text, str):
        return text[:limit] + "..." if len(text) > limit else text
    return text

