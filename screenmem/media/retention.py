"""
Artifact retention - what happens to the source media file once its record is persisted.
"""

import os
from typing import Optional

from ..core.config import ARTIFACT_RETENTION
from ..util.logging import logger

KEEP = "keep"
DELETE_DUPLICATES = "delete_duplicates"
DELETE_PROCESSED = "delete_processed"
POLICIES = (KEEP, DELETE_DUPLICATES, DELETE_PROCESSED)


class ArtifactRetentionPolicy:
    """Applies the configured policy to a media artifact after its record has been persisted."""

    def __init__(self, policy: str = ARTIFACT_RETENTION):
        if policy not in POLICIES:
            raise ValueError(f"Unknown artifact retention policy: {policy}")
        self.policy = policy
        self.deleted_count = 0
        self.deleted_bytes = 0

    def should_delete(self, kept: bool) -> bool:
        if self.policy == DELETE_PROCESSED:
            return True
        if self.policy == DELETE_DUPLICATES:
            return not kept
        return False

    def apply(self, record_id: str, media_path: Optional[str], kept: bool) -> bool:
        """Delete the artifact when the policy says so. Returns True when a file was removed."""
        if not media_path or not self.should_delete(kept):
            return False

        try:
            size = os.path.getsize(media_path)
            os.remove(media_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.log_media_operation("retention", record_id, {"media_path": media_path, "error": str(e)},
                                       status="failed")
            return False

        self.deleted_count += 1
        self.deleted_bytes += size
        logger.log_media_operation("retention", record_id, {
            "media_path": media_path,
            "policy": self.policy,
            "reason": "duplicate" if not kept else "processed",
        }, status="deleted")
        return True

    def get_stats(self):
        return {
            "policy": self.policy,
            "deleted": self.deleted_count,
            "deleted_bytes": self.deleted_bytes,
        }
