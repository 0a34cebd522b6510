"""
Thumbnail generation for captured frames.

Thumbnails are derivative, regenerable assets: a failure here never blocks
persistence of the record, it only leaves thumb_path empty.
"""

import os
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import cv2
from PIL import Image, ImageDraw, ImageOps, UnidentifiedImageError

from ..core.config import THUMBS_DIR
from ..util.logging import logger

THUMBNAIL_WIDTH = 300
THUMBNAIL_HEIGHT = 200
JPEG_QUALITY = 80
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v"}

PLACEHOLDER_BACKGROUND = (240, 240, 240)
PLACEHOLDER_TEXT = (102, 102, 102)


def is_video_file(path: str) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTENSIONS


def read_video_frame(video_path: str) -> Optional[Image.Image]:
    """First decodable frame of a video as an RGB image, or None."""
    cap = cv2.VideoCapture(str(video_path))
    if not cap.isOpened():
        return None
    try:
        ok, frame = cap.read()
        if not ok or frame is None:
            return None
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        return Image.fromarray(rgb)
    finally:
        cap.release()


class ThumbnailGenerator:
    """Writes <thumbs_dir>/<record_id>.jpg, cover-fit to a fixed size."""

    def __init__(self, thumbs_dir: str = None, size: Tuple[int, int] = (THUMBNAIL_WIDTH, THUMBNAIL_HEIGHT),
                 quality: int = JPEG_QUALITY):
        self.thumbs_dir = Path(thumbs_dir or THUMBS_DIR)
        self.size = size
        self.quality = quality
        self.thumbs_dir.mkdir(parents=True, exist_ok=True)

    def thumbnail_path(self, record_id: str) -> Path:
        return self.thumbs_dir / f"{record_id}.jpg"

    def generate_thumbnail(self, media_path: Optional[str], record_id: str) -> Optional[str]:
        """Create the thumbnail for a record. Returns its path, or None when the source is unusable."""
        output = self.thumbnail_path(record_id)
        if output.exists():
            return str(output)

        if not media_path or not os.path.isfile(media_path):
            logger.log_media_operation("thumbnail", record_id, {"media_path": media_path, "reason": "missing_source"},
                                       status="skipped")
            return None

        start = time.time()
        try:
            if is_video_file(media_path):
                self._write_video_thumbnail(media_path, output, record_id)
            else:
                self._write_image_thumbnail(media_path, output)
        except (OSError, UnidentifiedImageError, ValueError) as e:
            logger.log_media_operation("thumbnail", record_id, {"media_path": media_path, "error": str(e)},
                                       status="failed")
            self._discard(output)
            return None

        logger.log_media_operation("thumbnail", record_id, {
            "duration_ms": round((time.time() - start) * 1000, 2),
            "bytes": output.stat().st_size,
        })
        return str(output)

    def _write_image_thumbnail(self, source: str, output: Path) -> None:
        with Image.open(source) as image:
            self._save(image, output)

    def _write_video_thumbnail(self, source: str, output: Path, record_id: str) -> None:
        frame = read_video_frame(source)
        if frame is None:
            logger.log_media_operation("thumbnail", record_id, {"media_path": source, "reason": "no_video_frame"},
                                       status="fallback")
            self.create_placeholder(output, "VIDEO")
            return
        self._save(frame, output)

    def _save(self, image: Image.Image, output: Path) -> None:
        fitted = ImageOps.fit(image.convert("RGB"), self.size, method=Image.Resampling.LANCZOS)
        # Write next to the target and rename so a crash never leaves a truncated thumbnail
        tmp = output.with_suffix(".jpg.tmp")
        fitted.save(tmp, "JPEG", quality=self.quality, progressive=True)
        os.replace(tmp, output)

    def create_placeholder(self, output: Path, label: str = "IMAGE") -> None:
        image = Image.new("RGB", self.size, PLACEHOLDER_BACKGROUND)
        draw = ImageDraw.Draw(image)
        left, top, right, bottom = draw.textbbox((0, 0), label)
        x = (self.size[0] - (right - left)) / 2
        y = (self.size[1] - (bottom - top)) / 2
        draw.text((x, y), label, fill=PLACEHOLDER_TEXT)
        self._save(image, output)

    @staticmethod
    def _discard(path: Path) -> None:
        for candidate in (path, path.with_suffix(".jpg.tmp")):
            try:
                candidate.unlink()
            except FileNotFoundError:
                pass

    def generate_thumbnails_batch(self, items: List[Tuple[str, str]]) -> List[Dict[str, Optional[str]]]:
        """Generate thumbnails for (media_path, record_id) pairs."""
        results = []
        for media_path, record_id in items:
            results.append({"record_id": record_id, "thumb_path": self.generate_thumbnail(media_path, record_id)})

        generated = sum(1 for r in results if r["thumb_path"])
        logger.log_media_operation("thumbnail_batch", details={
            "total": len(items),
            "successful": generated,
            "failed": len(items) - generated,
        })
        return results

    def remove_thumbnail(self, record_id: str) -> bool:
        try:
            self.thumbnail_path(record_id).unlink()
        except FileNotFoundError:
            return False
        return True

    def cleanup_old_thumbnails(self, max_age_days: float = 7) -> int:
        """Delete thumbnails older than max_age_days by modification time. Returns the number removed."""
        cutoff = time.time() - max_age_days * 24 * 60 * 60
        deleted = 0
        for path in self.thumbs_dir.glob("*.jpg"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    deleted += 1
            except FileNotFoundError:
                continue

        if deleted:
            logger.log_media_operation("thumbnail_cleanup", details={"deleted": deleted, "max_age_days": max_age_days})
        return deleted

    def get_stats(self) -> Dict[str, object]:
        files = list(self.thumbs_dir.glob("*.jpg"))
        total_size = 0
        for path in files:
            try:
                total_size += path.stat().st_size
            except FileNotFoundError:
                continue
        return {
            "total_thumbnails": len(files),
            "total_size_bytes": total_size,
            "thumbs_dir": str(self.thumbs_dir),
        }
