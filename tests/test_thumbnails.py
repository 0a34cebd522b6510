"""
Thumbnail generation and artifact retention.
"""

import os
import time

import cv2
import numpy as np
import pytest
from PIL import Image

from screenmem.media import ArtifactRetentionPolicy, ThumbnailGenerator
from screenmem.media.thumbnails import is_video_file


@pytest.fixture
def generator(tmp_path):
    return ThumbnailGenerator(str(tmp_path / "thumbs"))


@pytest.fixture
def screenshot(tmp_path):
    path = tmp_path / "frame.png"
    Image.new("RGB", (1920, 1080), (20, 120, 200)).save(path)
    return str(path)


class TestThumbnailGenerator:
    def test_generates_cover_fit_jpeg(self, generator, screenshot):
        thumb = generator.generate_thumbnail(screenshot, "e1")

        assert thumb == str(generator.thumbnail_path("e1"))
        with Image.open(thumb) as image:
            assert image.size == (300, 200)
            assert image.format == "JPEG"

    def test_missing_source_returns_none(self, generator):
        assert generator.generate_thumbnail("/nope/frame.png", "e1") is None
        assert generator.generate_thumbnail(None, "e1") is None
        assert not generator.thumbnail_path("e1").exists()

    def test_existing_thumbnail_is_reused(self, generator, screenshot):
        first = generator.generate_thumbnail(screenshot, "e1")
        mtime = os.path.getmtime(first)
        os.remove(screenshot)
        Image.new("RGB", (10, 10)).save(screenshot)

        assert generator.generate_thumbnail(screenshot, "e1") == first
        assert os.path.getmtime(first) == mtime

    def test_corrupt_image_returns_none_and_leaves_no_file(self, generator, tmp_path):
        broken = tmp_path / "broken.png"
        broken.write_bytes(b"not an image at all")

        assert generator.generate_thumbnail(str(broken), "e1") is None
        assert list(generator.thumbs_dir.iterdir()) == []

    def test_unreadable_video_gets_placeholder(self, generator, tmp_path):
        video = tmp_path / "monitor_2025-01-26_14-03-07.mp4"
        video.write_bytes(b"\x00" * 128)

        thumb = generator.generate_thumbnail(str(video), "v1")
        assert thumb is not None
        with Image.open(thumb) as image:
            assert image.size == (300, 200)

    def test_video_thumbnail_uses_first_frame(self, generator, tmp_path):
        video = tmp_path / "monitor_2025-01-26_14-03-07.mp4"
        writer = cv2.VideoWriter(str(video), cv2.VideoWriter_fourcc(*"mp4v"), 5, (640, 360))
        if not writer.isOpened():
            pytest.skip("mp4v encoder unavailable")
        # OpenCV frames are BGR
        frame = np.full((360, 640, 3), (200, 120, 20), dtype=np.uint8)
        for _ in range(5):
            writer.write(frame)
        writer.release()

        thumb = generator.generate_thumbnail(str(video), "v2")

        assert thumb is not None
        with Image.open(thumb) as image:
            assert image.size == (300, 200)
            pixel = image.convert("RGB").getpixel((150, 100))
        assert all(abs(got - want) <= 30 for got, want in zip(pixel, (20, 120, 200)))

    def test_existing_thumbnail_outlives_source(self, generator, screenshot):
        first = generator.generate_thumbnail(screenshot, "e1")
        os.remove(screenshot)

        assert generator.generate_thumbnail(screenshot, "e1") == first
        assert os.path.exists(first)

    def test_batch(self, generator, screenshot):
        results = generator.generate_thumbnails_batch([(screenshot, "a"), ("/missing.png", "b")])
        assert results[0] == {"record_id": "a", "thumb_path": str(generator.thumbnail_path("a"))}
        assert results[1] == {"record_id": "b", "thumb_path": None}

    def test_cleanup_old_thumbnails(self, generator, screenshot):
        old = generator.generate_thumbnail(screenshot, "old")
        generator.generate_thumbnail(screenshot, "new")
        ten_days_ago = time.time() - 10 * 24 * 60 * 60
        os.utime(old, (ten_days_ago, ten_days_ago))

        assert generator.cleanup_old_thumbnails(max_age_days=7) == 1
        assert not os.path.exists(old)
        assert generator.get_stats()["total_thumbnails"] == 1

    def test_remove_thumbnail(self, generator, screenshot):
        generator.generate_thumbnail(screenshot, "e1")
        assert generator.remove_thumbnail("e1") is True
        assert generator.remove_thumbnail("e1") is False

    def test_stats(self, generator, screenshot):
        generator.generate_thumbnail(screenshot, "e1")
        stats = generator.get_stats()
        assert stats["total_thumbnails"] == 1
        assert stats["total_size_bytes"] > 0

    def test_video_extension_detection(self):
        assert is_video_file("/frames/monitor_1.MP4")
        assert not is_video_file("/frames/shot.png")


class TestArtifactRetentionPolicy:
    def test_keep_never_deletes(self, tmp_path):
        artifact = tmp_path / "a.mp4"
        artifact.write_bytes(b"x")
        policy = ArtifactRetentionPolicy("keep")

        assert policy.apply("e1", str(artifact), kept=False) is False
        assert artifact.exists()

    def test_delete_duplicates_only_removes_duplicates(self, tmp_path):
        kept = tmp_path / "kept.mp4"
        dup = tmp_path / "dup.mp4"
        kept.write_bytes(b"x" * 10)
        dup.write_bytes(b"x" * 10)
        policy = ArtifactRetentionPolicy("delete_duplicates")

        assert policy.apply("e1", str(kept), kept=True) is False
        assert policy.apply("e2", str(dup), kept=False) is True
        assert kept.exists() and not dup.exists()
        assert policy.get_stats() == {"policy": "delete_duplicates", "deleted": 1, "deleted_bytes": 10}

    def test_delete_processed_removes_everything(self, tmp_path):
        artifact = tmp_path / "a.mp4"
        artifact.write_bytes(b"x")
        assert ArtifactRetentionPolicy("delete_processed").apply("e1", str(artifact), kept=True) is True

    def test_missing_file_is_not_an_error(self):
        assert ArtifactRetentionPolicy("delete_processed").apply("e1", "/gone.mp4", kept=True) is False

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            ArtifactRetentionPolicy("shred")
