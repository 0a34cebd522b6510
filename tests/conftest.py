"""
Shared fixtures: an initialized keyword store on a temp database and record/event factories.
"""

import pytest

from screenmem.core.keyword_store import KeywordStore
from screenmem.core.schema import CaptureEvent, MemoryRecord


@pytest.fixture
def store(tmp_path):
    """Fresh keyword store backed by a temp SQLite file."""
    kw = KeywordStore(str(tmp_path / "sqlite" / "memories.db"))
    kw.initialize()
    yield kw
    kw.close()


@pytest.fixture
def make_record():
    def _make(record_id="e1", ts=1_700_000_000_000, app="Chrome", ocr_text="Omega Seamaster 300M price $5,200",
              **kwargs):
        return MemoryRecord(id=record_id, ts=ts, app=app, ocr_text=ocr_text, **kwargs)
    return _make


@pytest.fixture
def make_event():
    def _make(event_id="e1", timestamp=1_700_000_000_000, app="Chrome", ocr_text="Omega Seamaster 300M",
              **kwargs):
        return CaptureEvent(id=event_id, timestamp=timestamp, app=app, ocr_text=ocr_text, **kwargs)
    return _make
