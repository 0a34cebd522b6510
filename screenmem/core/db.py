"""
SQLite foundation for the keyword store.
One relational table of memory records plus an FTS5 index kept in step by triggers.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .config import DB_PATH


SCHEMA_STATEMENTS = [
    '''
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        ts INTEGER NOT NULL,
        session_id TEXT,
        app TEXT NOT NULL,
        window_title TEXT,
        url TEXT,
        url_host TEXT,
        media_path TEXT,
        thumb_path TEXT,
        ocr_text TEXT NOT NULL,
        asr_text TEXT,
        entities TEXT,  -- JSON array
        topics TEXT,    -- JSON array
        video_processed INTEGER DEFAULT 0,
        video_kept INTEGER DEFAULT 1,
        similarity_score REAL DEFAULT 0.0,
        created_at INTEGER DEFAULT (strftime('%s', 'now'))
    )
    ''',
    # External-content FTS5 table: the index rows are keyed by memories.rowid
    '''
    CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
        id UNINDEXED,
        ocr_text,
        window_title,
        app,
        url_host,
        content='memories',
        content_rowid='rowid',
        tokenize='unicode61 remove_diacritics 2'
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_memories_ts ON memories(ts DESC)',
    'CREATE INDEX IF NOT EXISTS idx_memories_app_ts ON memories(app, ts DESC)',
    'CREATE INDEX IF NOT EXISTS idx_memories_url_host_ts ON memories(url_host, ts DESC)',
    'CREATE INDEX IF NOT EXISTS idx_memories_session ON memories(session_id)',
    '''
    CREATE TRIGGER IF NOT EXISTS memories_fts_insert AFTER INSERT ON memories BEGIN
        INSERT INTO memories_fts(rowid, id, ocr_text, window_title, app, url_host)
        VALUES (new.rowid, new.id, new.ocr_text, new.window_title, new.app, new.url_host);
    END
    ''',
    '''
    CREATE TRIGGER IF NOT EXISTS memories_fts_delete AFTER DELETE ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, id, ocr_text, window_title, app, url_host)
        VALUES ('delete', old.rowid, old.id, old.ocr_text, old.window_title, old.app, old.url_host);
    END
    ''',
    '''
    CREATE TRIGGER IF NOT EXISTS memories_fts_update
    AFTER UPDATE OF id, ocr_text, window_title, app, url_host ON memories BEGIN
        INSERT INTO memories_fts(memories_fts, rowid, id, ocr_text, window_title, app, url_host)
        VALUES ('delete', old.rowid, old.id, old.ocr_text, old.window_title, old.app, old.url_host);
        INSERT INTO memories_fts(rowid, id, ocr_text, window_title, app, url_host)
        VALUES (new.rowid, new.id, new.ocr_text, new.window_title, new.app, new.url_host);
    END
    ''',
]

REQUIRED_TABLES = ['memories', 'memories_fts']


def connect(db_path: str = None) -> sqlite3.Connection:
    """Open a connection shared between the ingestion and API threads.

    Callers serialize access; the connection itself is not thread-bound.
    """
    db_path = db_path or DB_PATH
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a short-lived SQLite connection."""
    conn = connect(db_path)
    try:
        yield conn
    finally:
        conn.close()


def init_db(conn: sqlite3.Connection):
    """Create tables, indexes and FTS triggers. Runs once at startup, before any writer."""
    with conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)


def health_check(conn: sqlite3.Connection) -> bool:
    """Check that the required tables exist and the connection answers."""
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        table_names = [row[0] for row in rows]
        return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
