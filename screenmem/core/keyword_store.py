"""
Keyword store - canonical memory records with a synchronized FTS5 lexical index.

Every write goes through one SQLite transaction; the FTS rows are maintained
by triggers inside that transaction, so a crash can never leave a record
without its index entry or an index entry without its record.
"""

import json
import re
import sqlite3
import threading
from typing import Iterator, List, Optional

from .db import connect, health_check, init_db
from .schema import MemoryRecord, StoreStats
from ..util.logging import logger

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

_COLUMNS = (
    "id", "ts", "session_id", "app", "window_title", "url", "url_host",
    "media_path", "thumb_path", "ocr_text", "asr_text", "entities", "topics",
    "video_processed", "video_kept", "similarity_score",
)


def build_match_query(text: str) -> str:
    """Turn free text into an FTS5 MATCH expression of quoted terms (implicit AND).

    Quoting every term keeps user punctuation such as '$3,495' or 'C++' from
    being parsed as FTS operators.
    """
    tokens = _TOKEN_RE.findall(text or "")
    return " ".join(f'"{token}"' for token in tokens)


def _row_to_record(row: sqlite3.Row) -> MemoryRecord:
    return MemoryRecord(
        id=row["id"],
        ts=row["ts"],
        session_id=row["session_id"],
        app=row["app"],
        window_title=row["window_title"],
        url=row["url"],
        url_host=row["url_host"],
        media_path=row["media_path"],
        thumb_path=row["thumb_path"],
        ocr_text=row["ocr_text"],
        asr_text=row["asr_text"],
        entities=json.loads(row["entities"]) if row["entities"] else [],
        topics=json.loads(row["topics"]) if row["topics"] else [],
        video_processed=bool(row["video_processed"]),
        video_kept=bool(row["video_kept"]),
        similarity_score=row["similarity_score"] or 0.0,
    )


class KeywordStore:
    """SQLite-backed record store with an FTS5 index kept consistent by triggers."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

    def initialize(self) -> None:
        """Open the connection and create the schema. Raises sqlite3.Error / OSError on failure."""
        with self._lock:
            if self._conn is None:
                self._conn = connect(self.db_path)
            init_db(self._conn)
        logger.log_store_operation("initialize", details={"db_path": self.db_path}, status="ready")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Keyword store not initialized")
        return self._conn

    def is_ready(self) -> bool:
        return self._conn is not None

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.log_store_operation("close", details={"db_path": self.db_path}, status="closed")

    # Writes

    def put(self, record: MemoryRecord) -> bool:
        """Upsert a record (id is the conflict key). Returns False instead of raising on storage errors."""
        params = (
            record.id,
            int(record.ts),
            record.session_id,
            record.app,
            record.window_title,
            record.url,
            record.url_host,
            record.media_path,
            record.thumb_path,
            record.ocr_text,
            record.asr_text,
            json.dumps(record.entities) if record.entities else None,
            json.dumps(record.topics) if record.topics else None,
            1 if record.video_processed else 0,
            1 if record.video_kept else 0,
            float(record.similarity_score or 0.0),
        )
        placeholders = ", ".join("?" for _ in _COLUMNS)
        updates = ", ".join(f"{col}=excluded.{col}" for col in _COLUMNS if col != "id")
        sql = (
            f"INSERT INTO memories ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}"
        )

        try:
            with self._lock, self.conn:
                self.conn.execute(sql, params)
        except sqlite3.Error as e:
            logger.log_store_operation("put", record.id, {"app": record.app, "error": str(e)}, status="failed")
            return False

        logger.log_store_operation("put", record.id, {"app": record.app, "text_length": len(record.ocr_text)})
        return True

    def attach_thumbnail(self, record_id: str, thumb_path: Optional[str]) -> bool:
        return self._update(record_id, "thumb_path = ?", (thumb_path,), "attach_thumbnail")

    def record_video_outcome(self, record_id: str, processed: bool, kept: bool, similarity_score: float) -> bool:
        return self._update(
            record_id,
            "video_processed = ?, video_kept = ?, similarity_score = ?",
            (1 if processed else 0, 1 if kept else 0, float(similarity_score)),
            "record_video_outcome",
        )

    def _update(self, record_id: str, assignments: str, params: tuple, operation: str) -> bool:
        try:
            with self._lock, self.conn:
                cursor = self.conn.execute(f"UPDATE memories SET {assignments} WHERE id = ?", (*params, record_id))
        except sqlite3.Error as e:
            logger.log_store_operation(operation, record_id, {"error": str(e)}, status="failed")
            return False
        return cursor.rowcount > 0

    def delete(self, record_id: str) -> bool:
        try:
            with self._lock, self.conn:
                cursor = self.conn.execute("DELETE FROM memories WHERE id = ?", (record_id,))
        except sqlite3.Error as e:
            logger.log_store_operation("delete", record_id, {"error": str(e)}, status="failed")
            return False
        return cursor.rowcount > 0

    def prune_before(self, cutoff_ts: int) -> List[str]:
        """Delete every record captured before cutoff_ts and return the deleted ids."""
        with self._lock, self.conn:
            ids = [row[0] for row in self.conn.execute("SELECT id FROM memories WHERE ts < ?", (cutoff_ts,))]
            self.conn.execute("DELETE FROM memories WHERE ts < ?", (cutoff_ts,))
        if ids:
            logger.log_store_operation("prune", details={"cutoff_ts": cutoff_ts, "deleted": len(ids)})
        return ids

    # Reads

    def exists(self, record_id: str) -> bool:
        try:
            with self._lock:
                row = self.conn.execute("SELECT 1 FROM memories WHERE id = ?", (record_id,)).fetchone()
        except sqlite3.Error as e:
            logger.log_store_operation("exists", record_id, {"error": str(e)}, status="failed")
            return False
        return row is not None

    def get(self, record_id: str) -> Optional[MemoryRecord]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM memories WHERE id = ?", (record_id,)).fetchone()
        return _row_to_record(row) if row else None

    def get_many(self, record_ids: List[str]) -> List[MemoryRecord]:
        """Fetch records by id, preserving the order of record_ids and skipping missing ones."""
        if not record_ids:
            return []
        placeholders = ", ".join("?" for _ in record_ids)
        with self._lock:
            rows = self.conn.execute(f"SELECT * FROM memories WHERE id IN ({placeholders})", tuple(record_ids)).fetchall()
        by_id = {row["id"]: _row_to_record(row) for row in rows}
        return [by_id[rid] for rid in record_ids if rid in by_id]

    def query(self, text: str, limit: int = 50, offset: int = 0, raw: bool = False) -> List[MemoryRecord]:
        """Ranked lexical search, most relevant first, ties broken by newest timestamp.

        With raw=True the text is passed to MATCH unchanged (FTS5 query syntax).
        """
        match = text if raw else build_match_query(text)
        if not match or not match.strip():
            return []

        sql = '''
            SELECT m.* FROM memories_fts
            JOIN memories m ON m.rowid = memories_fts.rowid
            WHERE memories_fts MATCH ?
            ORDER BY bm25(memories_fts), m.ts DESC
            LIMIT ? OFFSET ?
        '''
        try:
            with self._lock:
                rows = self.conn.execute(sql, (match, limit, offset)).fetchall()
        except sqlite3.OperationalError as e:
            # Malformed raw MATCH syntax
            logger.log_store_operation("query", details={"query": match, "error": str(e)}, status="failed")
            return []
        return [_row_to_record(row) for row in rows]

    def recent(self, since_ts: int = None, limit: int = 100, app: str = None, url_host: str = None) -> List[MemoryRecord]:
        """Time-descending scan with optional equality filters."""
        sql = "SELECT * FROM memories WHERE 1=1"
        params: list = []

        if since_ts is not None:
            sql += " AND ts >= ?"
            params.append(since_ts)
        if app:
            sql += " AND app = ?"
            params.append(app)
        if url_host:
            sql += " AND url_host = ?"
            params.append(url_host)

        sql += " ORDER BY ts DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def iter_records(self, batch_size: int = 500) -> Iterator[MemoryRecord]:
        """Every record in insertion order, fetched in rowid-keyed pages."""
        last_rowid = 0
        while True:
            with self._lock:
                rows = self.conn.execute(
                    "SELECT rowid AS _rowid, * FROM memories WHERE rowid > ? ORDER BY rowid LIMIT ?",
                    (last_rowid, batch_size),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield _row_to_record(row)
            last_rowid = rows[-1]["_rowid"]

    def stats(self) -> StoreStats:
        with self._lock:
            total = self.conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            bounds = self.conn.execute("SELECT MIN(ts), MAX(ts) FROM memories").fetchone()
            app_rows = self.conn.execute(
                "SELECT app, COUNT(*) AS count FROM memories GROUP BY app ORDER BY count DESC"
            ).fetchall()

        return StoreStats(
            total=total,
            oldest_ts=bounds[0],
            newest_ts=bounds[1],
            app_counts={row["app"]: row["count"] for row in app_rows},
        )

    def count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    def index_entry_count(self) -> int:
        """Number of documents actually present in the FTS index (not the content table)."""
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM memories_fts_docsize").fetchone()[0]

    def is_consistent(self) -> bool:
        """True when every live record has exactly one index entry and vice versa."""
        try:
            with self._lock, self.conn:
                self.conn.execute("INSERT INTO memories_fts(memories_fts, rank) VALUES ('integrity-check', 1)")
        except sqlite3.DatabaseError as e:
            logger.log_store_operation("integrity_check", details={"error": str(e)}, status="failed")
            return False
        return self.index_entry_count() == self.count()

    def health_check(self) -> bool:
        if self._conn is None:
            return False
        with self._lock:
            return health_check(self._conn)
