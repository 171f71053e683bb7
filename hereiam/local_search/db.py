from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

import structlog

from ..errors import StoreError
from .chunker import TextChunk
from .utils import GranularitySelection, normalize_granularities

log = structlog.get_logger()

STATE_READY = "ready"
STATE_BUILDING = "building"

# SQLite caps bound parameters per statement; stay well under the old 999 limit.
_MAX_PARAMS = 500

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS documents (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  path TEXT NOT NULL UNIQUE,
  title TEXT NOT NULL,
  last_indexed INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
  text TEXT NOT NULL,
  start_offset INTEGER NOT NULL,
  granularity TEXT NOT NULL CHECK (granularity IN ('paragraph', 'page', 'document')),
  embedding_id INTEGER
);

CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id);
CREATE INDEX IF NOT EXISTS idx_chunks_embedding ON chunks(embedding_id);
CREATE INDEX IF NOT EXISTS idx_chunks_granularity ON chunks(granularity);

CREATE TABLE IF NOT EXISTS index_state (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  generation INTEGER NOT NULL,
  state TEXT NOT NULL,
  updated_at INTEGER NOT NULL
);
"""

_CHUNK_COLUMNS = """
  c.id, c.document_id, d.path, d.title, c.text, c.start_offset, c.granularity, c.embedding_id
"""


def open_db(db_path: str | Path) -> sqlite3.Connection:
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    # autocommit mode; MetadataStore.transaction() issues BEGIN/COMMIT itself.
    # The app serializes access, the connection may move to a worker thread.
    con = sqlite3.connect(str(p), isolation_level=None, check_same_thread=False)
    con.execute("PRAGMA foreign_keys=ON")
    con.executescript(SCHEMA_SQL)
    con.execute(
        "INSERT OR IGNORE INTO index_state(id, generation, state, updated_at) VALUES(1, 0, ?, ?)",
        (STATE_READY, now_ts()),
    )
    return con


def now_ts() -> int:
    return int(time.time())


@dataclass(frozen=True)
class StoredChunk:
    id: int
    document_id: int
    file_path: str
    title: str
    text: str
    start_offset: int
    granularity: str
    embedding_id: Optional[int]


@dataclass(frozen=True)
class IndexState:
    generation: int
    state: str
    updated_at: int

    @property
    def ready(self) -> bool:
        return self.state == STATE_READY


def _row_to_chunk(row: Sequence) -> StoredChunk:
    cid, doc_id, path, title, text, start, granularity, emb = row
    return StoredChunk(
        id=int(cid),
        document_id=int(doc_id),
        file_path=str(path),
        title=str(title),
        text=str(text),
        start_offset=int(start),
        granularity=str(granularity),
        embedding_id=None if emb is None else int(emb),
    )


class MetadataStore:
    """Documents and chunks in SQLite.

    Chunks point at vector index rows through ``embedding_id``. Nothing in
    the schema ties that number to the index file; the indexer keeps them in
    step and records the generation/state in ``index_state``.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        try:
            self.con = open_db(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open metadata database {self.db_path}: {e}") from e
        self._depth = 0

    def close(self) -> None:
        self.con.close()

    def __enter__(self) -> "MetadataStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def _errors(self, op: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as e:
            raise StoreError(f"Metadata store {op} failed: {e}", {"operation": op}) from e

    @contextmanager
    def transaction(self) -> Iterator["MetadataStore"]:
        """All-or-nothing block. Nested calls join the outer transaction."""
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        with self._errors("begin"):
            self.con.execute("BEGIN")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            try:
                self.con.execute("ROLLBACK")
            except sqlite3.Error as e:
                log.error("store_rollback_failed", error=str(e))
            raise
        self._depth = 0
        with self._errors("commit"):
            self.con.execute("COMMIT")

    # -- documents ---------------------------------------------------------

    def upsert_document(self, path: str | Path) -> int:
        path_str = str(path)
        title = Path(path_str).name
        with self._errors("upsert_document"):
            self.con.execute(
                """
                INSERT INTO documents(path, title, last_indexed)
                VALUES(?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                  title=excluded.title,
                  last_indexed=excluded.last_indexed
                """,
                (path_str, title, now_ts()),
            )
            row = self.con.execute("SELECT id FROM documents WHERE path = ?", (path_str,)).fetchone()
        return int(row[0])

    def count_documents(self) -> int:
        with self._errors("count_documents"):
            return int(self.con.execute("SELECT COUNT(*) FROM documents").fetchone()[0])

    # -- chunks ------------------------------------------------------------

    def replace_chunks(
        self,
        document_id: int,
        chunks: Sequence[TextChunk],
        start_handle: int = 0,
    ) -> list[StoredChunk]:
        """Swap a document's chunks for ``chunks``.

        Chunk ``i`` gets embedding handle ``start_handle + i``: its row in the
        vector index built from the same ordered embedding list.
        """
        out: list[StoredChunk] = []
        with self.transaction(), self._errors("replace_chunks"):
            self.con.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            doc = self.con.execute(
                "SELECT path, title FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            if doc is None:
                raise StoreError(f"Unknown document id {document_id}", {"document_id": document_id})
            for i, chunk in enumerate(chunks):
                handle = start_handle + i
                cur = self.con.execute(
                    """
                    INSERT INTO chunks(document_id, text, start_offset, granularity, embedding_id)
                    VALUES(?, ?, ?, ?, ?)
                    """,
                    (document_id, chunk.text, chunk.start_offset, chunk.granularity, handle),
                )
                out.append(
                    StoredChunk(
                        id=int(cur.lastrowid),
                        document_id=document_id,
                        file_path=str(doc[0]),
                        title=str(doc[1]),
                        text=chunk.text,
                        start_offset=chunk.start_offset,
                        granularity=chunk.granularity,
                        embedding_id=handle,
                    )
                )
        return out

    def delete_chunks_except(self, document_ids: Iterable[int]) -> int:
        """Drop chunks of every document not in ``document_ids``.

        Their handles belong to an older index generation. The document rows
        themselves are kept.
        """
        keep = sorted(set(int(i) for i in document_ids))
        with self.transaction(), self._errors("delete_chunks_except"):
            self.con.execute("CREATE TEMP TABLE IF NOT EXISTS _keep_docs(id INTEGER PRIMARY KEY)")
            self.con.execute("DELETE FROM _keep_docs")
            self.con.executemany("INSERT INTO _keep_docs(id) VALUES(?)", [(i,) for i in keep])
            cur = self.con.execute("DELETE FROM chunks WHERE document_id NOT IN (SELECT id FROM _keep_docs)")
            self.con.execute("DELETE FROM _keep_docs")
        return int(cur.rowcount or 0)

    def get_chunks_by_handles(self, handles: Sequence[int]) -> list[StoredChunk]:
        """Chunks for ``handles``, in the order given (duplicates repeated).

        Handles without a row are left out; callers fall back on their own.
        """
        wanted = sorted({int(h) for h in handles})
        by_handle: dict[int, StoredChunk] = {}
        with self._errors("get_chunks_by_handles"):
            for start in range(0, len(wanted), _MAX_PARAMS):
                batch = wanted[start : start + _MAX_PARAMS]
                placeholders = ",".join("?" * len(batch))
                rows = self.con.execute(
                    f"""
                    SELECT {_CHUNK_COLUMNS}
                    FROM chunks c JOIN documents d ON d.id = c.document_id
                    WHERE c.embedding_id IN ({placeholders})
                    """,
                    batch,
                ).fetchall()
                for row in rows:
                    chunk = _row_to_chunk(row)
                    by_handle[chunk.embedding_id] = chunk  # type: ignore[index]
        return [by_handle[int(h)] for h in handles if int(h) in by_handle]

    def get_chunks_by_granularity(self, levels: GranularitySelection) -> list[StoredChunk]:
        enabled = sorted(normalize_granularities(levels, default=False))
        if not enabled:
            return []
        placeholders = ",".join("?" * len(enabled))
        with self._errors("get_chunks_by_granularity"):
            rows = self.con.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM chunks c JOIN documents d ON d.id = c.document_id
                WHERE c.granularity IN ({placeholders}) AND c.embedding_id IS NOT NULL
                ORDER BY c.embedding_id
                """,
                enabled,
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def iter_chunks_in_handle_order(self) -> list[StoredChunk]:
        with self._errors("iter_chunks_in_handle_order"):
            rows = self.con.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM chunks c JOIN documents d ON d.id = c.document_id
                WHERE c.embedding_id IS NOT NULL
                ORDER BY c.embedding_id
                """
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self) -> int:
        with self._errors("count_chunks"):
            return int(
                self.con.execute("SELECT COUNT(*) FROM chunks WHERE embedding_id IS NOT NULL").fetchone()[0]
            )

    # -- index state -------------------------------------------------------

    def get_index_state(self) -> IndexState:
        with self._errors("get_index_state"):
            row = self.con.execute("SELECT generation, state, updated_at FROM index_state WHERE id = 1").fetchone()
        return IndexState(generation=int(row[0]), state=str(row[1]), updated_at=int(row[2]))

    def mark_building(self) -> None:
        """Write-ahead marker: chunk handles and index file may disagree until mark_ready."""
        with self.transaction(), self._errors("mark_building"):
            self.con.execute(
                "UPDATE index_state SET state = ?, updated_at = ? WHERE id = 1",
                (STATE_BUILDING, now_ts()),
            )

    def mark_ready(self, generation: int) -> None:
        with self.transaction(), self._errors("mark_ready"):
            self.con.execute(
                "UPDATE index_state SET generation = ?, state = ?, updated_at = ? WHERE id = 1",
                (int(generation), STATE_READY, now_ts()),
            )
