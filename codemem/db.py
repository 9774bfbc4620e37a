from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import aiosqlite

from .errors import QuerySyntaxError

# Polyfill: aiosqlite >= 0.22 removed execute_fetchone.  Re-add it so that
# the rest of the module can use the convenient one-liner without changing
# every call site.
if not hasattr(aiosqlite.Connection, "execute_fetchone"):

    async def _execute_fetchone(self, sql: str, parameters: tuple = ()) -> Any:  # type: ignore[override]
        async with self.execute(sql, parameters) as cursor:
            return await cursor.fetchone()

    aiosqlite.Connection.execute_fetchone = _execute_fetchone  # type: ignore[attr-defined]


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS source_files (
    path TEXT PRIMARY KEY,
    language TEXT,
    content_digest TEXT NOT NULL,
    parse_mode TEXT,
    line_count INTEGER NOT NULL DEFAULT 0,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    indexed_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS chunks (
    chunk_id TEXT PRIMARY KEY,
    file_path TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    parse_mode TEXT NOT NULL,
    symbol_name TEXT,
    symbol_kind TEXT,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    start_byte INTEGER NOT NULL,
    end_byte INTEGER NOT NULL,
    signature TEXT,
    docstring TEXT,
    parent_symbol TEXT,
    exported INTEGER NOT NULL DEFAULT 0,
    is_async INTEGER NOT NULL DEFAULT 0,
    language TEXT,
    content TEXT NOT NULL,
    token_count INTEGER NOT NULL DEFAULT 0,
    tags TEXT,
    FOREIGN KEY(file_path) REFERENCES source_files(path) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chunks_file ON chunks(file_path, ordinal);
CREATE INDEX IF NOT EXISTS idx_chunks_kind ON chunks(symbol_kind);

-- On-disk inverted index over symbol name, docstring and body snippet
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
    chunk_id UNINDEXED,
    name,
    doc,
    body,
    tokenize = 'unicode61'
);

-- KeyMapping store: external id <-> monotonic integer key, per vector namespace
CREATE TABLE IF NOT EXISTS vector_keys (
    internal_id INTEGER PRIMARY KEY AUTOINCREMENT,
    namespace TEXT NOT NULL,
    external_id TEXT NOT NULL,
    UNIQUE(namespace, external_id)
);

CREATE TABLE IF NOT EXISTS vector_tables (
    namespace TEXT PRIMARY KEY,
    backend TEXT NOT NULL,
    dimension INTEGER NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS vector_blobs (
    internal_id INTEGER PRIMARY KEY,
    vector BLOB NOT NULL,
    FOREIGN KEY(internal_id) REFERENCES vector_keys(internal_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS embedding_cache (
    content_hash TEXT NOT NULL,
    model_name TEXT NOT NULL,
    embedding BLOB NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (content_hash, model_name)
);

CREATE TABLE IF NOT EXISTS schema_migrations (
    name TEXT PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);
"""


@dataclass(frozen=True)
class SourceFileRow:
    path: str
    language: Optional[str]
    content_digest: str
    parse_mode: Optional[str]
    line_count: int
    size_bytes: int
    indexed_at: str


@dataclass(frozen=True)
class ChunkRow:
    chunk_id: str
    file_path: str
    ordinal: int
    parse_mode: str
    symbol_name: Optional[str]
    symbol_kind: Optional[str]
    start_line: int
    end_line: int
    start_byte: int
    end_byte: int
    signature: Optional[str]
    docstring: Optional[str]
    parent_symbol: Optional[str]
    exported: bool
    is_async: bool
    language: Optional[str]
    content: str
    token_count: int
    tags: Tuple[str, ...]


@dataclass(frozen=True)
class LexicalHit:
    chunk: ChunkRow
    rank: int  # 0-based position in bm25 order
    bm25: float


@dataclass(frozen=True)
class SQLQuery:
    text: str
    params: Tuple[Any, ...]


def build_in_query(prefix_sql: str, values: Sequence[Any], suffix_sql: str = "") -> SQLQuery:
    placeholders = ",".join(["?"] * len(values))
    sql = prefix_sql + "(" + placeholders + ")" + suffix_sql
    return SQLQuery(sql, tuple(values))


def _batched(values: Sequence[Any], size: int = 900) -> Iterable[Sequence[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def _safe_load_tags(raw: Optional[str], *, context: str) -> Tuple[str, ...]:
    try:
        return tuple(json.loads(raw or "[]"))
    except (json.JSONDecodeError, TypeError):
        logging.warning("Failed to decode tags for %s", context, exc_info=True)
        return ()


_CHUNK_COLUMNS = (
    "chunk_id, file_path, ordinal, parse_mode, symbol_name, symbol_kind, start_line, end_line, "
    "start_byte, end_byte, signature, docstring, parent_symbol, exported, is_async, language, "
    "content, token_count, tags"
)


def _chunk_from_row(r: Sequence[Any]) -> ChunkRow:
    return ChunkRow(
        chunk_id=r[0],
        file_path=r[1],
        ordinal=int(r[2]),
        parse_mode=r[3],
        symbol_name=r[4],
        symbol_kind=r[5],
        start_line=int(r[6]),
        end_line=int(r[7]),
        start_byte=int(r[8]),
        end_byte=int(r[9]),
        signature=r[10],
        docstring=r[11],
        parent_symbol=r[12],
        exported=bool(r[13]),
        is_async=bool(r[14]),
        language=r[15],
        content=r[16],
        token_count=int(r[17] or 0),
        tags=_safe_load_tags(r[18], context=f"chunk:{r[0]}"),
    )


class _ConnectionPool:
    def __init__(self, db_path: str, maxsize: int = 10, timeout_s: float = 30.0) -> None:
        self.db_path = db_path
        self.maxsize = maxsize
        self.timeout_s = timeout_s
        self._queue: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize)
        self._created = 0
        self._lock = asyncio.Lock()
        self._all: set[aiosqlite.Connection] = set()
        self._semaphore = asyncio.Semaphore(maxsize)
        self._closing = False

    async def acquire(self) -> aiosqlite.Connection:
        if self._closing:
            raise RuntimeError("Connection pool is closing")
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise TimeoutError("Timed out waiting for database connection") from exc

        # A failed connect must give its semaphore slot back or the pool
        # deadlocks after maxsize failures.
        try:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                should_create = False
                async with self._lock:
                    if self._created < self.maxsize:
                        self._created += 1
                        should_create = True
                if should_create:
                    try:
                        conn = await open_connection(self.db_path)
                        self._all.add(conn)
                        return conn
                    except Exception:
                        async with self._lock:
                            self._created -= 1
                        raise
                return await self._queue.get()
        except BaseException:
            self._semaphore.release()
            raise

    async def release(self, conn: aiosqlite.Connection) -> None:
        try:
            if conn.in_transaction:
                await conn.rollback()
            await self._queue.put(conn)
        except Exception:
            logging.warning("Failed to rollback or return pooled connection; closing.", exc_info=True)
            try:
                await conn.close()
            except Exception:
                logging.warning("Failed to close connection during release", exc_info=True)
            self._all.discard(conn)
            if self._created > 0:
                self._created -= 1
        finally:
            self._semaphore.release()

    async def close(self) -> None:
        self._closing = True
        for _ in range(self.maxsize):
            await self._semaphore.acquire()
        conns = list(self._all)
        self._all.clear()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        for conn in conns:
            await conn.close()


_pools: Dict[str, _ConnectionPool] = {}
_pool_lock: Optional[asyncio.Lock] = None


def _get_pool_lock() -> asyncio.Lock:
    global _pool_lock
    if _pool_lock is None:
        _pool_lock = asyncio.Lock()
    return _pool_lock


async def open_connection(db_path: str) -> aiosqlite.Connection:
    """Open a standalone connection configured like the pooled ones."""
    conn = await aiosqlite.connect(db_path, isolation_level=None)
    await conn.execute("PRAGMA foreign_keys=ON;")
    await conn.execute("PRAGMA journal_mode=WAL;")
    await conn.execute("PRAGMA busy_timeout=5000;")
    return conn


async def _get_pool(db_path: str) -> _ConnectionPool:
    ensure_db_permissions(db_path)
    async with _get_pool_lock():
        pool = _pools.get(db_path)
        if pool is None:
            pool = _ConnectionPool(db_path=db_path, maxsize=10)
            _pools[db_path] = pool
        return pool


def ensure_db_permissions(db_path: str) -> None:
    db_path = os.path.abspath(db_path)
    db_dir = os.path.dirname(db_path)
    os.makedirs(db_dir, exist_ok=True)
    if not os.path.exists(db_path):
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            fd = os.open(db_path, flags, 0o600)
            os.close(fd)
        except FileExistsError:
            pass
        except OSError:
            logging.warning("Failed to create database file %s securely.", db_path, exc_info=True)
    if os.name != "nt":
        try:
            os.chmod(db_path, 0o600)
        except OSError:
            logging.warning("Failed to chmod database file %s", db_path, exc_info=True)


async def close_db_pool(db_path: Optional[str] = None) -> None:
    global _pool_lock
    async with _get_pool_lock():
        if db_path is None:
            pools = list(_pools.values())
            _pools.clear()
        else:
            pool = _pools.pop(db_path, None)
            pools = [pool] if pool else []
    for pool in pools:
        await pool.close()
    if not _pools:
        # Locks bind to the loop that first awaits them.
        _pool_lock = None


@asynccontextmanager
async def get_connection(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    pool = await _get_pool(db_path)
    conn = await pool.acquire()
    try:
        yield conn
    finally:
        await pool.release(conn)


DEFAULT_LEXICAL_BODY_CHARS = 2000


async def init_db(db_path: str, *, lexical_body_chars: Optional[int] = None) -> None:
    """Create the schema. ``lexical_body_chars=None`` keeps whatever the FTS
    triggers were last built with (or the default on a fresh database)."""
    ensure_db_permissions(db_path)
    async with get_connection(db_path) as db:
        await db.executescript(SCHEMA_SQL)
        await _ensure_source_files_schema(db)
        if lexical_body_chars is None:
            row = await db.execute_fetchone(
                "SELECT 1 FROM schema_migrations WHERE name LIKE 'fts_body_chars:%'"
            )
            if not row:
                await _ensure_fts_triggers(db, DEFAULT_LEXICAL_BODY_CHARS)
        else:
            await _ensure_fts_triggers(db, lexical_body_chars)
        await db.commit()


async def _ensure_source_files_schema(db: aiosqlite.Connection) -> None:
    rows = await db.execute_fetchall("PRAGMA table_info(source_files)")
    columns = {r[1] for r in rows}
    if "size_bytes" not in columns:
        await db.execute(
            "ALTER TABLE source_files ADD COLUMN size_bytes INTEGER NOT NULL DEFAULT 0"
        )
    if "parse_mode" not in columns:
        await db.execute("ALTER TABLE source_files ADD COLUMN parse_mode TEXT")


async def _ensure_fts_triggers(db: aiosqlite.Connection, body_chars: int) -> None:
    """(Re)create the FTS sync triggers when the body snippet length changes."""
    body_chars = max(1, int(body_chars))
    marker = f"fts_body_chars:{body_chars}"
    row = await db.execute_fetchone(
        "SELECT 1 FROM schema_migrations WHERE name = ?", (marker,)
    )
    if row:
        return
    await db.executescript(
        f"""
        DROP TRIGGER IF EXISTS chunks_ai;
        DROP TRIGGER IF EXISTS chunks_ad;
        DROP TRIGGER IF EXISTS chunks_au;
        CREATE TRIGGER chunks_ai AFTER INSERT ON chunks BEGIN
          INSERT INTO chunks_fts(rowid, chunk_id, name, doc, body)
          VALUES (new.rowid, new.chunk_id, COALESCE(new.symbol_name, ''),
                  COALESCE(new.docstring, ''), substr(new.content, 1, {body_chars}));
        END;
        CREATE TRIGGER chunks_ad AFTER DELETE ON chunks BEGIN
          DELETE FROM chunks_fts WHERE rowid = old.rowid;
        END;
        CREATE TRIGGER chunks_au AFTER UPDATE OF content, symbol_name, docstring ON chunks BEGIN
          UPDATE chunks_fts
          SET name = COALESCE(new.symbol_name, ''),
              doc = COALESCE(new.docstring, ''),
              body = substr(new.content, 1, {body_chars})
          WHERE rowid = new.rowid;
        END;
        """
    )
    await db.execute("DELETE FROM chunks_fts;")
    await db.execute(
        "INSERT INTO chunks_fts(rowid, chunk_id, name, doc, body) "
        "SELECT rowid, chunk_id, COALESCE(symbol_name, ''), COALESCE(docstring, ''), "
        f"substr(content, 1, {body_chars}) FROM chunks;"
    )
    await db.execute("DELETE FROM schema_migrations WHERE name LIKE 'fts_body_chars:%'")
    await db.execute("INSERT INTO schema_migrations(name) VALUES(?)", (marker,))


# ---------------------------------------------------------------------------
# SourceFile / Chunk state
# ---------------------------------------------------------------------------


def _chunk_params(chunk: Any) -> Tuple[Any, ...]:
    symbol = chunk.symbol
    return (
        chunk.chunk_id,
        chunk.file_path,
        chunk.ordinal,
        chunk.parse_mode.value,
        symbol.name if symbol else None,
        symbol.kind.value if symbol else None,
        chunk.start_line,
        chunk.end_line,
        chunk.start_byte,
        chunk.end_byte,
        symbol.signature if symbol else None,
        symbol.docstring if symbol else None,
        symbol.parent if symbol else None,
        int(bool(symbol and symbol.exported)),
        int(bool(symbol and symbol.is_async)),
        chunk.language,
        chunk.text,
        chunk.token_count,
        json.dumps(list(chunk.tags)),
    )


async def replace_file_chunks(
    db_path: str,
    *,
    source_file: Any,
    parse_mode: Optional[str],
    chunks: Sequence[Any],
) -> List[str]:
    """Atomically swap a file's chunk set for *chunks*.

    Delete-then-insert runs inside one BEGIN IMMEDIATE transaction so that a
    concurrent reader sees either the old symbol set or the new one. Returns
    the chunk ids that were removed and not re-inserted.
    """
    new_ids = {c.chunk_id for c in chunks}
    async with get_connection(db_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            rows = await db.execute_fetchall(
                "SELECT chunk_id FROM chunks WHERE file_path = ?", (source_file.path,)
            )
            old_ids = [str(r[0]) for r in rows]
            await db.execute("DELETE FROM chunks WHERE file_path = ?", (source_file.path,))
            await db.execute(
                """
                INSERT INTO source_files(path, language, content_digest, parse_mode, line_count, size_bytes, indexed_at)
                VALUES(?,?,?,?,?,?, datetime('now'))
                ON CONFLICT(path) DO UPDATE SET
                  language = excluded.language,
                  content_digest = excluded.content_digest,
                  parse_mode = excluded.parse_mode,
                  line_count = excluded.line_count,
                  size_bytes = excluded.size_bytes,
                  indexed_at = datetime('now')
                """,
                (
                    source_file.path,
                    source_file.language,
                    source_file.content_digest,
                    parse_mode,
                    source_file.line_count,
                    source_file.size_bytes,
                ),
            )
            if chunks:
                await db.executemany(
                    f"INSERT INTO chunks({_CHUNK_COLUMNS}) VALUES({','.join(['?'] * 19)})",
                    [_chunk_params(c) for c in chunks],
                )
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
    return [cid for cid in old_ids if cid not in new_ids]


async def delete_source_file(db_path: str, path: str) -> List[str]:
    """Remove a SourceFile and (by cascade) its chunks. Returns removed chunk ids."""
    async with get_connection(db_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            rows = await db.execute_fetchall(
                "SELECT chunk_id FROM chunks WHERE file_path = ?", (path,)
            )
            await db.execute("DELETE FROM chunks WHERE file_path = ?", (path,))
            await db.execute("DELETE FROM source_files WHERE path = ?", (path,))
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
    return [str(r[0]) for r in rows]


async def invalidate_source_digest(db_path: str, path: str) -> None:
    """Forget a file's digest so the next incremental pass re-indexes it."""
    async with get_connection(db_path) as db:
        await db.execute("UPDATE source_files SET content_digest = '' WHERE path = ?", (path,))
        await db.commit()


async def invalidate_all_source_digests(db: aiosqlite.Connection) -> None:
    await db.execute("UPDATE source_files SET content_digest = ''")


async def fetch_source_file(db_path: str, path: str) -> Optional[SourceFileRow]:
    async with get_connection(db_path) as db:
        row = await db.execute_fetchone(
            """
            SELECT path, language, content_digest, parse_mode, line_count, size_bytes, indexed_at
            FROM source_files WHERE path = ?
            """,
            (path,),
        )
    if not row:
        return None
    return SourceFileRow(
        path=row[0],
        language=row[1],
        content_digest=row[2],
        parse_mode=row[3],
        line_count=int(row[4] or 0),
        size_bytes=int(row[5] or 0),
        indexed_at=str(row[6]),
    )


async def list_source_paths(db_path: str) -> List[str]:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall("SELECT path FROM source_files ORDER BY path")
    return [str(r[0]) for r in rows]


async def fetch_file_chunks(db_path: str, path: str) -> List[ChunkRow]:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE file_path = ? ORDER BY ordinal",
            (path,),
        )
    return [_chunk_from_row(r) for r in rows]


async def fetch_chunks_by_ids(db_path: str, chunk_ids: Sequence[str]) -> Dict[str, ChunkRow]:
    if not chunk_ids:
        return {}
    out: Dict[str, ChunkRow] = {}
    async with get_connection(db_path) as db:
        for batch in _batched(list(chunk_ids)):
            query = build_in_query(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE chunk_id IN ",
                batch,
            )
            rows = await db.execute_fetchall(query.text, query.params)
            for r in rows:
                chunk = _chunk_from_row(r)
                out[chunk.chunk_id] = chunk
    return out


async def filter_live_chunk_ids(db_path: str, chunk_ids: Sequence[str]) -> Set[str]:
    if not chunk_ids:
        return set()
    live: Set[str] = set()
    async with get_connection(db_path) as db:
        for batch in _batched(list(chunk_ids)):
            query = build_in_query("SELECT chunk_id FROM chunks WHERE chunk_id IN ", batch)
            rows = await db.execute_fetchall(query.text, query.params)
            live.update(str(r[0]) for r in rows)
    return live


async def get_index_stats(db_path: str) -> Dict[str, Any]:
    async with get_connection(db_path) as db:
        files = await db.execute_fetchone("SELECT COUNT(*) FROM source_files")
        chunks = await db.execute_fetchone(
            "SELECT COUNT(*), COALESCE(SUM(token_count), 0) FROM chunks"
        )
        kinds = await db.execute_fetchall(
            "SELECT symbol_kind, COUNT(*) FROM chunks WHERE symbol_kind IS NOT NULL GROUP BY symbol_kind"
        )
        modes = await db.execute_fetchall(
            "SELECT parse_mode, COUNT(*) FROM chunks GROUP BY parse_mode"
        )
        languages = await db.execute_fetchall(
            "SELECT COALESCE(language, 'text'), COUNT(*) FROM source_files GROUP BY 1"
        )
    return {
        "files": int(files[0]),
        "chunks": int(chunks[0]),
        "total_tokens": int(chunks[1]),
        "symbols_by_kind": {str(k): int(n) for k, n in kinds},
        "chunks_by_parse_mode": {str(k): int(n) for k, n in modes},
        "files_by_language": {str(k): int(n) for k, n in languages},
    }


# ---------------------------------------------------------------------------
# Lexical index
# ---------------------------------------------------------------------------


_FTS5_KEYWORDS: set[str] = {"not", "and", "or", "near"}


def build_fts_query(query: str, *, mode: str = "strict") -> str:
    """Build a sanitized FTS5 query: operators stripped, each term quoted.

    ``mode="any"`` joins terms with OR, anything else with AND. Quoted
    phrases in the input survive as phrases.
    """
    if not query or not query.strip():
        return '""'
    # '+' is not an FTS5 operator; keeping it preserves "C++" precision.
    cleaned = re.sub(r"[*^(){}<>\-:]", " ", query)
    parts = re.findall(r'"([^"]+)"|(\S+)', cleaned)
    tokens: List[str] = []
    for quoted, plain in parts:
        token = re.sub(r"\s+", " ", (quoted or plain or "").replace('"', " ")).strip()
        if not token or token.lower() in _FTS5_KEYWORDS:
            continue
        tokens.append(token)
    if not tokens:
        return '""'
    if len(tokens) > 50:
        raise QuerySyntaxError("FTS query exceeds the 50-token maximum.")
    tokens = [t[:64] for t in tokens]
    joiner = " OR " if str(mode).lower() == "any" else " AND "
    return joiner.join(f'"{t}"' for t in tokens)


_FTS_ERROR_MARKERS = ("fts5", "syntax error", "no such column", "unterminated", "malformed")


async def lexical_search(db_path: str, *, match: str, limit: int) -> List[LexicalHit]:
    """Ranked FTS5 match. *match* is passed to MATCH verbatim.

    Raises QuerySyntaxError when FTS5 rejects the expression.
    """
    if match.strip() in ("", '""'):
        return []
    columns = ", ".join("c." + col.strip() for col in _CHUNK_COLUMNS.split(","))
    sql = f"""
        SELECT {columns}, bm25(chunks_fts, 0.0, 10.0, 5.0, 1.0) AS score
        FROM chunks_fts
        JOIN chunks c ON c.rowid = chunks_fts.rowid
        WHERE chunks_fts MATCH ?
        ORDER BY score ASC, c.file_path ASC, c.ordinal ASC
        LIMIT ?
    """
    try:
        async with get_connection(db_path) as db:
            rows = await db.execute_fetchall(sql, (match, int(limit)))
    except aiosqlite.OperationalError as exc:
        if not any(marker in str(exc).lower() for marker in _FTS_ERROR_MARKERS):
            raise
        raise QuerySyntaxError(f"Invalid lexical query {match!r}: {exc}") from exc

    return [
        LexicalHit(chunk=_chunk_from_row(r), rank=rank, bm25=float(r[19]))
        for rank, r in enumerate(rows)
    ]


# ---------------------------------------------------------------------------
# Vector KeyMapping / table bookkeeping (connection supplied by the backend)
# ---------------------------------------------------------------------------


async def get_or_create_internal_id(
    db: aiosqlite.Connection, namespace: str, external_id: str
) -> int:
    """Insert-if-absent, then read back. Runs inside the caller's transaction."""
    await db.execute(
        """
        INSERT INTO vector_keys(namespace, external_id) VALUES(?, ?)
        ON CONFLICT(namespace, external_id) DO NOTHING
        """,
        (namespace, external_id),
    )
    row = await db.execute_fetchone(
        "SELECT internal_id FROM vector_keys WHERE namespace = ? AND external_id = ?",
        (namespace, external_id),
    )
    return int(row[0])


async def fetch_internal_ids(
    db: aiosqlite.Connection, namespace: str, external_ids: Sequence[str]
) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for batch in _batched(list(external_ids)):
        query = build_in_query(
            "SELECT external_id, internal_id FROM vector_keys WHERE namespace = ? AND external_id IN ",
            batch,
        )
        rows = await db.execute_fetchall(query.text, (namespace, *query.params))
        out.update({str(r[0]): int(r[1]) for r in rows})
    return out


async def fetch_external_ids(
    db: aiosqlite.Connection, namespace: str, internal_ids: Sequence[int]
) -> Dict[int, str]:
    out: Dict[int, str] = {}
    for batch in _batched(list(internal_ids)):
        query = build_in_query(
            "SELECT internal_id, external_id FROM vector_keys WHERE namespace = ? AND internal_id IN ",
            batch,
        )
        rows = await db.execute_fetchall(query.text, (namespace, *query.params))
        out.update({int(r[0]): str(r[1]) for r in rows})
    return out


async def fetch_all_vector_keys(db: aiosqlite.Connection, namespace: str) -> Dict[str, int]:
    rows = await db.execute_fetchall(
        "SELECT external_id, internal_id FROM vector_keys WHERE namespace = ?", (namespace,)
    )
    return {str(r[0]): int(r[1]) for r in rows}


async def delete_vector_keys(
    db: aiosqlite.Connection, namespace: str, internal_ids: Sequence[int]
) -> None:
    for batch in _batched(list(internal_ids)):
        query = build_in_query(
            "DELETE FROM vector_keys WHERE namespace = ? AND internal_id IN ", batch
        )
        await db.execute(query.text, (namespace, *query.params))


async def fetch_table_dimension(db: aiosqlite.Connection, namespace: str) -> Optional[int]:
    row = await db.execute_fetchone(
        "SELECT dimension FROM vector_tables WHERE namespace = ?", (namespace,)
    )
    return int(row[0]) if row else None


async def fetch_table_owner(
    db: aiosqlite.Connection, namespace: str
) -> Optional[Tuple[str, int]]:
    """The backend kind that created the namespace table and its dimension."""
    row = await db.execute_fetchone(
        "SELECT backend, dimension FROM vector_tables WHERE namespace = ?", (namespace,)
    )
    return (str(row[0]), int(row[1])) if row else None


async def insert_table_dimension(
    db: aiosqlite.Connection, namespace: str, backend: str, dimension: int
) -> int:
    """Record the table dimension unless one is already fixed; return the fixed one."""
    await db.execute(
        """
        INSERT INTO vector_tables(namespace, backend, dimension) VALUES(?,?,?)
        ON CONFLICT(namespace) DO NOTHING
        """,
        (namespace, backend, int(dimension)),
    )
    fixed = await fetch_table_dimension(db, namespace)
    return int(fixed if fixed is not None else dimension)


async def fetch_vector_blobs(db: aiosqlite.Connection, namespace: str) -> List[Tuple[int, bytes]]:
    rows = await db.execute_fetchall(
        """
        SELECT b.internal_id, b.vector
        FROM vector_blobs b JOIN vector_keys k ON k.internal_id = b.internal_id
        WHERE k.namespace = ?
        ORDER BY b.internal_id
        """,
        (namespace,),
    )
    return [(int(r[0]), bytes(r[1])) for r in rows]


async def upsert_vector_blobs(db: aiosqlite.Connection, rows: Sequence[Tuple[int, bytes]]) -> None:
    await db.executemany(
        """
        INSERT INTO vector_blobs(internal_id, vector) VALUES(?, ?)
        ON CONFLICT(internal_id) DO UPDATE SET vector = excluded.vector
        """,
        list(rows),
    )


async def drop_vector_namespace(db: aiosqlite.Connection, namespace: str) -> None:
    await db.execute(
        "DELETE FROM vector_blobs WHERE internal_id IN "
        "(SELECT internal_id FROM vector_keys WHERE namespace = ?)",
        (namespace,),
    )
    await db.execute("DELETE FROM vector_keys WHERE namespace = ?", (namespace,))
    await db.execute("DELETE FROM vector_tables WHERE namespace = ?", (namespace,))


# ---------------------------------------------------------------------------
# Embedding cache
# ---------------------------------------------------------------------------


async def fetch_embedding_cache(
    db_path: str,
    *,
    model_name: str,
    content_hashes: List[str],
) -> Dict[str, bytes]:
    if not content_hashes:
        return {}
    out: Dict[str, bytes] = {}
    async with get_connection(db_path) as db:
        for batch in _batched(content_hashes):
            query = build_in_query(
                """
                    SELECT content_hash, embedding
                    FROM embedding_cache
                    WHERE model_name = ? AND content_hash IN
                """,
                batch,
            )
            rows = await db.execute_fetchall(query.text, (model_name, *query.params))
            out.update({str(r[0]): bytes(r[1]) for r in rows})
    return out


async def upsert_embedding_cache(
    db_path: str,
    *,
    model_name: str,
    rows: List[Tuple[str, bytes]],
) -> None:
    if not rows:
        return
    async with get_connection(db_path) as db:
        await db.executemany(
            """
            INSERT INTO embedding_cache(content_hash, model_name, embedding, created_at)
            VALUES(?,?,?, datetime('now'))
            ON CONFLICT(content_hash, model_name) DO UPDATE SET
              embedding = excluded.embedding,
              created_at = datetime('now')
            """,
            [(content_hash, model_name, embedding) for content_hash, embedding in rows],
        )
        await db.commit()
