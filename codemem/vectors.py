from __future__ import annotations

import asyncio
import logging
import os
import platform
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite
import numpy as np
from numba import jit

from . import db as dbmod
from .config import CodememConfig
from .errors import BackendUnavailable, DimensionMismatch, OrphanDataInconsistency
from .security import PathContext

DEFAULT_NAMESPACE = "chunks"
SELFTEST_NAMESPACE = "__selftest__"
SELFTEST_ID = "__codemem_selftest__"


class BackendKind(str, Enum):
    SQLITE_VEC = "sqlite_vec"
    FAISS = "faiss"
    COMPUTED = "computed"


@dataclass(frozen=True)
class VectorHit:
    id: str  # external id
    distance: float


def assert_dimension(vector: Any, expected: int) -> np.ndarray:
    """Return *vector* as a float32 row; raise DimensionMismatch on any length drift."""
    arr = np.asarray(vector, dtype=np.float32)
    if arr.ndim != 1:
        raise DimensionMismatch(int(expected), int(arr.size), shape=tuple(arr.shape))
    if int(arr.shape[0]) != int(expected):
        raise DimensionMismatch(int(expected), int(arr.shape[0]))
    return arr


def _sanitize_namespace(namespace: str) -> str:
    if not re.match(r"^[A-Za-z0-9_]+$", namespace):
        raise ValueError(
            f"Invalid vector namespace: {namespace}. Only alphanumeric characters and underscores are allowed."
        )
    return namespace


class KeyMapping:
    """externalId <-> internal integer key for one namespace.

    The database rows are the source of truth; the two dicts are a cache that
    is only updated once the surrounding transaction has committed.
    """

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace
        self._by_external: Dict[str, int] = {}
        self._by_internal: Dict[int, str] = {}

    async def get_or_create(self, db: aiosqlite.Connection, external_id: str) -> int:
        cached = self._by_external.get(external_id)
        if cached is not None:
            return cached
        return await dbmod.get_or_create_internal_id(db, self.namespace, external_id)

    async def lookup(self, db: aiosqlite.Connection, external_ids: Sequence[str]) -> Dict[str, int]:
        out = {e: self._by_external[e] for e in external_ids if e in self._by_external}
        missing = [e for e in external_ids if e not in out]
        if missing:
            out.update(await dbmod.fetch_internal_ids(db, self.namespace, missing))
        return out

    async def to_external(self, db: aiosqlite.Connection, internal_ids: Sequence[int]) -> Dict[int, str]:
        out = {i: self._by_internal[i] for i in internal_ids if i in self._by_internal}
        missing = [i for i in internal_ids if i not in out]
        if missing:
            fetched = await dbmod.fetch_external_ids(db, self.namespace, missing)
            out.update(fetched)
            self.remember(fetched.items())
            orphans = tuple(i for i in missing if i not in fetched)
            if orphans:
                raise OrphanDataInconsistency(
                    f"Vector keys {list(orphans)} in namespace {self.namespace} have no external id",
                    internal_ids=orphans,
                    resolved=out,
                )
        return out

    def remember(self, pairs: Iterable[Tuple[int, str]]) -> None:
        for internal_id, external_id in pairs:
            self._by_external[external_id] = internal_id
            self._by_internal[internal_id] = external_id

    def forget(self, internal_ids: Iterable[int]) -> None:
        for internal_id in internal_ids:
            external_id = self._by_internal.pop(internal_id, None)
            if external_id is not None:
                self._by_external.pop(external_id, None)

    def clear(self) -> None:
        self._by_external.clear()
        self._by_internal.clear()


class VectorBackend(ABC):
    """Common contract for every vector store.

    Callers only ever see external ids; the integer keys stay inside.
    """

    kind: BackendKind

    def __init__(self, db_path: str, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.db_path = db_path
        self.namespace = _sanitize_namespace(namespace)
        self.keys = KeyMapping(self.namespace)
        self._dimension: Optional[int] = None
        self._loaded = False
        self._self_tested = False
        self._lock = asyncio.Lock()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def is_available(self) -> bool:
        return self._loaded and self._self_tested

    def mark_self_tested(self) -> None:
        self._self_tested = True

    async def load(self) -> None:
        """Load native dependencies and any persisted table state.

        Raises BackendUnavailable when the backend cannot run here.
        """
        await dbmod.init_db(self.db_path)
        async with dbmod.get_connection(self.db_path) as db:
            owner = await dbmod.fetch_table_owner(db, self.namespace)
        foreign = owner is not None and owner[0] != self.kind.value
        self._dimension = owner[1] if owner is not None and not foreign else None
        await self._load_native()
        if foreign:
            assert owner is not None
            await self._reset_foreign(owner[0])
        self._loaded = True

    async def _reset_foreign(self, previous: str) -> None:
        # Vectors written by another backend kind are unreachable from this one.
        logging.warning(
            "Vector namespace %s was written by the %s backend; discarding it for %s "
            "and marking every file for re-indexing",
            self.namespace,
            previous,
            self.kind.value,
        )
        await self._drop_native()
        async with self._key_connection() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await dbmod.drop_vector_namespace(db, self.namespace)
                if self.namespace != SELFTEST_NAMESPACE:
                    await dbmod.invalidate_all_source_digests(db)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        self.keys.clear()
        self._dimension = None

    @abstractmethod
    async def _load_native(self) -> None:
        ...

    async def ensure_table(self, dimension: int) -> int:
        """Fix the table dimension on first call; later calls return the fixed one."""
        dimension = int(dimension)
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        async with self._lock:
            if self._dimension is not None:
                if dimension != self._dimension:
                    logging.warning(
                        "ensure_table(%s) ignored: %s table %s is fixed at dimension %s",
                        dimension,
                        self.kind.value,
                        self.namespace,
                        self._dimension,
                    )
                return self._dimension
            async with dbmod.get_connection(self.db_path) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    fixed = await dbmod.insert_table_dimension(db, self.namespace, self.kind.value, dimension)
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise
            await self._create_table(fixed)
            self._dimension = fixed
            return fixed

    @abstractmethod
    async def _create_table(self, dimension: int) -> None:
        ...

    async def upsert(self, external_id: str, vector: Any) -> None:
        await self.upsert_many([(external_id, vector)])

    async def upsert_many(self, items: Sequence[Tuple[str, Any]]) -> None:
        if not items:
            return
        if self._dimension is None:
            first = np.asarray(items[0][1])
            if first.ndim != 1:
                raise DimensionMismatch(0, int(first.size), shape=tuple(first.shape))
            await self.ensure_table(int(first.shape[0]))
        assert self._dimension is not None
        # Validate the whole batch first so a bad vector writes nothing.
        rows = [(str(ext), assert_dimension(vec, self._dimension)) for ext, vec in items]
        async with self._lock:
            await self._write(rows)

    @abstractmethod
    async def _write(self, rows: List[Tuple[str, np.ndarray]]) -> None:
        ...

    async def query_nearest(self, vector: Any, k: int) -> List[VectorHit]:
        """Up to *k* hits by ascending distance; [] when empty or unavailable."""
        if not self.is_available():
            return []
        return await self._nearest(vector, k)

    async def _nearest(self, vector: Any, k: int) -> List[VectorHit]:
        if not self._loaded or self._dimension is None or k <= 0:
            return []
        query = assert_dimension(vector, self._dimension)
        async with self._lock:
            raw = await self._search(query, int(k))
            if not raw:
                return []
            async with self._key_connection() as db:
                try:
                    mapping = await self.keys.to_external(db, [iid for iid, _ in raw])
                except OrphanDataInconsistency as exc:
                    logging.warning("Dropping orphan vector hits: %s", exc)
                    mapping = exc.resolved
        return [VectorHit(mapping[iid], dist) for iid, dist in raw if iid in mapping]

    @abstractmethod
    async def _search(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    async def remove(self, external_ids: Sequence[str]) -> int:
        if not external_ids or not self._loaded:
            return 0
        async with self._lock:
            return await self._remove(list(external_ids))

    @abstractmethod
    async def _remove(self, external_ids: List[str]) -> int:
        ...

    async def external_ids(self) -> List[str]:
        async with dbmod.get_connection(self.db_path) as db:
            keys = await dbmod.fetch_all_vector_keys(db, self.namespace)
        return sorted(keys)

    def _key_connection(self):
        return dbmod.get_connection(self.db_path)

    @abstractmethod
    def scratch(self) -> "VectorBackend":
        """A fresh, unloaded backend of the same kind on the self-test namespace."""

    async def drop(self) -> None:
        async with self._lock:
            await self._drop_native()
            async with self._key_connection() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    await dbmod.drop_vector_namespace(db, self.namespace)
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise
            self.keys.clear()
            self._dimension = None

    @abstractmethod
    async def _drop_native(self) -> None:
        ...

    async def close(self) -> None:
        self._loaded = False


@jit(nopython=True)
def _l2_distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    n = matrix.shape[0]
    out = np.empty(n, dtype=np.float32)
    for i in range(n):
        acc = 0.0
        for j in range(matrix.shape[1]):
            diff = matrix[i, j] - query[j]
            acc += diff * diff
        out[i] = np.sqrt(acc)
    return out


class ComputedBackend(VectorBackend):
    """Brute-force L2 scan over vectors persisted as blobs."""

    kind = BackendKind.COMPUTED

    def __init__(self, db_path: str, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        super().__init__(db_path, namespace=namespace)
        self._vectors: Dict[int, np.ndarray] = {}
        self._matrix: Optional[np.ndarray] = None
        self._ids: Optional[np.ndarray] = None

    def is_available(self) -> bool:
        return self._loaded

    async def _load_native(self) -> None:
        async with dbmod.get_connection(self.db_path) as db:
            rows = await dbmod.fetch_vector_blobs(db, self.namespace)
        self._vectors = {iid: np.frombuffer(blob, dtype=np.float32).copy() for iid, blob in rows}
        self._matrix = None

    async def _create_table(self, dimension: int) -> None:
        return None

    async def _write(self, rows: List[Tuple[str, np.ndarray]]) -> None:
        assigned: List[Tuple[int, str]] = []
        async with dbmod.get_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for external_id, vec in rows:
                    assigned.append((await self.keys.get_or_create(db, external_id), external_id))
                await dbmod.upsert_vector_blobs(
                    db, [(iid, vec.tobytes()) for (iid, _), (_, vec) in zip(assigned, rows)]
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        self.keys.remember(assigned)
        for (iid, _), (_, vec) in zip(assigned, rows):
            self._vectors[iid] = vec
        self._matrix = None

    def _snapshot(self) -> Tuple[np.ndarray, np.ndarray]:
        if self._matrix is None or self._ids is None:
            ids = sorted(self._vectors)
            self._ids = np.asarray(ids, dtype=np.int64)
            if ids:
                self._matrix = np.vstack([self._vectors[i] for i in ids]).astype(np.float32)
            else:
                self._matrix = np.empty((0, self._dimension or 0), dtype=np.float32)
        return self._ids, self._matrix

    async def _search(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        ids, matrix = self._snapshot()
        if ids.size == 0:
            return []
        distances = await asyncio.to_thread(_l2_distances, matrix, query)
        order = np.argsort(distances, kind="stable")[:k]
        return [(int(ids[i]), float(distances[i])) for i in order]

    async def count(self) -> int:
        return len(self._vectors)

    async def _remove(self, external_ids: List[str]) -> int:
        async with dbmod.get_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                found = await self.keys.lookup(db, external_ids)
                await dbmod.delete_vector_keys(db, self.namespace, list(found.values()))
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        self.keys.forget(found.values())
        removed = 0
        for iid in found.values():
            if self._vectors.pop(iid, None) is not None:
                removed += 1
        self._matrix = None
        return removed

    def scratch(self) -> "ComputedBackend":
        return ComputedBackend(self.db_path, namespace=SELFTEST_NAMESPACE)

    async def _drop_native(self) -> None:
        self._vectors.clear()
        self._matrix = None


def _load_faiss(path: str) -> Any:
    import faiss

    index = faiss.read_index(path)
    if not isinstance(index, faiss.IndexIDMap2):
        index = faiss.IndexIDMap2(index)
    return index


def _save_faiss(index: Any, path_context: PathContext, path: str) -> None:
    import faiss

    dir_path = os.path.dirname(os.path.abspath(path))
    path_context.makedirs(dir_path, exist_ok=True)
    tmp_path = path_context.create_temp_file(dir_path=dir_path, suffix=".faiss.tmp")
    try:
        faiss.write_index(index, tmp_path)
        _replace_with_retries(path_context, tmp_path, path)
    except Exception:
        if path_context.exists(tmp_path):
            path_context.unlink(tmp_path)
        raise


def _replace_with_retries(
    path_context: PathContext,
    src: str,
    dest: str,
    *,
    retries: int = 5,
    delay_s: float = 0.1,
) -> None:
    last_exc: Optional[BaseException] = None
    for attempt in range(max(1, retries)):
        try:
            path_context.replace(src, dest)
            return
        except PermissionError as exc:
            last_exc = exc
            if os.name != "nt" or attempt >= retries - 1:
                raise
            time.sleep(delay_s * (attempt + 1))
    if last_exc:
        raise last_exc


class FaissBackend(VectorBackend):
    """IndexIDMap2 over a flat L2 index, saved to ``<index_dir>/<namespace>.faiss``."""

    kind = BackendKind.FAISS

    def __init__(self, db_path: str, index_dir: str, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        super().__init__(db_path, namespace=namespace)
        self.index_dir = os.path.abspath(index_dir)
        self.index_path = os.path.join(self.index_dir, f"{self.namespace}.faiss")
        self.path_context = PathContext([self.index_dir])
        self._index: Any = None

    async def _load_native(self) -> None:
        try:
            import faiss  # noqa: F401
        except ImportError as exc:
            raise BackendUnavailable(f"faiss is not installed: {exc}") from exc
        if self._dimension is not None:
            if os.path.exists(self.index_path):
                self._index = await asyncio.to_thread(_load_faiss, self.index_path)
            else:
                self._index = self._new_index(self._dimension)

    def _new_index(self, dimension: int) -> Any:
        import faiss

        return faiss.IndexIDMap2(faiss.IndexFlatL2(int(dimension)))

    async def _create_table(self, dimension: int) -> None:
        if self._index is None:
            self._index = self._new_index(dimension)

    async def _restore(self) -> None:
        # The file on disk is the last committed state.
        if os.path.exists(self.index_path):
            self._index = await asyncio.to_thread(_load_faiss, self.index_path)
        elif self._dimension is not None:
            self._index = self._new_index(self._dimension)

    async def _write(self, rows: List[Tuple[str, np.ndarray]]) -> None:
        assigned: List[Tuple[int, str]] = []
        async with dbmod.get_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for external_id, _ in rows:
                    assigned.append((await self.keys.get_or_create(db, external_id), external_id))
                ids = np.asarray([iid for iid, _ in assigned], dtype=np.int64)
                matrix = np.vstack([vec for _, vec in rows]).astype(np.float32)
                index = self._index

                def _apply() -> None:
                    index.remove_ids(ids)
                    index.add_with_ids(matrix, ids)

                await asyncio.to_thread(_apply)
                await asyncio.to_thread(_save_faiss, index, self.path_context, self.index_path)
                await db.commit()
            except BaseException:
                await db.rollback()
                await self._restore()
                raise
        self.keys.remember(assigned)

    async def _search(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        index = self._index
        if index is None or index.ntotal == 0:
            return []

        def _search_sync() -> List[Tuple[int, float]]:
            q = np.asarray([query], dtype=np.float32)
            D, I = index.search(q, min(k, int(index.ntotal)))
            # IndexFlatL2 reports squared distances.
            return [
                (int(i), float(np.sqrt(max(float(d), 0.0))))
                for d, i in zip(D[0], I[0])
                if int(i) != -1
            ]

        return await asyncio.to_thread(_search_sync)

    async def count(self) -> int:
        return int(self._index.ntotal) if self._index is not None else 0

    async def _remove(self, external_ids: List[str]) -> int:
        if self._index is None:
            return 0
        async with dbmod.get_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                found = await self.keys.lookup(db, external_ids)
                ids = np.asarray(list(found.values()), dtype=np.int64)
                index = self._index
                removed = int(await asyncio.to_thread(index.remove_ids, ids)) if ids.size else 0
                await asyncio.to_thread(_save_faiss, index, self.path_context, self.index_path)
                await dbmod.delete_vector_keys(db, self.namespace, list(found.values()))
                await db.commit()
            except BaseException:
                await db.rollback()
                await self._restore()
                raise
        self.keys.forget(found.values())
        return removed

    def scratch(self) -> "FaissBackend":
        return FaissBackend(self.db_path, self.index_dir, namespace=SELFTEST_NAMESPACE)

    async def _drop_native(self) -> None:
        self._index = None
        if self.path_context.exists(self.index_path):
            self.path_context.unlink(self.index_path)


def _platform_tag() -> str:
    machine = platform.machine().lower() or "unknown"
    machine = {"amd64": "x86_64", "aarch64": "arm64"}.get(machine, machine)
    return f"{sys.platform}-{machine}"


def sqlite_vec_candidates(index_dir: str, extension_dirs: Sequence[str] = ()) -> List[str]:
    """Well-known locations of the vec0 loadable extension, in probe order."""
    candidates: List[str] = []
    try:
        import sqlite_vec

        candidates.append(sqlite_vec.loadable_path())
    except ImportError:
        logging.debug("sqlite_vec package not installed; probing extension directories only.")
    tag = _platform_tag()
    for directory in extension_dirs:
        candidates.append(os.path.join(os.path.expanduser(directory), "vec0"))
    candidates.append(os.path.join(os.path.abspath(index_dir), "extensions", "sqlite-vec", tag, "vec0"))
    candidates.append(
        os.path.join(os.path.expanduser("~"), ".local", "share", "codemem", "sqlite-vec", tag, "vec0")
    )
    return candidates


class SqliteVecBackend(VectorBackend):
    """vec0 virtual table living in the same database file as the chunks."""

    kind = BackendKind.SQLITE_VEC

    def __init__(
        self,
        db_path: str,
        *,
        index_dir: str = ".",
        extension_dirs: Sequence[str] = (),
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        super().__init__(db_path, namespace=namespace)
        self.index_dir = index_dir
        self.extension_dirs = list(extension_dirs)
        self.table = f"vec_{self.namespace}"
        self.extension_path: Optional[str] = None
        self._conn: Optional[aiosqlite.Connection] = None

    async def _load_native(self) -> None:
        conn = await dbmod.open_connection(self.db_path)
        tried: List[str] = []
        try:
            await conn.enable_load_extension(True)
            for candidate in sqlite_vec_candidates(self.index_dir, self.extension_dirs):
                try:
                    await conn.load_extension(candidate)
                except aiosqlite.Error as exc:
                    tried.append(f"{candidate}: {exc}")
                    continue
                self.extension_path = candidate
                break
            await conn.enable_load_extension(False)
            if self.extension_path is None:
                raise BackendUnavailable("sqlite-vec extension not found; tried " + "; ".join(tried))
            await conn.execute_fetchone("SELECT vec_version()")
        except AttributeError as exc:
            await conn.close()
            raise BackendUnavailable("this sqlite3 build cannot load extensions") from exc
        except BaseException:
            await conn.close()
            raise
        self._conn = conn
        if self._dimension is not None:
            await self._create_table(self._dimension)

    def _key_connection(self):
        return _borrowed(self._conn)

    async def _create_table(self, dimension: int) -> None:
        assert self._conn is not None
        await self._conn.execute(
            f'CREATE VIRTUAL TABLE IF NOT EXISTS "{self.table}" USING vec0(embedding float[{int(dimension)}])'
        )

    async def _write(self, rows: List[Tuple[str, np.ndarray]]) -> None:
        db = self._require_conn()
        assigned: List[Tuple[int, str]] = []
        await db.execute("BEGIN IMMEDIATE")
        try:
            for external_id, vec in rows:
                iid = await self.keys.get_or_create(db, external_id)
                # vec0 has no upsert.
                await db.execute(f'DELETE FROM "{self.table}" WHERE rowid = ?', (iid,))
                await db.execute(
                    f'INSERT INTO "{self.table}"(rowid, embedding) VALUES (?, ?)',
                    (iid, vec.tobytes()),
                )
                assigned.append((iid, external_id))
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
        self.keys.remember(assigned)

    async def _search(self, query: np.ndarray, k: int) -> List[Tuple[int, float]]:
        db = self._require_conn()
        rows = await db.execute_fetchall(
            f"""
            SELECT rowid, distance
            FROM "{self.table}"
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance
            """,
            (query.tobytes(), int(k)),
        )
        return [(int(r[0]), float(r[1])) for r in rows]

    async def count(self) -> int:
        if self._conn is None or self._dimension is None:
            return 0
        row = await self._conn.execute_fetchone(f'SELECT COUNT(*) FROM "{self.table}"')
        return int(row[0])

    async def _remove(self, external_ids: List[str]) -> int:
        db = self._require_conn()
        await db.execute("BEGIN IMMEDIATE")
        try:
            found = await self.keys.lookup(db, external_ids)
            ids = list(found.values())
            if ids and self._dimension is not None:
                query = dbmod.build_in_query(f'DELETE FROM "{self.table}" WHERE rowid IN ', ids)
                await db.execute(query.text, query.params)
            await dbmod.delete_vector_keys(db, self.namespace, ids)
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
        self.keys.forget(found.values())
        return len(found)

    def scratch(self) -> "SqliteVecBackend":
        return SqliteVecBackend(
            self.db_path,
            index_dir=self.index_dir,
            extension_dirs=self.extension_dirs,
            namespace=SELFTEST_NAMESPACE,
        )

    async def _drop_native(self) -> None:
        if self._conn is not None:
            await self._conn.execute(f'DROP TABLE IF EXISTS "{self.table}"')

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise BackendUnavailable("sqlite-vec backend is not loaded")
        return self._conn

    async def close(self) -> None:
        await super().close()
        if self._conn is not None:
            await self._conn.close()
            self._conn = None


class _borrowed:
    """Async context manager yielding an already-open connection without closing it."""

    def __init__(self, conn: Optional[aiosqlite.Connection]) -> None:
        if conn is None:
            raise BackendUnavailable("sqlite-vec backend is not loaded")
        self.conn = conn

    async def __aenter__(self) -> aiosqlite.Connection:
        return self.conn

    async def __aexit__(self, *exc: Any) -> None:
        return None


async def run_self_test(backend: VectorBackend, dimension: int) -> None:
    """Insert, query and clean up one sentinel vector on a scratch namespace.

    Raises on any failed step.
    """
    scratch = backend.scratch()
    try:
        await scratch.load()
        # Leftovers from an interrupted earlier run.
        await scratch.drop()
        before = await scratch.count()
        await scratch.ensure_table(dimension)
        probe = np.linspace(0.1, 1.0, int(dimension), dtype=np.float32)
        await scratch.upsert(SELFTEST_ID, probe)
        after = await scratch.count()
        if after <= before:
            raise BackendUnavailable(f"self-test upsert did not add a record ({before} -> {after})")
        hits = await scratch._nearest(probe, 1)
        if not hits or hits[0].id != SELFTEST_ID:
            raise BackendUnavailable(f"self-test query returned {hits!r}")
    finally:
        try:
            if scratch._loaded:
                await scratch.drop()
        finally:
            await scratch.close()


@dataclass(frozen=True)
class ProbeAttempt:
    kind: BackendKind
    ok: bool
    detail: str


@dataclass(frozen=True)
class VectorBackendStatus:
    backend_kind: BackendKind
    dimension: Optional[int]
    record_count: int
    self_test_passed: bool
    probes: Tuple[ProbeAttempt, ...] = ()


@dataclass
class BackendHandle:
    """The backend chosen at startup, passed to indexing and search."""

    backend: VectorBackend
    kind: BackendKind
    self_test_passed: bool
    probes: List[ProbeAttempt] = field(default_factory=list)

    async def status(self) -> VectorBackendStatus:
        return VectorBackendStatus(
            backend_kind=self.kind,
            dimension=self.backend.dimension,
            record_count=await self.backend.count(),
            self_test_passed=self.self_test_passed,
            probes=tuple(self.probes),
        )

    async def close(self) -> None:
        await self.backend.close()


def probe_order(platform_name: Optional[str] = None) -> List[BackendKind]:
    platform_name = platform_name or sys.platform
    if platform_name.startswith("win"):
        return [BackendKind.SQLITE_VEC, BackendKind.FAISS]
    return [BackendKind.FAISS, BackendKind.SQLITE_VEC]


BackendFactory = Callable[[], VectorBackend]


class BackendSelector:
    def __init__(
        self,
        cfg: CodememConfig,
        db_path: Optional[str] = None,
        *,
        factories: Optional[Dict[BackendKind, BackendFactory]] = None,
        platform_name: Optional[str] = None,
    ) -> None:
        self.cfg = cfg
        self.db_path = db_path or cfg.db_path
        self.platform_name = platform_name
        self.factories: Dict[BackendKind, BackendFactory] = {
            BackendKind.SQLITE_VEC: lambda: SqliteVecBackend(
                self.db_path, index_dir=cfg.index_dir, extension_dirs=cfg.extension_dirs
            ),
            BackendKind.FAISS: lambda: FaissBackend(self.db_path, cfg.index_dir),
            BackendKind.COMPUTED: lambda: ComputedBackend(self.db_path),
        }
        if factories:
            self.factories.update(factories)

    def candidates(self) -> List[BackendKind]:
        choice = (self.cfg.vector_backend or "auto").lower()
        if choice == "auto":
            return probe_order(self.platform_name)
        if choice == BackendKind.COMPUTED.value:
            return []
        return [BackendKind(choice)]

    async def select(self) -> BackendHandle:
        dimension = int(self.cfg.self_test_dimension)
        probes: List[ProbeAttempt] = []
        for kind in self.candidates():
            backend = self.factories[kind]()
            try:
                await backend.load()
                await run_self_test(backend, dimension)
            except Exception as exc:
                logging.warning("Vector backend %s unavailable: %s", kind.value, exc, exc_info=True)
                probes.append(ProbeAttempt(kind, False, str(exc)))
                await _close_logged(backend)
                continue
            backend.mark_self_tested()
            probes.append(ProbeAttempt(kind, True, "self-test passed"))
            logging.info("Selected vector backend %s", kind.value)
            return BackendHandle(backend, kind, True, probes)

        backend = self.factories[BackendKind.COMPUTED]()
        await backend.load()
        passed = True
        detail = "self-test passed"
        try:
            await run_self_test(backend, dimension)
        except Exception as exc:
            logging.warning("Computed vector backend failed its self-test: %s", exc, exc_info=True)
            passed = False
            detail = str(exc)
        if passed:
            backend.mark_self_tested()
        probes.append(ProbeAttempt(BackendKind.COMPUTED, passed, detail))
        logging.info("Selected vector backend %s", BackendKind.COMPUTED.value)
        return BackendHandle(backend, BackendKind.COMPUTED, passed, probes)


async def _close_logged(backend: VectorBackend) -> None:
    try:
        await backend.close()
    except Exception:
        logging.warning("Failed to close vector backend %s", backend.kind.value, exc_info=True)


async def select_backend(cfg: CodememConfig, db_path: Optional[str] = None) -> BackendHandle:
    return await BackendSelector(cfg, db_path).select()
