import asyncio

import pytest

pytest.importorskip("aiosqlite")
np = pytest.importorskip("numpy")
pytest.importorskip("numba")

from codemem import db as dbmod
from codemem import vectors
from codemem.config import CodememConfig
from codemem.errors import BackendUnavailable, DimensionMismatch


def _vec(*values):
    return np.asarray(values, dtype=np.float32)


@pytest.mark.asyncio
async def test_computed_upsert_query_count(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    backend = vectors.ComputedBackend(db_path)
    try:
        await backend.load()
        assert await backend.query_nearest(_vec(1, 0, 0), 5) == []

        await backend.upsert_many(
            [("a", _vec(1, 0, 0)), ("b", _vec(0, 1, 0)), ("c", _vec(0.9, 0.1, 0))]
        )
        assert backend.dimension == 3
        assert await backend.count() == 3

        hits = await backend.query_nearest(_vec(1, 0, 0), 2)
        assert [h.id for h in hits] == ["a", "c"]
        assert hits[0].distance == pytest.approx(0.0)
        assert hits[0].distance <= hits[1].distance

        # Upserting an existing id replaces its vector.
        await backend.upsert("b", _vec(1, 0, 0))
        assert await backend.count() == 3
        hits = await backend.query_nearest(_vec(1, 0, 0), 2)
        assert {h.id for h in hits} == {"a", "b"}

        assert await backend.query_nearest(_vec(1, 0, 0), 0) == []
    finally:
        await backend.close()
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_dimension_mismatch_writes_nothing(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    backend = vectors.ComputedBackend(db_path)
    try:
        await backend.load()
        assert await backend.ensure_table(3) == 3
        await backend.upsert("a", _vec(1, 0, 0))

        with pytest.raises(DimensionMismatch):
            await backend.upsert_many([("b", _vec(0, 1, 0)), ("c", _vec(1, 2))])
        assert await backend.count() == 1
        # A matrix is never flattened into a row.
        with pytest.raises(DimensionMismatch):
            await backend.upsert("d", np.ones((3, 1), dtype=np.float32))
        assert await backend.count() == 1
        assert await backend.external_ids() == ["a"]

        with pytest.raises(DimensionMismatch):
            await backend.query_nearest(_vec(1, 0), 1)
    finally:
        await backend.close()
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_ensure_table_is_idempotent(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    backend = vectors.ComputedBackend(db_path)
    try:
        await backend.load()
        assert await backend.ensure_table(4) == 4
        assert await backend.ensure_table(4) == 4
        assert await backend.ensure_table(8) == 4
        assert backend.dimension == 4
        with pytest.raises(ValueError):
            await backend.ensure_table(0)
    finally:
        await backend.close()
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_keys_survive_restart(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    first = vectors.ComputedBackend(db_path)
    await first.load()
    await first.upsert_many([("a", _vec(1, 0)), ("b", _vec(0, 1))])
    async with dbmod.get_connection(db_path) as db:
        before = await dbmod.fetch_internal_ids(db, first.namespace, ["a", "b"])
    await first.close()
    await dbmod.close_db_pool()

    second = vectors.ComputedBackend(db_path)
    try:
        await second.load()
        assert second.dimension == 2
        assert await second.count() == 2
        await second.upsert("a", _vec(0.5, 0.5))
        async with dbmod.get_connection(db_path) as db:
            after = await dbmod.fetch_internal_ids(db, second.namespace, ["a", "b"])
        assert after == before
        hits = await second.query_nearest(_vec(0, 1), 1)
        assert hits[0].id == "b"
    finally:
        await second.close()
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_remove_and_orphan_hits(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    backend = vectors.ComputedBackend(db_path)
    try:
        await backend.load()
        await backend.upsert_many([("a", _vec(1, 0)), ("b", _vec(0, 1)), ("c", _vec(1, 1))])
        assert await backend.remove(["c", "missing"]) == 1
        assert await backend.external_ids() == ["a", "b"]

        # A key row lost behind the backend's back leaves an orphan vector.
        async with dbmod.get_connection(db_path) as db:
            await db.execute("DELETE FROM vector_keys WHERE external_id = ?", ("b",))
        backend.keys.clear()
        hits = await backend.query_nearest(_vec(0, 1), 5)
        assert [h.id for h in hits] == ["a"]
    finally:
        await backend.close()
        await dbmod.close_db_pool()


def test_namespace_is_validated(tmp_path):
    with pytest.raises(ValueError):
        vectors.ComputedBackend(str(tmp_path / "codemem.db"), namespace="bad name;")


def test_probe_order():
    assert vectors.probe_order("win32") == [vectors.BackendKind.SQLITE_VEC, vectors.BackendKind.FAISS]
    assert vectors.probe_order("linux") == [vectors.BackendKind.FAISS, vectors.BackendKind.SQLITE_VEC]
    assert vectors.probe_order("darwin") == [vectors.BackendKind.FAISS, vectors.BackendKind.SQLITE_VEC]


class _Unloadable(vectors.ComputedBackend):
    async def _load_native(self):
        raise BackendUnavailable("native library missing")


class _BadSelfTest(vectors.ComputedBackend):
    async def _search(self, query, k):
        return []

    def scratch(self):
        return _BadSelfTest(self.db_path, namespace=vectors.SELFTEST_NAMESPACE)


@pytest.mark.asyncio
async def test_selector_falls_back_to_computed(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    cfg = CodememConfig(db_path=db_path, index_dir=str(tmp_path))
    selector = vectors.BackendSelector(
        cfg,
        factories={
            vectors.BackendKind.FAISS: lambda: _Unloadable(db_path),
            vectors.BackendKind.SQLITE_VEC: lambda: _Unloadable(db_path),
        },
        platform_name="linux",
    )
    handle = await selector.select()
    try:
        assert handle.kind == vectors.BackendKind.COMPUTED
        assert handle.self_test_passed
        assert handle.backend.is_available()
        assert [(p.kind, p.ok) for p in handle.probes] == [
            (vectors.BackendKind.FAISS, False),
            (vectors.BackendKind.SQLITE_VEC, False),
            (vectors.BackendKind.COMPUTED, True),
        ]
        status = await handle.status()
        assert status.backend_kind == vectors.BackendKind.COMPUTED
        assert status.record_count == 0
        assert status.dimension is None

        # The self-test leaves nothing behind.
        async with dbmod.get_connection(db_path) as db:
            leftovers = await dbmod.fetch_all_vector_keys(db, vectors.SELFTEST_NAMESPACE)
        assert leftovers == {}
    finally:
        await handle.close()
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_selector_rejects_failed_self_test(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    cfg = CodememConfig(db_path=db_path, vector_backend="faiss")
    selector = vectors.BackendSelector(
        cfg,
        factories={vectors.BackendKind.FAISS: lambda: _BadSelfTest(db_path)},
    )
    assert selector.candidates() == [vectors.BackendKind.FAISS]
    handle = await selector.select()
    try:
        assert handle.kind == vectors.BackendKind.COMPUTED
        assert handle.probes[0].kind == vectors.BackendKind.FAISS
        assert not handle.probes[0].ok
        assert "self-test" in handle.probes[0].detail
    finally:
        await handle.close()
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_forced_computed_probes_nothing_else(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    cfg = CodememConfig(db_path=db_path, vector_backend="computed")
    selector = vectors.BackendSelector(cfg)
    assert selector.candidates() == []
    handle = await selector.select()
    try:
        assert handle.kind == vectors.BackendKind.COMPUTED
        assert [p.kind for p in handle.probes] == [vectors.BackendKind.COMPUTED]
    finally:
        await handle.close()
        await dbmod.close_db_pool()


def test_faiss_backend_roundtrip(tmp_path):
    pytest.importorskip("faiss")
    db_path = str(tmp_path / "codemem.db")

    async def _run():
        backend = vectors.FaissBackend(db_path, str(tmp_path))
        await backend.load()
        await vectors.run_self_test(backend, 8)
        backend.mark_self_tested()
        await backend.upsert_many([("a", _vec(1, 0)), ("b", _vec(0, 1))])
        hits = await backend.query_nearest(_vec(0, 1), 1)
        assert hits[0].id == "b"
        assert hits[0].distance == pytest.approx(0.0, abs=1e-6)
        await backend.close()

        reopened = vectors.FaissBackend(db_path, str(tmp_path))
        await reopened.load()
        assert await reopened.count() == 2
        assert await reopened.remove(["a"]) == 1
        assert await reopened.count() == 1
        await reopened.close()
        await dbmod.close_db_pool()

    asyncio.run(_run())


def test_sqlite_vec_backend_roundtrip(tmp_path):
    pytest.importorskip("sqlite_vec")
    db_path = str(tmp_path / "codemem.db")

    async def _run():
        backend = vectors.SqliteVecBackend(db_path, index_dir=str(tmp_path))
        try:
            await backend.load()
        except BackendUnavailable as exc:
            await dbmod.close_db_pool()
            pytest.skip(f"sqlite-vec cannot load here: {exc}")
        backend.mark_self_tested()
        await backend.upsert_many([("a", _vec(1, 0, 0)), ("b", _vec(0, 0, 1))])
        hits = await backend.query_nearest(_vec(0, 0, 1), 2)
        assert [h.id for h in hits] == ["b", "a"]
        assert await backend.count() == 2
        await backend.close()

        # A saved dimension recreates the vec0 table on the next load.
        reopened = vectors.SqliteVecBackend(db_path, index_dir=str(tmp_path))
        await reopened.load()
        reopened.mark_self_tested()
        assert reopened.dimension == 3
        assert await reopened.count() == 2
        hits = await reopened.query_nearest(_vec(1, 0, 0), 1)
        assert hits[0].id == "a"
        await reopened.close()
        await dbmod.close_db_pool()

    asyncio.run(_run())


@pytest.mark.asyncio
async def test_first_vector_must_be_a_row(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    backend = vectors.ComputedBackend(db_path)
    try:
        await backend.load()
        with pytest.raises(DimensionMismatch):
            await backend.upsert("x", np.ones((2, 4), dtype=np.float32))
        assert backend.dimension is None
        assert await backend.count() == 0
    finally:
        await backend.close()
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_untested_native_backend_answers_nothing(tmp_path):
    db_path = str(tmp_path / "codemem.db")

    class _Native(vectors.ComputedBackend):
        def is_available(self):
            return self._loaded and self._self_tested

    backend = _Native(db_path)
    try:
        await backend.load()
        await backend.upsert("a", _vec(1, 0))
        assert await backend.query_nearest(_vec(1, 0), 1) == []
        backend.mark_self_tested()
        assert [h.id for h in await backend.query_nearest(_vec(1, 0), 1)] == ["a"]
    finally:
        await backend.close()
        await dbmod.close_db_pool()


@pytest.mark.asyncio
async def test_backend_kind_change_discards_foreign_vectors(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    await dbmod.init_db(db_path)
    async with dbmod.get_connection(db_path) as db:
        await db.execute(
            "INSERT INTO source_files(path, content_digest, size_bytes, language, parse_mode) "
            "VALUES ('a.py', 'abc', 3, 'python', 'heuristic')"
        )
        await db.commit()
    first = vectors.ComputedBackend(db_path)
    await first.load()
    await first.upsert_many([("a", _vec(1, 0)), ("b", _vec(0, 1))])
    await first.close()

    class _OtherKind(vectors.ComputedBackend):
        kind = vectors.BackendKind.FAISS

    second = _OtherKind(db_path)
    try:
        await second.load()
        assert second.dimension is None
        assert await second.count() == 0
        assert await second.external_ids() == []
        row = await dbmod.fetch_source_file(db_path, "a.py")
        assert row.content_digest == ""

        await second.upsert("c", _vec(1, 0, 0))
        assert second.dimension == 3
    finally:
        await second.close()
        await dbmod.close_db_pool()
