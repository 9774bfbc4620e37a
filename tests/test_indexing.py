import pytest

pytest.importorskip("aiosqlite")
pytest.importorskip("tokenizers")
np = pytest.importorskip("numpy")

from codemem import db as dbmod
from codemem.config import CodememConfig
from codemem.embeddings import EmbeddingService
from codemem.errors import ParseFailure
from codemem.indexing import CodeIndex, IndexResult, Skipped
from codemem.parsing import SymbolExtractor
from codemem.search import SearchMode, SearchOptions
from codemem.symbols import SymbolKind
from codemem.vectors import BackendHandle, BackendKind, ComputedBackend


class _FailingParser:
    def parse(self, language, source):
        raise ParseFailure("disabled in tests")


class _KeywordEmbedder:
    """Deterministic 4-d embedding from keyword counts."""

    def __init__(self, fail=False):
        self.fail = fail
        self.texts = []

    async def encode(self, texts):
        if self.fail:
            raise RuntimeError("embedding server down")
        self.texts.extend(texts)
        rows = [
            [t.count("reconcile"), t.count("payment"), t.count("audit"), 1.0]
            for t in texts
        ]
        return np.asarray(rows, dtype=np.float32)

    async def close(self):
        return None


LEDGER = (
    "class Ledger:\n"
    "    def reconcile(self, payments):\n"
    "        return payments\n"
)


async def _make_index(tmp_path, embedder=None):
    root = tmp_path / "repo"
    root.mkdir(exist_ok=True)
    db_path = str(tmp_path / "codemem.db")
    cfg = CodememConfig(db_path=db_path, index_dir=str(tmp_path), allowed_roots=[str(root)])
    await dbmod.init_db(db_path, lexical_body_chars=cfg.lexical_body_chars)
    backend = ComputedBackend(db_path)
    await backend.load()
    handle = BackendHandle(backend, BackendKind.COMPUTED, True)
    service = EmbeddingService(embedder, model_name="keywords") if embedder is not None else None
    index = CodeIndex(
        cfg,
        root=str(root),
        handle=handle,
        embedder=service,
        extractor=SymbolExtractor(_FailingParser()),
    )
    return index, root


@pytest.mark.asyncio
async def test_index_file_writes_chunks_and_vectors(tmp_path):
    embedder = _KeywordEmbedder()
    index, root = await _make_index(tmp_path, embedder)
    try:
        (root / "ledger.py").write_text(LEDGER)
        result = await index.index_file(root / "ledger.py")
        assert isinstance(result, IndexResult)
        assert result.path == "ledger.py"
        assert result.chunks_written == 2
        assert result.vectors_written == 2
        assert result.parse_mode == "heuristic"

        symbols = await index.get_symbols("ledger.py")
        assert [(s.name, s.kind, s.parent) for s in symbols] == [
            ("Ledger", SymbolKind.CLASS, None),
            ("reconcile", SymbolKind.METHOD, "Ledger"),
        ]

        status = await index.vector_backend_status()
        assert status.backend_kind == BackendKind.COMPUTED
        assert status.dimension == 4
        assert status.record_count == 2

        response = await index.search("reconcile", SearchOptions(alpha=0.5))
        assert response.mode == SearchMode.HYBRID
        assert response.results[0].name == "reconcile"

        stats = await index.stats()
        assert stats["files"] == 1
        assert stats["chunks"] == 2
        assert stats["vector_backend"] == "computed"
        assert stats["vectors"] == 2
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_unchanged_file_is_skipped_and_embeddings_are_cached(tmp_path):
    embedder = _KeywordEmbedder()
    index, root = await _make_index(tmp_path, embedder)
    try:
        path = root / "ledger.py"
        path.write_text(LEDGER)
        first = await index.index_file_if_changed(path)
        assert isinstance(first, IndexResult)
        assert len(embedder.texts) == 2

        second = await index.index_file_if_changed(path)
        assert isinstance(second, Skipped)
        assert second.digest == first.digest
        assert len(embedder.texts) == 2

        path.write_text(LEDGER + "\n\ndef audit():\n    pass\n")
        third = await index.index_file_if_changed(path)
        assert isinstance(third, IndexResult)
        assert third.chunks_written == 3
        assert third.chunks_removed == 0
        # Only the new function reached the embedder.
        assert len(embedder.texts) == 3
        assert "audit" in embedder.texts[-1]
        assert await index.handle.backend.count() == 3
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_remove_file_purges_chunks_and_vectors(tmp_path):
    index, root = await _make_index(tmp_path, _KeywordEmbedder())
    try:
        (root / "ledger.py").write_text(LEDGER)
        await index.index_file(root / "ledger.py")
        (root / "ledger.py").unlink()

        assert await index.remove_file("ledger.py") == 2
        assert await index.get_symbols("ledger.py") == []
        assert await index.handle.backend.count() == 0
        assert await index.list_orphan_vectors() == []
        assert (await index.stats())["files"] == 0
        assert await index.remove_file("ledger.py") == 0
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_list_orphan_vectors(tmp_path):
    index, root = await _make_index(tmp_path, _KeywordEmbedder())
    try:
        (root / "ledger.py").write_text(LEDGER)
        await index.index_file(root / "ledger.py")
        await index.handle.backend.upsert("ghost", np.ones(4, dtype=np.float32))
        assert await index.list_orphan_vectors() == ["ghost"]
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_embedding_failure_indexes_lexically(tmp_path):
    index, root = await _make_index(tmp_path, _KeywordEmbedder(fail=True))
    try:
        (root / "ledger.py").write_text(LEDGER)
        result = await index.index_file(root / "ledger.py")
        assert result.chunks_written == 2
        assert result.vectors_written == 0
        assert await index.handle.backend.count() == 0
        response = await index.search("reconcile", SearchOptions(alpha=0.0))
        assert [r.name for r in response.results] == ["reconcile"]
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_index_paths_walks_directories(tmp_path):
    index, root = await _make_index(tmp_path)
    try:
        (root / "pkg").mkdir()
        (root / "pkg" / "ledger.py").write_text(LEDGER)
        (root / "notes.txt").write_text("reconcile the books monthly\n")
        (root / "logo.png").write_bytes(b"\x89PNG\r\n")
        (root / "node_modules").mkdir()
        (root / "node_modules" / "dep.js").write_text("function dep() {}\n")

        batch = await index.index_paths([root, "missing.py"], concurrency=2)
        by_path = {r.path: r for r in batch.indexed}
        assert set(by_path) == {"pkg/ledger.py", "notes.txt", "logo.png"}
        assert by_path["pkg/ledger.py"].chunks_written == 2
        assert by_path["notes.txt"].parse_mode == "fallback"
        assert by_path["logo.png"].chunks_written == 0
        assert "unsupported extension" in by_path["logo.png"].skipped_reason
        assert len(batch.errors) == 1
        assert next(iter(batch.errors)).endswith("missing.py")

        again = await index.index_paths([root])
        assert again.indexed == []
        assert {s.path for s in again.skipped} == {"pkg/ledger.py", "notes.txt", "logo.png"}
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_open_selects_backend(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    cfg = CodememConfig(
        db_path=str(tmp_path / "codemem.db"),
        index_dir=str(tmp_path),
        allowed_roots=[str(root)],
        vector_backend="computed",
    )
    index = await CodeIndex.open(cfg)
    try:
        assert index.embedder is None
        assert index.handle.kind == BackendKind.COMPUTED
        assert index.root == str(root.resolve())
        response = await index.search("anything")
        assert response.results == []
        assert response.degraded
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_switching_backend_reindexes_vectors(tmp_path):
    pytest.importorskip("faiss")
    from codemem.vectors import FaissBackend

    index, root = await _make_index(tmp_path, _KeywordEmbedder())
    (root / "ledger.py").write_text(LEDGER)
    first = await index.index_paths([root])
    assert [r.path for r in first.indexed] == ["ledger.py"]
    assert await index.handle.backend.count() == 2
    cfg = index.cfg
    await index.close()

    backend = FaissBackend(cfg.db_path, cfg.index_dir)
    await backend.load()
    backend.mark_self_tested()
    # The computed backend's keys and dimension are discarded.
    assert backend.dimension is None
    assert await backend.external_ids() == []
    index = CodeIndex(
        cfg,
        root=str(root),
        handle=BackendHandle(backend, BackendKind.FAISS, True),
        embedder=EmbeddingService(_KeywordEmbedder(), model_name="keywords"),
        extractor=SymbolExtractor(_FailingParser()),
    )
    try:
        second = await index.index_paths([root])
        assert [r.path for r in second.indexed] == ["ledger.py"]
        assert second.skipped == []
        assert await backend.count() == 2
        assert backend.dimension == 4
        assert await index.list_orphan_vectors() == []

        response = await index.search("reconcile", SearchOptions(alpha=1.0))
        assert response.mode == SearchMode.VECTOR_ONLY
        assert {r.name for r in response.results} == {"Ledger", "reconcile"}
    finally:
        await index.close()
