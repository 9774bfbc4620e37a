import asyncio

import pytest

pytest.importorskip("aiosqlite")
pytest.importorskip("tokenizers")

from codemem import db as dbmod
from codemem.config import CodememConfig
from codemem.errors import ParseFailure
from codemem.indexing import CodeIndex
from codemem.parsing import SymbolExtractor
from codemem.search import SearchOptions


class _FailingParser:
    def parse(self, language, source):
        raise ParseFailure("disabled in tests")


OLD = "def reconcile_old():\n    return 1\n\ndef helper_old():\n    return 2\n"
NEW = "def reconcile_new():\n    return 1\n\ndef helper_new():\n    return 2\n"


@pytest.mark.asyncio
async def test_search_sees_whole_symbol_sets_during_reindex(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    db_path = str(tmp_path / "codemem.db")
    cfg = CodememConfig(db_path=db_path, allowed_roots=[str(root)])
    await dbmod.init_db(db_path)
    index = CodeIndex(cfg, root=str(root), extractor=SymbolExtractor(_FailingParser()))
    path = root / "mod.py"
    path.write_text(OLD)
    await index.index_file(path)

    old_names = {"reconcile_old", "helper_old"}
    new_names = {"reconcile_new", "helper_new"}
    seen = []

    async def searcher():
        for _ in range(20):
            response = await index.search("return", SearchOptions(alpha=0.0))
            seen.append({r.name for r in response.results})
            await asyncio.sleep(0)

    async def writer():
        for i in range(10):
            path.write_text(NEW if i % 2 == 0 else OLD)
            await index.index_file(path)

    try:
        await asyncio.gather(searcher(), writer())
        assert seen
        for names in seen:
            assert names in (old_names, new_names)
    finally:
        await index.close()


@pytest.mark.asyncio
async def test_parallel_files_index_concurrently(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    db_path = str(tmp_path / "codemem.db")
    cfg = CodememConfig(db_path=db_path, allowed_roots=[str(root)])
    await dbmod.init_db(db_path)
    index = CodeIndex(cfg, root=str(root), extractor=SymbolExtractor(_FailingParser()))
    for i in range(6):
        (root / f"m{i}.py").write_text(f"def fn_{i}():\n    return {i}\n")
    try:
        results = await asyncio.gather(*(index.index_file(root / f"m{i}.py") for i in range(6)))
        assert sorted(r.path for r in results) == [f"m{i}.py" for i in range(6)]
        assert (await index.stats())["chunks"] == 6
    finally:
        await index.close()
