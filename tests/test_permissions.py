import asyncio
import os

import pytest

pytest.importorskip("aiosqlite")

from codemem import db as dbmod
from codemem import vectors
from codemem.security import PathContext


@pytest.mark.skipif(os.name == "nt", reason="Windows permissions differ")
def test_db_permissions(tmp_path):
    db_path = tmp_path / "codemem.db"
    dbmod.ensure_db_permissions(str(db_path))
    mode = db_path.stat().st_mode & 0o777
    assert mode == 0o600


@pytest.mark.skipif(os.name == "nt", reason="Windows permissions differ")
def test_faiss_index_permissions(tmp_path):
    faiss = pytest.importorskip("faiss")
    path_context = PathContext([str(tmp_path)])
    index = faiss.IndexIDMap2(faiss.IndexFlatL2(2))
    index_path = tmp_path / "chunks.faiss"
    vectors._save_faiss(index, path_context, str(index_path))
    assert index_path.stat().st_mode & 0o777 == 0o600
    loaded = vectors._load_faiss(str(index_path))
    assert loaded.d == 2


@pytest.mark.skipif(os.name == "nt", reason="Windows permissions differ")
def test_init_db_creates_private_file(tmp_path):
    db_path = str(tmp_path / "nested" / "codemem.db")

    async def _run():
        await dbmod.init_db(db_path)
        await dbmod.close_db_pool()

    asyncio.run(_run())
    assert os.stat(db_path).st_mode & 0o777 == 0o600
