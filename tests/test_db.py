import asyncio

import pytest

pytest.importorskip("aiosqlite")
pytest.importorskip("tokenizers")

from codemem import db as dbmod
from codemem.chunking import window_chunks, SourceFile


def _source(path, text, digest="d1"):
    return SourceFile(
        path=path,
        language=None,
        content_digest=digest,
        line_count=len(text.splitlines()),
        size_bytes=len(text.encode()),
    )


def test_replace_file_chunks_swaps_atomically(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    old_text = "alpha beta\ngamma\n"
    new_text = "delta epsilon\n"

    async def _run():
        await dbmod.init_db(db_path)
        old = window_chunks(rel_path="notes.txt", text=old_text, language=None, window_lines=1)
        removed = await dbmod.replace_file_chunks(
            db_path, source_file=_source("notes.txt", old_text), parse_mode="fallback", chunks=old
        )
        assert removed == []
        assert [c.content for c in await dbmod.fetch_file_chunks(db_path, "notes.txt")] == [
            "alpha beta",
            "gamma",
        ]

        new = window_chunks(rel_path="notes.txt", text=new_text, language=None, window_lines=1)
        removed = await dbmod.replace_file_chunks(
            db_path, source_file=_source("notes.txt", new_text, "d2"), parse_mode="fallback", chunks=new
        )
        assert sorted(removed) == sorted(c.chunk_id for c in old)
        row = await dbmod.fetch_source_file(db_path, "notes.txt")
        assert row.content_digest == "d2"
        assert row.parse_mode == "fallback"

        assert await dbmod.lexical_search(db_path, match='"gamma"', limit=10) == []
        hits = await dbmod.lexical_search(db_path, match='"epsilon"', limit=10)
        assert [h.chunk.chunk_id for h in hits] == [new[0].chunk_id]
        assert hits[0].rank == 0

        await dbmod.invalidate_source_digest(db_path, "notes.txt")
        assert (await dbmod.fetch_source_file(db_path, "notes.txt")).content_digest == ""

        removed = await dbmod.delete_source_file(db_path, "notes.txt")
        assert removed == [new[0].chunk_id]
        assert await dbmod.list_source_paths(db_path) == []
        assert await dbmod.lexical_search(db_path, match='"epsilon"', limit=10) == []
        await dbmod.close_db_pool()

    asyncio.run(_run())


def test_lexical_body_chars_rebuilds_index(tmp_path):
    db_path = str(tmp_path / "codemem.db")
    text = "short " + "filler " * 20 + "needle\n"

    async def _run():
        await dbmod.init_db(db_path, lexical_body_chars=2000)
        chunks = window_chunks(rel_path="a.txt", text=text, language=None, window_lines=10)
        await dbmod.replace_file_chunks(
            db_path, source_file=_source("a.txt", text), parse_mode="fallback", chunks=chunks
        )
        assert len(await dbmod.lexical_search(db_path, match="needle", limit=5)) == 1

        await dbmod.init_db(db_path, lexical_body_chars=20)
        assert await dbmod.lexical_search(db_path, match="needle", limit=5) == []
        # Re-opening without an explicit length keeps the current one.
        await dbmod.init_db(db_path)
        assert await dbmod.lexical_search(db_path, match="needle", limit=5) == []
        await dbmod.close_db_pool()

    asyncio.run(_run())


def test_lexical_search_rejects_bad_syntax(tmp_path):
    from codemem.errors import QuerySyntaxError

    db_path = str(tmp_path / "codemem.db")

    async def _run():
        await dbmod.init_db(db_path)
        try:
            with pytest.raises(QuerySyntaxError):
                await dbmod.lexical_search(db_path, match="foo(", limit=5)
            assert await dbmod.lexical_search(db_path, match='""', limit=5) == []
        finally:
            await dbmod.close_db_pool()

    asyncio.run(_run())


def test_embedding_cache_roundtrip(tmp_path):
    db_path = str(tmp_path / "codemem.db")

    async def _run():
        await dbmod.init_db(db_path)
        await dbmod.upsert_embedding_cache(db_path, model_name="m", rows=[("h1", b"\x00\x01")])
        assert await dbmod.fetch_embedding_cache(db_path, model_name="m", content_hashes=["h1", "h2"]) == {
            "h1": b"\x00\x01"
        }
        assert await dbmod.fetch_embedding_cache(db_path, model_name="other", content_hashes=["h1"]) == {}
        await dbmod.close_db_pool()

    asyncio.run(_run())
