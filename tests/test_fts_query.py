import pytest

pytest.importorskip("aiosqlite")

from codemem import db as dbmod
from codemem.errors import QuerySyntaxError


def test_build_fts_query_modes():
    assert dbmod.build_fts_query("foo bar", mode="strict") == '"foo" AND "bar"'
    assert dbmod.build_fts_query("foo bar", mode="any") == '"foo" OR "bar"'


def test_build_fts_query_phrases():
    query = '"foo bar" baz'
    assert dbmod.build_fts_query(query, mode="strict") == '"foo bar" AND "baz"'


def test_build_fts_query_strips_operators():
    assert dbmod.build_fts_query("foo( AND bar*") == '"foo" AND "bar"'
    assert dbmod.build_fts_query("name:reconcile") == '"name" AND "reconcile"'
    assert dbmod.build_fts_query("C++") == '"C++"'
    assert dbmod.build_fts_query("  ") == '""'
    assert dbmod.build_fts_query("NOT or") == '""'


def test_build_fts_query_limits():
    with pytest.raises(QuerySyntaxError):
        dbmod.build_fts_query(" ".join(f"t{i}" for i in range(51)))
    assert dbmod.build_fts_query("x" * 100) == '"' + "x" * 64 + '"'
