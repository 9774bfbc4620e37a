import pytest

from codemem.errors import ParseFailure
from codemem.parsing import SymbolExtractor, language_for_path
from codemem.symbols import ParseMode, SymbolKind


class _FailingParser:
    def parse(self, language, source):
        raise ParseFailure(f"no grammar for {language}")


PY_SOURCE = "\n".join(
    [
        "# header",
        "class Foo:",
        '    """Foo."""',
        "    def bar(self):",
        "        x = 1",
        "        return x",
        "",
        "    # trailing comment",
        "    value = 2",
        "",
        "    other = 3",
        "",
    ]
)


def test_language_for_path():
    assert language_for_path("pkg/mod.py") == "python"
    assert language_for_path("web/app.TSX") == "tsx"
    assert language_for_path("README.md") is None


def test_ast_tier_class_and_method():
    pytest.importorskip("tree_sitter_language_pack")
    extractor = SymbolExtractor()
    result = extractor.extract("pkg/foo.py", PY_SOURCE)

    assert result.parse_mode == ParseMode.AST
    assert result.tiers_tried == [ParseMode.AST]
    by_name = {s.name: s for s in result.symbols}
    assert set(by_name) == {"Foo", "bar"}

    foo = by_name["Foo"]
    assert foo.kind == SymbolKind.CLASS
    assert (foo.start_line, foo.end_line) == (1, 10)
    assert foo.parent is None

    bar = by_name["bar"]
    assert bar.kind == SymbolKind.METHOD
    assert (bar.start_line, bar.end_line) == (3, 5)
    assert bar.parent == "Foo"


def test_parse_failure_falls_back_to_heuristics():
    extractor = SymbolExtractor(_FailingParser())
    result = extractor.extract("pkg/foo.py", PY_SOURCE)

    assert result.parse_mode == ParseMode.HEURISTIC
    assert result.tiers_tried == [ParseMode.AST, ParseMode.HEURISTIC]
    assert "no grammar" in (result.fallback_reason or "")
    names = {s.name for s in result.symbols}
    assert {"Foo", "bar"} <= names


def test_ast_skipped_when_not_allowed():
    extractor = SymbolExtractor(_FailingParser())
    result = extractor.extract("pkg/foo.py", PY_SOURCE, allow_ast=False)
    assert result.tiers_tried == [ParseMode.HEURISTIC]
    assert result.parse_mode == ParseMode.HEURISTIC


def test_heuristic_fallback_disabled():
    extractor = SymbolExtractor(_FailingParser(), heuristic_fallback=False)
    result = extractor.extract("pkg/foo.py", PY_SOURCE)
    assert result.symbols == []
    assert result.parse_mode is None
    assert result.tiers_tried == [ParseMode.AST]


def test_unsupported_language_yields_nothing():
    extractor = SymbolExtractor(_FailingParser())
    result = extractor.extract("notes.txt", "just words\n")
    assert result.symbols == []
    assert result.parse_mode is None
    assert result.tiers_tried == []


def test_malformed_input_never_raises():
    extractor = SymbolExtractor(_FailingParser())
    result = extractor.extract("broken.js", "function (\n{{{ }\n")
    assert all(s.start_line <= s.end_line for s in result.symbols)
