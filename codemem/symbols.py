from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union


class SymbolKind(str, Enum):
    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE = "type"
    VARIABLE = "variable"
    IMPORT = "import"


# Kinds whose bodies hold methods rather than nested functions.
CLASS_LIKE_KINDS = frozenset({SymbolKind.CLASS, SymbolKind.INTERFACE})
CALLABLE_KINDS = frozenset({SymbolKind.FUNCTION, SymbolKind.METHOD})


class ParseMode(str, Enum):
    AST = "ast"
    HEURISTIC = "heuristic"
    FALLBACK = "fallback"


class DocRule(str, Enum):
    # A string literal opening the body, on the line after the signature.
    BODY_STRING = "body_string"
    # A comment block whose last line sits directly above the declaration.
    LEADING_COMMENT = "leading_comment"


class SkipReason(str, Enum):
    OUT_OF_BOUNDS = "out_of_bounds"
    INVERTED_SPAN = "inverted_span"
    NO_NAME = "no_name"


@dataclass(frozen=True)
class Symbol:
    """A named syntactic unit. Lines are 0-based rows, both ends inclusive."""

    name: str
    kind: SymbolKind
    start_line: int
    end_line: int
    start_byte: int
    end_byte: int
    signature: Optional[str] = None
    docstring: Optional[str] = None
    parent: Optional[str] = None
    exported: bool = False
    is_async: bool = False
    # Declared inside another symbol, with or without a named parent.
    nested: bool = False


@dataclass(frozen=True)
class SkippedNode:
    node_type: str
    start_line: int
    end_line: int
    reason: SkipReason
    name: Optional[str] = None


# Per-node outcome of an extraction pass; skips are kept for diagnostics.
NodeOutcome = Union[Symbol, SkippedNode]


def split_lines(text: str) -> List[str]:
    """Split on newlines the way tree-sitter counts rows.

    A trailing newline does not open an extra (empty) line.
    """
    if not text:
        return []
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


def split_byte_lines(data: bytes) -> List[bytes]:
    """Raw counterpart of split_lines; both split on the same newline bytes."""
    if not data:
        return []
    lines = data.split(b"\n")
    if data.endswith(b"\n"):
        lines.pop()
    return lines


def count_lines(text: str) -> int:
    if not text:
        return 0
    n = text.count("\n")
    return n if text.endswith("\n") else n + 1


def check_span(start_line: int, end_line: int, line_count: int) -> Optional[SkipReason]:
    if start_line > end_line:
        return SkipReason.INVERTED_SPAN
    if start_line < 0 or end_line >= line_count:
        return SkipReason.OUT_OF_BOUNDS
    return None


def symbols_of(outcomes: List[NodeOutcome]) -> List[Symbol]:
    return [o for o in outcomes if isinstance(o, Symbol)]


def skips_of(outcomes: List[NodeOutcome]) -> List[SkippedNode]:
    return [o for o in outcomes if isinstance(o, SkippedNode)]


_STRING_PREFIX = re.compile(r"^[rRuUbBfF]{0,2}")
_COMMENT_MARKERS = re.compile(r"^\s*(?:///?|/\*\*?|\*|#+)\s?")


def clean_docstring(raw: str) -> Optional[str]:
    """Strip quote delimiters from a string-literal docstring."""
    text = _STRING_PREFIX.sub("", raw.strip(), count=1)
    for quote in ('"""', "'''", '"', "'"):
        if text.startswith(quote):
            text = text[len(quote):]
            if text.endswith(quote):
                text = text[: -len(quote)]
            break
    lines = [ln.strip() for ln in text.strip().splitlines()]
    cleaned = "\n".join(lines).strip()
    return cleaned or None


def clean_comment(lines: List[str]) -> Optional[str]:
    out: List[str] = []
    for line in lines:
        stripped = line.strip()
        if stripped.endswith("*/"):
            stripped = stripped[:-2]
        stripped = _COMMENT_MARKERS.sub("", stripped).rstrip()
        out.append(stripped)
    cleaned = "\n".join(out).strip()
    return cleaned or None


def collapse_ws(text: str, limit: int = 300) -> str:
    return re.sub(r"\s+", " ", text).strip()[:limit]
