"""Line-oriented symbol extraction for when no syntax tree is available.

Each language has a table of ``DeclarationPattern`` rows tried in order
against every line; the first match wins. Block ends come from brace-depth
counting or indentation comparison depending on the language.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .symbols import (
    CLASS_LIKE_KINDS,
    DocRule,
    NodeOutcome,
    SkippedNode,
    Symbol,
    SymbolKind,
    check_span,
    clean_comment,
    clean_docstring,
    collapse_ws,
    split_byte_lines,
    split_lines,
)


class BlockStyle(str, Enum):
    BRACE = "brace"
    INDENT = "indent"


class Extent(str, Enum):
    BLOCK = "block"  # runs to the end of the declaration's body
    STATEMENT = "statement"  # runs until brackets balance


@dataclass(frozen=True)
class DeclarationPattern:
    pattern: "re.Pattern[str]"
    kind: SymbolKind
    extent: Extent = Extent.BLOCK
    in_class_only: bool = False
    top_level_only: bool = False
    scope_only: bool = False  # opens a class-like scope without emitting (Rust impl)


@dataclass(frozen=True)
class HeuristicGrammar:
    block_style: BlockStyle
    patterns: Tuple[DeclarationPattern, ...]
    import_pattern: Optional["re.Pattern[str]"] = None
    comment_prefixes: Tuple[str, ...] = ("//", "/*", "*")

    def is_comment(self, stripped: str) -> bool:
        return stripped.startswith(self.comment_prefixes) or stripped.endswith("*/")


# Lines whose first word is one of these are control flow, not declarations.
_NOT_A_NAME = frozenset(
    {
        "if", "for", "while", "switch", "catch", "return", "function", "else",
        "do", "try", "new", "typeof", "await", "throw", "with", "case", "delete",
        "sizeof", "using", "lock", "foreach", "yield",
    }
)

# Tabs count as four columns when comparing indentation.
TAB_WIDTH = 4
# An unclosed brace block is assumed to run this many lines at most.
UNCLOSED_BLOCK_LINES = 50

_CONTINUATION_SUFFIXES = (",", "(", "=", "|", "&", "+", "-", ":", "<", "=>", "\\")


def _p(expr: str) -> "re.Pattern[str]":
    return re.compile(expr)


_JS_PATTERNS: Tuple[DeclarationPattern, ...] = (
    DeclarationPattern(
        _p(r"^\s*(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?class\s+(?P<name>[A-Za-z_$][\w$]*)"),
        SymbolKind.CLASS,
    ),
    DeclarationPattern(
        _p(r"^\s*(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?P<async>async\s+)?function\s*\*?\s*(?P<name>[A-Za-z_$][\w$]*)"),
        SymbolKind.FUNCTION,
    ),
    DeclarationPattern(
        _p(r"^\s*(?:export\s+)?(?:declare\s+)?interface\s+(?P<name>[A-Za-z_$][\w$]*)"),
        SymbolKind.INTERFACE,
    ),
    DeclarationPattern(
        _p(r"^\s*(?:export\s+)?(?:declare\s+)?type\s+(?P<name>[A-Za-z_$][\w$]*)\s*(?:<[^=]*>)?\s*="),
        SymbolKind.TYPE,
        Extent.STATEMENT,
    ),
    DeclarationPattern(
        _p(r"^\s*(?:export\s+)?(?:declare\s+)?(?:const\s+)?enum\s+(?P<name>[A-Za-z_$][\w$]*)"),
        SymbolKind.TYPE,
    ),
    DeclarationPattern(
        _p(
            r"^\s*(?:export\s+)?(?:const|let|var)\s+(?P<name>[A-Za-z_$][\w$]*)\s*(?::[^=]+)?=\s*"
            r"(?P<async>async\s+)?(?:function\b|\([^)]*\)\s*(?::[^=]+)?=>|[A-Za-z_$][\w$]*\s*=>)"
        ),
        SymbolKind.FUNCTION,
    ),
    DeclarationPattern(
        _p(
            r"^\s*(?:(?:public|private|protected|static|readonly|override)\s+)*"
            r"(?P<name>[A-Za-z_$][\w$]*)\s*=\s*(?P<async>async\s+)?\([^)]*\)\s*(?::[^=]+)?=>"
        ),
        SymbolKind.METHOD,
        in_class_only=True,
    ),
    DeclarationPattern(
        _p(
            r"^\s*(?:(?:public|private|protected|static|readonly|override|abstract|get|set)\s+)*"
            r"(?P<async>async\s+)?\*?(?P<name>#?[A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\s*\([^;]*$"
        ),
        SymbolKind.METHOD,
        in_class_only=True,
    ),
)

_PYTHON_PATTERNS: Tuple[DeclarationPattern, ...] = (
    DeclarationPattern(_p(r"^\s*class\s+(?P<name>[A-Za-z_]\w*)"), SymbolKind.CLASS),
    DeclarationPattern(
        _p(r"^\s*(?P<async>async\s+)?def\s+(?P<name>[A-Za-z_]\w*)"),
        SymbolKind.FUNCTION,
    ),
    DeclarationPattern(
        _p(r"^(?P<name>[A-Z][A-Z0-9_]*)\s*(?::[^=]+)?=(?!=)"),
        SymbolKind.VARIABLE,
        Extent.STATEMENT,
        top_level_only=True,
    ),
)

_GO_PATTERNS: Tuple[DeclarationPattern, ...] = (
    DeclarationPattern(
        _p(r"^func\s+\(\s*(?:\w+\s+)?\*?\s*(?P<receiver>\w+)(?:\[[^\]]*\])?\s*\)\s*(?P<name>\w+)"),
        SymbolKind.METHOD,
    ),
    DeclarationPattern(_p(r"^func\s+(?P<name>\w+)"), SymbolKind.FUNCTION),
    DeclarationPattern(_p(r"^type\s+(?P<name>\w+)(?:\[[^\]]*\])?\s+struct\b"), SymbolKind.CLASS),
    DeclarationPattern(_p(r"^type\s+(?P<name>\w+)(?:\[[^\]]*\])?\s+interface\b"), SymbolKind.INTERFACE),
    DeclarationPattern(_p(r"^type\s+(?P<name>\w+)\b"), SymbolKind.TYPE, Extent.STATEMENT),
)

_JVM_MODIFIERS = (
    r"(?:(?:public|private|protected|internal|static|final|abstract|sealed|partial|"
    r"strictfp|synchronized|native|virtual|override|async|extern|unsafe|new|default|readonly)\s+)*"
)

_JAVA_LIKE_PATTERNS: Tuple[DeclarationPattern, ...] = (
    DeclarationPattern(
        _p(r"^\s*(?:@\w+(?:\([^)]*\))?\s+)*" + _JVM_MODIFIERS + r"(?:class|record|struct)\s+(?P<name>\w+)"),
        SymbolKind.CLASS,
    ),
    DeclarationPattern(
        _p(r"^\s*(?:@\w+(?:\([^)]*\))?\s+)*" + _JVM_MODIFIERS + r"(?:@?interface)\s+(?P<name>\w+)"),
        SymbolKind.INTERFACE,
    ),
    DeclarationPattern(
        _p(r"^\s*" + _JVM_MODIFIERS + r"enum\s+(?P<name>\w+)"),
        SymbolKind.TYPE,
    ),
    DeclarationPattern(
        _p(
            r"^\s*(?:@\w+(?:\([^)]*\))?\s+)*" + _JVM_MODIFIERS + r"(?:<[^>]+>\s+)?"
            r"(?P<rtype>[\w.\[\]?]+(?:<[^()]*>)?(?:\[\])*)\s+(?P<name>\w+)\s*\([^;]*$"
        ),
        SymbolKind.METHOD,
        in_class_only=True,
    ),
    DeclarationPattern(
        _p(r"^\s*(?:(?:public|private|protected|internal)\s+)?(?P<name>[A-Z]\w*)\s*\([^;]*$"),
        SymbolKind.METHOD,
        in_class_only=True,
    ),
)

_RUST_VIS = r"(?:pub(?:\([^)]*\))?\s+)?"

_RUST_PATTERNS: Tuple[DeclarationPattern, ...] = (
    DeclarationPattern(
        _p(r"^\s*impl(?:<[^>]*>)?\s+(?:[\w:]+(?:<[^>]*>)?\s+for\s+)?(?P<name>\w+)"),
        SymbolKind.CLASS,
        scope_only=True,
    ),
    DeclarationPattern(
        _p(r"^\s*" + _RUST_VIS + r"(?:const\s+)?(?P<async>async\s+)?(?:unsafe\s+)?(?:extern\s+\"[^\"]*\"\s+)?fn\s+(?P<name>\w+)"),
        SymbolKind.FUNCTION,
    ),
    DeclarationPattern(_p(r"^\s*" + _RUST_VIS + r"struct\s+(?P<name>\w+)"), SymbolKind.CLASS),
    DeclarationPattern(_p(r"^\s*" + _RUST_VIS + r"enum\s+(?P<name>\w+)"), SymbolKind.TYPE),
    DeclarationPattern(_p(r"^\s*" + _RUST_VIS + r"(?:unsafe\s+)?trait\s+(?P<name>\w+)"), SymbolKind.INTERFACE),
    DeclarationPattern(_p(r"^\s*" + _RUST_VIS + r"type\s+(?P<name>\w+)"), SymbolKind.TYPE, Extent.STATEMENT),
    DeclarationPattern(
        _p(r"^\s*" + _RUST_VIS + r"(?:const|static)\s+(?:mut\s+)?(?P<name>[A-Z_][A-Z0-9_]*)\s*:"),
        SymbolKind.VARIABLE,
        Extent.STATEMENT,
    ),
)

HEURISTIC_GRAMMARS: Dict[str, HeuristicGrammar] = {
    "python": HeuristicGrammar(
        BlockStyle.INDENT, _PYTHON_PATTERNS, _p(r"^(?:import|from)\s+[\w.]+"), ("#",)
    ),
    "javascript": HeuristicGrammar(BlockStyle.BRACE, _JS_PATTERNS, _p(r"^import\b")),
    "typescript": HeuristicGrammar(BlockStyle.BRACE, _JS_PATTERNS, _p(r"^import\b")),
    "tsx": HeuristicGrammar(BlockStyle.BRACE, _JS_PATTERNS, _p(r"^import\b")),
    "go": HeuristicGrammar(BlockStyle.BRACE, _GO_PATTERNS, _p(r"^import\b")),
    "java": HeuristicGrammar(BlockStyle.BRACE, _JAVA_LIKE_PATTERNS, _p(r"^import\s+[\w.*]+")),
    "csharp": HeuristicGrammar(BlockStyle.BRACE, _JAVA_LIKE_PATTERNS, _p(r"^using\s+[\w.=\s]+;")),
    "rust": HeuristicGrammar(BlockStyle.BRACE, _RUST_PATTERNS, _p(r"^(?:pub\s+)?use\s+")),
}


@dataclass
class _OpenSymbol:
    name: Optional[str]
    kind: SymbolKind
    end_line: int
    class_like: bool


def _indent_width(line: str) -> int:
    width = 0
    for ch in line:
        if ch == " ":
            width += 1
        elif ch == "\t":
            width += TAB_WIDTH
        else:
            break
    return width


_STRING_LITERAL = re.compile(r'"(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\'|`(?:\\.|[^`\\])*`')


class _CodeScanner:
    """Strips string literals and comments line by line, tracking /* */ state."""

    def __init__(self) -> None:
        self.in_block_comment = False

    def clean(self, line: str) -> str:
        out: List[str] = []
        rest = line
        while rest:
            if self.in_block_comment:
                end = rest.find("*/")
                if end < 0:
                    return "".join(out)
                rest = rest[end + 2:]
                self.in_block_comment = False
                continue
            rest = _STRING_LITERAL.sub('""', rest)
            line_comment = rest.find("//")
            block = rest.find("/*")
            if line_comment >= 0 and (block < 0 or line_comment < block):
                out.append(rest[:line_comment])
                return "".join(out)
            if block >= 0:
                out.append(rest[:block])
                rest = rest[block + 2:]
                self.in_block_comment = True
                continue
            out.append(rest)
            break
        return "".join(out)


def find_brace_block_end(lines: List[str], start: int) -> int:
    """Last line of the brace block opened at or after *start*.

    A declaration that reaches ``;`` or a natural line end before any ``{``
    is a single statement and ends there.
    """
    scanner = _CodeScanner()
    depth = 0
    parens = 0
    seen_open = False
    for j in range(start, len(lines)):
        code = scanner.clean(lines[j])
        for ch in code:
            if ch in "([":
                parens += 1
            elif ch in ")]":
                parens = max(0, parens - 1)
            elif ch == "{":
                depth += 1
                seen_open = True
            elif ch == "}":
                depth -= 1
                if seen_open and depth <= 0:
                    return j
            elif ch == ";" and not seen_open and parens == 0:
                return j
        if not seen_open and parens == 0:
            tail = code.rstrip()
            if tail and not tail.endswith(_CONTINUATION_SUFFIXES):
                # The next line may still open the body (Allman style).
                nxt = lines[j + 1].strip() if j + 1 < len(lines) else ""
                if not nxt.startswith("{"):
                    return j
    return min(start + UNCLOSED_BLOCK_LINES, len(lines) - 1)


def find_statement_end(lines: List[str], start: int) -> int:
    """Last line of a statement whose brackets balance, e.g. a multi-line constant."""
    scanner = _CodeScanner()
    depth = 0
    for j in range(start, len(lines)):
        code = scanner.clean(lines[j])
        for ch in code:
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                depth -= 1
        if depth <= 0 and not code.rstrip().endswith(("\\", ",", "=", "|", "&")):
            return j
    return min(start + UNCLOSED_BLOCK_LINES, len(lines) - 1)


def find_signature_end(lines: List[str], start: int) -> int:
    """Line holding the ``:`` that closes a (possibly multi-line) Python header."""
    depth = 0
    for j in range(start, min(len(lines), start + UNCLOSED_BLOCK_LINES)):
        code = _STRING_LITERAL.sub('""', lines[j].split("#", 1)[0])
        for ch in code:
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                depth -= 1
        if depth <= 0 and code.rstrip().endswith(":"):
            return j
    return start


def find_indent_block_end(lines: List[str], start: int) -> int:
    indent = _indent_width(lines[start])
    sig_end = find_signature_end(lines, start)
    last = sig_end
    for j in range(sig_end + 1, len(lines)):
        stripped = lines[j].strip()
        if not stripped:
            continue
        if _indent_width(lines[j]) <= indent:
            break
        last = j
    return last


def _body_docstring(lines: List[str], sig_end: int, block_end: int) -> Tuple[Optional[str], Optional[Tuple[int, int]]]:
    j = sig_end + 1
    if j > block_end or j >= len(lines):
        return None, None
    stripped = lines[j].strip()
    m = re.match(r"^[rRuUbB]{0,2}(\"\"\"|'''|\"|')", stripped)
    if not m:
        return None, None
    quote = m.group(1)
    body = stripped[m.end():]
    if quote in body or len(quote) == 1:
        return clean_docstring(stripped), (j, j)
    collected = [stripped]
    for k in range(j + 1, min(block_end + 1, len(lines))):
        collected.append(lines[k])
        if quote in lines[k]:
            return clean_docstring("\n".join(collected)), (j, k)
    return None, None


def _leading_comment(grammar: HeuristicGrammar, lines: List[str], start: int) -> Optional[str]:
    j = start - 1
    block: List[str] = []
    while j >= 0:
        stripped = lines[j].strip()
        if not stripped or not grammar.is_comment(stripped):
            break
        block.append(stripped)
        j -= 1
    if not block:
        return None
    block.reverse()
    return clean_comment(block)


def _signature(lines: List[str], start: int, end: int, style: BlockStyle) -> str:
    if style is BlockStyle.INDENT:
        sig_end = find_signature_end(lines, start)
        return collapse_ws(" ".join(lines[start:sig_end + 1]))
    parts: List[str] = []
    for j in range(start, min(end, start + 10) + 1):
        line = lines[j]
        brace = line.find("{")
        if brace >= 0:
            parts.append(line[:brace])
            break
        parts.append(line)
    return collapse_ws(" ".join(parts)).rstrip(" ;") or collapse_ws(lines[start])


def _line_offsets(raw_lines: List[bytes]) -> List[int]:
    offsets = [0]
    for line in raw_lines:
        offsets.append(offsets[-1] + len(line) + 1)
    return offsets


def extract_heuristic(
    language: str,
    text: str,
    *,
    doc_rule: DocRule,
    include_imports: bool = False,
    source: Optional[bytes] = None,
) -> List[NodeOutcome]:
    """Match declarations line by line. Unknown languages yield nothing.

    Byte offsets are measured on *source* when given, so a lossy decode of
    *text* does not shift them.
    """
    grammar = HEURISTIC_GRAMMARS.get(language)
    if grammar is None:
        return []
    lines = split_lines(text)
    line_count = len(lines)
    raw = source if source is not None else text.encode("utf-8")
    offsets = _line_offsets(split_byte_lines(raw))
    total_bytes = len(raw)
    outcomes: List[NodeOutcome] = []
    open_symbols: List[_OpenSymbol] = []
    skip_lines: Set[int] = set()
    scanner = _CodeScanner()

    for i, line in enumerate(lines):
        in_comment = scanner.in_block_comment
        scanner.clean(line)
        while open_symbols and i > open_symbols[-1].end_line:
            open_symbols.pop()
        stripped = line.strip()
        if not stripped or i in skip_lines or in_comment or grammar.is_comment(stripped):
            continue

        if grammar.import_pattern is not None and not open_symbols and grammar.import_pattern.match(stripped):
            if include_imports:
                end = find_statement_end(lines, i)
                outcomes.append(
                    Symbol(
                        name=collapse_ws(stripped, 120),
                        kind=SymbolKind.IMPORT,
                        start_line=i,
                        end_line=end,
                        start_byte=offsets[i],
                        end_byte=min(offsets[end + 1] - 1, total_bytes),
                        signature=collapse_ws(stripped),
                    )
                )
            continue

        for decl in grammar.patterns:
            m = decl.pattern.match(line)
            if not m:
                continue
            innermost = open_symbols[-1] if open_symbols else None
            if decl.in_class_only and not (innermost and innermost.class_like):
                continue
            if decl.top_level_only and open_symbols:
                continue
            name = m.group("name")
            if name in _NOT_A_NAME:
                continue

            if grammar.block_style is BlockStyle.INDENT and decl.extent is Extent.BLOCK:
                end = find_indent_block_end(lines, i)
            elif decl.extent is Extent.STATEMENT:
                end = find_statement_end(lines, i)
            else:
                end = find_brace_block_end(lines, i)

            if decl.scope_only:
                open_symbols.append(_OpenSymbol(name, decl.kind, end, True))
                break

            kind = decl.kind
            if kind is SymbolKind.FUNCTION and innermost is not None and innermost.class_like:
                kind = SymbolKind.METHOD
            groups = m.groupdict()
            parent = groups.get("receiver")
            if parent is None:
                parent = next((o.name for o in reversed(open_symbols) if o.class_like), None)

            reason = check_span(i, end, line_count)
            if reason is not None:
                outcomes.append(SkippedNode(decl.kind.value, i, end, reason, name))
                break

            docstring: Optional[str] = None
            if doc_rule is DocRule.BODY_STRING:
                if kind is not SymbolKind.VARIABLE:
                    docstring, doc_span = _body_docstring(lines, find_signature_end(lines, i), end)
                    if doc_span is not None:
                        skip_lines.update(range(doc_span[0], doc_span[1] + 1))
            else:
                docstring = _leading_comment(grammar, lines, i)

            outcomes.append(
                Symbol(
                    name=name,
                    kind=kind,
                    start_line=i,
                    end_line=end,
                    start_byte=offsets[i],
                    end_byte=min(offsets[end + 1] - 1, total_bytes),
                    signature=_signature(lines, i, end, grammar.block_style),
                    docstring=docstring,
                    parent=parent,
                    exported=stripped.startswith("export ") or stripped.startswith("pub "),
                    is_async=bool(groups.get("async")),
                    nested=parent is not None or bool(open_symbols),
                )
            )
            if decl.extent is Extent.STATEMENT:
                skip_lines.update(range(i + 1, end + 1))
            else:
                open_symbols.append(_OpenSymbol(name, kind, end, kind in CLASS_LIKE_KINDS))
            break

    return outcomes
