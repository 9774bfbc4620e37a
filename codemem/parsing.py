from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import ParseFailure
from .heuristics import HEURISTIC_GRAMMARS, extract_heuristic
from .symbols import (
    NodeOutcome,
    ParseMode,
    DocRule,
    SkipReason,
    SkippedNode,
    Symbol,
    SymbolKind,
    check_span,
    clean_comment,
    clean_docstring,
    collapse_ws,
    count_lines,
    skips_of,
    symbols_of,
)


# ---------------------------------------------------------------------------
# Grammar table
# ---------------------------------------------------------------------------
# One entry per tree-sitter language. ``symbol_nodes`` maps node types to the
# kind they produce; ``scope_nodes`` are class-like containers whose direct
# functions become methods and whose name becomes ``parent``.


@dataclass(frozen=True)
class GrammarSpec:
    language: str
    extensions: Tuple[str, ...]
    symbol_nodes: Mapping[str, SymbolKind]
    scope_nodes: FrozenSet[str] = frozenset()
    import_nodes: FrozenSet[str] = frozenset()
    comment_nodes: FrozenSet[str] = frozenset({"comment"})
    # Specifier nodes (C structs, enums) count only when they carry a body.
    requires_body: FrozenSet[str] = frozenset()
    doc_rule: DocRule = DocRule.LEADING_COMMENT
    brace_delimited: bool = True


_JS_NODES: Dict[str, SymbolKind] = {
    "function_declaration": SymbolKind.FUNCTION,
    "generator_function_declaration": SymbolKind.FUNCTION,
    "class_declaration": SymbolKind.CLASS,
    "method_definition": SymbolKind.METHOD,
    "variable_declarator": SymbolKind.VARIABLE,
}

_TS_NODES: Dict[str, SymbolKind] = {
    **_JS_NODES,
    "abstract_class_declaration": SymbolKind.CLASS,
    "interface_declaration": SymbolKind.INTERFACE,
    "type_alias_declaration": SymbolKind.TYPE,
    "enum_declaration": SymbolKind.TYPE,
}

_TS_SCOPES = frozenset({"class_declaration", "abstract_class_declaration", "interface_declaration", "class"})

GRAMMARS: Dict[str, GrammarSpec] = {
    "python": GrammarSpec(
        language="python",
        extensions=(".py", ".pyi"),
        symbol_nodes={
            "function_definition": SymbolKind.FUNCTION,
            "class_definition": SymbolKind.CLASS,
            "assignment": SymbolKind.VARIABLE,
        },
        scope_nodes=frozenset({"class_definition"}),
        import_nodes=frozenset({"import_statement", "import_from_statement"}),
        doc_rule=DocRule.BODY_STRING,
        brace_delimited=False,
    ),
    "javascript": GrammarSpec(
        language="javascript",
        extensions=(".js", ".jsx", ".mjs", ".cjs"),
        symbol_nodes=_JS_NODES,
        scope_nodes=frozenset({"class_declaration", "class"}),
        import_nodes=frozenset({"import_statement"}),
    ),
    "typescript": GrammarSpec(
        language="typescript",
        extensions=(".ts", ".mts", ".cts"),
        symbol_nodes=_TS_NODES,
        scope_nodes=_TS_SCOPES,
        import_nodes=frozenset({"import_statement"}),
    ),
    "tsx": GrammarSpec(
        language="tsx",
        extensions=(".tsx",),
        symbol_nodes=_TS_NODES,
        scope_nodes=_TS_SCOPES,
        import_nodes=frozenset({"import_statement"}),
    ),
    "go": GrammarSpec(
        language="go",
        extensions=(".go",),
        symbol_nodes={
            "function_declaration": SymbolKind.FUNCTION,
            "method_declaration": SymbolKind.METHOD,
            "type_spec": SymbolKind.TYPE,
        },
        import_nodes=frozenset({"import_declaration"}),
    ),
    "java": GrammarSpec(
        language="java",
        extensions=(".java",),
        symbol_nodes={
            "class_declaration": SymbolKind.CLASS,
            "record_declaration": SymbolKind.CLASS,
            "interface_declaration": SymbolKind.INTERFACE,
            "enum_declaration": SymbolKind.TYPE,
            "method_declaration": SymbolKind.METHOD,
            "constructor_declaration": SymbolKind.METHOD,
        },
        scope_nodes=frozenset(
            {"class_declaration", "record_declaration", "interface_declaration", "enum_declaration"}
        ),
        import_nodes=frozenset({"import_declaration"}),
        comment_nodes=frozenset({"line_comment", "block_comment", "comment"}),
    ),
    "csharp": GrammarSpec(
        language="csharp",
        extensions=(".cs",),
        symbol_nodes={
            "class_declaration": SymbolKind.CLASS,
            "struct_declaration": SymbolKind.CLASS,
            "record_declaration": SymbolKind.CLASS,
            "interface_declaration": SymbolKind.INTERFACE,
            "enum_declaration": SymbolKind.TYPE,
            "method_declaration": SymbolKind.METHOD,
            "constructor_declaration": SymbolKind.METHOD,
        },
        scope_nodes=frozenset(
            {"class_declaration", "struct_declaration", "record_declaration", "interface_declaration"}
        ),
        import_nodes=frozenset({"using_directive"}),
    ),
    "rust": GrammarSpec(
        language="rust",
        extensions=(".rs",),
        symbol_nodes={
            "function_item": SymbolKind.FUNCTION,
            "struct_item": SymbolKind.CLASS,
            "enum_item": SymbolKind.TYPE,
            "trait_item": SymbolKind.INTERFACE,
            "type_item": SymbolKind.TYPE,
            "const_item": SymbolKind.VARIABLE,
            "static_item": SymbolKind.VARIABLE,
        },
        scope_nodes=frozenset({"impl_item", "trait_item"}),
        import_nodes=frozenset({"use_declaration"}),
        comment_nodes=frozenset({"line_comment", "block_comment"}),
    ),
    "c": GrammarSpec(
        language="c",
        extensions=(".c", ".h"),
        symbol_nodes={
            "function_definition": SymbolKind.FUNCTION,
            "struct_specifier": SymbolKind.CLASS,
            "enum_specifier": SymbolKind.TYPE,
            "type_definition": SymbolKind.TYPE,
        },
        requires_body=frozenset({"struct_specifier", "enum_specifier"}),
        import_nodes=frozenset({"preproc_include"}),
    ),
    "cpp": GrammarSpec(
        language="cpp",
        extensions=(".cpp", ".cc", ".cxx", ".hpp", ".hh", ".hxx"),
        symbol_nodes={
            "function_definition": SymbolKind.FUNCTION,
            "class_specifier": SymbolKind.CLASS,
            "struct_specifier": SymbolKind.CLASS,
            "enum_specifier": SymbolKind.TYPE,
            "alias_declaration": SymbolKind.TYPE,
            "type_definition": SymbolKind.TYPE,
        },
        scope_nodes=frozenset({"class_specifier", "struct_specifier"}),
        requires_body=frozenset({"class_specifier", "struct_specifier", "enum_specifier"}),
        import_nodes=frozenset({"preproc_include"}),
    ),
}

EXTENSION_LANGUAGES: Dict[str, str] = {
    ext: spec.language for spec in GRAMMARS.values() for ext in spec.extensions
}

# Non-code text files still get fallback windows.
SUPPORTED_TEXT_EXTS = set(EXTENSION_LANGUAGES) | {
    ".txt", ".md", ".rst", ".sql", ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg",
    ".conf", ".html", ".css", ".scss", ".xml", ".sh", ".bash", ".ps1", ".kt", ".swift",
    ".rb", ".php", ".lua", ".scala",
}

_FUNCTION_VALUE_NODES = frozenset(
    {"arrow_function", "function_expression", "function", "generator_function"}
)
_CONSTANT_VALUE_NODES = frozenset({"object", "array"})
_DECLARATOR_WRAPPERS = frozenset(
    {"function_declarator", "pointer_declarator", "reference_declarator", "parenthesized_declarator"}
)
_EXPORT_WRAPPERS = frozenset({"export_statement", "decorated_definition"})


def language_for_path(path: str) -> Optional[str]:
    ext = os.path.splitext(str(path))[1].lower()
    return EXTENSION_LANGUAGES.get(ext)


# ---------------------------------------------------------------------------
# SyntaxParser
# ---------------------------------------------------------------------------


class SyntaxParser:
    """Caches one tree-sitter parser per language.

    Grammars come from tree-sitter-language-pack. A language whose grammar
    fails to load is remembered and reported as a ParseFailure afterwards.
    """

    def __init__(self) -> None:
        self._parsers: Dict[str, Any] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._unavailable: Dict[str, str] = {}
        self._guard = threading.Lock()

    def _get_parser(self, language: str) -> Tuple[Any, threading.Lock]:
        with self._guard:
            if language in self._parsers:
                return self._parsers[language], self._locks[language]
            if language in self._unavailable:
                raise ParseFailure(self._unavailable[language])
            try:
                from tree_sitter_language_pack import get_parser
            except ImportError as exc:
                reason = "tree-sitter-language-pack not installed; AST tier disabled."
                logging.warning(reason)
                self._unavailable[language] = reason
                raise ParseFailure(reason) from exc
            try:
                parser = get_parser(language)
            except Exception as exc:
                reason = f"Grammar for {language} not available in tree-sitter-language-pack."
                logging.warning(reason, exc_info=True)
                self._unavailable[language] = reason
                raise ParseFailure(reason) from exc
            self._parsers[language] = parser
            self._locks[language] = threading.Lock()
            return parser, self._locks[language]

    def is_available(self, language: str) -> bool:
        try:
            self._get_parser(language)
        except ParseFailure:
            return False
        return True

    def parse(self, language: str, source: bytes) -> Any:
        parser, lock = self._get_parser(language)
        try:
            # tree-sitter parsers are not safe to share across threads.
            with lock:
                tree = parser.parse(source)
        except Exception as exc:
            raise ParseFailure(f"tree-sitter failed to parse {language} source") from exc
        if tree is None or tree.root_node is None:
            raise ParseFailure(f"tree-sitter returned no tree for {language} source")
        return tree


# ---------------------------------------------------------------------------
# AST tier
# ---------------------------------------------------------------------------


def _text(node: Any, source: bytes) -> str:
    return source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")


def _end_row(node: Any) -> int:
    row = node.end_point[0]
    # A node that swallows its trailing newline ends at column 0 of the next row.
    if node.end_point[1] == 0 and row > node.start_point[0]:
        row -= 1
    return row


def _declarator_name(decl: Any, source: bytes) -> Optional[str]:
    while decl is not None and decl.type in _DECLARATOR_WRAPPERS:
        decl = decl.child_by_field_name("declarator")
    if decl is None:
        return None
    return _text(decl, source)


def _node_name(node: Any, source: bytes) -> Optional[str]:
    """Resolve the identifier of a definition node across grammar quirks."""
    name_node = node.child_by_field_name("name")
    if name_node is not None:
        return _text(name_node, source)
    if node.type in ("function_definition", "type_definition"):
        return _declarator_name(node.child_by_field_name("declarator"), source)
    if node.type == "assignment":
        left = node.child_by_field_name("left")
        if left is not None and left.type == "identifier":
            return _text(left, source)
        return None
    if node.type == "impl_item":
        type_node = node.child_by_field_name("type")
        if type_node is not None:
            return _text(type_node, source).split("<", 1)[0]
    return None


def _go_receiver_type(node: Any, source: bytes) -> Optional[str]:
    receiver = node.child_by_field_name("receiver")
    if receiver is None:
        return None
    stack = [receiver]
    while stack:
        current = stack.pop()
        if current.type == "type_identifier":
            return _text(current, source)
        stack.extend(reversed(current.named_children))
    return None


def _is_async(node: Any) -> bool:
    if node.type == "variable_declarator":
        node = node.child_by_field_name("value") or node
    return any(child.type == "async" for child in node.children[:4])


def _anchor(node: Any) -> Any:
    """The node whose preceding siblings hold its leading comment."""
    parent = node.parent
    if node.type == "variable_declarator" and parent is not None:
        node, parent = parent, parent.parent
    if node.type == "type_spec" and parent is not None and parent.type == "type_declaration":
        node, parent = parent, parent.parent
    if parent is not None and parent.type in _EXPORT_WRAPPERS:
        return parent
    return node


def _leading_comment(node: Any, source: bytes, grammar: GrammarSpec) -> Optional[str]:
    anchor = _anchor(node)
    expected_row = anchor.start_point[0] - 1
    block: List[str] = []
    prev = anchor.prev_sibling
    while prev is not None and prev.type in grammar.comment_nodes and _end_row(prev) == expected_row:
        block.extend(reversed(_text(prev, source).splitlines()))
        expected_row = prev.start_point[0] - 1
        prev = prev.prev_sibling
    if not block:
        return None
    block.reverse()
    return clean_comment(block)


def _body_docstring(node: Any, source: bytes) -> Optional[str]:
    body = node.child_by_field_name("body")
    if body is None or not body.named_children:
        return None
    first = body.named_children[0]
    if first.type != "expression_statement" or not first.named_children:
        return None
    literal = first.named_children[0]
    if literal.type not in ("string", "concatenated_string"):
        return None
    return clean_docstring(_text(literal, source))


def _signature(node: Any, source: bytes, grammar: GrammarSpec) -> str:
    body = node.child_by_field_name("body")
    if body is not None and body.start_byte > node.start_byte:
        head = source[node.start_byte:body.start_byte].decode("utf-8", errors="replace")
    else:
        head = _text(node, source).split("\n", 1)[0]
    if grammar.brace_delimited:
        head = head.split("{", 1)[0]
    return collapse_ws(head).rstrip(" ;")


@dataclass
class _Scope:
    parent: Optional[str] = None
    in_class: bool = False
    in_function: bool = False


def _classify(node: Any, source: bytes, grammar: GrammarSpec, scope: _Scope) -> Optional[SymbolKind]:
    """Resolve the symbol kind for *node*, or None when it is not a symbol here."""
    kind = grammar.symbol_nodes[node.type]
    if node.type in grammar.requires_body and node.child_by_field_name("body") is None:
        return None
    if node.type == "assignment":
        # Module-level constants only.
        statement = node.parent
        if scope.in_class or scope.in_function or statement is None or statement.type != "expression_statement":
            return None
        if statement.parent is None or statement.parent.type != "module":
            return None
        name = _node_name(node, source) or ""
        if not (name.isupper() and any(c.isalpha() for c in name)):
            return None
        return SymbolKind.VARIABLE
    if node.type == "variable_declarator":
        value = node.child_by_field_name("value")
        if value is None:
            return None
        if value.type in _FUNCTION_VALUE_NODES:
            return SymbolKind.METHOD if scope.in_class else SymbolKind.FUNCTION
        declaration = node.parent
        if (
            value.type in _CONSTANT_VALUE_NODES
            and not scope.in_function
            and declaration is not None
            and declaration.type == "lexical_declaration"
            and declaration.children
            and declaration.children[0].type == "const"
        ):
            return SymbolKind.VARIABLE
        return None
    if node.type == "type_spec":
        type_node = node.child_by_field_name("type")
        if type_node is not None and type_node.type == "struct_type":
            return SymbolKind.CLASS
        if type_node is not None and type_node.type == "interface_type":
            return SymbolKind.INTERFACE
        return SymbolKind.TYPE
    if kind is SymbolKind.FUNCTION and scope.in_class:
        return SymbolKind.METHOD
    return kind


def extract_ast(
    grammar: GrammarSpec,
    tree: Any,
    source: bytes,
    line_count: int,
    *,
    include_imports: bool = False,
) -> List[NodeOutcome]:
    """Depth-first walk of *tree*; one outcome per candidate node.

    Iterative so that deeply nested sources cannot exhaust the stack.
    """
    outcomes: List[NodeOutcome] = []
    root = tree.root_node
    stack: List[Tuple[Any, _Scope]] = [(child, _Scope()) for child in reversed(root.children)]

    while stack:
        node, scope = stack.pop()
        node_type = node.type
        child_scope = scope

        if node_type in grammar.import_nodes:
            if include_imports:
                start, end = node.start_point[0], _end_row(node)
                reason = check_span(start, end, line_count)
                name = collapse_ws(_text(node, source).split("\n", 1)[0], 120)
                if reason is not None:
                    outcomes.append(SkippedNode(node_type, start, end, reason, name))
                else:
                    outcomes.append(
                        Symbol(
                            name=name,
                            kind=SymbolKind.IMPORT,
                            start_line=start,
                            end_line=end,
                            start_byte=node.start_byte,
                            end_byte=node.end_byte,
                            signature=name,
                        )
                    )
            continue

        if node_type in grammar.symbol_nodes:
            kind = _classify(node, source, grammar, scope)
            if kind is not None:
                start, end = node.start_point[0], _end_row(node)
                name = _node_name(node, source)
                parent = scope.parent
                if node_type == "method_declaration" and grammar.language == "go":
                    parent = _go_receiver_type(node, source)
                if name and "::" in name and kind is SymbolKind.FUNCTION:
                    qualifier, _, name = name.rpartition("::")
                    kind, parent = SymbolKind.METHOD, qualifier

                reason = check_span(start, end, line_count)
                if not name:
                    reason = SkipReason.NO_NAME
                if reason is not None:
                    logging.debug(
                        "Skipping %s node at rows %s-%s: %s", node_type, start, end, reason.value
                    )
                    outcomes.append(SkippedNode(node_type, start, end, reason, name))
                else:
                    if grammar.doc_rule is DocRule.BODY_STRING:
                        docstring = _body_docstring(node, source) if kind is not SymbolKind.VARIABLE else None
                    else:
                        docstring = _leading_comment(node, source, grammar)
                    anchor = _anchor(node)
                    outcomes.append(
                        Symbol(
                            name=name,
                            kind=kind,
                            start_line=start,
                            end_line=end,
                            start_byte=node.start_byte,
                            end_byte=node.end_byte,
                            signature=_signature(node, source, grammar),
                            docstring=docstring,
                            parent=parent,
                            exported=anchor.type == "export_statement",
                            is_async=_is_async(node),
                            nested=parent is not None or scope.in_class or scope.in_function,
                        )
                    )

                if node_type in grammar.scope_nodes:
                    # An anonymous scope still turns its functions into methods.
                    child_scope = _Scope(name if reason is None else None, True, False)
                elif kind in (SymbolKind.FUNCTION, SymbolKind.METHOD):
                    child_scope = _Scope(scope.parent, False, True)
        elif node_type in grammar.scope_nodes:
            child_scope = _Scope(_node_name(node, source), True, False)

        for child in reversed(node.children):
            if child.is_named:
                stack.append((child, child_scope))

    return outcomes


# ---------------------------------------------------------------------------
# SymbolExtractor
# ---------------------------------------------------------------------------


@dataclass
class Extraction:
    """Outcome of the tiered extraction for one file.

    ``parse_mode`` is None when neither the AST nor the heuristic tier found a
    symbol; callers then fall back to fixed windows.
    """

    language: Optional[str]
    symbols: List[Symbol] = field(default_factory=list)
    parse_mode: Optional[ParseMode] = None
    skipped: List[SkippedNode] = field(default_factory=list)
    tiers_tried: List[ParseMode] = field(default_factory=list)
    fallback_reason: Optional[str] = None


class SymbolExtractor:
    def __init__(
        self,
        parser: Optional[SyntaxParser] = None,
        *,
        heuristic_fallback: bool = True,
        include_imports: bool = False,
    ) -> None:
        self.parser = parser or SyntaxParser()
        self.heuristic_fallback = heuristic_fallback
        self.include_imports = include_imports

    def extract(self, file_path: str, content: str | bytes, *, allow_ast: bool = True) -> Extraction:
        """Run the AST tier, then the heuristic tier; first tier with symbols wins.

        Never raises for malformed input.
        """
        language = language_for_path(file_path)
        result = Extraction(language=language)
        if language is None:
            result.fallback_reason = "unsupported language"
            return result

        if isinstance(content, bytes):
            source = content
            text = content.decode("utf-8", errors="replace")
        else:
            text = content
            source = content.encode("utf-8")
        line_count = count_lines(text)
        grammar = GRAMMARS[language]

        if allow_ast:
            result.tiers_tried.append(ParseMode.AST)
            try:
                tree = self.parser.parse(language, source)
                outcomes = extract_ast(
                    grammar, tree, source, line_count, include_imports=self.include_imports
                )
            except ParseFailure as exc:
                result.fallback_reason = str(exc)
            else:
                result.skipped.extend(skips_of(outcomes))
                symbols = symbols_of(outcomes)
                if symbols:
                    result.symbols = symbols
                    result.parse_mode = ParseMode.AST
                    return result
                result.fallback_reason = "AST tier found no symbols"
        else:
            result.fallback_reason = "file exceeds the AST size cap"

        if not self.heuristic_fallback or language not in HEURISTIC_GRAMMARS:
            return result
        result.tiers_tried.append(ParseMode.HEURISTIC)
        outcomes = extract_heuristic(
            language,
            text,
            doc_rule=grammar.doc_rule,
            include_imports=self.include_imports,
            source=source,
        )
        result.skipped.extend(skips_of(outcomes))
        symbols = symbols_of(outcomes)
        if symbols:
            result.symbols = symbols
            result.parse_mode = ParseMode.HEURISTIC
        return result

    def extract_symbols(self, file_path: str, content: str | bytes) -> List[Symbol]:
        return self.extract(file_path, content).symbols
