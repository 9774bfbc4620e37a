from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Set, Tuple

from tokenizers import Tokenizer

from .config import CodememConfig
from .parsing import SUPPORTED_TEXT_EXTS, Extraction, SymbolExtractor, language_for_path
from .security import PathContext, is_ignored
from .symbols import ParseMode, Symbol, split_byte_lines, split_lines


@dataclass(frozen=True)
class SourceFile:
    path: str  # normalized path relative to the repository root
    language: Optional[str]
    content_digest: str
    line_count: int
    size_bytes: int


@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    file_path: str
    ordinal: int
    text: str
    parse_mode: ParseMode
    tags: Tuple[str, ...]
    start_line: int
    end_line: int
    start_byte: int
    end_byte: int
    token_count: int
    language: Optional[str] = None
    symbol: Optional[Symbol] = None
    lexical_prefix: str = ""

    @property
    def lexical_text(self) -> str:
        """Text handed to the embedder: docstring first when it lies outside the span."""
        if self.lexical_prefix:
            return f"{self.lexical_prefix}\n{self.text}"
        return self.text


@dataclass
class ChunkedFile:
    source_file: SourceFile
    chunks: List[Chunk] = field(default_factory=list)
    extraction: Optional[Extraction] = None
    parse_mode: Optional[ParseMode] = None
    skipped_reason: Optional[str] = None


# Injected once at startup by configure_tokenizer_path. None means "not yet
# configured"; empty string means "no tokenizer available".
_TOKENIZER_PATH: str | None = None


def configure_tokenizer_path(path: str) -> None:
    """Set the tokenizer.json used for chunk token counts.

    Clears the cached tokenizer so the next count picks up the new path.
    """
    global _TOKENIZER_PATH
    _TOKENIZER_PATH = path
    _load_tokenizer.cache_clear()


@lru_cache(maxsize=1)
def _load_tokenizer() -> Tokenizer | None:
    tokenizer_path = _TOKENIZER_PATH or ""
    if not tokenizer_path:
        return None
    if not os.path.exists(tokenizer_path):
        logging.warning(
            "Tokenizer not found at tokenizer_path=%s; using whitespace token counts.",
            tokenizer_path,
        )
        return None
    try:
        return Tokenizer.from_file(tokenizer_path)
    except Exception:
        logging.warning(
            "Failed to load tokenizer from %s; using whitespace token counts.",
            tokenizer_path,
            exc_info=True,
        )
        return None


def token_count(text: str) -> int:
    if not text:
        return 0
    tokenizer = _load_tokenizer()
    if tokenizer is None:
        return sum(1 for _ in re.finditer(r"\S+", text))
    return len(tokenizer.encode(text).tokens)


def make_chunk_id(*parts: str) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(p.encode("utf-8", errors="ignore"))
        h.update(b"\0")
    return h.hexdigest()


def content_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


_TEST_PATH = re.compile(r"(^|/)(tests?|__tests__|spec)(/|$)|(^|/)test_[^/]*$|_test\.[^/.]+$|\.(test|spec)\.[^/]+$")


def is_test_path(rel_path: str) -> bool:
    return bool(_TEST_PATH.search(rel_path))


def symbol_tags(symbol: Symbol, parse_mode: ParseMode, language: Optional[str], rel_path: str) -> Tuple[str, ...]:
    tags: Set[str] = {f"{parse_mode.value}-parsed", symbol.kind.value}
    if language:
        tags.add(language)
    if symbol.parent:
        tags.add(f"parent:{symbol.parent}")
    tags.add("nested" if symbol.parent or symbol.nested else "top-level")
    if symbol.name.startswith(("_", "#")):
        tags.add("private")
    if symbol.name.isupper() and any(c.isalpha() for c in symbol.name):
        tags.add("constant")
    if symbol.docstring:
        tags.add("documented")
    if symbol.is_async:
        tags.add("async")
    if symbol.exported:
        tags.add("exported")
    if symbol.name.lower().startswith("test") or is_test_path(rel_path):
        tags.add("test")
    return tuple(sorted(tags))


def window_tags(language: Optional[str], rel_path: str) -> Tuple[str, ...]:
    tags = {"fallback-window", language or "text"}
    if is_test_path(rel_path):
        tags.add("test")
    return tuple(sorted(tags))


def window_chunks(
    *,
    rel_path: str,
    text: str,
    language: Optional[str],
    window_lines: int,
    source: Optional[bytes] = None,
) -> List[Chunk]:
    """Fixed-size line windows for files without symbol boundaries."""
    lines = split_lines(text)
    raw_lines = split_byte_lines(source if source is not None else text.encode("utf-8"))
    window_lines = max(1, int(window_lines))
    tags = window_tags(language, rel_path)
    chunks: List[Chunk] = []
    byte_pos = 0
    for start in range(0, len(lines), window_lines):
        block = lines[start:start + window_lines]
        body = "\n".join(block)
        size = sum(len(line) for line in raw_lines[start:start + window_lines]) + len(block) - 1
        if body.strip():
            chunks.append(
                Chunk(
                    chunk_id=make_chunk_id(rel_path, "window", str(start // window_lines), body),
                    file_path=rel_path,
                    ordinal=len(chunks),
                    text=body,
                    parse_mode=ParseMode.FALLBACK,
                    tags=tags,
                    start_line=start,
                    end_line=start + len(block) - 1,
                    start_byte=byte_pos,
                    end_byte=byte_pos + size,
                    token_count=token_count(body),
                    language=language,
                )
            )
        byte_pos += size + 1
    return chunks


def symbol_chunks(
    *,
    rel_path: str,
    source: bytes,
    symbols: List[Symbol],
    parse_mode: ParseMode,
    language: Optional[str],
    prefix_docstrings: bool = True,
) -> List[Chunk]:
    chunks: List[Chunk] = []
    seen: dict[Tuple[str, str, str], int] = {}
    for symbol in symbols:
        body = source[symbol.start_byte:symbol.end_byte].decode("utf-8", errors="replace")
        key = (symbol.kind.value, symbol.parent or "", symbol.name)
        occurrence = seen.get(key, 0)
        seen[key] = occurrence + 1
        prefix = ""
        if prefix_docstrings and symbol.docstring and symbol.docstring not in body:
            prefix = symbol.docstring
        chunks.append(
            Chunk(
                chunk_id=make_chunk_id(rel_path, *key, str(occurrence), body),
                file_path=rel_path,
                ordinal=len(chunks),
                text=body,
                parse_mode=parse_mode,
                tags=symbol_tags(symbol, parse_mode, language, rel_path),
                start_line=symbol.start_line,
                end_line=symbol.end_line,
                start_byte=symbol.start_byte,
                end_byte=symbol.end_byte,
                token_count=token_count(body),
                language=language,
                symbol=symbol,
                lexical_prefix=prefix,
            )
        )
    return chunks


def _looks_binary(data: bytes) -> bool:
    return b"\0" in data[:8192]


class ChunkingPipeline:
    """Turns one file into its ordered Chunk list.

    The content digest is computed once from the raw bytes; callers compare
    it against the stored digest to skip unchanged files.
    """

    def __init__(
        self,
        cfg: CodememConfig,
        path_context: PathContext,
        extractor: Optional[SymbolExtractor] = None,
    ) -> None:
        self.cfg = cfg
        self.path_context = path_context
        self.extractor = extractor or SymbolExtractor(
            heuristic_fallback=cfg.heuristic_fallback,
            include_imports=cfg.include_imports,
        )

    def read(self, path: str | Path) -> Tuple[str, bytes]:
        """Return (relative path, raw bytes). I/O errors propagate."""
        rel_path = self.path_context.relative_path(path)
        max_bytes = int(self.cfg.max_file_size_mb) * 1024 * 1024
        data = self.path_context.read_bytes(path, max_bytes=max_bytes)
        return rel_path, data

    def digest_file(self, path: str | Path) -> Tuple[str, str]:
        rel_path, data = self.read(path)
        return rel_path, content_digest(data)

    def chunk_file(self, path: str | Path) -> ChunkedFile:
        rel_path, data = self.read(path)
        return self.chunk_bytes(rel_path, data)

    def chunk_bytes(self, rel_path: str, data: bytes) -> ChunkedFile:
        text = data.decode("utf-8", errors="replace")
        language = language_for_path(rel_path)
        source_file = SourceFile(
            path=rel_path,
            language=language,
            content_digest=content_digest(data),
            line_count=len(split_lines(text)),
            size_bytes=len(data),
        )
        result = ChunkedFile(source_file=source_file)

        ext = os.path.splitext(rel_path)[1].lower()
        if ext not in SUPPORTED_TEXT_EXTS:
            result.skipped_reason = f"unsupported extension {ext or '(none)'}"
            return result
        if is_ignored(rel_path, self.cfg.ignore_patterns):
            result.skipped_reason = "matches ignore_patterns"
            return result
        if _looks_binary(data):
            result.skipped_reason = "binary content"
            return result

        over_cap = (
            len(data) > int(self.cfg.max_parse_bytes)
            or source_file.line_count > int(self.cfg.max_parse_lines)
        )
        if not over_cap and language is not None:
            extraction = self.extractor.extract(rel_path, data)
            result.extraction = extraction
            if extraction.parse_mode is not None:
                result.parse_mode = extraction.parse_mode
                result.chunks = symbol_chunks(
                    rel_path=rel_path,
                    source=data,
                    symbols=extraction.symbols,
                    parse_mode=extraction.parse_mode,
                    language=language,
                    prefix_docstrings=self.cfg.prefix_docstrings,
                )
                return result
        elif over_cap:
            logging.info(
                "%s exceeds the parse cap (%s bytes, %s lines); using line windows.",
                rel_path,
                len(data),
                source_file.line_count,
            )

        result.parse_mode = ParseMode.FALLBACK
        result.chunks = window_chunks(
            rel_path=rel_path,
            text=text,
            language=language,
            window_lines=self.cfg.fallback_window_lines,
            source=data,
        )
        return result
