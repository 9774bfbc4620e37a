from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from . import db as dbmod
from .embeddings import EmbeddingService
from .errors import BackendUnavailable, QuerySyntaxError
from .symbols import SymbolKind
from .vectors import BackendHandle, VectorHit


class SearchMode(str, Enum):
    HYBRID = "hybrid"
    LEXICAL_ONLY = "lexical-only"
    VECTOR_ONLY = "vector-only"


@dataclass(frozen=True)
class SearchOptions:
    top_k: int = 20
    alpha: float = 0.6
    filter_kind: Optional[Tuple[SymbolKind, ...]] = None
    candidate_multiplier: int = 8

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.alpha) <= 1.0:
            raise ValueError("alpha must be between 0 and 1")
        if int(self.top_k) <= 0:
            raise ValueError("top_k must be positive")
        if int(self.candidate_multiplier) <= 0:
            raise ValueError("candidate_multiplier must be positive")
        if self.filter_kind is not None:
            object.__setattr__(
                self, "filter_kind", tuple(SymbolKind(k) for k in self.filter_kind)
            )

    @property
    def candidate_budget(self) -> int:
        return int(self.top_k) * int(self.candidate_multiplier)


@dataclass(frozen=True)
class SourceLocation:
    path: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class FusedResult:
    id: str
    lexical_score: float
    vector_score: float
    hybrid_score: float
    source_location: SourceLocation
    name: Optional[str] = None
    kind: Optional[SymbolKind] = None
    parent: Optional[str] = None
    signature: Optional[str] = None
    parse_mode: Optional[str] = None
    lexical_rank: Optional[int] = None
    vector_rank: Optional[int] = None
    tags: Tuple[str, ...] = ()


@dataclass
class SearchResponse:
    results: List[FusedResult]
    mode: SearchMode
    degraded_reason: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None


def lexical_score(rank: int) -> float:
    """Rank 0 is the best match and scores 1.0."""
    return 1.0 / (1.0 + float(rank))


def vector_score(distance: float) -> float:
    return 1.0 / (1.0 + max(0.0, float(distance)))


class LexicalIndex:
    """Ranked full-text match over symbol name, docstring and body snippet."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def match(self, query: str, limit: int) -> List[dbmod.LexicalHit]:
        try:
            return await dbmod.lexical_search(self.db_path, match=query.strip(), limit=limit)
        except QuerySyntaxError:
            sanitized = dbmod.build_fts_query(query)
            logging.debug("Retrying lexical query %r as %r", query, sanitized)
        return await dbmod.lexical_search(self.db_path, match=sanitized, limit=limit)


@dataclass
class _Candidate:
    id: str
    lexical_score: float = 0.0
    vector_score: float = 0.0
    lexical_rank: Optional[int] = None
    vector_rank: Optional[int] = None
    chunk: Optional[dbmod.ChunkRow] = None


def fuse(
    lexical_hits: Sequence[dbmod.LexicalHit],
    vector_hits: Sequence[VectorHit],
    *,
    alpha: float,
) -> List[Tuple[_Candidate, float]]:
    """Weighted fusion; a missing signal counts as 0.

    Sorted by hybrid score descending, ties by lexical rank then vector rank.
    """
    candidates: Dict[str, _Candidate] = {}
    for hit in lexical_hits:
        cand = candidates.setdefault(hit.chunk.chunk_id, _Candidate(hit.chunk.chunk_id))
        if cand.lexical_rank is None:
            cand.lexical_rank = hit.rank
            cand.lexical_score = lexical_score(hit.rank)
            cand.chunk = hit.chunk
    for rank, vhit in enumerate(vector_hits):
        cand = candidates.setdefault(vhit.id, _Candidate(vhit.id))
        if cand.vector_rank is None:
            cand.vector_rank = rank
            cand.vector_score = vector_score(vhit.distance)

    ordered = list(candidates.values())
    if not ordered:
        return []
    lex = np.asarray([c.lexical_score for c in ordered], dtype=np.float64)
    vec = np.asarray([c.vector_score for c in ordered], dtype=np.float64)
    hybrid = alpha * vec + (1.0 - alpha) * lex
    never = float("inf")
    scored = [(c, float(h)) for c, h in zip(ordered, hybrid)]
    scored.sort(
        key=lambda item: (
            -item[1],
            item[0].lexical_rank if item[0].lexical_rank is not None else never,
            item[0].vector_rank if item[0].vector_rank is not None else never,
        )
    )
    return scored


class HybridSearchEngine:
    def __init__(
        self,
        db_path: str,
        handle: Optional[BackendHandle] = None,
        embedder: Optional[EmbeddingService] = None,
        *,
        lexical: Optional[LexicalIndex] = None,
    ) -> None:
        self.db_path = db_path
        self.handle = handle
        self.embedder = embedder
        self.lexical = lexical or LexicalIndex(db_path)

    async def _vector_stage(
        self, query: str, budget: int, query_vector: Optional[Any]
    ) -> List[VectorHit]:
        if self.handle is None or not self.handle.backend.is_available():
            raise BackendUnavailable("no vector backend available")
        if query_vector is None:
            if self.embedder is None:
                raise BackendUnavailable("no query embedding available")
            query_vector = await self.embedder.embed_one(query)
        return await self.handle.backend.query_nearest(query_vector, budget)

    async def search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        *,
        query_vector: Optional[Any] = None,
    ) -> SearchResponse:
        """Fused lexical + vector search.

        A failing vector stage degrades to lexical-only and says so in the
        response. A lexical query that is still malformed after one sanitized
        retry raises QuerySyntaxError.
        """
        opts = options or SearchOptions()
        budget = opts.candidate_budget
        lexical_hits = await self.lexical.match(query, budget)

        vector_hits: List[VectorHit] = []
        degraded_reason: Optional[str] = None
        alpha = float(opts.alpha)
        if alpha == 0.0:
            mode = SearchMode.LEXICAL_ONLY
        else:
            try:
                vector_hits = await self._vector_stage(query, budget, query_vector)
                mode = SearchMode.VECTOR_ONLY if alpha == 1.0 else SearchMode.HYBRID
            except Exception as exc:
                logging.warning("Vector stage failed; serving lexical-only results: %s", exc, exc_info=True)
                degraded_reason = f"{type(exc).__name__}: {exc}"
                mode = SearchMode.LEXICAL_ONLY
                alpha = 0.0

        # Vector hits whose chunk is gone (or not yet committed) are dropped.
        lexical_ids = {h.chunk.chunk_id for h in lexical_hits}
        missing = [h.id for h in vector_hits if h.id not in lexical_ids]
        live = await dbmod.fetch_chunks_by_ids(self.db_path, missing)
        vector_hits = [h for h in vector_hits if h.id in lexical_ids or h.id in live]

        results: List[FusedResult] = []
        for cand, hybrid in fuse(lexical_hits, vector_hits, alpha=alpha):
            chunk = cand.chunk or live.get(cand.id)
            if chunk is None:
                continue
            kind = SymbolKind(chunk.symbol_kind) if chunk.symbol_kind else None
            if opts.filter_kind is not None and kind not in opts.filter_kind:
                continue
            results.append(
                FusedResult(
                    id=cand.id,
                    lexical_score=cand.lexical_score,
                    vector_score=cand.vector_score,
                    hybrid_score=hybrid,
                    source_location=SourceLocation(chunk.file_path, chunk.start_line, chunk.end_line),
                    name=chunk.symbol_name,
                    kind=kind,
                    parent=chunk.parent_symbol,
                    signature=chunk.signature,
                    parse_mode=chunk.parse_mode,
                    lexical_rank=cand.lexical_rank,
                    vector_rank=cand.vector_rank,
                    tags=chunk.tags,
                )
            )
            if len(results) >= opts.top_k:
                break
        return SearchResponse(results=results, mode=mode, degraded_reason=degraded_reason)
