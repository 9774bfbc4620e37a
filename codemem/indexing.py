from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from . import db as dbmod
from .chunking import Chunk, ChunkedFile, ChunkingPipeline, configure_tokenizer_path, content_digest
from .config import CodememConfig
from .embeddings import EmbeddingService, build_embedding_service
from .errors import DimensionMismatch
from .locks import FileLockRegistry
from .parsing import SymbolExtractor
from .search import HybridSearchEngine, SearchOptions, SearchResponse
from .security import PathContext, PathNotAllowed
from .symbols import Symbol, SymbolKind
from .vectors import BackendHandle, VectorBackend, VectorBackendStatus, select_backend


@dataclass(frozen=True)
class IndexResult:
    path: str
    chunks_written: int
    digest: str
    parse_mode: Optional[str] = None
    chunks_removed: int = 0
    vectors_written: int = 0
    skipped_reason: Optional[str] = None


@dataclass(frozen=True)
class Skipped:
    path: str
    digest: str
    reason: str = "unchanged"


@dataclass
class BatchResult:
    indexed: List[IndexResult] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


def _content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="ignore")).hexdigest()


async def _bounded_gather(items: Iterable[Any], worker, concurrency: int) -> AsyncIterator[Any]:
    queue_maxsize = max(1, int(concurrency) * 2)
    output: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_maxsize)
    sentinel = object()
    sem = asyncio.Semaphore(max(1, int(concurrency)))

    async def _run(item: Any) -> None:
        async with sem:
            res = await worker(item)
            await output.put(res)

    async def _producer() -> None:
        try:
            async with asyncio.TaskGroup() as tg:
                for item in items:
                    tg.create_task(_run(item))
        except BaseException as exc:
            await output.put(exc)
        finally:
            await output.put(sentinel)

    producer = asyncio.create_task(_producer())
    try:
        while True:
            res = await output.get()
            if isinstance(res, BaseException):
                raise res
            if res is sentinel:
                break
            yield res
    finally:
        if not producer.done():
            producer.cancel()
        await asyncio.gather(producer, return_exceptions=True)


def _symbol_from_row(row: dbmod.ChunkRow) -> Symbol:
    return Symbol(
        name=str(row.symbol_name),
        kind=SymbolKind(row.symbol_kind),
        start_line=row.start_line,
        end_line=row.end_line,
        start_byte=row.start_byte,
        end_byte=row.end_byte,
        signature=row.signature,
        docstring=row.docstring,
        parent=row.parent_symbol,
        exported=row.exported,
        is_async=row.is_async,
    )


class CodeIndex:
    """Indexing and search operations over one repository root.

    Mutations of a single file hold that file's write lock; different files
    may be indexed concurrently.
    """

    def __init__(
        self,
        cfg: CodememConfig,
        *,
        root: Optional[str] = None,
        handle: Optional[BackendHandle] = None,
        embedder: Optional[EmbeddingService] = None,
        extractor: Optional[SymbolExtractor] = None,
    ) -> None:
        self.cfg = cfg
        roots = list(cfg.allowed_roots)
        root = os.path.abspath(root or (roots[0] if roots else os.getcwd()))
        if root not in [os.path.abspath(r) for r in roots]:
            roots.insert(0, root)
        self.path_context = PathContext(roots)
        self.root = self.path_context.root
        self.handle = handle
        self.embedder = embedder
        self.pipeline = ChunkingPipeline(cfg, self.path_context, extractor)
        self.engine = HybridSearchEngine(cfg.db_path, handle, embedder)
        self.locks = FileLockRegistry()
        configure_tokenizer_path(cfg.tokenizer_path)

    @classmethod
    async def open(
        cls,
        cfg: CodememConfig,
        *,
        root: Optional[str] = None,
        embedder: Optional[EmbeddingService] = None,
    ) -> "CodeIndex":
        """Create the schema, select a vector backend and build the index."""
        await dbmod.init_db(cfg.db_path, lexical_body_chars=cfg.lexical_body_chars)
        handle = await select_backend(cfg)
        if embedder is None:
            embedder = build_embedding_service(cfg)
        return cls(cfg, root=root, handle=handle, embedder=embedder)

    async def close(self) -> None:
        if self.embedder is not None:
            await self.embedder.close()
        if self.handle is not None:
            await self.handle.close()
        await dbmod.close_db_pool(self.cfg.db_path)

    def _backend(self) -> Optional[VectorBackend]:
        if self.handle is None or not self.handle.backend.is_available():
            return None
        return self.handle.backend

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def _embed_chunks_cached(self, chunks: Sequence[Chunk]) -> np.ndarray:
        assert self.embedder is not None
        texts = [c.lexical_text for c in chunks]
        hashes = [_content_hash(t) for t in texts]
        model_name = self.embedder.model_name
        cached = await dbmod.fetch_embedding_cache(
            self.cfg.db_path, model_name=model_name, content_hashes=hashes
        )
        vectors: List[Optional[np.ndarray]] = [
            np.frombuffer(cached[h], dtype=np.float32) if h in cached else None for h in hashes
        ]
        pending = [i for i, v in enumerate(vectors) if v is None]
        if pending:
            fresh = await self.embedder.embed_texts([texts[i] for i in pending])
            new_rows: List[Tuple[str, bytes]] = []
            for i, vec in zip(pending, fresh):
                vec_np = np.asarray(vec, dtype=np.float32)
                vectors[i] = vec_np
                new_rows.append((hashes[i], vec_np.tobytes()))
            await dbmod.upsert_embedding_cache(self.cfg.db_path, model_name=model_name, rows=new_rows)
        dims = {int(v.shape[0]) for v in vectors if v is not None}
        if len(dims) > 1:
            raise DimensionMismatch(min(dims), max(dims))
        return np.vstack([v for v in vectors]).astype(np.float32)

    async def _prepare_vectors(self, chunks: Sequence[Chunk]) -> Optional[np.ndarray]:
        """Embed *chunks* and check them against the table before anything is written.

        Returns None when embeddings are off or the embedder failed.
        """
        backend = self._backend()
        if backend is None or self.embedder is None or not chunks:
            return None
        try:
            matrix = await self._embed_chunks_cached(chunks)
        except DimensionMismatch:
            raise
        except Exception:
            logging.warning("Embedding failed for %s; indexing lexically only.", chunks[0].file_path, exc_info=True)
            return None
        dimension = await backend.ensure_table(matrix.shape[1])
        if matrix.shape[1] != dimension:
            raise DimensionMismatch(dimension, int(matrix.shape[1]))
        return matrix

    async def _sync_vectors(
        self, rel_path: str, removed: Sequence[str], chunks: Sequence[Chunk], matrix: Optional[np.ndarray]
    ) -> int:
        backend = self._backend()
        if backend is None:
            return 0
        try:
            if removed:
                await backend.remove(list(removed))
            if matrix is None:
                return 0
            await backend.upsert_many([(c.chunk_id, matrix[i]) for i, c in enumerate(chunks)])
            return len(chunks)
        except BaseException:
            # Chunks are committed but vectors are not; make the next
            # incremental pass redo this file.
            await dbmod.invalidate_source_digest(self.cfg.db_path, rel_path)
            raise

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _index_unlocked(self, path: Union[str, Path], chunked: Optional[ChunkedFile] = None) -> IndexResult:
        if chunked is None:
            chunked = await asyncio.to_thread(self.pipeline.chunk_file, path)
        source = chunked.source_file
        matrix = await self._prepare_vectors(chunked.chunks)
        parse_mode = chunked.parse_mode.value if chunked.parse_mode else None
        removed = await dbmod.replace_file_chunks(
            self.cfg.db_path,
            source_file=source,
            parse_mode=parse_mode,
            chunks=chunked.chunks,
        )
        written = await self._sync_vectors(source.path, removed, chunked.chunks, matrix)
        if chunked.extraction is not None:
            for skip in chunked.extraction.skipped:
                logging.debug(
                    "%s: skipped %s at %s-%s (%s)",
                    source.path,
                    skip.node_type,
                    skip.start_line,
                    skip.end_line,
                    skip.reason.value,
                )
        return IndexResult(
            path=source.path,
            chunks_written=len(chunked.chunks),
            digest=source.content_digest,
            parse_mode=parse_mode,
            chunks_removed=len(removed),
            vectors_written=written,
            skipped_reason=chunked.skipped_reason,
        )

    async def index_file(self, path: Union[str, Path]) -> IndexResult:
        """Re-index one file from scratch. I/O errors propagate."""
        rel_path = self.path_context.relative_path(path)
        async with self.locks.writing(rel_path):
            return await self._index_unlocked(path)

    async def index_file_if_changed(
        self, path: Union[str, Path], known_digest: Optional[str] = None
    ) -> Union[IndexResult, Skipped]:
        """Skip the file when its digest equals *known_digest* (or the stored one)."""
        rel_path = self.path_context.relative_path(path)
        async with self.locks.writing(rel_path):
            rel, data = await asyncio.to_thread(self.pipeline.read, path)
            chunked_digest = content_digest(data)
            if known_digest is None:
                row = await dbmod.fetch_source_file(self.cfg.db_path, rel)
                known_digest = row.content_digest if row else None
            if known_digest == chunked_digest:
                return Skipped(path=rel, digest=chunked_digest)
            chunked = await asyncio.to_thread(self.pipeline.chunk_bytes, rel, data)
            return await self._index_unlocked(path, chunked)

    async def remove_file(self, path: Union[str, Path]) -> int:
        """Purge a file's chunks, symbols and vectors. Returns chunks removed."""
        rel_path = self.path_context.relative_path(path)
        async with self.locks.writing(rel_path):
            removed = await dbmod.delete_source_file(self.cfg.db_path, rel_path)
            backend = self._backend()
            if backend is not None and removed:
                await backend.remove(removed)
        await self.locks.discard(rel_path)
        return len(removed)

    async def get_symbols(self, path: Union[str, Path]) -> List[Symbol]:
        rel_path = self.path_context.relative_path(path)
        async with self.locks.reading(rel_path):
            rows = await dbmod.fetch_file_chunks(self.cfg.db_path, rel_path)
        return [_symbol_from_row(r) for r in rows if r.symbol_name and r.symbol_kind]

    async def search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        *,
        query_vector: Optional[Any] = None,
    ) -> SearchResponse:
        if options is None:
            options = SearchOptions(
                top_k=self.cfg.top_k,
                alpha=self.cfg.alpha,
                candidate_multiplier=self.cfg.candidate_multiplier,
            )
        return await self.engine.search(query, options, query_vector=query_vector)

    async def vector_backend_status(self) -> Optional[VectorBackendStatus]:
        if self.handle is None:
            return None
        return await self.handle.status()

    async def list_orphan_vectors(self) -> List[str]:
        """External ids stored in the vector backend with no live chunk."""
        if self.handle is None:
            return []
        external_ids = await self.handle.backend.external_ids()
        live = await dbmod.filter_live_chunk_ids(self.cfg.db_path, external_ids)
        return [e for e in external_ids if e not in live]

    async def stats(self) -> Dict[str, Any]:
        out = await dbmod.get_index_stats(self.cfg.db_path)
        status = await self.vector_backend_status()
        if status is not None:
            out["vector_backend"] = status.backend_kind.value
            out["vectors"] = status.record_count
            out["vector_dimension"] = status.dimension
        return out

    def _expand(self, paths: Iterable[Union[str, Path]]) -> Iterable[Path]:
        for p in paths:
            candidate = Path(p)
            if not candidate.is_absolute():
                candidate = Path(self.root) / candidate
            if candidate.is_dir():
                yield from self.path_context.iter_files(candidate, self.cfg.ignore_patterns)
            else:
                yield candidate

    async def index_paths(self, paths: Iterable[Union[str, Path]], *, concurrency: int = 4) -> BatchResult:
        """Incrementally index files and directories.

        Unreadable files are logged, recorded in ``errors`` and skipped.
        """
        result = BatchResult()

        async def _one(path: Path) -> Tuple[str, Any]:
            try:
                return str(path), await self.index_file_if_changed(path)
            except (OSError, PathNotAllowed, ValueError) as exc:
                logging.warning("Skipping %s: %s", path, exc)
                return str(path), exc

        async for path, outcome in _bounded_gather(self._expand(paths), _one, concurrency):
            if isinstance(outcome, Skipped):
                result.skipped.append(outcome)
            elif isinstance(outcome, IndexResult):
                result.indexed.append(outcome)
            else:
                result.errors[path] = str(outcome)
        return result
