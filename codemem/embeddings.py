from __future__ import annotations

import asyncio
import random
import threading
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from .config import CodememConfig


# ---------------------------------------------------------------------------
# Backend protocol: anything with an async encode() + close() qualifies.
# ---------------------------------------------------------------------------
@runtime_checkable
class EmbedderBackend(Protocol):
    """Turns a batch of texts into a (len(texts), dim) float32 matrix."""

    async def encode(self, texts: List[str]) -> np.ndarray:
        ...

    async def close(self) -> None:
        ...


_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class _HttpBackend:
    """Shared httpx client and retry loop for remote embedding servers."""

    def __init__(self, model_name: str, base_url: str, *, max_retries: int = 3) -> None:
        self.model_name = model_name
        self.base_url = base_url.rstrip("/")
        self._client: Optional["httpx.AsyncClient"] = None
        self._lock = asyncio.Lock()
        self._max_retries = max(1, int(max_retries))

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _get_client(self) -> "httpx.AsyncClient":
        import httpx

        async with self._lock:
            if self._client is None:
                timeout = httpx.Timeout(connect=10.0, read=120.0, write=10.0, pool=10.0)
                limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
                self._client = httpx.AsyncClient(timeout=timeout, limits=limits)
            return self._client

    async def _post_with_retry(self, path: str, *, json: Dict[str, Any]) -> "httpx.Response":
        import httpx

        last_exc: Exception | None = None
        for attempt in range(self._max_retries):
            client = await self._get_client()
            try:
                resp = await client.post(f"{self.base_url}{path}", headers=self._headers(), json=json)
                if resp.status_code in _RETRYABLE_STATUS:
                    raise httpx.HTTPStatusError("Retryable response", request=resp.request, response=resp)
                resp.raise_for_status()
                return resp
            except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as exc:
                last_exc = exc
                if attempt >= self._max_retries - 1:
                    raise
                backoff = 0.5 * (2 ** attempt) + random.random() * 0.1
                await asyncio.sleep(backoff)
        if last_exc:
            raise last_exc
        raise RuntimeError("Retry loop exited unexpectedly.")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OllamaBackend(_HttpBackend):
    """Local Ollama server, /api/embed."""

    def __init__(self, model_name: str, url: str = "http://localhost:11434") -> None:
        super().__init__(model_name, url)

    async def encode(self, texts: List[str]) -> np.ndarray:
        resp = await self._post_with_retry("/api/embed", json={"model": self.model_name, "input": texts})
        return np.asarray(resp.json().get("embeddings", []), dtype=np.float32)


class OpenAIBackend(_HttpBackend):
    """Any OpenAI-compatible /embeddings endpoint."""

    def __init__(self, model_name: str, api_key: str, api_base: str = "https://api.openai.com/v1") -> None:
        super().__init__(model_name, api_base)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def encode(self, texts: List[str]) -> np.ndarray:
        resp = await self._post_with_retry("/embeddings", json={"model": self.model_name, "input": texts})
        data = sorted(resp.json()["data"], key=lambda item: item.get("index", 0))
        return np.asarray([item["embedding"] for item in data], dtype=np.float32)


class SentenceTransformerBackend:
    """In-process sentence-transformers model; encode runs in a worker thread.

    Models are shared per (model_name, device) across instances.
    """

    _shared_lock = threading.Lock()
    _shared_models: Dict[Tuple[str, str], Any] = {}

    def __init__(self, model_name: str, device: str = "cpu") -> None:
        self.model_name = model_name
        self.device = device

    def _model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        key = (self.model_name, self.device)
        with self._shared_lock:
            model = self._shared_models.get(key)
            if model is None:
                model = SentenceTransformer(self.model_name, device=self.device)
                self._shared_models[key] = model
        return model

    def _encode_sync(self, texts: List[str]) -> np.ndarray:
        vecs = self._model().encode(
            texts,
            batch_size=max(1, min(128, len(texts))),
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vecs, dtype=np.float32)

    async def encode(self, texts: List[str]) -> np.ndarray:
        return await asyncio.to_thread(self._encode_sync, texts)

    async def close(self) -> None:
        return None


class EmbeddingService:
    """Batches texts through one EmbedderBackend."""

    def __init__(self, backend: EmbedderBackend, *, model_name: str, batch_size: int = 64) -> None:
        self.backend = backend
        self.model_name = model_name
        self.batch_size = max(1, int(batch_size))

    async def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        text_list = list(texts)
        if not text_list:
            return np.zeros((0, 0), dtype=np.float32)
        parts: List[np.ndarray] = []
        for i in range(0, len(text_list), self.batch_size):
            batch = text_list[i:i + self.batch_size]
            vecs = np.asarray(await self.backend.encode(batch), dtype=np.float32)
            if vecs.ndim != 2 or vecs.shape[0] != len(batch):
                raise ValueError(
                    f"Embedding backend returned shape {vecs.shape} for {len(batch)} texts"
                )
            parts.append(vecs)
        return np.vstack(parts)

    async def embed_one(self, text: str) -> np.ndarray:
        vecs = await self.embed_texts([text])
        return vecs[0]

    async def close(self) -> None:
        await self.backend.close()


def build_embedding_service(cfg: CodememConfig) -> Optional[EmbeddingService]:
    """Service for cfg.embedding_backend, or None when embeddings are off."""
    kind = (cfg.embedding_backend or "none").lower()
    if kind == "none":
        return None
    if kind == "ollama":
        backend: EmbedderBackend = OllamaBackend(cfg.ollama_model, cfg.ollama_url)
        model_name = f"ollama:{cfg.ollama_model}"
    elif kind == "openai":
        backend = OpenAIBackend(cfg.openai_embedding_model, cfg.openai_api_key, cfg.openai_api_base)
        model_name = f"openai:{cfg.openai_embedding_model}"
    elif kind == "sentence_transformers":
        backend = SentenceTransformerBackend(cfg.model_name, cfg.device)
        model_name = cfg.model_name
    else:
        raise ValueError(f"Unknown embedding_backend: {cfg.embedding_backend}")
    return EmbeddingService(backend, model_name=model_name, batch_size=cfg.embedding_batch_size)
