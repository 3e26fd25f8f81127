"""Text embeddings from a local Ollama server, cached on disk."""

import asyncio
import hashlib
import json
import math
import time
from pathlib import Path
from typing import Iterable

import httpx

from forq.exceptions import EmbeddingError
from forq.logging import get_logger

log = get_logger(__name__)

DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
OLLAMA_EMBEDDINGS_BASE_URL = "http://127.0.0.1:11434"


def normalize_embedding(values: Iterable[float]) -> list[float]:
    """Scale a vector to unit length; non-finite components become 0."""
    vector = [float(v) if isinstance(v, (float, int)) and math.isfinite(float(v)) else 0.0 for v in values]
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 1e-12:
        return vector
    return [v / norm for v in vector]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity in [-1, 1]. Mismatched or empty vectors score 0."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm <= 1e-12 or not math.isfinite(dot):
        return 0.0
    return max(-1.0, min(1.0, dot / norm))


def _cache_key(model: str, text: str) -> str:
    return hashlib.sha1(f"{model}\0{text}".encode("utf-8", errors="ignore")).hexdigest()


class OllamaEmbeddings:
    """Async client for Ollama's ``/api/embeddings`` endpoint.

    Vectors are normalized and cached in a JSON file keyed by model and text,
    so unchanged inputs are never embedded twice within ``cache_ttl``.
    """

    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        base_url: str = OLLAMA_EMBEDDINGS_BASE_URL,
        timeout: float = 60.0,
        cache_path: Path | str | None = None,
        cache_ttl: float = 24 * 60 * 60,
        batch_size: int = 5,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = str(model).strip() or DEFAULT_EMBEDDING_MODEL
        self.base_url = (base_url or OLLAMA_EMBEDDINGS_BASE_URL).rstrip("/")
        self.cache_path = Path(cache_path).expanduser() if cache_path else None
        self.cache_ttl = cache_ttl
        self.batch_size = max(1, int(batch_size))
        self.timeout = timeout
        self._client = client
        self._cache: dict[str, dict[str, object]] | None = None
        self.cache_hits = 0
        self.cache_misses = 0

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    def _load_cache(self) -> dict[str, dict[str, object]]:
        if self._cache is not None:
            return self._cache
        self._cache = {}
        if self.cache_path is None or not self.cache_path.exists():
            return self._cache
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Ignoring unreadable embedding cache", path=str(self.cache_path), error=str(e))
            return self._cache
        if isinstance(data, dict):
            self._cache = data
        return self._cache

    def _save_cache(self) -> None:
        if self.cache_path is None or self._cache is None:
            return
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(self._cache), encoding="utf-8")
        except OSError as e:
            log.warning("Failed to save embedding cache", path=str(self.cache_path), error=str(e))

    def _cached(self, key: str) -> list[float] | None:
        entry = self._load_cache().get(key)
        if not isinstance(entry, dict):
            return None
        timestamp = entry.get("timestamp")
        vector = entry.get("embedding")
        if not isinstance(timestamp, (int, float)) or not isinstance(vector, list):
            return None
        if time.time() - timestamp >= self.cache_ttl:
            return None
        return vector

    async def _request(self, text: str) -> list[float]:
        url = f"{self.base_url}/api/embeddings"
        try:
            response = await self.client.post(url, json={"model": self.model, "prompt": text})
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Ollama embeddings request failed: {e}") from e
        if not response.is_success:
            raise EmbeddingError(f"Ollama embeddings error {response.status_code}: {response.text}")
        try:
            embedding = response.json().get("embedding")
        except (json.JSONDecodeError, AttributeError) as e:
            raise EmbeddingError(f"Ollama embeddings response decode error: {e}") from e
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingError("Ollama embeddings response missing list 'embedding'")
        return normalize_embedding(embedding)

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in order, at most ``batch_size`` requests in flight."""
        cache = self._load_cache()
        vectors: list[list[float] | None] = []
        missing: list[int] = []
        for index, text in enumerate(texts):
            vector = self._cached(_cache_key(self.model, text))
            if vector is None:
                self.cache_misses += 1
                missing.append(index)
            else:
                self.cache_hits += 1
            vectors.append(vector)

        for start in range(0, len(missing), self.batch_size):
            batch = missing[start:start + self.batch_size]
            results = await asyncio.gather(*(self._request(texts[i]) for i in batch))
            now = time.time()
            for index, vector in zip(batch, results):
                vectors[index] = vector
                cache[_cache_key(self.model, texts[index])] = {"embedding": vector, "timestamp": now}

        if missing:
            log.debug("Embedded texts", model=self.model, new=len(missing), cached=len(texts) - len(missing))
            self._save_cache()
        return [vector or [] for vector in vectors]

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
