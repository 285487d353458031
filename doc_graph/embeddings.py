"""Entity-name embeddings.

``NameEmbedder`` turns entity names into vectors through an
OpenAI-compatible ``/embeddings`` endpoint.  Names are keyed by their
normalised form (NFKC, case-folded, single spaces): spellings that only
differ in case or width share one cache slot and one request slot.  A batch
is deduplicated, split into requests of at most ``batch_size`` names and
sent from a worker thread.

``cosine_similarity`` is the vector comparison used by fusion and search.
"""

from __future__ import annotations

import asyncio
import logging
import time
import unicodedata
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

import numpy as np
import requests

from .config import load_config

logger = logging.getLogger(__name__)

RETRY_STATUS = frozenset({429, 500, 502, 503, 504})


class EmbeddingError(Exception):
    """Raised when the embedding API returns an error."""


def name_key(name: str) -> str:
    """Cache key for an entity name."""
    return " ".join(unicodedata.normalize("NFKC", name).casefold().split())


class NameEmbedder:
    """Embed entity names with a bounded LRU cache keyed by ``name_key``."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        base_url: Optional[str] = None,
        batch_size: int = 64,
        cache_size: int = 4096,
        max_retries: int = 3,
        backoff: float = 1.0,
        timeout: float = 60.0,
    ) -> None:
        cfg = load_config()
        self.model: str = model or cfg.embedding_model
        self.dimensions: int = dimensions or cfg.embedding_dimensions
        self.endpoint = (base_url or cfg.embedding_base_url).rstrip("/") + "/embeddings"
        self.batch_size = max(1, batch_size)
        self.cache_size = cache_size
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {api_key or cfg.embedding_api_key}",
            "Content-Type": "application/json",
        }
        self._vectors: "OrderedDict[str, List[float]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def cached(self, name: str) -> Optional[List[float]]:
        key = name_key(name)
        vector = self._vectors.get(key)
        if vector is not None:
            self._vectors.move_to_end(key)
        return vector

    def remember(self, name: str, vector: List[float]) -> None:
        key = name_key(name)
        self._vectors[key] = vector
        self._vectors.move_to_end(key)
        while len(self._vectors) > self.cache_size:
            self._vectors.popitem(last=False)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def request_vectors(self, names: Sequence[str]) -> List[List[float]]:
        """POST one batch, retrying transient failures with doubling delays."""
        payload = {"model": self.model, "input": list(names)}
        problem = ""
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = requests.post(
                    self.endpoint, headers=self._headers, json=payload,
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                problem = f"request failed: {exc}"
            else:
                if resp.status_code == 200:
                    return self._parse(resp.json(), len(names))
                problem = f"HTTP {resp.status_code}: {resp.text[:200]}"
                if resp.status_code not in RETRY_STATUS:
                    raise EmbeddingError(problem)

            if attempt < self.max_retries:
                delay = self.backoff * 2 ** (attempt - 1)
                logger.warning("Embedding batch of %d failed (%s), attempt %d/%d, retry in %.1fs",
                               len(names), problem, attempt, self.max_retries, delay)
                time.sleep(delay)

        raise EmbeddingError(f"gave up after {self.max_retries} attempts: {problem}")

    @staticmethod
    def _parse(body: Dict, expected: int) -> List[List[float]]:
        try:
            rows = sorted(body["data"], key=lambda row: row["index"])
            vectors = [list(row["embedding"]) for row in rows]
        except (KeyError, TypeError) as exc:
            raise EmbeddingError(f"malformed embeddings response: {exc}") from exc
        if len(vectors) != expected:
            raise EmbeddingError(f"asked for {expected} vectors, got {len(vectors)}")
        return vectors

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def embed(self, name: str) -> List[float]:
        return (await self.embed_batch([name]))[0]

    async def embed_batch(self, names: Sequence[str]) -> List[List[float]]:
        """One vector per input name, in input order."""
        found: Dict[str, List[float]] = {}
        pending: Dict[str, str] = {}  # key -> first spelling seen
        for name in names:
            key = name_key(name)
            if key in found or key in pending:
                continue
            vector = self.cached(name)
            if vector is None:
                pending[key] = name
            else:
                found[key] = vector

        todo = list(pending.items())
        for start in range(0, len(todo), self.batch_size):
            chunk = todo[start:start + self.batch_size]
            vectors = await asyncio.to_thread(self.request_vectors, [name for _, name in chunk])
            for (key, name), vector in zip(chunk, vectors):
                found[key] = vector
                self.remember(name, vector)
        if todo:
            logger.debug("Embedded %d new name(s), %d from cache",
                         len(todo), len(found) - len(todo))

        return [found[name_key(name)] for name in names]


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, mismatched or zero vectors."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)
