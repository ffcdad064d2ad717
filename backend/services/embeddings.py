"""
Text -> unit vector.

Backends:
- "hash": deterministic sha256 token projection, no model download
- "openai" / "api" / "router": OpenAI-compatible POST {base}/embeddings
- "local": sentence-transformers, loaded on first use

Every returned vector has `dimension` entries and unit L2 norm.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
from typing import Any, List, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

REMOTE_BACKENDS = {"openai", "api", "router"}
SUPPORTED_BACKENDS = {"hash", "local"} | REMOTE_BACKENDS


class EmbeddingError(RuntimeError):
    """The embedding backend failed or returned an unusable vector."""


def _normalize(vector: Sequence[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        raise EmbeddingError("embedding has zero norm")
    return [float(v) / norm for v in vector]


def hash_embedding(content: str, dim: int) -> List[float]:
    vector = [0.0] * dim

    normalized = re.sub(r"\s+", " ", (content or "").strip().lower())
    tokens = re.findall(r"\w+", normalized)
    if not tokens and normalized:
        tokens = list(normalized)
    if not tokens:
        tokens = [""]

    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        for i in range(0, 8, 2):
            idx = digest[i] % dim
            sign = -1.0 if (digest[i + 1] & 1) else 1.0
            weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
            vector[idx] += sign * weight

    if not any(vector):
        # opposing signs cancelled out; fall back to the first token's bucket
        vector[hashlib.sha256(tokens[0].encode("utf-8")).digest()[0] % dim] = 1.0
    return _normalize(vector)


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _normalize_embedding_api_base(base: str) -> str:
    normalized = (base or "").strip().rstrip("/")
    if normalized.lower().endswith("/embeddings"):
        return normalized[: -len("/embeddings")]
    return normalized


class EmbeddingService:
    def __init__(
        self,
        backend: str = "hash",
        model_name: str = "all-MiniLM-L6-v2",
        dimension: int = 384,
        api_base: str = "",
        api_key: str = "",
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        backend_value = (backend or "hash").strip().lower()
        if backend_value not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported embedding backend '{backend}'. "
                f"Expected one of: {', '.join(sorted(SUPPORTED_BACKENDS))}"
            )
        if int(dimension) <= 0:
            raise ValueError("embedding dimension must be positive")
        if backend_value in REMOTE_BACKENDS and not (api_base or "").strip():
            raise ValueError(
                f"embedding backend '{backend_value}' requires RETRIEVAL_EMBEDDING_API_BASE"
            )
        self.backend = backend_value
        self.model_name = model_name
        self._dimension = int(dimension)
        self._api_base = _normalize_embedding_api_base(api_base)
        self._api_key = (api_key or "").strip()
        self._timeout = float(timeout)
        self._transport = transport
        self._model: Any = None

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed many texts; output order matches input order."""
        items = [str(t or "") for t in texts]
        if not items:
            return []
        if self.backend == "hash":
            return [hash_embedding(item, self._dimension) for item in items]
        if self.backend == "local":
            raw = await asyncio.to_thread(self._encode_local, items)
        else:
            raw = await self._fetch_remote(items)
        return [self._check_vector(vector) for vector in raw]

    def _check_vector(self, vector: Sequence[float]) -> List[float]:
        if len(vector) != self._dimension:
            raise EmbeddingError(
                f"model '{self.model_name}' returned dimension {len(vector)}, "
                f"expected {self._dimension}"
            )
        return _normalize(vector)

    # ------------------------------------------------------------------
    # Remote (OpenAI-compatible)
    # ------------------------------------------------------------------

    async def _fetch_remote(self, items: List[str]) -> List[List[float]]:
        url = _join_api_url(self._api_base, "/embeddings")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
            headers["X-API-Key"] = self._api_key
        payload = {"model": self.model_name, "input": items if len(items) > 1 else items[0]}

        try:
            timeout = httpx.Timeout(self._timeout)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                parsed = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise EmbeddingError(f"embedding request failed: {exc}") from exc

        return self._extract_embeddings(parsed, len(items))

    @staticmethod
    def _extract_embeddings(payload: Any, expected: int) -> List[List[float]]:
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or len(data) != expected:
            raise EmbeddingError("embedding response has no usable 'data' list")

        ordered: List[Optional[List[float]]] = [None] * expected
        for position, item in enumerate(data):
            if not isinstance(item, dict):
                raise EmbeddingError("embedding response item is not an object")
            index = item.get("index", position)
            if not isinstance(index, int) or not 0 <= index < expected:
                raise EmbeddingError(f"embedding response index out of range: {index!r}")
            try:
                ordered[index] = [float(v) for v in item.get("embedding") or []]
            except (TypeError, ValueError) as exc:
                raise EmbeddingError("embedding response contains non-numeric values") from exc

        if any(vector is None for vector in ordered):
            raise EmbeddingError("embedding response is missing items")
        return [vector for vector in ordered if vector is not None]

    # ------------------------------------------------------------------
    # Local (sentence-transformers)
    # ------------------------------------------------------------------

    def _load_model(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ImportError(
                "The 'sentence-transformers' package is required for the local "
                "embedding backend. Install it with:\n\n"
                "    pip install 'vector-memory-server[local]'\n\n"
                "or set RETRIEVAL_EMBEDDING_BACKEND=hash"
            ) from exc

        logger.info("Loading sentence-transformers model '%s' ...", self.model_name)
        self._model = SentenceTransformer(self.model_name)

    def _encode_local(self, items: List[str]) -> List[List[float]]:
        if self._model is None:
            self._load_model()
        vectors = self._model.encode(items, normalize_embeddings=True)
        return [[float(v) for v in vector] for vector in vectors]
