"""Embedding gateway over an OpenAI-compatible /embeddings endpoint."""

import math
from typing import Any, Protocol, Sequence

import httpx

from .errors import EmbeddingError

MAX_INPUT_CHARS = 8000


class Embedder(Protocol):
    """Protocol for mapping text to a fixed-length vector."""

    async def embed(self, text: str) -> list[float]:
        """Embed a single text. Raises EmbeddingError on failure."""
        ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors.

    Returns 0.0 for zero vectors or vectors of different lengths.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class HTTPEmbedder:
    """Embedder that calls an OpenAI-compatible embeddings API with httpx."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://openrouter.ai/api/v1",
        model: str = "openai/text-embedding-3-small",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the embedder.

        Args:
            api_key: Bearer token for the provider.
            base_url: API root; "/embeddings" is appended.
            model: Embedding model name.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport, mainly for tests.
        """
        self._api_key = api_key
        self._url = base_url.rstrip("/") + "/embeddings"
        self._model = model
        self._timeout = timeout
        self._transport = transport

    @property
    def model(self) -> str:
        return self._model

    async def _request(self, payload: Any) -> list[dict[str, Any]]:
        if not self._api_key:
            raise EmbeddingError("No API key configured for embeddings")

        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self._url,
                    json={"model": self._model, "input": payload},
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise EmbeddingError(f"Embedding request timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise EmbeddingError(f"Embedding request failed: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or not items:
            raise EmbeddingError("Embedding response has no data")
        return items

    async def embed(self, text: str) -> list[float]:
        """Embed a single text, truncated to MAX_INPUT_CHARS."""
        items = await self._request(text[:MAX_INPUT_CHARS])
        return self._vector(items[0])

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one request, in input order."""
        if not texts:
            return []

        items = await self._request([t[:MAX_INPUT_CHARS] for t in texts])
        if len(items) != len(texts):
            raise EmbeddingError(
                f"Embedding response has {len(items)} vectors for {len(texts)} inputs"
            )
        items = sorted(
            items, key=lambda item: item.get("index", 0) if isinstance(item, dict) else 0
        )
        return [self._vector(item) for item in items]

    def _vector(self, item: Any) -> list[float]:
        embedding = item.get("embedding") if isinstance(item, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingError("Embedding response item has no vector")
        try:
            return [float(x) for x in embedding]
        except (TypeError, ValueError) as e:
            raise EmbeddingError(f"Embedding vector is not numeric: {e}") from e
