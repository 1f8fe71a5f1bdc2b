"""
OpenAI-compatible provider (httpx)

Works with any endpoint exposing ``/embeddings`` and ``/chat/completions``
(OpenAI, DashScope compatible mode, vLLM, llama.cpp server, ...).
"""

from __future__ import annotations

import logging

import httpx

from ...config import Settings
from ...core.errors import ProviderError
from .base import Provider

logger = logging.getLogger(__name__)


class OpenAICompatProvider(Provider):
    """Embeddings + chat completions over an OpenAI-compatible HTTP API"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        completion_model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        timeout: float = 30.0,
        max_tokens: int = 400,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(name=f"openai-compat:{base_url}")
        self.base_url = base_url.rstrip("/")
        self.completion_model = completion_model
        self.embedding_model = embedding_model
        self.dimensions = dimensions
        self.max_tokens = max_tokens
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            headers=headers, timeout=httpx.Timeout(timeout)
        )

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.post(url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            msg = f"{e.response.status_code} from {path}: {e.response.text[:200]}"
            logger.warning(f"[Provider] {self.name}: {msg}")
            # 4xx other than rate limits will not heal on retry
            retryable = e.response.status_code >= 500 or e.response.status_code == 429
            raise ProviderError(msg, retryable=retryable) from e
        except (httpx.HTTPError, ValueError) as e:
            msg = f"{type(e).__name__} calling {path}: {e}"
            logger.warning(f"[Provider] {self.name}: {msg}")
            raise ProviderError(msg) from e
        return data

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        payload: dict = {"model": self.embedding_model, "input": texts}
        if self.dimensions:
            payload["dimensions"] = self.dimensions
        data = await self._post("/embeddings", payload)

        try:
            items = sorted(data["data"], key=lambda d: d.get("index", 0))
        except (KeyError, TypeError) as e:
            raise ProviderError(f"malformed embeddings payload: {e}") from e

        # keep only the contiguous prefix so vector i always belongs to texts[i]
        vectors: list[list[float]] = []
        for expected, item in enumerate(items):
            if item.get("index", expected) != expected or not item.get("embedding"):
                break
            vectors.append([float(x) for x in item["embedding"]])
        if len(vectors) < len(texts):
            logger.warning(f"[Provider] embeddings returned {len(vectors)}/{len(texts)} vectors")
        return vectors[: len(texts)]

    async def complete(self, prompt: str) -> str:
        payload = {
            "model": self.completion_model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_tokens,
            "temperature": 0.2,
        }
        data = await self._post("/chat/completions", payload)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"malformed completion payload: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


def create_provider(settings: Settings) -> OpenAICompatProvider:
    """Build the default provider from settings."""
    return OpenAICompatProvider(
        base_url=settings.provider_base_url,
        api_key=settings.provider_api_key,
        completion_model=settings.completion_model,
        embedding_model=settings.embedding_model,
        dimensions=settings.embedding_dimension,
        timeout=settings.provider_timeout_seconds,
        max_tokens=settings.completion_max_tokens,
    )
