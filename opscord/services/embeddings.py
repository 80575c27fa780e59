from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Protocol

import httpx

from opscord.core.config import get_settings
from opscord.services.repository import SimilarActivity, get_repository

logger = logging.getLogger(__name__)

_WHITESPACE_RUN = re.compile(r"[\r\n]+")


class EmbeddingUnavailableError(Exception):
    """Raised when the embedding provider cannot produce a vector."""


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float] | None: ...


class SimilaritySearch(Protocol):
    async def find_similar(
        self,
        *,
        embedding: list[float],
        organization_id: str | None,
        threshold: float,
        limit: int,
        exclude_id: str | None = None,
    ) -> list[SimilarActivity]: ...


def prepare_embedding_text(text: str, max_chars: int = 8000) -> str:
    return _WHITESPACE_RUN.sub(" ", text[:max_chars]).strip()


class NullEmbeddingProvider:
    """Provider used when no API key is configured; never produces a vector."""

    async def embed(self, text: str) -> list[float] | None:
        return None


class GeminiEmbeddingProvider:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-004",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 10.0,
        max_chars: int = 8000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_chars = max_chars
        self._client = client

    async def embed(self, text: str) -> list[float] | None:
        clean_text = prepare_embedding_text(text, self.max_chars)
        if not clean_text:
            return None

        payload = {
            "model": f"models/{self.model}",
            "content": {"parts": [{"text": clean_text}]},
        }
        url = f"{self.base_url}/models/{self.model}:embedContent"
        try:
            if self._client is not None:
                response = await self._client.post(url, params={"key": self.api_key}, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, params={"key": self.api_key}, json=payload)
            response.raise_for_status()
            body: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EmbeddingUnavailableError(f"embedding request failed: {exc}") from exc

        return _parse_values(body)


def _parse_values(body: Any) -> list[float]:
    embedding = body.get("embedding") if isinstance(body, dict) else None
    values = embedding.get("values") if isinstance(embedding, dict) else None
    if not isinstance(values, list) or not values:
        raise EmbeddingUnavailableError("embedding response did not contain values")
    try:
        return [float(value) for value in values]
    except (TypeError, ValueError) as exc:
        raise EmbeddingUnavailableError(f"embedding response had non-numeric values: {exc}") from exc


class RepositorySimilaritySearch:
    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def find_similar(
        self,
        *,
        embedding: list[float],
        organization_id: str | None,
        threshold: float,
        limit: int,
        exclude_id: str | None = None,
    ) -> list[SimilarActivity]:
        return await self.repository.find_similar_activities(
            embedding=embedding,
            organization_id=organization_id,
            threshold=threshold,
            limit=limit,
            exclude_id=exclude_id,
        )


@lru_cache
def get_embedding_provider() -> EmbeddingProvider:
    settings = get_settings()
    if not settings.gemini_api_key:
        logger.warning("embedding provider disabled reason=missing_api_key")
        return NullEmbeddingProvider()
    return GeminiEmbeddingProvider(
        api_key=settings.gemini_api_key,
        model=settings.embedding_model,
        base_url=settings.embedding_base_url,
        timeout_seconds=settings.embedding_timeout_seconds,
        max_chars=settings.embedding_max_chars,
    )


@lru_cache
def get_similarity_search() -> SimilaritySearch:
    return RepositorySimilaritySearch(get_repository())
