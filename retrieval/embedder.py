"""Query embeddings via the OpenAI embeddings API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.clients import get_openai_client, get_rate_limiter
from core.config import settings

if TYPE_CHECKING:
    from openai import AsyncOpenAI

    from core.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class Embedder:
    """Embeds text with a fixed-dimension embedding model."""

    def __init__(
        self,
        openai_client: AsyncOpenAI | None = None,
        rate_limiter: RateLimiter | None = None,
        model: str | None = None,
    ):
        self.openai_client = openai_client or get_openai_client("openai")
        self.rate_limiter = rate_limiter or get_rate_limiter("openai")
        self.model = model or settings.embedding_model

    async def embed(self, text: str) -> list[float]:
        embeddings = await self.embed_batch([text])
        return embeddings[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one request, preserving input order."""
        if not texts:
            raise ValueError("no texts provided")

        await self.rate_limiter.acquire()
        response = await self.openai_client.embeddings.create(
            model=self.model,
            input=texts,
            encoding_format="float",
        )

        ordered = sorted(response.data, key=lambda d: d.index)
        logger.debug("Embedded %d texts with %s", len(ordered), self.model)
        return [d.embedding for d in ordered]
