"""Process-wide provider clients sharing one HTTP connection pool."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

import httpx

from core.config import settings
from core.errors import ConfigError
from core.rate_limit import RateLimiter

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

# Anthropic serves an OpenAI-compatible chat completions endpoint
PROVIDER_BASE_URLS: dict[str, str | None] = {
    "openai": None,
    "anthropic": "https://api.anthropic.com/v1/",
}


@lru_cache(maxsize=1)
def get_http_client() -> httpx.AsyncClient:
    """Shared pooled HTTP client with idle-connection reuse."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.http_timeout_seconds,
            connect=settings.http_connect_timeout_seconds,
        ),
        limits=httpx.Limits(
            max_connections=settings.http_max_connections,
            max_keepalive_connections=settings.http_max_keepalive_connections,
            keepalive_expiry=settings.http_keepalive_expiry_seconds,
        ),
    )


@lru_cache(maxsize=None)
def get_openai_client(provider: str) -> AsyncOpenAI:
    """Memoized async SDK client for a provider."""
    from openai import AsyncOpenAI

    if provider not in PROVIDER_BASE_URLS:
        raise ConfigError(f"unsupported provider: {provider}")

    api_key = settings.require_provider_key(provider)
    logger.info("Creating %s client", provider)
    return AsyncOpenAI(
        api_key=api_key,
        base_url=PROVIDER_BASE_URLS[provider],
        http_client=get_http_client(),
    )


@lru_cache(maxsize=None)
def get_rate_limiter(provider: str) -> RateLimiter:
    """One token bucket per provider."""
    return RateLimiter(settings.rate_limit_rps, settings.rate_limit_burst)
