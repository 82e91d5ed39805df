"""Text generation through an OpenAI-compatible chat completions API."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

from core.clients import get_openai_client, get_rate_limiter
from core.config import settings
from core.errors import GeneratorError
from core.models import TextGenerationRequest, TextGenerationResponse, Usage

if TYPE_CHECKING:
    from openai import AsyncOpenAI

    from core.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

OnChunk = Callable[[str], Awaitable[None]]


class TextGenerator(Protocol):
    @property
    def model(self) -> str: ...

    async def generate_text(self, request: TextGenerationRequest) -> TextGenerationResponse: ...


class StreamingTextGenerator(TextGenerator, Protocol):
    async def generate_text_stream(
        self, request: TextGenerationRequest, on_chunk: OnChunk
    ) -> TextGenerationResponse: ...


def build_messages(request: TextGenerationRequest) -> list[dict[str, str]]:
    messages = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    messages.extend({"role": m.role, "content": m.content} for m in request.messages)
    return messages


class OpenAIChatGenerator:
    """Chat-completions generator for any configured provider.

    Both non-streaming and streaming calls are bounded by a wall-clock timeout.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        openai_client: AsyncOpenAI | None = None,
        rate_limiter: RateLimiter | None = None,
        timeout: float | None = None,
    ):
        provider = provider or settings.generator_provider
        self.provider = provider
        self._model = model or settings.generator_model
        self.openai_client = openai_client or get_openai_client(provider)
        self.rate_limiter = rate_limiter or get_rate_limiter(provider)
        self.timeout = timeout if timeout is not None else settings.generator_timeout_seconds

    @property
    def model(self) -> str:
        return self._model

    def _params(self, request: TextGenerationRequest) -> dict:
        return {
            "model": self._model,
            "messages": build_messages(request),
            "max_tokens": request.max_tokens or settings.generator_max_tokens,
            "temperature": settings.generator_temperature,
        }

    async def generate_text(self, request: TextGenerationRequest) -> TextGenerationResponse:
        """Generate a complete response.

        Raises:
            GeneratorError: on SDK failure, timeout or an empty response
        """
        await self.rate_limiter.acquire()
        try:
            response = await asyncio.wait_for(
                self.openai_client.chat.completions.create(**self._params(request)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise GeneratorError(f"generation timed out after {self.timeout}s") from e
        except Exception as e:
            raise GeneratorError(f"failed to generate text: {e}") from e

        if not response.choices:
            raise GeneratorError("no choices in generator response")

        usage = Usage()
        if response.usage is not None:
            usage = Usage(
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens,
            )

        text = response.choices[0].message.content or ""
        logger.info(
            "Generated %d chars with %s (in=%d out=%d)",
            len(text),
            self._model,
            usage.input_tokens,
            usage.output_tokens,
        )
        return TextGenerationResponse(text=text, usage=usage)

    async def generate_text_stream(
        self, request: TextGenerationRequest, on_chunk: OnChunk
    ) -> TextGenerationResponse:
        """Stream a response, awaiting `on_chunk` for each text delta in order.

        Returns the concatenated text and the usage reported by the final chunk.
        """
        await self.rate_limiter.acquire()
        try:
            return await asyncio.wait_for(self._stream(request, on_chunk), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise GeneratorError(f"generation timed out after {self.timeout}s") from e
        except GeneratorError:
            raise
        except Exception as e:
            raise GeneratorError(f"failed to stream text: {e}") from e

    async def _stream(
        self, request: TextGenerationRequest, on_chunk: OnChunk
    ) -> TextGenerationResponse:
        stream = await self.openai_client.chat.completions.create(
            **self._params(request),
            stream=True,
            stream_options={"include_usage": True},
        )

        parts: list[str] = []
        usage = Usage()
        async for chunk in stream:
            if chunk.usage is not None:
                usage = Usage(
                    input_tokens=chunk.usage.prompt_tokens,
                    output_tokens=chunk.usage.completion_tokens,
                )
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                parts.append(delta)
                await on_chunk(delta)

        return TextGenerationResponse(text="".join(parts), usage=usage)
