"""OpenAI GPT streaming LLM adapter.

Uses the OpenAI Chat Completions API with streaming for real-time
response generation.

Requires: pip install voxflow[openai]
API key: https://platform.openai.com/
"""

from __future__ import annotations

from typing import Any, AsyncIterator

from loguru import logger

from voxflow.adapters.base import BaseLLM, LLMChunk, Message
from voxflow.core.errors import AdapterError, TransientAdapterError
from voxflow.pipeline.cancellation import CancelToken

try:
    import openai
    from openai import AsyncOpenAI
except ImportError:
    openai = None  # type: ignore
    AsyncOpenAI = None  # type: ignore


class OpenAILLM(BaseLLM):
    """OpenAI GPT streaming LLM adapter.

    All arguments can also be given as stage options to ``initialize``.
    Network errors, rate limits and 5xx responses are raised as
    TransientAdapterError so the stage runner can retry them once.

    Args:
        api_key: OpenAI API key.
        model: Model identifier (default: "gpt-4o-mini").
        base_url: Optional custom API base URL (for Azure, local models, etc.).
        temperature: Sampling temperature (default: 0.7).
        max_tokens: Max tokens per response (default: 512).
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 512,
    ):
        if AsyncOpenAI is None:
            raise ImportError(
                "openai is required for OpenAILLM. "
                "Install with: pip install voxflow[openai]"
            )

        self._api_key = api_key
        self._model_name = model
        self._base_url = base_url
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client: AsyncOpenAI | None = None

    async def initialize(self, options: dict[str, Any]) -> None:
        self._api_key = options.get("api_key", self._api_key)
        self._model_name = options.get("model", self._model_name)
        self._base_url = options.get("base_url", self._base_url)
        self._temperature = float(options.get("temperature", self._temperature))
        self._max_tokens = int(options.get("max_tokens", self._max_tokens))
        if not self._api_key:
            raise AdapterError("OpenAILLM requires an api_key")

        # Retries are the stage runner's job
        self._client = AsyncOpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            max_retries=0,
        )

    async def generate(
        self,
        messages: list[Message],
        *,
        cancel_token: CancelToken,
    ) -> AsyncIterator[LLMChunk]:
        """Stream a response from OpenAI GPT."""
        if self._client is None:
            raise AdapterError("OpenAILLM used before initialize()")

        logger.debug(f"OpenAI request: model={self._model_name}, messages={len(messages)}")

        try:
            stream = await self._client.chat.completions.create(
                model=self._model_name,
                messages=self._convert_messages(messages),
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )

            async for chunk in stream:
                if cancel_token.cancelled:
                    await stream.close()
                    return

                delta = chunk.choices[0].delta if chunk.choices else None
                if delta and delta.content:
                    yield LLMChunk(text=delta.content)

                if chunk.usage:
                    yield LLMChunk(
                        is_final=True,
                        input_tokens=chunk.usage.prompt_tokens,
                        output_tokens=chunk.usage.completion_tokens,
                    )

        except (
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as e:
            # APITimeoutError is an APIConnectionError
            raise TransientAdapterError(f"OpenAI transient error: {e}") from e
        except openai.APIError as e:
            raise AdapterError(f"OpenAI error: {e}") from e

    async def dispose(self) -> None:
        """Close the OpenAI client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    @property
    def model(self) -> str:
        return self._model_name

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert voxflow Messages to OpenAI format."""
        return [{"role": msg.role, "content": msg.content} for msg in messages]
