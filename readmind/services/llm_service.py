"""
LLM Service - OpenAI API wrapper for the extraction model

Provides:
- JSON-mode chat completion with token tracking
- Retries with exponential backoff for transient errors
- Token counting for prompt budgeting
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Dict, Optional
from openai import AsyncOpenAI, APIError, RateLimitError, APIConnectionError
import tiktoken

from readmind.config import settings
from readmind.errors import ProviderUnavailable

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM completion"""
    content: str
    model: str
    tokens_prompt: int
    tokens_completion: int
    tokens_total: int
    finish_reason: str


class LLMService:
    """
    OpenAI LLM Service used by memory extraction.

    Transient errors (rate limits, connection failures) are retried with
    exponential backoff; anything that still fails surfaces as
    ``ProviderUnavailable``.
    """

    def __init__(self):
        self.client = AsyncOpenAI(api_key=settings.openai_api_key)
        self.default_model = settings.extraction_model
        self.default_temperature = settings.extraction_temperature
        self.default_max_tokens = settings.extraction_max_output_tokens

        # Initialize tokenizer for the default model
        try:
            self._encoding = tiktoken.encoding_for_model(self.default_model)
        except KeyError:
            # Fall back to cl100k_base for newer models
            self._encoding = tiktoken.get_encoding("cl100k_base")

    def count_tokens(self, text: str) -> int:
        """Count tokens in a text string."""
        return len(self._encoding.encode(text))

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Generate a chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to settings.extraction_model)
            temperature: Temperature for sampling (0-2)
            max_tokens: Maximum tokens to generate
            **kwargs: Additional parameters passed to OpenAI

        Returns:
            LLMResponse with content and token usage

        Raises:
            ProviderUnavailable: the call failed after retries
        """
        model = model or self.default_model
        temperature = temperature if temperature is not None else self.default_temperature
        max_tokens = max_tokens or self.default_max_tokens

        max_retries = settings.llm_max_retries
        retry_delay = settings.llm_retry_delay

        for attempt in range(max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    **kwargs
                )

                choice = response.choices[0]
                usage = response.usage

                return LLMResponse(
                    content=choice.message.content or "",
                    model=response.model,
                    tokens_prompt=usage.prompt_tokens if usage else 0,
                    tokens_completion=usage.completion_tokens if usage else 0,
                    tokens_total=usage.total_tokens if usage else 0,
                    finish_reason=choice.finish_reason,
                )

            except (RateLimitError, APIConnectionError) as e:
                if attempt < max_retries - 1:
                    wait_time = retry_delay * (2 ** attempt)
                    logger.warning(f"{type(e).__name__}, retrying in {wait_time}s: {e}")
                    await asyncio.sleep(wait_time)
                else:
                    logger.error(f"LLM unavailable after {max_retries} attempts: {e}")
                    raise ProviderUnavailable(str(e)) from e

            except APIError as e:
                logger.error(f"OpenAI API error: {e}")
                raise ProviderUnavailable(str(e)) from e

        raise ProviderUnavailable("LLM retries exhausted")

    async def complete_with_json(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Generate a completion with JSON response format.

        Useful for structured extraction tasks.
        """
        return await self.complete(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            **kwargs
        )


# Singleton instance
_llm_service: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    """Get the LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
