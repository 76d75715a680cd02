"""
Token Counting - Gemini-backed token lengths for packing

Responsibilities:
- Count tokens for one speech or prompt template via the async Gemini client
- Retry on 429 rate limits, honoring the retryDelay Gemini reports
- Compute the per-run packing budget from the model's input limit
"""

import asyncio
import re
import time
from typing import Optional, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from config import get_logger
from exceptions import ConfigurationError, LLMError
from pipeline.protocols import MetricsCollector, NullMetrics

logger = get_logger(__name__).bind(component="analyzer")


class TokenCounter(Protocol):
    async def count(self, text: str) -> int: ...


class GeminiTokenCounter:
    """Count tokens with the Gemini count_tokens endpoint

    Args:
        api_key: Gemini API key
        model: Model whose tokenizer is used
        max_retries: Attempts on 429 before giving up
        timeout_seconds: Per-request timeout for count_tokens
        client: Pre-built genai.Client (tests)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.5-flash",
        max_retries: int = 3,
        timeout_seconds: float = 30,
        client: Optional[genai.Client] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        # HttpOptions.timeout is in milliseconds
        self.http_options = types.HttpOptions(timeout=int(timeout_seconds * 1000))
        if client is None:
            if not api_key:
                raise ConfigurationError(
                    "API key required - set GEMINI_API_KEY", config_key="GEMINI_API_KEY"
                )
            client = genai.Client(api_key=api_key, http_options=self.http_options)
        self.client = client
        self.model = model
        self.max_retries = max_retries
        self.metrics = metrics or NullMetrics()

    async def count(self, text: str) -> int:
        """Token length of text. Empty text counts as zero without an API call.

        Raises:
            LLMError: API failure or retries exhausted
        """
        if not text:
            return 0

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            started = time.monotonic()
            try:
                response = await self.client.aio.models.count_tokens(model=self.model, contents=text)
            except genai_errors.APIError as e:
                last_error = e
                if e.code == 429:
                    retry_match = re.search(r'"retryDelay":\s*"(\d+)s"', str(e))
                    delay = int(retry_match.group(1)) + 1 if retry_match else 10 * (attempt + 1)
                    logger.warning(
                        "rate limited by gemini, waiting for retry",
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay_seconds=delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                self.metrics.record_error("analyzer", e)
                raise LLMError("Token count request failed", model=self.model, original_error=e) from e
            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                self.metrics.record_error("analyzer", e)
                raise LLMError("Token count request timed out", model=self.model, original_error=e) from e

            total = response.total_tokens
            if total is None:
                raise LLMError("Token count response had no total_tokens", model=self.model)
            self.metrics.speeches_counted.labels(model=self.model).inc()
            logger.debug("counted tokens", tokens=total, chars=len(text), duration_seconds=round(time.monotonic() - started, 3))
            return int(total)

        raise LLMError(
            f"Max retries ({self.max_retries}) exceeded due to rate limiting",
            model=self.model,
            original_error=last_error,
        )


async def compute_available_tokens(counter: TokenCounter, max_input_tokens: int, prompt_template: str) -> int:
    """Budget left for speeches once the chunk prompt template is accounted for

    Raises:
        ConfigurationError: template alone leaves no room for speeches
    """
    template_tokens = await counter.count(prompt_template)
    available = max_input_tokens - template_tokens
    logger.info(
        "computed token budget",
        max_input_tokens=max_input_tokens,
        template_tokens=template_tokens,
        available=available,
    )
    if available <= 0:
        raise ConfigurationError(
            f"Prompt template uses {template_tokens} of {max_input_tokens} input tokens; no budget left for speeches",
            config_key="DIETWATCH_GEMINI_MAX_INPUT_TOKENS",
        )
    return available
