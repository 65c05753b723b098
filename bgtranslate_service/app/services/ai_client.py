import asyncio
from typing import Awaitable, Callable, Mapping, Optional, Type

import httpx
from loguru import logger

from ..config import (
    AI_API_KEY,
    AI_BASE_URL,
    AI_MODEL,
    AI_TEMPERATURE,
    AI_TIMEOUT_SECONDS,
    AI_MAX_RETRIES,
    AI_BACKOFF_SECONDS,
)
from ..errors import (
    AIConfigurationError,
    AIQuotaExceededError,
    AIRateLimitError,
    AIServiceError,
)
from .. import metrics

RETRYABLE_STATUSES = frozenset({429})
FATAL_STATUSES: Mapping[int, Type[Exception]] = {
    402: AIQuotaExceededError,
    401: AIConfigurationError,
}


async def request_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    max_retries: int = AI_MAX_RETRIES,
    backoff_seconds: float = AI_BACKOFF_SECONDS,
    retryable: frozenset = RETRYABLE_STATUSES,
    fatal: Mapping[int, Type[Exception]] = FATAL_STATUSES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> httpx.Response:
    """
    Issue a request, retrying retryable statuses with exponential backoff
    (backoff_seconds, 2x, 4x, ...) up to max_retries extra attempts.

    - fatal statuses raise the mapped exception immediately, no retry
    - a retryable status that is still failing after the last retry raises
      AIRateLimitError (429) or AIServiceError
    - any other non-2xx status raises AIServiceError
    """
    attempt = 0
    while True:
        response = await send()
        status = response.status_code

        if status in fatal:
            raise fatal[status](f"AI service returned {status}: {response.text[:200]}")

        if status in retryable:
            if attempt >= max_retries:
                error_cls = AIRateLimitError if status == 429 else AIServiceError
                raise error_cls(f"AI service returned {status} after {attempt} retries", status_code=status)
            delay = backoff_seconds * (2 ** attempt)
            attempt += 1
            metrics.AI_REQUEST_RETRIES.labels(status=str(status)).inc()
            logger.warning(f"AI service returned {status}; retry {attempt}/{max_retries} in {delay:.1f}s")
            await sleep(delay)
            continue

        if status >= 400:
            raise AIServiceError(f"AI API error: {status}", status_code=status)

        return response


class AIClient:
    """
    Minimal client for an OpenAI-compatible chat completions endpoint:
    one system instruction plus one user message in, one text completion out.
    """

    def __init__(
        self,
        api_key: Optional[str] = AI_API_KEY,
        base_url: str = AI_BASE_URL,
        model: str = AI_MODEL,
        temperature: float = AI_TEMPERATURE,
        timeout: float = AI_TIMEOUT_SECONDS,
        max_retries: int = AI_MAX_RETRIES,
        backoff_seconds: float = AI_BACKOFF_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._sleep = sleep

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        if not self.api_key:
            raise AIConfigurationError("AI_API_KEY is not configured")

        url = f"{self.base_url.rstrip('/')}/chat/completions"
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:

            async def send() -> httpx.Response:
                try:
                    return await client.post(url, json=payload, headers=headers)
                except httpx.HTTPError as e:
                    raise AIServiceError(f"AI request failed: {e}") from e

            response = await request_with_retry(
                send,
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
                sleep=self._sleep,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise AIServiceError("AI service returned a non-JSON body") from e

        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        return message.get("content") or ""
