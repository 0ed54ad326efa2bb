"""
Text Completion — External AI Collaborator
============================================
``TextCompletion`` is the narrow interface every AI stage depends on
(classification, structuring, topics, confidence assessment, diff summary).

``AzureOpenAICompletion`` is the production implementation. Transient
failures (timeouts, throttling, 5xx, connection errors) are retried with
exponential backoff; everything else propagates to the calling stage, which
degrades to its deterministic fallback.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

Message = Dict[str, str]


@dataclass(frozen=True)
class Completion:
    text: str
    tokens_used: int = 0


class TextCompletion(ABC):
    """complete(messages, temperature, max_tokens) -> Completion."""

    @abstractmethod
    async def complete(
        self,
        messages: List[Message],
        temperature: float = 0.0,
        max_tokens: int = 500,
    ) -> Completion:
        ...


class AzureOpenAICompletion(TextCompletion):
    """Chat completions against an Azure OpenAI deployment."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        deployment: str,
        api_version: str = "2024-02-01",
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        client=None,
    ):
        if client is None:
            from openai import AsyncAzureOpenAI

            client = AsyncAzureOpenAI(
                azure_endpoint=endpoint,
                api_key=api_key,
                api_version=api_version,
                max_retries=0,
            )
        self._client = client
        self.deployment = deployment
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries

    async def complete(
        self,
        messages: List[Message],
        temperature: float = 0.0,
        max_tokens: int = 500,
    ) -> Completion:
        from openai import (
            APIConnectionError,
            APITimeoutError,
            InternalServerError,
            RateLimitError,
        )

        transient = (
            asyncio.TimeoutError,
            APITimeoutError,
            APIConnectionError,
            RateLimitError,
            InternalServerError,
        )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(self.max_retries, 0) + 1),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception_type(transient),
            reraise=True,
        ):
            with attempt:
                response = await asyncio.wait_for(
                    self._client.chat.completions.create(
                        model=self.deployment,
                        messages=messages,
                        temperature=temperature,
                        max_tokens=max_tokens,
                    ),
                    timeout=self.timeout_seconds,
                )

        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        return Completion(text=text, tokens_used=tokens)


def build_completion(settings) -> Optional[TextCompletion]:
    """Return the configured completion client, or None when AI is not configured."""
    if not settings.azure_openai_endpoint or not settings.azure_openai_api_key:
        logger.warning("Azure OpenAI not configured, AI stages will use fallbacks")
        return None
    return AzureOpenAICompletion(
        endpoint=settings.azure_openai_endpoint,
        api_key=settings.azure_openai_api_key,
        deployment=settings.azure_openai_chat_deployment,
        api_version=settings.azure_openai_api_version,
        timeout_seconds=settings.ai_timeout_seconds,
        max_retries=settings.ai_max_retries,
    )
