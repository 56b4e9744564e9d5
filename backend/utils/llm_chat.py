"""
LLM chat using the OpenAI Chat Completions API.
Uses OPENAI_API_KEY / OPENAI_MODEL from environment.
"""
import asyncio
import logging
import os
import time
from typing import Optional, NamedTuple

from openai import (
    OpenAI,
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_RETRIES = int(os.environ.get("OPENAI_RETRIES", "2"))
OPENAI_RETRY_BASE_DELAY = float(os.environ.get("OPENAI_RETRY_BASE_DELAY", "0.6"))

# Timeouts, dropped connections, 429 and 5xx
RETRYABLE_ERRORS = (APITimeoutError, APIConnectionError, RateLimitError, InternalServerError)

_client: Optional[OpenAI] = None


class ChatResult(NamedTuple):
    content: str
    total_tokens: int


def _get_api_key() -> Optional[str]:
    return OPENAI_API_KEY


def _get_client() -> OpenAI:
    global _client
    if _client is None:
        api_key = _get_api_key()
        if not api_key:
            raise ValueError("OPENAI_API_KEY not found in environment")
        # _sync_chat owns the retry policy
        _client = OpenAI(api_key=api_key, max_retries=0)
    return _client


def _sync_chat(
    system_prompt: str,
    user_text: str,
    model: str,
    temperature: float,
    max_tokens: int,
    json_mode: bool,
) -> ChatResult:
    """Synchronous chat completion with exponential backoff on transient errors."""
    client = _get_client()
    kwargs = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_text},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    for attempt in range(OPENAI_RETRIES + 1):
        try:
            response = client.chat.completions.create(**kwargs)
            break
        except RETRYABLE_ERRORS as e:
            if attempt >= OPENAI_RETRIES:
                raise
            delay = OPENAI_RETRY_BASE_DELAY * (2 ** attempt)
            logger.warning(f"OpenAI call failed ({type(e).__name__}), retrying in {delay:.1f}s")
            time.sleep(delay)

    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise ValueError("Empty response from LLM")
    total_tokens = response.usage.total_tokens if response.usage else 0
    return ChatResult(content=content, total_tokens=total_tokens)


async def chat(
    system_prompt: str,
    user_text: str,
    model: Optional[str] = None,
    temperature: float = 0.1,
    max_tokens: int = 2500,
    json_mode: bool = False,
) -> ChatResult:
    """Async chat completion. Runs sync SDK in thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        lambda: _sync_chat(system_prompt, user_text, model or OPENAI_MODEL, temperature, max_tokens, json_mode),
    )
