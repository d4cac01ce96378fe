# core/model_client.py
"""
Handles all direct interactions with the external generative-model provider.
One call to :meth:`ModelClient.generate` is exactly one provider request:
the client owns the per-attempt timeout and classifies every failure into a
:class:`TransportError`, but never retries. Retrying is the job of
:class:`core.retry.RetryController`.
"""

# Standard library imports
import asyncio
import functools
import json
import re
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
import structlog
import tiktoken

# Local imports
from config import settings
from core.errors import TransportError, TransportErrorKind
from models import ContextTurn

logger = structlog.get_logger(__name__)

_CHAT_ROLES = frozenset({"system", "user", "assistant"})


class ModelProvider(Protocol):
    """Text in, text out; failures raised as :class:`TransportError`."""

    async def generate(
        self,
        prompt: str,
        context: Sequence[ContextTurn],
        *,
        model_name: str | None = None,
        temperature: float | None = None,
    ) -> str: ...


# Token parameter handling
def _completion_token_param(api_base: str) -> str:
    """Return the token count parameter expected by the provider."""
    if "api.openai.com" in api_base or "api.anthropic.com" in api_base:
        return "max_completion_tokens"
    return "max_tokens"


@functools.lru_cache(maxsize=settings.TOKENIZER_CACHE_SIZE)
def _get_tokenizer(model_name: str) -> tiktoken.Encoding | None:
    """
    Gets a tiktoken encoder for the given model name, with caching.
    Tries model-specific encoding, then a default, then returns None.
    """
    try:
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            logger.debug(
                "No direct tiktoken encoding for model; using default.",
                model=model_name,
                encoding=settings.TIKTOKEN_DEFAULT_ENCODING,
            )
            return tiktoken.get_encoding(settings.TIKTOKEN_DEFAULT_ENCODING)
    except Exception as e:
        logger.error(
            "Could not load a tokenizer; falling back to character estimate.",
            model=model_name,
            error=str(e),
        )
        return None


def count_tokens(text: str, model_name: str) -> int:
    """Count tokens with tiktoken, falling back to a character heuristic."""
    if not text:
        return 0
    encoder = _get_tokenizer(model_name)
    if encoder:
        return len(encoder.encode(text, allowed_special="all"))
    return int(len(text) / settings.FALLBACK_CHARS_PER_TOKEN)


def fit_context_to_budget(
    prompt: str,
    context: Sequence[ContextTurn],
    model_name: str,
    max_tokens: int,
) -> list[ContextTurn]:
    """Drop the oldest context turns until prompt plus context fits ``max_tokens``."""
    budget = max_tokens - count_tokens(prompt, model_name)
    kept: list[ContextTurn] = []
    for turn in reversed(context):
        cost = count_tokens(turn.content, model_name)
        if cost > budget:
            break
        kept.append(turn)
        budget -= cost
    kept.reverse()
    if len(kept) < len(context):
        logger.info(
            "Context trimmed to fit token budget.",
            dropped_turns=len(context) - len(kept),
            kept_turns=len(kept),
        )
    return kept


def clean_model_response(text: str) -> str:
    """Strip reasoning tags, markdown fences and excess blank lines."""
    if not isinstance(text, str):
        return ""
    cleaned = text
    for tag_name in ("think", "thinking", "reasoning", "analysis"):
        cleaned = re.sub(
            rf"<\s*{tag_name}\s*>.*?<\s*/\s*{tag_name}\s*>",
            "",
            cleaned,
            flags=re.DOTALL | re.IGNORECASE,
        )
        cleaned = re.sub(rf"<\s*/?\s*{tag_name}\s*/?\s*>", "", cleaned, flags=re.IGNORECASE)

    cleaned = re.sub(
        r"```(?:[a-zA-Z0-9_-]+)?\s*(.*?)\s*```",
        r"\1",
        cleaned,
        flags=re.DOTALL,
    )
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned.strip())
    return cleaned


class ModelClient:
    """OpenAI-compatible chat completion client for a single provider call."""

    def __init__(
        self,
        api_base: str = settings.OPENAI_API_BASE,
        api_key: str = settings.OPENAI_API_KEY,
        model_name: str = settings.GENERATION_MODEL,
        timeout: float = settings.LLM_ATTEMPT_TIMEOUT_SECONDS,
        max_concurrent_calls: int = settings.MAX_CONCURRENT_LLM_CALLS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model_name = model_name
        self.timeout = timeout
        # Use a single async client for all requests to reuse connections
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._semaphore = asyncio.Semaphore(max_concurrent_calls)
        logger.info(
            "ModelClient initialized.",
            model=self.model_name,
            concurrency_limit=max_concurrent_calls,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _build_messages(
        self, prompt: str, context: Sequence[ContextTurn], model_name: str
    ) -> list[dict[str, str]]:
        turns = fit_context_to_budget(
            prompt, context, model_name, settings.MAX_CONTEXT_TOKENS
        )
        messages: list[dict[str, str]] = []
        for turn in turns:
            if turn.role in _CHAT_ROLES:
                messages.append({"role": turn.role, "content": turn.content})
            else:
                messages.append(
                    {"role": "user", "content": f"[{turn.role}] {turn.content}"}
                )
        messages.append({"role": "user", "content": prompt})
        return messages

    def _log_llm_usage(self, model_name: str, usage_data: Any) -> None:
        if isinstance(usage_data, dict):
            logger.info(
                "LLM usage.",
                model=model_name,
                prompt_tokens=usage_data.get("prompt_tokens"),
                completion_tokens=usage_data.get("completion_tokens"),
                total_tokens=usage_data.get("total_tokens"),
            )
        else:
            logger.debug("LLM response missing usage information.", model=model_name)

    async def _post(self, payload: dict[str, Any]) -> str:
        # Waiting for a concurrency slot counts against the attempt timeout.
        async with self._semaphore:
            return await self._send(payload)

    async def _send(self, payload: dict[str, Any]) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        response = await self._client.post(
            f"{self.api_base}/chat/completions", json=payload, headers=headers
        )
        response.raise_for_status()
        data = response.json()
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise TransportError(
                TransportErrorKind.PROVIDER_ERROR,
                "Provider response missing choices",
            )
        message = choices[0].get("message") or {}
        self._log_llm_usage(payload["model"], data.get("usage"))
        return message.get("content") or ""

    async def generate(
        self,
        prompt: str,
        context: Sequence[ContextTurn] = (),
        *,
        model_name: str | None = None,
        temperature: float | None = None,
    ) -> str:
        """Make exactly one provider call and return cleaned text."""
        effective_model = model_name or self.model_name
        payload: dict[str, Any] = {
            "model": effective_model,
            "messages": self._build_messages(prompt, context, effective_model),
            "temperature": (
                temperature
                if temperature is not None
                else settings.TEMPERATURE_GENERATION
            ),
            "top_p": settings.LLM_TOP_P,
            _completion_token_param(self.api_base): settings.MAX_GENERATION_TOKENS,
            "stream": False,
        }

        try:
            raw_text = await asyncio.wait_for(self._post(payload), self.timeout)
        except TransportError:
            raise
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransportError(
                TransportErrorKind.TIMEOUT,
                f"Provider call exceeded {self.timeout:.1f}s",
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise classify_status_error(exc) from exc
        except httpx.RequestError as exc:
            raise TransportError(TransportErrorKind.NETWORK, str(exc)) from exc
        except (json.JSONDecodeError, ValueError, AttributeError) as exc:
            raise TransportError(
                TransportErrorKind.PROVIDER_ERROR,
                f"Malformed provider response: {exc}",
            ) from exc

        text = clean_model_response(raw_text)
        if not text:
            raise TransportError(
                TransportErrorKind.PROVIDER_ERROR, "Provider returned empty content"
            )
        return text


def classify_status_error(exc: httpx.HTTPStatusError) -> TransportError:
    """Map an HTTP status failure onto the transport error taxonomy."""
    status = exc.response.status_code
    body = exc.response.text[:200]
    if status == 429:
        kind = TransportErrorKind.RATE_LIMITED
    elif status >= 500:
        kind = TransportErrorKind.PROVIDER_ERROR
    else:
        kind = TransportErrorKind.CLIENT_ERROR
    return TransportError(kind, f"HTTP {status}: {body}", status_code=status)


# Instantiate the client for other modules to import and use
model_client = ModelClient()
