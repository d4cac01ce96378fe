# core/retry.py
"""Bounded exponential-backoff retry around a single logical model call."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

import structlog
from config import settings

from core.errors import ModelUnavailableError, TransportError, TransportErrorKind
from core.model_client import ModelProvider
from models import AttemptOutcome, ContextTurn, ModelCallAttempt

logger = structlog.get_logger(__name__)


@dataclass
class TransportBudget:
    """Provider attempts available to one logical model call."""

    max_attempts: int = settings.LLM_RETRY_ATTEMPTS
    attempts: list[ModelCallAttempt] = field(default_factory=list)

    @property
    def used(self) -> int:
        return len(self.attempts)

    @property
    def remaining(self) -> int:
        return max(0, self.max_attempts - self.used)

    def record(self, attempt: ModelCallAttempt) -> None:
        self.attempts.append(attempt)


class RetryController:
    """Retry transport failures of a :class:`ModelProvider` with backoff."""

    def __init__(
        self,
        provider: ModelProvider,
        base_delay: float = settings.LLM_RETRY_DELAY_SECONDS,
        max_delay: float = settings.LLM_RETRY_MAX_DELAY_SECONDS,
        jitter_ratio: float = settings.LLM_RETRY_JITTER_RATIO,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.provider = provider
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(self, failure_number: int) -> float:
        """Wait before the retry that follows the ``failure_number``-th failure."""
        delay = min(self.base_delay * (2 ** (failure_number - 1)), self.max_delay)
        jitter = self._rng.uniform(0, delay * self.jitter_ratio)
        return delay + jitter

    async def call(
        self,
        prompt: str,
        context: Sequence[ContextTurn],
        budget: TransportBudget,
        *,
        model_name: str | None = None,
        temperature: float | None = None,
    ) -> str:
        """Return provider text or raise :class:`ModelUnavailableError`.

        Attempts are drawn from ``budget`` and recorded on it. Only
        :class:`TransportError` is handled here; anything else is a bug and
        propagates unchanged.
        """
        failures = 0
        last_error: TransportError | None = None
        while budget.remaining > 0:
            if failures:
                delay = self.backoff_delay(failures)
                logger.info(
                    "Retrying model call after backoff.",
                    delay_seconds=round(delay, 3),
                    reason=last_error.kind.value if last_error else None,
                    next_attempt=budget.used + 1,
                )
                await self._sleep(delay)

            attempt_number = budget.used + 1
            started_at = time.time()
            start = time.perf_counter()
            try:
                text = await self.provider.generate(
                    prompt, context, model_name=model_name, temperature=temperature
                )
            except TransportError as exc:
                latency_ms = (time.perf_counter() - start) * 1000
                budget.record(
                    ModelCallAttempt(
                        attempt_number=attempt_number,
                        started_at=started_at,
                        outcome=(
                            AttemptOutcome.TIMEOUT
                            if exc.kind is TransportErrorKind.TIMEOUT
                            else AttemptOutcome.PROVIDER_ERROR
                        ),
                        latency_ms=latency_ms,
                        error=str(exc),
                    )
                )
                failures += 1
                last_error = exc
                logger.warning(
                    "Model call attempt failed.",
                    attempt=attempt_number,
                    max_attempts=budget.max_attempts,
                    kind=exc.kind.value,
                    retryable=exc.retryable,
                )
                if not exc.retryable:
                    break
                continue

            budget.record(
                ModelCallAttempt(
                    attempt_number=attempt_number,
                    started_at=started_at,
                    outcome=AttemptOutcome.SUCCESS,
                    latency_ms=(time.perf_counter() - start) * 1000,
                )
            )
            return text

        logger.error(
            "Model call gave up.",
            attempts_used=budget.used,
            last_error=str(last_error) if last_error else None,
        )
        raise ModelUnavailableError(budget.used, last_error)
