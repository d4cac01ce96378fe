# orchestration/metrics.py
"""In-process counters for pipeline outcomes."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from models import (
    Approved,
    Blocked,
    Failed,
    PipelineOutcome,
    RequestKind,
    Throttled,
)

logger = logging.getLogger(__name__)


def outcome_label(outcome: PipelineOutcome) -> str:
    if isinstance(outcome, Approved):
        return "corrected" if outcome.corrected else "approved"
    if isinstance(outcome, Blocked):
        return f"blocked:{outcome.reason.value}"
    if isinstance(outcome, Failed):
        return f"failed:{outcome.error_kind.value}"
    if isinstance(outcome, Throttled):
        return "throttled"
    raise TypeError(f"Unknown pipeline outcome: {outcome!r}")


class PipelineMetrics:
    """Accumulate outcome, cache and provider counters across requests."""

    def __init__(self) -> None:
        self.outcomes: Counter[str] = Counter()
        self.outcomes_by_kind: Counter[tuple[str, str]] = Counter()
        self.cache_hits = 0
        self.cache_misses = 0
        self.provider_attempts = 0
        self.corrections = 0
        self.total_latency_ms = 0.0
        self.requests = 0

    def record_cache(self, hit: bool) -> None:
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

    def record_outcome(
        self,
        kind: RequestKind,
        outcome: PipelineOutcome,
        latency_ms: float,
        provider_attempts: int = 0,
        corrections: int = 0,
    ) -> None:
        label = outcome_label(outcome)
        self.requests += 1
        self.outcomes[label] += 1
        self.outcomes_by_kind[(kind.value, label)] += 1
        self.provider_attempts += provider_attempts
        self.corrections += corrections
        self.total_latency_ms += latency_ms
        if isinstance(outcome, Failed):
            logger.warning(
                "Pipeline failure recorded: kind=%s error=%s total_failures=%s",
                kind.value,
                outcome.error_kind.value,
                sum(v for k, v in self.outcomes.items() if k.startswith("failed:")),
            )

    def get_outcome_total(self, label: str) -> int:
        return self.outcomes.get(label, 0)

    def snapshot(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "outcomes": dict(self.outcomes),
            "outcomes_by_kind": {
                f"{kind}/{label}": count
                for (kind, label), count in self.outcomes_by_kind.items()
            },
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "provider_attempts": self.provider_attempts,
            "corrections": self.corrections,
            "mean_latency_ms": (
                self.total_latency_ms / self.requests if self.requests else 0.0
            ),
        }
