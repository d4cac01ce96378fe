# orchestration/pipeline.py
"""Pipeline orchestrator: one request lifecycle from rate limit to terminal outcome."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum

import structlog
from agents.guard_agent import GuardAgent
from agents.guard_rules import guidance_for
from config import settings
from core.errors import AuditUnavailableError, ModelUnavailableError, ThrottledError
from core.model_client import ModelProvider
from core.retry import RetryController, TransportBudget
from prompt_renderer import render_prompt
from storage.cache_store import CacheStore, request_fingerprint

from models import (
    Approved,
    AuditAction,
    Blocked,
    BlockReason,
    ContextTurn,
    ErrorKind,
    Failed,
    GenerationRequest,
    GuardStage,
    ModelCallAttempt,
    PipelineOutcome,
    RequestKind,
    Throttled,
    ValidationResult,
    kind_profile,
)
from orchestration.audit_logger import AuditLogger
from orchestration.metrics import PipelineMetrics
from orchestration.rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)


class PipelineState(str, Enum):
    PENDING = "pending"
    CACHE_CHECK = "cache_check"
    GENERATING = "generating"
    VALIDATING = "validating"
    CORRECTING = "correcting"
    APPROVED = "approved"
    BLOCKED = "blocked"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {PipelineState.APPROVED, PipelineState.BLOCKED, PipelineState.FAILED}
)

_ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.PENDING: frozenset({PipelineState.CACHE_CHECK}),
    PipelineState.CACHE_CHECK: frozenset(
        {PipelineState.APPROVED, PipelineState.BLOCKED, PipelineState.GENERATING}
    ),
    PipelineState.GENERATING: frozenset({PipelineState.VALIDATING}),
    PipelineState.VALIDATING: frozenset(
        {PipelineState.APPROVED, PipelineState.BLOCKED, PipelineState.CORRECTING}
    ),
    PipelineState.CORRECTING: frozenset({PipelineState.GENERATING}),
}


class InvalidTransitionError(RuntimeError):
    """Raised when the lifecycle would move backwards or leave a terminal state."""


@dataclass
class RequestRun:
    """Mutable state owned by exactly one pipeline run.

    Every provider attempt made for the request is appended to
    ``attempts``; correction attempts are counted on ``corrections_used``.
    The two are never combined.
    """

    request: GenerationRequest
    attempts: list[ModelCallAttempt] = field(default_factory=list)
    fingerprint: str = ""
    state: PipelineState = PipelineState.PENDING
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.PENDING])
    corrections_used: int = 0
    validations: list[ValidationResult] = field(default_factory=list)

    def transition(self, new_state: PipelineState) -> None:
        if self.state in TERMINAL_STATES:
            raise InvalidTransitionError(
                f"Request {self.request.request_id} already finished in {self.state.value}"
            )
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if new_state is not PipelineState.FAILED and new_state not in allowed:
            raise InvalidTransitionError(
                f"Illegal transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(
            "Pipeline state transition.",
            request_id=self.request.request_id,
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state
        self.history.append(new_state)


def uncertainty_note(
    validation: ValidationResult, threshold: float = settings.UNCERTAINTY_THRESHOLD
) -> str | None:
    """Caller-facing indicator for valid but low-confidence content."""
    if validation.confidence >= threshold:
        return None
    return (
        f"Accuracy confidence {validation.confidence:.2f} is below {threshold:.2f}; "
        "verify this content against authoritative references."
    )


class GenerationPipeline:
    """Compose rate limiting, caching, generation, validation and audit.

    ``submit`` is the only entry point other subsystems use. Unrelated
    requests run concurrently; shared state is limited to the rate limiter,
    the cache and the audit sink.
    """

    def __init__(
        self,
        provider: ModelProvider,
        guard_agent: GuardAgent | None = None,
        cache_store: CacheStore | None = None,
        rate_limiter: RateLimiter | None = None,
        audit_logger: AuditLogger | None = None,
        retry_controller: RetryController | None = None,
        metrics: PipelineMetrics | None = None,
        max_attempts: int = settings.LLM_RETRY_ATTEMPTS,
        max_corrections: int = settings.MAX_CORRECTION_ATTEMPTS,
        deadline_seconds: float | None = settings.REQUEST_DEADLINE_SECONDS,
        uncertainty_threshold: float = settings.UNCERTAINTY_THRESHOLD,
    ) -> None:
        self.provider = provider
        self.guard_agent = guard_agent or GuardAgent()
        self.cache_store = cache_store or CacheStore()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.audit_logger = audit_logger or AuditLogger()
        self.retry_controller = retry_controller or RetryController(provider)
        self.metrics = metrics or PipelineMetrics()
        self.max_attempts = max_attempts
        self.max_corrections = max_corrections
        self.deadline_seconds = deadline_seconds
        self.uncertainty_threshold = uncertainty_threshold

    async def submit(self, request: GenerationRequest) -> PipelineOutcome:
        """Run ``request`` to exactly one terminal outcome."""
        start = time.perf_counter()
        log = logger.bind(request_id=request.request_id, kind=request.kind.value)

        try:
            await self.rate_limiter.acquire(request.user_role)
        except ThrottledError as exc:
            outcome: PipelineOutcome = Throttled(retry_after=exc.retry_after)
            log.warning("Request throttled.", retry_after=round(exc.retry_after, 3))
            self.metrics.record_outcome(
                request.kind, outcome, (time.perf_counter() - start) * 1000
            )
            return outcome

        run = RequestRun(request=request)
        try:
            outcome = await asyncio.wait_for(
                self._execute(run), timeout=self.deadline_seconds
            )
        except asyncio.TimeoutError:
            self.rate_limiter.release(request.user_role)
            outcome = self._fail(
                run,
                ErrorKind.TIMEOUT,
                f"Request exceeded its {self.deadline_seconds}s deadline",
            )
        except asyncio.CancelledError:
            self.rate_limiter.release(request.user_role)
            log.warning("Request cancelled by caller.", state=run.state.value)
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        self.metrics.record_outcome(
            request.kind,
            outcome,
            latency_ms,
            provider_attempts=len(run.attempts),
            corrections=run.corrections_used,
        )
        if isinstance(outcome, Approved):
            log.info(
                "Request approved.",
                corrected=outcome.corrected,
                from_cache=outcome.from_cache,
                confidence=outcome.validation.confidence,
                uncertain=outcome.is_uncertain,
                latency_ms=round(latency_ms, 1),
            )
        else:
            log.warning(
                "Request finished without approval.",
                outcome=type(outcome).__name__,
                latency_ms=round(latency_ms, 1),
            )
        return outcome

    async def _execute(self, run: RequestRun) -> PipelineOutcome:
        request = run.request

        run.transition(PipelineState.CACHE_CHECK)
        prompt_verdict = self.guard_agent.screen_prompt(request.prompt)
        if prompt_verdict is not None:
            return await self._block(
                run, request.prompt, prompt_verdict, BlockReason.UNSAFE
            )

        run.fingerprint = request_fingerprint(request)
        cached = await self.cache_store.lookup(run.fingerprint, request.user_role)
        self.metrics.record_cache(cached is not None)
        if cached is not None:
            run.transition(PipelineState.APPROVED)
            return Approved(
                content=cached.content,
                validation=cached.validation,
                corrected=cached.validation.corrected_content is not None,
                from_cache=True,
                uncertainty_note=uncertainty_note(
                    cached.validation, self.uncertainty_threshold
                ),
            )

        try:
            original = await self._generate(run, self._generation_prompt(request))
        except ModelUnavailableError as exc:
            return self._fail(run, ErrorKind.MODEL_UNAVAILABLE, str(exc))

        content = original
        while True:
            run.transition(PipelineState.VALIDATING)
            validation = self.guard_agent.validate(
                content, request.context_sequence, request.user_role, request.kind
            )
            run.validations.append(validation)

            if validation.is_valid:
                return await self._approve(run, original, content, validation)
            if validation.failed_stage is GuardStage.SAFETY:
                return await self._block(run, content, validation, BlockReason.UNSAFE)
            if validation.failed_stage is GuardStage.APPROPRIATENESS:
                return await self._block(
                    run, content, validation, BlockReason.NOT_AUTHORIZED
                )
            if run.corrections_used >= self.max_corrections:
                return await self._block(
                    run, content, validation, BlockReason.UNCORRECTABLE
                )

            run.transition(PipelineState.CORRECTING)
            run.corrections_used += 1
            logger.info(
                "Requesting correction.",
                request_id=request.request_id,
                correction=run.corrections_used,
                issues=sorted(validation.issues),
            )
            try:
                content = await self._generate(
                    run,
                    self._correction_prompt(request, content, validation),
                    model_name=settings.CORRECTION_MODEL,
                    temperature=settings.TEMPERATURE_CORRECTION,
                )
            except ModelUnavailableError as exc:
                return self._fail(run, ErrorKind.MODEL_UNAVAILABLE, str(exc))

    async def _generate(
        self,
        run: RequestRun,
        prompt: str,
        model_name: str | None = None,
        temperature: float | None = None,
    ) -> str:
        run.transition(PipelineState.GENERATING)
        budget = TransportBudget(max_attempts=self.max_attempts)
        try:
            return await self.retry_controller.call(
                prompt,
                self._model_context(run.request),
                budget,
                model_name=model_name,
                temperature=temperature,
            )
        finally:
            run.attempts.extend(budget.attempts)

    @staticmethod
    def _model_context(request: GenerationRequest) -> tuple[ContextTurn, ...]:
        # Document chunks are rendered into the doc-QA prompt itself.
        if request.kind is RequestKind.DOC_QA:
            return ()
        return request.context_sequence

    @staticmethod
    def _generation_prompt(request: GenerationRequest) -> str:
        return render_prompt(
            kind_profile(request.kind).template,
            {
                "prompt": request.prompt,
                "user_role": request.user_role.value,
                "documents": request.context_sequence,
            },
        )

    @staticmethod
    def _correction_prompt(
        request: GenerationRequest, content: str, validation: ValidationResult
    ) -> str:
        return render_prompt(
            "correction.j2",
            {
                "prompt": request.prompt,
                "user_role": request.user_role.value,
                "original_content": content,
                "issues": [guidance_for(issue) for issue in sorted(validation.issues)],
                "expects_json": kind_profile(request.kind).expects_json,
            },
        )

    async def _approve(
        self,
        run: RequestRun,
        original: str,
        content: str,
        validation: ValidationResult,
    ) -> Approved:
        corrected = run.corrections_used > 0
        if corrected:
            validation = validation.model_copy(update={"corrected_content": content})
        try:
            await self.audit_logger.record(
                run.request,
                original,
                validation,
                AuditAction.CORRECTED if corrected else AuditAction.APPROVED,
            )
        except AuditUnavailableError as exc:
            logger.error(
                "Approved content could not be audited; returning it anyway.",
                request_id=run.request.request_id,
                error=str(exc),
            )
        await self.cache_store.store(
            run.fingerprint, content, validation, run.request.user_role
        )
        run.transition(PipelineState.APPROVED)
        return Approved(
            content=content,
            validation=validation,
            corrected=corrected,
            uncertainty_note=uncertainty_note(validation, self.uncertainty_threshold),
            attempts=tuple(run.attempts),
        )

    async def _block(
        self,
        run: RequestRun,
        content: str,
        validation: ValidationResult,
        reason: BlockReason,
    ) -> PipelineOutcome:
        """Audit first; a block is never released without a durable record."""
        try:
            entry = await self.audit_logger.record(
                run.request, content, validation, AuditAction.BLOCKED, reason=reason.value
            )
        except AuditUnavailableError as exc:
            return self._fail(run, ErrorKind.AUDIT_UNAVAILABLE, str(exc))
        run.transition(PipelineState.BLOCKED)
        return Blocked(reason=reason, audit_ref=entry.audit_ref, issues=validation.issues)

    def _fail(self, run: RequestRun, error_kind: ErrorKind, detail: str) -> Failed:
        run.transition(PipelineState.FAILED)
        logger.warning(
            "Request failed.",
            request_id=run.request.request_id,
            error_kind=error_kind.value,
            detail=detail,
            attempts=len(run.attempts),
        )
        return Failed(
            error_kind=error_kind, detail=detail, attempts=tuple(run.attempts)
        )

