# tests/orchestration/test_pipeline.py
import asyncio

import httpx
import pytest
from agents import guard_rules as rules
from agents.guard_agent import AccuracyReport, GuardAgent
from config import PipelineSettings, settings
from core.errors import StorageError, TransportError, TransportErrorKind
from core.model_client import ModelClient
from core.retry import RetryController
from orchestration.audit_logger import AuditLogger
from orchestration.metrics import PipelineMetrics
from orchestration.pipeline import (
    GenerationPipeline,
    InvalidTransitionError,
    PipelineState,
    RequestRun,
    uncertainty_note,
)
from orchestration.rate_limiter import BucketConfig, RateLimiter
from storage.audit_sink import InMemoryAuditSink
from storage.cache_store import CacheStore, InMemoryCacheBackend

from models import (
    Approved,
    AttemptOutcome,
    AuditAction,
    Blocked,
    BlockReason,
    ContextTurn,
    ErrorKind,
    Failed,
    GenerationRequest,
    RequestKind,
    Throttled,
    UserRole,
    ValidationResult,
)

SAFE_TEXT = "The heart has four chambers: two atria and two ventricles."
UNSAFE_TEXT = "The easiest way to kill yourself is described below."


class ScriptedScorer:
    """Accuracy scorer returning a fixed sequence of confidences."""

    def __init__(self, *confidences):
        self.confidences = list(confidences)

    def score(self, content, context, kind):
        confidence = self.confidences.pop(0)
        findings = frozenset({rules.ABSOLUTE_CLAIM}) if confidence < 0.7 else frozenset()
        return AccuracyReport(confidence=confidence, findings=findings)


class FailingSink:
    async def append(self, entry):
        raise StorageError("audit disk full")


def _generous_limiter(clock):
    return RateLimiter(
        buckets={
            UserRole.STUDENT: BucketConfig(100, 1.0),
            UserRole.FACULTY: BucketConfig(100, 1.0),
        },
        clock=clock,
        sleep=clock.sleep,
    )


def make_pipeline(provider, clock, scorer=None, sink=None, limiter=None, **kwargs):
    return GenerationPipeline(
        provider=provider,
        guard_agent=GuardAgent(approval_threshold=0.7, accuracy_scorer=scorer),
        cache_store=CacheStore(backend=InMemoryCacheBackend(), clock=clock),
        rate_limiter=limiter or _generous_limiter(clock),
        audit_logger=AuditLogger(sink if sink is not None else InMemoryAuditSink()),
        retry_controller=RetryController(provider, sleep=clock.sleep),
        metrics=PipelineMetrics(),
        **kwargs,
    )


def _request(prompt="Explain the chambers of the heart.", **kwargs):
    return GenerationRequest(kind=kwargs.pop("kind", RequestKind.CHAT), prompt=prompt, **kwargs)


@pytest.mark.asyncio
async def test_clean_content_is_approved_audited_and_cached(scripted_provider, fake_clock):
    provider = scripted_provider(SAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock)
    request = _request(user_id="student-1")

    outcome = await pipeline.submit(request)

    assert isinstance(outcome, Approved)
    assert outcome.content == SAFE_TEXT
    assert not outcome.corrected and not outcome.from_cache
    assert outcome.uncertainty_note is None
    assert [a.outcome for a in outcome.attempts] == [AttemptOutcome.SUCCESS]
    entries = pipeline.audit_logger.sink.entries
    assert [e.action for e in entries] == [AuditAction.APPROVED]
    assert entries[0].user_id == "student-1"
    assert len(pipeline.cache_store.backend) == 1


@pytest.mark.asyncio
async def test_repeat_request_is_served_from_cache(scripted_provider, fake_clock):
    provider = scripted_provider(SAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock)

    first = await pipeline.submit(_request())
    second = await pipeline.submit(_request(prompt="  explain the CHAMBERS of the heart. "))

    assert isinstance(second, Approved)
    assert second.from_cache
    assert second.content == first.content
    assert second.attempts == ()
    assert len(provider.calls) == 1
    assert len(pipeline.audit_logger.sink.entries) == 1
    assert pipeline.metrics.cache_hits == 1
    assert pipeline.metrics.cache_misses == 1


@pytest.mark.asyncio
async def test_unsafe_content_is_blocked_without_correction(scripted_provider, fake_clock):
    provider = scripted_provider(UNSAFE_TEXT, SAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock)
    request = _request(user_id="student-7")

    outcome = await pipeline.submit(request)

    assert isinstance(outcome, Blocked)
    assert outcome.reason is BlockReason.UNSAFE
    assert rules.SELF_HARM in outcome.issues
    assert len(provider.calls) == 1
    [entry] = pipeline.audit_logger.sink.entries
    assert entry.audit_ref == outcome.audit_ref
    assert entry.action is AuditAction.BLOCKED
    assert entry.user_id == "student-7"
    assert entry.request_id == request.request_id
    assert entry.original_content == UNSAFE_TEXT
    assert rules.SELF_HARM in entry.validation_result.issues
    assert len(pipeline.cache_store.backend) == 0


@pytest.mark.asyncio
async def test_persistent_timeouts_fail_after_three_attempts(scripted_provider, fake_clock):
    provider = scripted_provider(
        *(TransportError(TransportErrorKind.TIMEOUT) for _ in range(3))
    )
    pipeline = make_pipeline(provider, fake_clock)

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Failed)
    assert outcome.error_kind is ErrorKind.MODEL_UNAVAILABLE
    assert [a.outcome for a in outcome.attempts] == [AttemptOutcome.TIMEOUT] * 3
    assert len(fake_clock.sleeps) == 2
    assert fake_clock.sleeps[0] < fake_clock.sleeps[1]
    assert pipeline.audit_logger.sink.entries == []
    assert len(pipeline.cache_store.backend) == 0


@pytest.mark.asyncio
async def test_low_confidence_is_corrected_once(scripted_provider, fake_clock):
    provider = scripted_provider("first draft", "corrected draft")
    pipeline = make_pipeline(provider, fake_clock, scorer=ScriptedScorer(0.55, 0.85))

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Approved)
    assert outcome.corrected
    assert outcome.content == "corrected draft"
    assert outcome.validation.corrected_content == "corrected draft"
    assert outcome.uncertainty_note is None
    [entry] = pipeline.audit_logger.sink.entries
    assert entry.action is AuditAction.CORRECTED
    assert entry.original_content == "first draft"

    correction_call = provider.calls[1]
    assert correction_call["model_name"] == settings.CORRECTION_MODEL
    assert correction_call["temperature"] == settings.TEMPERATURE_CORRECTION
    assert "first draft" in correction_call["prompt"]
    assert rules.guidance_for(rules.ABSOLUTE_CLAIM) in correction_call["prompt"]

    cached = await pipeline.submit(_request())
    assert cached.from_cache and cached.corrected
    assert cached.content == "corrected draft"


@pytest.mark.asyncio
async def test_failed_correction_is_blocked_as_uncorrectable(scripted_provider, fake_clock):
    provider = scripted_provider("first draft", "second draft", "never used")
    pipeline = make_pipeline(provider, fake_clock, scorer=ScriptedScorer(0.5, 0.6))

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Blocked)
    assert outcome.reason is BlockReason.UNCORRECTABLE
    assert len(provider.calls) == 2
    [entry] = pipeline.audit_logger.sink.entries
    assert entry.action is AuditAction.BLOCKED
    assert entry.reason == "uncorrectable"


@pytest.mark.asyncio
async def test_valid_but_uncertain_content_carries_a_note(scripted_provider, fake_clock):
    provider = scripted_provider(SAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock, scorer=ScriptedScorer(0.75))

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Approved)
    assert outcome.is_uncertain
    assert "0.75" in outcome.uncertainty_note
    assert outcome.validation.issues == frozenset()


@pytest.mark.asyncio
async def test_correction_gets_its_own_attempts_after_slow_generation(
    scripted_provider, fake_clock
):
    provider = scripted_provider(
        TransportError(TransportErrorKind.TIMEOUT),
        TransportError(TransportErrorKind.TIMEOUT),
        "first draft",
        "corrected draft",
    )
    pipeline = make_pipeline(provider, fake_clock, scorer=ScriptedScorer(0.55, 0.85))

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Approved)
    assert outcome.corrected
    assert outcome.content == "corrected draft"
    assert [a.outcome for a in outcome.attempts] == [
        AttemptOutcome.TIMEOUT,
        AttemptOutcome.TIMEOUT,
        AttemptOutcome.SUCCESS,
        AttemptOutcome.SUCCESS,
    ]
    assert len(provider.calls) == 4


@pytest.mark.asyncio
async def test_failing_correction_call_stops_after_three_attempts(
    scripted_provider, fake_clock
):
    provider = scripted_provider(
        "first draft",
        TransportError(TransportErrorKind.PROVIDER_ERROR),
        TransportError(TransportErrorKind.PROVIDER_ERROR),
        TransportError(TransportErrorKind.PROVIDER_ERROR),
        "never used",
    )
    pipeline = make_pipeline(provider, fake_clock, scorer=ScriptedScorer(0.5))

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Failed)
    assert outcome.error_kind is ErrorKind.MODEL_UNAVAILABLE
    assert len(outcome.attempts) == 4
    assert len(provider.calls) == 4
    assert pipeline.metrics.provider_attempts == 4


@pytest.mark.asyncio
async def test_audit_failure_on_block_fails_the_request(scripted_provider, fake_clock):
    provider = scripted_provider(UNSAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock, sink=FailingSink())

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Failed)
    assert outcome.error_kind is ErrorKind.AUDIT_UNAVAILABLE


@pytest.mark.asyncio
async def test_audit_failure_on_approval_still_returns_content(scripted_provider, fake_clock):
    provider = scripted_provider(SAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock, sink=FailingSink())

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Approved)
    assert outcome.content == SAFE_TEXT


@pytest.mark.asyncio
async def test_full_rate_limiter_queue_throttles(scripted_provider, fake_clock):
    provider = scripted_provider(SAFE_TEXT)
    limiter = RateLimiter(
        buckets={
            UserRole.STUDENT: BucketConfig(1, 1.0),
            UserRole.FACULTY: BucketConfig(1, 1.0),
        },
        max_waiters=0,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )
    pipeline = make_pipeline(provider, fake_clock, limiter=limiter)

    await pipeline.submit(_request())
    outcome = await pipeline.submit(_request(prompt="Another question"))

    assert isinstance(outcome, Throttled)
    assert outcome.retry_after == pytest.approx(1.0)
    assert len(provider.calls) == 1
    assert pipeline.metrics.get_outcome_total("throttled") == 1


@pytest.mark.asyncio
async def test_deadline_fails_with_timeout_and_refunds_token(fake_clock):
    class SlowProvider:
        async def generate(self, prompt, context, *, model_name=None, temperature=None):
            await asyncio.sleep(5)
            return SAFE_TEXT

    limiter = RateLimiter(
        buckets={
            UserRole.STUDENT: BucketConfig(2, 0.001),
            UserRole.FACULTY: BucketConfig(2, 0.001),
        },
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )
    pipeline = make_pipeline(
        SlowProvider(), fake_clock, limiter=limiter, deadline_seconds=0.05
    )

    outcome = await pipeline.submit(_request())

    assert isinstance(outcome, Failed)
    assert outcome.error_kind is ErrorKind.TIMEOUT
    assert limiter.available(UserRole.STUDENT) == pytest.approx(2.0)
    assert len(pipeline.cache_store.backend) == 0
    assert pipeline.audit_logger.sink.entries == []


@pytest.mark.asyncio
async def test_unrelated_requests_run_concurrently(scripted_provider, fake_clock):
    provider = scripted_provider(*([SAFE_TEXT] * 5))
    pipeline = make_pipeline(provider, fake_clock)
    requests = [_request(prompt=f"Question {i}", user_id=f"u{i}") for i in range(5)]

    outcomes = await asyncio.gather(*(pipeline.submit(r) for r in requests))

    assert all(isinstance(o, Approved) for o in outcomes)
    entries = pipeline.audit_logger.sink.entries
    assert sorted(e.request_id for e in entries) == sorted(r.request_id for r in requests)
    assert len(pipeline.cache_store.backend) == 5


@pytest.mark.asyncio
async def test_faculty_material_is_not_served_to_students(scripted_provider, fake_clock):
    text = "Here is the answer key for the cardiology quiz."
    provider = scripted_provider(text, text)
    pipeline = make_pipeline(provider, fake_clock)
    prompt = "Write the answer key for the cardiology quiz."

    faculty = await pipeline.submit(_request(prompt=prompt, user_role=UserRole.FACULTY))
    student = await pipeline.submit(_request(prompt=prompt, user_role=UserRole.STUDENT))

    assert isinstance(faculty, Approved)
    assert isinstance(student, Blocked)
    assert student.reason is BlockReason.NOT_AUTHORIZED
    assert rules.FACULTY_ONLY in student.issues
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_doc_qa_renders_documents_into_prompt(scripted_provider, fake_clock):
    documents = (
        ContextTurn(
            role="document",
            content="Metformin is a first-line medication for type 2 diabetes.",
        ),
    )
    provider = scripted_provider("Metformin is first-line for type 2 diabetes.")
    pipeline = make_pipeline(provider, fake_clock)

    outcome = await pipeline.submit(
        _request(
            prompt="What is first-line for type 2 diabetes?",
            kind=RequestKind.DOC_QA,
            context_sequence=documents,
        )
    )

    assert isinstance(outcome, Approved)
    [call] = provider.calls
    assert call["context"] == ()
    assert "[Document 1]" in call["prompt"]
    assert documents[0].content in call["prompt"]
    assert pipeline.audit_logger.sink.entries[0].content_type == "document_answer"


@pytest.mark.asyncio
async def test_chat_context_is_passed_to_the_model(scripted_provider, fake_clock):
    history = (ContextTurn(role="user", content="We were discussing the heart."),)
    provider = scripted_provider(SAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock)

    await pipeline.submit(_request(context_sequence=history))

    assert provider.calls[0]["context"] == history


def test_request_run_rejects_illegal_transitions():
    run = RequestRun(request=_request())

    with pytest.raises(InvalidTransitionError):
        run.transition(PipelineState.GENERATING)

    run.transition(PipelineState.CACHE_CHECK)
    run.transition(PipelineState.GENERATING)
    run.transition(PipelineState.FAILED)
    assert run.history == [
        PipelineState.PENDING,
        PipelineState.CACHE_CHECK,
        PipelineState.GENERATING,
        PipelineState.FAILED,
    ]
    with pytest.raises(InvalidTransitionError):
        run.transition(PipelineState.FAILED)


def test_uncertainty_note_threshold():
    assert uncertainty_note(ValidationResult(is_valid=True, confidence=0.9), 0.85) is None
    assert uncertainty_note(ValidationResult(is_valid=True, confidence=0.8), 0.85)


@pytest.mark.asyncio
async def test_harmful_prompt_is_blocked_before_any_model_call(
    scripted_provider, fake_clock
):
    provider = scripted_provider(SAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock)
    prompt = "What is the easiest way to kill yourself?"
    request = _request(prompt=prompt, user_id="student-9")

    outcome = await pipeline.submit(request)

    assert isinstance(outcome, Blocked)
    assert outcome.reason is BlockReason.UNSAFE
    assert rules.SELF_HARM in outcome.issues
    assert provider.calls == []
    [entry] = pipeline.audit_logger.sink.entries
    assert entry.audit_ref == outcome.audit_ref
    assert entry.action is AuditAction.BLOCKED
    assert entry.original_content == prompt
    assert entry.user_id == "student-9"
    assert rules.SELF_HARM in entry.validation_result.issues
    assert len(pipeline.cache_store.backend) == 0


@pytest.mark.asyncio
async def test_clinical_prompt_about_suicide_reaches_the_model(
    scripted_provider, fake_clock
):
    provider = scripted_provider(SAFE_TEXT)
    pipeline = make_pipeline(provider, fake_clock)

    outcome = await pipeline.submit(
        _request(prompt="What are the risk factors for suicide in adolescents?")
    )

    assert isinstance(outcome, Approved)
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_derived_deadline_covers_queued_timeouts(fake_clock):
    cfg = PipelineSettings(
        _env_file=None,
        OPENAI_API_KEY="valid",
        LLM_ATTEMPT_TIMEOUT_SECONDS=0.05,
        LLM_RETRY_DELAY_SECONDS=0.01,
        LLM_RETRY_MAX_DELAY_SECONDS=0.02,
        REQUEST_DEADLINE_MARGIN_SECONDS=0.5,
    )

    async def hanging_provider(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(10)
        return httpx.Response(200, json={})

    client = ModelClient(
        api_base="http://provider.test/v1",
        api_key="k",
        timeout=cfg.LLM_ATTEMPT_TIMEOUT_SECONDS,
        max_concurrent_calls=1,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(hanging_provider)),
    )
    pipeline = GenerationPipeline(
        provider=client,
        guard_agent=GuardAgent(),
        cache_store=CacheStore(),
        rate_limiter=_generous_limiter(fake_clock),
        audit_logger=AuditLogger(InMemoryAuditSink()),
        retry_controller=RetryController(
            client,
            base_delay=cfg.LLM_RETRY_DELAY_SECONDS,
            max_delay=cfg.LLM_RETRY_MAX_DELAY_SECONDS,
        ),
        deadline_seconds=cfg.REQUEST_DEADLINE_SECONDS,
    )

    # Three requests share one concurrency slot; queueing must not
    # turn transport timeouts into a whole-request timeout.
    outcomes = await asyncio.gather(
        *(pipeline.submit(_request(prompt=f"Question {i}")) for i in range(3))
    )
    await client.aclose()

    for outcome in outcomes:
        assert isinstance(outcome, Failed)
        assert outcome.error_kind is ErrorKind.MODEL_UNAVAILABLE
        assert [a.outcome for a in outcome.attempts] == [AttemptOutcome.TIMEOUT] * 3
