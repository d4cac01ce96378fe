# models/pipeline_models.py
"""Request, validation, audit and outcome types for the generation pipeline."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RequestKind(str, Enum):
    """Kinds of generation requests accepted by the pipeline."""

    CHAT = "chat"
    QUIZ = "quiz"
    MINDMAP = "mindmap"
    INFOGRAPHIC = "infographic"
    SLIDE = "slide"
    DOC_QA = "doc-qa"


class UserRole(str, Enum):
    """Audience of a request; drives rate limits and appropriateness."""

    STUDENT = "student"
    FACULTY = "faculty"


class GuardStage(str, Enum):
    """Guard Agent stages, in the order they run."""

    SAFETY = "safety"
    APPROPRIATENESS = "appropriateness"
    ACCURACY = "accuracy"


class AuditAction(str, Enum):
    APPROVED = "approved"
    CORRECTED = "corrected"
    BLOCKED = "blocked"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "providerError"


class ErrorKind(str, Enum):
    """Reasons a request can end in ``Failed``."""

    MODEL_UNAVAILABLE = "model_unavailable"
    AUDIT_UNAVAILABLE = "audit_unavailable"
    TIMEOUT = "timeout"


class BlockReason(str, Enum):
    UNSAFE = "unsafe"
    NOT_AUTHORIZED = "not_authorized"
    UNCORRECTABLE = "uncorrectable"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineBaseModel(BaseModel):
    """Immutable base for values crossing the pipeline boundary."""

    model_config = ConfigDict(frozen=True)


class ContextTurn(PipelineBaseModel):
    """One prior turn or retrieved document chunk supplied with a request."""

    role: str = "user"
    content: str


class GenerationRequest(PipelineBaseModel):
    """A single unit of work submitted to the pipeline."""

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: RequestKind
    prompt: str = Field(min_length=1)
    context_sequence: tuple[ContextTurn, ...] = ()
    user_role: UserRole = UserRole.STUDENT
    user_id: str = "anonymous"
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value


class ValidationResult(PipelineBaseModel):
    """Result of one Guard Agent pass."""

    is_valid: bool
    confidence: float = Field(ge=0.0, le=1.0)
    issues: frozenset[str] = frozenset()
    corrected_content: str | None = None
    failed_stage: GuardStage | None = None


class AuditEntry(PipelineBaseModel):
    """Append-only record of a Guard Agent decision."""

    audit_ref: str = Field(default_factory=lambda: uuid.uuid4().hex)
    request_id: str
    user_id: str
    content_type: str
    original_content: str
    validation_result: ValidationResult
    action: AuditAction
    reason: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)


@dataclass(frozen=True)
class ModelCallAttempt:
    """One provider call made on behalf of a request."""

    attempt_number: int
    started_at: float
    outcome: AttemptOutcome
    latency_ms: float
    error: str | None = None


@dataclass(frozen=True)
class CacheEntry:
    """Validated content stored under a request fingerprint."""

    content: str
    validation: ValidationResult
    expires_at: float
    validated_for_role: UserRole = UserRole.STUDENT


@dataclass(frozen=True)
class Approved:
    content: str
    validation: ValidationResult
    corrected: bool = False
    from_cache: bool = False
    uncertainty_note: str | None = None
    attempts: tuple[ModelCallAttempt, ...] = ()

    @property
    def is_uncertain(self) -> bool:
        return self.uncertainty_note is not None


@dataclass(frozen=True)
class Blocked:
    reason: BlockReason
    audit_ref: str
    issues: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Failed:
    error_kind: ErrorKind
    detail: str | None = None
    attempts: tuple[ModelCallAttempt, ...] = ()


@dataclass(frozen=True)
class Throttled:
    """Returned when the rate limiter refuses to queue the request."""

    retry_after: float


PipelineOutcome = Approved | Blocked | Failed | Throttled
