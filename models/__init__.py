"""Central package for pipeline data models."""

from .pipeline_models import (
    Approved,
    AttemptOutcome,
    AuditAction,
    AuditEntry,
    Blocked,
    BlockReason,
    CacheEntry,
    ContextTurn,
    ErrorKind,
    Failed,
    GenerationRequest,
    GuardStage,
    ModelCallAttempt,
    PipelineOutcome,
    RequestKind,
    Throttled,
    UserRole,
    ValidationResult,
)
from .request_kinds import KIND_PROFILES, KindProfile, kind_profile

__all__ = [
    "Approved",
    "AttemptOutcome",
    "AuditAction",
    "AuditEntry",
    "Blocked",
    "BlockReason",
    "CacheEntry",
    "ContextTurn",
    "ErrorKind",
    "Failed",
    "GenerationRequest",
    "GuardStage",
    "KIND_PROFILES",
    "KindProfile",
    "ModelCallAttempt",
    "PipelineOutcome",
    "RequestKind",
    "Throttled",
    "UserRole",
    "ValidationResult",
    "kind_profile",
]
