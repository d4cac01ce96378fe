# orchestration/audit_logger.py
"""Records every Guard Agent decision to an append-only audit sink."""

from __future__ import annotations

import structlog
from core.errors import AuditUnavailableError, StorageError
from storage.audit_sink import AuditSink, JsonlAuditSink

from models import (
    AuditAction,
    AuditEntry,
    GenerationRequest,
    ValidationResult,
    kind_profile,
)

logger = structlog.get_logger(__name__)


class AuditLogger:
    """Build audit entries and write them durably before returning."""

    def __init__(self, sink: AuditSink | None = None) -> None:
        self.sink = sink or JsonlAuditSink()

    async def record(
        self,
        request: GenerationRequest,
        content: str,
        validation: ValidationResult,
        action: AuditAction,
        reason: str | None = None,
    ) -> AuditEntry:
        """Append an entry; raise :class:`AuditUnavailableError` if the sink fails."""
        entry = AuditEntry(
            request_id=request.request_id,
            user_id=request.user_id,
            content_type=kind_profile(request.kind).content_type,
            original_content=content,
            validation_result=validation,
            action=action,
            reason=reason,
        )
        try:
            await self.sink.append(entry)
        except StorageError as exc:
            logger.error(
                "Audit sink rejected entry.",
                request_id=request.request_id,
                action=action.value,
                error=str(exc),
            )
            raise AuditUnavailableError(str(exc)) from exc

        logger.info(
            "Audit entry recorded.",
            request_id=request.request_id,
            audit_ref=entry.audit_ref,
            action=action.value,
            content_type=entry.content_type,
            reason=reason,
        )
        return entry
