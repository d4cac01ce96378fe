# orchestration/cli_runner.py
"""Command-line runner for a single pipeline request."""

from __future__ import annotations

import asyncio

import structlog
from core.model_client import model_client
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text
from utils.logging import setup_logging

from models import (
    Approved,
    Blocked,
    ContextTurn,
    Failed,
    GenerationRequest,
    PipelineOutcome,
    RequestKind,
    Throttled,
    UserRole,
)
from orchestration.pipeline import GenerationPipeline

logger = structlog.get_logger(__name__)


def render_outcome(console: Console, outcome: PipelineOutcome) -> None:
    if isinstance(outcome, Approved):
        title = "Approved (corrected)" if outcome.corrected else "Approved"
        if outcome.from_cache:
            title += " (cached)"
        console.print(Panel(Text(outcome.content), title=title, border_style="green"))
        if outcome.uncertainty_note:
            console.print(f"[yellow]{outcome.uncertainty_note}[/yellow]")
    elif isinstance(outcome, Blocked):
        console.print(
            Panel(
                ", ".join(sorted(outcome.issues)) or "no details",
                title=f"Blocked: {outcome.reason.value} (audit {outcome.audit_ref})",
                border_style="red",
            )
        )
    elif isinstance(outcome, Failed):
        console.print(
            f"[red]Failed: {outcome.error_kind.value}[/red] "
            f"after {len(outcome.attempts)} attempt(s). {escape(outcome.detail or '')}"
        )
    elif isinstance(outcome, Throttled):
        console.print(f"[yellow]Throttled; retry after {outcome.retry_after:.1f}s[/yellow]")


async def _run(pipeline: GenerationPipeline, request: GenerationRequest) -> PipelineOutcome:
    try:
        return await pipeline.submit(request)
    finally:
        await model_client.aclose()


def run(
    prompt: str,
    kind: str = RequestKind.CHAT.value,
    role: str = UserRole.STUDENT.value,
    user_id: str = "cli",
    context: list[str] | None = None,
) -> PipelineOutcome | None:
    """Build a request from CLI arguments, submit it and print the outcome."""
    setup_logging()
    request = GenerationRequest(
        kind=RequestKind(kind),
        prompt=prompt,
        user_role=UserRole(role),
        user_id=user_id,
        context_sequence=tuple(
            ContextTurn(role="document" if kind == RequestKind.DOC_QA.value else "user", content=c)
            for c in context or []
        ),
    )
    pipeline = GenerationPipeline(provider=model_client)
    console = Console()
    try:
        outcome = asyncio.run(_run(pipeline, request))
    except KeyboardInterrupt:
        logger.info("Pipeline CLI interrupted; shutting down.")
        return None
    render_outcome(console, outcome)
    logger.debug("Pipeline metrics.", metrics=pipeline.metrics.snapshot())
    return outcome
