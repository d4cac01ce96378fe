# models/request_kinds.py
"""Per-kind handling table; every :class:`RequestKind` must have a profile."""

from __future__ import annotations

from dataclasses import dataclass

from .pipeline_models import RequestKind


@dataclass(frozen=True)
class KindProfile:
    """How the pipeline prompts for, checks and audits one request kind."""

    template: str
    content_type: str
    expects_json: bool


KIND_PROFILES: dict[RequestKind, KindProfile] = {
    RequestKind.CHAT: KindProfile("generation/chat.j2", "chat_response", False),
    RequestKind.QUIZ: KindProfile("generation/quiz.j2", "quiz", True),
    RequestKind.MINDMAP: KindProfile("generation/mindmap.j2", "mind_map", True),
    RequestKind.INFOGRAPHIC: KindProfile(
        "generation/infographic.j2", "infographic", True
    ),
    RequestKind.SLIDE: KindProfile("generation/slide.j2", "slide_deck", True),
    RequestKind.DOC_QA: KindProfile("generation/doc_qa.j2", "document_answer", False),
}


def kind_profile(kind: RequestKind) -> KindProfile:
    return KIND_PROFILES[kind]
