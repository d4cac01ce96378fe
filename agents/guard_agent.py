# agents/guard_agent.py
"""Multi-stage content validator: safety, appropriateness, then accuracy."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from config import settings

from agents import guard_rules as rules
from models import (
    ContextTurn,
    GuardStage,
    RequestKind,
    UserRole,
    ValidationResult,
    kind_profile,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ScreenVerdict:
    """Outcome of the safety or appropriateness screen."""

    passed: bool
    reasons: frozenset[str] = frozenset()


@dataclass(frozen=True)
class AccuracyReport:
    confidence: float
    findings: frozenset[str] = field(default_factory=frozenset)


class AccuracyScorer(Protocol):
    def score(
        self,
        content: str,
        context: Sequence[ContextTurn],
        kind: RequestKind,
    ) -> AccuracyReport: ...


def screen_safety(content: str) -> ScreenVerdict:
    """Match content against every harm category."""
    reasons = frozenset(
        category
        for category, patterns in rules.SAFETY_PATTERNS.items()
        if any(p.search(content) for p in patterns)
    )
    return ScreenVerdict(passed=not reasons, reasons=reasons)


def screen_appropriateness(content: str, user_role: UserRole) -> ScreenVerdict:
    tables = [rules.UNIVERSAL_APPROPRIATENESS_PATTERNS]
    if user_role is UserRole.STUDENT:
        tables.append(rules.STUDENT_RESTRICTED_PATTERNS)
    reasons = frozenset(
        label
        for table in tables
        for label, patterns in table.items()
        if any(p.search(content) for p in patterns)
    )
    return ScreenVerdict(passed=not reasons, reasons=reasons)


def _structural_findings(content: str, kind: RequestKind) -> set[str]:
    if not kind_profile(kind).expects_json:
        return set()
    try:
        document = json.loads(content)
    except json.JSONDecodeError:
        return {rules.MALFORMED_OUTPUT}
    if kind is RequestKind.QUIZ:
        return _quiz_findings(document)
    return set()


def _quiz_findings(document: Any) -> set[str]:
    questions = document.get("questions") if isinstance(document, dict) else document
    if not isinstance(questions, list) or not questions:
        return {rules.MALFORMED_OUTPUT}
    for question in questions:
        if not isinstance(question, dict):
            return {rules.MALFORMED_OUTPUT}
        options = question.get("options")
        if not isinstance(options, list) or question.get("answer") not in options:
            return {rules.QUIZ_ANSWER_MISMATCH}
    return set()


def _vocabulary(text: str) -> set[str]:
    return {
        word.lower()
        for word in rules.WORD_RE.findall(text)
        if word.lower() not in rules.GROUNDING_STOPWORDS
    }


def grounding_ratio(content: str, context: Sequence[ContextTurn]) -> float:
    """Share of the answer's content words that appear in the reference text."""
    answer_words = _vocabulary(content)
    if not answer_words:
        return 1.0
    reference_words = _vocabulary(" ".join(turn.content for turn in context))
    return len(answer_words & reference_words) / len(answer_words)


class HeuristicAccuracyScorer:
    """Penalty-based medical accuracy heuristics."""

    def __init__(self, min_grounding: float = settings.DOC_QA_MIN_GROUNDING) -> None:
        self.min_grounding = min_grounding

    def findings(
        self, content: str, context: Sequence[ContextTurn], kind: RequestKind
    ) -> set[str]:
        found: set[str] = set()
        if rules.ABSOLUTE_CLAIM_RE.search(content):
            found.add(rules.ABSOLUTE_CLAIM)
        if rules.NO_SIDE_EFFECTS_RE.search(content):
            found.add(rules.NO_SIDE_EFFECTS)
        for amount, unit in rules.DOSAGE_RE.findall(content):
            ceiling = rules.DOSAGE_CEILINGS.get(unit.lower())
            if ceiling is not None and float(amount) > ceiling:
                found.add(rules.IMPLAUSIBLE_DOSAGE)
                break
        if rules.RESEARCH_CLAIM_RE.search(content) and not rules.CITATION_RE.search(
            content
        ):
            found.add(rules.UNSUPPORTED_CLAIM)
        if rules.CLINICAL_INSTRUCTION_RE.search(content) and not rules.HEDGE_RE.search(
            content
        ):
            found.add(rules.UNHEDGED_INSTRUCTION)
        found |= _structural_findings(content, kind)
        if kind is RequestKind.DOC_QA:
            if not context:
                found.add(rules.NO_REFERENCE_DOCUMENTS)
            elif grounding_ratio(content, context) < self.min_grounding:
                found.add(rules.UNGROUNDED_ANSWER)
        return found

    def score(
        self, content: str, context: Sequence[ContextTurn], kind: RequestKind
    ) -> AccuracyReport:
        found = self.findings(content, context, kind)
        penalty = sum(rules.ACCURACY_PENALTIES[f] for f in found)
        confidence = min(1.0, max(0.0, 1.0 - penalty))
        return AccuracyReport(confidence=round(confidence, 4), findings=frozenset(found))


class GuardAgent:
    """Validate generated content in three ordered, short-circuiting stages.

    The agent holds configuration only; ``validate`` depends on nothing but
    its arguments and performs no retries.
    """

    def __init__(
        self,
        approval_threshold: float = settings.ACCURACY_APPROVAL_THRESHOLD,
        accuracy_scorer: AccuracyScorer | None = None,
    ) -> None:
        self.approval_threshold = approval_threshold
        self.accuracy_scorer = accuracy_scorer or HeuristicAccuracyScorer()
        logger.info(
            "GuardAgent initialized.",
            approval_threshold=self.approval_threshold,
            scorer=type(self.accuracy_scorer).__name__,
        )

    def screen_prompt(self, prompt: str) -> ValidationResult | None:
        """Safety-screen the user's own prompt before any model call.

        Returns a failed result when the prompt asks for harmful material,
        otherwise ``None``.
        """
        safety = screen_safety(prompt)
        if safety.passed:
            return None
        logger.warning("Prompt failed safety screen.", reasons=sorted(safety.reasons))
        return ValidationResult(
            is_valid=False,
            confidence=0.0,
            issues=safety.reasons,
            failed_stage=GuardStage.SAFETY,
        )

    def validate(
        self,
        content: str,
        context: Sequence[ContextTurn],
        user_role: UserRole,
        kind: RequestKind = RequestKind.CHAT,
    ) -> ValidationResult:
        safety = screen_safety(content)
        if not safety.passed:
            logger.warning("Safety screen failed.", reasons=sorted(safety.reasons))
            return ValidationResult(
                is_valid=False,
                confidence=0.0,
                issues=safety.reasons,
                failed_stage=GuardStage.SAFETY,
            )

        appropriateness = screen_appropriateness(content, user_role)
        if not appropriateness.passed:
            logger.warning(
                "Appropriateness screen failed.",
                role=user_role.value,
                reasons=sorted(appropriateness.reasons),
            )
            return ValidationResult(
                is_valid=False,
                confidence=0.0,
                issues=appropriateness.reasons,
                failed_stage=GuardStage.APPROPRIATENESS,
            )

        report = self.accuracy_scorer.score(content, context, kind)
        if report.confidence < self.approval_threshold:
            issues = report.findings or frozenset(
                {f"accuracy:low-confidence:{report.confidence:.2f}"}
            )
            logger.info(
                "Accuracy screen reported issues.",
                confidence=report.confidence,
                issues=sorted(issues),
            )
            return ValidationResult(
                is_valid=False,
                confidence=report.confidence,
                issues=issues,
                failed_stage=GuardStage.ACCURACY,
            )

        logger.debug("Content passed all guard stages.", confidence=report.confidence)
        return ValidationResult(is_valid=True, confidence=report.confidence)
