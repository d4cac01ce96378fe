# agents/guard_rules.py

"""Pattern tables used by the Guard Agent screens."""

from __future__ import annotations

import re

SELF_HARM = "self-harm"
SUBSTANCE_MISUSE = "substance-misuse"
DANGEROUS_SELF_TREATMENT = "dangerous-self-treatment"


def _compile(patterns: list[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Instructional or encouraging phrasing only. Clinical discussion such as
# "risk factors for suicide" or "signs of opioid overdose" must not match.
SAFETY_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    SELF_HARM: _compile(
        [
            r"\b(how|ways?|best way|easiest way) to (kill|hurt|harm|cut|injure) (yourself|myself|oneself)\b",
            r"\b(you should|go ahead and|just) (kill|hurt|harm|cut) yourself\b",
            r"\bpainless (way|method)s? to die\b",
            r"\b(how|ways?) to end (your|my) (own )?life\b",
            r"\bsuicide (methods?|instructions|guide)\b",
            r"\b(lethal|fatal) dose\b.{0,40}\bto (die|end (it|your life))\b",
        ]
    ),
    SUBSTANCE_MISUSE: _compile(
        [
            r"\bhow to get high\b",
            r"\b(to get high|for a (better |stronger )?high|for recreational use)\b",
            r"\b(crush and )?snort (the |your )?(pills?|tablets?|oxycodone|adderall|xanax)\b",
            r"\bcombine \w+ (with|and) alcohol (for|to get) (a )?(stronger|better|bigger) (effect|high|buzz)\b",
            r"\b(beat|pass|avoid|cheat) (a |the )?(urine |positive )?drug test\b",
        ]
    ),
    DANGEROUS_SELF_TREATMENT: _compile(
        [
            r"\b(you (can|should)|just) (stop|quit) taking (your )?(prescribed )?(medications?|medicines?|meds|insulin|antibiotics)\b",
            r"\b(double|triple) (your|the) (prescribed )?dose\b",
            r"\b(treat|cure) (it|this|cancer|an infection|appendicitis|sepsis|meningitis) at home (with|using|by)\b",
            r"\b(no need|you don't need|you do not need) (to see|for) a (doctor|physician|clinician)\b",
            r"\bperform (your own|a self-?)\s*(surgery|suturing|lumbar puncture|abortion)\b",
            r"\b(drink|ingest|swallow) (bleach|hydrogen peroxide|turpentine|kerosene|chlorine dioxide)\b",
        ]
    ),
}


PROFANITY = "appropriateness:profanity"
EXPLICIT = "appropriateness:explicit-content"
FACULTY_ONLY = "appropriateness:faculty-only-material"

UNIVERSAL_APPROPRIATENESS_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    PROFANITY: _compile([r"\b(fuck\w*|shit\w*|bitch\w*|asshole|bastard|cunt)\b"]),
    EXPLICIT: _compile([r"\b(porn\w*|sexually explicit|nsfw|erotic (story|content))\b"]),
}

STUDENT_RESTRICTED_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    FACULTY_ONLY: _compile(
        [
            r"\banswer key\b",
            r"\bgrading rubric\b",
            r"\bmarking scheme\b",
            r"\bexam solutions?\b",
            r"\b(faculty|instructor)[- ]only\b",
        ]
    ),
}


ABSOLUTE_CLAIM = "accuracy:absolute-efficacy-claim"
NO_SIDE_EFFECTS = "accuracy:no-side-effects-claim"
IMPLAUSIBLE_DOSAGE = "accuracy:implausible-dosage"
UNSUPPORTED_CLAIM = "accuracy:unsupported-research-claim"
UNHEDGED_INSTRUCTION = "accuracy:unhedged-clinical-instruction"
MALFORMED_OUTPUT = "accuracy:malformed-structured-output"
QUIZ_ANSWER_MISMATCH = "accuracy:quiz-answer-not-in-options"
UNGROUNDED_ANSWER = "accuracy:unsupported-by-documents"
NO_REFERENCE_DOCUMENTS = "accuracy:no-reference-documents"

ACCURACY_PENALTIES: dict[str, float] = {
    ABSOLUTE_CLAIM: 0.3,
    NO_SIDE_EFFECTS: 0.2,
    IMPLAUSIBLE_DOSAGE: 0.3,
    UNSUPPORTED_CLAIM: 0.1,
    UNHEDGED_INSTRUCTION: 0.15,
    MALFORMED_OUTPUT: 0.5,
    QUIZ_ANSWER_MISMATCH: 0.4,
    UNGROUNDED_ANSWER: 0.4,
    NO_REFERENCE_DOCUMENTS: 0.2,
}

ABSOLUTE_CLAIM_RE = re.compile(
    r"\b(100% (effective|safe|cure)|always cures|guaranteed (cure|to cure|to work)|"
    r"never fails|completely cures|miracle cure|cures all)\b",
    re.IGNORECASE,
)
NO_SIDE_EFFECTS_RE = re.compile(
    r"\b(no|zero|without any) (side[- ]effects|risks|adverse (effects|events))\b",
    re.IGNORECASE,
)
DOSAGE_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(mg|g|mcg|µg|ml|mL)\b",
)
# Single-dose ceilings, expressed in the unit matched above.
DOSAGE_CEILINGS: dict[str, float] = {
    "mg": 10000.0,
    "g": 10.0,
    "mcg": 100000.0,
    "µg": 100000.0,
    "ml": 5000.0,
}
RESEARCH_CLAIM_RE = re.compile(
    r"\b(studies|research|science) (show|shows|prove|proves|proven)\b", re.IGNORECASE
)
CITATION_RE = re.compile(r"(\bet al\.?|\bdoi\b|\[\d+\]|\(\w+,? \d{4}\))", re.IGNORECASE)
CLINICAL_INSTRUCTION_RE = re.compile(
    r"\b(take|administer|give|inject)\s+\d", re.IGNORECASE
)
HEDGE_RE = re.compile(
    r"\b(consult|healthcare provider|clinician|physician|prescriber|guideline|"
    r"pharmacist|under supervision|educational purposes)\b",
    re.IGNORECASE,
)

GROUNDING_STOPWORDS = frozenset(
    {
        "that",
        "this",
        "with",
        "from",
        "have",
        "which",
        "their",
        "there",
        "these",
        "those",
        "also",
        "into",
        "such",
        "than",
        "then",
        "they",
        "been",
        "were",
        "will",
        "would",
        "about",
        "because",
        "based",
        "document",
        "documents",
        "answer",
    }
)
WORD_RE = re.compile(r"[a-zA-Z][a-zA-Z\-]{3,}")


# Instructions handed to the model when it is asked to correct an answer.
ISSUE_GUIDANCE: dict[str, str] = {
    ABSOLUTE_CLAIM: "Remove absolute efficacy claims; describe effectiveness with appropriate uncertainty.",
    NO_SIDE_EFFECTS: "Do not claim an intervention has no side effects or risks; mention relevant adverse effects.",
    IMPLAUSIBLE_DOSAGE: "Check every dose against standard references; remove or correct implausible amounts.",
    UNSUPPORTED_CLAIM: "Either cite the evidence behind research claims or soften them.",
    UNHEDGED_INSTRUCTION: "Frame dosing or treatment steps as educational and defer to a qualified clinician.",
    MALFORMED_OUTPUT: "Return only a single valid JSON document in the requested structure.",
    QUIZ_ANSWER_MISMATCH: "Make sure every question's answer is exactly one of its listed options.",
    UNGROUNDED_ANSWER: "Answer only from the supplied documents and say when they do not cover the question.",
    NO_REFERENCE_DOCUMENTS: "State clearly that no reference documents were available for this answer.",
}


def guidance_for(issue: str) -> str:
    return ISSUE_GUIDANCE.get(issue, issue)
