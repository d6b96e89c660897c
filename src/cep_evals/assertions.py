"""Assertion checkers for eval responses.

Every checker returns an AssertionResult rather than raising, so the
runner can collect and report all outcomes for a case. Phrase matching
runs on normalized text: lowercase, without hyphens or underscores, with
the remaining punctuation turned into spaces.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any

from cep_evals.reporting.models import AssertionResult, ReportStatus, RubricResult, TurnResult

if TYPE_CHECKING:
    from cep_evals.registry import EvalRubric, TurnAssertion

_JOINERS = re.compile(r"[-_]")
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

SCHEMA_KEY_MAP: dict[str, str] = {
    "diagnosis": "diagnosis",
    "evidence": "evidence",
    "hypotheses": "hypotheses",
    "next_steps": "nextSteps",
    "reference": "reference",
}

STRUCTURE_SIGNALS: tuple[str, ...] = (
    "diagnosis",
    "evidence",
    "hypothesis",
    "next",
    "reference",
    "found",
    "issue",
    "cause",
    "recommend",
    "steps",
    "suggest",
    "check",
    "error",
    "configur",
    "investigat",
)

MIN_STRUCTURED_TEXT_LENGTH = 20

# Keyed by word prefix after normalization.
RUBRIC_SYNONYMS: dict[str, tuple[str, ...]] = {
    "recommend": ("enable", "configure", "suggest", "try", "apply"),
    "check": ("verify", "confirm", "review", "inspect"),
    "cause": ("because", "due to", "reason", "root cause"),
    "fix": ("resolve", "remediate", "correct"),
    "escalat": ("contact support", "open a ticket", "raise a case"),
}


def normalize_for_matching(text: str) -> str:
    """Normalize text so that ``Wi-Fi`` and ``wifi`` compare equal."""
    lowered = _JOINERS.sub("", text.lower())
    spaced = _PUNCTUATION.sub(" ", lowered)
    return _WHITESPACE.sub(" ", spaced).strip()


def _combined_text(text: str, metadata: Any) -> str:
    metadata_text = json.dumps(metadata) if metadata is not None else ""
    return normalize_for_matching(f"{text}\n{metadata_text}")


def find_missing(haystack: str, needles: list[str]) -> list[str]:
    """Needles whose normalized form does not occur in ``haystack``."""
    normalized = normalize_for_matching(haystack)
    return [n for n in needles if normalize_for_matching(n) not in normalized]


def _has_expected_schema(metadata: Any, expected: list[str]) -> bool:
    if not isinstance(metadata, dict):
        return False
    return all(SCHEMA_KEY_MAP.get(key, key) in metadata for key in expected)


def _check_structured_text(text: str, expected: list[str]) -> AssertionResult:
    lower = text.lower()
    matches = sum(1 for signal in STRUCTURE_SIGNALS if signal in lower)

    if not expected and lower:
        return AssertionResult(True, "Non-empty response")
    if len(lower) > MIN_STRUCTURED_TEXT_LENGTH and matches >= 1:
        return AssertionResult(True, f"Found {matches} structural signals in text", {"matches": matches})
    return AssertionResult(False, f"Insufficient structure: length={len(lower)}, signals={matches}")


def check_structured_response(
    text: str,
    metadata: dict[str, Any] | None,
    expected_schema: list[str],
) -> AssertionResult:
    """Check that a response carries the expected diagnostic structure.

    Metadata keys are tried first; plain text falls back to a signal
    vocabulary heuristic.
    """
    if _has_expected_schema(metadata, expected_schema):
        return AssertionResult(
            True,
            "Response contains expected schema in metadata",
            {"expectedSchema": list(expected_schema), "source": "metadata"},
        )

    text_result = _check_structured_text(text, expected_schema)
    if text_result.passed:
        return AssertionResult(
            True,
            "Response contains expected structure in text",
            {"expectedSchema": list(expected_schema), "source": "text"},
        )

    return AssertionResult(
        False,
        f"Response missing expected schema: {', '.join(expected_schema)}",
        {"expectedSchema": list(expected_schema), "textResult": text_result.message},
    )


def check_required_evidence(
    text: str,
    metadata: dict[str, Any] | None,
    required_evidence: list[str],
) -> AssertionResult:
    """Every required phrase must appear in the text or metadata."""
    if not required_evidence:
        return AssertionResult(True, "No required evidence specified")

    combined = _combined_text(text, metadata)
    missing = [n for n in required_evidence if normalize_for_matching(n) not in combined]
    if not missing:
        return AssertionResult(True, "All required evidence found", {"requiredEvidence": list(required_evidence)})
    return AssertionResult(
        False,
        f"Missing required evidence: {', '.join(missing)}",
        {"requiredEvidence": list(required_evidence), "missing": missing},
    )


def check_forbidden_evidence(
    text: str,
    metadata: dict[str, Any] | None,
    forbidden_evidence: list[str],
) -> AssertionResult:
    """None of the forbidden phrases may appear."""
    if not forbidden_evidence:
        return AssertionResult(True, "No forbidden evidence specified")

    combined = _combined_text(text, metadata)
    found = [n for n in forbidden_evidence if normalize_for_matching(n) in combined]
    if not found:
        return AssertionResult(True, "No forbidden evidence found", {"forbiddenEvidence": list(forbidden_evidence)})
    return AssertionResult(
        False,
        f"Found forbidden evidence: {', '.join(found)}",
        {"forbiddenEvidence": list(forbidden_evidence), "found": found},
    )


def check_required_tool_calls(tool_calls: list[str], required_tool_calls: list[str]) -> AssertionResult:
    """Every required tool must have been invoked at least once."""
    if not required_tool_calls:
        return AssertionResult(True, "No required tool calls specified")

    called = set(tool_calls)
    missing = [tool for tool in required_tool_calls if tool not in called]
    details: dict[str, Any] = {
        "requiredToolCalls": list(required_tool_calls),
        "actualToolCalls": list(tool_calls),
    }
    if not missing:
        return AssertionResult(True, f"All required tools called: {', '.join(required_tool_calls)}", details)
    details["missing"] = missing
    return AssertionResult(False, f"Missing required tool calls: {', '.join(missing)}", details)


def _criterion_variants(criterion: str) -> list[str]:
    normalized = normalize_for_matching(criterion)
    variants = [normalized]
    words = normalized.split()
    for prefix, alternatives in RUBRIC_SYNONYMS.items():
        if not any(word.startswith(prefix) for word in words):
            continue
        for alternative in alternatives:
            variants.append(" ".join(alternative if word.startswith(prefix) else word for word in words))
    return variants


def score_rubric(
    text: str,
    metadata: dict[str, Any] | None,
    criteria: list[str],
) -> tuple[int, list[str], list[str]]:
    """Score rubric criteria against a response.

    A criterion matches when its normalized form, or a synonym variant of
    it, is a substring of the normalized response.

    Returns:
        Tuple of (score, matched criteria, missed criteria).
    """
    combined = _combined_text(text, metadata)
    matched: list[str] = []
    missed: list[str] = []
    for criterion in criteria:
        if any(variant and variant in combined for variant in _criterion_variants(criterion)):
            matched.append(criterion)
        else:
            missed.append(criterion)
    return len(matched), matched, missed


def check_rubric_score(score: int, min_score: int, criteria: list[str]) -> AssertionResult:
    details = {"score": score, "minScore": min_score, "total": len(criteria)}
    if score >= min_score:
        return AssertionResult(True, f"Rubric score {score}/{len(criteria)} meets minimum {min_score}", details)
    return AssertionResult(False, f"Rubric score {score}/{len(criteria)} below minimum {min_score}", details)


def evaluate_rubric(
    rubric: EvalRubric | None,
    text: str,
    metadata: dict[str, Any] | None,
) -> RubricResult | None:
    """Score a case rubric, or return None when the case has none."""
    if rubric is None:
        return None
    score, matched, missed = score_rubric(text, metadata, rubric.criteria)
    check = check_rubric_score(score, rubric.min_score, rubric.criteria)
    return RubricResult(score=score, min_score=rubric.min_score, matched=matched, missed=missed, passed=check.passed)


def evaluate_turn(
    turn: int,
    tool_calls: list[str],
    text: str,
    assertion: TurnAssertion | None,
) -> TurnResult:
    """Check one turn's reply against its assertion, if it has one."""
    if assertion is None:
        return TurnResult(turn=turn, passed=True, tool_calls=list(tool_calls))

    missing_tools = [tool for tool in assertion.required_tool_calls if tool not in tool_calls]
    missing_evidence = find_missing(text, assertion.required_evidence)
    return TurnResult(
        turn=turn,
        passed=not missing_tools and not missing_evidence,
        tool_calls=list(tool_calls),
        missing_tool_calls=missing_tools,
        missing_evidence=missing_evidence,
    )


def format_turn_failures(turn_results: list[TurnResult]) -> str | None:
    """Describe failed turns as ``Turn k: missing tools: ...; missing evidence: ...``."""
    parts: list[str] = []
    for result in turn_results:
        if result.passed:
            continue
        issues: list[str] = []
        if result.missing_tool_calls:
            issues.append(f"missing tools: {', '.join(result.missing_tool_calls)}")
        if result.missing_evidence:
            issues.append(f"missing evidence: {', '.join(result.missing_evidence)}")
        parts.append(f"Turn {result.turn}: {'; '.join(issues)}")
    return " | ".join(parts) or None


def determine_status(
    schema: AssertionResult,
    tool_calls: AssertionResult,
    evidence: AssertionResult,
    forbidden: AssertionResult,
    rubric: RubricResult | None = None,
    turn_failure: str | None = None,
    transport_error: str | None = None,
) -> tuple[ReportStatus, str | None]:
    """Combine all checks into a final status and reason.

    Returns:
        Tuple of (status, reason). The reason is None only for ``pass``.
    """
    if transport_error:
        return ReportStatus.ERROR, transport_error

    for result in (schema, tool_calls, evidence, forbidden):
        if not result.passed:
            return ReportStatus.FAIL, result.message
    if turn_failure:
        return ReportStatus.FAIL, turn_failure
    if rubric is not None and not rubric.passed:
        return ReportStatus.FAIL, f"Rubric score {rubric.score} below minimum {rubric.min_score}"
    return ReportStatus.PASS, None
