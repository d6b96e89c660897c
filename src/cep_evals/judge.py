"""LLM-as-judge re-scoring of evidence failures.

Cases whose only problem is literal evidence matching get a second
opinion from a judge model that accepts synonyms and paraphrase. Cases
are sent in batches to keep the number of judge calls low. Whenever a
batch cannot be judged, every case in it keeps a failing verdict.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cep_evals.assertions import determine_status, format_turn_failures
from cep_evals.errors import JudgeUnavailable
from cep_evals.reporting.models import AssertionResult, EvalReport, ReportStatus

if TYPE_CHECKING:
    from cep_evals.config import EvalConfig

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10
RESPONSE_TRUNCATION_LIMIT = 1500
FAILED_REASONING = "LLM evaluation failed"
NO_RESULT_REASONING = "Evaluation returned no result"

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

JUDGE_PROMPT_HEADER = """You are an eval judge. For each case below, decide whether the response \
adequately addresses the required evidence concepts.

Evidence matching rules:
- Concepts can be addressed through synonyms, paraphrasing, or semantic equivalence
- "wifi" matches "Wi-Fi", "wireless network", etc.
- "deauth" matches "deauthentication", "disconnection", "authentication failure", "handshake timeout"
- "license" matches "licensing", "subscription", "enterprise license"
- Error codes like "ERR_NAME_NOT_RESOLVED" must be cited exactly OR explained (e.g., "DNS resolution failed")
- Technical terms can be explained rather than quoted verbatim

Be lenient on exact wording but strict on conceptual coverage.
"""

JUDGE_PROMPT_FOOTER = """Respond with JSON only, in this shape:
{"results": [{"caseId": "<case id>", "passed": true, "reasoning": "<1-2 sentences>", \
"presentEvidence": ["..."], "missingEvidence": ["..."]}]}"""


@dataclass(frozen=True)
class EvidenceCheckInput:
    """One case submitted to the judge."""

    case_id: str
    response_text: str
    required_evidence: list[str]


class EvidenceVerdict(BaseModel):
    """The judge's decision for one case."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    case_id: str = Field(..., alias="caseId", description="The case ID being evaluated")
    passed: bool = Field(..., description="True if all required evidence concepts are addressed")
    reasoning: str = Field("", description="Brief explanation of the evaluation")
    present_evidence: list[str] = Field(default_factory=list, alias="presentEvidence")
    missing_evidence: list[str] = Field(default_factory=list, alias="missingEvidence")


class JudgeResponse(BaseModel):
    """Top-level document returned by the judge model."""

    results: list[EvidenceVerdict]


def conservative_verdict(item: EvidenceCheckInput, reasoning: str = FAILED_REASONING) -> EvidenceVerdict:
    """A failing verdict with every required concept marked missing."""
    return EvidenceVerdict(
        case_id=item.case_id,
        passed=False,
        reasoning=reasoning,
        present_evidence=[],
        missing_evidence=list(item.required_evidence),
    )


def build_judge_prompt(batch: list[EvidenceCheckInput]) -> str:
    """Render one batch into a judge prompt, truncating long responses."""
    sections = []
    for index, item in enumerate(batch, 1):
        sections.append(
            f"### Case {index}: {item.case_id}\n"
            f"**Required Evidence Concepts:** {', '.join(item.required_evidence)}\n\n"
            f"**Response to Evaluate:**\n{item.response_text[:RESPONSE_TRUNCATION_LIMIT]}\n"
        )
    cases = "\n---\n".join(sections)
    return f"{JUDGE_PROMPT_HEADER}\n{cases}\n{JUDGE_PROMPT_FOOTER}"


def parse_judge_response(text: str) -> JudgeResponse:
    """Parse the judge's JSON, tolerating code fences and surrounding prose.

    Raises:
        JudgeUnavailable: If no valid results document can be extracted.
    """
    cleaned = _CODE_FENCE.sub("", text.strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise JudgeUnavailable("Judge response contained no JSON object")
    try:
        return JudgeResponse.model_validate_json(cleaned[start : end + 1])
    except ValidationError as e:
        raise JudgeUnavailable(f"Judge response did not match the expected schema: {e}") from e


class EvidenceJudge:
    """Batches evidence checks through a judge LLM.

    Args:
        llm: A model exposing ``async a_generate(prompt) -> str``.
        batch_size: Cases per judge call, between 1 and 10.
        llm_factory: Builds the model on first use when ``llm`` is omitted,
            so a missing judge credential only matters once a case needs
            judging.
    """

    def __init__(
        self,
        llm: Any = None,
        batch_size: int = MAX_BATCH_SIZE,
        llm_factory: Callable[[], Any] | None = None,
    ) -> None:
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {batch_size}")
        self._llm = llm
        self._llm_factory = llm_factory
        self.batch_size = batch_size

    @classmethod
    def from_config(cls, config: EvalConfig) -> EvidenceJudge:
        from cep_evals.providers import create_judge_llm

        return cls(batch_size=config.judge_batch_size, llm_factory=lambda: create_judge_llm(config))

    def _get_llm(self) -> Any:
        if self._llm is None:
            if self._llm_factory is None:
                raise JudgeUnavailable("No judge model configured")
            try:
                self._llm = self._llm_factory()
            except Exception as e:
                raise JudgeUnavailable(f"Could not create judge model: {e}") from e
        return self._llm

    async def _generate(self, prompt: str) -> str:
        llm = self._get_llm()
        try:
            return await llm.a_generate(prompt)
        except Exception as e:
            raise JudgeUnavailable(f"Judge model call failed: {e}") from e

    async def evaluate(self, inputs: list[EvidenceCheckInput]) -> dict[str, EvidenceVerdict]:
        """Judge all inputs, one model call per batch.

        Returns:
            Verdict per case id. Every input gets one; cases the judge
            skipped receive a conservative failing verdict.
        """
        verdicts: dict[str, EvidenceVerdict] = {}
        for i in range(0, len(inputs), self.batch_size):
            batch = inputs[i : i + self.batch_size]
            for verdict in await self._evaluate_batch(batch):
                verdicts[verdict.case_id] = verdict

        for item in inputs:
            if item.case_id not in verdicts:
                verdicts[item.case_id] = conservative_verdict(item, NO_RESULT_REASONING)
        return verdicts

    async def _evaluate_batch(self, batch: list[EvidenceCheckInput]) -> list[EvidenceVerdict]:
        if not batch:
            return []
        batch_ids = {item.case_id for item in batch}
        try:
            raw = await self._generate(build_judge_prompt(batch))
            parsed = parse_judge_response(raw)
        except Exception as e:
            logger.error(f"LLM judge batch evaluation failed for {len(batch)} cases: {e}")
            return [conservative_verdict(item) for item in batch]
        return [verdict for verdict in parsed.results if verdict.case_id in batch_ids]


def is_eligible_for_judge(report: EvalReport) -> bool:
    """A failed case whose schema check passed but evidence check did not."""
    return (
        report.status == ReportStatus.FAIL
        and not report.evidence_result.passed
        and report.schema_result.passed
    )


def required_evidence_of(report: EvalReport) -> list[str]:
    required = report.evidence_result.details.get("requiredEvidence")
    if not isinstance(required, list):
        return []
    return [item for item in required if isinstance(item, str)]


def apply_verdict(report: EvalReport, verdict: EvidenceVerdict) -> EvalReport:
    """Replace the evidence result with the judge's and recompute status."""
    if verdict.passed:
        message = "LLM judge: All evidence present"
    else:
        message = f"LLM judge: Missing {', '.join(verdict.missing_evidence)}"
    evidence = AssertionResult(
        passed=verdict.passed,
        message=message,
        details={
            "llmJudge": True,
            "requiredEvidence": required_evidence_of(report),
            "reasoning": verdict.reasoning,
            "presentEvidence": list(verdict.present_evidence),
            "missingEvidence": list(verdict.missing_evidence),
        },
    )
    status, error = determine_status(
        schema=report.schema_result,
        tool_calls=report.tool_calls_result,
        evidence=evidence,
        forbidden=report.forbidden_evidence_result,
        rubric=report.rubric_result,
        turn_failure=format_turn_failures(report.turn_results),
    )
    if status == ReportStatus.PASS and report.status == ReportStatus.FAIL:
        logger.info(f"{report.case_id} upgraded to pass by LLM judge")
    return replace(report, evidence_result=evidence, status=status, error=error)


async def apply_judge_phase(reports: list[EvalReport], judge: EvidenceJudge) -> list[EvalReport]:
    """Re-score eligible evidence failures once every case of a run finished.

    Returns:
        A new list in the original order; ineligible reports are unchanged.
    """
    eligible = [r for r in reports if is_eligible_for_judge(r)]
    if not eligible:
        return list(reports)

    logger.info(f"Running LLM judge on {len(eligible)} evidence failures...")
    inputs = [EvidenceCheckInput(r.case_id, r.response_text, required_evidence_of(r)) for r in eligible]
    verdicts = await judge.evaluate(inputs)

    eligible_ids = {r.case_id for r in eligible}
    return [
        apply_verdict(r, verdicts[r.case_id]) if r.case_id in eligible_ids and r.case_id in verdicts else r
        for r in reports
    ]
