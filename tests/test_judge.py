"""Tests for the evidence judge and the judge phase."""

from __future__ import annotations

import json
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from cep_evals.errors import JudgeUnavailable
from cep_evals.judge import (
    FAILED_REASONING,
    NO_RESULT_REASONING,
    RESPONSE_TRUNCATION_LIMIT,
    EvidenceCheckInput,
    EvidenceJudge,
    apply_judge_phase,
    build_judge_prompt,
    is_eligible_for_judge,
    parse_judge_response,
)
from cep_evals.reporting.models import AssertionResult, EvalReport, ReportStatus


def _judge_reply(*verdicts: dict) -> str:
    return json.dumps({"results": list(verdicts)})


def _llm(*replies: str | Exception) -> MagicMock:
    llm = MagicMock()
    llm.a_generate = AsyncMock(side_effect=list(replies))
    return llm


def _evidence_failure(make_report: Callable[..., EvalReport], case_id: str = "EC-001") -> EvalReport:
    return make_report(
        case_id=case_id,
        response_text="The printing device is unreachable.",
        evidence_result=AssertionResult(
            False,
            "Missing required evidence: printer, offline",
            {"requiredEvidence": ["printer", "offline"], "missing": ["printer", "offline"]},
        ),
        status=ReportStatus.FAIL,
        error="Missing required evidence: printer, offline",
    )


class TestParseJudgeResponse:
    """Tests for parse_judge_response."""

    def test_plain_json(self) -> None:
        parsed = parse_judge_response(_judge_reply({"caseId": "EC-001", "passed": True, "reasoning": "ok"}))

        assert parsed.results[0].case_id == "EC-001"
        assert parsed.results[0].passed

    def test_code_fenced_json(self) -> None:
        text = "```json\n" + _judge_reply({"caseId": "EC-001", "passed": False}) + "\n```"

        parsed = parse_judge_response(text)

        assert not parsed.results[0].passed

    def test_no_json_raises(self) -> None:
        with pytest.raises(JudgeUnavailable):
            parse_judge_response("I cannot help with that.")

    def test_wrong_shape_raises(self) -> None:
        with pytest.raises(JudgeUnavailable):
            parse_judge_response('{"verdicts": []}')


class TestBuildJudgePrompt:
    """Tests for build_judge_prompt."""

    def test_truncates_long_responses(self) -> None:
        long_text = "a" * (RESPONSE_TRUNCATION_LIMIT + 500)

        prompt = build_judge_prompt([EvidenceCheckInput("EC-001", long_text, ["printer"])])

        assert "a" * RESPONSE_TRUNCATION_LIMIT in prompt
        assert "a" * (RESPONSE_TRUNCATION_LIMIT + 1) not in prompt
        assert "### Case 1: EC-001" in prompt
        assert "**Required Evidence Concepts:** printer" in prompt


class TestEvidenceJudge:
    """Tests for EvidenceJudge.evaluate."""

    def test_batch_size_bounds(self) -> None:
        with pytest.raises(ValueError):
            EvidenceJudge(llm=MagicMock(), batch_size=11)
        with pytest.raises(ValueError):
            EvidenceJudge(llm=MagicMock(), batch_size=0)

    async def test_batches_of_ten(self) -> None:
        """Twelve inputs make two judge calls."""
        inputs = [EvidenceCheckInput(f"EC-{i:03d}", "text", ["x"]) for i in range(12)]
        first = _judge_reply(*({"caseId": item.case_id, "passed": True} for item in inputs[:10]))
        second = _judge_reply(*({"caseId": item.case_id, "passed": True} for item in inputs[10:]))
        llm = _llm(first, second)
        judge = EvidenceJudge(llm=llm)

        verdicts = await judge.evaluate(inputs)

        assert llm.a_generate.await_count == 2
        assert all(v.passed for v in verdicts.values())
        assert len(verdicts) == 12

    async def test_model_failure_gives_conservative_verdicts(self) -> None:
        inputs = [EvidenceCheckInput("EC-001", "text", ["printer", "offline"])]
        judge = EvidenceJudge(llm=_llm(RuntimeError("quota")))

        verdicts = await judge.evaluate(inputs)

        verdict = verdicts["EC-001"]
        assert not verdict.passed
        assert verdict.reasoning == FAILED_REASONING
        assert verdict.missing_evidence == ["printer", "offline"]

    async def test_unparsable_reply_gives_conservative_verdicts(self) -> None:
        judge = EvidenceJudge(llm=_llm("not json at all"))

        verdicts = await judge.evaluate([EvidenceCheckInput("EC-001", "text", ["x"])])

        assert verdicts["EC-001"].reasoning == FAILED_REASONING

    async def test_skipped_and_foreign_cases(self) -> None:
        """Verdicts for unknown ids are dropped; skipped inputs fail."""
        reply = _judge_reply(
            {"caseId": "EC-001", "passed": True},
            {"caseId": "EC-999", "passed": True},
        )
        judge = EvidenceJudge(llm=_llm(reply))

        verdicts = await judge.evaluate(
            [EvidenceCheckInput("EC-001", "t", ["x"]), EvidenceCheckInput("EC-002", "t", ["y"])]
        )

        assert set(verdicts) == {"EC-001", "EC-002"}
        assert verdicts["EC-002"].reasoning == NO_RESULT_REASONING
        assert not verdicts["EC-002"].passed

    async def test_factory_failure_is_contained(self) -> None:
        def factory() -> None:
            raise ValueError("missing api key")

        judge = EvidenceJudge(llm_factory=factory)

        verdicts = await judge.evaluate([EvidenceCheckInput("EC-001", "t", ["x"])])

        assert not verdicts["EC-001"].passed


class TestJudgePhase:
    """Tests for eligibility and apply_judge_phase."""

    def test_eligibility(self, make_report: Callable[..., EvalReport]) -> None:
        assert is_eligible_for_judge(_evidence_failure(make_report))
        assert not is_eligible_for_judge(make_report())
        schema_failure = make_report(
            evidence_result=_evidence_failure(make_report).evidence_result,
            schema_result=AssertionResult(False, "no schema"),
            status=ReportStatus.FAIL,
        )
        assert not is_eligible_for_judge(schema_failure)

    async def test_judge_upgrades_evidence_failure(self, make_report: Callable[..., EvalReport]) -> None:
        report = _evidence_failure(make_report)
        judge = EvidenceJudge(
            llm=_llm(
                _judge_reply(
                    {
                        "caseId": "EC-001",
                        "passed": True,
                        "reasoning": "Printing device unreachable covers both concepts.",
                        "presentEvidence": ["printer", "offline"],
                        "missingEvidence": [],
                    }
                )
            )
        )

        [judged] = await apply_judge_phase([report], judge)

        assert judged.status == ReportStatus.PASS
        assert judged.error is None
        assert judged.evidence_result.passed
        assert judged.evidence_result.details["llmJudge"] is True
        assert judged.evidence_result.details["requiredEvidence"] == ["printer", "offline"]
        assert report.status == ReportStatus.FAIL

    async def test_judge_failure_keeps_fail(self, make_report: Callable[..., EvalReport]) -> None:
        report = _evidence_failure(make_report)
        judge = EvidenceJudge(llm=_llm(RuntimeError("down")))

        [judged] = await apply_judge_phase([report], judge)

        assert judged.status == ReportStatus.FAIL
        assert judged.evidence_result.details["missingEvidence"] == ["printer", "offline"]
        assert judged.error == "LLM judge: Missing printer, offline"

    async def test_ineligible_reports_untouched(self, make_report: Callable[..., EvalReport]) -> None:
        passing = make_report(case_id="EC-002")
        llm = _llm()
        judge = EvidenceJudge(llm=llm)

        result = await apply_judge_phase([passing], judge)

        assert result == [passing]
        llm.a_generate.assert_not_awaited()
