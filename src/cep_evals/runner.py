"""Case execution and single-run sweeps.

A run selects cases from the registry, executes each one against the chat
client (in parallel or serially), re-scores evidence failures with the
judge once every case finished, and then writes reports and a summary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from cep_evals.assertions import (
    check_forbidden_evidence,
    check_required_evidence,
    check_required_tool_calls,
    check_structured_response,
    determine_status,
    evaluate_rubric,
    evaluate_turn,
    format_turn_failures,
)
from cep_evals.errors import TransportError
from cep_evals.fixtures import FixtureComposer
from cep_evals.judge import apply_judge_phase
from cep_evals.registry import build_prompt_map, filter_cases, load_registry
from cep_evals.reporting.formatting import format_case_result, format_summary
from cep_evals.reporting.models import (
    EvalReport,
    EvalSummary,
    TurnResult,
    build_summary,
    create_run_id,
    isoformat,
    utc_now,
)

if TYPE_CHECKING:
    from cep_evals.client import ChatClient, Sleep
    from cep_evals.config import EvalConfig, RunOptions
    from cep_evals.judge import EvidenceJudge
    from cep_evals.registry import EvalCase, EvalRegistry
    from cep_evals.reporting.store import ReportStore

logger = logging.getLogger(__name__)

MULTI_TURN_SYSTEM_PROMPT = "You are CEP Hero."
RESPONSE_SEPARATOR = "\n\n---\n\n"
PROMPT_SEPARATOR = " -> "


def _elapsed_ms(start: float) -> int:
    return round((time.monotonic() - start) * 1000)


class ConversationState(str, Enum):
    NOT_STARTED = "not-started"
    TURN_IN_PROGRESS = "turn-in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Conversation:
    """Replays a case's conversation script one turn at a time.

    Each turn sees the full history so far. A transport failure moves the
    conversation to FAILED and keeps the results of the turns before it.
    """

    def __init__(self, case: EvalCase) -> None:
        self.case = case
        self.state = ConversationState.NOT_STARTED
        self.current_turn: int | None = None
        self.messages: list[dict[str, str]] = [{"role": "system", "content": MULTI_TURN_SYSTEM_PROMPT}]
        self.responses: list[str] = []
        self.tool_calls: list[str] = []
        self.turn_results: list[TurnResult] = []
        self.error: str | None = None

    async def run(self, client: ChatClient, fixtures: dict[str, Any] | None = None) -> None:
        if self.state != ConversationState.NOT_STARTED:
            raise RuntimeError(f"Conversation for {self.case.id} already ran")

        for index, turn in enumerate(self.case.conversation_script):
            self.state = ConversationState.TURN_IN_PROGRESS
            self.current_turn = index
            self.messages.append({"role": "user", "content": turn.content})
            try:
                reply = await client.send(list(self.messages), fixtures=fixtures)
            except TransportError as e:
                self.state = ConversationState.FAILED
                self.error = f"Turn {index}: {e}"
                logger.debug(f"{self.case.id} stopped at turn {index}: {e}")
                return

            self.messages.append({"role": "assistant", "content": reply.text})
            self.responses.append(reply.text)
            for tool in reply.tool_calls:
                if tool not in self.tool_calls:
                    self.tool_calls.append(tool)
            self.turn_results.append(
                evaluate_turn(index, reply.tool_calls, reply.text, self.case.turn_assertion(index))
            )

        self.state = ConversationState.COMPLETED
        self.current_turn = None

    @property
    def response_text(self) -> str:
        return RESPONSE_SEPARATOR.join(self.responses)

    @property
    def prompt(self) -> str:
        return PROMPT_SEPARATOR.join(turn.content for turn in self.case.conversation_script)


@dataclass
class CaseOutcome:
    """What the chat target said for one case, before assertions."""

    prompt: str
    response_text: str = ""
    response_metadata: dict[str, Any] | None = None
    tool_calls: list[str] = field(default_factory=list)
    turn_results: list[TurnResult] = field(default_factory=list)
    error: str | None = None


class CaseExecutor:
    """Runs one case end to end and builds its report.

    Transport faults and unreadable fixture files become ``error`` reports;
    this never raises for them.
    """

    def __init__(
        self,
        client: ChatClient,
        composer: FixtureComposer,
        prompt_map: dict[str, str],
        run_id: str,
        verbose: bool = False,
    ) -> None:
        self.client = client
        self.composer = composer
        self.prompt_map = prompt_map
        self.run_id = run_id
        self.verbose = verbose

    async def run_case(self, case: EvalCase) -> EvalReport:
        start = time.monotonic()
        base_prompt = self.prompt_map.get(case.id) or f"Help me troubleshoot: {case.title}"

        try:
            fixtures = self.composer.load_fixtures(case.id)
            prompt = None if case.is_multi_turn else self.composer.build_prompt(base_prompt, case)
        except (OSError, ValueError) as e:
            logger.warning(f"Fixtures for {case.id} could not be loaded: {e}")
            outcome = CaseOutcome(
                prompt=Conversation(case).prompt if case.is_multi_turn else base_prompt,
                error=f"Fixture error: {e}",
            )
        else:
            if prompt is None:
                outcome = await self._run_multi_turn(case, fixtures)
            else:
                outcome = await self._run_single_turn(prompt, fixtures)

        report = self._build_report(case, outcome, _elapsed_ms(start))
        if self.verbose:
            logger.info(format_case_result(report))
        else:
            logger.info(f"{report.case_id} {report.status.value} {report.duration_ms}ms")
        return report

    async def _run_single_turn(self, prompt: str, fixtures: dict[str, Any] | None) -> CaseOutcome:
        try:
            response = await self.client.ask(prompt, fixtures=fixtures)
        except TransportError as e:
            return CaseOutcome(prompt=prompt, error=str(e))
        return CaseOutcome(
            prompt=prompt,
            response_text=response.text,
            response_metadata=response.metadata,
            tool_calls=list(response.tool_calls),
        )

    async def _run_multi_turn(self, case: EvalCase, fixtures: dict[str, Any] | None) -> CaseOutcome:
        conversation = Conversation(case)
        await conversation.run(self.client, fixtures)
        return CaseOutcome(
            prompt=conversation.prompt,
            response_text=conversation.response_text,
            tool_calls=list(conversation.tool_calls),
            turn_results=list(conversation.turn_results),
            error=conversation.error,
        )

    def _build_report(self, case: EvalCase, outcome: CaseOutcome, duration_ms: int) -> EvalReport:
        text, metadata = outcome.response_text, outcome.response_metadata
        schema = check_structured_response(text, metadata, case.expected_schema)
        evidence = check_required_evidence(text, metadata, case.required_evidence)
        forbidden = check_forbidden_evidence(text, metadata, case.forbidden_evidence)
        tool_calls = check_required_tool_calls(outcome.tool_calls, case.required_tool_calls)
        rubric = evaluate_rubric(case.rubric, text, metadata)

        status, error = determine_status(
            schema=schema,
            tool_calls=tool_calls,
            evidence=evidence,
            forbidden=forbidden,
            rubric=rubric,
            turn_failure=format_turn_failures(outcome.turn_results),
            transport_error=outcome.error,
        )

        return EvalReport(
            run_id=self.run_id,
            case_id=case.id,
            title=case.title,
            category=case.category,
            tags=list(case.tags),
            source_refs=list(case.source_refs),
            case_file=case.case_file,
            prompt=outcome.prompt,
            response_text=text,
            response_metadata=metadata,
            expected_schema=list(case.expected_schema),
            schema_result=schema,
            evidence_result=evidence,
            forbidden_evidence_result=forbidden,
            tool_calls_result=tool_calls,
            tool_calls=list(outcome.tool_calls),
            rubric_result=rubric,
            turn_results=list(outcome.turn_results),
            status=status,
            duration_ms=duration_ms,
            timestamp=isoformat(utc_now()),
            error=error,
        )


@dataclass(frozen=True)
class RunnerResult:
    summary: EvalSummary
    reports: list[EvalReport]


class EvalRunner:
    """Executes one run: selection, cases, judge phase, persistence.

    Args:
        config: Process-wide settings.
        client: Chat client shared by every case of the run.
        store: Report store; reports are not persisted when omitted.
        judge: Evidence judge used when a run enables LLM judging.
        registry: Pre-loaded registry; loaded from ``config.registry_path``
            on every run when omitted.
        sleep: Awaitable used for the serial pause between cases.
    """

    def __init__(
        self,
        config: EvalConfig,
        client: ChatClient,
        store: ReportStore | None = None,
        judge: EvidenceJudge | None = None,
        registry: EvalRegistry | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store
        self.judge = judge
        self.registry = registry
        self._sleep = sleep

    async def run(self, options: RunOptions) -> RunnerResult:
        registry = self.registry if self.registry is not None else load_registry(self.config.registry_path)
        cases = filter_cases(registry.cases, options.case_filter)
        run_id = create_run_id()
        start = time.monotonic()

        if not cases:
            logger.info("No cases selected")
            return RunnerResult(summary=build_summary(run_id, [], 0), reports=[])

        composer = FixtureComposer(
            self.config.fixtures_dir,
            root_dir=self.config.root_dir,
            use_base=options.use_base,
            use_fixtures=options.use_fixtures,
            inject_into_prompt=self.config.inject_prompt,
        )
        executor = CaseExecutor(
            client=self.client,
            composer=composer,
            prompt_map=build_prompt_map(registry, self.config.root_dir),
            run_id=run_id,
            verbose=self.config.verbose,
        )

        logger.info(f"Starting run {run_id} ({options.label})")
        logger.info(f"Cases: {len(cases)}, mode: {'parallel' if options.parallel else 'serial'}")

        if options.parallel:
            reports = await self._run_parallel(executor, cases)
        else:
            reports = await self._run_serial(executor, cases)

        if options.llm_judge:
            if self.judge is None:
                logger.warning("LLM judge requested but no judge configured; keeping string-match results")
            else:
                reports = await apply_judge_phase(reports, self.judge)

        summary = build_summary(run_id, reports, _elapsed_ms(start))
        if self.store is not None:
            for report in reports:
                self.store.write_report(report)
            self.store.write_summary(summary)
        logger.info(format_summary(summary))
        return RunnerResult(summary=summary, reports=reports)

    async def _run_parallel(self, executor: CaseExecutor, cases: list[EvalCase]) -> list[EvalReport]:
        results = await asyncio.gather(*(executor.run_case(case) for case in cases), return_exceptions=True)
        reports: list[EvalReport] = []
        for case, result in zip(cases, results):
            if isinstance(result, BaseException):
                logger.error(f"Case {case.id} raised: {result!r}")
                continue
            reports.append(result)
        return reports

    async def _run_serial(self, executor: CaseExecutor, cases: list[EvalCase]) -> list[EvalReport]:
        reports: list[EvalReport] = []
        for case in cases:
            if self.config.case_pause > 0:
                await self._sleep(self.config.case_pause)
            try:
                reports.append(await executor.run_case(case))
            except Exception as e:
                logger.error(f"Case {case.id} raised: {e!r}")
        return reports
