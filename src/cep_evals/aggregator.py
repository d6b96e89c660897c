"""Cross-run aggregation of sweep results.

Everything here is recomputed from the raw per-run reports on each call.
Consistency and pass rate are properties of a case's result list, so they
can never drift from the data they describe.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from cep_evals.reporting.models import ReportStatus, create_run_id, isoformat, utc_now

if TYPE_CHECKING:
    from cep_evals.orchestrator import FailedRun, SingleRunResult

PROBLEMATIC_PASS_RATE = 0.8


class Consistency(str, Enum):
    STABLE_PASS = "stable-pass"
    STABLE_FAIL = "stable-fail"
    FLAKY = "flaky"


def determine_consistency(statuses: Iterable[ReportStatus | str]) -> Consistency:
    """Classify a case from its per-run statuses.

    ``fail`` and ``error`` both count as not passing.
    """
    values = [ReportStatus(s) for s in statuses]
    passes = sum(1 for s in values if s == ReportStatus.PASS)
    if passes == len(values):
        return Consistency.STABLE_PASS
    if passes == 0:
        return Consistency.STABLE_FAIL
    return Consistency.FLAKY


@dataclass(frozen=True)
class CaseRunResult:
    mode: str
    status: ReportStatus
    duration_ms: int
    error: str | None = None


@dataclass
class CaseAnalysis:
    """One case's outcomes across every run of a sweep."""

    case_id: str
    title: str
    category: str
    results: list[CaseRunResult] = field(default_factory=list)

    @property
    def consistency(self) -> Consistency:
        return determine_consistency(r.status for r in self.results)

    @property
    def pass_rate(self) -> float:
        if not self.results:
            return 0.0
        return sum(1 for r in self.results if r.status == ReportStatus.PASS) / len(self.results)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["consistency"] = self.consistency.value
        data["pass_rate"] = self.pass_rate
        return data


@dataclass(frozen=True)
class CategoryAnalysis:
    category: str
    total_cases: int
    pass_rate_by_mode: dict[str, float]
    avg_pass_rate: float
    problematic_cases: list[str]


@dataclass(frozen=True)
class ModeStats:
    pass_rate: float
    avg_duration_ms: int
    passed: int
    failed: int
    errors: int


@dataclass(frozen=True)
class AggregateStats:
    total_cases: int
    total_executions: int
    overall_pass_rate: float
    by_mode: dict[str, ModeStats]


@dataclass(frozen=True)
class AggregatedResults:
    """Everything a sweep produced, with derived statistics."""

    aggregation_id: str
    timestamp: str
    total_runs: int
    configurations: list[str]
    runs: list[SingleRunResult]
    failed_runs: list[FailedRun]
    stats: AggregateStats
    case_analysis: list[CaseAnalysis]
    category_analysis: list[CategoryAnalysis]

    @property
    def all_passed(self) -> bool:
        """True when at least one run completed, none failed, and every case passed."""
        if not self.runs or self.failed_runs:
            return False
        return all(r.status == ReportStatus.PASS for run in self.runs for r in run.reports)

    def to_dict(self) -> dict[str, Any]:
        return {
            "aggregation_id": self.aggregation_id,
            "timestamp": self.timestamp,
            "total_runs": self.total_runs,
            "configurations": list(self.configurations),
            "runs": [asdict(run) for run in self.runs],
            "failed_runs": [asdict(failed) for failed in self.failed_runs],
            "stats": asdict(self.stats),
            "case_analysis": [case.to_dict() for case in self.case_analysis],
            "category_analysis": [asdict(category) for category in self.category_analysis],
        }


def _ordered_modes(runs: list[SingleRunResult]) -> list[str]:
    modes: list[str] = []
    for run in runs:
        if run.mode not in modes:
            modes.append(run.mode)
    return modes


def build_aggregate_stats(runs: list[SingleRunResult]) -> AggregateStats:
    """Pass rates and durations per mode, counted from the reports."""
    by_mode: dict[str, ModeStats] = {}
    case_ids: set[str] = set()
    total_executions = total_passed = 0

    for mode in _ordered_modes(runs):
        mode_runs = [run for run in runs if run.mode == mode]
        statuses = [report.status for run in mode_runs for report in run.reports]
        passed = sum(1 for s in statuses if s == ReportStatus.PASS)
        failed = sum(1 for s in statuses if s == ReportStatus.FAIL)
        errors = sum(1 for s in statuses if s == ReportStatus.ERROR)
        total = passed + failed + errors
        by_mode[mode] = ModeStats(
            pass_rate=passed / total if total else 0.0,
            avg_duration_ms=round(sum(run.summary.duration_ms for run in mode_runs) / len(mode_runs)),
            passed=passed,
            failed=failed,
            errors=errors,
        )
        total_executions += total
        total_passed += passed
        case_ids.update(report.case_id for run in mode_runs for report in run.reports)

    return AggregateStats(
        total_cases=len(case_ids),
        total_executions=total_executions,
        overall_pass_rate=total_passed / total_executions if total_executions else 0.0,
        by_mode=by_mode,
    )


def build_case_analysis(runs: list[SingleRunResult]) -> list[CaseAnalysis]:
    """Per-case results across runs, sorted by case id."""
    cases: dict[str, CaseAnalysis] = {}
    for run in runs:
        for report in run.reports:
            analysis = cases.get(report.case_id)
            if analysis is None:
                analysis = CaseAnalysis(report.case_id, report.title, report.category)
                cases[report.case_id] = analysis
            analysis.results.append(CaseRunResult(run.mode, report.status, report.duration_ms, report.error))
    return sorted(cases.values(), key=lambda c: c.case_id)


def build_category_analysis(
    runs: list[SingleRunResult],
    case_analysis: list[CaseAnalysis],
) -> list[CategoryAnalysis]:
    """Per-category pass rates, flagging cases below the problematic threshold."""
    modes = _ordered_modes(runs)
    categories: list[CategoryAnalysis] = []

    for category in sorted({c.category for c in case_analysis}):
        members = [c for c in case_analysis if c.category == category]
        pass_rate_by_mode: dict[str, float] = {}
        for mode in modes:
            mode_results = [r for c in members for r in c.results if r.mode == mode]
            passed = sum(1 for r in mode_results if r.status == ReportStatus.PASS)
            pass_rate_by_mode[mode] = passed / len(mode_results) if mode_results else 0.0

        categories.append(
            CategoryAnalysis(
                category=category,
                total_cases=len(members),
                pass_rate_by_mode=pass_rate_by_mode,
                avg_pass_rate=sum(c.pass_rate for c in members) / len(members),
                problematic_cases=[c.case_id for c in members if c.pass_rate < PROBLEMATIC_PASS_RATE],
            )
        )
    return categories


def aggregate_results(
    runs: list[SingleRunResult],
    failed_runs: Iterable[FailedRun] = (),
) -> AggregatedResults:
    """Merge all runs of a sweep into one analysis."""
    case_analysis = build_case_analysis(runs)
    return AggregatedResults(
        aggregation_id=create_run_id(),
        timestamp=isoformat(utc_now()),
        total_runs=len(runs),
        configurations=_ordered_modes(runs),
        runs=list(runs),
        failed_runs=list(failed_runs),
        stats=build_aggregate_stats(runs),
        case_analysis=case_analysis,
        category_analysis=build_category_analysis(runs, case_analysis),
    )
