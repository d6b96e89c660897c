"""Data models for eval result recording.

Dataclasses matching the JSON schema of the report store. Reports and
summaries are immutable once built; the judge phase derives new reports
with ``dataclasses.replace`` instead of patching them in place.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ReportStatus(str, Enum):
    """Final outcome of one case in one run."""

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


@dataclass(frozen=True)
class AssertionResult:
    """Outcome of a single checker. Checkers return these, never raise."""

    passed: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RubricResult:
    """Rubric criteria matched against a response."""

    score: int
    min_score: int
    matched: list[str] = field(default_factory=list)
    missed: list[str] = field(default_factory=list)
    passed: bool = False


@dataclass(frozen=True)
class TurnResult:
    """Assertion outcome for one turn of a multi-turn conversation."""

    turn: int
    passed: bool
    tool_calls: list[str] = field(default_factory=list)
    missing_tool_calls: list[str] = field(default_factory=list)
    missing_evidence: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EvalReport:
    """One case executed in one run."""

    run_id: str
    case_id: str
    title: str
    category: str
    tags: list[str]
    source_refs: list[str]
    case_file: str
    prompt: str
    response_text: str
    response_metadata: dict[str, Any] | None
    expected_schema: list[str]
    schema_result: AssertionResult
    evidence_result: AssertionResult
    forbidden_evidence_result: AssertionResult
    tool_calls_result: AssertionResult
    status: ReportStatus
    duration_ms: int
    timestamp: str
    tool_calls: list[str] = field(default_factory=list)
    rubric_result: RubricResult | None = None
    turn_results: list[TurnResult] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class CategoryStats:
    """Per-category counts inside a run summary."""

    total: int = 0
    passed: int = 0
    failed: int = 0


@dataclass(frozen=True)
class FailureSummary:
    """A failing or erroring case in a run summary."""

    id: str
    title: str
    reason: str


@dataclass(frozen=True)
class EvalSummary:
    """Totals for one run, derived from its reports."""

    run_id: str
    timestamp: str
    total_cases: int
    passed: int
    failed: int
    errors: int
    duration_ms: int
    by_category: dict[str, CategoryStats] = field(default_factory=dict)
    failures: list[FailureSummary] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return self.total_cases > 0 and self.failed == 0 and self.errors == 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvalSummary:
        """Rebuild a summary read back from the report store."""
        return cls(
            run_id=data["run_id"],
            timestamp=data["timestamp"],
            total_cases=data["total_cases"],
            passed=data["passed"],
            failed=data["failed"],
            errors=data["errors"],
            duration_ms=data.get("duration_ms", 0),
            by_category={
                name: CategoryStats(**stats) for name, stats in data.get("by_category", {}).items()
            },
            failures=[FailureSummary(**f) for f in data.get("failures", [])],
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_run_id(moment: datetime | None = None) -> str:
    """Build a filesystem-safe run id from a UTC timestamp."""
    stamp = isoformat(moment or utc_now())
    return stamp.replace(":", "-").replace(".", "-")


def build_summary(
    run_id: str,
    reports: list[EvalReport],
    duration_ms: int,
    timestamp: str | None = None,
) -> EvalSummary:
    """Count outcomes overall and per category.

    Failures and errors both land in ``failures``; only ``fail`` counts
    towards a category's ``failed`` column.
    """
    passed = failed = errors = 0
    by_category: dict[str, dict[str, int]] = {}
    failures: list[FailureSummary] = []

    for report in reports:
        stats = by_category.setdefault(report.category, {"total": 0, "passed": 0, "failed": 0})
        stats["total"] += 1
        if report.status == ReportStatus.PASS:
            passed += 1
            stats["passed"] += 1
        elif report.status == ReportStatus.FAIL:
            failed += 1
            stats["failed"] += 1
            failures.append(FailureSummary(report.case_id, report.title, report.error or "Assertion failed"))
        else:
            errors += 1
            failures.append(FailureSummary(report.case_id, report.title, report.error or "Unknown error"))

    return EvalSummary(
        run_id=run_id,
        timestamp=timestamp or isoformat(utc_now()),
        total_cases=len(reports),
        passed=passed,
        failed=failed,
        errors=errors,
        duration_ms=duration_ms,
        by_category={name: CategoryStats(**stats) for name, stats in by_category.items()},
        failures=failures,
    )


def to_dict(record: Any) -> dict[str, Any]:
    """Serialize a report dataclass tree to plain JSON-ready values."""
    return asdict(record)
