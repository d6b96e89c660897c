"""Report models, persistence and console formatting."""

from cep_evals.reporting.models import (
    AssertionResult,
    EvalReport,
    EvalSummary,
    ReportStatus,
    RubricResult,
    TurnResult,
    build_summary,
    create_run_id,
)
from cep_evals.reporting.store import ReportStore

__all__ = [
    "AssertionResult",
    "EvalReport",
    "EvalSummary",
    "ReportStatus",
    "ReportStore",
    "RubricResult",
    "TurnResult",
    "build_summary",
    "create_run_id",
]
