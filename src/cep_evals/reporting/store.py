"""Report store: one JSON file per case per run, plus run summaries.

Layout under the reports directory:

    <case_id>-<run_id>.json   one EvalReport
    summary-<run_id>.json     one EvalSummary
    aggregate-<id>.json       one AggregatedResults (sweeps only)
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cep_evals.reporting.models import EvalReport, EvalSummary, to_dict

if TYPE_CHECKING:
    from cep_evals.aggregator import AggregatedResults

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "summary-"
AGGREGATE_PREFIX = "aggregate-"


class ReportStore:
    """Writes and reads report files under a single directory."""

    def __init__(self, reports_dir: str | Path) -> None:
        self.reports_dir = Path(reports_dir)

    def _write(self, file_name: str, data: dict[str, Any]) -> Path:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        path = self.reports_dir / file_name
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        return path

    def report_path(self, case_id: str, run_id: str) -> Path:
        return self.reports_dir / f"{case_id}-{run_id}.json"

    def write_report(self, report: EvalReport) -> Path:
        """Persist one case report. Called once per report, after judging."""
        path = self._write(self.report_path(report.case_id, report.run_id).name, to_dict(report))
        logger.debug(f"Wrote report for {report.case_id} to {path}")
        return path

    def write_summary(self, summary: EvalSummary) -> Path:
        path = self._write(f"{SUMMARY_PREFIX}{summary.run_id}.json", to_dict(summary))
        logger.info(f"Wrote run summary to {path}")
        return path

    def write_aggregate(self, results: AggregatedResults) -> Path:
        path = self._write(f"{AGGREGATE_PREFIX}{results.aggregation_id}.json", results.to_dict())
        logger.info(f"Wrote aggregated results to {path}")
        return path

    def load_summaries(self) -> list[EvalSummary]:
        """Load stored run summaries, oldest first.

        Returns an empty list if the directory doesn't exist. Malformed
        files are skipped with a warning.
        """
        if not self.reports_dir.exists():
            logger.debug(f"No reports found at {self.reports_dir}")
            return []

        summaries: list[EvalSummary] = []
        for path in sorted(self.reports_dir.glob(f"{SUMMARY_PREFIX}*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                summaries.append(EvalSummary.from_dict(data))
            except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed summary {path.name}: {e}")
        return summaries
