"""Terminal and markdown formatting for run summaries and sweeps."""

from __future__ import annotations

from typing import TYPE_CHECKING

from cep_evals.reporting.models import EvalReport, EvalSummary, ReportStatus

if TYPE_CHECKING:
    from cep_evals.aggregator import AggregatedResults
    from cep_evals.registry import EvalCase

RULE_WIDTH = 60
AGGREGATE_RULE_WIDTH = 70
TOP_CASES = 10

_STATUS_LABELS = {
    ReportStatus.PASS: "PASS",
    ReportStatus.FAIL: "FAIL",
    ReportStatus.ERROR: "ERR ",
}


def truncate(text: str, width: int) -> str:
    """Truncate text to width, adding ellipsis if needed."""
    if len(text) <= width:
        return text
    return text[: width - 1] + "…"


def percent(rate: float, digits: int = 1) -> str:
    return f"{rate * 100:.{digits}f}%"


def format_table(
    headers: list[str],
    rows: list[list[str]],
    alignments: list[str] | None = None,
    fmt: str = "terminal",
) -> str:
    """Render a fixed-width table.

    Args:
        headers: Column header strings.
        rows: List of row data (each row is a list of strings).
        alignments: Per-column alignment ('l', 'r', 'c'). Defaults to left.
        fmt: 'terminal' for ASCII borders, 'markdown' for GFM table.
    """
    if not headers:
        return ""

    num_cols = len(headers)
    aligns = alignments or ["l"] * num_cols
    widths = [max([len(headers[i]), *(len(row[i]) for row in rows if i < len(row))]) for i in range(num_cols)]

    def _pad(text: str, i: int) -> str:
        if aligns[i] == "r":
            return text.rjust(widths[i])
        if aligns[i] == "c":
            return text.center(widths[i])
        return text.ljust(widths[i])

    def _line(cells: list[str]) -> str:
        return "| " + " | ".join(_pad(cells[i] if i < len(cells) else "", i) for i in range(num_cols)) + " |"

    header_line = _line(headers)
    data_lines = [_line(row) for row in rows]

    if fmt == "markdown":
        separators = []
        for i in range(num_cols):
            if aligns[i] == "r":
                separators.append("-" * (widths[i] - 1) + ":")
            elif aligns[i] == "c":
                separators.append(":" + "-" * max(widths[i] - 2, 1) + ":")
            else:
                separators.append("-" * widths[i])
        return "\n".join([header_line, "| " + " | ".join(separators) + " |", *data_lines])

    border = "+-" + "-+-".join("-" * w for w in widths) + "-+"
    return "\n".join([border, header_line, border, *data_lines, border])


def format_case_result(report: EvalReport) -> str:
    """One line per case: status, id, duration and title."""
    duration = f"{report.duration_ms}ms".rjust(7)
    return f"[{_STATUS_LABELS[report.status]}] {report.case_id} {duration} - {report.title}"


def format_summary(summary: EvalSummary) -> str:
    """Multi-line run summary with category and failure breakdowns."""
    rule = "=" * RULE_WIDTH
    lines = [
        "",
        rule,
        "EVAL RUN SUMMARY",
        rule,
        "",
        f"Run ID:    {summary.run_id}",
        f"Duration:  {summary.duration_ms}ms",
        f"Total:     {summary.total_cases} cases",
        f"Passed:    {summary.passed}",
        f"Failed:    {summary.failed}",
        f"Errors:    {summary.errors}",
        "",
    ]

    if summary.by_category:
        lines.append("By Category:")
        for category, stats in summary.by_category.items():
            pct = round(stats.passed / stats.total * 100) if stats.total else 0
            lines.append(f"  {category}: {stats.passed}/{stats.total} ({pct}%)")
        lines.append("")

    if summary.failures:
        lines.append("Failures:")
        for failure in summary.failures:
            lines.append(f"  {failure.id}: {failure.reason}")
        lines.append("")

    lines.append(rule)
    return "\n".join(lines)


def format_run_history(summaries: list[EvalSummary], fmt: str = "terminal") -> str:
    """Table of stored run summaries, newest last."""
    if not summaries:
        return "No run summaries found."

    headers = ["Run ID", "Cases", "Passed", "Failed", "Errors", "Pass Rate", "Duration"]
    alignments = ["l", "r", "r", "r", "r", "r", "r"]
    rows = []
    for s in summaries:
        rate = s.passed / s.total_cases if s.total_cases else 0.0
        rows.append(
            [
                s.run_id,
                str(s.total_cases),
                str(s.passed),
                str(s.failed),
                str(s.errors),
                percent(rate),
                f"{s.duration_ms / 1000:.1f}s",
            ]
        )
    table = format_table(headers, rows, alignments, fmt=fmt)
    if fmt == "markdown":
        return f"## Eval Runs\n\n{table}"
    return table


def format_cases(cases: list[EvalCase], fmt: str = "terminal") -> str:
    """Table of registry cases."""
    if not cases:
        return "No cases selected."

    headers = ["ID", "Category", "Mode", "Tags", "Title"]
    rows = [
        [case.id, case.category, case.mode.value, truncate(",".join(case.tags), 30), truncate(case.title, 50)]
        for case in cases
    ]
    return format_table(headers, rows, fmt=fmt)


def format_aggregation_summary(results: AggregatedResults) -> str:
    """Sweep summary: pass rate per mode plus flaky and failing cases."""
    rule = "=" * AGGREGATE_RULE_WIDTH
    stats = results.stats
    lines = [
        "",
        rule,
        "AGGREGATED RESULTS SUMMARY",
        rule,
        "",
        f"Aggregation ID: {results.aggregation_id}",
        f"Total Runs: {results.total_runs}",
        f"Configurations: {', '.join(results.configurations)}",
        f"Total Cases: {stats.total_cases}",
        f"Overall Pass Rate: {percent(stats.overall_pass_rate)}",
        "",
        "Pass Rate by Mode:",
    ]
    for mode, mode_stats in stats.by_mode.items():
        total = mode_stats.passed + mode_stats.failed + mode_stats.errors
        lines.append(f"  {mode}: {percent(mode_stats.pass_rate)} ({mode_stats.passed}/{total})")

    if results.failed_runs:
        lines.append("")
        lines.append(f"Failed Runs ({len(results.failed_runs)}):")
        for failed in results.failed_runs:
            lines.append(f"  {failed.mode} #{failed.iteration + 1}: {failed.error}")

    flaky = [c for c in results.case_analysis if c.consistency.value == "flaky"]
    if flaky:
        lines.append("")
        lines.append(f"Flaky Cases ({len(flaky)}):")
        for case in flaky[:TOP_CASES]:
            lines.append(f"  {case.case_id}: {percent(case.pass_rate, 0)} pass rate")
        if len(flaky) > TOP_CASES:
            lines.append(f"  ... and {len(flaky) - TOP_CASES} more")

    failing = [c for c in results.case_analysis if c.consistency.value == "stable-fail"]
    if failing:
        lines.append("")
        lines.append(f"Consistently Failing Cases ({len(failing)}):")
        for case in failing[:TOP_CASES]:
            lines.append(f"  {case.case_id}: {case.title}")
        if len(failing) > TOP_CASES:
            lines.append(f"  ... and {len(failing) - TOP_CASES} more")

    lines.append("")
    lines.append(rule)
    return "\n".join(lines)
