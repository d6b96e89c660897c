"""Command line interface for the CEP eval harness.

Subcommands:
    run      Execute one run, optionally from a mode preset.
    sweep    Execute several modes x iterations and aggregate the results.
    summary  Show stored run summaries.
    cases    List registry cases after filtering.

Exit codes: 0 when every executed case passed, 1 when any case failed or
errored (or nothing ran) or the harness itself failed, for example the
local chat target would not start; 2 on configuration errors.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from typing import Any

from pydantic import ValidationError

from cep_evals import __version__
from cep_evals.aggregator import AggregatedResults, aggregate_results
from cep_evals.client import ChatClient
from cep_evals.config import DEFAULT_MODES, CaseFilter, EvalConfig, LogLevel, RunMode, RunOptions
from cep_evals.errors import ConfigurationError, EvalError
from cep_evals.judge import EvidenceJudge
from cep_evals.orchestrator import Orchestrator
from cep_evals.registry import filter_cases, load_registry
from cep_evals.reporting.formatting import (
    format_aggregation_summary,
    format_cases,
    format_run_history,
    format_summary,
)
from cep_evals.reporting.store import ReportStore
from cep_evals.runner import EvalRunner, RunnerResult
from cep_evals.server import TargetServer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG_ERROR = 2


def setup_logging(level: LogLevel) -> None:
    """Configure logging for the CLI."""
    logging.basicConfig(
        level=level.value,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        default=None,
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--registry", default=None, help="Path to the case registry (JSON or YAML)")
    parser.add_argument("--reports-dir", default=None, help="Report store directory")


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--ids", default=None, help="Comma-separated case ids")
    parser.add_argument("--categories", default=None, help="Comma-separated categories")
    parser.add_argument("--tags", default=None, help="Comma-separated tags (any match)")
    parser.add_argument("--limit", default=None, help="Maximum number of cases")


def _add_execution_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--chat-url", default=None, help="Chat endpoint of the service under test")
    parser.add_argument("--verbose", action="store_true", help="Log one detailed line per case")
    parser.add_argument(
        "--no-server",
        action="store_true",
        help="Do not start the local chat target",
    )
    parser.add_argument(
        "--inject-prompt",
        action="store_true",
        help="Serialize fixture documents into the prompt text",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="cep-evals",
        description="Eval harness for the CEP diagnostic chat service",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a single eval run")
    run_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in RunMode],
        default=None,
        help="Run mode preset (default: live data, judge on, parallel)",
    )
    run_parser.add_argument("--serial", action="store_true", help="Run cases one at a time")
    run_parser.add_argument("--no-judge", action="store_true", help="Disable LLM judge re-scoring")
    run_parser.add_argument("--use-base", action="store_true", help="Send the base fixture document")
    run_parser.add_argument("--use-fixtures", action="store_true", help="Send per-case fixtures")
    _add_filter_args(run_parser)
    _add_execution_args(run_parser)
    _add_common_args(run_parser)

    sweep_parser = subparsers.add_parser("sweep", help="Run several modes and iterations, then aggregate")
    sweep_parser.add_argument(
        "--modes",
        default=",".join(mode.value for mode in DEFAULT_MODES),
        help="Comma-separated run modes (default: both fixture modes)",
    )
    sweep_parser.add_argument("--iterations", type=int, default=1, help="Iterations per mode (default: 1)")
    _add_filter_args(sweep_parser)
    _add_execution_args(sweep_parser)
    _add_common_args(sweep_parser)

    summary_parser = subparsers.add_parser("summary", help="Show stored run summaries")
    summary_parser.add_argument("--run-id", default=None, help="Show one run in detail")
    summary_parser.add_argument("--last", type=int, default=20, help="Show last N runs (default: 20)")
    summary_parser.add_argument(
        "--format",
        choices=["terminal", "markdown"],
        default="terminal",
        help="Output format (default: terminal)",
    )
    _add_common_args(summary_parser)

    cases_parser = subparsers.add_parser("cases", help="List registry cases")
    cases_parser.add_argument(
        "--format",
        choices=["terminal", "markdown"],
        default="terminal",
        help="Output format (default: terminal)",
    )
    _add_filter_args(cases_parser)
    _add_common_args(cases_parser)

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> EvalConfig:
    """Build config from args, falling back to environment/defaults."""
    config_kwargs: dict[str, Any] = {}

    if args.log_level:
        config_kwargs["log_level"] = LogLevel(args.log_level)
    if args.registry:
        config_kwargs["registry_path"] = args.registry
    if args.reports_dir:
        config_kwargs["reports_dir"] = args.reports_dir
    if getattr(args, "chat_url", None):
        config_kwargs["chat_url"] = args.chat_url
    if getattr(args, "verbose", False):
        config_kwargs["verbose"] = True
    if getattr(args, "no_server", False):
        config_kwargs["manage_server"] = False
    if getattr(args, "inject_prompt", False):
        config_kwargs["inject_prompt"] = True

    return EvalConfig(**config_kwargs)


def _case_filter(args: argparse.Namespace) -> CaseFilter:
    return CaseFilter.from_strings(ids=args.ids, categories=args.categories, tags=args.tags, limit=args.limit)


def build_run_options(args: argparse.Namespace) -> RunOptions:
    """Run options for ``run``: a mode preset, or flags on top of defaults."""
    case_filter = _case_filter(args)
    if args.mode:
        options = RunOptions.for_mode(args.mode, case_filter)
    else:
        options = RunOptions(
            use_base=args.use_base,
            use_fixtures=args.use_fixtures,
            case_filter=case_filter,
        )
    if args.serial:
        options = replace(options, parallel=False)
    if args.no_judge:
        options = replace(options, llm_judge=False)
    return options


async def execute_run(config: EvalConfig, options: RunOptions) -> RunnerResult:
    """Start the target if needed, execute one run, stop the target."""
    server = TargetServer.from_config(config)
    async with ChatClient.from_config(config) as client:
        runner = EvalRunner(
            config,
            client,
            store=ReportStore(config.reports_dir),
            judge=EvidenceJudge.from_config(config),
        )
        await server.start()
        try:
            return await runner.run(options)
        finally:
            await server.stop()


async def execute_sweep(
    config: EvalConfig,
    modes: list[str],
    iterations: int,
    case_filter: CaseFilter,
) -> AggregatedResults:
    """Orchestrate modes x iterations and aggregate every completed run."""
    store = ReportStore(config.reports_dir)
    async with ChatClient.from_config(config) as client:
        runner = EvalRunner(config, client, store=store, judge=EvidenceJudge.from_config(config))
        orchestrator = Orchestrator(runner.run, lifecycle=TargetServer.from_config(config))
        runs = await orchestrator.orchestrate_runs(modes, iterations, case_filter)

    results = aggregate_results(runs, orchestrator.failed_runs)
    store.write_aggregate(results)
    logger.info(format_aggregation_summary(results))
    return results


def _run_command(config: EvalConfig, args: argparse.Namespace) -> int:
    options = build_run_options(args)
    result = asyncio.run(execute_run(config, options))
    return EXIT_OK if result.summary.all_passed else EXIT_FAILURES


def _sweep_command(config: EvalConfig, args: argparse.Namespace) -> int:
    if args.iterations < 1:
        raise ConfigurationError(f"--iterations must be at least 1, got {args.iterations}")
    modes = [mode.strip() for mode in args.modes.split(",") if mode.strip()]
    if not modes:
        raise ConfigurationError("No run modes given")
    results = asyncio.run(execute_sweep(config, modes, args.iterations, _case_filter(args)))
    return EXIT_OK if results.all_passed else EXIT_FAILURES


def _summary_command(config: EvalConfig, args: argparse.Namespace) -> int:
    summaries = ReportStore(config.reports_dir).load_summaries()
    if args.run_id:
        for summary in summaries:
            if summary.run_id == args.run_id:
                print(format_summary(summary))
                return EXIT_OK
        print(f"No summary found for run_id={args.run_id}")
        return EXIT_FAILURES
    last = summaries[-args.last :] if args.last > 0 else summaries
    print(format_run_history(last, fmt=args.format))
    return EXIT_OK


def _cases_command(config: EvalConfig, args: argparse.Namespace) -> int:
    registry = load_registry(config.registry_path)
    print(format_cases(filter_cases(registry.cases, _case_filter(args)), fmt=args.format))
    return EXIT_OK


_COMMANDS = {
    "run": _run_command,
    "sweep": _sweep_command,
    "summary": _summary_command,
    "cases": _cases_command,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = build_config(args)
    except ValidationError as e:
        setup_logging(LogLevel.INFO)
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    setup_logging(config.log_level)

    try:
        return _COMMANDS[args.command](config, args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except EvalError as e:
        logger.error(f"Eval harness error: {e}")
        return EXIT_FAILURES
