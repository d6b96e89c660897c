"""Sweeps over run modes and iterations.

Each run gets freshly built RunOptions from its mode preset, so nothing
set for one run can leak into the next. A run that raises is recorded as
a FailedRun and the sweep moves on.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from cep_evals.config import CaseFilter, RunMode, RunOptions, get_configuration
from cep_evals.errors import OrchestrationError
from cep_evals.reporting.models import EvalReport, EvalSummary, create_run_id, isoformat, utc_now

if TYPE_CHECKING:
    from cep_evals.runner import RunnerResult

logger = logging.getLogger(__name__)

RULE = "=" * 70


class Lifecycle(Protocol):
    """Something started before a sweep and stopped after it."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@dataclass(frozen=True)
class SingleRunResult:
    """One completed run inside a sweep."""

    mode: str
    iteration: int
    run_id: str
    summary: EvalSummary
    start_time: str
    end_time: str
    duration_ms: int
    reports: list[EvalReport] = field(default_factory=list)


@dataclass(frozen=True)
class FailedRun:
    """A run that raised instead of producing results."""

    mode: str
    iteration: int
    error: str


RunFn = Callable[[RunOptions], Awaitable["RunnerResult"]]


class Orchestrator:
    """Runs every (mode, iteration) pair once, in order.

    Args:
        run_fn: Executes a single run, typically ``EvalRunner.run``.
        lifecycle: Optional target lifecycle, started once before the
            first run and stopped once after the last.
    """

    def __init__(self, run_fn: RunFn, lifecycle: Lifecycle | None = None) -> None:
        self.run_fn = run_fn
        self.lifecycle = lifecycle
        self.failed_runs: list[FailedRun] = []

    async def orchestrate_runs(
        self,
        modes: list[RunMode | str],
        iterations: int = 1,
        case_filter: CaseFilter | None = None,
    ) -> list[SingleRunResult]:
        """Execute the sweep.

        Raises:
            ConfigurationError: If any mode is unknown. Checked before the
                lifecycle starts.
        """
        configurations = [get_configuration(mode) for mode in modes]
        self.failed_runs = []

        logger.info(RULE)
        logger.info(f"Eval sweep {create_run_id()}")
        logger.info(f"Modes: {', '.join(c.mode.value for c in configurations)}")
        logger.info(f"Iterations per mode: {iterations}, total runs: {len(configurations) * iterations}")
        logger.info(RULE)

        results: list[SingleRunResult] = []
        try:
            if self.lifecycle is not None:
                await self.lifecycle.start()
            for configuration in configurations:
                for iteration in range(iterations):
                    options = RunOptions.for_mode(configuration.mode, case_filter)
                    try:
                        results.append(await self._execute_single_run(options, iteration))
                    except Exception as e:
                        error = OrchestrationError(options.label, iteration, e)
                        logger.error(str(error))
                        self.failed_runs.append(FailedRun(options.label, iteration, str(e)))
        finally:
            if self.lifecycle is not None:
                await self.lifecycle.stop()

        logger.info(f"Sweep complete: {len(results)} runs completed, {len(self.failed_runs)} failed")
        return results

    async def _execute_single_run(self, options: RunOptions, iteration: int) -> SingleRunResult:
        configuration = get_configuration(options.label)
        logger.info(f"Starting run: {configuration.name} (iteration {iteration + 1})")
        logger.info(configuration.description)

        start_time = isoformat(utc_now())
        start = time.monotonic()
        result = await self.run_fn(options)
        duration_ms = round((time.monotonic() - start) * 1000)

        summary = result.summary
        logger.info(
            f"Completed: {configuration.name} - {summary.passed}/{summary.total_cases} passed ({duration_ms}ms)"
        )
        return SingleRunResult(
            mode=options.label,
            iteration=iteration,
            run_id=summary.run_id,
            summary=summary,
            start_time=start_time,
            end_time=isoformat(utc_now()),
            duration_ms=duration_ms,
            reports=list(result.reports),
        )
