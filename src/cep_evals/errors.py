"""Exception taxonomy for the eval harness.

Assertion outcomes are never exceptions; they are returned as
AssertionResult values. The classes here are reserved for real faults.
"""

from __future__ import annotations


class EvalError(Exception):
    """Base class for eval harness errors."""

    pass


class ConfigurationError(EvalError):
    """Malformed registry, missing required field or unknown run mode."""

    pass


class TransportError(EvalError):
    """Network failure, timeout or exhausted retries against the chat target."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class JudgeUnavailable(EvalError):
    """The semantic judge model call failed or returned unusable output."""

    pass


class OrchestrationError(EvalError):
    """A single run inside a sweep raised."""

    def __init__(self, mode: str, iteration: int, cause: BaseException) -> None:
        super().__init__(f"Run {mode} iteration {iteration + 1} failed: {cause}")
        self.mode = mode
        self.iteration = iteration
        self.cause = cause
