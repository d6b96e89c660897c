"""Shared pytest fixtures for eval harness tests."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from cep_evals.config import EvalConfig
from cep_evals.registry import EvalCase
from cep_evals.reporting.models import AssertionResult, EvalReport, ReportStatus


@pytest.fixture
def make_case() -> Callable[..., EvalCase]:
    """Factory for EvalCase objects with sensible defaults."""

    def _make(**overrides: Any) -> EvalCase:
        data: dict[str, Any] = {
            "id": "EC-001",
            "title": "Printer offline",
            "category": "devices",
            "case_file": "evals/cases/EC-001.md",
            "expected_schema": [],
        }
        data.update(overrides)
        return EvalCase.model_validate(data)

    return _make


@pytest.fixture
def make_report() -> Callable[..., EvalReport]:
    """Factory for EvalReport objects; every assertion passes unless overridden."""

    def _make(**overrides: Any) -> EvalReport:
        passed = AssertionResult(True, "ok")
        data: dict[str, Any] = {
            "run_id": "run-1",
            "case_id": "EC-001",
            "title": "Printer offline",
            "category": "devices",
            "tags": [],
            "source_refs": [],
            "case_file": "evals/cases/EC-001.md",
            "prompt": "Why is my printer offline?",
            "response_text": "",
            "response_metadata": None,
            "expected_schema": [],
            "schema_result": passed,
            "evidence_result": passed,
            "forbidden_evidence_result": passed,
            "tool_calls_result": passed,
            "status": ReportStatus.PASS,
            "duration_ms": 10,
            "timestamp": "2026-01-01T00:00:00.000Z",
        }
        data.update(overrides)
        return EvalReport(**data)

    return _make


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A root directory with a two-case registry, case bodies and fixtures."""
    cases_dir = tmp_path / "evals" / "cases"
    cases_dir.mkdir(parents=True)
    (cases_dir / "EC-001.md").write_text(
        "# EC-001\n\n## Conversation\n**User:** My printer shows offline.\n\n## Notes\nIgnored.\n",
        encoding="utf-8",
    )
    (cases_dir / "EC-002.md").write_text("# EC-002\n\nNo conversation here.\n", encoding="utf-8")

    registry = {
        "version": "1",
        "cases": [
            {
                "id": "EC-001",
                "title": "Printer offline",
                "category": "devices",
                "case_file": "evals/cases/EC-001.md",
                "tags": ["printing", "smoke"],
                "expected_schema": ["diagnosis"],
                "required_evidence": ["printer", "offline"],
                "assertions": {"legacy": True},
            },
            {
                "id": "EC-002",
                "title": "DNS failure",
                "category": "network",
                "case_file": "evals/cases/EC-002.md",
                "tags": ["dns"],
            },
        ],
    }
    (tmp_path / "evals" / "registry.json").write_text(json.dumps(registry), encoding="utf-8")

    base_dir = tmp_path / "evals" / "fixtures" / "base"
    base_dir.mkdir(parents=True)
    (base_dir / "api-base.json").write_text(
        json.dumps({"devices": {"printer": "online", "count": 1}, "events": [1, 2]}),
        encoding="utf-8",
    )
    override_dir = tmp_path / "evals" / "fixtures" / "EC-001"
    override_dir.mkdir(parents=True)
    (override_dir / "overrides.json").write_text(
        json.dumps({"devices": {"printer": "offline"}, "events": [3]}),
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture
def eval_config(workspace: Path) -> EvalConfig:
    """EvalConfig pointing at the workspace, with no pauses or managed server."""
    return EvalConfig(
        root_dir=workspace,
        registry_path=workspace / "evals" / "registry.json",
        fixtures_dir=workspace / "evals" / "fixtures",
        reports_dir=workspace / "evals" / "reports",
        case_pause=0.0,
        manage_server=False,
    )
