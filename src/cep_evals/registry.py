"""Eval case registry loading and filtering.

The registry is a catalog document (``{"version": ..., "cases": [...]}``)
plus one markdown body per case. A malformed entry aborts the whole load;
cases are never silently dropped.
"""

from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cep_evals.config import CaseFilter
from cep_evals.errors import ConfigurationError

logger = logging.getLogger(__name__)

_CONVERSATION_SECTION = re.compile(
    r"##\s*Conversation\s*\n(.*?)(?=\n##|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_USER_UTTERANCE = re.compile(
    r"\*\*User(?:\s*\([^)]*\))?:\*\*\s*(.*?)(?=\n\*\*|\Z)",
    re.IGNORECASE | re.DOTALL,
)


class CaseMode(str, Enum):
    """How a case talks to the target service."""

    SINGLE_TURN = "single-turn"
    MULTI_TURN = "multi-turn"


class EvalRubric(BaseModel):
    """Qualitative checklist with a minimum passing score."""

    model_config = ConfigDict(frozen=True)

    min_score: int = Field(..., ge=0, description="Criteria that must match")
    criteria: list[str] = Field(..., description="Cue phrases scored against the response")


class ConversationTurn(BaseModel):
    """A scripted user turn in a multi-turn case."""

    model_config = ConfigDict(frozen=True)

    role: str = Field("user", description="Always 'user'")
    content: str = Field(..., description="User message")


class TurnAssertion(BaseModel):
    """Assertions checked against a single turn's reply."""

    model_config = ConfigDict(frozen=True)

    turn: int = Field(..., ge=0, description="Zero-based turn index")
    required_tool_calls: list[str] = Field(default_factory=list)
    required_evidence: list[str] = Field(default_factory=list)


class EvalCase(BaseModel):
    """One scripted test scenario and its expected-behaviour contract."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Case identifier, e.g. EC-001")
    title: str = Field(..., description="Human readable title")
    category: str = Field(..., min_length=1, description="Failure domain")
    case_file: str = Field(..., description="Case body path, relative to the root dir")
    mode: CaseMode = Field(CaseMode.SINGLE_TURN, description="single-turn or multi-turn")
    source_refs: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    conversation_script: list[ConversationTurn] = Field(default_factory=list)
    turn_assertions: list[TurnAssertion] = Field(default_factory=list)
    expected_schema: list[str] = Field(default_factory=list)
    fixtures: list[str] = Field(default_factory=list)
    overrides: list[str] = Field(default_factory=list)
    required_evidence: list[str] = Field(default_factory=list)
    forbidden_evidence: list[str] = Field(default_factory=list)
    required_tool_calls: list[str] = Field(default_factory=list)
    rubric: EvalRubric | None = None

    @property
    def is_multi_turn(self) -> bool:
        """Whether the case replays a conversation script."""
        return self.mode == CaseMode.MULTI_TURN and len(self.conversation_script) > 0

    def turn_assertion(self, turn: int) -> TurnAssertion | None:
        """Get the assertion declared for a turn index, if any."""
        for assertion in self.turn_assertions:
            if assertion.turn == turn:
                return assertion
        return None


class EvalRegistry(BaseModel):
    """The parsed case catalog."""

    model_config = ConfigDict(frozen=True)

    version: str
    cases: list[EvalCase]


def _read_document(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


def load_registry(path: str | Path) -> EvalRegistry:
    """Load and validate the case catalog.

    Args:
        path: Path to a JSON or YAML catalog.

    Returns:
        The validated registry.

    Raises:
        ConfigurationError: If the file is missing, unparsable, or any
            entry fails validation.
    """
    registry_path = Path(path)
    if not registry_path.exists():
        raise ConfigurationError(f"Registry not found: {registry_path}")

    try:
        data = _read_document(registry_path)
    except (json.JSONDecodeError, yaml.YAMLError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Failed to parse registry {registry_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read registry {registry_path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("version"), str):
        raise ConfigurationError("Invalid eval registry format: expected version string")
    raw_cases = data.get("cases")
    if not isinstance(raw_cases, list):
        raise ConfigurationError("Invalid eval registry format: expected a cases list")

    cases: list[EvalCase] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_cases):
        label = entry.get("id", f"#{index}") if isinstance(entry, dict) else f"#{index}"
        try:
            case = EvalCase.model_validate(entry)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid registry entry {label}: {e}") from e
        if case.id in seen:
            raise ConfigurationError(f"Duplicate case id in registry: {case.id}")
        seen.add(case.id)
        cases.append(case)

    logger.debug(f"Loaded {len(cases)} cases from {registry_path}")
    return EvalRegistry(version=data["version"], cases=cases)


def filter_cases(cases: list[EvalCase], case_filter: CaseFilter) -> list[EvalCase]:
    """Apply id, category and tag allow-lists, then the limit.

    Registry order is preserved.
    """
    filtered = list(cases)
    if case_filter.ids:
        id_set = set(case_filter.ids)
        filtered = [c for c in filtered if c.id in id_set]
    if case_filter.categories:
        category_set = {cat.lower() for cat in case_filter.categories}
        filtered = [c for c in filtered if c.category.lower() in category_set]
    if case_filter.tags:
        tag_set = {tag.lower() for tag in case_filter.tags}
        filtered = [c for c in filtered if any(tag.lower() in tag_set for tag in c.tags)]
    if case_filter.limit is not None and case_filter.limit > 0:
        filtered = filtered[: case_filter.limit]
    return filtered


def extract_prompt(content: str) -> str | None:
    """Extract the first user utterance from a case body's Conversation section."""
    section_match = _CONVERSATION_SECTION.search(content)
    if not section_match:
        return None
    section = section_match.group(1).strip()
    user_match = _USER_UTTERANCE.search(section)
    if user_match:
        return user_match.group(1).strip() or None
    return section or None


def build_prompt_map(registry: EvalRegistry, root_dir: str | Path = ".") -> dict[str, str]:
    """Map case id to the prompt lifted from its case body.

    Cases whose file is missing or has no Conversation section are left out.
    """
    root = Path(root_dir)
    prompts: dict[str, str] = {}
    for case in registry.cases:
        case_path = root / case.case_file
        if not case_path.exists():
            logger.debug(f"Case file not found for {case.id}: {case_path}")
            continue
        prompt = extract_prompt(case_path.read_text(encoding="utf-8"))
        if prompt:
            prompts[case.id] = prompt
    return prompts


def get_categories(registry: EvalRegistry) -> list[str]:
    """Get unique categories, sorted."""
    return sorted({case.category for case in registry.cases})


def get_tags(registry: EvalRegistry) -> list[str]:
    """Get unique tags, sorted."""
    return sorted({tag for case in registry.cases for tag in case.tags})


def get_cases_by_category(registry: EvalRegistry) -> dict[str, list[EvalCase]]:
    """Group cases by category, keeping registry order inside each group."""
    by_category: dict[str, list[EvalCase]] = defaultdict(list)
    for case in registry.cases:
        by_category[case.category].append(case)
    return dict(by_category)
