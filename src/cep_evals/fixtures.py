"""Fixture composition for eval cases.

A shared base document is deep-merged with per-case override documents.
The merged document can be sent alongside the conversation, serialized into
the prompt text, or both.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cep_evals.registry import EvalCase

logger = logging.getLogger(__name__)

RESPONSE_FORMAT_INSTRUCTION = (
    "Please respond with diagnosis, evidence, hypotheses, and next steps. "
    "Keep the response under 800 characters and avoid long nested fields."
)

BASE_FIXTURE_NAME = "api-base.json"
OVERRIDES_FILE_NAME = "overrides.json"


def deep_merge(base: Any, override: Any) -> Any:
    """Deep merge two JSON values, override taking precedence.

    Objects merge key by key; arrays and scalars are replaced outright.
    Neither input is mutated.
    """
    if override is None:
        return base
    if base is None:
        return override
    if isinstance(base, dict) and isinstance(override, dict):
        result = dict(base)
        for key, value in override.items():
            result[key] = deep_merge(result.get(key), value)
        return result
    return override


def _load_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _load_object(path: Path) -> dict[str, Any]:
    """Load a JSON object; missing files and non-objects count as empty."""
    if not path.exists():
        return {}
    loaded = _load_json(path)
    return loaded if isinstance(loaded, dict) else {}


def _format_file_block(label: str, path: Path) -> str:
    return f"--- {label} ---\n{path.read_text(encoding='utf-8')}"


def _format_json_block(label: str, data: Any) -> str:
    return f"--- {label} ---\n{json.dumps(data, indent=2)}"


class FixtureComposer:
    """Builds fixture documents and prompts for one run's settings.

    Args:
        fixtures_dir: Directory containing ``base/api-base.json`` and
            ``<case_id>/overrides.json`` files.
        root_dir: Directory that relative fixture paths in the registry
            are resolved against.
        use_base: Include the shared base document.
        use_fixtures: Include per-case fixtures.
        inject_into_prompt: Serialize fixture context into the prompt text.
    """

    def __init__(
        self,
        fixtures_dir: str | Path,
        root_dir: str | Path = ".",
        use_base: bool = False,
        use_fixtures: bool = False,
        inject_into_prompt: bool = False,
    ) -> None:
        self.fixtures_dir = Path(fixtures_dir)
        self.root_dir = Path(root_dir)
        self.use_base = use_base
        self.use_fixtures = use_fixtures
        self.inject_into_prompt = inject_into_prompt

    @property
    def base_path(self) -> Path:
        return self.fixtures_dir / "base" / BASE_FIXTURE_NAME

    def case_overrides_path(self, case_id: str) -> Path:
        return self.fixtures_dir / case_id / OVERRIDES_FILE_NAME

    def load_fixtures(self, case_id: str) -> dict[str, Any] | None:
        """Load the merged fixture document for a case.

        Returns:
            None when neither base nor per-case fixtures are enabled,
            otherwise the base document merged with the case overrides.
        """
        if not self.use_base and not self.use_fixtures:
            return None
        base = _load_object(self.base_path) if self.use_base else {}
        overrides = _load_object(self.case_overrides_path(case_id))
        merged = deep_merge(base, overrides)
        return merged if isinstance(merged, dict) else {}

    def build_prompt(self, base_prompt: str, case: EvalCase | None = None) -> str:
        """Append the response-format instruction and any fixture context."""
        prompt = f"{base_prompt}\n\n{RESPONSE_FORMAT_INSTRUCTION}"

        overrides = list(case.overrides) if case else []
        if not self.inject_into_prompt:
            return prompt
        if not self.use_base and not self.use_fixtures and not overrides:
            return prompt

        blocks = self._prompt_blocks(case)
        if not blocks:
            return prompt
        return f"{prompt}\n\nFixture context:\n" + "\n\n".join(blocks)

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.root_dir / candidate

    def _override_paths(self, case: EvalCase | None) -> list[Path]:
        if case is None:
            return []
        paths = [self._resolve(p) for p in case.overrides]
        per_case = self.case_overrides_path(case.id)
        if per_case.exists():
            paths.append(per_case)
        return paths

    def _prompt_blocks(self, case: EvalCase | None) -> list[str]:
        override_paths = self._override_paths(case)
        blocks: list[str] = []

        if self.use_base:
            if override_paths:
                merged: Any = _load_object(self.base_path)
                for path in override_paths:
                    merged = deep_merge(merged, _load_json(path))
                blocks.append(_format_json_block("api-base+overrides.json", merged))
            elif self.base_path.exists():
                blocks.append(_format_file_block(BASE_FIXTURE_NAME, self.base_path))
            else:
                logger.warning(f"Base fixture not found: {self.base_path}")
        else:
            blocks.extend(_format_file_block(p.name, p) for p in override_paths)

        if self.use_fixtures and case is not None:
            for fixture in case.fixtures:
                blocks.append(_format_file_block(Path(fixture).name, self._resolve(fixture)))

        return blocks
