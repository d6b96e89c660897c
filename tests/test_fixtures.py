"""Tests for fixture composition."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

from cep_evals.fixtures import RESPONSE_FORMAT_INSTRUCTION, FixtureComposer, deep_merge
from cep_evals.registry import EvalCase


class TestDeepMerge:
    """Tests for deep_merge."""

    def test_scalars_are_replaced(self) -> None:
        """An override scalar wins."""
        assert deep_merge({"a": 1}, {"a": 2}) == {"a": 2}

    def test_arrays_are_replaced_not_concatenated(self) -> None:
        """Arrays are replaced wholesale."""
        assert deep_merge({"a": [1, 2]}, {"a": [3]}) == {"a": [3]}

    def test_objects_merge_recursively(self) -> None:
        """Nested objects keep keys from both sides."""
        base = {"x": {"a": 1, "b": {"c": 2}}}
        override = {"x": {"b": {"d": 3}}}

        assert deep_merge(base, override) == {"x": {"a": 1, "b": {"c": 2, "d": 3}}}

    def test_none_identities(self) -> None:
        """None on either side yields the other side."""
        assert deep_merge({"a": 1}, None) == {"a": 1}
        assert deep_merge(None, {"a": 1}) == {"a": 1}

    def test_inputs_are_not_mutated(self) -> None:
        """Neither argument changes."""
        base = {"x": {"a": 1}}
        override = {"x": {"b": 2}}

        deep_merge(base, override)

        assert base == {"x": {"a": 1}}
        assert override == {"x": {"b": 2}}

    def test_object_replaced_by_scalar(self) -> None:
        """Type mismatches take the override."""
        assert deep_merge({"a": {"b": 1}}, {"a": "flat"}) == {"a": "flat"}


class TestLoadFixtures:
    """Tests for FixtureComposer.load_fixtures."""

    def test_disabled_returns_none(self, workspace: Path) -> None:
        """No fixture source enabled means no fixture document."""
        composer = FixtureComposer(workspace / "evals" / "fixtures")

        assert composer.load_fixtures("EC-001") is None

    def test_base_and_overrides_are_merged(self, workspace: Path) -> None:
        """Base document merged with the case overrides."""
        composer = FixtureComposer(workspace / "evals" / "fixtures", use_base=True, use_fixtures=True)

        fixtures = composer.load_fixtures("EC-001")

        assert fixtures == {"devices": {"printer": "offline", "count": 1}, "events": [3]}

    def test_overrides_only_without_base(self, workspace: Path) -> None:
        """Without base, only the overrides are returned."""
        composer = FixtureComposer(workspace / "evals" / "fixtures", use_fixtures=True)

        assert composer.load_fixtures("EC-001") == {"devices": {"printer": "offline"}, "events": [3]}

    def test_missing_overrides_treated_as_empty(self, workspace: Path) -> None:
        """Cases without an overrides file get the base document."""
        composer = FixtureComposer(workspace / "evals" / "fixtures", use_base=True)

        fixtures = composer.load_fixtures("EC-404")

        assert fixtures == {"devices": {"printer": "online", "count": 1}, "events": [1, 2]}


class TestBuildPrompt:
    """Tests for FixtureComposer.build_prompt."""

    def test_instruction_always_appended(self, workspace: Path) -> None:
        """The response-format instruction follows the base prompt."""
        composer = FixtureComposer(workspace / "evals" / "fixtures")

        prompt = composer.build_prompt("Why is my printer offline?")

        assert prompt == f"Why is my printer offline?\n\n{RESPONSE_FORMAT_INSTRUCTION}"

    def test_no_context_without_injection(self, workspace: Path, make_case: Callable[..., EvalCase]) -> None:
        """Fixture context is only added when prompt injection is on."""
        composer = FixtureComposer(workspace / "evals" / "fixtures", use_base=True, use_fixtures=True)

        prompt = composer.build_prompt("Help", make_case())

        assert "Fixture context:" not in prompt

    def test_merged_block_with_base_and_overrides(
        self, workspace: Path, make_case: Callable[..., EvalCase]
    ) -> None:
        """Base plus overrides are rendered as one merged block."""
        composer = FixtureComposer(
            workspace / "evals" / "fixtures",
            root_dir=workspace,
            use_base=True,
            use_fixtures=True,
            inject_into_prompt=True,
        )

        prompt = composer.build_prompt("Help", make_case())

        assert "Fixture context:\n--- api-base+overrides.json ---\n" in prompt
        merged = json.loads(prompt.split("--- api-base+overrides.json ---\n", 1)[1])
        assert merged["devices"] == {"printer": "offline", "count": 1}

    def test_base_file_alone_without_overrides(
        self, workspace: Path, make_case: Callable[..., EvalCase]
    ) -> None:
        """A case with no overrides gets the raw base file block."""
        composer = FixtureComposer(
            workspace / "evals" / "fixtures",
            use_base=True,
            inject_into_prompt=True,
        )

        prompt = composer.build_prompt("Help", make_case(id="EC-002"))

        assert "--- api-base.json ---" in prompt
        assert "api-base+overrides.json" not in prompt

    def test_listed_fixture_files_in_order(self, workspace: Path, make_case: Callable[..., EvalCase]) -> None:
        """Explicit case fixtures follow in the order supplied."""
        extra_dir = workspace / "extra"
        extra_dir.mkdir()
        (extra_dir / "b.json").write_text('{"b": 1}', encoding="utf-8")
        (extra_dir / "a.json").write_text('{"a": 1}', encoding="utf-8")
        composer = FixtureComposer(
            workspace / "evals" / "fixtures",
            root_dir=workspace,
            use_fixtures=True,
            inject_into_prompt=True,
        )

        prompt = composer.build_prompt(
            "Help",
            make_case(id="EC-002", fixtures=["extra/b.json", "extra/a.json"]),
        )

        assert prompt.index("--- b.json ---") < prompt.index("--- a.json ---")
