"""Tests for auditdrill.exercises."""

from __future__ import annotations

import pytest
from auditdrill.errors import ConfigurationError
from auditdrill.exercises import (
    FIXED_ASSET_TESTING,
    OUTSTANDING_CHECK_TESTING,
    ExerciseConfig,
    build_exercise_config,
)


class TestValidation:
    def test_first_step_must_be_instruction(self) -> None:
        with pytest.raises(ConfigurationError):
            ExerciseConfig(case_type="x", steps=("selection", "results"))

    def test_last_step_must_be_results(self) -> None:
        with pytest.raises(ConfigurationError):
            ExerciseConfig(case_type="x", steps=("instruction", "testing"))

    def test_duplicates_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            ExerciseConfig(case_type="x", steps=("instruction", "testing", "testing", "results"))

    def test_too_short(self) -> None:
        with pytest.raises(ConfigurationError):
            ExerciseConfig(case_type="x", steps=("instruction",))

    def test_mappings_are_read_only(self) -> None:
        with pytest.raises(TypeError):
            FIXED_ASSET_TESTING.labels["testing"] = "changed"  # type: ignore[index]


class TestResolveStep:
    def test_known_step(self) -> None:
        assert FIXED_ASSET_TESTING.resolve_step("testing") == "testing"

    def test_alias(self) -> None:
        assert FIXED_ASSET_TESTING.resolve_step("rollforward") == "selection"

    def test_unknown_falls_back_to_first(self) -> None:
        assert FIXED_ASSET_TESTING.resolve_step("scoping") == "instruction"
        assert FIXED_ASSET_TESTING.resolve_step(None) == "instruction"

    def test_index_of_unknown(self) -> None:
        assert FIXED_ASSET_TESTING.index_of("nope") == -1


class TestPercentComplete:
    def test_proportional_fallback(self) -> None:
        config = ExerciseConfig(
            case_type="plain", steps=("instruction", "a", "b", "c", "results")
        )
        assert config.percent_complete("instruction") == 0
        assert config.percent_complete("b") == 50
        assert config.percent_complete("results") == 100

    def test_range_without_ratio_uses_table_or_index(self) -> None:
        assert OUTSTANDING_CHECK_TESTING.percent_complete("testing") == 67

    def test_label_for(self) -> None:
        assert FIXED_ASSET_TESTING.label_for("results") == "Review Outcome"
        assert FIXED_ASSET_TESTING.label_for("unlabelled") == "unlabelled"


class TestOverrides:
    def test_labels_merge_over_base(self) -> None:
        config = build_exercise_config(FIXED_ASSET_TESTING, {"labels": {"testing": "Vouching"}})
        assert config.label_for("testing") == "Vouching"
        assert config.label_for("results") == "Review Outcome"
        assert config.steps == FIXED_ASSET_TESTING.steps

    def test_steps_replace_base(self) -> None:
        config = build_exercise_config(
            FIXED_ASSET_TESTING,
            {"steps": ["instruction", "scoping", "additions", "results"]},
        )
        assert config.steps == ("instruction", "scoping", "additions", "results")

    def test_invalid_override_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            build_exercise_config(FIXED_ASSET_TESTING, {"steps": ["testing", "results"]})

    def test_no_overrides_copies_base(self) -> None:
        config = build_exercise_config(OUTSTANDING_CHECK_TESTING)
        assert config == OUTSTANDING_CHECK_TESTING
