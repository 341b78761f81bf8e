"""Exercise configuration descriptors.

An exercise is described by an ordered list of step identifiers plus
display labels, descriptions, and a progress-percentage table. Descriptors
are immutable; case authors customise a workflow by passing overrides to
``build_exercise_config`` which merges them over a base descriptor.

Rules (part of the workflow contract):
  - The first step is always the instructional step.
  - The last step is always the results step.
  - Unknown step identifiers resolve to a known alias or to the first step.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from auditdrill.errors import ConfigurationError

logger = logging.getLogger(__name__)

INSTRUCTION = "instruction"
SELECTION = "selection"
ROLLFORWARD = "rollforward"
SCOPING = "scoping"
TESTING = "testing"
ADDITIONS = "additions"
DISPOSALS = "disposals"
ANALYTICS = "analytics"
RESULTS = "results"

# Steps that were renamed between case versions and should map onto each other
_STEP_ALIASES: Mapping[str, str] = MappingProxyType(
    {SELECTION: ROLLFORWARD, ROLLFORWARD: SELECTION}
)


def _frozen(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class ExerciseConfig:
    """Static descriptor for one case type.

    Attributes:
        case_type: Identifier of the exercise family.
        steps: Ordered step identifiers, instruction first, results last.
        labels: Display label per step.
        descriptions: One-line description per step.
        progress_by_step: Fixed completion percentage per step.
        progress_ranges: Steps whose percentage scales with the share of
            items completed, as ``(start, cap)`` pairs.
    """

    case_type: str
    steps: tuple[str, ...]
    labels: Mapping[str, str] = field(default_factory=dict)
    descriptions: Mapping[str, str] = field(default_factory=dict)
    progress_by_step: Mapping[str, int] = field(default_factory=dict)
    progress_ranges: Mapping[str, tuple[int, int]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.steps) < 2:
            raise ConfigurationError(f"{self.case_type}: a workflow needs at least two steps")
        if self.steps[0] != INSTRUCTION:
            raise ConfigurationError(f"{self.case_type}: first step must be '{INSTRUCTION}'")
        if self.steps[-1] != RESULTS:
            raise ConfigurationError(f"{self.case_type}: last step must be '{RESULTS}'")
        if len(set(self.steps)) != len(self.steps):
            raise ConfigurationError(f"{self.case_type}: duplicate step identifiers")
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "labels", _frozen(self.labels))
        object.__setattr__(self, "descriptions", _frozen(self.descriptions))
        object.__setattr__(self, "progress_by_step", _frozen(self.progress_by_step))
        object.__setattr__(self, "progress_ranges", _frozen(self.progress_ranges))

    @property
    def first_step(self) -> str:
        return self.steps[0]

    @property
    def results_step(self) -> str:
        return self.steps[-1]

    def index_of(self, step: str) -> int:
        """Index of ``step`` in the workflow, or -1 if unknown."""
        try:
            return self.steps.index(step)
        except ValueError:
            return -1

    def resolve_step(self, step: str | None) -> str:
        """Map a possibly stale step identifier onto this workflow.

        Known steps are returned unchanged. Renamed steps map to their
        alias. Anything else falls back to the first step.
        """
        if step in self.steps:
            return step  # type: ignore[return-value]
        alias = _STEP_ALIASES.get(step or "")
        if alias is not None and alias in self.steps:
            return alias
        if step:
            logger.warning("%s: unknown step %r, falling back to %r", self.case_type, step, self.first_step)
        return self.first_step

    def label_for(self, step: str) -> str:
        return self.labels.get(step, step)

    def percent_complete(self, step: str, completion_ratio: float | None = None) -> int:
        """Completion percentage for a step.

        Args:
            step: Step identifier (resolved before lookup).
            completion_ratio: Share of items finished, used only for steps
                listed in ``progress_ranges``.

        Returns:
            Integer percentage between 0 and 100.
        """
        resolved = self.resolve_step(step)
        if resolved == self.results_step:
            return 100
        if resolved in self.progress_ranges and completion_ratio is not None:
            start, cap = self.progress_ranges[resolved]
            ratio = max(0.0, min(1.0, completion_ratio))
            return min(cap, start + int(ratio * (cap - start) + 0.5))
        if resolved in self.progress_by_step:
            return int(self.progress_by_step[resolved])
        idx = self.index_of(resolved)
        if idx <= 0:
            return 0
        return int(idx / (len(self.steps) - 1) * 100 + 0.5)


FIXED_ASSET_TESTING = ExerciseConfig(
    case_type="fixed_asset_testing",
    steps=(INSTRUCTION, SELECTION, TESTING, RESULTS),
    labels={
        INSTRUCTION: "Instruction",
        SELECTION: "Rollforward",
        ROLLFORWARD: "Rollforward",
        SCOPING: "Scoping",
        TESTING: "Testing",
        ADDITIONS: "Additions Testing",
        DISPOSALS: "Disposals Testing",
        ANALYTICS: "Depreciation Analytics",
        RESULTS: "Review Outcome",
    },
    descriptions={
        INSTRUCTION: "Review the briefing and clear the gate check before entering the workpaper.",
        SELECTION: "Tick and tie the rollforward, then lock your testing strategy.",
        ROLLFORWARD: "Tick and tie the rollforward to validate the population.",
        SCOPING: "Define your testing strategy based on materiality and risk.",
        TESTING: "Document additions, disposals, and depreciation analytics.",
        ADDITIONS: "Vouch current-year additions to vendor support.",
        DISPOSALS: "Validate disposals and gain/loss calculations.",
        ANALYTICS: "Perform depreciation and accumulated depreciation analytics.",
        RESULTS: "Review your fixed asset conclusions and notes.",
    },
    progress_by_step={INSTRUCTION: 0, SELECTION: 30, TESTING: 75, RESULTS: 100},
)

OUTSTANDING_CHECK_TESTING = ExerciseConfig(
    case_type="outstanding_check_testing",
    steps=(INSTRUCTION, SELECTION, TESTING, RESULTS),
    labels={
        INSTRUCTION: "Instruction",
        SELECTION: "Select Sample",
        TESTING: "Trace & Conclude",
        RESULTS: "Review Outcome",
    },
    descriptions={
        SELECTION: "Pick the checks you will test from January clearings.",
        TESTING: "Trace each selection to the register and the 12/31 outstanding list.",
        RESULTS: "See your recap and any exceptions.",
    },
    progress_by_step={INSTRUCTION: 0, SELECTION: 25, RESULTS: 100},
    progress_ranges={TESTING: (25, 95)},
)


def build_exercise_config(
    base: ExerciseConfig,
    overrides: Mapping[str, Any] | None = None,
) -> ExerciseConfig:
    """Merge case-authored overrides over a base descriptor.

    ``steps`` replaces the base list when non-empty; the mapping fields are
    merged key by key.

    Raises:
        ConfigurationError: If the merged descriptor breaks the workflow rules.
    """
    overrides = overrides or {}
    steps: Sequence[str] = overrides.get("steps") or base.steps

    def _merge(name: str) -> dict[str, Any]:
        merged = dict(getattr(base, name))
        merged.update(overrides.get(name) or {})
        return merged

    return ExerciseConfig(
        case_type=overrides.get("case_type", base.case_type),
        steps=tuple(steps),
        labels=_merge("labels"),
        descriptions=_merge("descriptions"),
        progress_by_step=_merge("progress_by_step"),
        progress_ranges=_merge("progress_ranges"),
    )
