"""Workflow state machine for a single exercise attempt.

Tracks the active step, the furthest step reached, and the one-way lock
applied at submission. Navigation rules:
  - Unknown step identifiers are ignored (configuration drift is expected).
  - Any step at or before the furthest reached step may be revisited.
  - Only the next unvisited step may be entered going forward.
  - Nothing moves once the attempt is locked.

Remote snapshots bypass the forward gate through ``apply_remote_step``:
the remote copy only ever holds steps this attempt already reached.
"""

from __future__ import annotations

import logging

from auditdrill.exercises import ExerciseConfig
from auditdrill.protocol import ProgressState, WorkflowState

logger = logging.getLogger(__name__)


def progress_state_for(config: ExerciseConfig, step: str, percent: int) -> ProgressState:
    """Progress state for a step and its completion percentage."""
    if config.resolve_step(step) == config.results_step or percent >= 100:
        return ProgressState.SUBMITTED
    if percent > 0:
        return ProgressState.IN_PROGRESS
    return ProgressState.NOT_STARTED


class WorkflowMachine:
    """Ordered step sequence with gating and lock-after-submit.

    Args:
        config: The exercise descriptor supplying the step list.
        initial_step: Optional starting step (resolved against the config).
    """

    def __init__(self, config: ExerciseConfig, initial_step: str | None = None) -> None:
        self._config = config
        self._current = config.resolve_step(initial_step) if initial_step else config.first_step
        self._furthest = config.index_of(self._current)
        self._locked = False

    @property
    def config(self) -> ExerciseConfig:
        return self._config

    @property
    def current_step(self) -> str:
        return self._current

    @property
    def current_index(self) -> int:
        return self._config.index_of(self._current)

    @property
    def furthest_step_index(self) -> int:
        return self._furthest

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def state(self) -> WorkflowState:
        return WorkflowState(
            current_step=self._current,
            furthest_step_index=self._furthest,
            locked=self._locked,
        )

    def can_navigate(self, step: str) -> bool:
        """Whether ``go_to_step(step)`` would succeed right now."""
        if self._locked:
            return False
        idx = self._config.index_of(step)
        return idx >= 0 and idx <= self._furthest + 1

    def go_to_step(self, step: str) -> bool:
        """Move to ``step`` if the navigation rules allow it.

        Returns:
            True if the workflow moved (or was already on that step).
        """
        idx = self._config.index_of(step)
        if idx < 0:
            logger.warning("Ignoring navigation to unknown step %r", step)
            return False
        if self._locked:
            logger.debug("Navigation to %r rejected: workflow locked", step)
            return False
        if idx > self._furthest + 1:
            logger.debug(
                "Navigation to %r rejected: index %d beyond furthest %d",
                step,
                idx,
                self._furthest,
            )
            return False
        self._move(step, idx)
        return True

    def go_to_next_step(self) -> bool:
        idx = self.current_index
        if 0 <= idx < len(self._config.steps) - 1:
            return self.go_to_step(self._config.steps[idx + 1])
        return False

    def go_to_previous_step(self) -> bool:
        idx = self.current_index
        if idx > 0:
            return self.go_to_step(self._config.steps[idx - 1])
        return False

    def enter_simulation(self) -> bool:
        """Leave the instruction step for the first working step."""
        if self._current != self._config.first_step:
            return False
        return self.go_to_step(self._config.steps[1])

    def apply_remote_step(self, step: str) -> bool:
        """Adopt a step from a remote snapshot.

        The step is resolved against the config (unknown steps fall back to
        the first step). Returns True if the current step changed.
        """
        resolved = self._config.resolve_step(step)
        if resolved == self._current:
            return False
        self._move(resolved, self._config.index_of(resolved))
        return True

    def lock(self) -> None:
        """Lock the attempt. Irreversible until ``reset``."""
        if not self._locked:
            logger.info("Workflow locked at step %r", self._current)
        self._locked = True

    def finish(self) -> None:
        """Lock and jump to the results step (used on successful submit)."""
        self.lock()
        results = self._config.results_step
        self._move(results, self._config.index_of(results))

    def reset(self) -> None:
        """Start a fresh attempt from the first step, unlocked."""
        self._current = self._config.first_step
        self._furthest = 0
        self._locked = False

    def percent_complete(self, completion_ratio: float | None = None) -> int:
        return self._config.percent_complete(self._current, completion_ratio)

    def progress_state(self, completion_ratio: float | None = None) -> ProgressState:
        """Derive the coarse progress state stored in the remote document."""
        return progress_state_for(self._config, self._current, self.percent_complete(completion_ratio))

    def _move(self, step: str, idx: int) -> None:
        self._current = step
        self._furthest = max(self._furthest, idx)
