"""Exercise session: the only route by which user actions change state.

A session owns one draft, one workflow machine and one sync engine for a
single trainee working one case. Every mutation follows the same path:

    locked? -> no-op
    draft = op(draft, ...)        (new section, siblings shared)
    sync.record_local_change()
    sync.schedule_save()

Submitting grades the draft, records an attempt, locks the workflow on the
results step and writes the submitted state immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from auditdrill import draft as drafts
from auditdrill.attempt_store import AttemptStore, clean_duration
from auditdrill.config import SimulatorConfig
from auditdrill.draft import Draft
from auditdrill.exercises import ExerciseConfig
from auditdrill.grading import GradingEvaluator, GradingReport, extract_decision_from_allocation
from auditdrill.protocol import AttemptRecord
from auditdrill.scheduler import SaveScheduler
from auditdrill.store import DocumentStore
from auditdrill.sync import SyncEngine
from auditdrill.workflow import WorkflowMachine

logger = logging.getLogger(__name__)


def selection_completion_ratio(draft: Mapping[str, Any]) -> float | None:
    """Share of selected items that carry a determinable classification."""
    selected = [
        item_id for item_id, on in (draft.get(drafts.SELECTED_ITEMS) or {}).items() if on
    ]
    if not selected:
        return None
    classifications = draft.get(drafts.CLASSIFICATIONS) or {}
    done = sum(
        1
        for item_id in selected
        if extract_decision_from_allocation(classifications.get(item_id)).is_determinable
    )
    return done / len(selected)


class ExerciseSession:
    """One trainee's live attempt at one case.

    Args:
        session_id: Key of the progress document in the store.
        exercise: Step list and progress table for the case type.
        store: Shared document store.
        scheduler: Debounce timer and clock, usually from ``SaveScheduler.for_loop``.
        config: Timing configuration.
        sections: Draft sections this case type uses.
        trainee_id: Owner of the attempt.
        case_id: The case being worked.
        on_change: Called after any local or remote change to draft or workflow.
        on_error: Called with persistence failures.
        loop: Event loop the session runs on. Store writes then run off the
            loop, bounded by ``config.write_timeout_seconds``, and store
            callbacks are delivered on it.
    """

    def __init__(
        self,
        session_id: str,
        exercise: ExerciseConfig,
        store: DocumentStore,
        scheduler: SaveScheduler,
        config: SimulatorConfig | None = None,
        sections: tuple[str, ...] = drafts.FIXED_ASSET_SECTIONS,
        trainee_id: str = "",
        case_id: str = "",
        on_change: Callable[[], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._session_id = session_id
        self._config = config or SimulatorConfig()
        self._sections = sections
        self._trainee_id = trainee_id
        self._case_id = case_id
        self._on_change = on_change
        self._workflow = WorkflowMachine(exercise)
        self._draft: Draft = drafts.empty_draft(sections)
        self._scheduler = scheduler
        self._opened_at = scheduler.now()
        self._last_report: GradingReport | None = None
        self._sync = SyncEngine(
            session_id=session_id,
            store=store,
            workflow=self._workflow,
            get_draft=lambda: self._draft,
            set_draft=self._replace_draft,
            scheduler=scheduler,
            config=self._config,
            sections=sections,
            completion_ratio=lambda: selection_completion_ratio(self._draft),
            on_error=on_error,
            on_remote_applied=self._notify_change,
            loop=loop,
        )

    @classmethod
    def open(
        cls,
        session_id: str,
        exercise: ExerciseConfig,
        store: DocumentStore,
        config: SimulatorConfig | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        **kwargs: Any,
    ) -> ExerciseSession:
        """Create a session on an event loop and subscribe to its document.

        Must be called from the loop's thread when ``loop`` is omitted. The
        existing document arrives as a loop callback, so the session is
        hydrated after the loop next runs.
        """
        config = config or SimulatorConfig()
        loop = loop or asyncio.get_running_loop()
        scheduler = SaveScheduler.for_loop(loop, config.save_debounce_seconds)
        session = cls(session_id, exercise, store, scheduler, config=config, loop=loop, **kwargs)
        session.start()
        return session

    # ── state ────────────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def draft(self) -> Draft:
        """Current draft. Treat as read-only; mutate through the session."""
        return self._draft

    @property
    def workflow(self) -> WorkflowMachine:
        return self._workflow

    @property
    def sync(self) -> SyncEngine:
        return self._sync

    @property
    def current_step(self) -> str:
        return self._workflow.current_step

    @property
    def locked(self) -> bool:
        return self._workflow.locked

    @property
    def last_error(self) -> Exception | None:
        return self._sync.last_error

    @property
    def last_report(self) -> GradingReport | None:
        return self._last_report

    def start(self) -> None:
        """Subscribe to the remote document (the current copy hydrates us)."""
        self._sync.start()

    def close(self, flush: bool = False) -> None:
        self._sync.close(flush=flush)

    async def drain(self) -> None:
        """Wait for writes already handed to the store (loop-bound sessions)."""
        await self._sync.drain()

    def retry_save(self) -> bool:
        """Write the current state again if the last write failed.

        A locked session accepts no mutations, so a failed submitted-state
        write is only retried here or by ``close(flush=True)``.

        Returns:
            False if nothing was waiting to be saved or the write failed.
        """
        if not self._sync.needs_save:
            return False
        return self._sync.save_now()

    # ── navigation ───────────────────────────────────────────────

    def go_to_step(self, step: str) -> bool:
        if not self._workflow.go_to_step(step):
            return False
        self._touch(step)
        return True

    def go_to_next_step(self) -> bool:
        if not self._workflow.go_to_next_step():
            return False
        self._touch(self._workflow.current_step)
        return True

    def go_to_previous_step(self) -> bool:
        if not self._workflow.go_to_previous_step():
            return False
        self._touch(self._workflow.current_step)
        return True

    def enter_simulation(self) -> bool:
        if not self._workflow.enter_simulation():
            return False
        self._touch(self._workflow.current_step)
        return True

    # ── draft mutations ──────────────────────────────────────────

    def toggle_tick(self, cell_key: str) -> bool:
        return self._mutate(lambda d: drafts.toggle_tick(d, cell_key))

    def update_scoping(self, patch: Mapping[str, Any]) -> bool:
        return self._mutate(lambda d: drafts.merge_section(d, drafts.SCOPING_DECISION, patch))

    def update_addition(self, item_id: str, patch: Mapping[str, Any]) -> bool:
        return self._mutate(
            lambda d: drafts.update_item(d, drafts.ADDITION_RESPONSES, item_id, patch)
        )

    def update_disposal(self, item_id: str, patch: Mapping[str, Any]) -> bool:
        return self._mutate(
            lambda d: drafts.update_item(d, drafts.DISPOSAL_RESPONSES, item_id, patch)
        )

    def update_analytics(self, patch: Mapping[str, Any]) -> bool:
        return self._mutate(lambda d: drafts.merge_section(d, drafts.ANALYTICS_RESPONSE, patch))

    def toggle_selection(self, item_id: str) -> bool:
        return self._mutate(lambda d: drafts.toggle_selection(d, item_id))

    def set_classification(self, item_id: str, allocation: Mapping[str, Any] | None) -> bool:
        """Store an item's allocation in canonical shape. None clears it."""
        value = None if allocation is None else drafts.normalize_allocation(allocation)
        return self._mutate(lambda d: drafts.set_item(d, drafts.CLASSIFICATIONS, item_id, value))

    def mark_opened(self, item_id: str) -> bool:
        """Record that an item or its supporting document was opened."""
        return self._mutate(lambda d: drafts.mark_opened(d, item_id))

    # ── lifecycle ────────────────────────────────────────────────

    def submit(
        self,
        evaluator: GradingEvaluator | None,
        attempt_store: AttemptStore,
        item_ids: Iterable[str] = (),
        required_ids: Iterable[str] = (),
        required_doc_ids: Iterable[str] = (),
        attempt_type: object = None,
    ) -> AttemptRecord | None:
        """Grade, record the attempt, then lock on the results step.

        Args:
            evaluator: Grader for the case; None records an ungraded attempt.
            attempt_store: Where the attempt is recorded.
            item_ids: Case items to grade.
            required_ids: Items on the required-review list.
            required_doc_ids: Documents that had to be opened.
            attempt_type: Requested attempt type (coerced when invalid).

        Returns:
            The recorded attempt, or None if the session was already locked.

        Raises:
            ValueError: If the attempt store rejects the record. The session
                stays unlocked so the trainee can try again.
        """
        if self._workflow.locked:
            logger.warning("Submit ignored for %s: already submitted", self._session_id)
            return None

        opened = {
            item_id for item_id, on in (self._draft.get(drafts.OPENED_ITEMS) or {}).items() if on
        }
        required_docs = list(required_doc_ids)
        required_docs_opened = all(doc in opened for doc in required_docs) if required_docs else None
        elapsed = clean_duration(self._scheduler.now() - self._opened_at)

        summary = None
        if evaluator is not None:
            self._last_report = evaluator.grade(
                self._case_id,
                item_ids,
                self._draft.get(drafts.CLASSIFICATIONS) or {},
                opened_ids=opened,
                required_ids=required_ids,
                required_docs_opened=required_docs_opened,
                time_to_complete_seconds=elapsed,
            )
            summary = self._last_report.summary

        record = attempt_store.record_attempt(
            self._trainee_id,
            self._case_id,
            raw_answers=self._draft,
            grading_summary=summary,
            attempt_type=attempt_type,
        )
        attempt_store.mark_progress(self._case_id, self._trainee_id, in_progress=False)

        self._workflow.finish()
        if not self._sync.save_now():
            logger.warning(
                "Submitted state for %s not saved; retry_save() or close(flush=True) resends it",
                self._session_id,
            )
        self._notify_change()
        logger.info(
            "Submitted %s as attempt %d (%s)",
            self._session_id,
            record.attempt_index,
            record.attempt_type.value,
        )
        return record

    def reset_for_retake(self) -> bool:
        """Start a fresh attempt: empty draft, unlocked, first step.

        The remote document is force-overwritten so another tab cannot
        bring the old answers back.

        Returns:
            True if the remote overwrite succeeded. Local state is reset
            either way.
        """
        self._workflow.reset()
        self._draft = drafts.empty_draft(self._sections)
        self._opened_at = self._scheduler.now()
        self._last_report = None
        ok = self._sync.reset_remote()
        self._notify_change()
        return ok

    # ── internals ────────────────────────────────────────────────

    def _mutate(self, op: Callable[[Draft], Draft]) -> bool:
        if self._workflow.locked:
            logger.debug("Mutation ignored for %s: locked", self._session_id)
            return False
        next_draft = op(self._draft)
        if next_draft is self._draft:
            return False
        self._draft = next_draft
        self._touch()
        return True

    def _touch(self, target_step: str | None = None) -> None:
        self._sync.record_local_change()
        self._sync.schedule_save(target_step)
        self._notify_change()

    def _replace_draft(self, remote: Draft) -> None:
        self._draft = remote

    def _notify_change(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:
            logger.exception("Error in change callback for %s", self._session_id)
