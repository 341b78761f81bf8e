"""Tests for auditdrill.session: the mutation path end to end."""

from __future__ import annotations

import pytest
from auditdrill.attempt_store import AttemptStore
from auditdrill.draft import (
    ADDITION_RESPONSES,
    CLASSIFICATIONS,
    DISBURSEMENT_SECTIONS,
    LEAD_SCHEDULE_TICKS,
    OPENED_ITEMS,
    SCOPING_DECISION,
    empty_draft,
)
from auditdrill.errors import PersistenceError
from auditdrill.exercises import FIXED_ASSET_TESTING, OUTSTANDING_CHECK_TESTING
from auditdrill.grading import GradingEvaluator, StaticAnswerKeySource
from auditdrill.protocol import AnswerKey, AttemptType
from auditdrill.scheduler import SaveScheduler
from auditdrill.session import ExerciseSession, selection_completion_ratio
from auditdrill.store import InMemoryDocumentStore

SESSION = "trainee-1:case-1"
CASE = "case-1"


def _session(timers, store=None, exercise=FIXED_ASSET_TESTING, **kwargs) -> ExerciseSession:
    store = store if store is not None else InMemoryDocumentStore()
    scheduler = SaveScheduler(timers.call_later, timers.clock, debounce_seconds=0.6)
    kwargs.setdefault("trainee_id", "trainee-1")
    kwargs.setdefault("case_id", CASE)
    session = ExerciseSession(SESSION, exercise, store, scheduler, **kwargs)
    session.start()
    return session


def _disbursement_session(timers, store=None, **kwargs) -> ExerciseSession:
    return _session(
        timers, store, exercise=OUTSTANDING_CHECK_TESTING, sections=DISBURSEMENT_SECTIONS, **kwargs
    )


def _evaluator() -> GradingEvaluator:
    keys = [
        AnswerKey(item_id="t1", should_flag=True, expected_classification="Unrecorded liability"),
        AnswerKey(item_id="r1", expected_classification="Properly Included"),
    ]
    return GradingEvaluator(StaticAnswerKeySource({CASE: keys}))


class TestMutations:
    def test_mutation_schedules_save(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        assert session.toggle_tick("row1:cost")
        assert store.read(SESSION) is None
        timers.advance(0.6)
        assert store.read(SESSION)["draft"][LEAD_SCHEDULE_TICKS] == {"row1:cost": "verified"}

    def test_burst_is_one_write(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        session.update_scoping({"threshold": 5000})
        timers.advance(0.3)
        session.update_addition("add-1", {"conclusion": "supported"})
        timers.advance(0.3)
        session.update_analytics({"expectation": 1200})
        timers.advance(1.0)
        assert store.write_count == 1
        assert session.sync.saves_written == 1

    def test_noop_mutation_returns_false(self, timers) -> None:
        session = _disbursement_session(timers)
        assert session.mark_opened("doc-1")
        assert session.mark_opened("doc-1") is False
        assert session.set_classification("p1", None) is False

    def test_siblings_keep_identity(self, timers) -> None:
        session = _session(timers)
        before = session.draft
        session.update_addition("add-1", {"conclusion": "supported"})
        assert session.draft[SCOPING_DECISION] is before[SCOPING_DECISION]
        assert session.draft[ADDITION_RESPONSES] is not before[ADDITION_RESPONSES]

    def test_classification_normalized(self, timers) -> None:
        session = _disbursement_session(timers)
        session.set_classification("p1", {"properlyIncluded": 100})
        stored = session.draft[CLASSIFICATIONS]["p1"]
        assert stored["mode"] == "single"
        assert stored["singleClassification"] == "properlyIncluded"

    def test_on_change_called(self, timers) -> None:
        calls: list[int] = []
        session = _session(timers, on_change=lambda: calls.append(1))
        session.toggle_tick("a")
        session.enter_simulation()
        assert len(calls) == 2

    def test_on_change_errors_contained(self, timers) -> None:
        def _boom() -> None:
            raise RuntimeError("listener bug")

        session = _session(timers, on_change=_boom)
        assert session.toggle_tick("a")


class TestNavigation:
    def test_navigation_saves_target_step(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        assert session.enter_simulation()
        timers.advance(0.6)
        doc = store.read(SESSION)
        assert doc["step"] == "selection"
        assert doc["percent_complete"] == 30
        assert doc["state"] == "in_progress"

    def test_gated_navigation_does_not_save(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        assert session.go_to_step("testing") is False
        timers.advance(1.0)
        assert store.read(SESSION) is None

    def test_next_and_previous(self, timers) -> None:
        session = _session(timers)
        assert session.go_to_next_step()
        assert session.current_step == "selection"
        assert session.go_to_previous_step()
        assert session.current_step == "instruction"


class TestRemote:
    def test_hydrates_from_existing_document(self, timers) -> None:
        store = InMemoryDocumentStore()
        draft = empty_draft()
        draft[LEAD_SCHEDULE_TICKS] = {"row1:cost": "exception"}
        store.write(SESSION, {"step": "testing", "state": "in_progress", "draft": draft})
        session = _session(timers, store)
        assert session.current_step == "testing"
        assert session.draft[LEAD_SCHEDULE_TICKS] == {"row1:cost": "exception"}

    def test_own_echo_does_not_revert_edits(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        session.toggle_tick("a")
        timers.advance(0.6)
        session.toggle_tick("b")
        assert session.draft[LEAD_SCHEDULE_TICKS] == {"a": "verified", "b": "verified"}
        timers.advance(0.6)
        assert store.read(SESSION)["draft"][LEAD_SCHEDULE_TICKS] == {
            "a": "verified",
            "b": "verified",
        }

    def test_submitted_elsewhere_locks(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        store.push(SESSION, {"step": "results", "state": "submitted", "draft": empty_draft()})
        assert session.locked
        assert session.toggle_tick("a") is False


class TestSubmit:
    def test_submit_grades_records_and_locks(self, timers) -> None:
        store = InMemoryDocumentStore()
        attempts = AttemptStore(":memory:")
        try:
            session = _disbursement_session(timers, store)
            session.mark_opened("doc-invoice")
            session.set_classification(
                "t1", {"isException": True, "singleClassification": "improperlyExcluded"}
            )
            session.set_classification(
                "r1", {"isException": False, "singleClassification": "properlyIncluded"}
            )
            timers.advance(240)
            record = session.submit(
                _evaluator(),
                attempts,
                item_ids=["t1", "r1"],
                required_doc_ids=["doc-invoice"],
            )
            assert record.attempt_index == 1
            assert record.attempt_type == AttemptType.BASELINE
            summary = record.grading_summary
            assert summary.score == 100
            assert summary.required_docs_opened is True
            assert summary.time_to_complete_seconds == pytest.approx(240)
            assert session.locked
            assert session.current_step == "results"
            doc = store.read(SESSION)
            assert doc["state"] == "submitted"
            assert doc["percent_complete"] == 100
            assert session.last_report.summary == summary
            assert attempts.list_attempts("trainee-1", CASE) == [record]
        finally:
            attempts.close()

    def test_submit_freezes_answers(self, timers) -> None:
        attempts = AttemptStore(":memory:")
        try:
            session = _disbursement_session(timers)
            session.set_classification("r1", {"singleClassification": "properlyIncluded"})
            session.submit(_evaluator(), attempts, item_ids=["r1"])
            stored = attempts.list_attempts("trainee-1", CASE)[0]
            assert stored.raw_answers[CLASSIFICATIONS]["r1"]["singleClassification"] == "properlyIncluded"
        finally:
            attempts.close()

    def test_second_submit_ignored(self, timers) -> None:
        attempts = AttemptStore(":memory:")
        try:
            session = _disbursement_session(timers)
            assert session.submit(_evaluator(), attempts, item_ids=["r1"]) is not None
            assert session.submit(_evaluator(), attempts, item_ids=["r1"]) is None
            assert len(attempts.list_attempts("trainee-1", CASE)) == 1
        finally:
            attempts.close()

    def test_locked_session_ignores_mutations(self, timers) -> None:
        attempts = AttemptStore(":memory:")
        try:
            session = _disbursement_session(timers)
            session.submit(None, attempts)
            before = session.draft
            assert session.mark_opened("doc-1") is False
            assert session.go_to_step("instruction") is False
            assert session.draft is before
        finally:
            attempts.close()

    def test_missing_required_doc(self, timers) -> None:
        attempts = AttemptStore(":memory:")
        try:
            session = _disbursement_session(timers)
            record = session.submit(_evaluator(), attempts, item_ids=["r1"], required_doc_ids=["doc-x"])
            assert record.grading_summary.required_docs_opened is False
        finally:
            attempts.close()


class TestRetake:
    def test_reset_clears_local_and_remote(self, timers) -> None:
        store = InMemoryDocumentStore()
        attempts = AttemptStore(":memory:")
        try:
            session = _disbursement_session(timers, store)
            session.mark_opened("doc-1")
            session.submit(_evaluator(), attempts, item_ids=["r1"])
            assert session.reset_for_retake()
            assert not session.locked
            assert session.current_step == "instruction"
            assert session.draft == empty_draft(DISBURSEMENT_SECTIONS)
            assert session.last_report is None
            doc = store.read(SESSION)
            assert doc["step"] == "instruction"
            assert doc["draft"][OPENED_ITEMS] == {}
            second = session.submit(None, attempts)
            assert second.attempt_index == 2
            assert second.attempt_type == AttemptType.PRACTICE
        finally:
            attempts.close()


class TestTeardown:
    def test_close_drops_pending_save(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        session.toggle_tick("a")
        session.close()
        timers.advance(1.0)
        assert store.read(SESSION) is None
        assert store.subscriber_count(SESSION) == 0

    def test_close_with_flush(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        session.toggle_tick("a")
        session.close(flush=True)
        assert store.read(SESSION)["draft"][LEAD_SCHEDULE_TICKS] == {"a": "verified"}


class TestCompletionRatio:
    def test_no_selection(self) -> None:
        assert selection_completion_ratio(empty_draft(DISBURSEMENT_SECTIONS)) is None

    def test_partial(self) -> None:
        draft = empty_draft(DISBURSEMENT_SECTIONS)
        draft["selectedItems"] = {"c1": True, "c2": True}
        draft[CLASSIFICATIONS] = {"c1": {"singleClassification": "properlyIncluded"}}
        assert selection_completion_ratio(draft) == 0.5

    def test_ranged_progress_in_saved_document(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _disbursement_session(timers, store)
        session.enter_simulation()
        session.go_to_next_step()
        session.toggle_selection("c1")
        session.toggle_selection("c2")
        session.set_classification("c1", {"singleClassification": "properlyIncluded"})
        timers.advance(0.6)
        assert store.read(SESSION)["percent_complete"] == 60


class _FlakyStore(InMemoryDocumentStore):
    """Rejects writes while ``failing`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    def write(self, session_id, patch, force_overwrite=False) -> None:
        if self.failing:
            raise PersistenceError("store unavailable", session_id)
        super().write(session_id, patch, force_overwrite)


class TestFailedSubmitWrite:
    def _submit_while_down(self, timers, store: _FlakyStore, attempts: AttemptStore) -> ExerciseSession:
        session = _disbursement_session(timers, store)
        store.failing = True
        assert session.submit(_evaluator(), attempts, item_ids=["r1"]) is not None
        assert session.locked
        assert isinstance(session.last_error, PersistenceError)
        assert store.read(SESSION) is None
        store.failing = False
        return session

    def test_retry_save_resends_submitted_state(self, timers) -> None:
        store = _FlakyStore()
        attempts = AttemptStore(":memory:")
        try:
            session = self._submit_while_down(timers, store, attempts)
            assert session.retry_save()
            doc = store.read(SESSION)
            assert doc["state"] == "submitted"
            assert doc["step"] == "results"
            assert session.last_error is None
            assert session.retry_save() is False
        finally:
            attempts.close()

    def test_close_with_flush_resends_submitted_state(self, timers) -> None:
        store = _FlakyStore()
        attempts = AttemptStore(":memory:")
        try:
            session = self._submit_while_down(timers, store, attempts)
            session.close(flush=True)
            assert store.read(SESSION)["state"] == "submitted"
        finally:
            attempts.close()

    def test_retry_save_noop_after_success(self, timers) -> None:
        store = InMemoryDocumentStore()
        session = _session(timers, store)
        session.toggle_tick("a")
        timers.advance(0.6)
        assert session.retry_save() is False
        assert store.write_count == 1
