"""Tests for auditdrill.protocol and auditdrill.config."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from auditdrill.config import ReadinessBar, SimulatorConfig
from auditdrill.protocol import (
    AnswerKey,
    AttemptRecord,
    AttemptType,
    GradingSummary,
    LearnerRecord,
    ProgressState,
    RemoteSnapshot,
    Verdict,
    parse_timestamp,
)

# --- Enum tests ---


class TestAttemptType:
    def test_values(self) -> None:
        assert AttemptType.BASELINE == "baseline"
        assert AttemptType.PRACTICE == "practice"
        assert AttemptType.FINAL == "final"

    def test_from_string(self) -> None:
        assert AttemptType("final") is AttemptType.FINAL


class TestProgressState:
    def test_values(self) -> None:
        assert ProgressState.NOT_STARTED == "not_started"
        assert ProgressState.SUBMITTED == "submitted"


class TestVerdict:
    def test_critical_verdicts(self) -> None:
        critical = {v for v in Verdict if v.is_critical}
        assert critical == {
            Verdict.MISSED_EXCEPTION,
            Verdict.WRONG_CLASSIFICATION,
            Verdict.SPLIT_MISMATCH,
        }

    def test_false_positive_not_critical(self) -> None:
        assert not Verdict.FALSE_POSITIVE.is_critical
        assert Verdict.FALSE_POSITIVE.is_considered

    def test_correct_verdicts(self) -> None:
        assert Verdict.CAUGHT_TRAP.is_correct
        assert Verdict.ROUTINE_CORRECT.is_correct
        assert not Verdict.SPLIT_MISMATCH.is_correct

    def test_skipped_and_excluded_not_considered(self) -> None:
        assert not Verdict.SKIPPED.is_considered
        assert not Verdict.EXCLUDED.is_considered


# --- Timestamps ---


class TestParseTimestamp:
    def test_iso_with_z(self) -> None:
        ts = parse_timestamp("2024-01-05T10:00:00Z")
        assert ts == datetime(2024, 1, 5, 10, tzinfo=timezone.utc)

    def test_naive_assumed_utc(self) -> None:
        ts = parse_timestamp("2024-01-05T10:00:00")
        assert ts.tzinfo is timezone.utc

    def test_epoch_seconds(self) -> None:
        assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "not a date", True, []])
    def test_unusable(self, value: object) -> None:
        assert parse_timestamp(value) is None


# --- Records ---


class TestRemoteSnapshot:
    def test_from_document(self) -> None:
        snap = RemoteSnapshot.from_document(
            {"step": "testing", "state": "submitted", "percent_complete": 100, "draft": {}}
        )
        assert snap.step == "testing"
        assert snap.is_submitted
        assert snap.percent_complete == 100

    def test_tolerates_bad_fields(self) -> None:
        snap = RemoteSnapshot.from_document({"step": 7, "state": None, "percent_complete": "x"})
        assert snap.step == ""
        assert snap.state == "not_started"
        assert snap.percent_complete == 0
        assert snap.draft is None

    def test_none_document(self) -> None:
        assert RemoteSnapshot.from_document(None) == RemoteSnapshot()


class TestAnswerKey:
    def test_single_label_split_is_not_split(self) -> None:
        key = AnswerKey(item_id="a", split={"properlyIncluded": 100.0, "improperlyExcluded": 0.0})
        assert not key.is_split

    def test_two_labels_is_split(self) -> None:
        key = AnswerKey(item_id="a", split={"properlyIncluded": 100.0, "improperlyExcluded": 50.0})
        assert key.is_split

    def test_json_roundtrip(self) -> None:
        key = AnswerKey(item_id="a", should_flag=True, single_classification="improperlyExcluded")
        assert AnswerKey.from_json(key.to_json()) == key


class TestGradingSummary:
    def test_from_dict_ignores_unknown_keys(self) -> None:
        summary = GradingSummary.from_dict({"score": 80, "legacyField": 1})
        assert summary.score == 80

    def test_to_dict(self) -> None:
        d = GradingSummary(score=50, critical_issues_count=2).to_dict()
        assert d["score"] == 50
        assert d["critical_issues_count"] == 2
        assert d["required_docs_opened"] is None


class TestAttemptRecord:
    def test_json_roundtrip_with_summary(self) -> None:
        record = AttemptRecord(
            attempt_index=2,
            attempt_type=AttemptType.FINAL,
            submitted_at="2024-02-01T00:00:00+00:00",
            raw_answers={"classifications": {}},
            grading_summary=GradingSummary(score=90),
            trainee_id="t1",
            case_id="c1",
        )
        restored = AttemptRecord.from_json(record.to_json())
        assert restored == record
        assert json.loads(record.to_json())["attempt_type"] == "final"

    def test_sort_key_orders_by_index_then_time(self) -> None:
        later = AttemptRecord(attempt_index=1, submitted_at="2024-02-02T00:00:00Z")
        earlier = AttemptRecord(attempt_index=1, submitted_at="2024-02-01T00:00:00Z")
        second = AttemptRecord(attempt_index=2, submitted_at="2024-01-01T00:00:00Z")
        ordered = sorted([second, later, earlier], key=lambda a: a.sort_key())
        assert ordered == [earlier, later, second]

    def test_learner_ordered_attempts(self) -> None:
        a2 = AttemptRecord(attempt_index=2)
        a1 = AttemptRecord(attempt_index=1)
        learner = LearnerRecord(trainee_id="t1", attempts=(a2, a1))
        assert learner.ordered_attempts() == [a1, a2]


# --- Config ---


class TestSimulatorConfig:
    def test_defaults(self) -> None:
        config = SimulatorConfig()
        assert config.save_debounce_seconds == 0.6
        assert config.suppression_window_seconds == 0.8
        assert config.split_tolerance == 0.01
        assert config.readiness == ReadinessBar(min_score=80, max_critical_issues=1)

    def test_json_roundtrip(self) -> None:
        config = SimulatorConfig(db_path="x.db", readiness=ReadinessBar(min_score=90))
        restored = SimulatorConfig.from_json(config.to_json())
        assert restored == config
        assert isinstance(restored.readiness, ReadinessBar)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"save_debounce_seconds": -1},
            {"suppression_window_seconds": -0.1},
            {"write_timeout_seconds": 0},
            {"split_tolerance": -0.01},
        ],
    )
    def test_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            SimulatorConfig(**kwargs)
