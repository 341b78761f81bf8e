"""SQLite persistence for attempt records and case assignments.

Follows the same patterns as the document store: WAL mode,
check_same_thread=False for concurrent reads. Attempts are append-only;
an attempt row is never updated once written.

Attempt numbering: the next index is the number of attempts already
recorded for that trainee and case plus one. The first attempt defaults to
``baseline`` and later ones to ``practice``; an unrecognized requested type
falls back to the same default.
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from auditdrill.config import SimulatorConfig
from auditdrill.protocol import AttemptRecord, AttemptType, GradingSummary, LearnerRecord

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    trainee_id TEXT NOT NULL,
    case_id TEXT NOT NULL,
    attempt_index INTEGER NOT NULL,
    attempt_type TEXT NOT NULL,
    submitted_at TEXT NOT NULL,
    attempt_json TEXT NOT NULL,
    UNIQUE (trainee_id, case_id, attempt_index)
);
CREATE INDEX IF NOT EXISTS idx_attempts_case ON attempts(case_id);

CREATE TABLE IF NOT EXISTS assignments (
    case_id TEXT NOT NULL,
    trainee_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    in_progress INTEGER NOT NULL DEFAULT 0,
    completed INTEGER NOT NULL DEFAULT 0,
    last_activity TEXT NOT NULL,
    PRIMARY KEY (case_id, trainee_id)
);
"""


@runtime_checkable
class AttemptHistorySource(Protocol):
    """Read side used by the cohort aggregator."""

    def list_attempts(self, trainee_id: str, case_id: str | None = None) -> list[AttemptRecord]: ...

    def load_learners(self, case_id: str) -> list[LearnerRecord]: ...


def resolve_attempt_type(requested: object, attempt_index: int) -> AttemptType:
    """Coerce a requested attempt type, defaulting by position."""
    if isinstance(requested, AttemptType):
        return requested
    if isinstance(requested, str) and requested.strip():
        try:
            return AttemptType(requested.strip())
        except ValueError:
            logger.warning("Unknown attempt type %r; using default", requested)
    return AttemptType.BASELINE if attempt_index == 1 else AttemptType.PRACTICE


def validate_attempt(record: AttemptRecord) -> list[str]:
    """Check an attempt and its summary for internal consistency.

    Returns:
        Human-readable problems; empty when the record is valid.
    """
    errors: list[str] = []
    if not isinstance(record.attempt_index, int) or record.attempt_index <= 0:
        errors.append("attempt_index must be a positive integer.")
    summary = record.grading_summary
    if summary is None:
        return errors

    for name in (
        "total_considered",
        "missed_exceptions_count",
        "false_positives_count",
        "wrong_classification_count",
        "critical_issues_count",
    ):
        if getattr(summary, name) < 0:
            errors.append(f"{name} must be >= 0.")
    if summary.score is not None and not 0 <= summary.score <= 100:
        errors.append("score must be between 0 and 100.")
    if summary.time_to_complete_seconds is not None and summary.time_to_complete_seconds < 0:
        errors.append("time_to_complete_seconds must be >= 0.")
    for name in ("critical_issues_count", "missed_exceptions_count", "false_positives_count"):
        if getattr(summary, name) > summary.total_considered:
            errors.append(f"{name} must be <= total_considered.")
    return errors


def clean_duration(value: object) -> float | None:
    """A usable non-negative duration in seconds, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return seconds if math.isfinite(seconds) and seconds >= 0 else None


class AttemptStore:
    """SQLite persistence layer for attempts and assignments.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: SimulatorConfig) -> AttemptStore:
        """Store at ``config.db_path``."""
        return cls(config.db_path)

    # --- Attempts ---

    def next_attempt_index(self, trainee_id: str, case_id: str) -> int:
        """Index the next attempt for this trainee and case will receive."""
        row = self._conn.execute(
            "SELECT COUNT(*) AS cnt FROM attempts WHERE trainee_id = ? AND case_id = ?",
            (trainee_id, case_id),
        ).fetchone()
        return row["cnt"] + 1

    def record_attempt(
        self,
        trainee_id: str,
        case_id: str,
        raw_answers: Mapping[str, Any],
        grading_summary: GradingSummary | None,
        attempt_type: object = None,
        submitted_at: str | None = None,
    ) -> AttemptRecord:
        """Number, type, and persist a new attempt.

        Args:
            trainee_id: Owner of the attempt.
            case_id: The case that was attempted.
            raw_answers: The frozen draft as submitted.
            grading_summary: Grading output, or None if grading failed.
            attempt_type: Requested type; coerced by ``resolve_attempt_type``.
            submitted_at: ISO 8601 timestamp. Defaults to now (UTC).

        Returns:
            The stored record.

        Raises:
            ValueError: If the record fails ``validate_attempt``.
        """
        with self._lock:
            index = self.next_attempt_index(trainee_id, case_id)
            record = AttemptRecord(
                attempt_index=index,
                attempt_type=resolve_attempt_type(attempt_type, index),
                submitted_at=submitted_at or datetime.now(timezone.utc).isoformat(),
                raw_answers=json.loads(json.dumps(dict(raw_answers))),
                grading_summary=grading_summary,
                trainee_id=trainee_id,
                case_id=case_id,
            )
            self._insert(record)
        logger.info(
            "Recorded attempt %d (%s) for %s on %s",
            record.attempt_index,
            record.attempt_type.value,
            trainee_id,
            case_id,
        )
        return record

    def save_attempt(self, record: AttemptRecord) -> None:
        """Persist an already-numbered attempt (imports, backfills).

        Raises:
            ValueError: If the record is invalid or its index is taken.
        """
        with self._lock:
            self._insert(record)

    def list_attempts(self, trainee_id: str, case_id: str | None = None) -> list[AttemptRecord]:
        """Attempts for a trainee, ordered by index then submission time."""
        if case_id is None:
            cursor = self._conn.execute(
                "SELECT attempt_json FROM attempts WHERE trainee_id = ?",
                (trainee_id,),
            )
        else:
            cursor = self._conn.execute(
                "SELECT attempt_json FROM attempts WHERE trainee_id = ? AND case_id = ?",
                (trainee_id, case_id),
            )
        records = [AttemptRecord.from_json(row["attempt_json"]) for row in cursor]
        return sorted(records, key=lambda record: record.sort_key())

    def list_trainees(self, case_id: str) -> list[str]:
        """Trainees assigned to, or with attempts on, a case."""
        cursor = self._conn.execute(
            "SELECT trainee_id FROM assignments WHERE case_id = ? "
            "UNION SELECT trainee_id FROM attempts WHERE case_id = ? "
            "ORDER BY trainee_id",
            (case_id, case_id),
        )
        return [row["trainee_id"] for row in cursor]

    # --- Assignments ---

    def assign(self, case_id: str, trainee_id: str, display_name: str = "") -> None:
        """Assign a case to a trainee. Re-assigning keeps existing progress."""
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            "INSERT OR IGNORE INTO assignments "
            "(case_id, trainee_id, display_name, last_activity) VALUES (?, ?, ?, ?)",
            (case_id, trainee_id, display_name or trainee_id, now),
        )
        self._conn.commit()

    def mark_progress(
        self,
        case_id: str,
        trainee_id: str,
        in_progress: bool | None = None,
        completed: bool | None = None,
    ) -> None:
        """Update assignment flags and stamp last activity."""
        self.assign(case_id, trainee_id)
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            "UPDATE assignments SET "
            "in_progress = COALESCE(?, in_progress), "
            "completed = COALESCE(?, completed), "
            "last_activity = ? "
            "WHERE case_id = ? AND trainee_id = ?",
            (
                None if in_progress is None else int(in_progress),
                None if completed is None else int(completed),
                now,
                case_id,
                trainee_id,
            ),
        )
        self._conn.commit()

    def load_learners(self, case_id: str) -> list[LearnerRecord]:
        """Every trainee on a case with their attempt history."""
        assignments = {
            row["trainee_id"]: row
            for row in self._conn.execute(
                "SELECT * FROM assignments WHERE case_id = ?", (case_id,)
            )
        }
        learners: list[LearnerRecord] = []
        for trainee_id in self.list_trainees(case_id):
            row = assignments.get(trainee_id)
            learners.append(
                LearnerRecord(
                    trainee_id=trainee_id,
                    display_name=row["display_name"] if row else trainee_id,
                    attempts=tuple(self.list_attempts(trainee_id, case_id)),
                    completed=bool(row["completed"]) if row else False,
                    in_progress=bool(row["in_progress"]) if row else False,
                    last_activity=row["last_activity"] if row else "",
                )
            )
        return learners

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _insert(self, record: AttemptRecord) -> None:
        errors = validate_attempt(record)
        if errors:
            raise ValueError("; ".join(errors))
        try:
            self._conn.execute(
                "INSERT INTO attempts "
                "(trainee_id, case_id, attempt_index, attempt_type, submitted_at, attempt_json) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.trainee_id,
                    record.case_id,
                    record.attempt_index,
                    record.attempt_type.value,
                    record.submitted_at,
                    record.to_json(),
                ),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            raise ValueError(f"attempt {record.attempt_index} already recorded") from exc
