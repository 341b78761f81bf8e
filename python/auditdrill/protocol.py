"""Core data models shared by the session, grading, and cohort layers.

Defines the records that move between subsystems: workflow state, remote
progress snapshots, answer keys, per-item grading decisions, grading
summaries, and immutable attempt records.

All records are dataclasses with JSON serialization support. Enum values
are plain strings so they survive a round-trip through the document store.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

CLASSIFICATION_KEYS: tuple[str, ...] = (
    "properlyIncluded",
    "properlyExcluded",
    "improperlyIncluded",
    "improperlyExcluded",
)

IMPROPER_KEYS: frozenset[str] = frozenset({"improperlyIncluded", "improperlyExcluded"})

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def parse_amount(value: object) -> float:
    """Parse an amount that may carry currency symbols or separators.

    ``"$1,200.10"`` parses to 1200.1. Anything unparseable is 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if not isinstance(value, str):
        return 0.0
    cleaned = _NON_NUMERIC.sub("", value)
    try:
        parsed = float(cleaned)
    except ValueError:
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


class AttemptType(str, Enum):
    """How an attempt counts toward a trainee's history."""

    BASELINE = "baseline"
    PRACTICE = "practice"
    FINAL = "final"


class ProgressState(str, Enum):
    """Coarse progress state stored alongside the draft."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"


class Verdict(str, Enum):
    """Outcome of grading a single case item."""

    CAUGHT_TRAP = "caught_trap"
    MISSED_EXCEPTION = "missed_exception"
    WRONG_CLASSIFICATION = "wrong_classification"
    SPLIT_MISMATCH = "split_mismatch"
    FALSE_POSITIVE = "false_positive"
    ROUTINE_CORRECT = "routine_correct"
    WRONG_ROUTINE_CLASSIFICATION = "wrong_routine_classification"
    SKIPPED = "skipped"  # Not considered: unopened, unanswered, or undeterminable
    EXCLUDED = "excluded"  # No answer key for the item

    @property
    def is_critical(self) -> bool:
        return self in _CRITICAL_VERDICTS

    @property
    def is_correct(self) -> bool:
        return self in (Verdict.CAUGHT_TRAP, Verdict.ROUTINE_CORRECT)

    @property
    def is_considered(self) -> bool:
        return self not in (Verdict.SKIPPED, Verdict.EXCLUDED)


_CRITICAL_VERDICTS = frozenset(
    {Verdict.MISSED_EXCEPTION, Verdict.WRONG_CLASSIFICATION, Verdict.SPLIT_MISMATCH}
)


def _utc_now_iso() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 string, epoch seconds, or datetime. None if unusable."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        try:
            ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class WorkflowState:
    """Snapshot of a workflow: where the trainee is and how far they got.

    Attributes:
        current_step: Identifier of the active step.
        furthest_step_index: Highest step index reached this attempt.
        locked: True once the attempt has been submitted.
    """

    current_step: str
    furthest_step_index: int = 0
    locked: bool = False


@dataclass(frozen=True)
class RemoteSnapshot:
    """Full progress document as delivered by the remote store.

    ``draft`` is left untyped on purpose: snapshots come from outside the
    session and are validated by the draft normalizer before use.

    Attributes:
        step: Step identifier stored remotely (may be unknown locally).
        state: Progress state string.
        percent_complete: Stored completion percentage.
        draft: Raw draft payload.
        updated_at: When the document was last written (ISO 8601 UTC).
    """

    step: str = ""
    state: str = ProgressState.NOT_STARTED.value
    percent_complete: int = 0
    draft: Any = None
    updated_at: str = ""

    @property
    def is_submitted(self) -> bool:
        return self.state == ProgressState.SUBMITTED.value

    @classmethod
    def from_document(cls, document: Mapping[str, Any] | None) -> RemoteSnapshot:
        """Build a snapshot from a raw store document, tolerating bad fields."""
        if not isinstance(document, Mapping):
            return cls()
        step = document.get("step")
        state = document.get("state")
        percent = document.get("percent_complete")
        return cls(
            step=step if isinstance(step, str) else "",
            state=state if isinstance(state, str) else ProgressState.NOT_STARTED.value,
            percent_complete=int(percent) if isinstance(percent, (int, float)) else 0,
            draft=document.get("draft"),
            updated_at=str(document.get("updated_at") or ""),
        )


@dataclass(frozen=True)
class AnswerKey:
    """Authoritative answer for one case item.

    Attributes:
        item_id: Stable identifier of the case item.
        should_flag: True if the item is a trap the trainee must flag.
        single_classification: Expected label when the key is not split.
        split: Label to amount mapping for split keys.
        expected_classification: Free-text label from case authoring
            (e.g. "Unrecorded liability"), normalized during grading.
        explanation: Shown to trainees on the results screen.
        validator: Optional immediate-feedback validator descriptor,
            ``{"type": ..., "config": {...}}``.
        ground_truths: Facts used by validators (dates, confirmed values).
    """

    item_id: str
    should_flag: bool = False
    single_classification: str = ""
    split: dict[str, float] = field(default_factory=dict)
    expected_classification: str = ""
    explanation: str = ""
    validator: dict[str, Any] | None = None
    ground_truths: dict[str, Any] = field(default_factory=dict)

    @property
    def is_split(self) -> bool:
        """True when more than one label carries a nonzero amount.

        Authored amounts may arrive as form strings ("100", "$50.00") or
        be missing; those are parsed, and unparseable ones count as zero.
        """
        if not isinstance(self.split, Mapping):
            return False
        return sum(1 for value in self.split.values() if abs(parse_amount(value)) > 0.01) > 1

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, data: str) -> AnswerKey:
        """Deserialize from JSON string."""
        return cls(**json.loads(data))


@dataclass(frozen=True)
class BreakdownEntry:
    """One label of a split allocation with its amount."""

    key: str
    amount: float


@dataclass(frozen=True)
class AllocationDecision:
    """What a trainee (or answer key) decided for an item.

    Attributes:
        primary_key: The single label that represents the decision, or ""
            when nothing is determinable.
        breakdown: Nonzero labels sorted by descending magnitude.
    """

    primary_key: str = ""
    breakdown: tuple[BreakdownEntry, ...] = ()

    @property
    def is_determinable(self) -> bool:
        return bool(self.primary_key)


@dataclass(frozen=True)
class ItemVerdict:
    """Grading result for a single case item."""

    item_id: str
    verdict: Verdict
    student_decision: AllocationDecision = field(default_factory=AllocationDecision)
    correct_decision: AllocationDecision = field(default_factory=AllocationDecision)
    explanation: str = ""


@dataclass(frozen=True)
class GradingSummary:
    """Aggregate grading counts for one attempt.

    Derived from the per-item verdicts; never edited by hand.

    Attributes:
        score: Rounded percentage of considered items answered correctly,
            or None when no item was considered.
        total_considered: Items that produced a gradable verdict.
        missed_exceptions_count: Traps the trainee did not flag.
        false_positives_count: Routine items flagged as exceptions.
        wrong_classification_count: Flagged traps with the wrong label.
        critical_issues_count: Missed + wrong classification + split mismatch.
        required_docs_opened: Whether every required document was opened,
            None when unknown.
        time_to_complete_seconds: Seconds from open to submit, None when unknown.
    """

    score: int | None = None
    total_considered: int = 0
    missed_exceptions_count: int = 0
    false_positives_count: int = 0
    wrong_classification_count: int = 0
    critical_issues_count: int = 0
    required_docs_opened: bool | None = None
    time_to_complete_seconds: float | None = None
    split_mismatch_count: int = 0
    wrong_routine_classification_count: int = 0
    caught_traps_count: int = 0
    routine_correct_count: int = 0
    traps_count: int = 0
    routine_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GradingSummary:
        """Build from a mapping, ignoring keys this version does not know."""
        known = cls.__dataclass_fields__
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def from_json(cls, data: str) -> GradingSummary:
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(data))


@dataclass(frozen=True)
class AttemptRecord:
    """Immutable snapshot of one graded submission.

    Attributes:
        attempt_index: 1-based position in the trainee's history.
        attempt_type: Baseline, practice, or final.
        submitted_at: When the attempt was submitted (ISO 8601 UTC).
        raw_answers: The frozen draft as submitted.
        grading_summary: Grading output, or None if grading was unavailable.
        trainee_id: Owner of the attempt.
        case_id: The case the attempt belongs to.
    """

    attempt_index: int
    attempt_type: AttemptType = AttemptType.PRACTICE
    submitted_at: str = field(default_factory=_utc_now_iso)
    raw_answers: dict[str, Any] = field(default_factory=dict)
    grading_summary: GradingSummary | None = None
    trainee_id: str = ""
    case_id: str = ""

    @property
    def submitted_at_dt(self) -> datetime | None:
        return parse_timestamp(self.submitted_at)

    def sort_key(self) -> tuple[int, float]:
        """Order by attempt index, then submission time."""
        ts = self.submitted_at_dt
        return (self.attempt_index, ts.timestamp() if ts else 0.0)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        d = asdict(self)
        d["attempt_type"] = self.attempt_type.value
        return json.dumps(d)

    @classmethod
    def from_json(cls, data: str) -> AttemptRecord:
        """Deserialize from JSON string."""
        d = json.loads(data)
        d["attempt_type"] = AttemptType(d["attempt_type"])
        if d.get("grading_summary") is not None:
            d["grading_summary"] = GradingSummary.from_dict(d["grading_summary"])
        return cls(**d)


@dataclass(frozen=True)
class LearnerRecord:
    """One trainee's assignment state and attempt history for a case.

    Attributes:
        trainee_id: Stable trainee identifier.
        display_name: Name shown to instructors.
        attempts: Attempt records in any order.
        completed: Instructor or system marked the assignment complete.
        in_progress: The trainee has opened the case but not submitted.
        last_activity: Most recent activity timestamp (ISO 8601), if known.
    """

    trainee_id: str
    display_name: str = ""
    attempts: tuple[AttemptRecord, ...] = ()
    completed: bool = False
    in_progress: bool = False
    last_activity: str = ""

    def ordered_attempts(self) -> list[AttemptRecord]:
        return sorted(self.attempts, key=lambda attempt: attempt.sort_key())
