"""Cohort aggregation: baseline-vs-latest progress for instructors.

Every number here is recomputed from attempt histories on demand; nothing
is persisted. Missing data stays missing: a delta is None unless both
sides exist, and cohort averages skip trainees without the metric instead
of counting them as zero.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from auditdrill.attempt_store import AttemptHistorySource
from auditdrill.config import ReadinessBar, SimulatorConfig
from auditdrill.grading import round_half_up
from auditdrill.protocol import (
    AttemptRecord,
    AttemptType,
    GradingSummary,
    LearnerRecord,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

FLAG_RUSHED = "rushed"
FLAG_DOCS_NOT_OPENED = "docs_not_opened"
FLAG_SUSPICIOUS = "suspicious"


class LearnerStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ATTEMPTED = "attempted"
    COMPLETED = "completed"


class RecommendedAction(str, Enum):
    NUDGE = "Nudge"
    RETAKE = "Retake"
    COACH = "Coach"
    REVIEW = "Review"
    NONE = "No action"


@dataclass(frozen=True)
class CohortRow:
    """One trainee's line in the cohort view.

    Attributes:
        trainee_id: Stable trainee identifier.
        display_name: Name shown to instructors.
        status: Assignment status derived from attempts and flags.
        baseline_summary: Summary of the baseline attempt, if any.
        latest_summary: Summary of the latest attempt, if any.
        delta_score: Latest score minus baseline score.
        delta_critical: Baseline critical issues minus latest.
        delta_missed: Baseline missed exceptions minus latest.
        flags: Subset of rushed, docs_not_opened, suspicious.
        recommended_action: What the instructor should do next.
    """

    trainee_id: str
    display_name: str
    status: LearnerStatus
    baseline_summary: GradingSummary | None = None
    latest_summary: GradingSummary | None = None
    baseline_attempt_index: int | None = None
    latest_attempt_index: int | None = None
    delta_score: float | None = None
    delta_critical: int | None = None
    delta_missed: int | None = None
    improved: bool = False
    needs_attention: bool = False
    meets_readiness: bool = False
    attempts_count: int = 0
    last_activity: str = ""
    primary_gap: str = ""
    flags: tuple[str, ...] = ()
    recommended_action: RecommendedAction = RecommendedAction.NONE


@dataclass(frozen=True)
class CohortSummary:
    """Cohort-level counts and averages. Averages are None without data."""

    assigned: int = 0
    started: int = 0
    completed: int = 0
    improved_count: int = 0
    needs_attention_count: int = 0
    rushed_count: int = 0
    avg_delta_score: float | None = None
    docs_compliance_rate: int | None = None
    baseline_critical_avg: float | None = None
    latest_critical_avg: float | None = None
    baseline_missed_avg: float | None = None
    latest_missed_avg: float | None = None


@dataclass(frozen=True)
class CohortReport:
    summary: CohortSummary
    rows: tuple[CohortRow, ...] = ()

    def row_for(self, trainee_id: str) -> CohortRow | None:
        for row in self.rows:
            if row.trainee_id == trainee_id:
                return row
        return None


@dataclass(frozen=True)
class ValueMetrics:
    """Activity over a date range."""

    active_learners: int = 0
    attempts_count: int = 0
    avg_improvement: float | None = None
    critical_issues_rate: float | None = None
    rushed_attempts_rate: float | None = None


def pick_baseline_attempt(attempts: Iterable[AttemptRecord]) -> AttemptRecord | None:
    """The attempt typed baseline, else the earliest."""
    ordered = sorted(attempts, key=lambda attempt: attempt.sort_key())
    for attempt in ordered:
        if attempt.attempt_type == AttemptType.BASELINE:
            return attempt
    return ordered[0] if ordered else None


def pick_latest_attempt(attempts: Iterable[AttemptRecord]) -> AttemptRecord | None:
    """The attempt with the greatest index, latest submission on ties."""
    ordered = sorted(attempts, key=lambda attempt: attempt.sort_key())
    return ordered[-1] if ordered else None


def compute_deltas(
    baseline: GradingSummary | None,
    latest: GradingSummary | None,
) -> tuple[float | None, int | None, int | None]:
    """(score, critical, missed) deltas; each None unless both sides exist.

    Score improves upward, so it is latest minus baseline. Issue counts
    improve downward, so they are baseline minus latest.
    """
    if baseline is None or latest is None:
        return None, None, None
    delta_score = (
        latest.score - baseline.score
        if latest.score is not None and baseline.score is not None
        else None
    )
    return (
        delta_score,
        baseline.critical_issues_count - latest.critical_issues_count,
        baseline.missed_exceptions_count - latest.missed_exceptions_count,
    )


def is_improved(
    delta_score: float | None,
    delta_critical: int | None,
    delta_missed: int | None,
    threshold: float,
) -> bool:
    return (
        (delta_score is not None and delta_score >= threshold)
        or (delta_critical is not None and delta_critical >= 1)
        or (delta_missed is not None and delta_missed >= 1)
    )


def compute_status(has_attempts: bool, in_progress: bool, completed: bool) -> LearnerStatus:
    if not has_attempts:
        return LearnerStatus.IN_PROGRESS if in_progress else LearnerStatus.NOT_STARTED
    if completed:
        return LearnerStatus.COMPLETED
    return LearnerStatus.IN_PROGRESS if in_progress else LearnerStatus.ATTEMPTED


def pick_primary_gap(summary: GradingSummary | None) -> str:
    if summary is None:
        return ""
    if summary.missed_exceptions_count > 0:
        return "Missed exceptions"
    if summary.false_positives_count > 0:
        return "False positives"
    if summary.wrong_classification_count > 0:
        return "Wrong classification"
    return ""


def pick_recommended_action(
    status: LearnerStatus,
    meets_readiness: bool,
    critical_issues: int,
    flags_count: int,
) -> RecommendedAction:
    if status in (LearnerStatus.NOT_STARTED, LearnerStatus.IN_PROGRESS):
        return RecommendedAction.NUDGE
    if not meets_readiness:
        return RecommendedAction.RETAKE if critical_issues > 0 else RecommendedAction.COACH
    if flags_count > 0:
        return RecommendedAction.REVIEW
    return RecommendedAction.NONE


def build_cohort_row(learner: LearnerRecord, config: SimulatorConfig) -> CohortRow:
    """Derive one trainee's cohort row from their history."""
    readiness: ReadinessBar = config.readiness
    attempts = learner.ordered_attempts()
    baseline = pick_baseline_attempt(attempts)
    latest = pick_latest_attempt(attempts)
    baseline_summary = baseline.grading_summary if baseline else None
    latest_summary = latest.grading_summary if latest else None

    completed = learner.completed or (
        latest is not None and latest.attempt_type == AttemptType.FINAL
    )
    status = compute_status(bool(attempts), learner.in_progress, completed)
    delta_score, delta_critical, delta_missed = compute_deltas(baseline_summary, latest_summary)

    latest_score = latest_summary.score if latest_summary else None
    critical_issues = latest_summary.critical_issues_count if latest_summary else 0
    seconds = latest_summary.time_to_complete_seconds if latest_summary else None
    rushed = seconds is not None and seconds < config.rushed_seconds
    docs_not_opened = latest_summary is not None and latest_summary.required_docs_opened is False
    suspicious = rushed and latest_score is not None and latest_score >= readiness.min_score
    meets_readiness = (
        latest_score is not None
        and latest_score >= readiness.min_score
        and critical_issues <= readiness.max_critical_issues
    )
    needs_attention = (
        status != LearnerStatus.COMPLETED
        or critical_issues > readiness.max_critical_issues
        or rushed
    )

    flags = tuple(
        name
        for name, raised in (
            (FLAG_RUSHED, rushed),
            (FLAG_DOCS_NOT_OPENED, docs_not_opened),
            (FLAG_SUSPICIOUS, suspicious),
        )
        if raised
    )
    last_activity = latest.submitted_at if latest else learner.last_activity

    return CohortRow(
        trainee_id=learner.trainee_id,
        display_name=learner.display_name or learner.trainee_id,
        status=status,
        baseline_summary=baseline_summary,
        latest_summary=latest_summary,
        baseline_attempt_index=baseline.attempt_index if baseline else None,
        latest_attempt_index=latest.attempt_index if latest else None,
        delta_score=delta_score,
        delta_critical=delta_critical,
        delta_missed=delta_missed,
        improved=is_improved(delta_score, delta_critical, delta_missed, config.improvement_threshold),
        needs_attention=needs_attention,
        meets_readiness=meets_readiness,
        attempts_count=len(attempts),
        last_activity=last_activity,
        primary_gap=pick_primary_gap(latest_summary),
        flags=flags,
        recommended_action=pick_recommended_action(
            status, meets_readiness, critical_issues, len(flags)
        ),
    )


@dataclass
class _Mean:
    total: float = 0.0
    count: int = 0

    def add(self, value: float | None) -> None:
        if value is None:
            return
        self.total += value
        self.count += 1

    def value(self, digits: int = 1) -> float | None:
        if self.count == 0:
            return None
        return round_half_up(self.total / self.count, digits)


@dataclass
class _CohortTally:
    assigned: int = 0
    started: int = 0
    completed: int = 0
    improved: int = 0
    needs_attention: int = 0
    rushed: int = 0
    docs_yes: int = 0
    docs_total: int = 0
    delta: _Mean = field(default_factory=_Mean)
    baseline_critical: _Mean = field(default_factory=_Mean)
    latest_critical: _Mean = field(default_factory=_Mean)
    baseline_missed: _Mean = field(default_factory=_Mean)
    latest_missed: _Mean = field(default_factory=_Mean)

    def add(self, learner: LearnerRecord, row: CohortRow) -> None:
        self.assigned += 1
        if row.attempts_count or learner.in_progress:
            self.started += 1
        if row.status == LearnerStatus.COMPLETED:
            self.completed += 1
        if row.improved:
            self.improved += 1
        if row.needs_attention:
            self.needs_attention += 1
        if FLAG_RUSHED in row.flags:
            self.rushed += 1
        self.delta.add(row.delta_score)

        baseline, latest = row.baseline_summary, row.latest_summary
        if baseline is not None:
            self.baseline_critical.add(baseline.critical_issues_count)
            self.baseline_missed.add(baseline.missed_exceptions_count)
        if latest is not None:
            self.latest_critical.add(latest.critical_issues_count)
            self.latest_missed.add(latest.missed_exceptions_count)
            if latest.required_docs_opened is not None:
                self.docs_total += 1
                self.docs_yes += int(latest.required_docs_opened)

    def summary(self) -> CohortSummary:
        docs_rate = (
            int(round_half_up(self.docs_yes / self.docs_total * 100)) if self.docs_total else None
        )
        return CohortSummary(
            assigned=self.assigned,
            started=self.started,
            completed=self.completed,
            improved_count=self.improved,
            needs_attention_count=self.needs_attention,
            rushed_count=self.rushed,
            avg_delta_score=self.delta.value(),
            docs_compliance_rate=docs_rate,
            baseline_critical_avg=self.baseline_critical.value(),
            latest_critical_avg=self.latest_critical.value(),
            baseline_missed_avg=self.baseline_missed.value(),
            latest_missed_avg=self.latest_missed.value(),
        )


def build_cohort_report(
    learners: Iterable[LearnerRecord],
    config: SimulatorConfig | None = None,
) -> CohortReport:
    """Rows for every trainee plus the cohort summary."""
    config = config or SimulatorConfig()
    tally = _CohortTally()
    rows: list[CohortRow] = []
    for learner in learners:
        row = build_cohort_row(learner, config)
        tally.add(learner, row)
        rows.append(row)
    report = CohortReport(summary=tally.summary(), rows=tuple(rows))
    logger.debug(
        "Cohort report: %d assigned, %d need attention",
        report.summary.assigned,
        report.summary.needs_attention_count,
    )
    return report


def build_value_metrics(
    learners: Iterable[LearnerRecord],
    start: object = None,
    end: object = None,
    rushed_seconds: float = 180.0,
) -> ValueMetrics:
    """Activity metrics for attempts submitted within ``[start, end]``.

    Attempts without a usable submission time are ignored. Improvement is
    measured per trainee with at least two attempts in range, from the
    baseline-typed (else earliest) attempt to the most recent one.
    """
    start_ts = parse_timestamp(start)
    end_ts = parse_timestamp(end)
    active = 0
    attempts_count = 0
    critical_sum = 0
    rushed_count = 0
    improvement = _Mean()

    for learner in learners:
        in_range = []
        for attempt in learner.attempts:
            ts = attempt.submitted_at_dt
            if ts is None:
                continue
            if start_ts is not None and ts < start_ts:
                continue
            if end_ts is not None and ts > end_ts:
                continue
            in_range.append((ts, attempt))
        if not in_range:
            continue

        active += 1
        for _, attempt in in_range:
            attempts_count += 1
            summary = attempt.grading_summary
            if summary is None:
                continue
            critical_sum += summary.critical_issues_count
            seconds = summary.time_to_complete_seconds
            if seconds is not None and seconds < rushed_seconds:
                rushed_count += 1

        if len(in_range) >= 2:
            ordered = [
                attempt
                for _, attempt in sorted(in_range, key=lambda pair: (pair[0], pair[1].attempt_index))
            ]
            baseline = next(
                (a for a in ordered if a.attempt_type == AttemptType.BASELINE), ordered[0]
            )
            latest = ordered[-1]
            if (
                baseline.grading_summary is not None
                and latest.grading_summary is not None
                and baseline.grading_summary.score is not None
                and latest.grading_summary.score is not None
            ):
                improvement.add(latest.grading_summary.score - baseline.grading_summary.score)

    return ValueMetrics(
        active_learners=active,
        attempts_count=attempts_count,
        avg_improvement=improvement.total / improvement.count if improvement.count else None,
        critical_issues_rate=critical_sum / attempts_count if attempts_count else None,
        rushed_attempts_rate=rushed_count / attempts_count if attempts_count else None,
    )


class CohortAggregator:
    """Builds cohort reports from an attempt store.

    Args:
        store: Attempt history, typically an
            ``AttemptStore``.
        config: Thresholds and readiness bar.
    """

    def __init__(self, store: AttemptHistorySource, config: SimulatorConfig | None = None) -> None:
        self._store = store
        self._config = config or SimulatorConfig()

    def report(self, case_id: str) -> CohortReport:
        learners = self._store.load_learners(case_id)
        return build_cohort_report(learners, self._config)

    def value_metrics(self, case_id: str, start: object = None, end: object = None) -> ValueMetrics:
        learners = self._store.load_learners(case_id)
        return build_value_metrics(learners, start, end, self._config.rushed_seconds)
