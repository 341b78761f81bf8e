"""Plain-text renderers for instructor-facing reports."""

from __future__ import annotations

from auditdrill.cohort import CohortReport, ValueMetrics
from auditdrill.protocol import AttemptRecord


def _fmt(value: object, suffix: str = "") -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.1f}{suffix}"
    return f"{value}{suffix}"


def _signed(value: float | int | None) -> str:
    if value is None:
        return "-"
    return f"{value:+g}"


def _short_ts(ts: str) -> str:
    # Truncate to seconds for readability
    if "." in ts:
        return ts[: ts.index(".")]
    return ts


def cohort_report_text(report: CohortReport, case_id: str = "") -> str:
    """Render a cohort report as a summary block followed by one line per trainee.

    Args:
        report: The report to render.
        case_id: Shown in the header when given.

    Returns:
        Multi-line formatted text report.
    """
    title = f"=== Cohort Progress [{case_id}] ===" if case_id else "=== Cohort Progress ==="
    lines: list[str] = [title, ""]

    s = report.summary
    lines.append("## Summary")
    if s.assigned == 0:
        lines.append("  (no data)")
    else:
        lines.append(f"  Assigned: {s.assigned}, Started: {s.started}, Completed: {s.completed}")
        lines.append(
            f"  Improved: {s.improved_count}, Needs attention: {s.needs_attention_count},"
            f" Rushed: {s.rushed_count}"
        )
        lines.append(f"  Avg score delta: {_signed(s.avg_delta_score)}")
        lines.append(
            f"  Critical issues: baseline={_fmt(s.baseline_critical_avg)}"
            f" latest={_fmt(s.latest_critical_avg)}"
        )
        lines.append(
            f"  Missed exceptions: baseline={_fmt(s.baseline_missed_avg)}"
            f" latest={_fmt(s.latest_missed_avg)}"
        )
        lines.append(f"  Docs compliance: {_fmt(s.docs_compliance_rate, '%')}")
    lines.append("")

    if report.rows:
        lines.append("## Trainees")
        for row in report.rows:
            latest = row.latest_summary.score if row.latest_summary else None
            flags = f" [{', '.join(row.flags)}]" if row.flags else ""
            marker = "!" if row.needs_attention else " "
            lines.append(
                f" {marker}{row.display_name:<20} | {row.status.value:<11}"
                f" | score={_fmt(latest):>3} delta={_signed(row.delta_score):>4}"
                f" | {row.recommended_action.value}{flags}"
            )
        lines.append("")

    lines.append(f"Total: {len(report.rows)} trainees")
    return "\n".join(lines)


def attempt_history_text(attempts: list[AttemptRecord]) -> str:
    """Render a trainee's attempts in order."""
    if not attempts:
        return "(no attempts)"

    lines: list[str] = ["=== Attempt History ===", ""]
    for attempt in attempts:
        summary = attempt.grading_summary
        if summary is None:
            detail = "ungraded"
        else:
            detail = (
                f"score={_fmt(summary.score)} critical={summary.critical_issues_count}"
                f" missed={summary.missed_exceptions_count}"
                f" false_positives={summary.false_positives_count}"
            )
        lines.append(
            f"  #{attempt.attempt_index:<3} {attempt.attempt_type.value:<8}"
            f" | {_short_ts(attempt.submitted_at)} | {attempt.case_id} | {detail}"
        )
    lines.append("")
    lines.append(f"Total: {len(attempts)} attempts")
    return "\n".join(lines)


def value_metrics_text(metrics: ValueMetrics) -> str:
    """Render activity metrics for a date range."""
    lines: list[str] = ["=== Value Metrics ===", ""]
    if metrics.attempts_count == 0:
        lines.append("  (no data)")
        return "\n".join(lines)
    lines.append(f"  Active learners: {metrics.active_learners}")
    lines.append(f"  Attempts: {metrics.attempts_count}")
    lines.append(f"  Avg improvement: {_signed(metrics.avg_improvement)}")
    lines.append(f"  Critical issues per attempt: {metrics.critical_issues_rate:.2f}")
    lines.append(f"  Rushed attempts: {metrics.rushed_attempts_rate:.0%}")
    return "\n".join(lines)
