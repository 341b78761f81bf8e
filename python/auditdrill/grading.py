"""Grading evaluator: per-item verdicts and attempt summaries.

Turns a trainee's submitted classifications into one verdict per case item
and tallies them into a ``GradingSummary``. Grading never raises on bad
per-item input: malformed answers degrade to an undeterminable decision,
and items without an answer key are excluded and logged.

Decision extraction (applies to student answers and to raw split maps):
  1. An explicit, recognized single classification wins.
  2. The breakdown is every label whose amount exceeds 0.01 in magnitude,
     sorted by descending magnitude (label order breaks ties).
  3. A flagged exception prefers the first improper label in the breakdown.
  4. Otherwise the largest breakdown entry, else the label implied by the
     exception flag, else nothing.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from auditdrill.config import SimulatorConfig
from auditdrill.protocol import (
    CLASSIFICATION_KEYS,
    IMPROPER_KEYS,
    AllocationDecision,
    AnswerKey,
    BreakdownEntry,
    GradingSummary,
    ItemVerdict,
    Verdict,
    parse_amount,
)
from auditdrill.validators import ItemFacts, ValidatorRegistry

logger = logging.getLogger(__name__)

BREAKDOWN_EPSILON = 0.01


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves away from zero for positives (2.5 -> 3, 0.125 -> 0.13)."""
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def normalize_expected_classification_key(raw: object) -> str:
    """Map authored free text ("Unrecorded liability") onto a label."""
    if not isinstance(raw, str) or not raw.strip():
        return ""
    if raw.strip() in CLASSIFICATION_KEYS:
        return raw.strip()
    text = raw.strip().lower()
    if "missing" in text or "unrecorded" in text:
        return "improperlyExcluded"
    if "improperly" in text and "excluded" in text:
        return "improperlyExcluded"
    if "improperly" in text and "included" in text:
        return "improperlyIncluded"
    if "properly" in text and "excluded" in text:
        return "properlyExcluded"
    if "properly" in text and "included" in text:
        return "properlyIncluded"
    for key in CLASSIFICATION_KEYS:
        if key.lower() == text:
            return key
    return ""


def allocation_amounts(source: object) -> dict[str, float]:
    """Amount per recognized label, reading ``splitValues`` when present."""
    if not isinstance(source, Mapping):
        return {key: 0.0 for key in CLASSIFICATION_KEYS}
    split = source.get("splitValues")
    values = split if isinstance(split, Mapping) else source
    return {key: parse_amount(values.get(key)) for key in CLASSIFICATION_KEYS}


def extract_breakdown(source: object) -> tuple[BreakdownEntry, ...]:
    """Nonzero labels sorted by descending magnitude (stable in label order)."""
    amounts = allocation_amounts(source)
    entries = [
        BreakdownEntry(key=key, amount=amount)
        for key, amount in amounts.items()
        if abs(amount) > BREAKDOWN_EPSILON
    ]
    entries.sort(key=lambda entry: abs(entry.amount), reverse=True)
    return tuple(entries)


def extract_decision_from_allocation(answer: object) -> AllocationDecision:
    """Reduce a student answer (or raw split map) to one decision."""
    if not isinstance(answer, Mapping):
        return AllocationDecision()

    breakdown = extract_breakdown(answer)
    explicit = answer.get("singleClassification")
    if isinstance(explicit, str) and explicit in CLASSIFICATION_KEYS:
        return AllocationDecision(primary_key=explicit, breakdown=breakdown)

    flagged = answer.get("isException")
    if flagged is True:
        for entry in breakdown:
            if entry.key in IMPROPER_KEYS:
                return AllocationDecision(primary_key=entry.key, breakdown=breakdown)
    if breakdown:
        return AllocationDecision(primary_key=breakdown[0].key, breakdown=breakdown)
    if flagged is True:
        return AllocationDecision(primary_key="improperlyIncluded")
    if flagged is False:
        return AllocationDecision(primary_key="properlyIncluded")
    return AllocationDecision()


def declared_label(key: AnswerKey) -> str:
    """The label an answer key states outright, or ""."""
    if key.single_classification in CLASSIFICATION_KEYS:
        return key.single_classification
    return normalize_expected_classification_key(key.expected_classification)


def extract_correct_decision(key: AnswerKey) -> AllocationDecision:
    """The decision an answer key expects.

    Declared label first, then the split: a trap prefers its improper
    label, a routine item its largest label.
    """
    breakdown = extract_breakdown(key.split)
    label = declared_label(key)
    if label:
        return AllocationDecision(primary_key=label, breakdown=breakdown)
    if key.should_flag:
        for entry in breakdown:
            if entry.key in IMPROPER_KEYS:
                return AllocationDecision(primary_key=entry.key, breakdown=breakdown)
    if breakdown:
        return AllocationDecision(primary_key=breakdown[0].key, breakdown=breakdown)
    return AllocationDecision()


def splits_match(
    answer: object,
    expected: Mapping[str, float],
    tolerance: float = 0.01,
) -> bool:
    """True when every label is within ``tolerance`` of the expected amount."""
    student = allocation_amounts(answer)
    for key in CLASSIFICATION_KEYS:
        diff = abs(student[key] - parse_amount(expected.get(key)))
        # Small epsilon so a difference of exactly ``tolerance`` passes.
        if diff > tolerance + 1e-9:
            return False
    return True


@runtime_checkable
class AnswerKeySource(Protocol):
    """Where the evaluator looks up authoritative answers."""

    def get_answer_key(self, case_id: str, item_id: str) -> AnswerKey | None: ...


class StaticAnswerKeySource:
    """In-memory answer keys, grouped by case.

    Args:
        keys: ``case_id -> iterable of AnswerKey``.
    """

    def __init__(self, keys: Mapping[str, Iterable[AnswerKey]] | None = None) -> None:
        self._keys: dict[str, dict[str, AnswerKey]] = {}
        for case_id, case_keys in (keys or {}).items():
            for key in case_keys:
                self.add(case_id, key)

    def add(self, case_id: str, key: AnswerKey) -> None:
        self._keys.setdefault(case_id, {})[key.item_id] = key

    def get_answer_key(self, case_id: str, item_id: str) -> AnswerKey | None:
        return self._keys.get(case_id, {}).get(item_id)

    def item_ids(self, case_id: str) -> list[str]:
        return list(self._keys.get(case_id, {}))


@dataclass(frozen=True)
class GradingReport:
    """Per-item verdicts and the summary derived from them."""

    verdicts: tuple[ItemVerdict, ...]
    summary: GradingSummary

    def by_verdict(self, verdict: Verdict) -> list[ItemVerdict]:
        return [item for item in self.verdicts if item.verdict == verdict]


def summarize(
    verdicts: Iterable[ItemVerdict],
    required_docs_opened: bool | None = None,
    time_to_complete_seconds: float | None = None,
) -> GradingSummary:
    """Tally verdicts into a summary. Score is None when nothing counted."""
    counts = Counter(item.verdict for item in verdicts)
    total = sum(count for verdict, count in counts.items() if verdict.is_considered)
    correct = counts[Verdict.CAUGHT_TRAP] + counts[Verdict.ROUTINE_CORRECT]
    critical = sum(count for verdict, count in counts.items() if verdict.is_critical)
    score = int(round_half_up(correct / total * 100)) if total else None
    return GradingSummary(
        score=score,
        total_considered=total,
        missed_exceptions_count=counts[Verdict.MISSED_EXCEPTION],
        false_positives_count=counts[Verdict.FALSE_POSITIVE],
        wrong_classification_count=counts[Verdict.WRONG_CLASSIFICATION],
        critical_issues_count=critical,
        required_docs_opened=required_docs_opened,
        time_to_complete_seconds=time_to_complete_seconds,
        split_mismatch_count=counts[Verdict.SPLIT_MISMATCH],
        wrong_routine_classification_count=counts[Verdict.WRONG_ROUTINE_CLASSIFICATION],
        caught_traps_count=counts[Verdict.CAUGHT_TRAP],
        routine_correct_count=counts[Verdict.ROUTINE_CORRECT],
        traps_count=counts[Verdict.CAUGHT_TRAP]
        + counts[Verdict.MISSED_EXCEPTION]
        + counts[Verdict.WRONG_CLASSIFICATION]
        + counts[Verdict.SPLIT_MISMATCH],
        routine_count=counts[Verdict.ROUTINE_CORRECT]
        + counts[Verdict.FALSE_POSITIVE]
        + counts[Verdict.WRONG_ROUTINE_CLASSIFICATION],
    )


class GradingEvaluator:
    """Grades submitted answers against an answer key source.

    Args:
        answer_keys: Where answer keys are looked up.
        validators: Registry used for immediate feedback. Defaults to an
            empty registry (no hints).
        tolerance: Absolute per-label tolerance for split comparison.
    """

    def __init__(
        self,
        answer_keys: AnswerKeySource,
        validators: ValidatorRegistry | None = None,
        tolerance: float = 0.01,
    ) -> None:
        self._answer_keys = answer_keys
        self._validators = validators or ValidatorRegistry()
        self._tolerance = tolerance

    @classmethod
    def from_config(
        cls,
        answer_keys: AnswerKeySource,
        config: SimulatorConfig,
        validators: ValidatorRegistry | None = None,
    ) -> GradingEvaluator:
        """Evaluator that compares splits with ``config.split_tolerance``."""
        return cls(answer_keys, validators=validators, tolerance=config.split_tolerance)

    @property
    def tolerance(self) -> float:
        return self._tolerance

    def evaluate_item(
        self,
        key: AnswerKey,
        answer: object,
        opened: bool = False,
        required: bool = False,
    ) -> ItemVerdict:
        """Verdict for one item.

        Args:
            key: The item's answer key.
            answer: The student's allocation, or None if unanswered.
            opened: Whether the trainee opened the item at all.
            required: Whether the item is on the required-review list.
        """
        has_answer = isinstance(answer, Mapping)
        flagged = has_answer and answer.get("isException") is True  # type: ignore[union-attr]
        student = extract_decision_from_allocation(answer)
        correct = extract_correct_decision(key)

        def _verdict(verdict: Verdict) -> ItemVerdict:
            return ItemVerdict(
                item_id=key.item_id,
                verdict=verdict,
                student_decision=student,
                correct_decision=correct,
                explanation=key.explanation,
            )

        if key.should_flag:
            if not flagged:
                if not has_answer and not opened and not required:
                    return _verdict(Verdict.SKIPPED)
                return _verdict(Verdict.MISSED_EXCEPTION)
            expected_label = declared_label(key)
            if not expected_label and not key.is_split:
                expected_label = correct.primary_key
            if expected_label and student.primary_key != expected_label:
                return _verdict(Verdict.WRONG_CLASSIFICATION)
            if key.is_split and not splits_match(answer, key.split, self._tolerance):
                return _verdict(Verdict.SPLIT_MISMATCH)
            return _verdict(Verdict.CAUGHT_TRAP)

        if not has_answer:
            return _verdict(Verdict.SKIPPED)
        if flagged:
            return _verdict(Verdict.FALSE_POSITIVE)
        if not correct.is_determinable:
            return _verdict(Verdict.SKIPPED)
        if student.primary_key == correct.primary_key:
            return _verdict(Verdict.ROUTINE_CORRECT)
        return _verdict(Verdict.WRONG_ROUTINE_CLASSIFICATION)

    def grade(
        self,
        case_id: str,
        item_ids: Iterable[str],
        answers: Mapping[str, Any] | None,
        opened_ids: Iterable[str] = (),
        required_ids: Iterable[str] = (),
        required_docs_opened: bool | None = None,
        time_to_complete_seconds: float | None = None,
    ) -> GradingReport:
        """Grade every item of a case.

        Args:
            case_id: Case whose answer keys apply.
            item_ids: Items to grade, in display order.
            answers: ``item_id -> allocation`` as submitted.
            opened_ids: Items the trainee opened.
            required_ids: Items the trainee was required to review.
            required_docs_opened: Carried into the summary unchanged.
            time_to_complete_seconds: Carried into the summary unchanged.
        """
        answers = answers if isinstance(answers, Mapping) else {}
        opened = set(opened_ids)
        required = set(required_ids)
        verdicts: list[ItemVerdict] = []
        for item_id in item_ids:
            key = self._answer_keys.get_answer_key(case_id, item_id)
            if key is None:
                logger.error("No answer key for item %s in case %s; excluding", item_id, case_id)
                verdicts.append(ItemVerdict(item_id=item_id, verdict=Verdict.EXCLUDED))
                continue
            verdicts.append(
                self.evaluate_item(
                    key,
                    answers.get(item_id),
                    opened=item_id in opened or item_id in answers,
                    required=item_id in required,
                )
            )
        summary = summarize(verdicts, required_docs_opened, time_to_complete_seconds)
        logger.info(
            "Graded case %s: score=%s considered=%d critical=%d",
            case_id,
            summary.score,
            summary.total_considered,
            summary.critical_issues_count,
        )
        return GradingReport(verdicts=tuple(verdicts), summary=summary)

    def feedback_for_item(
        self,
        case_id: str,
        item_id: str,
        payment_date: str = "",
        amount: float | None = None,
    ) -> list[str]:
        """Immediate-feedback hints for one item. Empty when no key exists."""
        key = self._answer_keys.get_answer_key(case_id, item_id)
        if key is None:
            return []
        facts = ItemFacts.from_answer_key(key, payment_date=payment_date, amount=amount)
        return self._validators.feedback_for(facts, key.validator)
