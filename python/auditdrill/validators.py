"""Immediate-feedback validators for case items.

A validator inspects the facts of one item (booked date, recorded amount,
and the ground truths authored with the answer key) and returns zero or
more human-readable hints. Each item names at most one validator through
its answer key's descriptor ``{"type": ..., "config": {...}}``. Shared
checks run for every item.

The registry is an ordinary object passed to the grading evaluator, so
tests and deployments can register their own validators without touching
module state.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from auditdrill.protocol import AnswerKey, parse_timestamp

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class ItemFacts:
    """What a validator may look at for one item.

    Attributes:
        item_id: Stable identifier of the case item.
        payment_date: Date the item was booked or paid (ISO 8601).
        amount: Recorded amount.
        ground_truths: Authored facts such as ``servicePeriodEnd``,
            ``invoiceDate`` or ``confirmedValue``.
    """

    item_id: str
    payment_date: str = ""
    amount: float | None = None
    ground_truths: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_answer_key(
        cls,
        key: AnswerKey,
        payment_date: str = "",
        amount: float | None = None,
    ) -> ItemFacts:
        return cls(
            item_id=key.item_id,
            payment_date=payment_date,
            amount=amount,
            ground_truths=dict(key.ground_truths),
        )


Validator = Callable[[ItemFacts, Mapping[str, Any]], list[str]]


def _to_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _format_currency(value: float) -> str:
    return f"${value:,.2f}"


def cutoff_validator(facts: ItemFacts, config: Mapping[str, Any]) -> list[str]:
    """Flag items booked more than ``toleranceDays`` after the service ended."""
    service_end = facts.ground_truths.get("servicePeriodEnd") or facts.ground_truths.get(
        "invoiceDate"
    )
    payment_date = parse_timestamp(facts.payment_date)
    service_date = parse_timestamp(service_end)
    if payment_date is None or service_date is None:
        return []
    diff_days = math.floor(
        (payment_date - service_date).total_seconds() / _SECONDS_PER_DAY + 0.5
    )
    tolerance_days = _to_float(config.get("toleranceDays")) or 0
    if diff_days <= tolerance_days:
        return []
    plural = "" if diff_days == 1 else "s"
    return [f"Service ended {diff_days} day{plural} before the recorded date; revisit cutoff."]


def match_amount_validator(facts: ItemFacts, config: Mapping[str, Any]) -> list[str]:
    """Flag a recorded amount that differs from the confirmed value."""
    recorded = _to_float(facts.amount)
    expected = _to_float(facts.ground_truths.get("confirmedValue")) or recorded
    if recorded is None or expected is None:
        return []
    delta = abs(expected - recorded)
    threshold = _to_float(config.get("tolerance")) or 0.0
    if delta <= threshold:
        return []
    return [f"Amount differs from evidence by {_format_currency(delta)}; investigate the variance."]


def invoice_date_check(facts: ItemFacts, config: Mapping[str, Any]) -> list[str]:
    """Shared check: an invoice dated after the booking date is suspicious."""
    invoice_date = parse_timestamp(facts.ground_truths.get("invoiceDate"))
    payment_date = parse_timestamp(facts.payment_date)
    if invoice_date is None or payment_date is None or invoice_date <= payment_date:
        return []
    return ["Invoice date is after book date; check if support is misdated."]


class ValidatorRegistry:
    """Named validators plus checks that run for every item.

    Args:
        validators: Initial ``type -> validator`` mapping.
        shared_checks: Checks applied to every item after the named one.
    """

    def __init__(
        self,
        validators: Mapping[str, Validator] | None = None,
        shared_checks: Iterable[Validator] = (),
    ) -> None:
        self._validators: dict[str, Validator] = dict(validators or {})
        self._shared: list[Validator] = list(shared_checks)

    def register(self, validator_type: str, validator: Validator) -> None:
        if validator_type in self._validators:
            logger.info("Replacing validator %r", validator_type)
        self._validators[validator_type] = validator

    def add_shared_check(self, check: Validator) -> None:
        self._shared.append(check)

    def get(self, validator_type: str) -> Validator | None:
        return self._validators.get(validator_type)

    @property
    def types(self) -> list[str]:
        return list(self._validators)

    def feedback_for(
        self,
        facts: ItemFacts,
        descriptor: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Run the item's named validator and every shared check.

        Unknown validator types are logged and skipped. A validator that
        raises is logged and contributes no messages.

        Returns:
            Non-empty feedback strings in evaluation order.
        """
        descriptor = descriptor or {}
        config = descriptor.get("config") or {}
        checks: list[Validator] = []
        validator_type = descriptor.get("type")
        if validator_type:
            validator = self._validators.get(validator_type)
            if validator is None:
                logger.warning("Unknown validator type %r for item %s", validator_type, facts.item_id)
            else:
                checks.append(validator)
        checks.extend(self._shared)

        messages: list[str] = []
        for check in checks:
            try:
                result = check(facts, config)
            except Exception:
                logger.exception("Validator failed for item %s", facts.item_id)
                continue
            messages.extend(message for message in result or [] if message)
        return messages


def default_validator_registry() -> ValidatorRegistry:
    """Registry with the built-in ``cutoff`` and ``match_amount`` validators."""
    return ValidatorRegistry(
        validators={"cutoff": cutoff_validator, "match_amount": match_amount_validator},
        shared_checks=[invoice_date_check],
    )
