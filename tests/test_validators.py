"""Tests for auditdrill.validators."""

from __future__ import annotations

import logging

import pytest
from auditdrill.protocol import AnswerKey
from auditdrill.validators import (
    ItemFacts,
    ValidatorRegistry,
    cutoff_validator,
    default_validator_registry,
    invoice_date_check,
    match_amount_validator,
)


def _facts(**kwargs) -> ItemFacts:
    kwargs.setdefault("item_id", "p1")
    return ItemFacts(**kwargs)


class TestCutoffValidator:
    def test_beyond_tolerance(self) -> None:
        facts = _facts(payment_date="2024-01-20", ground_truths={"servicePeriodEnd": "2024-01-05"})
        assert cutoff_validator(facts, {"toleranceDays": 10}) == [
            "Service ended 15 days before the recorded date; revisit cutoff."
        ]

    def test_within_tolerance(self) -> None:
        facts = _facts(payment_date="2024-01-10", ground_truths={"servicePeriodEnd": "2024-01-05"})
        assert cutoff_validator(facts, {"toleranceDays": 10}) == []

    def test_singular_day(self) -> None:
        facts = _facts(payment_date="2024-01-06", ground_truths={"servicePeriodEnd": "2024-01-05"})
        assert cutoff_validator(facts, {}) == [
            "Service ended 1 day before the recorded date; revisit cutoff."
        ]

    def test_falls_back_to_invoice_date(self) -> None:
        facts = _facts(payment_date="2024-02-01", ground_truths={"invoiceDate": "2024-01-01"})
        assert cutoff_validator(facts, {"toleranceDays": 0})

    def test_missing_dates(self) -> None:
        assert cutoff_validator(_facts(payment_date="2024-01-10"), {}) == []
        assert cutoff_validator(_facts(ground_truths={"servicePeriodEnd": "2024-01-05"}), {}) == []


class TestMatchAmountValidator:
    def test_variance_reported(self) -> None:
        facts = _facts(amount=1000.0, ground_truths={"confirmedValue": 2250.5})
        assert match_amount_validator(facts, {}) == [
            "Amount differs from evidence by $1,250.50; investigate the variance."
        ]

    def test_within_tolerance(self) -> None:
        facts = _facts(amount=1000.0, ground_truths={"confirmedValue": 1000.4})
        assert match_amount_validator(facts, {"tolerance": 0.5}) == []

    def test_no_confirmed_value(self) -> None:
        assert match_amount_validator(_facts(amount=1000.0), {}) == []

    def test_no_amount(self) -> None:
        assert match_amount_validator(_facts(ground_truths={"confirmedValue": 5}), {}) == []


class TestInvoiceDateCheck:
    def test_invoice_after_booking(self) -> None:
        facts = _facts(payment_date="2024-01-01", ground_truths={"invoiceDate": "2024-01-15"})
        assert invoice_date_check(facts, {}) == [
            "Invoice date is after book date; check if support is misdated."
        ]

    def test_invoice_before_booking(self) -> None:
        facts = _facts(payment_date="2024-01-15", ground_truths={"invoiceDate": "2024-01-01"})
        assert invoice_date_check(facts, {}) == []


class TestRegistry:
    def test_default_types(self) -> None:
        assert default_validator_registry().types == ["cutoff", "match_amount"]

    def test_named_then_shared(self) -> None:
        registry = default_validator_registry()
        facts = _facts(
            payment_date="2024-01-01",
            amount=100.0,
            ground_truths={"invoiceDate": "2024-01-15", "confirmedValue": 150.0},
        )
        messages = registry.feedback_for(facts, {"type": "match_amount", "config": {}})
        assert len(messages) == 2
        assert messages[0].startswith("Amount differs")
        assert messages[1].startswith("Invoice date")

    def test_unknown_type_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        registry = ValidatorRegistry()
        with caplog.at_level(logging.WARNING, logger="auditdrill.validators"):
            assert registry.feedback_for(_facts(), {"type": "mystery"}) == []
        assert "mystery" in caplog.text

    def test_raising_validator_is_contained(self) -> None:
        def _boom(facts: ItemFacts, config: dict) -> list[str]:
            raise RuntimeError("validator bug")

        registry = ValidatorRegistry({"boom": _boom}, shared_checks=[lambda f, c: ["shared"]])
        assert registry.feedback_for(_facts(), {"type": "boom"}) == ["shared"]

    def test_register_replaces(self) -> None:
        registry = ValidatorRegistry()
        registry.register("x", lambda f, c: ["one"])
        registry.register("x", lambda f, c: ["two"])
        assert registry.feedback_for(_facts(), {"type": "x"}) == ["two"]

    def test_empty_messages_dropped(self) -> None:
        registry = ValidatorRegistry({"x": lambda f, c: ["", "kept"]})
        assert registry.feedback_for(_facts(), {"type": "x"}) == ["kept"]

    def test_facts_from_answer_key(self) -> None:
        key = AnswerKey(item_id="p9", ground_truths={"invoiceDate": "2024-01-01"})
        facts = ItemFacts.from_answer_key(key, payment_date="2024-02-01", amount=10.0)
        assert facts.item_id == "p9"
        assert facts.ground_truths["invoiceDate"] == "2024-01-01"
        assert facts.amount == 10.0
