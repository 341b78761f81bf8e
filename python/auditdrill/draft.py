"""Draft model: a trainee's in-progress answers for one exercise instance.

A draft is a plain mapping of section name to a mapping keyed by stable
item identifiers. Absent keys mean "not answered yet". Drafts are treated
as values: every mutation below returns a new draft in which the touched
section is a new mapping and every sibling section is the *same object* as
before, so callers can detect changes with identity checks.

Mutations are total. A missing key or an unknown section returns the input
unchanged instead of raising; lock handling and change notification live in
the owning session.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from auditdrill.protocol import CLASSIFICATION_KEYS

logger = logging.getLogger(__name__)

Draft = dict[str, dict[str, Any]]

# Fixed-asset rollforward sections
LEAD_SCHEDULE_TICKS = "leadScheduleTicks"
SCOPING_DECISION = "scopingDecision"
ADDITION_RESPONSES = "additionResponses"
DISPOSAL_RESPONSES = "disposalResponses"
ANALYTICS_RESPONSE = "analyticsResponse"

# Disbursement / cutoff sections
SELECTED_ITEMS = "selectedItems"
CLASSIFICATIONS = "classifications"
OPENED_ITEMS = "openedItems"

FIXED_ASSET_SECTIONS: tuple[str, ...] = (
    LEAD_SCHEDULE_TICKS,
    SCOPING_DECISION,
    ADDITION_RESPONSES,
    DISPOSAL_RESPONSES,
    ANALYTICS_RESPONSE,
)
DISBURSEMENT_SECTIONS: tuple[str, ...] = (SELECTED_ITEMS, CLASSIFICATIONS, OPENED_ITEMS)

# Tick cycle: absent -> verified -> exception -> absent
TICK_VERIFIED = "verified"
TICK_EXCEPTION = "exception"


def empty_draft(sections: tuple[str, ...] = FIXED_ASSET_SECTIONS) -> Draft:
    """A fresh draft with every section present and empty."""
    return {section: {} for section in sections}


def normalize_draft(raw: object, sections: tuple[str, ...] = FIXED_ASSET_SECTIONS) -> Draft | None:
    """Validate a draft received from outside the session.

    Missing sections are filled with empty mappings. Sections this schema
    does not know are dropped.

    Returns:
        The normalized draft, or None if the payload has the wrong shape
        (not a mapping, or a known section that is not a mapping).
    """
    if not isinstance(raw, Mapping):
        return None
    normalized: Draft = {}
    for section in sections:
        value = raw.get(section)
        if value is None:
            normalized[section] = {}
        elif isinstance(value, Mapping):
            normalized[section] = dict(value)
        else:
            logger.warning("Malformed draft section %r: %s", section, type(value).__name__)
            return None
    if CLASSIFICATIONS in normalized:
        normalized[CLASSIFICATIONS] = {
            item_id: normalize_allocation(allocation)
            for item_id, allocation in normalized[CLASSIFICATIONS].items()
        }
    return normalized


def drafts_equal(left: Mapping[str, Any] | None, right: Mapping[str, Any] | None) -> bool:
    """Field-for-field structural equality."""
    if left is right:
        return True
    if left is None or right is None:
        return False
    return dict(left) == dict(right)


def _with_section(draft: Draft, section: str, value: dict[str, Any]) -> Draft:
    next_draft = dict(draft)
    next_draft[section] = value
    return next_draft


def toggle_tick(draft: Draft, cell_key: str) -> Draft:
    """Advance a lead-schedule tick: absent, verified, exception, absent."""
    if not cell_key:
        return draft
    ticks = dict(draft.get(LEAD_SCHEDULE_TICKS) or {})
    current = ticks.get(cell_key)
    if not current:
        ticks[cell_key] = TICK_VERIFIED
    elif current == TICK_VERIFIED:
        ticks[cell_key] = TICK_EXCEPTION
    else:
        del ticks[cell_key]
    return _with_section(draft, LEAD_SCHEDULE_TICKS, ticks)


def merge_section(draft: Draft, section: str, patch: Mapping[str, Any] | None) -> Draft:
    """Shallow-merge ``patch`` into a flat section (scoping, analytics)."""
    if not section:
        return draft
    merged = dict(draft.get(section) or {})
    merged.update(patch or {})
    return _with_section(draft, section, merged)


def update_item(
    draft: Draft,
    section: str,
    item_id: str,
    patch: Mapping[str, Any] | None,
) -> Draft:
    """Merge ``patch`` into one item's record inside a keyed section."""
    if not section or not item_id:
        return draft
    entries = dict(draft.get(section) or {})
    record = entries.get(item_id)
    merged = dict(record) if isinstance(record, Mapping) else {}
    merged.update(patch or {})
    entries[item_id] = merged
    return _with_section(draft, section, entries)


def set_item(draft: Draft, section: str, item_id: str, value: Any) -> Draft:
    """Replace one item's value. ``None`` removes the key (unanswered)."""
    if not section or not item_id:
        return draft
    entries = dict(draft.get(section) or {})
    if value is None:
        if item_id not in entries:
            return draft
        del entries[item_id]
    else:
        entries[item_id] = value
    return _with_section(draft, section, entries)


def toggle_selection(draft: Draft, item_id: str) -> Draft:
    """Add or remove an item from the sample selection."""
    selected = (draft.get(SELECTED_ITEMS) or {}).get(item_id)
    return set_item(draft, SELECTED_ITEMS, item_id, None if selected else True)


def mark_opened(draft: Draft, item_id: str) -> Draft:
    """Record that the trainee opened an item or document. Idempotent."""
    if not item_id or (draft.get(OPENED_ITEMS) or {}).get(item_id):
        return draft
    return set_item(draft, OPENED_ITEMS, item_id, True)


def normalize_allocation(raw: object) -> dict[str, Any]:
    """Coerce a stored classification into the canonical allocation shape.

    Canonical shape: ``{"mode", "singleClassification", "splitValues",
    "isException", "notes"}``. Legacy records that stored amounts directly
    under the label keys are converted; a legacy record with at most one
    nonzero label collapses to single mode.
    """
    if not isinstance(raw, Mapping):
        return _empty_allocation()

    allocation = _empty_allocation()
    notes = raw.get("notes")
    allocation["notes"] = notes if isinstance(notes, str) else ""
    if isinstance(raw.get("isException"), bool):
        allocation["isException"] = raw["isException"]

    legacy = not raw.get("mode") and any(raw.get(key) is not None for key in CLASSIFICATION_KEYS)
    source = raw if legacy else (raw.get("splitValues") if isinstance(raw.get("splitValues"), Mapping) else raw)
    nonzero: list[str] = []
    for key in CLASSIFICATION_KEYS:
        value = source.get(key)
        text = "" if value is None else str(value)
        allocation["splitValues"][key] = text
        try:
            if text and abs(float(text)) > 0:
                nonzero.append(key)
        except ValueError:
            continue

    single = raw.get("singleClassification")
    allocation["singleClassification"] = single if single in CLASSIFICATION_KEYS else ""

    if legacy:
        if len(nonzero) <= 1:
            allocation["singleClassification"] = nonzero[0] if nonzero else ""
            allocation["splitValues"] = {key: "" for key in CLASSIFICATION_KEYS}
        else:
            allocation["mode"] = "split"
    elif raw.get("mode") == "split":
        allocation["mode"] = "split"
    return allocation


def _empty_allocation() -> dict[str, Any]:
    return {
        "mode": "single",
        "singleClassification": "",
        "splitValues": {key: "" for key in CLASSIFICATION_KEYS},
        "notes": "",
    }
