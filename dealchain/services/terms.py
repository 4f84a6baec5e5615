"""
Commercial terms — validation, diffing and contract snapshots.

Terms are a JSON object shared by proposal versions and contracts:

    {
        "total": 165000,                 # required, >= 0
        "currency": "SAR",               # required, ISO-4217 code
        "paymentTerms": {"type": "CASH", "schedule": "milestone_based"},
        "timeline": {"startDate": "2026-01-01", "endDate": "2026-06-30"},
        "servicesOffered": [...], "servicesRequested": [...],
        "deliverables": [...], "milestones": [...],
        "conditions": "...",
    }

Only the keys above are interpreted; anything else is carried through
the snapshot untouched.
"""

import copy
import json
from datetime import date, datetime
from numbers import Number

from dealchain.core.exceptions import ValidationError
from dealchain.models.opportunity import PAYMENT_TYPES
from dealchain.models.proposal import PRICING_FIELDS, TERM_FIELDS


def parse_date(value, field):
    """
    Parse an ISO date, date or datetime into a date, or raise ValidationError.

    None passes through. Datetimes are truncated to their calendar date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise ValidationError(
            f"Invalid date for {field}: {value!r}", details={field: "use YYYY-MM-DD"},
        ) from exc


def timeline_dates(terms):
    """Return (start_date, end_date) from ``terms['timeline']``."""
    timeline = terms.get("timeline") or {}
    return (
        parse_date(timeline.get("startDate"), "timeline.startDate"),
        parse_date(timeline.get("endDate"), "timeline.endDate"),
    )


def validate_terms(terms):
    """
    Validate a terms object and return a normalized deep copy.

    Raises:
        ValidationError with field-level details.
    """
    if not isinstance(terms, dict):
        raise ValidationError("terms must be an object", details={"terms": "must be an object"})

    errors = {}
    total = terms.get("total")
    if isinstance(total, bool) or not isinstance(total, Number):
        errors["total"] = "required number"
    elif total < 0:
        errors["total"] = "must be >= 0"

    currency = terms.get("currency")
    if not isinstance(currency, str) or len(currency.strip()) != 3 or not currency.strip().isalpha():
        errors["currency"] = "required 3-letter currency code"

    payment_terms = terms.get("paymentTerms")
    if payment_terms is not None:
        if not isinstance(payment_terms, dict):
            errors["paymentTerms"] = "must be an object"
        elif payment_terms.get("type") not in PAYMENT_TYPES:
            errors["paymentTerms.type"] = f"must be one of {', '.join(PAYMENT_TYPES)}"

    timeline = terms.get("timeline")
    if timeline is not None and not isinstance(timeline, dict):
        errors["timeline"] = "must be an object"

    for key in ("servicesOffered", "servicesRequested", "deliverables", "milestones"):
        if key in terms and not isinstance(terms[key], list):
            errors[key] = "must be a list"

    if errors:
        raise ValidationError("Invalid terms", details=errors)

    start, end = timeline_dates(terms)
    if start and end and end <= start:
        raise ValidationError(
            "timeline.endDate must be after timeline.startDate",
            details={"timeline.endDate": "must be after startDate"},
        )

    normalized = copy.deepcopy(terms)
    normalized["currency"] = currency.strip().upper()
    try:
        json.dumps(normalized)
    except (TypeError, ValueError) as exc:
        raise ValidationError("terms must be JSON-serializable") from exc
    return normalized


def _canonical(value):
    return json.dumps(value, sort_keys=True, default=str)


def changed_fields(old_terms, new_terms):
    """List the interpreted term keys whose value differs between two versions."""
    old_terms = old_terms or {}
    return [
        field for field in TERM_FIELDS
        if _canonical(old_terms.get(field)) != _canonical(new_terms.get(field))
    ]


def diff_terms(old_terms, new_terms):
    """
    Group the differences between two term objects.

    Returns:
        {
            "pricing":      {"total": {"from": .., "to": ..}, ...},
            "paymentTerms": {"from": .., "to": ..} | {},
            "timeline":     {"from": .., "to": ..} | {},
            "services":     {"servicesOffered": {...}, ...},
            "other":        {"<key>": {"from": .., "to": ..}, ...},
        }
    """
    changes = {"pricing": {}, "paymentTerms": {}, "timeline": {}, "services": {}, "other": {}}
    keys = sorted(set(old_terms) | set(new_terms))
    for key in keys:
        before, after = old_terms.get(key), new_terms.get(key)
        if _canonical(before) == _canonical(after):
            continue
        delta = {"from": before, "to": after}
        if key in PRICING_FIELDS:
            changes["pricing"][key] = delta
        elif key in ("paymentTerms", "timeline"):
            changes[key] = delta
        elif key in ("servicesOffered", "servicesRequested"):
            changes["services"][key] = delta
        else:
            changes["other"][key] = delta
    return changes


def contract_snapshot(terms, *, source=None):
    """Build the immutable ``termsJSON`` stored on a contract."""
    snapshot = {
        "pricing": {"amount": terms["total"], "currency": terms["currency"]},
        "paymentTerms": copy.deepcopy(terms.get("paymentTerms")),
        "timeline": copy.deepcopy(terms.get("timeline") or {}),
        "deliverables": copy.deepcopy(terms.get("deliverables") or []),
        "milestones": copy.deepcopy(terms.get("milestones") or []),
    }
    for key in ("servicesOffered", "servicesRequested", "conditions"):
        if key in terms:
            snapshot[key] = copy.deepcopy(terms[key])
    if source:
        snapshot["source"] = dict(source)
    return snapshot
