"""Validation for provider events, checkout requests and consumption requests.

Validators return a list of error strings; an empty list means valid.
"""

from typing import Any, Dict, List, Mapping, Tuple

from .credit_types import CreditType, parse_credit_type
from .entitlements import ADDONS, CREDIT_PACKS, SUBSCRIPTION_TIERS, TIERS

COMPLETION_EVENTS = ("checkout.session.completed", "payment_intent.succeeded")
FAILURE_EVENTS = ("checkout.session.expired", "payment_intent.payment_failed")

REQUIRED_EVENT_FIELDS = ["event_type", "external_session_id"]
OPTIONAL_EVENT_STR_FIELDS = ["external_payment_ref"]


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def is_count(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def validate_event(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages for a provider notification.
    Empty list means valid. Unknown event types are allowed here; the
    reconciler ignores them.
    """
    errors: List[str] = []

    for f in REQUIRED_EVENT_FIELDS:
        if f not in data:
            errors.append(f"Missing required field: {f}")
        elif not _is_non_empty_str(data[f]):
            errors.append(f"Field '{f}' must be a non-empty string")

    for f in OPTIONAL_EVENT_STR_FIELDS:
        if data.get(f) is not None and not isinstance(data[f], str):
            errors.append(f"Field '{f}' must be a string if provided")

    amount = data.get("amount_paid")
    if amount is not None and (not is_count(amount) or amount < 0):
        errors.append("Field 'amount_paid' must be a non-negative integer (cents)")

    return errors


def validate_event_strict(data: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Like validate_event, but also rejects event types the ledger does not act on."""
    errors = validate_event(data)
    event_type = data.get("event_type")
    if _is_non_empty_str(event_type) and event_type not in COMPLETION_EVENTS + FAILURE_EVENTS:
        errors.append(f"Unsupported event_type: {event_type}")
    return (not errors, errors)


def validate_checkout(data: Dict[str, Any]) -> List[str]:
    """
    Validate a checkout request: user, session, and exactly one of
    tier / credit_pack / subscription plus optional add-ons.
    """
    errors: List[str] = []

    for f in ("user_id", "external_session_id"):
        if not _is_non_empty_str(data.get(f)):
            errors.append(f"Field '{f}' must be a non-empty string")

    tier = data.get("tier")
    credit_pack = data.get("credit_pack")
    subscription = data.get("subscription")
    selected = [v for v in (tier, credit_pack, subscription) if v]
    if not selected:
        errors.append("One of tier, credit_pack or subscription must be specified")
    elif len(selected) > 1:
        errors.append("Only one of tier, credit_pack or subscription may be specified")

    if tier and tier not in TIERS:
        errors.append(f"Unknown tier: {tier}")
    if credit_pack and credit_pack not in CREDIT_PACKS:
        errors.append(f"Unknown credit_pack: {credit_pack}")
    if subscription and subscription not in SUBSCRIPTION_TIERS:
        errors.append(f"Unknown subscription: {subscription}")

    addons = data.get("addons") or []
    if not isinstance(addons, (list, tuple)):
        errors.append("Field 'addons' must be a list if provided")
    else:
        for addon in addons:
            if addon not in ADDONS:
                errors.append(f"Unknown addon: {addon}")

    return errors


def validate_requested(requested: Mapping[Any, Any]) -> List[str]:
    """Validate a consumption request mapping credit type -> positive count."""
    errors: List[str] = []
    if not requested:
        errors.append("At least one credit type must be requested")
        return errors

    seen: Dict[CreditType, Any] = {}
    for key, count in requested.items():
        try:
            credit_type = parse_credit_type(key)
        except ValueError as e:
            errors.append(str(e))
            continue
        if credit_type in seen:
            errors.append(f"Credit type requested twice: {credit_type.value}")
        seen[credit_type] = count
        if not is_count(count) or count <= 0:
            errors.append(f"Count for '{credit_type.value}' must be a positive integer")
    return errors
