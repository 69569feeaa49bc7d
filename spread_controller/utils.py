"""Utility functions for label selectors, quantities and timestamps."""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_quantity(quantity: Any) -> int:
    """
    Parse an integer Kubernetes quantity.

    Examples:
        "110" -> 110
        "1k" -> 1000
        "2Ki" -> 2048
    """
    if quantity is None or quantity == "":
        return 0

    quantity = str(quantity).strip()

    units = {
        'Ki': 1024,
        'Mi': 1024 ** 2,
        'Gi': 1024 ** 3,
        'k': 1000,
        'M': 1000 ** 2,
        'G': 1000 ** 3,
    }

    for suffix, multiplier in units.items():
        if quantity.endswith(suffix):
            value = float(quantity[:-len(suffix)])
            return int(value * multiplier)

    return int(float(quantity))


def labels_match_selector(labels: Optional[Dict[str, str]], selector: Dict[str, Any]) -> bool:
    """
    Check if a label set matches a LabelSelector.

    Supports ``matchLabels`` and ``matchExpressions`` with the operators
    In, NotIn, Exists and DoesNotExist. An empty selector matches nothing,
    so a policy without a selector never governs every pod in a namespace.
    """
    if not selector:
        return False

    labels = labels or {}
    match_labels = selector.get("matchLabels") or {}
    expressions = selector.get("matchExpressions") or []

    if not match_labels and not expressions:
        return False

    for key, value in match_labels.items():
        if labels.get(key) != value:
            return False

    for expr in expressions:
        key = expr.get("key")
        operator = expr.get("operator")
        values = expr.get("values") or []

        if operator == "In":
            if key not in labels or labels[key] not in values:
                return False
        elif operator == "NotIn":
            if key in labels and labels[key] in values:
                return False
        elif operator == "Exists":
            if key not in labels:
                return False
        elif operator == "DoesNotExist":
            if key in labels:
                return False
        else:
            return False

    return True


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an API timestamp into an aware datetime.

    The kubernetes client already deserializes typed objects to datetime;
    custom objects carry RFC 3339 strings. Missing values sort first.
    """
    if value is None or value == "":
        return EPOCH
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def now_iso() -> str:
    """Current UTC time in RFC 3339 form."""
    return datetime.now(timezone.utc).isoformat()


def serialize_stable(value: Any) -> str:
    """Serialize to JSON with sorted keys for annotations and comparisons."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))



def merge_patch(previous: Optional[Dict[str, Any]], current: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build a JSON merge patch that turns ``previous`` into ``current``.

    Merge patches merge nested maps, so keys that ``current`` no longer has
    are sent as null to delete them. Lists and scalars are replaced whole.
    """
    patch = dict(current)
    for key, old in (previous or {}).items():
        if key not in current:
            patch[key] = None
        elif isinstance(old, dict) and isinstance(current[key], dict):
            patch[key] = merge_patch(old, current[key])
    return patch
