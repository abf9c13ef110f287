"""
Condition evaluation for conditional steps

Each condition field belongs to a category and each category has a fixed
operator table. Operators outside the table evaluate to False.
"""
import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, Iterable, Optional


logger = logging.getLogger(__name__)

LEADING_INT = re.compile(r"\s*([+-]?\d+)")


FIELD_CATEGORIES = {
    "tags": "tags",
    "appointment_count": "numeric",
    "appointment_type": "string",
    "client_status": "string",
    "last_appointment_date": "date",
}

OPERATORS = {
    "tags": ("contains", "has_tag", "not_has_tag"),
    "numeric": ("equals", "not_equals", "greater_than", "less_than"),
    "string": ("equals", "not_equals", "contains"),
    "date": ("greater_than", "less_than"),
}


def is_known_field(field: str) -> bool:
    return field in FIELD_CATEGORIES


def operators_for(field: str) -> tuple:
    return OPERATORS.get(FIELD_CATEGORIES.get(field, ""), ())


def _as_int(value: Any) -> Optional[int]:
    """Leading integer of a value, so "2.0", 2.5 and "5 visits" all parse"""
    if value is None:
        return None
    match = LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


def evaluate_tags(operator: str, tags: Optional[Iterable[str]], value: Any) -> bool:
    tag_set = set(tags or [])
    if operator in ("contains", "has_tag"):
        return value in tag_set
    if operator == "not_has_tag":
        return value not in tag_set
    return False


def evaluate_numeric(operator: str, actual: Optional[int], value: Any) -> bool:
    expected = _as_int(value)
    if expected is None or actual is None:
        return False

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "greater_than":
        return actual > expected
    if operator == "less_than":
        return actual < expected
    return False


def evaluate_string(operator: str, actual: Optional[str], value: Any) -> bool:
    """Case-insensitive comparison; a missing value compares as empty"""
    left = (actual or "").lower()
    right = ("" if value is None else str(value)).lower()

    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "contains":
        return right in left
    return False


def days_since(moment: datetime, now: datetime) -> int:
    return math.floor((now - moment).total_seconds() / 86400)


def evaluate_date(
    operator: str,
    last_date: Optional[datetime],
    value: Any,
    now: datetime
) -> bool:
    """Compare whole days elapsed since ``last_date`` against ``value``"""
    expected = _as_int(value)
    if last_date is None or expected is None:
        return False

    elapsed = days_since(last_date, now)
    if operator == "greater_than":
        return elapsed > expected
    if operator == "less_than":
        return elapsed < expected
    return False


def evaluate(
    field: str,
    operator: str,
    value: Any,
    facts: Dict[str, Any],
    now: datetime
) -> bool:
    """
    Evaluate one condition against resolved client facts.

    Args:
        field: condition field, must be a key of FIELD_CATEGORIES
        operator: operator name from the field's category
        value: configured comparison value
        facts: field name -> actual value
        now: reference time for date comparisons

    Raises:
        KeyError: field is not a known condition field
    """
    category = FIELD_CATEGORIES[field]
    actual = facts.get(field)

    if operator not in OPERATORS[category]:
        logger.warning(f"Operator '{operator}' is not supported for field '{field}'")
        return False

    if category == "tags":
        return evaluate_tags(operator, actual, value)
    if category == "numeric":
        return evaluate_numeric(operator, actual, value)
    if category == "string":
        return evaluate_string(operator, actual, value)
    return evaluate_date(operator, actual, value, now)
