# targeting.py

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare_numbers(candidate: Any, expected: Any, op: Callable[[float, float], bool]) -> bool:
    left = _as_number(candidate)
    right = _as_number(expected)
    if left is None or right is None:
        return False
    return op(left, right)


def _as_text(value: Any) -> str:
    """Render a JSON scalar the way the SDK would send it as text."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _equals(candidate: Any, expected: Any) -> bool:
    # a boolean never equals a number
    if isinstance(candidate, bool) != isinstance(expected, bool):
        return False
    return candidate == expected


def _in_list(candidate: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return _as_text(candidate) in {_as_text(v) for v in expected}


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "contains": lambda candidate, expected: _as_text(expected) in _as_text(candidate),
    "startsWith": lambda candidate, expected: _as_text(candidate).startswith(_as_text(expected)),
    "endsWith": lambda candidate, expected: _as_text(candidate).endswith(_as_text(expected)),
    "gt": lambda candidate, expected: _compare_numbers(candidate, expected, lambda a, b: a > b),
    "lt": lambda candidate, expected: _compare_numbers(candidate, expected, lambda a, b: a < b),
    "in": _in_list,
}


def rule_matches(rule: Dict[str, Any], candidate: Any) -> bool:
    """Apply a single rule to an attribute value that is known to be present."""
    op = OPERATORS.get(rule.get("operator"))
    if op is None:
        logger.debug("Unknown targeting operator %r", rule.get("operator"))
        return False
    return op(candidate, rule.get("value"))


def matches(rules: Optional[List[Dict[str, Any]]], attributes: Optional[Dict[str, Any]]) -> bool:
    """
    Evaluate targeting rules against visitor attributes.

    - No rules => match.
    - Rules are ANDed in order; the first failing rule short-circuits.
    - A rule whose attribute is absent from the visitor is skipped.
    - Unknown operators fail that rule.
    """
    if not rules:
        return True

    attributes = attributes or {}
    for rule in rules:
        attribute = rule.get("attribute")
        if attribute not in attributes or attributes[attribute] is None:
            continue
        if not rule_matches(rule, attributes[attribute]):
            return False
    return True
