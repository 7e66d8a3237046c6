import math
import re
from typing import Any


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if is_number(left) and is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _text(target: Any) -> str:
    if target is None:
        return "null"
    if isinstance(target, bool):
        return "true" if target else "false"
    if isinstance(target, float) and math.isfinite(target) and target.is_integer():
        return str(int(target))
    return str(target)


def _compare(value: Any, target: Any, op: str) -> bool:
    if not (is_number(value) and is_number(target)):
        return False
    if op == "greater_than":
        return value > target
    if op == "less_than":
        return value < target
    if op == "greater_equal":
        return value >= target
    return value <= target


def _matches_pattern(value: Any, pattern: Any) -> bool:
    if not isinstance(value, str) or pattern is None:
        return False
    try:
        compiled = re.compile(_text(pattern), re.IGNORECASE)
    except (re.error, OverflowError, RecursionError):
        return False
    return compiled.search(value) is not None


def _member(value: Any, target: Any) -> bool:
    return any(strict_equals(value, item) for item in target)


def evaluate(value: Any, operator: Any, target: Any) -> bool:
    if operator == "equals":
        return strict_equals(value, target)
    if operator == "not_equals":
        return not strict_equals(value, target)
    if operator in ("greater_than", "less_than", "greater_equal", "less_equal"):
        return _compare(value, target, operator)
    if operator in ("contains", "not_contains", "starts_with", "ends_with"):
        if not isinstance(value, str):
            return False
        haystack = value.lower()
        needle = _text(target).lower()
        if operator == "contains":
            return needle in haystack
        if operator == "not_contains":
            return needle not in haystack
        if operator == "starts_with":
            return haystack.startswith(needle)
        return haystack.endswith(needle)
    if operator == "regex":
        return _matches_pattern(value, target)
    if operator in ("in", "not_in"):
        if not isinstance(target, (list, tuple)):
            return False
        found = _member(value, target)
        return found if operator == "in" else not found
    if operator == "exists":
        return value is not None and value != ""
    if operator == "not_exists":
        return value is None or value == ""
    return False
