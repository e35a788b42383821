# control/conditions.py

from typing import Any, Optional

from shared_libs.config_models.flow_models import ComparatorType


_TRUE_WORDS = {"true", "on", "yes"}
_FALSE_WORDS = {"false", "off", "no"}


def as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def as_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    return None


def compare(left: Any, operator: ComparatorType, right: Any, tolerance: Optional[float] = None) -> bool:
    """Evaluate `left <operator> right`.

    Numeric when both sides parse as numbers (with optional tolerance), then
    boolean when both sides read as booleans, otherwise a string comparison.
    """
    operator = ComparatorType(operator)
    left_num, right_num = as_number(left), as_number(right)
    if left_num is not None and right_num is not None:
        return _compare_numbers(left_num, operator, right_num, tolerance or 0.0)

    left_bool, right_bool = as_boolean(left), as_boolean(right)
    if left_bool is not None and right_bool is not None:
        return _compare_ordered(left_bool, operator, right_bool)

    return _compare_ordered("" if left is None else str(left), operator, "" if right is None else str(right))


def _compare_numbers(left: float, operator: ComparatorType, right: float, tolerance: float) -> bool:
    if tolerance <= 0:
        return _compare_ordered(left, operator, right)
    if operator == ComparatorType.EQ:
        return abs(left - right) <= tolerance
    if operator == ComparatorType.NE:
        return abs(left - right) > tolerance
    if operator == ComparatorType.GT:
        return left > right - tolerance
    if operator == ComparatorType.LT:
        return left < right + tolerance
    if operator == ComparatorType.GE:
        return left >= right - tolerance
    return left <= right + tolerance


def _compare_ordered(left: Any, operator: ComparatorType, right: Any) -> bool:
    if operator == ComparatorType.EQ:
        return left == right
    if operator == ComparatorType.NE:
        return left != right
    if operator == ComparatorType.GT:
        return left > right
    if operator == ComparatorType.LT:
        return left < right
    if operator == ComparatorType.GE:
        return left >= right
    return left <= right
