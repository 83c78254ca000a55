from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Optional

from convoflow.logging import get_logger
from convoflow.storage.models import Branch, Condition

logger = get_logger(__name__)

_MISSING = object()

# Authoring tools disagree on operator spelling; everything maps onto these names
OPERATOR_ALIASES: Dict[str, str] = {
    "equals": "equals",
    "equal": "equals",
    "eq": "equals",
    "==": "equals",
    "not_equals": "not_equals",
    "not-equals": "not_equals",
    "notequals": "not_equals",
    "neq": "not_equals",
    "ne": "not_equals",
    "!=": "not_equals",
    "greater_than": "greater_than",
    "greater-than": "greater_than",
    "gt": "greater_than",
    ">": "greater_than",
    "less_than": "less_than",
    "less-than": "less_than",
    "lt": "less_than",
    "<": "less_than",
    "contains": "contains",
    "not_contains": "not_contains",
    "not-contains": "not_contains",
    "notcontains": "not_contains",
    "exists": "exists",
    "not_exists": "not_exists",
    "not-exists": "not_exists",
    "default": "default",
    "else": "default",
    "otherwise": "default",
    "*": "default",
    "regex": "regex",
    "matches": "regex",
    "starts_with": "starts_with",
    "starts-with": "starts_with",
    "startswith": "starts_with",
    "ends_with": "ends_with",
    "ends-with": "ends_with",
    "endswith": "ends_with",
    "in": "in",
    "one_of": "in",
}

MESSAGE_FIELDS = frozenset({"message", "input", "user_message", "last_user_message"})


def normalize_operator(operator: Optional[str]) -> Optional[str]:
    if not operator:
        return None
    key = str(operator).strip()
    return OPERATOR_ALIASES.get(key) or OPERATOR_ALIASES.get(key.lower())


def resolve_field(field: Optional[str], message: str, context: Dict[str, Any]) -> Any:
    """Look up the value a condition tests.

    No field, or one of the message aliases, means the user's last message.
    Otherwise ``field`` is a dotted path into the session context.
    """
    if field is None or field in MESSAGE_FIELDS:
        return message
    current: Any = context
    for part in field.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _normalize(value: Any, case_sensitive: bool) -> str:
    text = "" if value is None else str(value).strip()
    return text if case_sensitive else text.lower()


def _present(subject: Any) -> bool:
    if subject is _MISSING or subject is None:
        return False
    if isinstance(subject, str):
        return bool(subject.strip())
    return True


def _equals(subject: Any, expected: Any, case_sensitive: bool) -> bool:
    left, right = _to_number(subject), _to_number(expected)
    if left is not None and right is not None:
        return left == right
    return _normalize(subject, case_sensitive) == _normalize(expected, case_sensitive)


def _contains(subject: Any, expected: Any, case_sensitive: bool) -> bool:
    needle = _normalize(expected, case_sensitive)
    if isinstance(subject, (list, tuple, set)):
        return any(_normalize(item, case_sensitive) == needle for item in subject)
    return needle in _normalize(subject, case_sensitive)


def evaluate_condition(condition: Condition, message: str, context: Dict[str, Any]) -> bool:
    """Evaluate one condition against the user's message and session context.

    Unknown operators never match. Numeric operators that cannot parse either
    side are false rather than errors.
    """
    operator = normalize_operator(condition.operator)
    if operator is None:
        logger.warning("condition_unknown_operator", operator=condition.operator)
        return False
    if operator == "default":
        return True

    subject = resolve_field(condition.field, message or "", context)
    expected = condition.value
    case_sensitive = condition.case_sensitive

    if operator == "exists":
        return _present(subject)
    if operator == "not_exists":
        return not _present(subject)

    if subject is _MISSING:
        # Negative operators hold for a value that was never set
        return operator in {"not_equals", "not_contains"}

    if operator == "equals":
        return _equals(subject, expected, case_sensitive)
    if operator == "not_equals":
        return not _equals(subject, expected, case_sensitive)
    if operator == "contains":
        return _contains(subject, expected, case_sensitive)
    if operator == "not_contains":
        return not _contains(subject, expected, case_sensitive)
    if operator in {"greater_than", "less_than"}:
        left, right = _to_number(subject), _to_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "starts_with":
        return _normalize(subject, case_sensitive).startswith(
            _normalize(expected, case_sensitive)
        )
    if operator == "ends_with":
        return _normalize(subject, case_sensitive).endswith(
            _normalize(expected, case_sensitive)
        )
    if operator == "in":
        options = expected if isinstance(expected, (list, tuple, set)) else [expected]
        value = _normalize(subject, case_sensitive)
        return any(_normalize(option, case_sensitive) == value for option in options)
    if operator == "regex":
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            return re.search(str(expected), "" if subject is None else str(subject), flags) is not None
        except re.error as exc:
            logger.warning("condition_invalid_regex", pattern=str(expected), error=str(exc))
            return False
    return False


def evaluate_branches(
    branches: Iterable[Branch], message: str, context: Dict[str, Any]
) -> Optional[Branch]:
    """Return the first branch whose condition holds; list order breaks ties."""
    for branch in branches:
        if evaluate_condition(branch.condition, message, context):
            return branch
    return None


__all__ = [
    "OPERATOR_ALIASES",
    "evaluate_branches",
    "evaluate_condition",
    "normalize_operator",
    "resolve_field",
]
