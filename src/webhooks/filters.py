"""Subscription event filters.

A filter is a mapping of data field -> condition. A condition is either a
literal (the field must equal it) or an operator object with one or more of
``$gte``, ``$lte``, ``$in`` and ``$nin``. All fields must pass; a missing
filter matches everything.

Example:
    {"status": "paid", "amount": {"$gte": 100}, "region": {"$in": ["eu", "us"]}}
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from src.webhooks.errors import ValidationError

logger = structlog.get_logger(__name__)

OPERATORS = ("$gte", "$lte", "$in", "$nin")

_MISSING = object()


@dataclass(frozen=True)
class Equals:
    value: Any

    def matches(self, actual: Any) -> bool:
        return actual is not _MISSING and actual == self.value


@dataclass(frozen=True)
class GreaterOrEqual:
    bound: Any

    def matches(self, actual: Any) -> bool:
        return _compare(actual, self.bound, lambda a, b: a >= b)


@dataclass(frozen=True)
class LessOrEqual:
    bound: Any

    def matches(self, actual: Any) -> bool:
        return _compare(actual, self.bound, lambda a, b: a <= b)


@dataclass(frozen=True)
class In:
    values: tuple[Any, ...]

    def matches(self, actual: Any) -> bool:
        return actual is not _MISSING and actual in self.values


@dataclass(frozen=True)
class NotIn:
    values: tuple[Any, ...]

    def matches(self, actual: Any) -> bool:
        return actual is _MISSING or actual not in self.values


Predicate = Equals | GreaterOrEqual | LessOrEqual | In | NotIn


def _compare(actual: Any, bound: Any, op: Any) -> bool:
    # Missing or incomparable values never satisfy a range bound.
    if actual is _MISSING or actual is None:
        return False
    try:
        return bool(op(actual, bound))
    except TypeError:
        return False


def _parse_condition(field: str, condition: Any) -> list[Predicate]:
    if not isinstance(condition, Mapping):
        return [Equals(condition)]

    unknown = [key for key in condition if key not in OPERATORS]
    if unknown or not condition:
        # Plain objects are compared literally.
        return [Equals(dict(condition))]

    predicates: list[Predicate] = []
    for op, operand in condition.items():
        if op == "$gte":
            predicates.append(GreaterOrEqual(operand))
        elif op == "$lte":
            predicates.append(LessOrEqual(operand))
        else:
            if not isinstance(operand, list | tuple | set | frozenset):
                raise ValidationError(
                    f"Filter operator {op} on '{field}' requires a list",
                    field="event_filters",
                )
            values = tuple(operand)
            predicates.append(In(values) if op == "$in" else NotIn(values))
    return predicates


def parse_filters(filters: Mapping[str, Any] | None) -> dict[str, list[Predicate]]:
    """Parse a raw filter mapping into predicates per field.

    Args:
        filters: Raw filter mapping (None for match-all).

    Returns:
        Field name -> predicates that must all hold.

    Raises:
        ValidationError: If an operator has a malformed operand.
    """
    if not filters:
        return {}
    return {field: _parse_condition(field, condition) for field, condition in filters.items()}


def matches_filters(data: Any, filters: Mapping[str, Any] | None) -> bool:
    """Check whether event data satisfies a subscription filter.

    Args:
        data: Event data (non-mapping data only matches an empty filter).
        filters: Raw filter mapping.

    Returns:
        True if every field condition holds.
    """
    parsed = parse_filters(filters)
    if not parsed:
        return True
    if not isinstance(data, Mapping):
        return False

    for field, predicates in parsed.items():
        actual = data.get(field, _MISSING)
        if not all(predicate.matches(actual) for predicate in predicates):
            logger.debug("filter_rejected", field=field)
            return False
    return True
