"""Minimal MongoDB-style filter evaluation for the in-memory backend.

Supported:
- implicit AND over top-level fields (``{"userId": "u1"}``)
- ``$and`` with a list of sub-filters
- field operators ``$eq``, ``$ne``, ``$gt``, ``$gte``, ``$lt``, ``$lte``
"""

from __future__ import annotations

import operator
from datetime import UTC, datetime
from typing import Any, Callable

from actionlog_recorder.storage.base import SortSpec

_ORDERED_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


def matches(document: dict[str, Any], filter: dict[str, Any]) -> bool:
    for key, condition in filter.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
            continue
        if key.startswith("$"):
            raise ValueError(f"Unsupported query operator: {key}")
        if not _field_matches(document.get(key), condition):
            return False
    return True


def _field_matches(value: Any, condition: Any) -> bool:
    if not (isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition)):
        return value == condition

    for op, operand in condition.items():
        if op == "$eq":
            if value != operand:
                return False
        elif op == "$ne":
            if value == operand:
                return False
        elif op in _ORDERED_OPERATORS:
            # Mongo never matches a missing/null field with a range operator.
            if value is None or operand is None:
                return False
            if not _ORDERED_OPERATORS[op](_comparable(value), _comparable(operand)):
                return False
        else:
            raise ValueError(f"Unsupported field operator: {op}")
    return True


def _comparable(value: Any) -> Any:
    # Naive datetimes are read as UTC, the way the Mongo driver stores them.
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def sort_documents(documents: list[dict[str, Any]], sort: SortSpec | None) -> list[dict[str, Any]]:
    ordered = list(documents)
    # Stable sorts applied from the least to the most significant key.
    for field, direction in reversed(sort or []):
        present = [doc for doc in ordered if doc.get(field) is not None]
        absent = [doc for doc in ordered if doc.get(field) is None]
        present.sort(key=lambda doc: _comparable(doc[field]), reverse=direction < 0)
        # Nulls sort lowest, as in MongoDB.
        ordered = absent + present if direction > 0 else present + absent
    return ordered
