"""
Column-level diff between the before and after images of a row.

Values are compared by their JSON encoding, so ``1`` and ``1.0`` are equal
while ``1`` and ``"1"`` are not. A column missing from one image is always
different from a column holding ``null``.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from table_trace.errors import DiffSerializationError
from table_trace.util.formatters import MISSING

logger = logging.getLogger(__name__)


class DiffType(Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass
class DiffResult:
    key: str
    before: Any
    after: Any
    changed: bool
    type: DiffType


def _encode(column: str, value: Any) -> Optional[str]:
    """JSON encoding of a value; None stands for an absent column"""
    if value is MISSING:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    try:
        return json.dumps(value, sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise DiffSerializationError(column, e) from e


def _diff_keys(before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]]) -> List[str]:
    keys: Dict[str, None] = dict.fromkeys(before or {})
    keys.update(dict.fromkeys(after or {}))
    return list(keys)


def column_changed(column: str, before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]]) -> bool:
    """Whether one column differs; raises DiffSerializationError if it cannot be compared"""
    b = (before or {}).get(column, MISSING)
    a = (after or {}).get(column, MISSING)
    return _encode(column, b) != _encode(column, a)


def changed_columns(before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]]) -> Set[str]:
    """
    Columns whose values differ between the two images.

    A column whose value cannot be encoded is left out of the result rather
    than being reported as changed.
    """
    changed = set()
    for key in _diff_keys(before, after):
        try:
            if column_changed(key, before, after):
                changed.add(key)
        except DiffSerializationError as e:
            logger.warning("Skipping column in diff: %s", e)
    return changed


def calculate_diff(before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]]) -> List[DiffResult]:
    """Per-column diff for display in the event detail view"""
    results = []
    for key in _diff_keys(before, after):
        b = (before or {}).get(key, MISSING)
        a = (after or {}).get(key, MISSING)
        try:
            changed = column_changed(key, before, after)
        except DiffSerializationError as e:
            logger.warning("Cannot compare column in diff: %s", e)
            changed = False

        if b is MISSING:
            diff_type = DiffType.ADDED
        elif a is MISSING:
            diff_type = DiffType.REMOVED
        elif changed:
            diff_type = DiffType.MODIFIED
        else:
            diff_type = DiffType.UNCHANGED

        results.append(DiffResult(key=key, before=b, after=a, changed=changed, type=diff_type))
    return results
