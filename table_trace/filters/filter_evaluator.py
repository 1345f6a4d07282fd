"""
Row filtering for the watched-table view.

Filter text is a comma-separated list of clauses such as
``status=1, amount>=10, name~john``. Clauses are AND-ed together; clauses
that cannot be parsed are dropped.
"""
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from table_trace.errors import FilterParseError
from table_trace.identity.row_identity import row_identity
from table_trace.util.formatters import to_display_string

logger = logging.getLogger(__name__)

_COMPARISON_RE = re.compile(r"^(\w+)\s*(!=|>=|<=|>|<|=)\s*(.+)$", re.ASCII)
_CONTAINS_RE = re.compile(r"^(\w+)\s*~\s*(.+)$", re.ASCII)
_NUMERIC_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$", re.ASCII)


class FilterOperator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    CONTAINS = "contains"


@dataclass
class TableFilter:
    column: str
    value: str
    operator: FilterOperator


def parse_clause(clause: str) -> TableFilter:
    """Parse a single clause, raising FilterParseError if it is malformed"""
    text = clause.strip()
    match = _COMPARISON_RE.match(text)
    if match:
        return TableFilter(column=match.group(1), value=match.group(3).strip(), operator=FilterOperator(match.group(2)))

    match = _CONTAINS_RE.match(text)
    if match:
        return TableFilter(column=match.group(1), value=match.group(2).strip(), operator=FilterOperator.CONTAINS)

    raise FilterParseError(clause)


def parse_filter(text: Optional[str]) -> List[TableFilter]:
    """Parse filter text into filter objects"""
    if not text or not text.strip():
        return []

    filters = []
    for part in (p.strip() for p in text.split(",")):
        if not part:
            continue
        try:
            filters.append(parse_clause(part))
        except FilterParseError as e:
            logger.debug("Dropping filter clause: %s", e)
    return filters


def to_number(value: Any) -> float:
    """Numeric coercion for comparison filters; NaN when not numeric"""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    if _NUMERIC_RE.match(text):
        return float(text)
    if text in ("Infinity", "+Infinity"):
        return math.inf
    if text == "-Infinity":
        return -math.inf
    return math.nan


def _matches_clause(row: Mapping[str, Any], f: TableFilter) -> bool:
    if f.column not in row:
        return False

    cell_value = row[f.column]
    cell_exact = to_display_string(cell_value)
    cell_str = cell_exact.lower()
    filter_val = f.value.lower()

    if f.operator == FilterOperator.EQ:
        return cell_str == filter_val or cell_exact == f.value
    if f.operator == FilterOperator.NE:
        return cell_str != filter_val and cell_exact != f.value
    if f.operator == FilterOperator.CONTAINS:
        return filter_val in cell_str

    # NaN compares false against everything
    left, right = to_number(cell_value), to_number(f.value)
    if f.operator == FilterOperator.GT:
        return left > right
    if f.operator == FilterOperator.LT:
        return left < right
    if f.operator == FilterOperator.GE:
        return left >= right
    if f.operator == FilterOperator.LE:
        return left <= right
    return True


def matches_filter(row: Mapping[str, Any], filters: List[TableFilter]) -> bool:
    """Check if a row matches every filter"""
    if not filters:
        return True
    return all(_matches_clause(row, f) for f in filters)


def filter_rows(
    rows: List[Dict[str, Any]],
    filters: List[TableFilter],
    highlight_map: Optional[Mapping[str, Any]] = None,
    pk_columns: Optional[List[str]] = None,
    show_only_changed: bool = False,
) -> List[Dict[str, Any]]:
    """
    Apply text filters and the optional "show only changed" toggle.

    Args:
        rows: Combined rows (current plus phantom rows)
        filters: Parsed filter clauses
        highlight_map: Identity -> highlight, consulted when show_only_changed
        pk_columns: Effective primary-key columns of the table
        show_only_changed: Keep only rows that have highlight state
    """
    result = []
    for row in rows:
        if not matches_filter(row, filters):
            continue
        if show_only_changed:
            identity = row_identity(row, pk_columns or [])
            if not identity or identity not in (highlight_map or {}):
                continue
        result.append(row)
    return result
