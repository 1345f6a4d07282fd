"""
Row identity helpers.

A row identity is the string form of each effective primary-key column's
value joined with ``::`` in column-declaration order, e.g. ``"5"`` or
``"42::eu-west"`` for a composite key.
"""
import logging
from typing import Any, Iterable, List, Mapping, Optional

from table_trace.cdc.models import ColumnInfo, ColumnLike
from table_trace.errors import RowIdentityError
from table_trace.util.formatters import to_display_string

logger = logging.getLogger(__name__)

IDENTITY_DELIMITER = "::"


def _as_column_info(column: ColumnLike) -> ColumnInfo:
    return column if isinstance(column, ColumnInfo) else ColumnInfo.from_dict(column)


def effective_pk_columns(columns: Optional[Iterable[ColumnLike]]) -> List[str]:
    """
    Primary-key columns for identity tracking.

    Falls back to the first declared column when the table has no primary
    key, and to an empty list when it has no columns at all.
    """
    columns = [_as_column_info(c) for c in columns or []]
    pk_columns = [c.name for c in columns if c.is_primary_key]
    if pk_columns:
        return pk_columns
    if columns and columns[0].name:
        return [columns[0].name]
    return []


def derive_identity(row: Optional[Mapping[str, Any]], pk_columns: List[str]) -> str:
    """Strict identity derivation, raising RowIdentityError when none can be built"""
    if row is None:
        raise RowIdentityError("row is absent")
    if not pk_columns:
        raise RowIdentityError("no primary key columns")
    try:
        parts = []
        for col in pk_columns:
            value = row.get(col)
            parts.append("" if value is None else to_display_string(value))
        return IDENTITY_DELIMITER.join(parts)
    except Exception as e:
        raise RowIdentityError(f"cannot stringify key columns {pk_columns}: {e}") from e


def row_identity(row: Optional[Mapping[str, Any]], pk_columns: List[str]) -> str:
    """Identity of a row, or an empty string when it cannot be derived"""
    try:
        return derive_identity(row, pk_columns)
    except RowIdentityError as e:
        logger.debug("No identity for row: %s", e)
        return ""
