"""
Utilities for moving table snapshots across the Arrow boundary.
"""
from typing import Any, Dict, Iterable, List, Optional

import pyarrow as pa

from table_trace.cdc.models import ColumnInfo, Row, TableSnapshot


def ensure_arrow_table(data: Any) -> pa.Table:
    """
    Ensure the input data is a PyArrow Table.

    Args:
        data: Input data (pa.Table, list of row dicts, dict of columns)
    """
    if isinstance(data, pa.Table):
        return data

    if isinstance(data, list):
        if not data:
            return pa.Table.from_pydict({})
        return pa.Table.from_pylist(data)

    if isinstance(data, dict):
        return pa.Table.from_pydict(data)

    raise ValueError(f"Could not convert {type(data)} to PyArrow Table")


def rows_from_arrow(table: pa.Table) -> List[Row]:
    """Row dicts in column order"""
    return table.to_pylist() if table.num_rows > 0 else []


def rows_to_arrow(rows: List[Row], columns: Optional[List[ColumnInfo]] = None) -> pa.Table:
    """
    Arrow table from row dicts.

    When columns are given their order is kept and columns missing from a
    row (e.g. in a phantom row) become nulls.
    """
    if columns is None:
        return ensure_arrow_table(list(rows))
    names = [c.name for c in columns]
    data: Dict[str, List[Any]] = {name: [row.get(name) for row in rows] for name in names}
    return pa.Table.from_pydict(data)


def columns_from_arrow_schema(schema: pa.Schema, primary_keys: Iterable[str] = ()) -> List[ColumnInfo]:
    """Column metadata from an Arrow schema; primary keys come from the caller"""
    pk_set = set(primary_keys)
    return [
        ColumnInfo(
            name=f.name,
            data_type=str(f.type),
            is_nullable=f.nullable,
            is_primary_key=f.name in pk_set,
        )
        for f in schema
    ]


def snapshot_from_arrow(
    schema: str,
    table: str,
    data: pa.Table,
    primary_keys: Iterable[str] = (),
    row_count: Optional[int] = None,
) -> TableSnapshot:
    """Build a TableSnapshot from an Arrow table"""
    return TableSnapshot(
        schema=schema,
        table=table,
        columns=columns_from_arrow_schema(data.schema, primary_keys),
        rows=rows_from_arrow(data),
        row_count=row_count if row_count is not None else data.num_rows,
    )
