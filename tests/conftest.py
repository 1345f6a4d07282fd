"""
Shared fixtures for the table_trace test suite
"""
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from table_trace.cdc.models import ChangeEvent, ColumnInfo

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def ts(offset_ms: float = 0) -> str:
    """ISO timestamp offset from a fixed base time"""
    return (BASE_TIME + timedelta(milliseconds=offset_ms)).isoformat().replace("+00:00", "Z")


@pytest.fixture
def make_event():
    """Factory for change events with sequential ids"""
    counter = itertools.count(1)

    def _make(type="INSERT", table="users", schema="public", before=None, after=None,
              offset_ms=0, primary_key=None, transaction_id=None, id=None):
        return ChangeEvent(
            id=str(id if id is not None else next(counter)),
            type=type,
            schema=schema,
            table=table,
            timestamp=ts(offset_ms),
            before=before,
            after=after,
            primary_key=primary_key,
            transaction_id=transaction_id,
        )

    return _make


@pytest.fixture
def user_columns():
    return [
        ColumnInfo(name="id", data_type="integer", is_nullable=False, is_primary_key=True),
        ColumnInfo(name="name", data_type="text"),
        ColumnInfo(name="status", data_type="text"),
    ]
