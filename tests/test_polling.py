"""
Tests for polling-based change detection
"""
import asyncio
from unittest.mock import MagicMock, patch

import pytest

from table_trace.cdc.models import ChangeType, ColumnInfo
from table_trace.cdc.polling import PollingChangeDetector
from table_trace.cdc.snapshot_source import InMemorySnapshotSource
from table_trace.config import TableTraceConfig
from table_trace.watcher import TableWatcher

COLUMNS = [ColumnInfo(name="id", is_primary_key=True), ColumnInfo(name="name")]


@pytest.fixture
def source():
    source = InMemorySnapshotSource()
    source.set_rows("public", "users", [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}], columns=COLUMNS)
    return source


@pytest.mark.asyncio
async def test_detects_insert_update_delete(source):
    detector = PollingChangeDetector(source)
    await detector.start_tracking_table("public", "users")

    source.set_rows("public", "users", [{"id": 1, "name": "a2"}, {"id": 3, "name": "c"}])
    changes = await detector.detect_changes("public", "users")

    by_type = {c.type: c for c in changes}
    assert set(by_type) == {ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE}
    assert by_type[ChangeType.INSERT].after == {"id": 3, "name": "c"}
    assert by_type[ChangeType.UPDATE].before == {"id": 1, "name": "a"}
    assert by_type[ChangeType.UPDATE].after == {"id": 1, "name": "a2"}
    assert by_type[ChangeType.DELETE].before == {"id": 2, "name": "b"}
    assert all(c.source == "polling" for c in changes)
    assert by_type[ChangeType.DELETE].primary_key == {"pk": "2"}
    for change in changes:
        change.validate()

    assert await detector.detect_changes("public", "users") == []


@pytest.mark.asyncio
async def test_untracked_table_raises(source):
    with pytest.raises(KeyError):
        await PollingChangeDetector(source).detect_changes("public", "users")


@pytest.mark.asyncio
async def test_change_stream_stops(source):
    detector = PollingChangeDetector(source, interval_ms=1)
    source.set_rows("public", "users", [{"id": 1, "name": "a"}])
    stream = detector.get_change_stream("public", "users")

    async def mutate_later():
        await asyncio.sleep(0.01)
        source.set_rows("public", "users", [{"id": 1, "name": "a"}, {"id": 9, "name": "z"}])

    task = asyncio.create_task(mutate_later())
    change = await asyncio.wait_for(stream.__anext__(), timeout=2)
    await task
    assert change.type == ChangeType.INSERT
    assert change.after == {"id": 9, "name": "z"}

    detector.stop()
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), timeout=2)


@pytest.mark.asyncio
async def test_watcher_poll_table(source):
    watcher = TableWatcher(source, config=TableTraceConfig())
    await watcher.watch_table("public", "users")
    detector = PollingChangeDetector(source, interval_ms=1)

    polling = asyncio.create_task(watcher.poll_table(detector, "public", "users"))
    await asyncio.sleep(0.02)
    source.set_rows("public", "users", [{"id": 1, "name": "a"}])

    for _ in range(200):
        if len(watcher.event_log):
            break
        await asyncio.sleep(0.01)
    detector.stop()
    watcher.stop()
    await asyncio.wait_for(polling, timeout=2)

    view = watcher.table_view("public", "users")
    assert view.phantom_count == 1
    assert view.combined_rows[-1] == {"id": 2, "name": "b"}


def test_from_config_uses_polling_settings():
    config = TableTraceConfig(backend_uri="duckdb://:memory:", max_polling_rows=77, polling_interval_ms=250)
    detector = PollingChangeDetector.from_config(config)
    assert detector.interval_ms == 250
    assert detector.snapshot_source.max_display_rows == 77
    assert detector.snapshot_source.default_schema == "main"


def test_from_config_passes_default_schema():
    with patch("table_trace.cdc.snapshot_source.ibis") as mock_ibis:
        mock_ibis.duckdb.connect.return_value = MagicMock()
        watcher = TableWatcher.from_config(TableTraceConfig(default_schema="analytics"))
    assert watcher.snapshot_source.default_schema == "analytics"
    assert watcher.snapshot_source.max_display_rows == 1000
