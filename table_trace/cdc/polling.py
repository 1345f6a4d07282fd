"""
Polling-based change detection.

For databases without a replication stream, tracked tables are re-read on an
interval and successive snapshots are compared row by row (keyed by row
identity) to produce INSERT, UPDATE and DELETE events.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional

from table_trace.cdc.models import ChangeEvent, ChangeType, ColumnLike, Row
from table_trace.cdc.snapshot_source import IbisSnapshotSource, SnapshotSource
from table_trace.diff.diff_engine import changed_columns
from table_trace.identity.row_identity import effective_pk_columns, row_identity

logger = logging.getLogger(__name__)


class _TrackedTable:
    def __init__(self, schema: str, table: str, pk_columns: List[str], rows: Dict[str, Row], row_count: int):
        self.schema = schema
        self.table = table
        self.pk_columns = pk_columns
        self.rows = rows
        self.row_count = row_count


class PollingChangeDetector:
    """
    Detects changes in watched tables by polling their snapshots.
    """

    def __init__(self, snapshot_source: SnapshotSource, interval_ms: int = 1000):
        self.snapshot_source = snapshot_source
        self.interval_ms = interval_ms
        self.tracked: Dict[str, _TrackedTable] = {}
        self.running = False

    async def _fetch(self, schema: str, table: str):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.snapshot_source.fetch_snapshot, schema, table)

    def _index(self, rows: List[Row], pk_columns: List[str]) -> Dict[str, Row]:
        indexed = {}
        for row in rows:
            identity = row_identity(row, pk_columns)
            if identity:
                indexed[identity] = row
        return indexed

    async def start_tracking_table(self, schema: str, table: str, columns: Optional[List[ColumnLike]] = None) -> None:
        """Take the initial snapshot of a table"""
        snapshot = await self._fetch(schema, table)
        pk_columns = effective_pk_columns(columns if columns is not None else snapshot.columns)
        self.tracked[snapshot.full_name] = _TrackedTable(
            schema, table, pk_columns, self._index(snapshot.rows, pk_columns), snapshot.row_count
        )
        logger.info("Polling %s (identity columns: %s)", snapshot.full_name, pk_columns)

    def stop_tracking_table(self, schema: str, table: str) -> None:
        self.tracked.pop(f"{schema}.{table}", None)

    def _event(self, state: _TrackedTable, change_type: ChangeType, identity: str,
               before: Optional[Row], after: Optional[Row]) -> ChangeEvent:
        return ChangeEvent(
            id=str(uuid.uuid4()),
            type=change_type,
            schema=state.schema,
            table=state.table,
            timestamp=datetime.now(timezone.utc).isoformat(),
            before=before,
            after=after,
            primary_key={"pk": identity},
            source="polling",
        )

    async def detect_changes(self, schema: str, table: str) -> List[ChangeEvent]:
        """Compare a fresh snapshot with the previous one"""
        full_name = f"{schema}.{table}"
        state = self.tracked.get(full_name)
        if state is None:
            raise KeyError(f"Table {full_name} is not tracked")

        snapshot = await self._fetch(schema, table)
        new_rows = self._index(snapshot.rows, state.pk_columns)
        changes = []

        for identity, row in new_rows.items():
            old_row = state.rows.get(identity)
            if old_row is None:
                changes.append(self._event(state, ChangeType.INSERT, identity, None, row))
            elif changed_columns(old_row, row):
                changes.append(self._event(state, ChangeType.UPDATE, identity, old_row, row))

        for identity, old_row in state.rows.items():
            if identity not in new_rows:
                changes.append(self._event(state, ChangeType.DELETE, identity, old_row, None))

        if changes:
            logger.info("Detected %d changes in %s", len(changes), full_name)

        if changes or state.row_count != snapshot.row_count:
            state.rows = new_rows
            state.row_count = snapshot.row_count
        return changes

    async def get_change_stream(self, schema: str, table: str) -> AsyncGenerator[ChangeEvent, None]:
        """Poll a table until stop() is called or the table is no longer tracked"""
        full_name = f"{schema}.{table}"
        if full_name not in self.tracked:
            await self.start_tracking_table(schema, table)

        self.running = True
        while self.running and full_name in self.tracked:
            try:
                changes = await self.detect_changes(schema, table)
            except KeyError:
                break
            except Exception as e:
                logger.error("Error polling table %s: %s", full_name, e)
                changes = []
            for change in changes:
                yield change
            await asyncio.sleep(self.interval_ms / 1000.0)

    def stop(self) -> None:
        self.running = False

    @classmethod
    def from_config(cls, config) -> 'PollingChangeDetector':
        """Detector reading up to max_polling_rows per table from the configured backend"""
        source = IbisSnapshotSource.from_uri(
            config.backend_uri,
            default_schema=config.default_schema,
            max_display_rows=config.max_polling_rows,
        )
        return cls(source, interval_ms=config.polling_interval_ms)
