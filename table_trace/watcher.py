"""
TableWatcher - ties the event log, snapshot source, reconciler and
correlator together for a set of watched tables.
"""
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from table_trace.cache.memory_cache import MemoryCache
from table_trace.cdc.event_log import EventLog
from table_trace.cdc.models import ChangeEvent, ColumnLike, TableSnapshot
from table_trace.cdc.polling import PollingChangeDetector
from table_trace.cdc.snapshot_source import IbisSnapshotSource, SnapshotSource
from table_trace.config import TableTraceConfig, get_config
from table_trace.correlation.correlator import CorrelationOptions, EventCorrelator, Timeline
from table_trace.errors import InvalidChangeEventError
from table_trace.filters.filter_evaluator import filter_rows, parse_filter
from table_trace.highlights.reconciler import ReconciledTable, TableReconciler

logger = logging.getLogger(__name__)

ChangeProcessor = Callable[[ChangeEvent], Awaitable[None]]


class TableWatcher:
    def __init__(
        self,
        snapshot_source: SnapshotSource,
        config: Optional[TableTraceConfig] = None,
        event_log: Optional[EventLog] = None,
    ):
        """
        Args:
            snapshot_source: Source of current table rows
            config: Engine configuration, defaults to the global config
            event_log: Shared event log, created from config.max_events if omitted
        """
        self.config = config or get_config()
        self.snapshot_source = snapshot_source
        self.event_log = event_log or EventLog(self.config.max_events)
        self.cache = MemoryCache(ttl=self.config.cache_ttl) if self.config.enable_cache else None
        self.correlator = EventCorrelator(self.config.correlation_options(), self.cache)

        self.reconcilers: Dict[str, TableReconciler] = {}
        self.snapshots: Dict[str, TableSnapshot] = {}
        self.views: Dict[str, ReconciledTable] = {}
        self.change_processors: List[ChangeProcessor] = []
        self.running = False

        # Per-table refresh dispatch counters
        self._dispatched: Dict[str, int] = {}
        self._applied: Dict[str, int] = {}

    @property
    def watched_tables(self) -> List[str]:
        return list(self.reconcilers)

    def is_watched(self, schema: str, table: str) -> bool:
        return f"{schema}.{table}" in self.reconcilers

    async def watch_table(self, schema: str, table: str, columns: Optional[List[ColumnLike]] = None) -> ReconciledTable:
        """Start watching a table and build its first view"""
        full_name = f"{schema}.{table}"
        snapshot = await self._fetch(schema, table)
        table_columns = columns if columns is not None else snapshot.columns
        if self.cache is not None:
            # Re-watching may change the identity columns
            self.cache.invalidate_prefix(f"highlights:{full_name}:")
        reconciler = TableReconciler(schema, table, table_columns, self.cache)
        self.reconcilers[full_name] = reconciler
        logger.info("Watching %s (identity columns: %s)", full_name, reconciler.pk_columns)
        return self._merge(reconciler, snapshot, self._next_dispatch(full_name))

    def unwatch_table(self, schema: str, table: str) -> None:
        full_name = f"{schema}.{table}"
        self.reconcilers.pop(full_name, None)
        self.snapshots.pop(full_name, None)
        self.views.pop(full_name, None)
        if self.cache is not None:
            self.cache.invalidate_prefix(f"highlights:{full_name}:")
        logger.info("Stopped watching %s", full_name)

    def unwatch_all(self) -> None:
        for full_name in list(self.reconcilers):
            schema, _, table = full_name.partition(".")
            self.unwatch_table(schema, table)

    def register_change_processor(self, processor_func: ChangeProcessor) -> None:
        """Register a coroutine called for every accepted event"""
        self.change_processors.append(processor_func)

    async def add_event(self, event: ChangeEvent) -> Optional[ReconciledTable]:
        """
        Append an event to the log and refresh its table if it is watched.

        Returns the refreshed view, or None when the table is not watched or
        the event was rejected.
        """
        try:
            event.validate()
        except InvalidChangeEventError as e:
            logger.warning("Rejected change event: %s", e)
            return None

        self.event_log.add(event)

        for processor in self.change_processors:
            try:
                await processor(event)
            except Exception as e:
                logger.error("Error in change processor: %s", e)

        if self.is_watched(event.schema, event.table):
            return await self.refresh_table(event.schema, event.table)
        return None

    async def add_payload(self, payload: dict) -> Optional[ReconciledTable]:
        """Parse a change payload from the backend and add it as an event"""
        try:
            event = ChangeEvent.from_dict(payload)
        except (InvalidChangeEventError, TypeError, ValueError) as e:
            logger.warning("Rejected change payload %r: %s", payload.get("id"), e)
            return None
        return await self.add_event(event)

    async def refresh_table(self, schema: str, table: str) -> ReconciledTable:
        """Fetch a fresh snapshot and merge it with the current event log"""
        full_name = f"{schema}.{table}"
        reconciler = self.reconcilers.get(full_name)
        if reconciler is None:
            raise KeyError(f"Table {full_name} is not watched")

        dispatch = self._next_dispatch(full_name)
        snapshot = await self._fetch(schema, table)
        # The merge reads the log as it is now, so events that arrived while
        # the fetch was in flight are part of the view
        return self._merge(reconciler, snapshot, dispatch)

    async def _fetch(self, schema: str, table: str) -> TableSnapshot:
        # Offload the snapshot query to the thread pool to avoid blocking the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.snapshot_source.fetch_snapshot, schema, table)

    def _next_dispatch(self, full_name: str) -> int:
        self._dispatched[full_name] = self._dispatched.get(full_name, 0) + 1
        return self._dispatched[full_name]

    def _merge(self, reconciler: TableReconciler, snapshot: TableSnapshot, dispatch: int) -> ReconciledTable:
        full_name = reconciler.full_name
        if dispatch >= self._applied.get(full_name, 0):
            # A slower, older fetch never replaces a newer snapshot
            self._applied[full_name] = dispatch
            self.snapshots[full_name] = snapshot
        view = reconciler.reconcile(self.snapshots[full_name].rows, self.event_log.snapshot(), self.event_log.version)
        self.views[full_name] = view
        return view

    def table_view(self, schema: str, table: str) -> Optional[ReconciledTable]:
        """Current view of a watched table against the latest event log"""
        full_name = f"{schema}.{table}"
        reconciler = self.reconcilers.get(full_name)
        snapshot = self.snapshots.get(full_name)
        if reconciler is None or snapshot is None:
            return None
        view = reconciler.reconcile(snapshot.rows, self.event_log.snapshot(), self.event_log.version)
        self.views[full_name] = view
        return view

    def filtered_rows(self, schema: str, table: str, filter_text: str = "", show_only_changed: bool = False) -> List[dict]:
        view = self.table_view(schema, table)
        if view is None:
            return []
        return filter_rows(
            view.combined_rows,
            parse_filter(filter_text),
            highlight_map=view.highlight_map,
            pk_columns=view.pk_columns,
            show_only_changed=show_only_changed,
        )

    def timeline(self, options: Optional[CorrelationOptions] = None) -> Timeline:
        """Correlation groups and ungrouped events over the whole log"""
        return self.correlator.timeline(self.event_log.snapshot(), options)

    def clear_events(self) -> None:
        self.event_log.clear()

    async def process_stream(self, stream: AsyncIterator[ChangeEvent]) -> None:
        """Consume a change stream until it ends or stop() is called"""
        self.running = True
        async for event in stream:
            if not self.running:
                break
            await self.add_event(event)
        self.running = False

    async def poll_table(self, detector: PollingChangeDetector, schema: str, table: str) -> None:
        """Feed polling-detected changes of a watched table into the log until stopped"""
        reconciler = self.reconcilers.get(f"{schema}.{table}")
        columns = reconciler.columns if reconciler is not None else None
        await detector.start_tracking_table(schema, table, columns)
        await self.process_stream(detector.get_change_stream(schema, table))

    def stop(self) -> None:
        self.running = False

    @classmethod
    def from_config(cls, config: Optional[TableTraceConfig] = None) -> 'TableWatcher':
        """Watcher reading snapshots from the configured Ibis backend"""
        config = config or get_config()
        source = IbisSnapshotSource.from_uri(
            config.backend_uri,
            default_schema=config.default_schema,
            max_display_rows=config.max_display_rows,
        )
        return cls(source, config=config)
