"""
table_trace package - change event correlation and table reconciliation

Expose the data model, the pure reconciliation/correlation functions and
the watcher that ties them to a live event log.
"""
from .cdc.models import ChangeEvent, ChangeType, ColumnInfo, TableSnapshot
from .cdc.event_log import EventLog
from .identity.row_identity import effective_pk_columns, row_identity
from .filters.filter_evaluator import parse_filter, matches_filter, filter_rows
from .highlights.reconciler import (
    RowHighlight,
    TableReconciler,
    build_highlight_map,
    build_combined_rows,
    classify_row,
)
from .correlation.correlator import (
    CorrelationGroup,
    CorrelationMethod,
    CorrelationOptions,
    EventCorrelator,
    correlate_events,
    get_ungrouped_events,
)
from .watcher import TableWatcher

__all__ = [
    "ChangeEvent",
    "ChangeType",
    "ColumnInfo",
    "TableSnapshot",
    "EventLog",
    "effective_pk_columns",
    "row_identity",
    "parse_filter",
    "matches_filter",
    "filter_rows",
    "RowHighlight",
    "TableReconciler",
    "build_highlight_map",
    "build_combined_rows",
    "classify_row",
    "CorrelationGroup",
    "CorrelationMethod",
    "CorrelationOptions",
    "EventCorrelator",
    "correlate_events",
    "get_ungrouped_events",
    "TableWatcher",
]
