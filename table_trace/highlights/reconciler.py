"""
HighlightReconciler - replays a table's change events into per-row highlight
state and merges it with the table's current rows.

Replay is oldest-first. For each row identity the first event fixes
``first_event_type``; every event moves ``last_event_type``; UPDATEs add to
``changed_columns``; a DELETE keeps the pre-image so the row can still be
shown (struck through) once it has left the live snapshot.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from table_trace.cache.memory_cache import MemoryCache
from table_trace.cdc.models import ChangeEvent, ChangeType, ColumnLike, Row
from table_trace.diff.diff_engine import changed_columns as diff_changed_columns
from table_trace.errors import RowIdentityError
from table_trace.identity.row_identity import IDENTITY_DELIMITER, derive_identity, effective_pk_columns, row_identity

logger = logging.getLogger(__name__)


@dataclass
class RowHighlight:
    """Accumulated change state of one row identity"""
    first_event_type: ChangeType
    last_event_type: ChangeType
    changed_columns: Set[str] = field(default_factory=set)
    row_data: Optional[Row] = None  # Pre-image while the latest event is a DELETE


HighlightMap = Dict[str, RowHighlight]


def apply_event(highlight_map: HighlightMap, event: ChangeEvent, pk_columns: List[str]) -> Optional[str]:
    """
    Fold one event into the highlight map.

    Returns the identity the event was applied to. Raises RowIdentityError
    when the event carries no usable identity; the map is left untouched.
    """
    identity = derive_identity(event.row, pk_columns)
    if not identity:
        raise RowIdentityError(f"empty identity for event {event.id}")

    updated_columns: Set[str] = set()
    if event.type == ChangeType.UPDATE and event.before is not None and event.after is not None:
        updated_columns = diff_changed_columns(event.before, event.after)

    deleted_image = dict(event.before) if event.type == ChangeType.DELETE and event.before is not None else None

    existing = highlight_map.get(identity)
    if existing is None:
        highlight_map[identity] = RowHighlight(
            first_event_type=event.type,
            last_event_type=event.type,
            changed_columns=updated_columns,
            row_data=deleted_image,
        )
    else:
        existing.last_event_type = event.type
        existing.changed_columns |= updated_columns
        # Any non-DELETE event supersedes an earlier deletion
        existing.row_data = deleted_image
    return identity


def replay_highlights(events: Iterable[ChangeEvent], pk_columns: List[str]) -> HighlightMap:
    """Build a highlight map from events given oldest first"""
    highlight_map: HighlightMap = {}
    if not pk_columns:
        return highlight_map

    for event in events:
        try:
            apply_event(highlight_map, event, pk_columns)
        except RowIdentityError as e:
            logger.debug("Skipping event without identity: %s", e)
        except Exception as e:
            logger.warning("Skipping malformed event %s: %s", getattr(event, "id", "?"), e)
    return highlight_map


def build_highlight_map(
    events: List[ChangeEvent],
    schema: str,
    table: str,
    pk_columns: List[str],
    newest_first: bool = True,
) -> HighlightMap:
    """
    Build the highlight map of one table from the global event log.

    Args:
        events: Global event log
        schema: Schema of the table
        table: Table name
        pk_columns: Effective primary-key columns of the table
        newest_first: Whether ``events`` is ordered newest first (the log order)
    """
    table_events = [e for e in events if e.schema == schema and e.table == table]
    if newest_first:
        table_events.reverse()
    return replay_highlights(table_events, pk_columns)


def phantom_rows(rows: List[Row], highlight_map: HighlightMap, pk_columns: List[str]) -> List[Row]:
    """Rows whose latest event is a DELETE and that are gone from the snapshot"""
    existing_identities = {row_identity(row, pk_columns) for row in rows}
    deleted = []
    for identity, highlight in highlight_map.items():
        if (highlight.last_event_type == ChangeType.DELETE
                and highlight.row_data is not None
                and identity not in existing_identities):
            deleted.append(dict(highlight.row_data))
    return deleted


def build_combined_rows(rows: List[Row], highlight_map: HighlightMap, pk_columns: List[str]) -> List[Row]:
    """Current rows first, then phantom rows for deletions"""
    return list(rows) + phantom_rows(rows, highlight_map, pk_columns)


@dataclass(frozen=True)
class RowDisplayState:
    """How one row should be rendered"""
    identity: str
    is_deleted: bool = False
    is_newly_inserted: bool = False
    changed_columns: FrozenSet[str] = frozenset()

    @property
    def is_highlighted(self) -> bool:
        return self.is_deleted or self.is_newly_inserted or bool(self.changed_columns)

    def is_changed_column(self, column: str) -> bool:
        return column in self.changed_columns


def classify_row(row: Row, highlight_map: HighlightMap, pk_columns: List[str]) -> RowDisplayState:
    identity = row_identity(row, pk_columns)
    highlight = highlight_map.get(identity) if identity else None
    if highlight is None:
        return RowDisplayState(identity=identity)

    is_deleted = highlight.last_event_type == ChangeType.DELETE
    return RowDisplayState(
        identity=identity,
        is_deleted=is_deleted,
        is_newly_inserted=highlight.first_event_type == ChangeType.INSERT and not is_deleted,
        # Column highlights overlay insert styling but not deletion
        changed_columns=frozenset() if is_deleted else frozenset(highlight.changed_columns),
    )


@dataclass
class ReconciledTable:
    """Annotated live view of one watched table"""
    schema: str
    table: str
    pk_columns: List[str]
    highlight_map: HighlightMap
    combined_rows: List[Row]
    phantom_count: int = 0

    @property
    def changed_row_count(self) -> int:
        return len(self.highlight_map)

    def row_state(self, row: Row) -> RowDisplayState:
        return classify_row(row, self.highlight_map, self.pk_columns)

    def row_states(self) -> List[RowDisplayState]:
        return [self.row_state(row) for row in self.combined_rows]


class TableReconciler:
    """
    Reconciles one table's snapshot with the event log.

    The effective primary key is resolved once from the table schema and
    used for every identity lookup. Highlight maps are cached by event log
    version when a cache is supplied.
    """

    def __init__(self, schema: str, table: str, columns: Iterable[ColumnLike], cache: Optional[MemoryCache] = None):
        self.schema = schema
        self.table = table
        self.columns = list(columns)
        self.pk_columns = effective_pk_columns(self.columns)
        self.cache = cache

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table}"

    def _cache_key(self, log_version: int) -> str:
        return f"highlights:{self.full_name}:{IDENTITY_DELIMITER.join(self.pk_columns)}:v{log_version}"

    def highlight_map(self, events: List[ChangeEvent], log_version: Optional[int] = None) -> HighlightMap:
        """Highlight map for the table from a newest-first event log"""
        if self.cache is not None and log_version is not None:
            cached = self.cache.get(self._cache_key(log_version))
            if cached is not None:
                return cached

        highlights = build_highlight_map(events, self.schema, self.table, self.pk_columns)

        if self.cache is not None and log_version is not None:
            self.cache.set(self._cache_key(log_version), highlights)
        return highlights

    def reconcile(self, rows: List[Row], events: List[ChangeEvent], log_version: Optional[int] = None) -> ReconciledTable:
        """Merge current rows with the highlight state of the given event log"""
        highlights = self.highlight_map(events, log_version)
        deleted = phantom_rows(rows, highlights, self.pk_columns)
        return ReconciledTable(
            schema=self.schema,
            table=self.table,
            pk_columns=self.pk_columns,
            highlight_map=highlights,
            combined_rows=list(rows) + deleted,
            phantom_count=len(deleted),
        )
