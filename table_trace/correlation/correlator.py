"""
EventCorrelator - groups related change events into correlation groups.

Grouping signals, strongest first:
- Transaction id: events sharing an id are grouped with full confidence
- Timestamp proximity: events within ``window_ms`` of a group's first event
- Foreign-key hints: a shared key value across tables boosts a time group
"""
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, Union

from table_trace.cache.memory_cache import MemoryCache
from table_trace.cdc.models import ChangeEvent
from table_trace.util.formatters import timestamp_ms, to_display_string

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.5
MAX_TIMESTAMP_CONFIDENCE = 0.9
FOREIGN_KEY_BOOST = 0.2


class CorrelationMethod(Enum):
    """How events in a group were correlated"""
    TIMESTAMP = "timestamp"  # Grouped by time proximity
    FOREIGN_KEY = "foreign_key"  # Grouped by FK relationship
    TRANSACTION = "transaction"  # Grouped by transaction ID
    MIXED = "mixed"  # Time proximity plus related keys


@dataclass
class CorrelationOptions:
    window_ms: float = 100.0
    min_group_size: int = 2
    use_foreign_keys: bool = True

    def __post_init__(self):
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.min_group_size < 1:
            raise ValueError("min_group_size must be at least 1")

    def cache_token(self) -> str:
        return f"{self.window_ms}:{self.min_group_size}:{int(self.use_foreign_keys)}"


@dataclass
class CorrelationGroup:
    """A group of correlated events, oldest event first"""
    id: str
    events: List[ChangeEvent]
    timestamp: str  # Timestamp of the earliest event
    method: CorrelationMethod
    confidence: float
    transaction_id: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.events)

    @property
    def tables(self) -> List[str]:
        return sorted({e.full_name for e in self.events})


@dataclass
class TimelineItem:
    """Either a correlation group or a single ungrouped event"""
    timestamp: str
    group: Optional[CorrelationGroup] = None
    event: Optional[ChangeEvent] = None

    @property
    def is_group(self) -> bool:
        return self.group is not None


@dataclass
class Timeline:
    groups: List[CorrelationGroup] = field(default_factory=list)
    ungrouped: List[ChangeEvent] = field(default_factory=list)
    items: List[TimelineItem] = field(default_factory=list)


_Timed = Tuple[float, ChangeEvent]


def _with_times(events: List[ChangeEvent]) -> List[_Timed]:
    """Pair events with epoch milliseconds, leaving out unparseable timestamps"""
    timed = []
    for event in events:
        try:
            timed.append((timestamp_ms(event.timestamp), event))
        except (TypeError, ValueError) as e:
            logger.warning("Leaving event %s ungrouped, bad timestamp %r: %s", event.id, event.timestamp, e)
    return timed


def _sort_ascending(timed: List[_Timed]) -> List[_Timed]:
    # Stable: identical timestamps keep arrival order
    return sorted(timed, key=lambda t: t[0])


def calculate_confidence(times: List[float], window_ms: float) -> float:
    """Tighter spread gives higher confidence: 0ms -> 0.9, window_ms -> 0.6"""
    if len(times) < 2:
        return MIN_CONFIDENCE
    spread_ratio = (max(times) - min(times)) / window_ms
    confidence = MAX_TIMESTAMP_CONFIDENCE - spread_ratio * 0.3
    return max(MIN_CONFIDENCE, min(MAX_TIMESTAMP_CONFIDENCE, confidence))


def _candidate_join_values(event: ChangeEvent) -> Set[str]:
    values = set()
    for value in (event.primary_key or {}).values():
        if value is not None:
            values.add(to_display_string(value))
    for key, value in (event.after or {}).items():
        # Likely FK columns end with _id
        if key.endswith("_id") and value is not None:
            values.add(to_display_string(value))
    return values


def has_related_foreign_keys(events: List[ChangeEvent]) -> bool:
    """Whether some key value appears in events of two or more distinct tables"""
    if len(events) < 2:
        return False

    tables_by_value: Dict[str, Set[str]] = {}
    for event in events:
        for value in _candidate_join_values(event):
            tables = tables_by_value.setdefault(value, set())
            tables.add(event.full_name)
            if len(tables) > 1:
                return True
    return False


def _timestamp_group(timed: List[_Timed], options: CorrelationOptions) -> CorrelationGroup:
    ordered = _sort_ascending(timed)
    events = [e for _, e in ordered]
    confidence = calculate_confidence([t for t, _ in ordered], options.window_ms)
    method = CorrelationMethod.TIMESTAMP

    if options.use_foreign_keys and has_related_foreign_keys(events):
        confidence = min(1.0, confidence + FOREIGN_KEY_BOOST)
        method = CorrelationMethod.MIXED

    return CorrelationGroup(
        id=f"ts-{events[0].timestamp}-{len(events)}",
        events=events,
        timestamp=events[0].timestamp,
        method=method,
        confidence=confidence,
    )


def _correlate_timed_by_timestamp(timed: List[_Timed], options: CorrelationOptions) -> List[Tuple[float, CorrelationGroup]]:
    if not timed:
        return []

    ordered = _sort_ascending(timed)
    groups = []
    current = [ordered[0]]
    anchor = ordered[0][0]

    for entry in ordered[1:]:
        # The window is measured from the group's first event, it does not slide
        if entry[0] - anchor <= options.window_ms:
            current.append(entry)
            continue
        if len(current) >= options.min_group_size:
            groups.append((anchor, _timestamp_group(current, options)))
        current = [entry]
        anchor = entry[0]

    if len(current) >= options.min_group_size:
        groups.append((anchor, _timestamp_group(current, options)))
    return groups


def _correlate_timed_by_transaction(timed: List[_Timed], options: CorrelationOptions) -> List[Tuple[float, CorrelationGroup]]:
    buckets: Dict[int, List[_Timed]] = {}
    residual: List[_Timed] = []

    for entry in timed:
        xid = entry[1].transaction_id
        if xid is None:
            residual.append(entry)
        else:
            buckets.setdefault(xid, []).append(entry)

    result = []
    for xid, bucket in buckets.items():
        if len(bucket) < options.min_group_size:
            residual.extend(bucket)
            continue
        ordered = _sort_ascending(bucket)
        events = [e for _, e in ordered]
        result.append((ordered[0][0], CorrelationGroup(
            id=f"txn-{xid}",
            events=events,
            timestamp=events[0].timestamp,
            method=CorrelationMethod.TRANSACTION,
            confidence=1.0,
            transaction_id=xid,
        )))

    result.extend(_correlate_timed_by_timestamp(residual, options))
    return result


def correlate_events(events: List[ChangeEvent], options: Optional[CorrelationOptions] = None) -> List[CorrelationGroup]:
    """
    Correlate events into groups, newest group first.

    Transaction ids are used when any event carries one; the events they do
    not account for are grouped by timestamp proximity.
    """
    opts = options or CorrelationOptions()
    timed = _with_times(events)

    if any(e.transaction_id is not None for _, e in timed):
        groups = _correlate_timed_by_transaction(timed, opts)
    else:
        groups = _correlate_timed_by_timestamp(timed, opts)

    groups.sort(key=lambda g: g[0], reverse=True)
    return [group for _, group in groups]


def get_ungrouped_events(events: List[ChangeEvent], groups: List[CorrelationGroup]) -> List[ChangeEvent]:
    """Events not in any correlation group, in input order"""
    grouped_ids = {e.id for group in groups for e in group.events}
    return [e for e in events if e.id not in grouped_ids]


def build_timeline(events: List[ChangeEvent], groups: List[CorrelationGroup]) -> Timeline:
    """Merge groups and ungrouped events into one oldest-first timeline"""
    ungrouped = get_ungrouped_events(events, groups)
    keyed: List[Tuple[float, TimelineItem]] = []

    for group in groups:
        keyed.append((timestamp_ms(group.timestamp), TimelineItem(timestamp=group.timestamp, group=group)))
    for event in ungrouped:
        try:
            when = timestamp_ms(event.timestamp)
        except (TypeError, ValueError):
            when = float("inf")
        keyed.append((when, TimelineItem(timestamp=event.timestamp, event=event)))

    keyed.sort(key=lambda k: k[0])
    return Timeline(groups=groups, ungrouped=ungrouped, items=[item for _, item in keyed])


def format_correlation_method(method: Union[CorrelationMethod, str]) -> str:
    """Format correlation method for display"""
    try:
        method = CorrelationMethod(method)
    except ValueError:
        return "Unknown"
    return {
        CorrelationMethod.TRANSACTION: "Same Transaction",
        CorrelationMethod.TIMESTAMP: "Time Proximity",
        CorrelationMethod.FOREIGN_KEY: "Related Data",
        CorrelationMethod.MIXED: "Time + Related",
    }[method]


def format_confidence(confidence: float) -> str:
    """Format confidence score for display"""
    if confidence >= 0.9:
        return "High"
    if confidence >= 0.7:
        return "Medium"
    return "Low"


class EventCorrelator:
    """
    Correlates an event window, caching results by the content of the window.
    """

    def __init__(self, options: Optional[CorrelationOptions] = None, cache: Optional[MemoryCache] = None):
        self.options = options or CorrelationOptions()
        self.cache = cache

    def _window_digest(self, events: List[ChangeEvent], options: CorrelationOptions) -> str:
        digest = hashlib.sha256(options.cache_token().encode("utf-8"))
        for event in events:
            digest.update(b"\x00")
            digest.update(f"{event.id}|{event.timestamp}".encode("utf-8"))
        return f"correlation:{digest.hexdigest()[:32]}"

    def correlate(self, events: List[ChangeEvent], options: Optional[CorrelationOptions] = None) -> List[CorrelationGroup]:
        opts = options or self.options
        if self.cache is None:
            return correlate_events(events, opts)

        key = self._window_digest(events, opts)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        groups = correlate_events(events, opts)
        self.cache.set(key, groups)
        return groups

    def timeline(self, events: List[ChangeEvent], options: Optional[CorrelationOptions] = None) -> Timeline:
        return build_timeline(events, self.correlate(events, options))
