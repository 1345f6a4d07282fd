"""
Bounded in-memory event log.

Events are held newest first. Once capacity is reached the oldest event is
dropped. Every mutation bumps ``version`` so derived views can be cached
against it.
"""
import logging
from collections import deque
from typing import Deque, List, Optional

from table_trace.cdc.models import ChangeEvent

logger = logging.getLogger(__name__)


class EventLog:
    def __init__(self, max_events: int = 500):
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        self.max_events = max_events
        self._events: Deque[ChangeEvent] = deque(maxlen=max_events)
        self.version = 0

    def __len__(self) -> int:
        return len(self._events)

    def add(self, event: ChangeEvent) -> None:
        """Add a new event at the head of the log"""
        if len(self._events) == self.max_events:
            dropped = self._events[-1]
            logger.debug("Event log full, dropping oldest event %s", dropped.id)
        self._events.appendleft(event)
        self.version += 1

    def extend(self, events: List[ChangeEvent]) -> None:
        """Add events in arrival order (each becomes the new head)"""
        for event in events:
            self.add(event)

    def clear(self) -> None:
        self._events.clear()
        self.version += 1

    def snapshot(self) -> List[ChangeEvent]:
        """Copy of the log, newest first"""
        return list(self._events)

    def events_for_table(self, schema: str, table: str, limit: Optional[int] = None) -> List[ChangeEvent]:
        """Events of one table, newest first"""
        matching = [e for e in self._events if e.schema == schema and e.table == table]
        if limit is not None:
            return matching[:limit]
        return matching

    def recent_changes_for_table(self, schema: str, table: str, limit: int = 10) -> List[ChangeEvent]:
        return self.events_for_table(schema, table, limit=limit)
