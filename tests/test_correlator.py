"""
Tests for event correlation
"""
from unittest.mock import patch

import pytest

from table_trace.cache.memory_cache import MemoryCache
from table_trace.cdc.models import ChangeEvent
from table_trace.correlation.correlator import (
    CorrelationMethod,
    CorrelationOptions,
    EventCorrelator,
    build_timeline,
    calculate_confidence,
    correlate_events,
    format_confidence,
    format_correlation_method,
    get_ungrouped_events,
    has_related_foreign_keys,
)


def grouped_ids(groups):
    return {e.id for g in groups for e in g.events}


class TestTimestampGrouping:
    def test_related_foreign_keys_give_mixed_group(self, make_event):
        """Two tables sharing user_id=42 five milliseconds apart"""
        events = [
            make_event("INSERT", table="orders", after={"id": 1, "user_id": 42}, offset_ms=0),
            make_event("INSERT", table="payments", after={"id": 9, "user_id": 42}, offset_ms=5),
        ]
        groups = correlate_events(events, CorrelationOptions(window_ms=100, min_group_size=2))

        assert len(groups) == 1
        group = groups[0]
        assert group.method == CorrelationMethod.MIXED
        base = calculate_confidence([0, 5], 100)
        assert group.confidence == pytest.approx(min(1.0, base + 0.2))
        assert group.confidence <= 1.0
        assert [e.id for e in group.events] == ["1", "2"]
        assert group.tables == ["public.orders", "public.payments"]

    def test_without_foreign_key_hints(self, make_event):
        events = [
            make_event("INSERT", table="orders", after={"id": 1, "user_id": 42}, offset_ms=0),
            make_event("INSERT", table="payments", after={"id": 9, "user_id": 42}, offset_ms=5),
        ]
        groups = correlate_events(events, CorrelationOptions(use_foreign_keys=False))
        assert groups[0].method == CorrelationMethod.TIMESTAMP
        assert groups[0].confidence == pytest.approx(0.885)

    def test_shared_value_within_one_table_is_not_related(self, make_event):
        events = [
            make_event("INSERT", table="orders", after={"id": 1, "user_id": 42}),
            make_event("INSERT", table="orders", after={"id": 2, "user_id": 42}, offset_ms=1),
        ]
        assert not has_related_foreign_keys(events)
        assert correlate_events(events)[0].method == CorrelationMethod.TIMESTAMP

    def test_primary_key_values_count_as_join_values(self, make_event):
        events = [
            make_event("INSERT", table="users", after={"id": 42}, primary_key={"id": 42}),
            make_event("INSERT", table="orders", after={"id": 1, "user_id": 42}, offset_ms=3),
        ]
        assert has_related_foreign_keys(events)

    def test_window_is_anchored_on_first_event(self, make_event):
        events = [
            make_event(after={"id": 1}, offset_ms=0),
            make_event(after={"id": 2}, offset_ms=60),
            make_event(after={"id": 3}, offset_ms=120),
        ]
        groups = correlate_events(events, CorrelationOptions(window_ms=100))

        assert len(groups) == 1
        assert [e.id for e in groups[0].events] == ["1", "2"]
        assert [e.id for e in get_ungrouped_events(events, groups)] == ["3"]

    def test_window_edge_uses_whole_milliseconds(self):
        """Sub-millisecond digits are dropped before the window comparison"""
        def event(id, timestamp):
            return ChangeEvent(id, "INSERT", "public", "users", timestamp, after={"id": id})

        events = [
            event("a", "2024-05-01T12:00:00.000000000+00:00"),
            event("b", "2024-05-01T12:00:00.100900000+00:00"),
        ]
        groups = correlate_events(events, CorrelationOptions(window_ms=100))
        assert len(groups) == 1
        assert groups[0].confidence == pytest.approx(0.6)

        late = [events[0], event("c", "2024-05-01T12:00:00.101000+00:00")]
        assert correlate_events(late, CorrelationOptions(window_ms=100)) == []

    def test_min_group_size(self, make_event):
        events = [make_event(after={"id": 1}), make_event(after={"id": 2}, offset_ms=10)]
        assert correlate_events(events, CorrelationOptions(min_group_size=3)) == []
        assert len(correlate_events(events, CorrelationOptions(min_group_size=2))) == 1

    def test_groups_are_newest_first(self, make_event):
        events = [
            make_event(after={"id": 1}, offset_ms=0),
            make_event(after={"id": 2}, offset_ms=10),
            make_event(after={"id": 3}, offset_ms=5000),
            make_event(after={"id": 4}, offset_ms=5010),
        ]
        groups = correlate_events(list(reversed(events)))
        assert [[e.id for e in g.events] for g in groups] == [["3", "4"], ["1", "2"]]
        assert groups[0].id == f"ts-{events[2].timestamp}-2"
        assert groups[0].timestamp == events[2].timestamp

    def test_every_event_in_at_most_one_group(self, make_event):
        events = [make_event(after={"id": i}, offset_ms=i * 30) for i in range(10)]
        groups = correlate_events(events)
        ids = [e.id for g in groups for e in g.events]
        assert len(ids) == len(set(ids))
        for g in groups:
            assert g.size >= 2

    def test_wider_window_keeps_separated_clusters_grouped(self, make_event):
        events = [
            make_event(after={"id": 1}, offset_ms=0),
            make_event(after={"id": 2}, offset_ms=10),
            make_event(after={"id": 3}, offset_ms=500),
            make_event(after={"id": 4}, offset_ms=520),
        ]
        narrow = correlate_events(events, CorrelationOptions(window_ms=50))
        wide = correlate_events(events, CorrelationOptions(window_ms=100))
        assert grouped_ids(narrow) <= grouped_ids(wide)
        assert len(narrow) == len(wide) == 2


class TestTransactionGrouping:
    def test_transaction_groups_and_residual(self, make_event):
        events = [
            make_event(after={"id": 1}, offset_ms=0, transaction_id=7),
            make_event(after={"id": 2}, offset_ms=400, transaction_id=7),
            make_event(after={"id": 3}, offset_ms=10, transaction_id=7),
            make_event(after={"id": 4}, offset_ms=1000, transaction_id=8),
            make_event(after={"id": 5}, offset_ms=1050),
        ]
        groups = correlate_events(events)

        assert len(groups) == 2
        residual, txn = groups
        assert txn.id == "txn-7"
        assert txn.method == CorrelationMethod.TRANSACTION
        assert txn.confidence == 1.0
        assert txn.transaction_id == 7
        assert [e.id for e in txn.events] == ["1", "3", "2"]

        assert residual.method == CorrelationMethod.TIMESTAMP
        assert [e.id for e in residual.events] == ["4", "5"]
        assert residual.confidence == pytest.approx(0.75)

    def test_transaction_id_from_payload(self):
        event = ChangeEvent.from_dict({
            "id": 1, "type": "insert", "schema": "public", "table": "t",
            "timestamp": "2024-05-01T12:00:00Z", "after": {"id": 1}, "xid": "12",
        })
        assert event.transaction_id == 12


class TestConfidence:
    def test_bounds(self):
        assert calculate_confidence([0], 100) == 0.5
        assert calculate_confidence([0, 0], 100) == pytest.approx(0.9)
        assert calculate_confidence([0, 100], 100) == pytest.approx(0.6)
        assert calculate_confidence([0, 1000], 100) == 0.5

    def test_groups_stay_in_range(self, make_event):
        events = [make_event(after={"id": i}, offset_ms=i * 7) for i in range(12)]
        for group in correlate_events(events):
            assert 0.5 <= group.confidence <= 1.0


class TestBadTimestamps:
    def test_unparseable_timestamp_stays_ungrouped(self, make_event):
        bad = make_event(after={"id": 99}, id="bad")
        bad.timestamp = "not-a-time"
        events = [make_event(after={"id": 1}), make_event(after={"id": 2}, offset_ms=10), bad]

        groups = correlate_events(events)
        assert grouped_ids(groups) == {"1", "2"}
        assert get_ungrouped_events(events, groups) == [bad]

        timeline = build_timeline(events, groups)
        assert timeline.items[-1].event is bad


class TestTimeline:
    def test_merges_groups_and_singles_oldest_first(self, make_event):
        events = [
            make_event(after={"id": 1}, offset_ms=0),
            make_event(after={"id": 2}, offset_ms=10),
            make_event(after={"id": 3}, offset_ms=3000),
            make_event(after={"id": 4}, offset_ms=-2000),
        ]
        groups = correlate_events(events)
        timeline = build_timeline(events, groups)

        assert len(timeline.groups) == 1
        assert [e.id for e in timeline.ungrouped] == ["3", "4"]
        kinds = [("group" if item.is_group else item.event.id) for item in timeline.items]
        assert kinds == ["4", "group", "3"]

    def test_empty(self):
        timeline = build_timeline([], [])
        assert timeline.items == [] and timeline.groups == []


def test_format_helpers():
    assert format_correlation_method(CorrelationMethod.TRANSACTION) == "Same Transaction"
    assert format_correlation_method("timestamp") == "Time Proximity"
    assert format_correlation_method("foreign_key") == "Related Data"
    assert format_correlation_method(CorrelationMethod.MIXED) == "Time + Related"
    assert format_correlation_method("bogus") == "Unknown"

    assert format_confidence(1.0) == "High"
    assert format_confidence(0.9) == "High"
    assert format_confidence(0.75) == "Medium"
    assert format_confidence(0.5) == "Low"


def test_invalid_options():
    with pytest.raises(ValueError):
        CorrelationOptions(window_ms=0)
    with pytest.raises(ValueError):
        CorrelationOptions(min_group_size=0)


class TestEventCorrelator:
    def test_caches_by_window_content(self, make_event):
        correlator = EventCorrelator(cache=MemoryCache(ttl=60))
        events = [make_event(after={"id": 1}), make_event(after={"id": 2}, offset_ms=10)]

        first = correlator.correlate(events)
        with patch("table_trace.correlation.correlator.correlate_events") as recompute:
            assert correlator.correlate(list(events)) is first
            recompute.assert_not_called()

    def test_new_event_or_options_recompute(self, make_event):
        correlator = EventCorrelator(cache=MemoryCache(ttl=60))
        events = [make_event(after={"id": 1}), make_event(after={"id": 2}, offset_ms=10)]
        correlator.correlate(events)

        more = events + [make_event(after={"id": 3}, offset_ms=20)]
        assert grouped_ids(correlator.correlate(more)) == {"1", "2", "3"}
        assert correlator.correlate(events, CorrelationOptions(min_group_size=3)) == []

    def test_without_cache(self, make_event):
        events = [make_event(after={"id": 1}), make_event(after={"id": 2}, offset_ms=10)]
        timeline = EventCorrelator().timeline(events)
        assert len(timeline.groups) == 1
        assert timeline.ungrouped == []
