"""
Example usage of table_trace with an in-memory DuckDB database.
"""
import asyncio
from datetime import datetime, timezone

import ibis

from table_trace.cdc.models import ChangeEvent
from table_trace.cdc.snapshot_source import IbisSnapshotSource
from table_trace.config import TableTraceConfig
from table_trace.correlation.correlator import format_confidence, format_correlation_method
from table_trace.util.formatters import format_cell_value
from table_trace.watcher import TableWatcher


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def main():
    con = ibis.duckdb.connect()
    con.raw_sql("CREATE TABLE users (id INTEGER PRIMARY KEY, name VARCHAR, status VARCHAR)")
    con.raw_sql("CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER, total DOUBLE)")
    con.raw_sql("INSERT INTO users VALUES (1, 'ada', 'active'), (2, 'bob', 'new')")

    source = IbisSnapshotSource(con, default_schema="main", primary_keys={"main.users": ["id"], "main.orders": ["id"]})
    watcher = TableWatcher(source, config=TableTraceConfig(default_schema="main"))
    await watcher.watch_table("main", "users")

    # A user signs up and places an order in one transaction
    con.raw_sql("INSERT INTO users VALUES (3, 'cy', 'new')")
    con.raw_sql("INSERT INTO orders VALUES (10, 3, 42.5)")
    await watcher.add_event(ChangeEvent("1", "INSERT", "main", "users", now(),
                                        after={"id": 3, "name": "cy", "status": "new"}, transaction_id=900))
    await watcher.add_event(ChangeEvent("2", "INSERT", "main", "orders", now(),
                                        after={"id": 10, "user_id": 3, "total": 42.5}, transaction_id=900))

    con.raw_sql("UPDATE users SET status = 'active' WHERE id = 2")
    await watcher.add_event(ChangeEvent("3", "UPDATE", "main", "users", now(),
                                        before={"id": 2, "name": "bob", "status": "new"},
                                        after={"id": 2, "name": "bob", "status": "active"}))

    con.raw_sql("DELETE FROM users WHERE id = 1")
    view = await watcher.add_event(ChangeEvent("4", "DELETE", "main", "users", now(),
                                               before={"id": 1, "name": "ada", "status": "active"}))

    print("main.users:")
    for row, state in zip(view.combined_rows, view.row_states()):
        marker = "-" if state.is_deleted else "+" if state.is_newly_inserted else "~" if state.is_highlighted else " "
        cells = ", ".join(
            f"{k}={format_cell_value(v)}{'*' if state.is_changed_column(k) else ''}" for k, v in row.items()
        )
        print(f"  {marker} {cells}")

    print("\nTimeline:")
    for item in watcher.timeline().items:
        if item.is_group:
            group = item.group
            print(f"  [{format_correlation_method(group.method)}, {format_confidence(group.confidence)}] "
                  f"{group.size} events on {', '.join(group.tables)}")
        else:
            print(f"  {item.event.type.value} {item.event.full_name}")


if __name__ == "__main__":
    asyncio.run(main())
