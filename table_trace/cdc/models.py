"""
Data models for change events and table snapshots
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Union

from table_trace.errors import InvalidChangeEventError

Row = Dict[str, Any]


class ChangeType(str, Enum):
    """Kind of row mutation"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """Represents one committed row mutation on a watched table"""
    id: str
    type: ChangeType
    schema: str
    table: str
    timestamp: str  # ISO-8601
    before: Optional[Row] = None
    after: Optional[Row] = None
    primary_key: Optional[Dict[str, Any]] = None
    transaction_id: Optional[int] = None
    source: str = "unknown"

    def __post_init__(self):
        if not isinstance(self.type, ChangeType):
            try:
                self.type = ChangeType(str(self.type).upper())
            except ValueError:
                raise InvalidChangeEventError(f"Unknown change type '{self.type}' for event {self.id}")

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table}"

    @property
    def row(self) -> Optional[Row]:
        """The row image to key identity off: after-image, else before-image"""
        return self.after if self.after is not None else self.before

    def validate(self) -> 'ChangeEvent':
        """Check the image invariants for this event type"""
        if self.before is None and self.after is None:
            raise InvalidChangeEventError(f"Event {self.id} has neither before nor after image")
        if self.type == ChangeType.INSERT and self.after is None:
            raise InvalidChangeEventError(f"INSERT event {self.id} is missing its after image")
        if self.type == ChangeType.DELETE and self.before is None:
            raise InvalidChangeEventError(f"DELETE event {self.id} is missing its before image")
        if self.type == ChangeType.UPDATE and (self.before is None or self.after is None):
            raise InvalidChangeEventError(f"UPDATE event {self.id} needs both before and after images")
        return self

    @staticmethod
    def from_dict(d: dict) -> 'ChangeEvent':
        """Build an event from the backend's JSON payload"""
        transaction_id = d.get("transaction_id", d.get("xid"))
        return ChangeEvent(
            id=str(d.get("id")),
            type=d.get("type"),
            schema=d.get("schema"),
            table=d.get("table"),
            timestamp=d.get("timestamp"),
            before=d.get("before"),
            after=d.get("after"),
            primary_key=d.get("primary_key"),
            transaction_id=int(transaction_id) if transaction_id is not None else None,
            source=d.get("source", "unknown"),
        )


@dataclass
class ColumnInfo:
    """Column metadata as reported by the schema reader"""
    name: str
    data_type: str = "text"
    is_nullable: bool = True
    is_primary_key: bool = False
    default_value: Optional[str] = None

    @staticmethod
    def from_dict(d: dict) -> 'ColumnInfo':
        return ColumnInfo(
            name=d["name"],
            data_type=d.get("data_type", "text"),
            is_nullable=d.get("is_nullable", True),
            is_primary_key=bool(d.get("is_primary_key", False)),
            default_value=d.get("default_value"),
        )


ColumnLike = Union[ColumnInfo, Dict[str, Any]]


@dataclass
class TableSnapshot:
    """Current rows of one table at a point in time"""
    schema: str
    table: str
    columns: List[ColumnInfo] = field(default_factory=list)
    rows: List[Row] = field(default_factory=list)
    row_count: int = 0
    fetched_at: float = field(default_factory=time.time)

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.table}"
