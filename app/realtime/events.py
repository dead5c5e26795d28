"""
Change events and subscription topics for the realtime feed.

Filters use the realtime service syntax ``column=eq.value`` and may only name
indexed columns, so the broker can route without scanning.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.utils.timestamps import utcnow

INDEXED_COLUMNS: Dict[str, FrozenSet[str]] = {
    "rides": frozenset({"id", "driver_id"}),
    "ride_requests": frozenset({"id", "ride_id", "passenger_id"}),
    "messages": frozenset({"id", "ride_request_id", "sender_id", "receiver_id"}),
}


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class InvalidFilter(ValueError):
    pass


class ChangeEvent(BaseModel):
    """One committed row write. Redelivery keeps the same seq."""
    model_config = ConfigDict(frozen=True)

    table: str
    type: ChangeType
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    seq: int = 0
    committed_at: datetime = Field(default_factory=utcnow)

    @property
    def row(self) -> Dict[str, Any]:
        return self.new if self.new is not None else (self.old or {})

    @property
    def row_id(self) -> Optional[str]:
        return self.row.get("id")


class FeedFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    column: str
    value: str

    @classmethod
    def parse(cls, table: str, expression: str) -> "FeedFilter":
        column, sep, rest = expression.partition("=")
        if not sep or not rest.startswith("eq.") or not column:
            raise InvalidFilter(f"Unsupported filter {expression!r}; expected column=eq.value")
        column = column.strip()
        if column not in INDEXED_COLUMNS.get(table, frozenset()):
            raise InvalidFilter(f"Column {column!r} of {table!r} cannot be used in a feed filter")
        return cls(column=column, value=rest[len("eq."):])

    def matches(self, row: Optional[Dict[str, Any]]) -> bool:
        if not row or self.column not in row:
            return False
        return str(row[self.column]) == self.value

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"


class Topic(BaseModel):
    """What a subscription listens to: a table, an optional filter, a set of operations."""
    model_config = ConfigDict(frozen=True)

    table: str
    filter: Optional[FeedFilter] = None
    events: FrozenSet[ChangeType] = frozenset(ChangeType)

    @classmethod
    def build(
        cls,
        table: str,
        filter: Optional[str] = None,
        events: Optional[Iterable[str]] = None,
    ) -> "Topic":
        if table not in INDEXED_COLUMNS:
            raise InvalidFilter(f"Unknown table {table!r}")
        parsed = FeedFilter.parse(table, filter) if filter else None
        if events is None or "*" in events:
            kinds = frozenset(ChangeType)
        else:
            kinds = frozenset(ChangeType(e) for e in events)
        return cls(table=table, filter=parsed, events=kinds)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.type not in self.events:
            return False
        if self.filter is None:
            return True
        # An update that moved a row out of the filter is still delivered.
        return self.filter.matches(event.new) or self.filter.matches(event.old)

    def __str__(self) -> str:
        return f"{self.table}[{self.filter or '*'}]"
