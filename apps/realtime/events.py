import enum
from dataclasses import dataclass, field

TABLE_OPERATIONS = "operations"
TABLE_HISTORY = "operation_history"


class EventKind(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


ALL_EVENTS = frozenset(EventKind)


@dataclass(frozen=True)
class ChangeEvent:
    """A row-level change reported by the record store"""

    kind: EventKind
    table: str
    row: dict = field(default_factory=dict)
    # received from another process; its alerts were raised there
    remote: bool = False

    @property
    def row_id(self):
        return self.row.get("id")
