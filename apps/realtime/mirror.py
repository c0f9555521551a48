import logging

from apps.operations.models import OperationStatus

from .events import ChangeEvent, EventKind, TABLE_HISTORY, TABLE_OPERATIONS

logger = logging.getLogger(__name__)


def _index_of(rows, row_id) -> int:
    for index, row in enumerate(rows):
        if row["id"] == row_id:
            return index
    return -1


def _replaced(rows, row) -> tuple:
    return tuple(row if existing["id"] == row["id"] else existing for existing in rows)


def _without(rows, row_id) -> tuple:
    return tuple(existing for existing in rows if existing["id"] != row_id)


class OperationMirror:
    """
    Client-side copy of the operations and history tables

    The backend stays the authority: the mirror is rebuilt wholesale by load()
    and patched per change event by apply(). Every mutation swaps in a new
    tuple, so readers holding the old collection never see it change.

    queue is the pending subset of operations in retrieval order (newest
    first); it is never re-sorted here.

    Ids that left the active set (deleted or archived) are remembered so a
    late insert or upsert for them is dropped.
    """

    def __init__(self, on_new_operation=None):
        self.operations = ()
        self.queue = ()
        self.history = ()
        self.on_new_operation = on_new_operation
        self._removed = set()

    def load(self, operations, history):
        self.operations = tuple(operations)
        self.queue = tuple(row for row in self.operations if row["status"] == OperationStatus.PENDING)
        self.history = tuple(history)
        self._removed = (self._removed - {row["id"] for row in self.operations}) | {row["operation_id"] for row in self.history}
        logger.info(f"Mirror loaded: {len(self.operations)} active, {len(self.queue)} queued, {len(self.history)} archived")

    def apply(self, event: ChangeEvent):
        if event.table == TABLE_OPERATIONS:
            self._apply_operation(event)
        elif event.table == TABLE_HISTORY:
            self._apply_history(event)
        else:
            logger.warning(f"Ignoring change event for unknown table {event.table}")

    def _apply_operation(self, event: ChangeEvent):
        row = event.row

        if event.kind == EventKind.INSERT:
            if row["id"] in self._removed:
                logger.debug(f"Insert for removed operation {row['id']}, skipping")
                return

            if _index_of(self.operations, row["id"]) >= 0:
                # echo of a write already applied locally
                self._update_operation(row)
                return

            self.operations = (row,) + self.operations
            if row["status"] == OperationStatus.PENDING:
                self.queue = (row,) + self.queue

            if self.on_new_operation is not None and not event.remote:
                self.on_new_operation(row)

        elif event.kind == EventKind.UPDATE:
            self._update_operation(row)

        elif event.kind == EventKind.DELETE:
            self.discard(row["id"])

    def upsert(self, row):
        """
        Reconcile with a row just read from or written to the store

        Unlike an insert event this never raises the new-operation alert.
        """
        if row["id"] in self._removed:
            return

        if _index_of(self.operations, row["id"]) < 0:
            logger.info(f"Operation {row['id']} was missing from the mirror, adding it")
            self.operations = (row,) + self.operations

        self._update_operation(row)

    def discard(self, operation_id):
        """Drop an operation that left the active set; it is never readded"""
        operation_id = str(operation_id)
        self._removed.add(operation_id)
        self.operations = _without(self.operations, operation_id)
        self.queue = _without(self.queue, operation_id)

    def _update_operation(self, row):
        if _index_of(self.operations, row["id"]) < 0:
            logger.debug(f"Update for operation {row['id']} not in mirror, skipping")
            return

        self.operations = _replaced(self.operations, row)

        status = row["status"]
        if status == OperationStatus.PENDING:
            if _index_of(self.queue, row["id"]) >= 0:
                self.queue = _replaced(self.queue, row)
            else:
                self.queue = (row,) + self.queue
        else:
            # claimed or finished work leaves the queue
            self.queue = _without(self.queue, row["id"])

    def _apply_history(self, event: ChangeEvent):
        row = event.row

        if event.kind == EventKind.INSERT:
            # history wins over a stale active row
            self.discard(row["operation_id"])
            if _index_of(self.history, row["id"]) >= 0:
                self.history = _replaced(self.history, row)
            else:
                self.history = (row,) + self.history

        elif event.kind == EventKind.UPDATE:
            self.history = _replaced(self.history, row)

        elif event.kind == EventKind.DELETE:
            self.history = _without(self.history, row["id"])

    # ------------------------------------------------------------------
    # derived views
    # ------------------------------------------------------------------

    def get(self, operation_id):
        index = _index_of(self.operations, str(operation_id))
        return self.operations[index] if index >= 0 else None

    def queue_position(self, operation_id) -> int:
        """1-based position in the queue; 0 means not queued"""
        return _index_of(self.queue, str(operation_id)) + 1

    def for_technician(self, technician_id) -> list:
        return [row for row in self.operations if row["technician_id"] == str(technician_id)]

    def by_type(self, operation_type) -> list:
        return [row for row in self.operations if row["type"] == operation_type]

    def history_by_type(self, operation_type) -> list:
        return [row for row in self.history if row["type"] == operation_type]

    def history_for_technician(self, technician_id) -> list:
        return [row for row in self.history if row["technician_id"] == str(technician_id)]

    def pending_count(self, operation_type=None) -> int:
        return sum(
            1
            for row in self.operations
            if row["status"] == OperationStatus.PENDING and (operation_type is None or row["type"] == operation_type)
        )
