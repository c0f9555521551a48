import logging
import threading
from collections.abc import Mapping

from django.utils import timezone

from apps.operations.models import OperationStatus, OperationType
from apps.operations.transitions import can_transition, is_in_progress, is_terminal, parse_status
from apps.realtime.events import ALL_EVENTS, TABLE_HISTORY, TABLE_OPERATIONS, ChangeEvent, EventKind
from apps.realtime.feed import ChangeFeed
from apps.realtime.mirror import OperationMirror

from .record_store import RecordNotFound, RecordStoreError

logger = logging.getLogger(__name__)

DEFAULT_MINUTES_PER_OPERATION = 15
FALLBACK_OPERATOR = "Sistema"


class OperationLifecycleError(Exception):
    """
    Base for failures surfaced to users
    Carries the message shown to the user and the HTTP status it maps to
    """

    status_code = 400
    default_message = "The operation could not be processed."

    def __init__(self, message: str = None):
        self.user_message = message or self.default_message
        super().__init__(self.user_message)


class OperationValidationError(OperationLifecycleError):
    status_code = 400
    default_message = "Invalid operation data."


class EmptyMessageError(OperationValidationError):
    default_message = "Please write a message before sending."


class InvalidTransitionError(OperationLifecycleError):
    status_code = 409

    def __init__(self, operation_id, current, target):
        self.operation_id = operation_id
        self.current = current
        self.target = target
        super().__init__(f"Operation {operation_id} cannot move from {current} to {target}.")


class OperationNotFoundError(OperationLifecycleError):
    status_code = 404

    def __init__(self, operation_id):
        self.operation_id = operation_id
        super().__init__(f"Operation {operation_id} not found. It may have been completed already.")


class BackendError(OperationLifecycleError):
    status_code = 503
    default_message = "The server could not save your change. Please try again."


class OperationLifecycleManager:
    """
    Owns the operation state machine and the client-side mirror

    Writes are confirm-then-apply: the record store is called first and only
    a confirmed row is applied to the mirror. The change-feed echo of the same
    write arrives later and is reapplied without effect.

    Concurrent claims on the same operation are last-write-wins at the row
    level; there is no version check.

    With a bridge, committed changes are also exchanged with the other
    processes serving the same database.
    """

    def __init__(
        self,
        store,
        notifier=None,
        minutes_per_operation: int = DEFAULT_MINUTES_PER_OPERATION,
        strict_transitions: bool = True,
        bridge=None,
    ):
        self.store = store
        self.notifier = notifier
        self.bridge = bridge
        self.minutes_per_operation = minutes_per_operation
        self.strict_transitions = strict_transitions

        self.mirror = OperationMirror(on_new_operation=self._announce_new_operation)
        self.feed = ChangeFeed()

        self._subscriptions = []
        self._loaded = False
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # wiring
    # ------------------------------------------------------------------

    def start(self):
        """Subscribe the change feed to both tables"""
        if self._subscriptions:
            return

        for table in (TABLE_OPERATIONS, TABLE_HISTORY):
            self._subscriptions.append(self.store.subscribe(table, ALL_EVENTS, self._on_local_change))

        if self.bridge is not None:
            self.bridge.listen(self.feed.put)

        logger.info("Operation lifecycle manager started")

    def stop(self):
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        if self.bridge is not None:
            self.bridge.close()
        self.feed.close()
        logger.info("Operation lifecycle manager stopped")

    def _on_local_change(self, event: ChangeEvent):
        self.feed.put(event)
        if self.bridge is not None:
            self.bridge.publish(event)

    def refresh(self):
        """
        Rebuild the mirror from the store

        An active row whose id already appears in history is dropped: history
        presence is authoritative for terminal state.
        """
        with self._lock:
            self.feed.clear()
            try:
                operations = self.store.select(TABLE_OPERATIONS, order_by=["-created_at"])
                history = self.store.select(TABLE_HISTORY, order_by=["-created_at"])
            except RecordStoreError as e:
                logger.error(f"Error fetching operations: {e}")
                raise BackendError("Could not load operations.") from e

            archived = {row["operation_id"] for row in history}
            stale = [row["id"] for row in operations if row["id"] in archived]
            if stale:
                logger.warning(f"Operations {', '.join(stale)} are already archived, hiding them")

            self.mirror.load([row for row in operations if row["id"] not in archived], history)
            self._loaded = True

    def sync(self) -> int:
        """Load the mirror if needed, then apply pending change events"""
        with self._lock:
            if not self._loaded:
                self.refresh()
                return 0
            return self.feed.drain(self.mirror.apply)

    def _ensure_loaded(self):
        # call before any store write: rows loaded afterwards would look like echoes
        with self._lock:
            if not self._loaded:
                self.refresh()

    def _apply(self, kind: EventKind, table: str, row: dict):
        with self._lock:
            self.mirror.apply(ChangeEvent(kind=kind, table=table, row=row))

    def _reconcile(self, row: dict):
        with self._lock:
            self.mirror.upsert(row)

    def _forget(self, operation_id):
        with self._lock:
            self.mirror.discard(operation_id)

    def _announce_new_operation(self, row: dict):
        if self.notifier is None:
            return
        self.notifier.broadcast(
            "operator",
            f"New {row['type']} operation from {row['technician']}",
            operation_id=row["id"],
            sound=True,
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require_active(self, operation_id) -> dict:
        self._ensure_loaded()
        try:
            row = self.store.get(TABLE_OPERATIONS, operation_id)
        except RecordNotFound:
            logger.warning(f"Operation {operation_id} not found in active set")
            self._forget(operation_id)
            raise OperationNotFoundError(operation_id)
        except RecordStoreError as e:
            logger.error(f"Error fetching operation {operation_id}: {e}")
            raise BackendError() from e

        # the store may hold writes this process never saw
        self._reconcile(row)
        return row

    def _check_transition(self, current: dict, target):
        if not can_transition(current["status"], target, operation_type=current["type"], strict=self.strict_transitions):
            logger.warning(f"Rejected transition of {current['id']} from {current['status']} to {target}")
            raise InvalidTransitionError(current["id"], current["status"], target)

    def _write(self, operation_id, patch: dict, action: str) -> dict:
        try:
            row = self.store.update(TABLE_OPERATIONS, operation_id, patch)
        except RecordNotFound:
            logger.warning(f"Operation {operation_id} vanished before {action}")
            self._forget(operation_id)
            raise OperationNotFoundError(operation_id)
        except RecordStoreError as e:
            logger.error(f"Error during {action} of operation {operation_id}: {e}")
            raise BackendError() from e

        self._reconcile(row)
        return row

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def create(self, operation_type, data, technician: str, technician_id=None) -> dict:
        """
        Submit a new operation in the pending state

        Args:
            operation_type: installation, cto or rma
            data: Form fields for the type
            technician: Display name of the submitting technician
            technician_id: Identity of the submitting technician

        Returns:
            The stored operation row

        Raises:
            OperationValidationError: Unknown type or data not a mapping
            BackendError: If the insert fails; nothing is added to the mirror
        """
        if operation_type not in OperationType.values:
            raise OperationValidationError(f"Unknown operation type: {operation_type}")

        if not isinstance(data, Mapping):
            raise OperationValidationError("Operation data must be a mapping of form fields.")

        if not technician:
            raise OperationValidationError("Technician is required.")

        self._ensure_loaded()

        now = timezone.now()
        logger.info(f"Creating {operation_type} operation for technician {technician}")

        try:
            row = self.store.insert(
                TABLE_OPERATIONS,
                {
                    "type": operation_type,
                    "data": dict(data),
                    "status": OperationStatus.PENDING,
                    "technician": technician,
                    "technician_id": str(technician_id) if technician_id is not None else None,
                    "created_at": now,
                    "updated_at": now,
                },
            )
        except RecordStoreError as e:
            logger.error(f"Error creating operation: {e}")
            raise BackendError("Could not create the operation. Please try again.") from e

        self._apply(EventKind.INSERT, TABLE_OPERATIONS, row)
        logger.info(f"Created operation {row['id']}")
        return row

    def assign(self, operation_id, operator_id, operator_name: str) -> dict:
        """Claim an operation for an operator; reassigning a claimed one is allowed"""
        current = self._require_active(operation_id)
        self._check_transition(current, OperationStatus.IN_PROGRESS)

        if current["assigned_operator"]:
            logger.info(f"Reassigning operation {operation_id} from {current['assigned_operator']} to {operator_name}")

        now = timezone.now()
        row = self._write(
            operation_id,
            {
                "operator": operator_name,
                "operator_id": str(operator_id) if operator_id is not None else None,
                "assigned_operator": operator_name,
                "assigned_at": now,
                "status": OperationStatus.IN_PROGRESS,
                "updated_at": now,
            },
            "assign",
        )
        logger.info(f"Operation {operation_id} assigned to {operator_name}")
        return row

    def unassign(self, operation_id) -> dict:
        """Release a claimed operation back to the queue"""
        current = self._require_active(operation_id)
        self._check_transition(current, OperationStatus.PENDING)

        row = self._write(
            operation_id,
            {
                "operator": None,
                "operator_id": None,
                "assigned_operator": None,
                "assigned_at": None,
                "status": OperationStatus.PENDING,
                "updated_at": timezone.now(),
            },
            "unassign",
        )
        logger.info(f"Operation {operation_id} released back to the queue")
        return row

    def update_status(self, operation_id, status, operator_name: str = None, operator_id=None) -> dict:
        """
        Move an operation to another status

        Terminal targets go through complete/cancel so the operation is
        archived; the returned row is then the history record. Moving a
        pending operation into work claims it for the caller the same way
        assign does.
        """
        try:
            target = parse_status(status)
        except ValueError:
            logger.warning(f"Unknown status {status!r} for operation {operation_id}")
            raise OperationValidationError(f"Unknown status: {status}")

        current = self._require_active(operation_id)
        self._check_transition(current, target)

        if is_terminal(target):
            operator = operator_name or current["assigned_operator"]
            if target == OperationStatus.COMPLETED:
                return self.complete(operation_id, operator)
            return self.cancel(operation_id, operator)

        now = timezone.now()
        patch = {"status": target, "updated_at": now}

        if target == OperationStatus.PENDING:
            patch.update(operator=None, operator_id=None, assigned_operator=None, assigned_at=None)
        elif is_in_progress(target) and current["status"] == OperationStatus.PENDING:
            patch.update(
                operator=operator_name,
                operator_id=str(operator_id) if operator_id is not None else None,
                assigned_operator=operator_name,
                assigned_at=now,
            )

        row = self._write(operation_id, patch, "status update")
        logger.info(f"Operation {operation_id} status updated: {current['status']} -> {target}")
        return row

    def send_feedback(self, operation_id, text: str) -> dict:
        """Operator message to the technician; overwrites any previous feedback"""
        if not text or not text.strip():
            raise EmptyMessageError("Please write feedback before sending.")

        self._require_active(operation_id)
        row = self._write(operation_id, {"feedback": text, "updated_at": timezone.now()}, "feedback")

        logger.info(f"Feedback updated on operation {operation_id}")
        if self.notifier is not None:
            self.notifier.notify_user(
                row["technician_id"],
                f"New feedback on your {row['type']} operation",
                operation_id=row["id"],
                sound=True,
            )
        return row

    def send_technician_response(self, operation_id, text: str) -> dict:
        """Technician reply to the operator; overwrites any previous response"""
        if not text or not text.strip():
            raise EmptyMessageError("Please write a response before sending.")

        self._require_active(operation_id)
        row = self._write(operation_id, {"technician_response": text, "updated_at": timezone.now()}, "technician response")

        logger.info(f"Technician response updated on operation {operation_id}")
        if self.notifier is not None:
            message = f"{row['technician']} replied on {row['type']} operation"
            if row["operator_id"]:
                self.notifier.notify_user(row["operator_id"], message, operation_id=row["id"], sound=True)
            else:
                self.notifier.broadcast("operator", message, operation_id=row["id"], sound=True)
        return row

    def complete(self, operation_id, operator_name: str) -> dict:
        """Finish an operation and move it to history"""
        return self._finish(operation_id, operator_name, OperationStatus.COMPLETED)

    def cancel(self, operation_id, operator_name: str = None) -> dict:
        return self._finish(operation_id, operator_name, OperationStatus.CANCELLED)

    def _finish(self, operation_id, operator_name, final_status) -> dict:
        current = self._require_active(operation_id)
        self._check_transition(current, final_status)

        now = timezone.now()
        operator = operator_name or current["assigned_operator"] or FALLBACK_OPERATOR
        final_row = {
            **current,
            "status": final_status,
            "completed_at": now,
            "completed_by": operator,
            "updated_at": now,
        }

        try:
            history_row = self.store.archive(
                operation_id,
                {
                    "operation_id": current["id"],
                    "type": current["type"],
                    "data": current["data"],
                    "final_status": final_status,
                    "technician": current["technician"],
                    "technician_id": current["technician_id"],
                    "operator": operator,
                    "feedback": current["feedback"],
                    "technician_response": current["technician_response"],
                    "created_at": current["created_at"],
                    "completed_at": now,
                },
            )
        except RecordNotFound:
            logger.warning(f"Operation {operation_id} was archived by someone else")
            self._forget(operation_id)
            raise OperationNotFoundError(operation_id)
        except RecordStoreError as e:
            logger.error(f"Error archiving operation {operation_id}: {e}")
            raise BackendError("Could not finish the operation. Please try again.") from e

        self._apply(EventKind.DELETE, TABLE_OPERATIONS, final_row)
        self._apply(EventKind.INSERT, TABLE_HISTORY, history_row)

        logger.info(f"Operation {operation_id} {final_status} by {operator}")
        if self.notifier is not None:
            self.notifier.notify_user(
                current["technician_id"],
                f"Your {current['type']} operation was {final_status}",
                level="success" if final_status == OperationStatus.COMPLETED else "info",
                operation_id=current["id"],
            )
        return history_row

    # ------------------------------------------------------------------
    # derived views
    # ------------------------------------------------------------------

    @property
    def operations(self) -> tuple:
        return self.mirror.operations

    @property
    def queue(self) -> tuple:
        return self.mirror.queue

    @property
    def history(self) -> tuple:
        return self.mirror.history

    def get_operation(self, operation_id):
        return self.mirror.get(operation_id)

    def fetch_operation(self, operation_id):
        """
        Active operation by id, asking the store when the mirror lacks it

        Returns None if the operation is not active.
        """
        row = self.mirror.get(operation_id)
        if row is not None:
            return row

        try:
            return self._require_active(operation_id)
        except OperationNotFoundError:
            return None

    def get_queue_position(self, operation_id) -> int:
        return self.mirror.queue_position(operation_id)

    def get_estimated_wait_time(self, operation_id) -> int:
        """Minutes; a flat per-operation estimate, not a throughput model"""
        return self.get_queue_position(operation_id) * self.minutes_per_operation

    def get_user_operations(self, technician_id) -> list:
        return self.mirror.for_technician(technician_id)

    def get_user_history(self, technician_id) -> list:
        return self.mirror.history_for_technician(technician_id)

    def get_operations_by_type(self, operation_type) -> list:
        return self.mirror.by_type(operation_type)

    def get_history_by_type(self, operation_type) -> list:
        return self.mirror.history_by_type(operation_type)

    def get_pending_count(self, operation_type=None) -> int:
        return self.mirror.pending_count(operation_type)
