import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models.signals import post_delete, post_save

from apps.operations.models import Operation, OperationHistory
from apps.realtime.events import ALL_EVENTS, TABLE_HISTORY, TABLE_OPERATIONS, ChangeEvent, EventKind

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """The backend rejected or failed a read or write"""


class RecordNotFound(RecordStoreError):
    def __init__(self, table: str, record_id):
        self.table = table
        self.record_id = record_id
        super().__init__(f"No row {record_id} in {table}")


@dataclass
class Subscription:
    """Handle returned by RecordStore.subscribe"""

    table: str
    events: frozenset
    _disconnect: Callable[[], None]
    active: bool = True

    def unsubscribe(self):
        if self.active:
            self._disconnect()
            self.active = False


class RecordStore(ABC):
    """Table-like persistence with row-level change subscriptions"""

    @abstractmethod
    def insert(self, table: str, row: dict) -> dict:
        """
        Insert a row

        Returns:
            The stored row, including generated fields (id, timestamps)
        """
        ...

    @abstractmethod
    def update(self, table: str, record_id, patch: dict) -> dict:
        """
        Apply a partial update to one row

        Raises:
            RecordNotFound: If no row has this id
        """
        ...

    @abstractmethod
    def delete(self, table: str, record_id) -> None:
        ...

    @abstractmethod
    def select(self, table: str, filters: Optional[dict] = None, order_by: Optional[Iterable[str]] = None) -> list:
        ...

    @abstractmethod
    def get(self, table: str, record_id) -> dict:
        """Single row by id; raises RecordNotFound"""
        ...

    @abstractmethod
    def subscribe(self, table: str, events: Iterable, callback: Callable[[ChangeEvent], None]) -> Subscription:
        """
        Register callback for changes on table

        Args:
            table: Table to watch
            events: Any of insert/update/delete
            callback: Receives one ChangeEvent per committed change
        """
        ...

    @abstractmethod
    def archive(self, operation_id, history_row: dict) -> dict:
        """
        Move an operation to history in one transaction

        Inserts history_row into operation_history and deletes the operation.
        Either both happen or neither does.

        Returns:
            The stored history row
        """
        ...


class DjangoRecordStore(RecordStore):
    """RecordStore over the Django ORM; change events come from model signals"""

    models = {
        TABLE_OPERATIONS: Operation,
        TABLE_HISTORY: OperationHistory,
    }

    def _model(self, table: str):
        try:
            return self.models[table]
        except KeyError:
            raise ValueError(f"Unknown table {table}")

    def _get_instance(self, table: str, record_id):
        model = self._model(table)
        try:
            return model.objects.get(pk=record_id)
        except (model.DoesNotExist, ValidationError, ValueError, TypeError):
            raise RecordNotFound(table, record_id)
        except DatabaseError as e:
            raise RecordStoreError(str(e)) from e

    def insert(self, table: str, row: dict) -> dict:
        model = self._model(table)
        try:
            instance = model.objects.create(**row)
        except DatabaseError as e:
            logger.error(f"Insert into {table} failed: {e}")
            raise RecordStoreError(str(e)) from e

        logger.info(f"Inserted {instance.pk} into {table}")
        return instance.to_row()

    def update(self, table: str, record_id, patch: dict) -> dict:
        instance = self._get_instance(table, record_id)

        for field_name, value in patch.items():
            setattr(instance, field_name, value)

        try:
            # save() rather than queryset.update() so post_save fires
            instance.save(update_fields=list(patch))
        except DatabaseError as e:
            logger.error(f"Update of {record_id} in {table} failed: {e}")
            raise RecordStoreError(str(e)) from e

        return instance.to_row()

    def delete(self, table: str, record_id) -> None:
        instance = self._get_instance(table, record_id)
        try:
            instance.delete()
        except DatabaseError as e:
            logger.error(f"Delete of {record_id} from {table} failed: {e}")
            raise RecordStoreError(str(e)) from e

        logger.info(f"Deleted {record_id} from {table}")

    def select(self, table: str, filters: Optional[dict] = None, order_by: Optional[Iterable[str]] = None) -> list:
        queryset = self._model(table).objects.all()

        if filters:
            queryset = queryset.filter(**filters)

        if order_by:
            queryset = queryset.order_by(*order_by)

        try:
            return [instance.to_row() for instance in queryset]
        except DatabaseError as e:
            logger.error(f"Select on {table} failed: {e}")
            raise RecordStoreError(str(e)) from e

    def get(self, table: str, record_id) -> dict:
        return self._get_instance(table, record_id).to_row()

    def archive(self, operation_id, history_row: dict) -> dict:
        try:
            with transaction.atomic():
                try:
                    operation = Operation.objects.select_for_update().get(pk=operation_id)
                except (Operation.DoesNotExist, ValidationError, ValueError):
                    raise RecordNotFound(TABLE_OPERATIONS, operation_id)

                history = OperationHistory.objects.create(**history_row)
                operation.delete()
        except DatabaseError as e:
            logger.error(f"Archiving operation {operation_id} failed, nothing was moved: {e}")
            raise RecordStoreError(str(e)) from e

        logger.info(f"Archived operation {operation_id} as history {history.pk}")
        return history.to_row()

    def subscribe(self, table: str, events: Iterable, callback: Callable[[ChangeEvent], None]) -> Subscription:
        model = self._model(table)
        wanted = frozenset(EventKind(event) for event in events) or ALL_EVENTS
        uid = f"record-store:{table}:{uuid.uuid4()}"

        def publish(kind, row):
            # only committed changes reach subscribers
            transaction.on_commit(lambda: callback(ChangeEvent(kind=kind, table=table, row=row)))

        def on_save(sender, instance, created, **kwargs):
            kind = EventKind.INSERT if created else EventKind.UPDATE
            if kind in wanted:
                publish(kind, instance.to_row())

        def on_delete(sender, instance, **kwargs):
            if EventKind.DELETE in wanted:
                publish(EventKind.DELETE, instance.to_row())

        post_save.connect(on_save, sender=model, weak=False, dispatch_uid=f"{uid}:save")
        post_delete.connect(on_delete, sender=model, weak=False, dispatch_uid=f"{uid}:delete")

        def disconnect():
            post_save.disconnect(sender=model, dispatch_uid=f"{uid}:save")
            post_delete.disconnect(sender=model, dispatch_uid=f"{uid}:delete")
            logger.info(f"Unsubscribed from {table}")

        logger.info(f"Subscribed to {', '.join(sorted(kind.value for kind in wanted))} on {table}")
        return Subscription(table=table, events=wanted, _disconnect=disconnect)
