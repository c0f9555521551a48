"""
OperationLifecycleManager against the Django record store

The manager fixture is not subscribed, so every mirror change seen here comes
from the manager applying its own confirmed writes.
"""

import uuid

import pytest
from django.utils import timezone

from apps.operations.models import Operation, OperationHistory
from apps.operations.services.lifecycle_service import (
    BackendError,
    EmptyMessageError,
    InvalidTransitionError,
    OperationLifecycleManager,
    OperationNotFoundError,
    OperationValidationError,
)
from apps.operations.services.record_store import DjangoRecordStore, RecordStoreError

from .conftest import RMA_DATA, RecordingNotifier


def ids(rows):
    return [row["id"] for row in rows]


@pytest.mark.django_db
class TestScenarios:
    def test_a_create_rma(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1", technician_id="7")

        assert ids(manager.operations) == [row["id"]]
        assert row["status"] == "pending"
        assert row["assigned_operator"] is None
        assert row["data"] == RMA_DATA
        assert ids(manager.queue) == [row["id"]]

    def test_b_assign(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        assigned = manager.assign(row["id"], "op1", "Op One")

        assert assigned["status"] == "in_progress"
        assert assigned["assigned_operator"] == "Op One"
        assert assigned["operator_id"] == "op1"
        assert assigned["assigned_at"] is not None
        assert row["id"] not in ids(manager.queue)
        assert manager.get_operation(row["id"])["status"] == "in_progress"

    def test_c_complete(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        manager.assign(row["id"], "op1", "Op One")

        history_row = manager.complete(row["id"], "Op One")

        assert row["id"] not in ids(manager.operations)
        archived = [h for h in manager.history if h["operation_id"] == row["id"]]
        assert len(archived) == 1
        assert archived[0]["completed_at"] >= archived[0]["created_at"]
        assert (archived[0]["data"], archived[0]["technician"], archived[0]["type"]) == (RMA_DATA, "Tech1", "rma")
        assert history_row["operator"] == "Op One"
        assert history_row["final_status"] == "completed"

        assert not Operation.objects.filter(pk=row["id"]).exists()
        assert OperationHistory.objects.filter(operation_id=row["id"]).count() == 1

    def test_d_queue_holds_only_pending(self, manager):
        waiting = manager.create("cto", {"tipoSplitter": "1x8"}, technician="Tech1")
        claimed = manager.create("cto", {"tipoSplitter": "1x16"}, technician="Tech1")
        manager.assign(claimed["id"], "op1", "Op One")

        assert ids(manager.queue) == [waiting["id"]]
        assert set(ids(manager.operations)) == {waiting["id"], claimed["id"]}


@pytest.mark.django_db
class TestQueueAndEstimates:
    def test_newest_pending_first(self, manager):
        first = manager.create("rma", RMA_DATA, technician="Tech1")
        second = manager.create("rma", RMA_DATA, technician="Tech1")

        assert manager.get_queue_position(second["id"]) == 1
        assert manager.get_queue_position(first["id"]) == 2

    def test_wait_time_is_position_times_fifteen(self, manager):
        rows = [manager.create("rma", RMA_DATA, technician="Tech1") for _ in range(3)]

        for row in rows:
            position = manager.get_queue_position(row["id"])
            assert manager.get_estimated_wait_time(row["id"]) == position * 15

    def test_absent_operation_has_no_position(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        manager.assign(row["id"], "op1", "Op One")

        assert manager.get_queue_position(row["id"]) == 0
        assert manager.get_estimated_wait_time(row["id"]) == 0
        assert manager.get_queue_position(str(uuid.uuid4())) == 0

    def test_minutes_per_operation_is_configurable(self, store):
        manager = OperationLifecycleManager(store, minutes_per_operation=20)
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        assert manager.get_estimated_wait_time(row["id"]) == 20


@pytest.mark.django_db
class TestFilters:
    def test_user_operations_only_their_own(self, manager):
        mine = manager.create("rma", RMA_DATA, technician="Tech1", technician_id=1)
        manager.create("rma", RMA_DATA, technician="Tech2", technician_id=2)

        assert ids(manager.get_user_operations(1)) == [mine["id"]]
        assert manager.get_user_operations(99) == []

    def test_type_views_and_pending_count(self, manager):
        cto = manager.create("cto", {"tipoSplitter": "1x8"}, technician="Tech1")
        rma = manager.create("rma", RMA_DATA, technician="Tech1")
        manager.assign(rma["id"], "op1", "Op One")
        manager.complete(rma["id"], "Op One")

        assert ids(manager.get_operations_by_type("cto")) == [cto["id"]]
        assert [h["operation_id"] for h in manager.get_history_by_type("rma")] == [rma["id"]]
        assert manager.get_pending_count() == 1
        assert manager.get_pending_count("rma") == 0


@pytest.mark.django_db
class TestTransitions:
    def test_reassign_in_progress_is_allowed(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        manager.assign(row["id"], "op1", "Op One")

        reassigned = manager.assign(row["id"], "op2", "Op Two")

        assert reassigned["assigned_operator"] == "Op Two"
        assert reassigned["status"] == "in_progress"

    def test_unassign_returns_to_queue(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        manager.assign(row["id"], "op1", "Op One")

        released = manager.unassign(row["id"])

        assert released["status"] == "pending"
        assert released["assigned_operator"] is None
        assert released["assigned_at"] is None
        assert ids(manager.queue) == [row["id"]]

    def test_unassign_pending_is_rejected(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        with pytest.raises(InvalidTransitionError):
            manager.unassign(row["id"])

    def test_completing_pending_is_rejected(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        with pytest.raises(InvalidTransitionError) as excinfo:
            manager.complete(row["id"], "Op One")

        assert excinfo.value.status_code == 409
        assert ids(manager.operations) == [row["id"]]
        assert manager.history == ()

    def test_status_alias_for_own_type(self, manager):
        row = manager.create("cto", {"tipoSplitter": "1x8"}, technician="Tech1")

        updated = manager.update_status(row["id"], "verificando", operator_name="Op One")

        assert updated["status"] == "verificando"
        assert updated["assigned_at"] is not None
        assert updated["assigned_operator"] == "Op One"
        assert manager.queue == ()

    def test_status_alias_for_other_type_is_rejected(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        with pytest.raises(InvalidTransitionError):
            manager.update_status(row["id"], "verificando")

    def test_unknown_status_is_a_validation_error(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        with pytest.raises(OperationValidationError):
            manager.update_status(row["id"], "archived")

    def test_terminal_status_archives(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        manager.assign(row["id"], "op1", "Op One")

        history_row = manager.update_status(row["id"], "completed")

        assert history_row["operation_id"] == row["id"]
        assert history_row["operator"] == "Op One"
        assert row["id"] not in ids(manager.operations)

    def test_cancel_pending(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        history_row = manager.cancel(row["id"])

        assert history_row["final_status"] == "cancelled"
        assert history_row["operator"] == "Sistema"
        assert manager.queue == ()

    def test_permissive_mode_allows_direct_completion(self, store):
        manager = OperationLifecycleManager(store, strict_transitions=False)
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        history_row = manager.complete(row["id"], "Op One")

        assert history_row["final_status"] == "completed"


@pytest.mark.django_db
class TestCompletionInvariant:
    """An id is never both active and archived"""

    def test_completed_operation_is_gone_everywhere(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        manager.assign(row["id"], "op1", "Op One")
        manager.complete(row["id"], "Op One")

        assert row["id"] not in ids(manager.operations)
        assert row["id"] not in ids(manager.queue)

        with pytest.raises(OperationNotFoundError):
            manager.complete(row["id"], "Op One")
        with pytest.raises(OperationNotFoundError):
            manager.assign(row["id"], "op1", "Op One")

    def test_refresh_prefers_history(self, manager):
        now = timezone.now()
        stale = Operation.objects.create(type="rma", data=RMA_DATA, status="in_progress", technician="Tech1")
        OperationHistory.objects.create(operation_id=stale.id, type="rma", technician="Tech1", created_at=now)
        live = Operation.objects.create(type="cto", technician="Tech1")

        manager.refresh()

        assert ids(manager.operations) == [str(live.id)]
        assert [h["operation_id"] for h in manager.history] == [str(stale.id)]

    def test_refresh_orders_newest_first(self, manager):
        older = manager.create("rma", RMA_DATA, technician="Tech1")
        newer = manager.create("rma", RMA_DATA, technician="Tech1")

        manager.refresh()

        assert ids(manager.operations) == [newer["id"], older["id"]]
        assert ids(manager.queue) == [newer["id"], older["id"]]


@pytest.mark.django_db
class TestMessages:
    def test_feedback_overwrites_and_notifies_technician(self, manager, recording_notifier):
        row = manager.create("rma", RMA_DATA, technician="Tech1", technician_id=7)
        manager.assign(row["id"], "op1", "Op One")

        manager.send_feedback(row["id"], "first")
        updated = manager.send_feedback(row["id"], "check the fiber")

        assert updated["feedback"] == "check the fiber"
        assert manager.get_operation(row["id"])["feedback"] == "check the fiber"
        assert [n["user_id"] for n in recording_notifier.direct] == ["7", "7"]

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_empty_feedback_changes_nothing(self, manager, text):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        before = Operation.objects.get(pk=row["id"])

        with pytest.raises(EmptyMessageError) as excinfo:
            manager.send_feedback(row["id"], text)

        after = Operation.objects.get(pk=row["id"])
        assert excinfo.value.status_code == 400
        assert after.feedback is None
        assert after.updated_at == before.updated_at
        assert manager.get_operation(row["id"]) == row

    def test_empty_response_changes_nothing(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        with pytest.raises(EmptyMessageError):
            manager.send_technician_response(row["id"], " ")

        assert Operation.objects.get(pk=row["id"]).technician_response is None

    def test_response_goes_to_assigned_operator(self, manager, recording_notifier):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        manager.assign(row["id"], 42, "Op One")

        updated = manager.send_technician_response(row["id"], "fixed it")

        assert updated["technician_response"] == "fixed it"
        assert recording_notifier.direct[-1]["user_id"] == "42"

    def test_status_claim_routes_responses_to_the_claimer(self, manager, recording_notifier):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        claimed = manager.update_status(row["id"], "in_progress", operator_name="Op One", operator_id=42)
        assert claimed["operator_id"] == "42"
        assert claimed["assigned_operator"] == "Op One"
        assert claimed["assigned_at"] is not None

        manager.send_technician_response(row["id"], "fixed it")

        assert recording_notifier.direct[-1]["user_id"] == "42"
        # only the creation alert went to every operator
        assert len(recording_notifier.broadcasts) == 1

    def test_response_without_operator_is_broadcast(self, manager, recording_notifier):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        manager.send_technician_response(row["id"], "waiting on client")

        # creation alert plus the response
        assert [b["role"] for b in recording_notifier.broadcasts] == ["operator", "operator"]

    def test_feedback_on_missing_operation(self, manager):
        with pytest.raises(OperationNotFoundError) as excinfo:
            manager.send_feedback(str(uuid.uuid4()), "hello")

        assert excinfo.value.status_code == 404


@pytest.mark.django_db
class TestCreateValidation:
    def test_unknown_type(self, manager):
        with pytest.raises(OperationValidationError):
            manager.create("photo", {}, technician="Tech1")

        assert manager.operations == ()

    def test_data_must_be_a_mapping(self, manager):
        with pytest.raises(OperationValidationError):
            manager.create("rma", ["FHTT1234"], technician="Tech1")

    def test_new_operation_alerts_operators_once(self, manager, recording_notifier):
        row = manager.create("rma", RMA_DATA, technician="Tech1")

        assert len(recording_notifier.broadcasts) == 1
        alert = recording_notifier.broadcasts[0]
        assert alert["role"] == "operator"
        assert alert["sound"] is True
        assert alert["operation_id"] == row["id"]


class FailingStore(DjangoRecordStore):
    def insert(self, table, row):
        raise RecordStoreError("connection reset")

    def update(self, table, record_id, patch):
        raise RecordStoreError("connection reset")


@pytest.mark.django_db
class TestBackendFailures:
    def test_failed_create_leaves_mirror_untouched(self):
        notifier = RecordingNotifier()
        manager = OperationLifecycleManager(FailingStore(), notifier=notifier)

        with pytest.raises(BackendError) as excinfo:
            manager.create("rma", RMA_DATA, technician="Tech1")

        assert excinfo.value.status_code == 503
        assert manager.operations == ()
        assert notifier.broadcasts == []

    def test_failed_update_leaves_mirror_untouched(self, store):
        row = OperationLifecycleManager(store).create("rma", RMA_DATA, technician="Tech1")
        manager = OperationLifecycleManager(FailingStore())
        manager.refresh()

        with pytest.raises(BackendError):
            manager.assign(row["id"], "op1", "Op One")

        assert manager.get_operation(row["id"])["status"] == "pending"
        assert ids(manager.queue) == [row["id"]]


@pytest.mark.django_db(transaction=True)
class TestChangeFeedEcho:
    """A started manager sees its own writes twice: locally and from the feed"""

    def test_echo_is_idempotent(self):
        notifier = RecordingNotifier()
        manager = OperationLifecycleManager(DjangoRecordStore(), notifier=notifier)
        manager.start()
        try:
            manager.sync()
            row = manager.create("rma", RMA_DATA, technician="Tech1")
            manager.assign(row["id"], "op1", "Op One")

            assert manager.sync() >= 2
            assert ids(manager.operations) == [row["id"]]
            assert manager.queue == ()
            assert len(notifier.broadcasts) == 1

            manager.complete(row["id"], "Op One")
            manager.sync()
            assert manager.operations == ()
            assert len(manager.history) == 1
        finally:
            manager.stop()

    def test_external_write_reaches_the_mirror(self):
        notifier = RecordingNotifier()
        manager = OperationLifecycleManager(DjangoRecordStore(), notifier=notifier)
        manager.start()
        try:
            manager.sync()
            operation = Operation.objects.create(type="cto", technician="Tech2")

            assert manager.sync() == 1
            assert ids(manager.queue) == [str(operation.id)]
            assert len(notifier.broadcasts) == 1

            Operation.objects.filter(pk=operation.pk).delete()
            manager.sync()
            assert manager.operations == ()
        finally:
            manager.stop()

    def test_late_echo_of_a_finished_operation_is_dropped(self):
        notifier = RecordingNotifier()
        manager = OperationLifecycleManager(DjangoRecordStore(), notifier=notifier)
        manager.start()
        try:
            manager.sync()
            row = manager.create("rma", RMA_DATA, technician="Tech1")
            manager.assign(row["id"], "op1", "Op One")
            manager.complete(row["id"], "Op One")

            manager.sync()

            assert manager.operations == ()
            assert manager.queue == ()
            assert ids(manager.history) == [str(OperationHistory.objects.get().id)]
            assert len(notifier.broadcasts) == 1
        finally:
            manager.stop()


@pytest.mark.django_db
class TestWritesFromOtherWorkers:
    """Rows changed by another process are picked up when this one touches them"""

    def test_unseen_operation_is_fetched_and_claimed(self, manager, recording_notifier):
        manager.sync()
        operation = Operation.objects.create(type="cto", technician="Tech2")
        operation_id = str(operation.id)
        assert manager.get_operation(operation_id) is None

        assert manager.fetch_operation(operation_id)["id"] == operation_id

        manager.assign(operation_id, 7, "Op One")

        assert manager.get_operation(operation_id)["status"] == "in_progress"
        assert ids(manager.operations) == [operation_id]
        assert manager.queue == ()
        assert recording_notifier.broadcasts == []

    def test_unseen_pending_operation_joins_the_queue(self, manager):
        manager.sync()
        operation = Operation.objects.create(type="rma", technician="Tech2", data=RMA_DATA)

        manager.fetch_operation(operation.id)

        assert manager.get_queue_position(operation.id) == 1

    def test_claim_made_elsewhere_is_seen(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        Operation.objects.filter(pk=row["id"]).update(status="in_progress", operator="Op Two", assigned_operator="Op Two")

        manager.send_feedback(row["id"], "which port?")

        assert manager.get_operation(row["id"])["assigned_operator"] == "Op Two"
        assert manager.queue == ()

    def test_operation_finished_elsewhere_leaves_the_mirror(self, manager):
        row = manager.create("rma", RMA_DATA, technician="Tech1")
        Operation.objects.filter(pk=row["id"]).delete()

        with pytest.raises(OperationNotFoundError):
            manager.assign(row["id"], 7, "Op One")

        assert manager.get_operation(row["id"]) is None
        assert manager.queue == ()

    def test_fetch_of_unknown_operation(self, manager):
        assert manager.fetch_operation(str(uuid.uuid4())) is None
        assert manager.fetch_operation("not-a-uuid") is None
