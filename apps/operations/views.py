import logging

from django.apps import apps
from django.conf import settings
from django.utils.decorators import method_decorator
from django_ratelimit.decorators import ratelimit
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from .models import OperationType
from .permissions import IsOperator, IsTechnician
from .serializers import (
    AssignSerializer,
    CreateOperationSerializer,
    FinishSerializer,
    HistoryRecordSerializer,
    MessageSerializer,
    OperationSerializer,
    QueuePositionSerializer,
    StatusUpdateSerializer,
)
from .services.lifecycle_service import OperationLifecycleError, OperationNotFoundError

logger = logging.getLogger(__name__)


def get_lifecycle_manager():
    """Process-wide manager, caught up with the change feed"""
    manager = apps.get_app_config("operations").lifecycle_manager
    manager.sync()
    return manager


class LifecycleViewMixin:
    """Maps lifecycle errors to {"error": message} responses"""

    def handle_exception(self, exc):
        if isinstance(exc, OperationLifecycleError):
            return Response({"error": exc.user_message}, status=exc.status_code)
        return super().handle_exception(exc)

    def filter_type(self, rows):
        operation_type = self.request.query_params.get("type")
        if operation_type in OperationType.values:
            return [row for row in rows if row["type"] == operation_type]
        return rows


class OperationViewSet(LifecycleViewMixin, viewsets.ViewSet):
    """
    Active operations
    - Technicians submit forms, answer feedback and see their own work
    - Operators claim, update, message and finish operations
    """

    operator_actions = {"assign", "unassign", "update_status", "feedback", "complete", "cancel", "queue"}
    technician_actions = {"create", "technician_response"}

    def get_permissions(self):
        if self.action in self.operator_actions:
            return [IsOperator()]
        if self.action in self.technician_actions:
            return [IsTechnician()]
        return [IsAuthenticated()]

    def _visible_operation(self, manager, pk):
        row = manager.fetch_operation(pk)
        if row is None:
            raise OperationNotFoundError(pk)

        user = self.request.user
        if not user.is_operator and row["technician_id"] != str(user.pk):
            raise PermissionDenied("You can only access your own operations.")
        return row

    def list(self, request):
        manager = get_lifecycle_manager()
        if request.user.is_operator:
            rows = list(manager.operations)
        else:
            rows = manager.get_user_operations(request.user.pk)
        return Response(OperationSerializer(self.filter_type(rows), many=True).data)

    def retrieve(self, request, pk=None):
        row = self._visible_operation(get_lifecycle_manager(), pk)
        return Response(OperationSerializer(row).data)

    @method_decorator(ratelimit(key="user", rate=settings.OPERATIONS_CREATE_RATE, method="POST", block=False))
    def create(self, request):
        """
        Submit a form as a new pending operation

        POST /api/v1/operations/
        {"type": "rma", "data": {"serial": "FHTT1234", ...}}
        """
        if getattr(request, "limited", False):
            return Response(
                {"error": "Rate limit exceeded", "detail": "Too many operations submitted. Please try again later."},
                status=status.HTTP_429_TOO_MANY_REQUESTS,
            )

        serializer = CreateOperationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        row = get_lifecycle_manager().create(
            serializer.validated_data["type"],
            serializer.validated_data["data"],
            technician=request.user.display_name,
            technician_id=request.user.pk,
        )
        return Response(OperationSerializer(row).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"])
    def assign(self, request, pk=None):
        serializer = AssignSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        operator_name = serializer.validated_data.get("operator_name") or request.user.display_name
        row = get_lifecycle_manager().assign(pk, request.user.pk, operator_name)
        return Response(OperationSerializer(row).data)

    @action(detail=True, methods=["post"])
    def unassign(self, request, pk=None):
        row = get_lifecycle_manager().unassign(pk)
        return Response(OperationSerializer(row).data)

    @action(detail=True, methods=["post"], url_path="status")
    def update_status(self, request, pk=None):
        serializer = StatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        target = serializer.validated_data["status"]
        operator_name = serializer.validated_data.get("operator_name") or request.user.display_name
        row = get_lifecycle_manager().update_status(pk, target, operator_name=operator_name, operator_id=request.user.pk)

        # terminal targets come back as the archived history record
        if "final_status" in row:
            return Response(HistoryRecordSerializer(row).data)
        return Response(OperationSerializer(row).data)

    @action(detail=True, methods=["post"])
    def feedback(self, request, pk=None):
        serializer = MessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        row = get_lifecycle_manager().send_feedback(pk, serializer.validated_data["text"])
        return Response(OperationSerializer(row).data)

    @action(detail=True, methods=["post"], url_path="response")
    def technician_response(self, request, pk=None):
        serializer = MessageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        manager = get_lifecycle_manager()
        self._visible_operation(manager, pk)
        row = manager.send_technician_response(pk, serializer.validated_data["text"])
        return Response(OperationSerializer(row).data)

    @action(detail=True, methods=["post"])
    def complete(self, request, pk=None):
        serializer = FinishSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        operator_name = serializer.validated_data.get("operator_name") or request.user.display_name
        history_row = get_lifecycle_manager().complete(pk, operator_name)
        return Response(HistoryRecordSerializer(history_row).data)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = FinishSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        operator_name = serializer.validated_data.get("operator_name") or request.user.display_name
        history_row = get_lifecycle_manager().cancel(pk, operator_name)
        return Response(HistoryRecordSerializer(history_row).data)

    @action(detail=True, methods=["get"], url_path="queue-position")
    def queue_position(self, request, pk=None):
        """Position 0 means the operation is not waiting in the queue"""
        manager = get_lifecycle_manager()
        self._visible_operation(manager, pk)

        data = {
            "id": pk,
            "position": manager.get_queue_position(pk),
            "estimated_wait_minutes": manager.get_estimated_wait_time(pk),
        }
        return Response(QueuePositionSerializer(data).data)

    @action(detail=False, methods=["get"])
    def queue(self, request):
        rows = self.filter_type(list(get_lifecycle_manager().queue))
        return Response(OperationSerializer(rows, many=True).data)

    @action(detail=False, methods=["get"])
    def mine(self, request):
        rows = self.filter_type(get_lifecycle_manager().get_user_operations(request.user.pk))
        return Response(OperationSerializer(rows, many=True).data)

    @action(detail=False, methods=["get"], url_path="pending-count")
    def pending_count(self, request):
        operation_type = request.query_params.get("type")
        if operation_type not in OperationType.values:
            operation_type = None
        return Response({"type": operation_type, "count": get_lifecycle_manager().get_pending_count(operation_type)})

    @action(detail=False, methods=["post"])
    def refresh(self, request):
        """Rebuild the mirror from the database"""
        manager = apps.get_app_config("operations").lifecycle_manager
        manager.refresh()
        logger.info(f"Mirror refreshed by {request.user.username}")
        return Response(
            {
                "operations": len(manager.operations),
                "queue": len(manager.queue),
                "history": len(manager.history),
            }
        )


class HistoryViewSet(LifecycleViewMixin, viewsets.GenericViewSet):
    """
    Completed and cancelled operations, newest first
    Technicians only see their own records
    """

    serializer_class = HistoryRecordSerializer
    permission_classes = [IsAuthenticated]

    def list(self, request):
        manager = get_lifecycle_manager()
        if request.user.is_operator:
            rows = list(manager.history)
        else:
            rows = manager.get_user_history(request.user.pk)

        page = self.paginate_queryset(self.filter_type(rows))
        serializer = self.get_serializer(page, many=True)
        return self.get_paginated_response(serializer.data)
