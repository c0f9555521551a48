import uuid
from django.db import models
from django.utils import timezone


class OperationType(models.TextChoices):
    INSTALLATION = "installation", "Installation"
    CTO = "cto", "CTO analysis"
    RMA = "rma", "RMA"


class OperationStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    IN_PROGRESS = "in_progress", "In progress"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    # legacy type-specific aliases of in_progress
    VERIFICANDO = "verificando", "Verificando"
    INICIANDO_PROVISIONAMENTO = "iniciando_provisionamento", "Iniciando provisionamento"
    EM_ANALISE = "em_analise", "Em análise"


class RowMixin:
    """Plain-dict view of a row, the shape the record store hands out"""

    def to_row(self) -> dict:
        row = {}
        for field in self._meta.concrete_fields:
            value = getattr(self, field.attname)
            if isinstance(value, uuid.UUID):
                value = str(value)
            row[field.attname] = value
        return row


class Operation(RowMixin, models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    type = models.CharField(max_length=20, choices=OperationType.choices)
    data = models.JSONField(default=dict)  # form fields, interpreted per type
    status = models.CharField(max_length=32, choices=OperationStatus.choices, default=OperationStatus.PENDING)

    technician = models.CharField(max_length=255)
    technician_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)

    # assignment
    operator = models.CharField(max_length=255, null=True, blank=True)
    operator_id = models.CharField(max_length=64, null=True, blank=True)
    assigned_operator = models.CharField(max_length=255, null=True, blank=True)
    assigned_at = models.DateTimeField(null=True, blank=True)

    # messaging
    feedback = models.TextField(null=True, blank=True)
    technician_response = models.TextField(null=True, blank=True)

    completed_by = models.CharField(max_length=255, null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    # timestamps
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "operations"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="operations_status_created_idx"),
            models.Index(fields=["type", "status"], name="operations_type_status_idx"),
        ]

    def __str__(self):
        return f"{self.type} operation {self.id} ({self.status})"


class OperationHistory(RowMixin, models.Model):
    """Archived snapshot of a completed or cancelled operation"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    operation_id = models.UUIDField(db_index=True)
    type = models.CharField(max_length=20, choices=OperationType.choices)
    data = models.JSONField(default=dict)
    final_status = models.CharField(max_length=32, choices=OperationStatus.choices, default=OperationStatus.COMPLETED)

    technician = models.CharField(max_length=255)
    technician_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    operator = models.CharField(max_length=255, null=True, blank=True)

    feedback = models.TextField(null=True, blank=True)
    technician_response = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField()  # copied from the operation
    completed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "operation_history"
        ordering = ["-created_at"]
        verbose_name_plural = "operation history"

    def __str__(self):
        return f"History of {self.type} operation {self.operation_id}"
