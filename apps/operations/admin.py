from django.contrib import admin
from .models import Operation, OperationHistory


@admin.register(Operation)
class OperationAdmin(admin.ModelAdmin):
    list_display = ["id", "type", "status", "technician", "assigned_operator", "created_at"]
    list_filter = ["type", "status"]
    search_fields = ["technician", "assigned_operator"]
    readonly_fields = ["id", "created_at", "updated_at"]


@admin.register(OperationHistory)
class OperationHistoryAdmin(admin.ModelAdmin):
    list_display = ["operation_id", "type", "final_status", "technician", "operator", "completed_at"]
    list_filter = ["type", "final_status"]
    search_fields = ["technician", "operator"]
    readonly_fields = ["id", "operation_id", "created_at", "completed_at"]
