from django.contrib import admin
from .models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ["message", "recipient", "level", "sound", "created_at", "read_at"]
    list_filter = ["level", "audience_role"]
    readonly_fields = ["id", "created_at"]
