import uuid
from django.conf import settings
from django.db import models


class Notification(models.Model):
    LEVEL_INFO = "info"
    LEVEL_SUCCESS = "success"
    LEVEL_ERROR = "error"

    LEVEL_CHOICES = (
        (LEVEL_INFO, "Info"),
        (LEVEL_SUCCESS, "Success"),
        (LEVEL_ERROR, "Error"),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    recipient = models.ForeignKey(settings.AUTH_USER_MODEL, related_name="notifications", on_delete=models.CASCADE)
    audience_role = models.CharField(max_length=20, null=True, blank=True)  # set for role broadcasts
    level = models.CharField(max_length=10, choices=LEVEL_CHOICES, default=LEVEL_INFO)
    message = models.CharField(max_length=500)
    operation_id = models.UUIDField(null=True, blank=True)
    sound = models.BooleanField(default=False)  # audible cue, already gated by the recipient's preference

    created_at = models.DateTimeField(auto_now_add=True)
    read_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "notifications"
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["recipient", "read_at"], name="notifications_unread_idx")]

    def __str__(self):
        return f"Notification for {self.recipient_id}: {self.message}"
