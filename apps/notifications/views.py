import logging

from django.utils import timezone
from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from .models import Notification
from .serializers import NotificationSerializer, SoundPreferenceSerializer

logger = logging.getLogger(__name__)


class NotificationViewSet(viewsets.ReadOnlyModelViewSet):
    """
    The current user's alerts, newest first
    ?unread=true restricts to notifications not yet read
    """

    serializer_class = NotificationSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        queryset = Notification.objects.filter(recipient=self.request.user)
        if self.request.query_params.get("unread") in ("1", "true", "True"):
            queryset = queryset.filter(read_at__isnull=True)
        return queryset

    @action(detail=True, methods=["post"])
    def read(self, request, pk=None):
        notification = self.get_object()
        if notification.read_at is None:
            notification.read_at = timezone.now()
            notification.save(update_fields=["read_at"])
        return Response(self.get_serializer(notification).data)

    @action(detail=False, methods=["post"], url_path="read-all")
    def read_all(self, request):
        updated = self.get_queryset().filter(read_at__isnull=True).update(read_at=timezone.now())
        return Response({"updated": updated})

    @action(detail=False, methods=["post"])
    def sound(self, request):
        """Toggle the audible cue that accompanies new alerts"""
        serializer = SoundPreferenceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        user = request.user
        user.sound_notifications = serializer.validated_data["enabled"]
        user.save(update_fields=["sound_notifications"])

        logger.info(f"User {user.username} set sound notifications to {user.sound_notifications}")
        return Response({"enabled": user.sound_notifications})
