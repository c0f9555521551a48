from rest_framework import serializers

from .models import Notification


class NotificationSerializer(serializers.ModelSerializer):
    play_sound = serializers.BooleanField(source="sound", read_only=True)

    class Meta:
        model = Notification
        fields = [
            "id",
            "level",
            "message",
            "operation_id",
            "audience_role",
            "play_sound",
            "created_at",
            "read_at",
        ]
        read_only_fields = fields


class SoundPreferenceSerializer(serializers.Serializer):
    enabled = serializers.BooleanField()
