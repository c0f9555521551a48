import logging
from typing import Optional

from django.contrib.auth import get_user_model
from django.db import DatabaseError

from .models import Notification

logger = logging.getLogger(__name__)

User = get_user_model()

# roles that receive a broadcast addressed to a role
ROLE_AUDIENCES = {
    User.ROLE_OPERATOR: [User.ROLE_OPERATOR, User.ROLE_ADMIN],
    User.ROLE_TECHNICIAN: [User.ROLE_TECHNICIAN],
    User.ROLE_ADMIN: [User.ROLE_ADMIN],
}


class Notifier:
    """
    User-facing alerts (toasts) with an optional audible cue

    Delivery is best effort: a failed alert is logged and never breaks the
    lifecycle action that raised it.
    """

    def broadcast(self, role: str, message: str, level: str = Notification.LEVEL_INFO, operation_id=None, sound: bool = False) -> int:
        """
        Alert every active user holding role

        Returns:
            Number of notifications created
        """
        recipients = User.objects.filter(role__in=ROLE_AUDIENCES.get(role, [role]), is_active=True)

        try:
            notifications = Notification.objects.bulk_create(
                [
                    Notification(
                        recipient=user,
                        audience_role=role,
                        level=level,
                        message=message,
                        operation_id=operation_id,
                        sound=sound and user.sound_notifications,
                    )
                    for user in recipients
                ]
            )
        except DatabaseError as e:
            logger.error(f"Broadcast to {role} failed: {e}")
            return 0

        logger.info(f"Broadcast to {len(notifications)} {role} users: {message}")
        return len(notifications)

    def notify_user(self, user_id, message: str, level: str = Notification.LEVEL_INFO, operation_id=None, sound: bool = False) -> Optional[Notification]:
        if not user_id:
            return None

        try:
            user = User.objects.get(pk=user_id)
        except (User.DoesNotExist, ValueError):
            logger.warning(f"Cannot notify unknown user {user_id}")
            return None
        except DatabaseError as e:
            logger.error(f"Lookup of user {user_id} failed: {e}")
            return None

        try:
            notification = Notification.objects.create(
                recipient=user,
                level=level,
                message=message,
                operation_id=operation_id,
                sound=sound and user.sound_notifications,
            )
        except DatabaseError as e:
            logger.error(f"Notification to user {user_id} failed: {e}")
            return None

        logger.info(f"Notified user {user_id}: {message}")
        return notification
