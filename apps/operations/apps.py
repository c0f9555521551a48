import logging

from django.apps import AppConfig
from django.conf import settings

logger = logging.getLogger(__name__)


class OperationsConfig(AppConfig):
    name = "apps.operations"
    label = "operations"
    default_auto_field = "django.db.models.BigAutoField"

    lifecycle_manager = None

    def ready(self):
        from apps.notifications.services import Notifier
        from apps.realtime.bridge import RedisChangeBridge

        from .services.lifecycle_service import OperationLifecycleManager
        from .services.record_store import DjangoRecordStore

        bridge = None
        if settings.OPERATIONS_REDIS_URL:
            bridge = RedisChangeBridge(settings.OPERATIONS_REDIS_URL, channel=settings.OPERATIONS_CHANGES_CHANNEL)

        # one manager per process; the mirror loads lazily on first sync()
        self.lifecycle_manager = OperationLifecycleManager(
            DjangoRecordStore(),
            notifier=Notifier(),
            minutes_per_operation=settings.OPERATIONS_MINUTES_PER_OPERATION,
            strict_transitions=settings.OPERATIONS_STRICT_TRANSITIONS,
            bridge=bridge,
        )
        self.lifecycle_manager.start()
        logger.debug("Operations app ready")
