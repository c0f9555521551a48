from django.urls import path, include
from rest_framework.routers import DefaultRouter
from .views import OperationViewSet, HistoryViewSet

router = DefaultRouter()
router.register(r"operations", OperationViewSet, basename="operation")
router.register(r"history", HistoryViewSet, basename="history")

urlpatterns = [
    path("", include(router.urls)),
]
