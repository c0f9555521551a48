from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path("admin/", admin.site.urls),
    # API v1
    path("api/v1/auth/", include("apps.authentication.urls")),
    path("api/v1/", include("apps.operations.urls")),
    path("api/v1/notifications/", include("apps.notifications.urls")),
]
