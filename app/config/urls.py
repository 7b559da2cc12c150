"""
URL configuration for the notification delivery service.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/notifications/         - Notification endpoints
        webhooks/delivery-events/  - Provider delivery receipts (POST)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

# =============================================================================
# API v1 Routes
# =============================================================================
# All routes here are prefixed with /api/v1/ automatically
api_v1_patterns = [
    # Notifications
    path("notifications/", include("notifications.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Notification Delivery Admin"
admin.site.site_title = "Notification Admin"
admin.site.index_title = "Delivery administration"
