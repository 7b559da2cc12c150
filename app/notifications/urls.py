"""
URL configuration for notifications API.

Routes:
    Webhooks:
        /webhooks/delivery-events/  - Provider delivery receipts (POST)
"""

from django.urls import path

from notifications.webhooks import DeliveryEventWebhookView

app_name = "notifications"
urlpatterns = [
    path(
        "webhooks/delivery-events/",
        DeliveryEventWebhookView.as_view(),
        name="delivery-events-webhook",
    ),
]
