"""
Django admin configuration for notification models.

Registers all notification models with the admin site:
- NotificationType
- Notification (view only; notifications are immutable)
- UserChannelPreference
- UserCategoryPreference
- UserNotificationPreference
- NotificationDelivery (view only; rows change through the engine)
- DigestBatch
"""

from django.contrib import admin

from notifications.models import (
    DigestBatch,
    Notification,
    NotificationDelivery,
    NotificationType,
    UserCategoryPreference,
    UserChannelPreference,
    UserNotificationPreference,
)


class ReadOnlyAdminMixin:
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(NotificationType)
class NotificationTypeAdmin(admin.ModelAdmin):
    """
    Admin configuration for NotificationType.

    Provides management of notification type definitions including
    templates and allowed channels.
    """

    list_display = [
        "key",
        "display_name",
        "category",
        "default_priority",
        "is_active",
    ]
    list_filter = ["is_active", "category", "default_priority"]
    search_fields = ["key", "display_name"]
    ordering = ["category", "key"]
    fieldsets = (
        (
            None,
            {
                "fields": ("key", "display_name", "category", "default_priority", "is_active"),
            },
        ),
        (
            "Templates",
            {
                "fields": ("title_template", "body_template"),
            },
        ),
        (
            "Channels",
            {
                "fields": ("allowed_channels",),
                "description": "Leave empty to use the category's channel policy.",
            },
        ),
    )


class NotificationDeliveryInline(admin.TabularInline):
    model = NotificationDelivery
    extra = 0
    can_delete = False
    fields = ["channel", "status", "retry_count", "next_retry_at", "failure_code"]
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Notification)
class NotificationAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Admin configuration for Notification.

    Provides read-only view of notifications and their deliveries for
    debugging and support. Lists expired (soft-deleted) notifications too.
    """

    list_display = [
        "id",
        "notification_type",
        "recipient",
        "priority",
        "title",
        "is_deleted",
        "created_at",
    ]
    list_filter = ["priority", "category", "is_deleted", "created_at"]
    search_fields = ["title", "recipient__email", "idempotency_key"]
    ordering = ["-created_at"]
    raw_id_fields = ["recipient"]
    inlines = [NotificationDeliveryInline]

    def get_queryset(self, request):
        return Notification.all_objects.select_related("notification_type", "recipient")


@admin.register(UserChannelPreference)
class UserChannelPreferenceAdmin(admin.ModelAdmin):
    list_display = ["user", "enabled_channels", "frequency", "quiet_hours_enabled", "updated_at"]
    list_filter = ["frequency", "quiet_hours_enabled"]
    search_fields = ["user__email"]
    raw_id_fields = ["user"]


@admin.register(UserCategoryPreference)
class UserCategoryPreferenceAdmin(admin.ModelAdmin):
    list_display = ["user", "category", "disabled", "channels", "updated_at"]
    list_filter = ["category", "disabled"]
    search_fields = ["user__email"]
    raw_id_fields = ["user"]


@admin.register(UserNotificationPreference)
class UserNotificationPreferenceAdmin(admin.ModelAdmin):
    list_display = ["user", "notification_type", "disabled", "channels", "updated_at"]
    list_filter = ["disabled", "notification_type"]
    search_fields = ["user__email", "notification_type__key"]
    raw_id_fields = ["user"]


@admin.register(NotificationDelivery)
class NotificationDeliveryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """
    Admin configuration for NotificationDelivery.

    Read-only: status changes go through the dispatch engine, the
    sweeps and provider receipts so version checks stay meaningful.
    """

    list_display = [
        "id",
        "notification",
        "channel",
        "status",
        "retry_count",
        "next_retry_at",
        "digest_frequency",
        "failure_code",
        "created_at",
    ]
    list_filter = ["channel", "status", "digest_frequency", "is_permanent_failure"]
    search_fields = ["notification__id", "provider_message_id"]
    ordering = ["-created_at"]
    raw_id_fields = ["notification", "digest_batch"]


@admin.register(DigestBatch)
class DigestBatchAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["id", "user", "channel", "frequency", "status", "notification_count", "created_at"]
    list_filter = ["channel", "frequency", "status"]
    search_fields = ["user__email", "provider_message_id"]
    raw_id_fields = ["user"]
