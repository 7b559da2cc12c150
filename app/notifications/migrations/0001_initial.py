import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="NotificationType",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("key", models.CharField(db_index=True, help_text="Unique programmatic identifier (e.g., 'grade_posted')", max_length=100, unique=True)),
                ("display_name", models.CharField(help_text="Human-readable name for display", max_length=200)),
                ("category", models.CharField(choices=[("academic", "Academic"), ("social", "Social"), ("system", "System"), ("security", "Security"), ("marketing", "Marketing"), ("administrative", "Administrative"), ("chat", "Chat"), ("video", "Video"), ("forum", "Forum"), ("forum_report", "Forum Report")], db_index=True, default="system", max_length=20)),
                ("default_priority", models.CharField(choices=[("low", "Low"), ("normal", "Normal"), ("medium", "Medium"), ("high", "High"), ("urgent", "Urgent")], default="normal", max_length=10)),
                ("allowed_channels", models.JSONField(blank=True, default=list, help_text="Channels this type may use (empty = category policy)")),
                ("title_template", models.CharField(blank=True, default="", help_text="Python format string for title (e.g., 'Grade posted for {course}')", max_length=500)),
                ("body_template", models.TextField(blank=True, default="", help_text="Python format string for body")),
                ("is_active", models.BooleanField(db_index=True, default=True)),
            ],
            options={
                "verbose_name": "notification type",
                "verbose_name_plural": "notification types",
                "db_table": "notifications_notification_type",
                "ordering": ["key"],
            },
        ),
        migrations.CreateModel(
            name="Notification",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("is_deleted", models.BooleanField(db_index=True, default=False, help_text="Whether this record has been soft deleted")),
                ("deleted_at", models.DateTimeField(blank=True, help_text="Timestamp when this record was soft deleted", null=True)),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier (UUID v4)", primary_key=True, serialize=False)),
                ("category", models.CharField(choices=[("academic", "Academic"), ("social", "Social"), ("system", "System"), ("security", "Security"), ("marketing", "Marketing"), ("administrative", "Administrative"), ("chat", "Chat"), ("video", "Video"), ("forum", "Forum"), ("forum_report", "Forum Report")], db_index=True, max_length=20)),
                ("priority", models.CharField(choices=[("low", "Low"), ("normal", "Normal"), ("medium", "Medium"), ("high", "High"), ("urgent", "Urgent")], db_index=True, default="normal", max_length=10)),
                ("title", models.CharField(max_length=500)),
                ("body", models.TextField(blank=True, default="")),
                ("data", models.JSONField(blank=True, default=dict)),
                ("expires_at", models.DateTimeField(blank=True, db_index=True, help_text="When the notification expires (soft-deleted by the retention sweeper)", null=True)),
                ("idempotency_key", models.CharField(blank=True, max_length=255, null=True)),
                ("notification_type", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="notifications", to="notifications.notificationtype")),
                ("recipient", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="notifications", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "notifications_notification",
                "ordering": ["-created_at"],
                "base_manager_name": "all_objects",
                "indexes": [
                    models.Index(fields=["recipient", "-created_at"], name="notif_recipient_created_idx"),
                    models.Index(fields=["is_deleted", "expires_at"], name="notif_expiry_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("idempotency_key__isnull", False)), fields=("idempotency_key",), name="notif_idempotency_key_unique"),
                ],
            },
            managers=[
                ("all_objects", models.Manager()),
            ],
        ),
        migrations.CreateModel(
            name="UserChannelPreference",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("user", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, primary_key=True, related_name="notification_channel_preference", serialize=False, to=settings.AUTH_USER_MODEL)),
                ("enabled_channels", models.JSONField(blank=True, default=list, help_text="Channels the user receives notifications on")),
                ("frequency", models.CharField(choices=[("immediate", "Immediate"), ("hourly", "Hourly"), ("daily", "Daily"), ("weekly", "Weekly"), ("never", "Never")], default="immediate", max_length=10)),
                ("digest_max_items", models.PositiveSmallIntegerField(default=10, help_text="Maximum notifications listed in one digest")),
                ("quiet_hours_enabled", models.BooleanField(default=False)),
                ("quiet_hours_start", models.TimeField(blank=True, null=True)),
                ("quiet_hours_end", models.TimeField(blank=True, null=True)),
                ("quiet_hours_weekdays", models.JSONField(blank=True, default=list)),
                ("timezone", models.CharField(default="UTC", max_length=64)),
                ("phone_number", models.CharField(blank=True, default="", max_length=32)),
                ("device_token", models.CharField(blank=True, default="", max_length=512)),
                ("slack_webhook_url", models.URLField(blank=True, default="", max_length=500)),
                ("discord_webhook_url", models.URLField(blank=True, default="", max_length=500)),
                ("webhook_url", models.URLField(blank=True, default="", max_length=500)),
            ],
            options={
                "verbose_name": "user channel preference",
                "verbose_name_plural": "user channel preferences",
                "db_table": "notifications_user_channel_preference",
            },
        ),
        migrations.CreateModel(
            name="UserCategoryPreference",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("category", models.CharField(choices=[("academic", "Academic"), ("social", "Social"), ("system", "System"), ("security", "Security"), ("marketing", "Marketing"), ("administrative", "Administrative"), ("chat", "Chat"), ("video", "Video"), ("forum", "Forum"), ("forum_report", "Forum Report")], max_length=20)),
                ("disabled", models.BooleanField(default=False)),
                ("channels", models.JSONField(blank=True, help_text="Channel subset for this category (null = inherit)", null=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="notification_category_preferences", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "user category preference",
                "verbose_name_plural": "user category preferences",
                "db_table": "notifications_user_category_preference",
                "constraints": [
                    models.UniqueConstraint(fields=("user", "category"), name="unique_user_category_pref"),
                ],
            },
        ),
        migrations.CreateModel(
            name="UserNotificationPreference",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("disabled", models.BooleanField(default=False)),
                ("channels", models.JSONField(blank=True, help_text="Channel subset for this type (null = inherit)", null=True)),
                ("notification_type", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="user_preferences", to="notifications.notificationtype")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="notification_type_preferences", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "user notification preference",
                "verbose_name_plural": "user notification preferences",
                "db_table": "notifications_user_notification_preference",
                "constraints": [
                    models.UniqueConstraint(fields=("user", "notification_type"), name="unique_user_notif_type_pref"),
                ],
            },
        ),
        migrations.CreateModel(
            name="DigestBatch",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier (UUID v4)", primary_key=True, serialize=False)),
                ("channel", models.CharField(choices=[("in_app", "In-App"), ("email", "Email"), ("push", "Push Notification"), ("sms", "SMS"), ("slack", "Slack"), ("discord", "Discord"), ("webhook", "Webhook")], max_length=20)),
                ("frequency", models.CharField(choices=[("immediate", "Immediate"), ("hourly", "Hourly"), ("daily", "Daily"), ("weekly", "Weekly"), ("never", "Never")], max_length=10)),
                ("status", models.CharField(choices=[("open", "Open"), ("sent", "Sent"), ("failed", "Failed")], db_index=True, default="open", max_length=10)),
                ("window_start", models.DateTimeField(blank=True, null=True)),
                ("window_end", models.DateTimeField()),
                ("notification_count", models.PositiveIntegerField(default=0)),
                ("provider_message_id", models.CharField(blank=True, max_length=255, null=True)),
                ("failure_code", models.CharField(blank=True, default="", max_length=50)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="notification_digests", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "digest batch",
                "verbose_name_plural": "digest batches",
                "db_table": "notifications_digest_batch",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user", "channel", "-created_at"], name="notif_digest_user_chan_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="NotificationDelivery",
            fields=[
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True, help_text="Timestamp when this record was created")),
                ("updated_at", models.DateTimeField(auto_now=True, help_text="Timestamp when this record was last modified")),
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier (UUID v4)", primary_key=True, serialize=False)),
                ("channel", models.CharField(choices=[("in_app", "In-App"), ("email", "Email"), ("push", "Push Notification"), ("sms", "SMS"), ("slack", "Slack"), ("discord", "Discord"), ("webhook", "Webhook")], max_length=20)),
                ("status", django_fsm.FSMField(choices=[("pending", "Pending"), ("sent", "Sent"), ("delivered", "Delivered"), ("failed", "Failed"), ("bounced", "Bounced"), ("opened", "Opened"), ("clicked", "Clicked"), ("unsubscribed", "Unsubscribed")], db_index=True, default="pending", max_length=50)),
                ("retry_count", models.PositiveSmallIntegerField(default=0, help_text="Automatic re-attempts made so far (bounded by the retry budget)")),
                ("attempt_count", models.PositiveSmallIntegerField(default=0, help_text="Transport calls made for this row")),
                ("next_retry_at", models.DateTimeField(blank=True, null=True)),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("lease_expires_at", models.DateTimeField(blank=True, help_text="In-flight claim expiry; expired leases are recovered by the retry sweep", null=True)),
                ("digest_frequency", models.CharField(blank=True, choices=[("immediate", "Immediate"), ("hourly", "Hourly"), ("daily", "Daily"), ("weekly", "Weekly"), ("never", "Never")], default="", help_text="Digest tier this row is deferred to (blank = immediate)", max_length=10)),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("opened_at", models.DateTimeField(blank=True, null=True)),
                ("clicked_at", models.DateTimeField(blank=True, null=True)),
                ("bounced_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("unsubscribed_at", models.DateTimeField(blank=True, null=True)),
                ("provider_message_id", models.CharField(blank=True, help_text="Message ID from provider for receipt correlation", max_length=255, null=True)),
                ("failure_code", models.CharField(blank=True, default="", max_length=50)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("is_permanent_failure", models.BooleanField(default=False, help_text="True if retry won't help (e.g., invalid token)")),
                ("version", models.PositiveIntegerField(default=1, help_text="Version for optimistic locking - incremented on each write")),
                ("digest_batch", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="deliveries", to="notifications.digestbatch")),
                ("notification", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="deliveries", to="notifications.notification")),
            ],
            options={
                "verbose_name": "notification delivery",
                "verbose_name_plural": "notification deliveries",
                "db_table": "notifications_notification_delivery",
                "ordering": ["channel"],
                "indexes": [
                    models.Index(fields=["status", "next_retry_at"], name="notif_delivery_retry_idx"),
                    models.Index(fields=["status", "lease_expires_at"], name="notif_delivery_lease_idx"),
                    models.Index(fields=["digest_frequency", "status"], name="notif_delivery_digest_idx"),
                    models.Index(condition=models.Q(("provider_message_id__isnull", False)), fields=["provider_message_id"], name="notif_delivery_provider_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("notification", "channel"), name="unique_notification_channel"),
                ],
            },
        ),
    ]
