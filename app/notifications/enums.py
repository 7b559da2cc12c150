"""
Fixed vocabularies for the notification subsystem.

Notification *types* are not listed here: they live in the
NotificationType registry table so new types can be added without a
code change. Everything below drives routing and scheduling decisions.

Delivery State Flow:
    PENDING -> SENT -> DELIVERED -> OPENED -> CLICKED
                    -> BOUNCED
    PENDING/SENT -> FAILED -> PENDING (retry, budget permitting)
    any (except UNSUBSCRIBED) -> UNSUBSCRIBED
"""

from django.db import models


class NotificationCategory(models.TextChoices):
    """Coarse grouping of notification types, used for channel policy."""

    ACADEMIC = "academic", "Academic"
    SOCIAL = "social", "Social"
    SYSTEM = "system", "System"
    SECURITY = "security", "Security"
    MARKETING = "marketing", "Marketing"
    ADMINISTRATIVE = "administrative", "Administrative"
    CHAT = "chat", "Chat"
    VIDEO = "video", "Video"
    FORUM = "forum", "Forum"
    FORUM_REPORT = "forum_report", "Forum Report"


class NotificationPriority(models.TextChoices):
    """
    Notification priority.

    URGENT bypasses digesting and quiet hours. Higher priorities are
    retried first when the retry sweep is saturated.
    """

    LOW = "low", "Low"
    NORMAL = "normal", "Normal"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    URGENT = "urgent", "Urgent"


class DeliveryChannel(models.TextChoices):
    """Delivery channels. Declaration order is the canonical dispatch order."""

    IN_APP = "in_app", "In-App"
    EMAIL = "email", "Email"
    PUSH = "push", "Push Notification"
    SMS = "sms", "SMS"
    SLACK = "slack", "Slack"
    DISCORD = "discord", "Discord"
    WEBHOOK = "webhook", "Webhook"


class DeliveryStatus(models.TextChoices):
    """Status of a single (notification, channel) delivery."""

    PENDING = "pending", "Pending"
    SENT = "sent", "Sent"
    DELIVERED = "delivered", "Delivered"
    FAILED = "failed", "Failed"
    BOUNCED = "bounced", "Bounced"
    OPENED = "opened", "Opened"
    CLICKED = "clicked", "Clicked"
    UNSUBSCRIBED = "unsubscribed", "Unsubscribed"


class DigestFrequency(models.TextChoices):
    """
    How often a user wants to hear from us.

    IMMEDIATE dispatches at once. HOURLY/DAILY/WEEKLY defer rows to the
    digest aggregator. NEVER limits non-urgent notifications to in-app.
    """

    IMMEDIATE = "immediate", "Immediate"
    HOURLY = "hourly", "Hourly"
    DAILY = "daily", "Daily"
    WEEKLY = "weekly", "Weekly"
    NEVER = "never", "Never"


class DigestBatchStatus(models.TextChoices):
    OPEN = "open", "Open"
    SENT = "sent", "Sent"
    FAILED = "failed", "Failed"


class DeliveryEvent(models.TextChoices):
    """Out-of-band receipt events reported by providers."""

    DELIVERED = "delivered", "Delivered"
    OPENED = "opened", "Opened"
    CLICKED = "clicked", "Clicked"
    BOUNCED = "bounced", "Bounced"
    FAILED = "failed", "Failed"
