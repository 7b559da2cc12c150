"""
Seed the notification type registry.

Types are rows, not code: new types can be added from the admin or a
later data migration. Only security_alert and video_session_starting may
use SMS, and system_maintenance never goes to push.
"""

from django.db import migrations

IN_APP = "in_app"
EMAIL = "email"
PUSH = "push"
SMS = "sms"
SLACK = "slack"
DISCORD = "discord"
WEBHOOK = "webhook"

STANDARD = [IN_APP, EMAIL, PUSH]
TEAM_CHANNELS = [SLACK, DISCORD, WEBHOOK]

# (key, display_name, category, default_priority, allowed_channels, title, body)
NOTIFICATION_TYPES = [
    (
        "announcement",
        "Announcement",
        "administrative",
        "normal",
        [IN_APP, EMAIL, PUSH, *TEAM_CHANNELS],
        "{title}",
        "{message}",
    ),
    (
        "assessment_started",
        "Assessment Started",
        "academic",
        "normal",
        STANDARD,
        "Assessment started: {assessment}",
        "Your assessment {assessment} has started.",
    ),
    (
        "assessment_submitted",
        "Assessment Submitted",
        "academic",
        "normal",
        STANDARD,
        "Assessment submitted: {assessment}",
        "We received your submission for {assessment}.",
    ),
    (
        "assessment_completed",
        "Assessment Completed",
        "academic",
        "normal",
        STANDARD,
        "Assessment completed: {assessment}",
        "Your assessment {assessment} is complete.",
    ),
    (
        "assessment_terminated",
        "Assessment Terminated",
        "academic",
        "high",
        STANDARD,
        "Assessment terminated: {assessment}",
        "Your assessment {assessment} was terminated: {reason}",
    ),
    (
        "assignment_due",
        "Assignment Due",
        "academic",
        "medium",
        [IN_APP, EMAIL, PUSH, *TEAM_CHANNELS],
        "Assignment due: {assignment}",
        "{assignment} is due {due}.",
    ),
    (
        "certificate_earned",
        "Certificate Earned",
        "academic",
        "normal",
        STANDARD,
        "Certificate earned: {course}",
        "Congratulations! You earned a certificate for {course}.",
    ),
    (
        "chat_message",
        "Chat Message",
        "chat",
        "normal",
        [IN_APP, PUSH],
        "New message from {sender}",
        "{preview}",
    ),
    (
        "chat_mention",
        "Chat Mention",
        "chat",
        "medium",
        [IN_APP, PUSH],
        "{sender} mentioned you",
        "{preview}",
    ),
    (
        "chat_everyone",
        "Chat @everyone",
        "chat",
        "medium",
        [IN_APP, PUSH],
        "{sender} notified everyone in {conversation}",
        "{preview}",
    ),
    (
        "course_enrollment",
        "Course Enrollment",
        "academic",
        "normal",
        STANDARD,
        "Enrolled in {course}",
        "You are now enrolled in {course}.",
    ),
    (
        "course_completed",
        "Course Completed",
        "academic",
        "normal",
        STANDARD,
        "Course completed: {course}",
        "You completed {course}.",
    ),
    (
        "grade_posted",
        "Grade Posted",
        "academic",
        "normal",
        [IN_APP, EMAIL, PUSH, *TEAM_CHANNELS],
        "Grade posted for {course}",
        "Your grade for {assignment} is {grade}.",
    ),
    (
        "lesson_available",
        "Lesson Available",
        "academic",
        "low",
        STANDARD,
        "New lesson: {lesson}",
        "{lesson} is now available in {course}.",
    ),
    (
        "message_received",
        "Message Received",
        "social",
        "normal",
        STANDARD,
        "New message from {sender}",
        "{preview}",
    ),
    (
        "study_reminder",
        "Study Reminder",
        "academic",
        "low",
        [IN_APP, EMAIL, PUSH],
        "Time to study",
        "{message}",
    ),
    (
        "report_handled",
        "Report Handled",
        "forum_report",
        "normal",
        [IN_APP, EMAIL],
        "Your report was reviewed",
        "{resolution}",
    ),
    (
        "security_alert",
        "Security Alert",
        "security",
        "urgent",
        [IN_APP, EMAIL, PUSH, SMS],
        "Security alert",
        "{message}",
    ),
    (
        "security_violation",
        "Security Violation",
        "security",
        "high",
        [IN_APP, EMAIL, PUSH],
        "Security violation detected",
        "{message}",
    ),
    (
        "session_expired",
        "Session Expired",
        "security",
        "normal",
        [IN_APP, EMAIL],
        "Your session expired",
        "Please sign in again.",
    ),
    (
        "study_group_invitation",
        "Study Group Invitation",
        "social",
        "normal",
        STANDARD,
        "{inviter} invited you to {group}",
        "Join the study group {group}.",
    ),
    (
        "system_maintenance",
        "System Maintenance",
        "system",
        "high",
        [IN_APP, EMAIL, *TEAM_CHANNELS],
        "Scheduled maintenance",
        "{message}",
    ),
    (
        "time_warning",
        "Time Warning",
        "academic",
        "high",
        [IN_APP, PUSH],
        "{minutes} minutes remaining",
        "{assessment} ends in {minutes} minutes.",
    ),
    (
        "video_session_starting",
        "Video Session Starting",
        "video",
        "high",
        [IN_APP, PUSH, SMS],
        "{session} is starting",
        "Your video session {session} starts {starts}.",
    ),
]


def seed_notification_types(apps, schema_editor):
    """Create the built-in notification types. Existing keys are left alone."""
    NotificationType = apps.get_model("notifications", "NotificationType")

    for key, display_name, category, priority, channels, title, body in NOTIFICATION_TYPES:
        NotificationType.objects.get_or_create(
            key=key,
            defaults={
                "display_name": display_name,
                "category": category,
                "default_priority": priority,
                "allowed_channels": channels,
                "title_template": title,
                "body_template": body,
                "is_active": True,
            },
        )


def remove_notification_types(apps, schema_editor):
    NotificationType = apps.get_model("notifications", "NotificationType")
    NotificationType.objects.filter(key__in=[row[0] for row in NOTIFICATION_TYPES]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("notifications", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(seed_notification_types, remove_notification_types),
    ]
