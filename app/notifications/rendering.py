"""
Rendering of notification content for transports.

Titles and bodies are rendered once, when the notification is created,
from the NotificationType's str.format() templates. Transports receive a
RenderedContent: either one notification or a digest of several.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.utils.html import escape, format_html_join

from notifications.enums import DigestFrequency

if TYPE_CHECKING:
    from collections.abc import Sequence

    from notifications.models import Notification, NotificationType


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    body: str
    html_body: str | None = None
    data: dict = field(default_factory=dict)


def render_templates(
    notification_type: NotificationType,
    data: dict,
    title: str | None = None,
    body: str | None = None,
) -> tuple[str, str]:
    """
    Render title/body from the type's templates. Explicit values win.

    Raises:
        KeyError: If a template placeholder is missing from data
        IndexError: If a template uses positional placeholders
    """
    rendered_title = title or notification_type.title_template.format(**data)
    rendered_body = body or notification_type.body_template.format(**data)
    return rendered_title or notification_type.display_name, rendered_body


def render_notification(notification: Notification) -> RenderedContent:
    return RenderedContent(
        subject=notification.title,
        body=notification.body,
        html_body=f"<p>{escape(notification.body)}</p>" if notification.body else None,
        data={
            "notification_id": str(notification.id),
            "type": notification.notification_type.key,
            "category": notification.category,
            "priority": notification.priority,
            **(notification.data or {}),
        },
    )


_DIGEST_HEADINGS = {
    DigestFrequency.HOURLY: "Your hourly summary",
    DigestFrequency.DAILY: "Your daily summary",
    DigestFrequency.WEEKLY: "Your weekly summary",
}


def render_digest(
    notifications: Sequence[Notification],
    frequency: str,
    max_items: int = 10,
) -> RenderedContent:
    """
    Render several notifications as one message.

    At most ``max_items`` entries are listed; the rest are counted in a
    trailing "and N more" line.
    """
    total = len(notifications)
    shown = list(notifications[:max_items])
    remaining = total - len(shown)

    heading = _DIGEST_HEADINGS.get(frequency, "Your notification summary")
    subject = f"{heading}: {total} new notification{'s' if total != 1 else ''}"

    lines = [f"- {n.title}" + (f": {n.body}" if n.body else "") for n in shown]
    if remaining > 0:
        lines.append(f"...and {remaining} more")

    items_html = format_html_join(
        "",
        "<li><strong>{}</strong> {}</li>",
        ((n.title, n.body) for n in shown),
    )
    html_body = f"<h2>{escape(heading)}</h2><ul>{items_html}</ul>"
    if remaining > 0:
        html_body += f"<p>...and {remaining} more</p>"

    return RenderedContent(
        subject=subject,
        body="\n".join(lines),
        html_body=html_body,
        data={
            "digest": True,
            "frequency": frequency,
            "count": total,
            "notification_ids": [str(n.id) for n in notifications],
        },
    )
