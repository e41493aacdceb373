"""Notification email templates.

Renders the application's user-facing emails and hands them to the queue.
Looking up users and organizations is the caller's job; these builders
take the already-resolved names and addresses. All interpolated text is
HTML-escaped.
"""

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from html import escape
from typing import Any

# Digest emails list at most this many notifications
DIGEST_MAX_ITEMS = 10

PRODUCT_NAME = "InsightHub"


@dataclass(frozen=True)
class RenderedEmail:
    """Subject and HTML body ready to enqueue."""

    subject: str
    body: str


@dataclass(frozen=True)
class DigestItem:
    """One unread notification listed in a digest."""

    title: str
    message: str


def render_notification(subject: str, message: str) -> RenderedEmail:
    """Render a plain notification email.

    Args:
        subject: Subject line, repeated as the heading.
        message: Notification text.

    Returns:
        Rendered email.
    """
    body = (
        f"<h1>{escape(subject)}</h1>\n"
        f"<p>{escape(message)}</p>\n"
        "<hr>\n"
        f'<p style="color: #666;">This email was sent by {PRODUCT_NAME}.</p>'
    )
    return RenderedEmail(subject=subject, body=body)


def render_welcome(user_name: str, organization_name: str, frontend_url: str) -> RenderedEmail:
    """Render the welcome email for a user added to an organization."""
    body = (
        f"<h1>Welcome to {PRODUCT_NAME}!</h1>\n"
        f"<p>Hi {escape(user_name)},</p>\n"
        f"<p>You've been added to <strong>{escape(organization_name)}</strong>.</p>\n"
        "<p>Get started by:</p>\n"
        "<ul>\n"
        "  <li>Creating your first dashboard</li>\n"
        "  <li>Integrating your data sources</li>\n"
        "  <li>Inviting your team members</li>\n"
        "</ul>\n"
        f'<p><a href="{escape(frontend_url)}">Go to {PRODUCT_NAME}</a></p>'
    )
    return RenderedEmail(subject=f"Welcome to {PRODUCT_NAME}, {user_name}!", body=body)


def render_digest(
    organization_name: str,
    items: Sequence[DigestItem],
    frontend_url: str,
) -> RenderedEmail | None:
    """Render a digest of unread notifications.

    Args:
        organization_name: Organization shown in the subject.
        items: Unread notifications, newest first; only the first
            DIGEST_MAX_ITEMS are listed.
        frontend_url: Base URL for the "view all" link.

    Returns:
        Rendered email, or None when there is nothing to report.
    """
    listed = list(items)[:DIGEST_MAX_ITEMS]
    if not listed:
        return None

    entries = "".join(
        f"<li><strong>{escape(item.title)}</strong>: {escape(item.message)}</li>"
        for item in listed
    )
    link = f"{frontend_url.rstrip('/')}/notifications"
    body = (
        "<h1>Your notification digest</h1>\n"
        f"<ul>{entries}</ul>\n"
        f'<p><a href="{escape(link)}">View all notifications</a></p>'
    )
    subject = f"[{organization_name}] You have {len(listed)} unread notifications"
    return RenderedEmail(subject=subject, body=body)


def render_alert(alert_type: str, details: Any) -> RenderedEmail:
    """Render an operational alert (billing, security, ...)."""
    pretty = json.dumps(details, indent=2, default=str)
    body = (
        f"<h1>Alert: {escape(alert_type)}</h1>\n"
        "<p>Details:</p>\n"
        f"<pre>{escape(pretty)}</pre>"
    )
    return RenderedEmail(subject=f"[Alert] {alert_type}", body=body)


def alert_recipients(admins: Iterable[dict[str, Any]]) -> list[str]:
    """Addresses of active owners and admins, the audience of alert emails.

    Args:
        admins: User records with "email", "role" and "is_active" keys.
    """
    return [
        user["email"]
        for user in admins
        if user.get("role") in ("owner", "admin") and user.get("is_active", True)
    ]
