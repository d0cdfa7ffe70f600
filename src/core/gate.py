"""Notification gate (core domain).

A stateless decision over website preferences, user filters and the outcome
of the classification stage.
"""

from __future__ import annotations

from typing import Optional

from core.models import (
    PREFERENCE_BOTH,
    PREFERENCE_EMAIL,
    PREFERENCE_WEBHOOK,
    EmailConfig,
    NotificationDecision,
    NotificationDirective,
    UserSettings,
    Website,
)

NO_NOTIFICATION = NotificationDecision(send_webhook=False, send_email=False)


def resolve_webhook_url(website: Website, settings: Optional[UserSettings]) -> Optional[str]:
    """Website-level webhook first, then the user's default."""

    if website.webhook_url:
        return website.webhook_url
    if settings and settings.default_webhook_url:
        return settings.default_webhook_url
    return None


def decide_notifications(
    website: Website,
    settings: Optional[UserSettings],
    email_config: Optional[EmailConfig],
    directive: NotificationDirective,
    ai_ran: bool = True,
) -> NotificationDecision:
    """Return which channels fire for this event.

    The "only if meaningful" filters apply only when AI analysis actually ran;
    without a meaningfulness signal every change counts.
    """

    if directive.suppress:
        return NO_NOTIFICATION

    preference = website.notification_preference
    meaningful = directive.is_meaningful or not ai_ran
    webhook_only = bool(settings and settings.webhook_only_if_meaningful)
    email_only = bool(settings and settings.email_only_if_meaningful)

    send_webhook = (
        preference in (PREFERENCE_WEBHOOK, PREFERENCE_BOTH)
        and resolve_webhook_url(website, settings) is not None
        and (not webhook_only or meaningful)
    )
    send_email = (
        preference in (PREFERENCE_EMAIL, PREFERENCE_BOTH)
        and (not email_only or meaningful)
        and email_config is not None
        and bool(email_config.email)
        and email_config.is_verified
    )
    return NotificationDecision(send_webhook=send_webhook, send_email=send_email)
