"""Config-backed repository for websites, user settings and email configs.

Implements the core SettingsPort from the ``users``/``websites`` sections of
config.json. API keys are referenced by environment variable name so secrets
stay out of the file.
"""

from __future__ import annotations

import os
from typing import Iterable, List, Mapping, Optional

from core.models import NOTIFICATION_PREFERENCES, EmailConfig, UserSettings, Website


def _build_user_settings(entry: dict, environ: Mapping[str, str]) -> UserSettings:
    ai = entry.get("ai", {}) or {}
    notifications = entry.get("notifications", {}) or {}

    api_key = ai.get("api_key")
    key_env = ai.get("api_key_env")
    if not api_key and key_env:
        api_key = environ.get(key_env)

    threshold = ai.get("threshold")
    return UserSettings(
        user_id=str(entry["id"]),
        ai_analysis_enabled=bool(ai.get("enabled", False)),
        ai_api_key=api_key or None,
        ai_base_url=ai.get("base_url") or None,
        ai_model=ai.get("model") or None,
        ai_system_prompt=ai.get("system_prompt") or None,
        meaningful_change_threshold=int(threshold) if threshold is not None else None,
        go_no_go_rules=ai.get("go_no_go_rules") or None,
        email_only_if_meaningful=bool(notifications.get("email_only_if_meaningful", False)),
        webhook_only_if_meaningful=bool(notifications.get("webhook_only_if_meaningful", False)),
        default_webhook_url=notifications.get("default_webhook_url") or None,
        email_template=notifications.get("email_template") or None,
    )


def _build_website(entry: dict) -> Website:
    preference = entry.get("notification_preference", "none")
    if preference not in NOTIFICATION_PREFERENCES:
        raise ValueError(f"Unsupported notification_preference: {preference}")
    return Website(
        id=str(entry["id"]),
        user_id=str(entry["user_id"]),
        name=entry.get("name") or entry["url"],
        url=entry["url"],
        notification_preference=preference,
        webhook_url=entry.get("webhook_url") or None,
        deep_analysis_enabled=bool(entry.get("deep_analysis_enabled", False)),
        headers=entry.get("headers") or None,
        is_active=bool(entry.get("enabled", True)),
    )


class ConfigRepository:
    """Read-only view of the configured users and websites."""

    def __init__(
        self,
        users: Iterable[dict],
        websites: Iterable[dict],
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        environ = os.environ if environ is None else environ
        self._users: dict[str, UserSettings] = {}
        self._emails: dict[str, EmailConfig] = {}
        for entry in users:
            settings = _build_user_settings(entry, environ)
            self._users[settings.user_id] = settings
            self._emails[settings.user_id] = EmailConfig(
                email=entry.get("email") or None,
                is_verified=bool(entry.get("email_verified", False)),
            )
        self._websites: List[Website] = [_build_website(entry) for entry in websites]

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        return self._users.get(user_id)

    def get_email_config(self, user_id: str) -> Optional[EmailConfig]:
        return self._emails.get(user_id)

    def get_website(self, website_id: str) -> Optional[Website]:
        for website in self._websites:
            if website.id == website_id:
                return website
        return None

    def active_websites(self) -> List[Website]:
        return [website for website in self._websites if website.is_active]
