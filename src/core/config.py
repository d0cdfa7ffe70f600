"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_THRESHOLD = 70
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_BASE_URL = "https://api.openai.com/v1"


@dataclass(frozen=True)
class AnalysisConfig:
    """Classification and deep-analysis settings for the core pipeline."""

    default_threshold: int = DEFAULT_THRESHOLD
    dedup_window_days: int = 30
    content_char_limit: int = 15000
    default_model: str = DEFAULT_MODEL
    default_base_url: str = DEFAULT_BASE_URL
    temperature: float = 0.1
    max_tokens: int = 4000


@dataclass(frozen=True)
class NotificationConfig:
    """Notification formatting settings consumed by notifier adapters."""

    summary_chars: int = 200
    markdown_chars: int = 1000
    slack_field_limit: int = 3000
    app_name: str = "Tenderwatch"
    from_email: str = "noreply@example.com"
    site_url: str = "http://localhost:3000"
    user_agent: str = "Tenderwatch/1.0"
