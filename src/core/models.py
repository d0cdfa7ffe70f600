"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

PREFERENCE_NONE = "none"
PREFERENCE_EMAIL = "email"
PREFERENCE_WEBHOOK = "webhook"
PREFERENCE_BOTH = "both"
NOTIFICATION_PREFERENCES = frozenset(
    {PREFERENCE_NONE, PREFERENCE_EMAIL, PREFERENCE_WEBHOOK, PREFERENCE_BOTH}
)

STATUS_MEANINGFUL = "meaningful"
STATUS_NOT_MEANINGFUL = "not_meaningful"


@dataclass(frozen=True)
class ChangeDiff:
    """Diff produced by the scraping service between two snapshots."""

    text: str
    json: Any = None


@dataclass(frozen=True)
class Website:
    """A monitored page and its notification routing."""

    id: str
    user_id: str
    name: str
    url: str
    notification_preference: str = PREFERENCE_NONE
    webhook_url: Optional[str] = None
    deep_analysis_enabled: bool = False
    headers: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class UserSettings:
    """Per-user AI and notification preferences."""

    user_id: str
    ai_analysis_enabled: bool = False
    ai_api_key: Optional[str] = None
    ai_base_url: Optional[str] = None
    ai_model: Optional[str] = None
    ai_system_prompt: Optional[str] = None
    meaningful_change_threshold: Optional[int] = None
    go_no_go_rules: Optional[str] = None
    email_only_if_meaningful: bool = False
    webhook_only_if_meaningful: bool = False
    default_webhook_url: Optional[str] = None
    email_template: Optional[str] = None


@dataclass(frozen=True)
class EmailConfig:
    """Notification address for a user; only verified addresses receive mail."""

    email: Optional[str]
    is_verified: bool = False


@dataclass(frozen=True)
class ScrapeEvent:
    """A detected change on a monitored website, ready for the pipeline."""

    website: Website
    scrape_result_id: str
    diff: Optional[ChangeDiff]
    markdown: str
    scraped_at: datetime
    change_status: str = "changed"
    title: Optional[str] = None
    description: Optional[str] = None
    links: List[str] = field(default_factory=list)
    page_url: Optional[str] = None

    @property
    def url(self) -> str:
        return self.page_url or self.website.url


@dataclass(frozen=True)
class ClassificationVerdict:
    """Parsed first-round verdict. ``raw`` keeps the payload for link strategies."""

    score: float
    is_meaningful: bool
    reasoning: str
    relevant_link_indices: List[int]
    raw: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class DeepVerdict:
    """Go/No-Go verdict for one linked page."""

    url: str
    score: float
    is_go: bool
    reasoning: str


@dataclass(frozen=True)
class DeepAnalysisError:
    """A candidate that could not be evaluated; never aggregated."""

    url: str
    error: str


@dataclass(frozen=True)
class ChangeAlert:
    """History entry for a detected change, with a short diff preview."""

    id: str
    scrape_result_id: str
    website_id: str
    user_id: str
    change_type: str
    summary: str
    created_at: datetime


@dataclass(frozen=True)
class AnalyzedOpportunityRecord:
    """Ledger entry for a URL analyzed on behalf of a user."""

    url: str
    user_id: str
    website_id: str
    status: str
    score: float
    analyzed_at: datetime


@dataclass(frozen=True)
class NotificationDirective:
    """Outcome of the classification stage handed to the notification stage."""

    is_meaningful: bool
    suppress: bool
    reasoning: str


@dataclass(frozen=True)
class NotificationDecision:
    send_webhook: bool
    send_email: bool


@dataclass(frozen=True)
class FinalAnalysis:
    """Durable AI outcome attached to a scrape result."""

    meaningful_change_score: float
    is_meaningful_change: bool
    reasoning: str
    analyzed_at: datetime
    model: str
