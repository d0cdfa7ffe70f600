"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, model, scraping and
notification adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from core.models import (
    AnalyzedOpportunityRecord,
    EmailConfig,
    FinalAnalysis,
    ScrapeEvent,
    UserSettings,
)


@dataclass(frozen=True)
class CompletionRequest:
    """One chat-completion call with a JSON-object response."""

    api_key: str
    base_url: str
    model: str
    system_prompt: str
    user_prompt: str
    temperature: float
    max_tokens: Optional[int] = None


class CompletionPort(Protocol):
    """Chat-completion endpoint returning the raw message content."""

    async def complete(self, request: CompletionRequest) -> str:
        ...


class ContentFetcherPort(Protocol):
    """Fetches a page as markdown; ``None`` when the scrape failed."""

    async def fetch_markdown(self, url: str) -> Optional[str]:
        ...


class LedgerPort(Protocol):
    """Durable store of analyzed opportunity URLs."""

    def lookup(self, url: str, user_id: str) -> Optional[AnalyzedOpportunityRecord]:
        ...

    def store(
        self,
        url: str,
        user_id: str,
        website_id: str,
        status: str,
        score: float,
        analyzed_at: datetime,
    ) -> None:
        ...


class StoragePort(Protocol):
    """Scrape-result operations required by the core pipeline."""

    def save_final_analysis(self, scrape_result_id: str, analysis: FinalAnalysis) -> bool:
        ...


class SettingsPort(Protocol):
    """Read-only access to user-level configuration."""

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        ...

    def get_email_config(self, user_id: str) -> Optional[EmailConfig]:
        ...


class WebhookNotifierPort(Protocol):
    async def send(
        self,
        webhook_url: str,
        event: ScrapeEvent,
        analysis: Optional[FinalAnalysis],
    ) -> None:
        ...


class EmailNotifierPort(Protocol):
    async def send(
        self,
        email: str,
        event: ScrapeEvent,
        analysis: Optional[FinalAnalysis],
        template: Optional[str],
    ) -> None:
        ...
