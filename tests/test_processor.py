from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.classifier import DEFAULT_SYSTEM_PROMPT, PrimaryClassifier
from core.config import AnalysisConfig
from core.dedup import DedupLedger
from core.deep_analysis import DUPLICATES_NOTE, DeepAnalyzer
from core.models import (
    AnalyzedOpportunityRecord,
    ChangeDiff,
    EmailConfig,
    ScrapeEvent,
    UserSettings,
    Website,
)
from core.processor import ChangeProcessor

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
TENDER_URL = "https://x.org/tender/1"


class FakeSettings:
    def __init__(self, settings: Optional[UserSettings], email: Optional[EmailConfig]) -> None:
        self.settings = settings
        self.email = email

    def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        return self.settings

    def get_email_config(self, user_id: str) -> Optional[EmailConfig]:
        return self.email


class FakeStorage:
    def __init__(self) -> None:
        self.analyses = {}
        self.records: dict[tuple[str, str], AnalyzedOpportunityRecord] = {}

    def save_final_analysis(self, scrape_result_id, analysis) -> bool:
        if scrape_result_id in self.analyses:
            return False
        self.analyses[scrape_result_id] = analysis
        return True

    def lookup(self, url, user_id):
        return self.records.get((url, user_id))

    def store(self, url, user_id, website_id, status, score, analyzed_at) -> None:
        self.records[(url, user_id)] = AnalyzedOpportunityRecord(
            url=url,
            user_id=user_id,
            website_id=website_id,
            status=status,
            score=score,
            analyzed_at=analyzed_at,
        )


class FakeCompletion:
    """Answers the classifier and the Go/No-Go round with separate payloads."""

    def __init__(self, primary: object, go_no_go: Optional[dict] = None) -> None:
        self.primary = primary
        self.go_no_go = go_no_go
        self.calls = []

    async def complete(self, request) -> str:
        self.calls.append(request)
        if request.system_prompt == DEFAULT_SYSTEM_PROMPT:
            if isinstance(self.primary, Exception):
                raise self.primary
            return self.primary if isinstance(self.primary, str) else json.dumps(self.primary)
        return json.dumps(self.go_no_go)


class FakeFetcher:
    def __init__(self) -> None:
        self.fetched = []

    async def fetch_markdown(self, url: str) -> Optional[str]:
        self.fetched.append(url)
        return "# Road construction tender"


class FakeWebhook:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.sent = []

    async def send(self, webhook_url, event, analysis) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((webhook_url, event, analysis))


class FakeEmail:
    def __init__(self) -> None:
        self.sent = []

    async def send(self, email, event, analysis, template) -> None:
        self.sent.append((email, event, analysis, template))


def _website(deep: bool = False) -> Website:
    return Website(
        id="w1",
        user_id="u1",
        name="City tenders",
        url="https://x.org",
        notification_preference="both",
        webhook_url="https://hooks.example.com/a",
        deep_analysis_enabled=deep,
    )


def _settings(**overrides) -> UserSettings:
    values = dict(user_id="u1", ai_analysis_enabled=True, ai_api_key="sk-test")
    values.update(overrides)
    return UserSettings(**values)


def _event(website: Website, diff: Optional[ChangeDiff] = None) -> ScrapeEvent:
    return ScrapeEvent(
        website=website,
        scrape_result_id="r1",
        diff=diff,
        markdown="# Tenders",
        scraped_at=NOW,
        links=[TENDER_URL],
    )


DIFF = ChangeDiff(text="+New tender: Road construction\n-Old notice")
PRIMARY = {
    "score": 85,
    "isMeaningful": True,
    "reasoning": "Nouvel appel d'offres",
    "relevantLinkIndices": [0],
}


def _build(settings, completion, storage=None, webhook=None, email=None, fetcher=None):
    storage = storage or FakeStorage()
    config = AnalysisConfig()
    ledger = DedupLedger(storage, window_days=config.dedup_window_days, clock=lambda: NOW)
    processor = ChangeProcessor(
        settings=FakeSettings(settings, EmailConfig(email="ops@example.com", is_verified=True)),
        storage=storage,
        classifier=PrimaryClassifier(completion, config),
        deep_analyzer=DeepAnalyzer(completion, fetcher or FakeFetcher(), ledger, config),
        webhook_notifier=webhook or FakeWebhook(),
        email_notifier=email or FakeEmail(),
        config=config,
        clock=lambda: NOW,
    )
    return processor, storage


def test_meaningful_change_without_deep_analysis_keeps_classifier_reasoning() -> None:
    webhook = FakeWebhook()
    email = FakeEmail()
    processor, storage = _build(_settings(), FakeCompletion(PRIMARY), webhook=webhook, email=email)

    outcome = asyncio.run(processor.handle(_event(_website(), DIFF)))

    assert outcome.dropped_reason is None
    assert outcome.target_urls == [TENDER_URL]
    assert outcome.analysis is not None
    assert outcome.analysis.is_meaningful_change is True
    assert outcome.analysis.meaningful_change_score == 85
    assert outcome.analysis.reasoning == "Nouvel appel d'offres"
    assert outcome.analysis.model == "gpt-4o-mini"
    assert storage.analyses["r1"] == outcome.analysis
    assert webhook.sent[0][0] == "https://hooks.example.com/a"
    assert email.sent[0][0] == "ops@example.com"
    assert outcome.dispatch.webhook_sent and outcome.dispatch.email_sent


def test_deep_analysis_overrides_primary_verdict() -> None:
    completion = FakeCompletion(
        {**PRIMARY, "score": 40},
        go_no_go={"score": 92, "isGo": True, "reasoning": "Correspond aux critères"},
    )
    settings = _settings(go_no_go_rules="Road works only", webhook_only_if_meaningful=True)
    processor, storage = _build(settings, completion)

    outcome = asyncio.run(processor.handle(_event(_website(deep=True), DIFF)))

    assert outcome.analysis.is_meaningful_change is True
    assert outcome.analysis.meaningful_change_score == 92
    assert outcome.analysis.reasoning.startswith("✅ [92/100]\n<https://x.org/tender/1|Voir l'annonce>")
    assert storage.records[(TENDER_URL, "u1")].status == "meaningful"
    assert outcome.dispatch.decision.send_webhook is True


def test_recent_duplicate_suppresses_notifications() -> None:
    storage = FakeStorage()
    storage.store(TENDER_URL, "u1", "w1", "meaningful", 80, NOW - timedelta(days=1))
    webhook = FakeWebhook()
    email = FakeEmail()
    fetcher = FakeFetcher()
    processor, _ = _build(
        _settings(go_no_go_rules="Road works only"),
        FakeCompletion(PRIMARY),
        storage=storage,
        webhook=webhook,
        email=email,
        fetcher=fetcher,
    )

    outcome = asyncio.run(processor.handle(_event(_website(deep=True), DIFF)))

    # Every selected link was seen within the window: nothing is re-evaluated,
    # the change is recorded as not meaningful and no channel fires.
    assert fetcher.fetched == []
    assert outcome.analysis.is_meaningful_change is False
    assert outcome.analysis.meaningful_change_score == 85
    assert outcome.analysis.reasoning == f"Nouvel appel d'offres\n\n{DUPLICATES_NOTE}"
    assert outcome.directive.suppress is True
    assert webhook.sent == [] and email.sent == []


def test_rules_missing_skips_deep_analysis() -> None:
    fetcher = FakeFetcher()
    processor, _ = _build(_settings(), FakeCompletion(PRIMARY), fetcher=fetcher)

    outcome = asyncio.run(processor.handle(_event(_website(deep=True), DIFF)))

    assert fetcher.fetched == []
    assert outcome.analysis.reasoning == "Nouvel appel d'offres"


def test_classifier_failure_drops_event() -> None:
    webhook = FakeWebhook()
    processor, storage = _build(_settings(), FakeCompletion("not json"), webhook=webhook)

    outcome = asyncio.run(processor.handle(_event(_website(), DIFF)))

    assert outcome.dropped_reason == "classifier failure: ClassificationParseError"
    assert storage.analyses == {}
    assert webhook.sent == []


def test_transport_failure_drops_event() -> None:
    processor, storage = _build(_settings(), FakeCompletion(RuntimeError("timeout")))

    outcome = asyncio.run(processor.handle(_event(_website(), DIFF)))

    assert outcome.dropped_reason == "classifier failure: ClassificationTransportError"
    assert storage.analyses == {}


def test_below_threshold_respects_only_if_meaningful_filter() -> None:
    webhook = FakeWebhook()
    email = FakeEmail()
    settings = _settings(webhook_only_if_meaningful=True, meaningful_change_threshold=90)
    processor, _ = _build(settings, FakeCompletion(PRIMARY), webhook=webhook, email=email)

    outcome = asyncio.run(processor.handle(_event(_website(), DIFF)))

    assert outcome.analysis.is_meaningful_change is False
    assert webhook.sent == []
    assert len(email.sent) == 1


def test_webhook_failure_does_not_block_email() -> None:
    email = FakeEmail()
    processor, _ = _build(
        _settings(),
        FakeCompletion(PRIMARY),
        webhook=FakeWebhook(error=RuntimeError("502 Bad Gateway")),
        email=email,
    )

    outcome = asyncio.run(processor.handle(_event(_website(), DIFF)))

    assert outcome.dispatch.webhook_sent is False
    assert outcome.dispatch.webhook_error == "502 Bad Gateway"
    assert outcome.dispatch.email_sent is True
    assert len(email.sent) == 1


def test_ai_disabled_notifies_immediately() -> None:
    completion = FakeCompletion(PRIMARY)
    webhook = FakeWebhook()
    settings = _settings(ai_analysis_enabled=False, webhook_only_if_meaningful=True)
    processor, storage = _build(settings, completion, webhook=webhook)

    outcome = asyncio.run(processor.handle(_event(_website(), DIFF)))

    assert completion.calls == []
    assert storage.analyses == {}
    assert outcome.analysis is None
    assert len(webhook.sent) == 1
    assert webhook.sent[0][2] is None


def test_missing_diff_notifies_without_analysis() -> None:
    completion = FakeCompletion(PRIMARY)
    webhook = FakeWebhook()
    processor, _ = _build(_settings(), completion, webhook=webhook)

    asyncio.run(processor.handle(_event(_website(), None)))

    assert completion.calls == []
    assert len(webhook.sent) == 1


def test_missing_api_key_drops_event() -> None:
    completion = FakeCompletion(PRIMARY)
    webhook = FakeWebhook()
    processor, _ = _build(_settings(ai_api_key=None), completion, webhook=webhook)

    outcome = asyncio.run(processor.handle(_event(_website(), DIFF)))

    assert outcome.dropped_reason == "missing AI API key"
    assert completion.calls == []
    assert webhook.sent == []


def test_analysis_is_saved_once() -> None:
    webhook = FakeWebhook()
    processor, storage = _build(_settings(), FakeCompletion(PRIMARY), webhook=webhook)
    event = _event(_website(), DIFF)

    asyncio.run(processor.handle(event))
    second = asyncio.run(processor.handle(event))

    assert second.dropped_reason == "analysis already recorded"
    assert len(storage.analyses) == 1
    assert len(webhook.sent) == 1
