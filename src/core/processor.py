"""Core change processing pipeline.

This module is integration-agnostic. It only relies on ports for storage,
models, scraping and notifications, enabling other adapters without changes
here.

The order for one change event is strict:
1) Resolve user settings; without AI analysis notify right away
2) Extract candidate links from the diff
3) Primary classification (hard stop on any contract error)
4) Optional Go/No-Go deep analysis with ledger dedup
5) Persist the FinalAnalysis once
6) Gate and dispatch notifications, each channel independently
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from core.classifier import (
    ClassificationOk,
    PrimaryClassifier,
    is_meaningful,
    resolve_target_urls,
    resolve_threshold,
)
from core.config import AnalysisConfig
from core.dedup import utc_now
from core.deep_analysis import DUPLICATES_NOTE, DeepAnalyzer, aggregate_verdicts
from core.gate import decide_notifications, resolve_webhook_url
from core.links import extract_candidate_links
from core.models import (
    FinalAnalysis,
    NotificationDecision,
    NotificationDirective,
    ScrapeEvent,
    UserSettings,
)
from core.ports import EmailNotifierPort, SettingsPort, StoragePort, WebhookNotifierPort

LOGGER = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """Per-channel delivery outcome for one event."""

    decision: NotificationDecision
    webhook_sent: bool = False
    email_sent: bool = False
    webhook_error: Optional[str] = None
    email_error: Optional[str] = None


@dataclass
class EventOutcome:
    """What the pipeline did with one change event."""

    analysis: Optional[FinalAnalysis] = None
    directive: Optional[NotificationDirective] = None
    dispatch: Optional[DispatchReport] = None
    target_urls: List[str] = field(default_factory=list)
    dropped_reason: Optional[str] = None


class ChangeProcessor:
    """Orchestrates classification, dedup, persistence, and notifications."""

    def __init__(
        self,
        settings: SettingsPort,
        storage: StoragePort,
        classifier: PrimaryClassifier,
        deep_analyzer: DeepAnalyzer,
        webhook_notifier: WebhookNotifierPort,
        email_notifier: EmailNotifierPort,
        config: AnalysisConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._storage = storage
        self._classifier = classifier
        self._deep_analyzer = deep_analyzer
        self._webhook_notifier = webhook_notifier
        self._email_notifier = email_notifier
        self._config = config
        self._clock = clock

    async def handle(self, event: ScrapeEvent) -> EventOutcome:
        """Process one change event through the core pipeline."""

        website = event.website
        settings = self._settings.get_user_settings(website.user_id)

        # Without AI (or without a diff to analyze) there is no meaningfulness
        # signal, so notifications go out immediately and unfiltered.
        if settings is None or not settings.ai_analysis_enabled or event.diff is None:
            directive = NotificationDirective(is_meaningful=False, suppress=False, reasoning="")
            dispatch = await self._dispatch(event, settings, directive, None, ai_ran=False)
            return EventOutcome(directive=directive, dispatch=dispatch)

        if not settings.ai_api_key:
            LOGGER.warning("AI analysis enabled but no API key set for user %s", website.user_id)
            return EventOutcome(dropped_reason="missing AI API key")

        links = extract_candidate_links(event.diff.text, event.diff.json, event.links)
        LOGGER.debug("Total unique URLs available to the classifier: %s", len(links))

        result = await self._classifier.classify(settings, event, links)
        if not isinstance(result, ClassificationOk):
            return EventOutcome(dropped_reason=f"classifier failure: {type(result).__name__}")

        verdict = result.verdict
        threshold = resolve_threshold(settings, self._config)
        meaningful = is_meaningful(verdict.score, threshold)
        score = verdict.score
        reasoning = verdict.reasoning
        suppress = False

        target_urls = resolve_target_urls(verdict, links)
        LOGGER.debug("Classifier relevant links for %s: %s", event.url, target_urls)

        if website.deep_analysis_enabled and settings.go_no_go_rules and target_urls:
            outcome = await self._deep_analyzer.run(target_urls, settings, website)
            if outcome.all_duplicates:
                meaningful = False
                reasoning = f"{reasoning}\n\n{DUPLICATES_NOTE}"
                suppress = True
            else:
                aggregated = aggregate_verdicts(outcome.verdicts)
                if aggregated is not None:
                    meaningful = aggregated.is_meaningful
                    score = aggregated.score
                    reasoning = aggregated.reasoning
                LOGGER.info(
                    "Go/No-Go results for %s: %s verdicts, %s errors",
                    event.url,
                    len(outcome.verdicts),
                    len(outcome.errors),
                )

        analysis = FinalAnalysis(
            meaningful_change_score=score,
            is_meaningful_change=meaningful,
            reasoning=reasoning,
            analyzed_at=self._clock(),
            model=settings.ai_model or self._config.default_model,
        )
        if not self._storage.save_final_analysis(event.scrape_result_id, analysis):
            LOGGER.warning("Scrape result %s already has an analysis", event.scrape_result_id)
            return EventOutcome(
                target_urls=target_urls,
                dropped_reason="analysis already recorded",
            )

        LOGGER.info(
            "AI analysis complete for %s: meaningful=%s score=%s suppress=%s",
            website.name,
            meaningful,
            score,
            suppress,
        )

        directive = NotificationDirective(
            is_meaningful=meaningful,
            suppress=suppress,
            reasoning=reasoning,
        )
        dispatch = await self._dispatch(event, settings, directive, analysis, ai_ran=True)
        return EventOutcome(
            analysis=analysis,
            directive=directive,
            dispatch=dispatch,
            target_urls=target_urls,
        )

    async def _dispatch(
        self,
        event: ScrapeEvent,
        settings: Optional[UserSettings],
        directive: NotificationDirective,
        analysis: Optional[FinalAnalysis],
        ai_ran: bool,
    ) -> DispatchReport:
        website = event.website
        email_config = self._settings.get_email_config(website.user_id)
        decision = decide_notifications(website, settings, email_config, directive, ai_ran=ai_ran)
        report = DispatchReport(decision=decision)

        if directive.suppress:
            LOGGER.info("Notifications suppressed for %s (recent duplicates)", website.name)
            return report

        LOGGER.info(
            "Notification decision for %s - webhook: %s, email: %s",
            website.name,
            decision.send_webhook,
            decision.send_email,
        )

        jobs = []
        if decision.send_webhook:
            webhook_url = resolve_webhook_url(website, settings)
            jobs.append(self._send_webhook(report, webhook_url, event, analysis))
        if decision.send_email and email_config is not None:
            template = settings.email_template if settings else None
            jobs.append(self._send_email(report, email_config.email, event, analysis, template))
        # Channels are independent; neither failure blocks the other.
        await asyncio.gather(*jobs)
        return report

    async def _send_webhook(self, report, webhook_url, event, analysis) -> None:
        try:
            await self._webhook_notifier.send(webhook_url, event, analysis)
        except Exception as exc:
            LOGGER.error("Webhook delivery failed for %s: %s", event.website.name, exc)
            report.webhook_error = str(exc)
            return
        report.webhook_sent = True

    async def _send_email(self, report, email, event, analysis, template) -> None:
        try:
            await self._email_notifier.send(email, event, analysis, template)
        except Exception as exc:
            LOGGER.error("Email delivery failed for %s: %s", event.website.name, exc)
            report.email_error = str(exc)
            return
        report.email_sent = True
