from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.config import AnalysisConfig
from core.dedup import DedupLedger
from core.deep_analysis import (
    DeepAnalyzer,
    aggregate_verdicts,
    build_evaluation_prompt,
    format_consolidated_reasoning,
)
from core.models import AnalyzedOpportunityRecord, DeepAnalysisError, DeepVerdict, UserSettings, Website

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
WEBSITE = Website(id="w1", user_id="u1", name="City tenders", url="https://x.org", deep_analysis_enabled=True)
SETTINGS = UserSettings(
    user_id="u1",
    ai_analysis_enabled=True,
    ai_api_key="sk-test",
    go_no_go_rules="Road works only",
)


class FakeLedgerStore:
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], AnalyzedOpportunityRecord] = {}
        self.writes: list[str] = []

    def lookup(self, url: str, user_id: str) -> Optional[AnalyzedOpportunityRecord]:
        return self.records.get((url, user_id))

    def store(self, url, user_id, website_id, status, score, analyzed_at) -> None:
        self.writes.append(url)
        self.records[(url, user_id)] = AnalyzedOpportunityRecord(
            url=url,
            user_id=user_id,
            website_id=website_id,
            status=status,
            score=score,
            analyzed_at=analyzed_at,
        )


class FakeFetcher:
    def __init__(self, pages: dict[str, Optional[str]]) -> None:
        self.pages = pages
        self.fetched: list[str] = []

    async def fetch_markdown(self, url: str) -> Optional[str]:
        self.fetched.append(url)
        return self.pages.get(url)


class ScriptedCompletion:
    """Returns a canned answer per linked page, keyed by URL in the prompt."""

    def __init__(self, answers: dict[str, object]) -> None:
        self.answers = answers
        self.requests = []

    async def complete(self, request) -> str:
        self.requests.append(request)
        for url, answer in self.answers.items():
            if f"({url})" in request.user_prompt:
                if isinstance(answer, Exception):
                    raise answer
                return answer if isinstance(answer, str) else json.dumps(answer)
        raise AssertionError("unexpected prompt")


def _analyzer(completion, fetcher, store) -> DeepAnalyzer:
    ledger = DedupLedger(store, window_days=30, clock=lambda: NOW)
    return DeepAnalyzer(completion, fetcher, ledger, AnalysisConfig())


def test_or_aggregation_uses_max_score() -> None:
    verdicts = [
        DeepVerdict(url="https://x.org/1", score=40, is_go=True, reasoning="oui"),
        DeepVerdict(url="https://x.org/2", score=90, is_go=False, reasoning="non"),
    ]
    aggregated = aggregate_verdicts(verdicts)
    assert aggregated is not None
    assert aggregated.is_meaningful is True
    assert aggregated.score == 90


def test_all_no_go_is_not_meaningful() -> None:
    aggregated = aggregate_verdicts(
        [DeepVerdict(url="https://x.org/1", score=30, is_go=False, reasoning="non")]
    )
    assert aggregated is not None
    assert aggregated.is_meaningful is False
    assert aggregated.score == 30


def test_no_verdicts_contributes_nothing() -> None:
    assert aggregate_verdicts([]) is None


def test_consolidated_reasoning_lists_every_verdict() -> None:
    text = format_consolidated_reasoning(
        [
            DeepVerdict(url="https://x.org/1", score=80, is_go=True, reasoning="Correspond"),
            DeepVerdict(url="https://x.org/2", score=20.0, is_go=False, reasoning="Hors sujet"),
        ]
    )
    assert text == (
        "✅ [80/100]\n<https://x.org/1|Voir l'annonce>\nCorrespond\n\n"
        "❌ [20/100]\n<https://x.org/2|Voir l'annonce>\nHors sujet\n\n"
    )


def test_evaluation_prompt_truncates_content() -> None:
    prompt = build_evaluation_prompt("rules", "https://x.org/1", "a" * 20000, 15000)
    assert prompt.startswith('User\'s Go/No Go Rules:\n"rules"\n\n')
    assert "Content of the linked page (https://x.org/1):\n" in prompt
    assert prompt.endswith("\n" + "a" * 15000)
    assert not prompt.endswith("a" * 15001)


def test_run_evaluates_concurrently_and_writes_ledger() -> None:
    store = FakeLedgerStore()
    fetcher = FakeFetcher({"https://x.org/1": "Road works", "https://x.org/2": "Catering"})
    completion = ScriptedCompletion(
        {
            "https://x.org/1": {"score": 40, "isGo": True, "reasoning": "oui"},
            "https://x.org/2": {"score": 90, "isGo": False, "reasoning": "non"},
        }
    )

    outcome = asyncio.run(
        _analyzer(completion, fetcher, store).run(["https://x.org/1", "https://x.org/2"], SETTINGS, WEBSITE)
    )

    assert [verdict.url for verdict in outcome.verdicts] == ["https://x.org/1", "https://x.org/2"]
    assert not outcome.errors
    assert not outcome.all_duplicates
    assert store.records[("https://x.org/1", "u1")].status == "meaningful"
    assert store.records[("https://x.org/2", "u1")].status == "not_meaningful"
    assert all(request.max_tokens is None for request in completion.requests)
    assert "Road works only" in completion.requests[0].user_prompt


def test_failures_are_isolated_per_link() -> None:
    store = FakeLedgerStore()
    fetcher = FakeFetcher(
        {
            "https://x.org/ok": "content",
            "https://x.org/ai-down": "content",
            "https://x.org/garbled": "content",
        }
    )
    completion = ScriptedCompletion(
        {
            "https://x.org/ok": {"score": 75, "isGo": True, "reasoning": "oui"},
            "https://x.org/ai-down": RuntimeError("boom"),
            "https://x.org/garbled": "not json",
        }
    )
    urls = ["https://x.org/ok", "https://x.org/missing", "https://x.org/ai-down", "https://x.org/garbled"]

    outcome = asyncio.run(_analyzer(completion, fetcher, store).run(urls, SETTINGS, WEBSITE))

    assert [verdict.url for verdict in outcome.verdicts] == ["https://x.org/ok"]
    assert {error.url for error in outcome.errors} == {
        "https://x.org/missing",
        "https://x.org/ai-down",
        "https://x.org/garbled",
    }
    assert all(isinstance(error, DeepAnalysisError) for error in outcome.errors)
    # Only parsed verdicts reach the ledger.
    assert store.writes == ["https://x.org/ok"]


def test_recent_links_are_skipped() -> None:
    store = FakeLedgerStore()
    store.store("https://x.org/1", "u1", "w1", "meaningful", 80, NOW - timedelta(days=1))
    store.writes.clear()
    fetcher = FakeFetcher({"https://x.org/2": "content"})
    completion = ScriptedCompletion({"https://x.org/2": {"score": 60, "isGo": True, "reasoning": "oui"}})

    outcome = asyncio.run(
        _analyzer(completion, fetcher, store).run(["https://x.org/1", "https://x.org/2"], SETTINGS, WEBSITE)
    )

    assert fetcher.fetched == ["https://x.org/2"]
    assert outcome.skipped == ["https://x.org/1"]
    assert not outcome.all_duplicates


def test_all_recent_links_flag_all_duplicates() -> None:
    store = FakeLedgerStore()
    store.store("https://x.org/1", "u1", "w1", "meaningful", 80, NOW - timedelta(days=1))
    fetcher = FakeFetcher({})

    outcome = asyncio.run(
        _analyzer(ScriptedCompletion({}), fetcher, store).run(["https://x.org/1"], SETTINGS, WEBSITE)
    )

    assert outcome.all_duplicates
    assert outcome.verdicts == []
    assert fetcher.fetched == []


def test_relative_links_are_not_fetched() -> None:
    store = FakeLedgerStore()
    fetcher = FakeFetcher({})

    outcome = asyncio.run(
        _analyzer(ScriptedCompletion({}), fetcher, store).run(["/docs/a.pdf"], SETTINGS, WEBSITE)
    )

    assert fetcher.fetched == []
    assert outcome.verdicts == []
    assert outcome.errors == []
    assert not outcome.all_duplicates
