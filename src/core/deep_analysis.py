"""Go/No-Go deep analysis of classifier-selected links (core domain).

Every selected link that was not analyzed recently is fetched and evaluated
against the user's own rules. Evaluations run concurrently and fail
independently; a verdict is written to the ledger before it is returned, so a
re-run within the window never evaluates the same link twice.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from core.config import AnalysisConfig
from core.dedup import DedupLedger
from core.models import DeepAnalysisError, DeepVerdict, UserSettings, Website
from core.ports import CompletionPort, CompletionRequest, ContentFetcherPort

LOGGER = logging.getLogger(__name__)

GO_NO_GO_SYSTEM_PROMPT = """You are an expert analyst.
Evaluate the opportunity based STRICTLY on the provided rules.
1. Assign a score from 0 to 100 based on how well it matches the criteria.
2. Determine if it is a "GO" (score >= 50) or "NO GO" (score < 50).
3. Provide a concise explanation for the score (IN FRENCH).

Return JSON:
{
  "score": number,
  "isGo": boolean,
  "reasoning": "Concise explanation based on the rules (IN FRENCH)"
}"""

DUPLICATES_NOTE = (
    "(Note : De nouvelles opportunités ont été détectées mais ignorées "
    "car elles ont été analysées récemment.)"
)

GO_ICON = "✅"
NO_GO_ICON = "❌"


@dataclass(frozen=True)
class DeepAnalysisOutcome:
    """Everything one deep-analysis pass produced."""

    verdicts: List[DeepVerdict] = field(default_factory=list)
    errors: List[DeepAnalysisError] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    evaluated: int = 0

    @property
    def all_duplicates(self) -> bool:
        return bool(self.skipped) and self.evaluated == 0


@dataclass(frozen=True)
class AggregatedVerdict:
    is_meaningful: bool
    score: float
    reasoning: str


def _format_score(score: float) -> str:
    if isinstance(score, float) and score.is_integer():
        return str(int(score))
    return str(score)


def parse_deep_verdict(url: str, raw: str) -> DeepVerdict:
    """Parse a Go/No-Go response; raises ``ValueError`` on a malformed answer."""

    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("response is not a JSON object")
    score = payload.get("score")
    if not isinstance(score, (int, float)) or isinstance(score, bool):
        raise ValueError("'score' must be a number")
    is_go = payload.get("isGo")
    if not isinstance(is_go, bool):
        raise ValueError("'isGo' must be a boolean")
    reasoning = payload.get("reasoning") or ""
    return DeepVerdict(url=url, score=score, is_go=is_go, reasoning=str(reasoning))


def format_consolidated_reasoning(verdicts: Sequence[DeepVerdict]) -> str:
    parts = []
    for verdict in verdicts:
        icon = GO_ICON if verdict.is_go else NO_GO_ICON
        parts.append(
            f"{icon} [{_format_score(verdict.score)}/100]\n"
            f"<{verdict.url}|Voir l'annonce>\n"
            f"{verdict.reasoning}\n\n"
        )
    return "".join(parts)


def aggregate_verdicts(verdicts: Sequence[DeepVerdict]) -> Optional[AggregatedVerdict]:
    """Combine per-link verdicts into one override.

    - Any GO makes the whole change meaningful.
    - The score is the best individual score, GO or not.
    - The reasoning lists every verdict; the first-round reasoning is dropped.
    """

    if not verdicts:
        return None
    best = max(verdicts, key=lambda verdict: verdict.score)
    return AggregatedVerdict(
        is_meaningful=any(verdict.is_go for verdict in verdicts),
        score=best.score,
        reasoning=format_consolidated_reasoning(verdicts),
    )


def build_evaluation_prompt(rules: str, url: str, content: str, char_limit: int) -> str:
    return (
        f'User\'s Go/No Go Rules:\n"{rules}"\n\n'
        f"Content of the linked page ({url}):\n"
        f"{content[:char_limit]}"
    )


class DeepAnalyzer:
    """Runs the Go/No-Go round for the links of one change event."""

    def __init__(
        self,
        completion: CompletionPort,
        fetcher: ContentFetcherPort,
        ledger: DedupLedger,
        config: AnalysisConfig,
    ) -> None:
        self._completion = completion
        self._fetcher = fetcher
        self._ledger = ledger
        self._config = config

    async def evaluate(
        self,
        url: str,
        settings: UserSettings,
        website: Website,
    ) -> Union[DeepVerdict, DeepAnalysisError]:
        """Fetch and evaluate one link; failures stay local to this link."""

        try:
            content = await self._fetcher.fetch_markdown(url)
        except Exception as exc:
            LOGGER.error("Failed to fetch content from %s: %s", url, exc)
            return DeepAnalysisError(url=url, error="Failed to scrape")
        if not content:
            LOGGER.error("Failed to scrape content from %s", url)
            return DeepAnalysisError(url=url, error="Failed to scrape")

        request = CompletionRequest(
            api_key=settings.ai_api_key or "",
            base_url=settings.ai_base_url or self._config.default_base_url,
            model=settings.ai_model or self._config.default_model,
            system_prompt=GO_NO_GO_SYSTEM_PROMPT,
            user_prompt=build_evaluation_prompt(
                settings.go_no_go_rules or "",
                url,
                content,
                self._config.content_char_limit,
            ),
            temperature=self._config.temperature,
        )
        try:
            raw = await self._completion.complete(request)
        except Exception as exc:
            LOGGER.error("Go/No-Go completion failed for %s: %s", url, exc)
            return DeepAnalysisError(url=url, error="AI API error")

        try:
            verdict = parse_deep_verdict(url, raw)
        except ValueError as exc:
            LOGGER.error("Invalid Go/No-Go response for %s (%s). Raw content was: %s", url, exc, raw)
            return DeepAnalysisError(url=url, error="Invalid AI response")

        self._ledger.record(verdict, user_id=settings.user_id, website_id=website.id)
        return verdict

    async def run(
        self,
        urls: Sequence[str],
        settings: UserSettings,
        website: Website,
    ) -> DeepAnalysisOutcome:
        to_analyze, skipped = self._ledger.partition(urls, settings.user_id)
        if not to_analyze:
            LOGGER.info("All %s identified links were analyzed recently", len(skipped))
            return DeepAnalysisOutcome(skipped=skipped)

        # Only absolute links can be fetched; relative paths are dropped here.
        candidates = [url for url in to_analyze if url.startswith("http")]
        LOGGER.info(
            "Performing deep analysis on %s new links (out of %s identified)",
            len(candidates),
            len(urls),
        )
        results = await asyncio.gather(
            *(self.evaluate(url, settings, website) for url in candidates)
        )

        verdicts = [result for result in results if isinstance(result, DeepVerdict)]
        errors = [result for result in results if isinstance(result, DeepAnalysisError)]
        return DeepAnalysisOutcome(
            verdicts=verdicts,
            errors=errors,
            skipped=skipped,
            evaluated=len(to_analyze),
        )
