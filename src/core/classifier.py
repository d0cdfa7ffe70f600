"""Primary change classifier (core domain).

The model scores a diff and points at relevant candidate links by index. The
response is parsed into an explicit result type so the processor can branch
on parse/schema failures instead of probing loose fields.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from core.config import AnalysisConfig
from core.links import number_links
from core.models import ClassificationVerdict, ScrapeEvent, UserSettings
from core.ports import CompletionPort, CompletionRequest

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are an assistant that analyzes website changes for a tender monitoring system. Decide whether the detected change announces a NEW tender, call for proposals or call for expressions of interest.

Meaningful changes include:
- A new "Appel d'offres" (tender)
- A new "Appel à manifestation d'intérêt" (call for expression of interest)
- A new "Avis de consultation"
- New funding opportunities or grants
- Updated deadlines or requirements of an existing tender

NOT meaningful:
- Minor text corrections
- Date updates unrelated to deadlines
- Layout, menu, header or footer changes
- General news unrelated to tenders

When you detect a new opportunity, identify ALL links leading to its details.
- A numbered list of "Potential Links" is provided.
- Return the INDEX (number) of each relevant link from that list, never the URL itself.
- Ignore images (jpg, png, svg...), CSS/JS files and generic navigation links.
- Prefer detail pages, PDF documents and dedicated tender pages.

Return a JSON object:
{
  "score": 0-100 (how likely this is a new tender/opportunity),
  "isMeaningful": true/false,
  "reasoning": "Short explanation of the decision (EN FRANÇAIS)",
  "relevantLinkIndices": [1, 5]
}
Use an empty array for "relevantLinkIndices" when no link is relevant.

IMPORTANT: le champ "reasoning" DOIT être rédigé en FRANÇAIS."""


@dataclass(frozen=True)
class ClassificationOk:
    verdict: ClassificationVerdict


@dataclass(frozen=True)
class ClassificationParseError:
    """The model answered with something that is not JSON."""

    raw: str
    reason: str


@dataclass(frozen=True)
class ClassificationSchemaError:
    """Valid JSON that does not carry the required fields."""

    raw: str
    reason: str


@dataclass(frozen=True)
class ClassificationTransportError:
    """The completion call itself failed."""

    error: str


ClassificationResult = Union[
    ClassificationOk,
    ClassificationParseError,
    ClassificationSchemaError,
    ClassificationTransportError,
]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_index(value: Any) -> Optional[int]:
    """Coerce a model-provided index; anything non-integral is rejected."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def parse_classification(raw: str) -> ClassificationResult:
    """Parse the raw completion content into a tagged result."""

    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return ClassificationParseError(raw=raw, reason=str(exc))

    if not isinstance(payload, dict):
        return ClassificationSchemaError(raw=raw, reason="response is not a JSON object")
    if not _is_number(payload.get("score")):
        return ClassificationSchemaError(raw=raw, reason="'score' must be a number")
    if not isinstance(payload.get("isMeaningful"), bool):
        return ClassificationSchemaError(raw=raw, reason="'isMeaningful' must be a boolean")
    if not isinstance(payload.get("reasoning"), str):
        return ClassificationSchemaError(raw=raw, reason="'reasoning' must be a string")

    raw_indices = payload.get("relevantLinkIndices")
    indices: List[int] = []
    if isinstance(raw_indices, list):
        indices = [index for index in map(_as_index, raw_indices) if index is not None]

    return ClassificationOk(
        verdict=ClassificationVerdict(
            score=payload["score"],
            is_meaningful=payload["isMeaningful"],
            reasoning=payload["reasoning"],
            relevant_link_indices=indices,
            raw=payload,
        )
    )


def is_meaningful(score: float, threshold: float) -> bool:
    """The threshold alone decides; the model's own flag is informational."""

    return score >= threshold


def resolve_threshold(settings: UserSettings, config: AnalysisConfig) -> int:
    if settings.meaningful_change_threshold is None:
        return config.default_threshold
    return settings.meaningful_change_threshold


# Link resolution strategies, tried in order. Each returns None when the
# payload does not use its shape, so an explicit empty list still wins.

def _links_from_indices(payload: dict, links: Sequence[str]) -> Optional[List[str]]:
    raw_indices = payload.get("relevantLinkIndices")
    if not isinstance(raw_indices, list):
        return None
    resolved: List[str] = []
    for value in raw_indices:
        index = _as_index(value)
        if index is None or not 0 <= index < len(links):
            continue
        resolved.append(links[index])
    return resolved


def _is_usable_url(value: Any) -> bool:
    return isinstance(value, str) and bool(value) and value != "null"


def _links_from_url_list(payload: dict, links: Sequence[str]) -> Optional[List[str]]:
    raw_links = payload.get("relevantLinks")
    if not isinstance(raw_links, list):
        return None
    return [url for url in raw_links if _is_usable_url(url)]


def _links_from_single_url(payload: dict, links: Sequence[str]) -> Optional[List[str]]:
    raw_link = payload.get("relevantLink")
    if not _is_usable_url(raw_link):
        return None
    return [raw_link]


LINK_STRATEGIES: Tuple[Callable[[dict, Sequence[str]], Optional[List[str]]], ...] = (
    _links_from_indices,
    _links_from_url_list,
    _links_from_single_url,
)


def resolve_target_urls(verdict: ClassificationVerdict, links: Sequence[str]) -> List[str]:
    """Map the verdict back to concrete URLs; first matching strategy wins."""

    for strategy in LINK_STRATEGIES:
        urls = strategy(verdict.raw, links)
        if urls is not None:
            # Repeated indices or URLs must not be evaluated twice.
            return list(dict.fromkeys(urls))
    return []


def build_user_prompt(event: ScrapeEvent, links: Sequence[str]) -> str:
    diff_text = event.diff.text if event.diff else ""
    return (
        f"Website: {event.website.name} ({event.url})\n\n"
        f"Changes detected:\n{diff_text}\n\n"
        f"Potential Links (Select by INDEX):\n{number_links(links)}\n\n"
        "Please analyze these changes and determine if they are meaningful."
    )


class PrimaryClassifier:
    """Runs the first classification round for one change event."""

    def __init__(self, completion: CompletionPort, config: AnalysisConfig) -> None:
        self._completion = completion
        self._config = config

    def build_request(
        self,
        settings: UserSettings,
        event: ScrapeEvent,
        links: Sequence[str],
    ) -> CompletionRequest:
        return CompletionRequest(
            api_key=settings.ai_api_key or "",
            base_url=settings.ai_base_url or self._config.default_base_url,
            model=settings.ai_model or self._config.default_model,
            system_prompt=settings.ai_system_prompt or DEFAULT_SYSTEM_PROMPT,
            user_prompt=build_user_prompt(event, links),
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
        )

    async def classify(
        self,
        settings: UserSettings,
        event: ScrapeEvent,
        links: Sequence[str],
    ) -> ClassificationResult:
        request = self.build_request(settings, event, links)
        LOGGER.debug("Diff sent to model for %s (%s chars)", event.url, len(request.user_prompt))
        try:
            raw = await self._completion.complete(request)
        except Exception as exc:
            LOGGER.error("Completion call failed for %s: %s", event.url, exc)
            return ClassificationTransportError(error=str(exc))

        LOGGER.debug("Raw classifier response for %s: %s", event.url, raw)
        result = parse_classification(raw)
        if isinstance(result, (ClassificationParseError, ClassificationSchemaError)):
            LOGGER.error(
                "Invalid classifier response for %s (%s). Raw content was: %s",
                event.url,
                result.reason,
                result.raw,
            )
        return result
