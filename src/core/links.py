"""Candidate link extraction (core domain).

Links are handed to the classifier as a numbered list and referenced back by
index, so the order produced here must be stable for a given diff.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, List, Optional

LOGGER = logging.getLogger(__name__)

# Absolute http(s) URLs or root-relative paths, up to whitespace or ")".
URL_PATTERN = re.compile(r"(https?://[^\s)]+|/[^\s)]+)")
# Same pattern for serialized JSON, where a string also ends at a quote and
# escapes (\n, \") are not part of the URL.
JSON_URL_PATTERN = re.compile(r'(https?://[^\s)"\\]+|/[^\s)"\\]+)')


def _urls_in_text(text: str) -> List[str]:
    if not text:
        return []
    return URL_PATTERN.findall(text)


def _urls_in_json(diff_json: Any) -> List[str]:
    if diff_json is None:
        return []
    try:
        serialized = json.dumps(diff_json, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        LOGGER.warning("Failed to serialize diff json for link extraction: %s", exc)
        return []
    return JSON_URL_PATTERN.findall(serialized)


def extract_candidate_links(
    diff_text: str,
    diff_json: Any = None,
    page_links: Optional[Iterable[str]] = None,
) -> List[str]:
    """Return unique candidate URLs in first-seen order.

    Sources are scanned in order: diff text, serialized diff json, then the
    explicit page links reported by the scraper.
    """

    text_urls = _urls_in_text(diff_text)
    json_urls = _urls_in_json(diff_json)
    explicit = [link for link in (page_links or []) if isinstance(link, str) and link]

    LOGGER.debug(
        "Link sources - text: %s, json: %s, page links: %s",
        len(text_urls),
        len(json_urls),
        len(explicit),
    )

    # dict preserves insertion order, which gives the first-seen index.
    unique = dict.fromkeys([*text_urls, *json_urls, *explicit])
    return list(unique)


def number_links(links: Iterable[str]) -> str:
    """Render links as the ``"{index}. {url}"`` list shown to the model."""

    return "\n".join(f"{index}. {url}" for index, url in enumerate(links))
