"""Firecrawl-to-core scrape mapping adapter.

This keeps Firecrawl response details out of the core pipeline.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from core.models import ChangeDiff, ScrapeEvent, Website


def _change_tracking(result: dict) -> dict:
    tracking = result.get("changeTracking")
    return tracking if isinstance(tracking, dict) else {}


def _metadata(result: dict) -> dict:
    metadata = result.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def diff_from_result(result: dict) -> Optional[ChangeDiff]:
    diff = _change_tracking(result).get("diff")
    if not isinstance(diff, dict):
        return None
    return ChangeDiff(text=diff.get("text") or "", json=diff.get("json"))


def change_status(result: dict) -> str:
    return _change_tracking(result).get("changeStatus") or "new"


def has_change(result: dict) -> bool:
    """A page counts as changed when flagged so or when a diff came back."""

    return change_status(result) == "changed" or diff_from_result(result) is not None


DEFAULT_CHANGE_SUMMARY = "Website content has changed since last check"


def change_summary(diff: Optional[ChangeDiff], limit: int = 200) -> str:
    """Short preview of a diff for the change-alert history."""

    if diff is None or not diff.text:
        return DEFAULT_CHANGE_SUMMARY
    if len(diff.text) > limit:
        return diff.text[:limit] + "..."
    return diff.text


def build_scrape_event(
    website: Website,
    result: dict,
    scrape_result_id: str,
    scraped_at: datetime,
) -> ScrapeEvent:
    """Build a core ScrapeEvent from a successful Firecrawl scrape."""

    metadata = _metadata(result)
    links = [link for link in result.get("links") or [] if isinstance(link, str)]
    return ScrapeEvent(
        website=website,
        scrape_result_id=scrape_result_id,
        diff=diff_from_result(result),
        markdown=result.get("markdown") or "",
        scraped_at=scraped_at,
        change_status=change_status(result),
        title=metadata.get("title") or None,
        description=metadata.get("description") or None,
        links=links,
        page_url=website.url,
    )
