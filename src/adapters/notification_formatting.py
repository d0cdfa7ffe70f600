"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps messages
consistent regardless of delivery channel.
"""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from core.config import NotificationConfig
from core.models import FinalAnalysis, ScrapeEvent, Website

SLACK_HOOK_DOMAIN = "hooks.slack.com"

# <url|label> links used in consolidated reasoning (Slack mrkdwn style).
_SLACK_LINK = re.compile(r"<([^|>]+)\|([^>]+)>")

_UNSAFE_TAGS = ("script", "style", "iframe", "object", "embed", "form", "frame", "frameset", "meta", "base")
_URL_ATTRIBUTES = ("href", "src", "action", "formaction", "xlink:href")
_UNSAFE_SCHEMES = ("javascript:", "vbscript:", "data:")


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def truncate(text: str, limit: int) -> str:
    """Clip text to ``limit`` characters, ``...`` included."""

    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _clip(text: str, limit: int) -> str:
    """Clip text to ``limit`` characters and mark the cut with ``...``."""

    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def split_diff_lines(diff_text: str) -> Tuple[List[str], List[str]]:
    """Return (added, removed) lines with their +/- prefix stripped."""

    added: List[str] = []
    removed: List[str] = []
    for line in diff_text.split("\n"):
        if line.startswith("+") and not line.startswith("+++"):
            added.append(line[1:])
        elif line.startswith("-") and not line.startswith("---"):
            removed.append(line[1:])
    return added, removed


def analysis_payload(analysis: FinalAnalysis) -> dict:
    return {
        "meaningfulChangeScore": analysis.meaningful_change_score,
        "isMeaningfulChange": analysis.is_meaningful_change,
        "reasoning": analysis.reasoning,
        "analyzedAt": _iso(analysis.analyzed_at),
        "model": analysis.model,
    }


def build_webhook_payload(
    event: ScrapeEvent,
    analysis: Optional[FinalAnalysis],
    config: NotificationConfig,
    now: Optional[datetime] = None,
) -> dict:
    """Build the generic JSON envelope sent to non-Slack webhooks."""

    now = now or datetime.now(timezone.utc)
    change: dict[str, Any] = {
        "detectedAt": _iso(event.scraped_at),
        "changeType": "content_changed",
        "changeStatus": event.change_status,
        "summary": "Website content has changed",
    }
    if event.diff is not None:
        if event.diff.text:
            change["summary"] = _clip(event.diff.text, config.summary_chars)
        added, removed = split_diff_lines(event.diff.text)
        change["diff"] = {"added": added, "removed": removed}

    payload: dict[str, Any] = {
        "event": "website_changed",
        "timestamp": _iso(now),
        "website": {
            "id": event.website.id,
            "name": event.website.name,
            "url": event.url,
        },
        "change": change,
        "scrapeResult": {
            "id": event.scrape_result_id,
            "title": event.title,
            "description": event.description,
            "markdown": _clip(event.markdown, config.markdown_chars),
        },
    }
    if analysis is not None:
        payload["aiAnalysis"] = analysis_payload(analysis)
    return payload


def is_slack_webhook(webhook_url: str) -> bool:
    host = (urlparse(webhook_url).hostname or "").lower()
    return host == SLACK_HOOK_DOMAIN


def escape_slack_mrkdwn(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _format_local_date(value: datetime) -> str:
    return value.astimezone().strftime("%d/%m/%Y %H:%M:%S")


def format_slack_payload(
    event: ScrapeEvent,
    analysis: Optional[FinalAnalysis],
    config: NotificationConfig,
) -> dict:
    """Create the Slack Block Kit message for a change event."""

    website_name = escape_slack_mrkdwn(event.website.name)
    status_icon = "🚨" if analysis and analysis.is_meaningful_change else "📝"
    header = f"{status_icon} Changement Détecté : {event.website.name}"

    blocks: List[dict] = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": truncate(header, config.slack_field_limit),
                "emoji": True,
            },
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Site Web :*\n<{event.url}|{website_name}>"},
                {"type": "mrkdwn", "text": f"*Date :*\n{_format_local_date(event.scraped_at)}"},
            ],
        },
        {"type": "divider"},
    ]

    if analysis and analysis.reasoning:
        reasoning = truncate(escape_slack_mrkdwn(analysis.reasoning), config.slack_field_limit)
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": reasoning}})
        blocks.append({"type": "divider"})

    return {
        "text": f"{status_icon} Changement Détecté : {website_name}",
        "blocks": blocks,
    }


def format_webhook_body(
    webhook_url: str,
    event: ScrapeEvent,
    analysis: Optional[FinalAnalysis],
    config: NotificationConfig,
) -> dict:
    """Return the body for the destination: Slack blocks or the generic envelope."""

    if is_slack_webhook(webhook_url):
        return format_slack_payload(event, analysis, config)
    return build_webhook_payload(event, analysis, config)


CRAWL_NOTE = "Individual page changes trigger separate notifications with detailed diffs"


def build_crawl_payload(
    website: Website,
    session_id: str,
    started_at: datetime,
    completed_at: Optional[datetime],
    pages_found: int,
    now: Optional[datetime] = None,
) -> dict:
    """Build the ``crawl_completed`` envelope for a finished full-site crawl."""

    now = now or datetime.now(timezone.utc)
    duration = None
    if completed_at is not None:
        duration = f"{round((completed_at - started_at).total_seconds())}s"
    return {
        "event": "crawl_completed",
        "timestamp": _iso(now),
        "website": {
            "id": website.id,
            "name": website.name,
            "url": website.url,
            "type": "full_site",
        },
        "crawlSummary": {
            "sessionId": session_id,
            "startedAt": _iso(started_at),
            "completedAt": _iso(completed_at) if completed_at is not None else None,
            "pagesFound": pages_found,
            "duration": duration,
        },
        "note": CRAWL_NOTE,
    }


def format_slack_crawl_payload(payload: dict) -> dict:
    """Turn a ``crawl_completed`` envelope into Slack blocks."""

    website = payload["website"]
    summary = payload["crawlSummary"]
    pages_found = summary["pagesFound"]
    name = escape_slack_mrkdwn(website["name"])
    return {
        "text": f"🕷️ Crawl Completed: {name}",
        "blocks": [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"🕷️ Crawl Completed: {website['name']}",
                    "emoji": True,
                },
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Website:*\n<{website['url']}|{name}>"},
                    {"type": "mrkdwn", "text": f"*Pages Found:*\n{pages_found}"},
                ],
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": (
                        "*Session Info:*\n"
                        f"Completed in {summary['duration']}. Found {pages_found} pages."
                    ),
                },
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": "Individual page changes will be sent as separate notifications.",
                    }
                ],
            },
            {"type": "divider"},
        ],
    }


def format_crawl_webhook_body(webhook_url: str, payload: dict) -> dict:
    if is_slack_webhook(webhook_url):
        return format_slack_crawl_payload(payload)
    return payload


def reasoning_to_html(text: str) -> str:
    """Escape reasoning text while turning ``<url|label>`` links into anchors."""

    parts: List[str] = []
    position = 0
    for match in _SLACK_LINK.finditer(text):
        parts.append(html.escape(text[position : match.start()], quote=False))
        url = html.escape(match.group(1), quote=True)
        label = html.escape(match.group(2), quote=False)
        parts.append(f'<a href="{url}">{label}</a>')
        position = match.end()
    parts.append(html.escape(text[position:], quote=False))
    return "".join(parts)


def sanitize_html(markup: str) -> str:
    """Drop script-executing constructs from user-supplied HTML."""

    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup.find_all(list(_UNSAFE_TAGS)):
        # Nested matches are already gone with their parent.
        if tag.decomposed:
            continue
        tag.decompose()
    for tag in soup.find_all(True):
        for attribute in list(tag.attrs):
            if attribute.lower().startswith("on"):
                del tag.attrs[attribute]
                continue
            if attribute.lower() in _URL_ATTRIBUTES:
                value = str(tag.attrs[attribute]).strip().lower()
                # Browsers ignore embedded whitespace/control chars in schemes.
                compact = re.sub(r"[\s\x00-\x1f]", "", value)
                if compact.startswith(_UNSAFE_SCHEMES):
                    del tag.attrs[attribute]
    return str(soup)


def _format_email_date(value: datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def render_template(
    template: str,
    event: ScrapeEvent,
    analysis: Optional[FinalAnalysis],
    config: NotificationConfig,
) -> str:
    """Substitute ``{{placeholders}}`` in a user template, then sanitize it."""

    values = {
        "websiteName": event.website.name,
        "websiteUrl": event.url,
        "changeDate": _format_email_date(event.scraped_at),
        "changeType": event.change_status,
        "pageTitle": event.title or "N/A",
        "viewChangesUrl": config.site_url,
        "aiMeaningfulScore": str(analysis.meaningful_change_score) if analysis else "N/A",
        "aiIsMeaningful": "Yes" if analysis and analysis.is_meaningful_change else "No",
        "aiReasoning": reasoning_to_html(analysis.reasoning) if analysis else "N/A",
        "aiModel": analysis.model if analysis else "N/A",
        "aiAnalyzedAt": _format_email_date(analysis.analyzed_at) if analysis else "N/A",
    }
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace("{{" + key + "}}", value)
    return sanitize_html(rendered)


def render_default_email(
    event: ScrapeEvent,
    analysis: Optional[FinalAnalysis],
    config: NotificationConfig,
) -> str:
    """Create the built-in HTML email body."""

    name = html.escape(event.website.name)
    url = html.escape(event.url, quote=True)
    parts = [
        "<h2>Website Change Alert</h2>",
        "<p>We've detected changes on the website you're monitoring:</p>",
        '<div style="background: #f5f5f5; padding: 15px; border-radius: 8px; margin: 20px 0;">',
        f"<h3>{name}</h3>",
        f'<p><a href="{url}">{url}</a></p>',
        f"<p><strong>Changed at:</strong> {_format_email_date(event.scraped_at)}</p>",
    ]
    if event.title:
        parts.append(f"<p><strong>Page Title:</strong> {html.escape(event.title)}</p>")
    if analysis is not None:
        reasoning = reasoning_to_html(analysis.reasoning)
        parts.extend(
            [
                '<div style="background: #e8f4f8; border-left: 4px solid #2196F3; padding: 12px; margin: 15px 0;">',
                '<h4 style="margin: 0 0 8px 0; color: #1976D2;">AI Analysis</h4>',
                "<p><strong>Meaningful Change:</strong> "
                f"{'Yes' if analysis.is_meaningful_change else 'No'} "
                f"({analysis.meaningful_change_score}% score)</p>",
                f"<p><strong>Reasoning:</strong> {reasoning}</p>",
                '<p style="font-size: 12px; color: #666; margin: 8px 0 0 0;">'
                f"Analyzed by {html.escape(analysis.model)} at {_format_email_date(analysis.analyzed_at)}</p>",
                "</div>",
            ]
        )
    parts.append("</div>")
    parts.append(
        f'<p><a href="{html.escape(config.site_url, quote=True)}" '
        'style="background: #ff6600; color: white; padding: 10px 20px; '
        'text-decoration: none; border-radius: 5px;">View Changes</a></p>'
    )
    return "\n".join(parts)


def format_email(
    to: str,
    event: ScrapeEvent,
    analysis: Optional[FinalAnalysis],
    config: NotificationConfig,
    template: Optional[str] = None,
) -> dict:
    """Return the outbound email request ``{from, to, subject, html}``."""

    if template:
        body = render_template(template, event, analysis, config)
    else:
        body = render_default_email(event, analysis, config)
    return {
        "from": f"{config.app_name} <{config.from_email}>",
        "to": to,
        "subject": f"Changes detected on {event.website.name}",
        "html": body,
    }
