"""Firecrawl scraping adapter.

Talks to the Firecrawl v1 HTTP API (cloud or self-hosted). Failures are
returned as ``{"success": False, "error": ...}`` dictionaries so callers can
log and move on without try/except around every call.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx

from core.models import Website

LOGGER = logging.getLogger(__name__)

CLOUD_API_URL = "https://api.firecrawl.dev"


def parse_website_headers(raw_headers: Optional[str]) -> Optional[dict]:
    """Parse the per-website JSON headers; malformed values are ignored."""

    if not raw_headers:
        return None
    try:
        headers = json.loads(raw_headers)
    except ValueError as exc:
        LOGGER.error("Failed to parse website headers: %s", exc)
        return None
    if not isinstance(headers, dict):
        LOGGER.error("Website headers must be a JSON object, got %s", type(headers).__name__)
        return None
    return headers


class FirecrawlClient:
    """Async Firecrawl client that also satisfies the core ContentFetcherPort."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        api_url: Optional[str] = None,
        timeout_seconds: int = 120,
    ) -> None:
        self._client = client
        self._api_url = (api_url or CLOUD_API_URL).rstrip("/")
        self._timeout_ms = timeout_seconds * 1000
        # Self-hosted instances authenticate with X-Auth-Token.
        if api_url:
            self._headers = {"X-Auth-Token": api_key}
        else:
            self._headers = {"Authorization": f"Bearer {api_key}"}

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        try:
            response = await self._client.request(
                method,
                f"{self._api_url}{path}",
                json=payload,
                headers={"Content-Type": "application/json", **self._headers},
            )
        except httpx.HTTPError as exc:
            return {"success": False, "error": str(exc) or type(exc).__name__}

        if response.is_error:
            return {"success": False, "error": f"HTTP {response.status_code}: {response.text}"}

        try:
            body: Any = response.json()
        except ValueError:
            return {"success": False, "error": "Response body is not JSON"}
        if not isinstance(body, dict):
            return {"success": False, "error": "Unexpected response body"}
        # The cloud API nests scrape results under "data"; flatten for callers.
        data = body.get("data")
        if isinstance(data, dict):
            return {**body, **data, "success": body.get("success", True)}
        return {"success": True, **body}

    async def scrape_url(self, url: str, options: Optional[dict] = None) -> dict:
        return await self._request("POST", "/v1/scrape", {"url": url, **(options or {})})

    async def scrape_for_changes(self, website: Website) -> dict:
        """Scrape a monitored website with git-diff change tracking."""

        options: dict[str, Any] = {
            "formats": ["markdown", "links", "changeTracking"],
            "timeout": self._timeout_ms,
            "changeTrackingOptions": {"modes": ["git-diff"]},
        }
        headers = parse_website_headers(website.headers)
        if headers:
            options["headers"] = headers
        return await self.scrape_url(website.url, options)

    async def fetch_markdown(self, url: str) -> Optional[str]:
        """Scrape one page as markdown for deep analysis."""

        result = await self.scrape_url(url, {"formats": ["markdown"], "timeout": self._timeout_ms})
        if not result.get("success"):
            LOGGER.error("Failed to scrape %s: %s", url, result.get("error"))
            return None
        return result.get("markdown")

    async def crawl_url(self, url: str, limit: int = 10) -> dict:
        return await self._request(
            "POST",
            "/v1/crawl",
            {
                "url": url,
                "limit": limit,
                "scrapeOptions": {
                    "formats": ["markdown", "changeTracking"],
                    "timeout": self._timeout_ms,
                },
            },
        )

    async def check_crawl_status(self, job_id: str) -> dict:
        result = await self._request("GET", f"/v1/crawl/{job_id}")
        if not result.get("success"):
            result.setdefault("status", "error")
        return result
