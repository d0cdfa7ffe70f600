"""Webhook notification adapter.

Posts the formatted change payload to a user webhook. Destinations on the
local or private network are relayed through the webhook proxy instead of
being called directly.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Optional
from urllib.parse import urlparse

import httpx

from adapters.notification_formatting import (
    format_crawl_webhook_body,
    format_webhook_body,
    is_slack_webhook,
)
from core.config import NotificationConfig
from core.models import FinalAnalysis, ScrapeEvent

LOGGER = logging.getLogger(__name__)

_LOCAL_HOSTNAMES = {"localhost", "localhost.localdomain"}


class WebhookDeliveryError(RuntimeError):
    """Raised when a webhook (or its proxy relay) answers with a non-2xx status."""


def is_private_destination(url: str) -> bool:
    """True for localhost, loopback, private, link-local or unspecified hosts."""

    host = (urlparse(url).hostname or "").lower()
    if not host:
        return False
    if host in _LOCAL_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
    )


class WebhookNotifier:
    """Notifier adapter that delivers change events over HTTP webhooks."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: NotificationConfig,
        proxy_url: Optional[str] = None,
    ) -> None:
        self._client = client
        self._config = config
        self._proxy_url = proxy_url

    async def send(
        self,
        webhook_url: str,
        event: ScrapeEvent,
        analysis: Optional[FinalAnalysis],
    ) -> None:
        """Format and deliver one change notification."""

        if is_slack_webhook(webhook_url):
            LOGGER.info("Detected Slack webhook URL, formatting payload as blocks")
        body = format_webhook_body(webhook_url, event, analysis, self._config)
        await self.post(webhook_url, body)

    async def send_crawl(self, webhook_url: str, payload: dict) -> None:
        """Deliver a ``crawl_completed`` envelope, as Slack blocks when needed."""

        await self.post(webhook_url, format_crawl_webhook_body(webhook_url, payload))

    async def post(self, webhook_url: str, body: dict) -> None:
        if is_private_destination(webhook_url):
            await self._post_via_proxy(webhook_url, body)
            return

        LOGGER.info("Sending webhook to %s", webhook_url)
        response = await self._client.post(
            webhook_url,
            json=body,
            headers={
                "Content-Type": "application/json",
                "User-Agent": self._config.user_agent,
            },
        )
        if response.is_error:
            raise WebhookDeliveryError(
                f"Webhook failed with status {response.status_code}: {response.text}"
            )
        LOGGER.info("Webhook sent successfully (%s)", response.status_code)

    async def _post_via_proxy(self, webhook_url: str, body: dict) -> None:
        if not self._proxy_url:
            raise WebhookDeliveryError(
                f"Webhook {webhook_url} is on a private network and no proxy is configured"
            )
        LOGGER.info("Using webhook proxy %s for private URL %s", self._proxy_url, webhook_url)
        response = await self._client.post(
            self._proxy_url,
            json={"targetUrl": webhook_url, "payload": body},
            headers={"Content-Type": "application/json"},
        )
        if response.is_error:
            raise WebhookDeliveryError(
                f"Webhook proxy failed with status {response.status_code}: {response.text}"
            )
        LOGGER.info("Webhook sent successfully via proxy (%s)", response.status_code)
