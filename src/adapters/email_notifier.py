"""Email notification adapter.

Renders the change email and hands it to the Resend HTTP API.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from adapters.notification_formatting import format_email
from core.config import NotificationConfig
from core.models import FinalAnalysis, ScrapeEvent

LOGGER = logging.getLogger(__name__)

RESEND_ENDPOINT = "https://api.resend.com/emails"


class EmailDeliveryError(RuntimeError):
    """Raised when the email provider rejects a send request."""


class ResendEmailNotifier:
    """Notifier adapter that sends change emails through Resend."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        config: NotificationConfig,
        endpoint: str = RESEND_ENDPOINT,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._config = config
        self._endpoint = endpoint

    async def send(
        self,
        email: str,
        event: ScrapeEvent,
        analysis: Optional[FinalAnalysis],
        template: Optional[str],
    ) -> None:
        """Render and send the notification email."""

        message = format_email(email, event, analysis, self._config, template)
        response = await self._client.post(
            self._endpoint,
            json=message,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if response.is_error:
            raise EmailDeliveryError(
                f"Email provider error {response.status_code}: {response.text}"
            )
        LOGGER.info("Email sent to %s for %s", email, event.website.name)
