"""OpenAI-compatible completion adapter.

Each user brings their own API key and optionally a base URL, so clients are
created lazily and cached per (key, base URL) pair.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx
from openai import AsyncOpenAI

from core.ports import CompletionRequest

LOGGER = logging.getLogger(__name__)


class OpenAICompletionClient:
    """Implements the core CompletionPort with ``openai.AsyncOpenAI``."""

    def __init__(
        self,
        timeout_seconds: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._http_client = http_client
        self._clients: Dict[Tuple[str, str], AsyncOpenAI] = {}

    def _client_for(self, api_key: str, base_url: str) -> AsyncOpenAI:
        key = (api_key, base_url.rstrip("/"))
        client = self._clients.get(key)
        if client is None:
            # A failed call is reported once; the pipeline never retries.
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=key[1],
                timeout=self._timeout,
                max_retries=0,
                http_client=self._http_client,
            )
            self._clients[key] = client
        return client

    async def complete(self, request: CompletionRequest) -> str:
        """Run one JSON-object chat completion and return the message content."""

        client = self._client_for(request.api_key, request.base_url)
        params: Dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "temperature": request.temperature,
            "response_format": {"type": "json_object"},
        }
        if request.max_tokens is not None:
            params["max_tokens"] = request.max_tokens

        response = await client.chat.completions.create(**params)
        if not response.choices:
            raise RuntimeError("Completion response contained no choices")
        return response.choices[0].message.content or ""

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
