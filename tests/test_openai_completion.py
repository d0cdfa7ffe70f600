from __future__ import annotations

import asyncio
import json

import httpx
import openai
import pytest

from adapters.openai_completion import OpenAICompletionClient
from core.ports import CompletionRequest

REQUEST = CompletionRequest(
    api_key="sk-test",
    base_url="https://llm.example.com/v1/",
    model="gpt-4o-mini",
    system_prompt="system",
    user_prompt="user",
    temperature=0.1,
    max_tokens=4000,
)


def _completion_body(content: str) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def _complete(handler, request: CompletionRequest = REQUEST) -> str:
    async def run() -> str:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = OpenAICompletionClient(timeout_seconds=5, http_client=http)
            return await client.complete(request)

    return asyncio.run(run())


def test_complete_sends_json_mode_request() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion_body('{"score": 80}'))

    content = _complete(handler)

    assert content == '{"score": 80}'
    assert str(seen[0].url) == "https://llm.example.com/v1/chat/completions"
    body = json.loads(seen[0].content)
    assert body["response_format"] == {"type": "json_object"}
    assert body["temperature"] == 0.1
    assert body["max_tokens"] == 4000
    assert [message["role"] for message in body["messages"]] == ["system", "user"]


def test_max_tokens_is_omitted_when_unset() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion_body("{}"))

    request = CompletionRequest(
        api_key="sk-test",
        base_url="https://llm.example.com/v1",
        model="gpt-4o-mini",
        system_prompt="system",
        user_prompt="user",
        temperature=0.1,
    )
    _complete(handler, request)

    assert "max_tokens" not in json.loads(seen[0].content)


def test_failed_call_is_sent_once() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(500, json={"error": {"message": "boom"}})

    with pytest.raises(openai.APIStatusError):
        _complete(handler)

    assert len(seen) == 1
