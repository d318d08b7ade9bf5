"""Tests for the generative-content adapter."""
import json

import httpx
import pytest

from msgrelay.adapters.llm.generative import GenerativeAdapter, convert_message
from msgrelay.app.schemas import UnifiedMessage, UnifiedRequest

from conftest import make_channel


def make_request(**kwargs) -> UnifiedRequest:
    body = {"model": "claude-x-sonnet", "messages": [{"role": "user", "content": "hi"}]}
    body.update(kwargs)
    return UnifiedRequest.parse_body(json.dumps(body).encode("utf-8"))


@pytest.mark.asyncio
async def test_build_request_url_and_headers():
    adapter = GenerativeAdapter()
    channel = make_channel("generative", model_mapping={"sonnet": "gemini-2.5-pro"})

    provider_request = await adapter.build_upstream_request(make_request(), channel, "g-key")

    assert provider_request.url == "https://upstream.example.com/v1beta/models/gemini-2.5-pro:generateContent"
    assert provider_request.headers["x-goog-api-key"] == "g-key"
    assert "Authorization" not in provider_request.headers


@pytest.mark.asyncio
async def test_stream_url():
    adapter = GenerativeAdapter()
    provider_request = await adapter.build_upstream_request(
        make_request(stream=True), make_channel("generative"), "g-key",
    )

    assert provider_request.url.endswith("/models/claude-x-sonnet:streamGenerateContent?alt=sse")


def test_build_body():
    adapter = GenerativeAdapter()
    request = make_request(
        system="Be brief.",
        max_tokens=128,
        temperature=0.5,
        tools=[{"name": "lookup", "description": "Find", "input_schema": {"type": "object", "title": "X"}}],
    )

    body = adapter.build_body(request)

    assert body["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert body["generationConfig"] == {"maxOutputTokens": 128, "temperature": 0.5}
    assert body["tools"][0]["functionDeclarations"][0] == {
        "name": "lookup",
        "description": "Find",
        "parameters": {"type": "object"},
    }


def test_convert_message_roles_and_parts():
    message = UnifiedMessage.model_validate({
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Calling."},
            {"type": "tool_use", "id": "t1", "name": "lookup", "input": {"q": "x"}},
        ],
    })

    converted = convert_message(message)

    assert converted["role"] == "model"
    assert converted["parts"] == [
        {"text": "Calling."},
        {"functionCall": {"name": "lookup", "args": {"q": "x"}}},
    ]

    result = UnifiedMessage.model_validate({
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "found"}],
    })
    assert convert_message(result)["parts"] == [
        {"functionResponse": {"name": "t1", "response": {"result": "found"}}},
    ]


def test_convert_message_skips_untranslatable_blocks():
    message = UnifiedMessage.model_validate({
        "role": "user",
        "content": [
            {"type": "image", "source": {"type": "url", "url": "https://example.com/cat.png"}},
            {"type": "text", "text": "What is this?"},
        ],
    })

    assert convert_message(message) == {"role": "user", "parts": [{"text": "What is this?"}]}

    only_thinking = UnifiedMessage.model_validate({
        "role": "assistant",
        "content": [{"type": "thinking", "thinking": "hmm", "signature": "sig"}],
    })
    assert convert_message(only_thinking) is None


def test_parse_response():
    adapter = GenerativeAdapter()
    message = adapter.parse_response({
        "candidates": [{
            "content": {"parts": [{"text": "Sure"}, {"functionCall": {"name": "lookup", "args": {"q": 1}}}]},
            "finishReason": "STOP",
        }],
        "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 3},
    }, "claude-x-sonnet")

    assert message.content[0] == {"type": "text", "text": "Sure"}
    assert message.content[1]["type"] == "tool_use"
    assert message.content[1]["input"] == {"q": 1}
    assert message.stop_reason == "tool_use"
    assert message.usage.input_tokens == 10


def test_parse_response_max_tokens():
    adapter = GenerativeAdapter()
    message = adapter.parse_response({
        "candidates": [{"content": {"parts": [{"text": "cut"}]}, "finishReason": "MAX_TOKENS"}],
    }, "m")

    assert message.stop_reason == "max_tokens"


@pytest.mark.asyncio
async def test_translate_buffered():
    adapter = GenerativeAdapter()
    response = httpx.Response(200, json={
        "candidates": [{"content": {"parts": [{"text": "Hello"}]}, "finishReason": "STOP"}],
    })

    unified = await adapter.translate_upstream_response(response, make_request())

    body = json.loads(unified.body)
    assert body["content"] == [{"type": "text", "text": "Hello"}]
    assert body["stop_reason"] == "end_turn"
