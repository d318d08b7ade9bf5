"""End-to-end tests for POST /v1/messages against a mocked upstream."""
import json
from typing import List

import httpx
import pytest
from fastapi.testclient import TestClient

from msgrelay.app.main import create_app

from conftest import ACCESS_KEY, make_channel, sse_body

AUTH = {"x-api-key": ACCESS_KEY}
BODY = {"model": "claude-x-opus", "messages": [{"role": "user", "content": "hi"}]}

CHAT_RESPONSE = {
    "id": "chatcmpl-1",
    "choices": [{"message": {"role": "assistant", "content": "Hello!"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 3, "completion_tokens": 2},
}


@pytest.fixture
def client():
    return TestClient(create_app())


class Recorder:
    """MockTransport handler that records requests and replies with a fixed response."""

    def __init__(self, response_factory):
        self.response_factory = response_factory
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response_factory(request)


def test_missing_secret_rejected(client, wire_app):
    """Test that requests without the shared secret never reach the upstream."""
    upstream = Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE))
    wire_app(make_channel(), upstream)

    response = client.post("/v1/messages", json=BODY)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"
    assert response.json()["error"]["type"] == "authentication_error"
    assert upstream.requests == []


def test_wrong_secret_rejected(client, wire_app):
    wire_app(make_channel(), Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE)))

    response = client.post("/v1/messages", json=BODY, headers={"x-api-key": "wrong"})

    assert response.status_code == 401


def test_unconfigured_secret_rejects_everything(client, wire_app):
    wire_app(make_channel(), Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE)), access_key=None)

    response = client.post("/v1/messages", json=BODY, headers=AUTH)

    assert response.status_code == 401


def test_bearer_secret_accepted(client, wire_app):
    upstream = Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE))
    wire_app(make_channel(), upstream)

    response = client.post("/v1/messages", json=BODY, headers={"Authorization": f"Bearer {ACCESS_KEY}"})

    assert response.status_code == 200
    # The proxy secret is replaced by the upstream key
    assert upstream.requests[0].headers["authorization"] == "Bearer key-a"


def test_buffered_chat_completions(client, wire_app):
    upstream = Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE))
    wire_app(make_channel(model_mapping={"opus": "gpt-5"}), upstream)

    response = client.post("/v1/messages", json=BODY, headers={**AUTH, "X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.headers["x-request-id"] == "req-123"
    data = response.json()
    assert data["type"] == "message"
    assert data["model"] == "claude-x-opus"
    assert data["content"] == [{"type": "text", "text": "Hello!"}]
    assert data["stop_reason"] == "end_turn"

    sent = json.loads(upstream.requests[0].content)
    assert sent["model"] == "gpt-5"
    assert sent["messages"] == [{"role": "user", "content": "hi"}]
    assert str(upstream.requests[0].url) == "https://upstream.example.com/v1/chat/completions"


def test_round_robin_across_requests(client, wire_app):
    upstream = Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE))
    wire_app(make_channel(), upstream)

    for _ in range(4):
        assert client.post("/v1/messages", json=BODY, headers=AUTH).status_code == 200

    used = [r.headers["authorization"] for r in upstream.requests]
    assert used == ["Bearer key-a", "Bearer key-b", "Bearer key-c", "Bearer key-a"]


def test_streamed_chat_completions(client, wire_app):
    upstream_body = sse_body(
        {"choices": [{"delta": {"content": "Hi"}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "call_1", "function": {"name": "calc", "arguments": '{"a"'}},
        ]}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "function": {"arguments": ":1}"}},
        ]}, "finish_reason": "tool_calls"}]},
        "[DONE]",
    )
    wire_app(make_channel(), Recorder(
        lambda r: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=upstream_body)
    ))

    response = client.post("/v1/messages", json={**BODY, "stream": True}, headers=AUTH)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    text = response.text
    assert text.startswith("event: message_start")
    assert '"type": "tool_use", "id": "call_1", "name": "calc"' in text
    assert text.count('"stop_reason": "tool_use"') == 1
    assert "event: message_stop" in text


def test_stream_error_chunk_reaches_caller(client, wire_app):
    upstream_body = sse_body(
        {"choices": [{"delta": {"content": "partial"}}]},
        {"error": {"message": "upstream overloaded"}},
        {"choices": [{"delta": {"content": "never"}}]},
    )
    wire_app(make_channel(), Recorder(
        lambda r: httpx.Response(200, headers={"content-type": "text/event-stream"}, content=upstream_body)
    ))

    response = client.post("/v1/messages", json={**BODY, "stream": True}, headers=AUTH)

    text = response.text
    assert "event: error" in text
    assert "UPSTREAM_STREAM_ERROR" in text
    assert "never" not in text
    assert "message_stop" not in text


def test_native_passthrough(client, wire_app):
    upstream_body = b'{"id":"msg_up","type":"message","role":"assistant","content":[{"type":"text","text":"yo"}]}'
    upstream = Recorder(lambda r: httpx.Response(
        200, headers={"content-type": "application/json"}, content=upstream_body,
    ))
    wire_app(make_channel("native", api_keys=["sk-ant-native"]), upstream)

    response = client.post(
        "/v1/messages",
        json=BODY,
        headers={**AUTH, "anthropic-version": "2023-06-01"},
    )

    assert response.status_code == 200
    assert response.content == upstream_body
    sent = upstream.requests[0]
    assert sent.headers["x-api-key"] == "sk-ant-native"
    assert sent.headers["anthropic-version"] == "2023-06-01"
    assert str(sent.url) == "https://upstream.example.com/v1/messages"


def test_native_forwards_image_blocks_unchanged(client, wire_app):
    upstream = Recorder(lambda r: httpx.Response(
        200, headers={"content-type": "application/json"}, content=b'{"type":"message","content":[]}',
    ))
    wire_app(make_channel("native", api_keys=["sk-ant-native"]), upstream)
    raw = json.dumps({
        "model": "claude-x-opus",
        "max_tokens": 64,
        "messages": [{"role": "user", "content": [
            {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "iVBORw0KGgo="}},
            {"type": "text", "text": "Describe this."},
        ]}],
    }).encode("utf-8")

    response = client.post(
        "/v1/messages",
        content=raw,
        headers={**AUTH, "content-type": "application/json"},
    )

    assert response.status_code == 200
    assert len(upstream.requests) == 1
    assert upstream.requests[0].content == raw


def test_chat_completions_drops_thinking_history(client, wire_app):
    upstream = Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE))
    wire_app(make_channel(), upstream)
    body = {"model": "claude-x-opus", "messages": [
        {"role": "user", "content": "What is 2+2?"},
        {"role": "assistant", "content": [
            {"type": "thinking", "thinking": "Simple sum.", "signature": "c2ln"},
            {"type": "text", "text": "4"},
        ]},
        {"role": "user", "content": "And 3+3?"},
    ]}

    response = client.post("/v1/messages", json=body, headers=AUTH)

    assert response.status_code == 200
    sent = json.loads(upstream.requests[0].content)
    assert sent["messages"] == [
        {"role": "user", "content": "What is 2+2?"},
        {"role": "assistant", "content": "4"},
        {"role": "user", "content": "And 3+3?"},
    ]


def test_invalid_body(client, wire_app):
    wire_app(make_channel(), Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE)))

    response = client.post("/v1/messages", content=b"not json", headers=AUTH)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BAD_REQUEST"

    response = client.post("/v1/messages", json={"model": "m", "messages": []}, headers=AUTH)
    assert response.status_code == 400


def test_no_channel_configured(client, wire_app):
    upstream = Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE))
    wire_app(None, upstream)

    response = client.post("/v1/messages", json=BODY, headers=AUTH)

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "NO_CHANNEL_CONFIGURED"
    assert upstream.requests == []


def test_channel_without_keys(client, wire_app):
    wire_app(make_channel(api_keys=[]), Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE)))

    response = client.post("/v1/messages", json=BODY, headers=AUTH)

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "NO_CHANNEL_CONFIGURED"


def test_unsupported_service_type(client, wire_app):
    wire_app(make_channel("carrier-pigeon"), Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE)))

    response = client.post("/v1/messages", json=BODY, headers=AUTH)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "UNSUPPORTED_SERVICE_TYPE"


def test_transport_error_marks_key_failed(client, wire_app):
    """Network failures surface as 502 and the key is not retried in-request."""
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    upstream = Recorder(refuse)
    state = wire_app(make_channel(), upstream)

    response = client.post("/v1/messages", json=BODY, headers=AUTH)

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "NETWORK_ERROR"
    assert "refused" not in response.json()["error"]["message"]
    assert len(upstream.requests) == 1
    assert state.health_tracker.is_failed("key-a")


def test_upstream_rate_limit_marks_key_failed(client, wire_app):
    upstream = Recorder(lambda r: httpx.Response(429, json={"error": {"message": "slow down"}}))
    state = wire_app(make_channel(), upstream)

    response = client.post("/v1/messages", json=BODY, headers=AUTH)

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "UPSTREAM_ERROR"
    assert error["type"] == "rate_limit_error"
    assert "slow down" in error["message"]
    assert state.health_tracker.is_failed("key-a")

    # The next request moves on to a healthy key
    client.post("/v1/messages", json=BODY, headers=AUTH)
    assert upstream.requests[1].headers["authorization"] != "Bearer key-a"


def test_upstream_bad_request_keeps_key(client, wire_app):
    upstream = Recorder(lambda r: httpx.Response(400, json={"error": {"message": "bad model"}}))
    state = wire_app(make_channel(), upstream)

    response = client.post("/v1/messages", json=BODY, headers=AUTH)

    assert response.status_code == 400
    assert not state.health_tracker.is_failed("key-a")


def test_health(client, wire_app):
    state = wire_app(make_channel(), Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE)))
    state.health_tracker.mark_failed("key-b")

    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["channel"] == "test-channel"
    assert data["service_type"] == "chat-completions-current"
    assert data["keys"] == 3
    assert data["failed_keys"] == 1


def test_metrics_endpoint(client, wire_app):
    wire_app(make_channel(), Recorder(lambda r: httpx.Response(200, json=CHAT_RESPONSE)))
    client.post("/v1/messages", json=BODY, headers=AUTH)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "msgrelay_requests_total" in response.text
