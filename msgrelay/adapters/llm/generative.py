"""Generative-content adapter (``generateContent`` style APIs)."""
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from msgrelay.adapters.llm.base import (
    ProviderAdapter,
    ProviderRequest,
    UnifiedResponse,
    build_url,
    generate_message_id,
    host_of,
    is_event_stream,
    read_json,
    redirect_model,
)
from msgrelay.adapters.llm.chat_completions import clean_json_schema
from msgrelay.adapters.llm.streaming import GenerativeStreamTranscoder, transcode_response
from msgrelay.app.schemas import (
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnifiedMessage,
    UnifiedMessageResponse,
    UnifiedRequest,
    Usage,
)
from msgrelay.config.schema import ServiceType, UpstreamChannel

logger = logging.getLogger(__name__)


def convert_message(message: UnifiedMessage) -> Optional[Dict[str, Any]]:
    """Translate one unified message into a ``contents`` entry.

    Returns None for messages that carry no translatable parts.
    """
    role = "model" if message.role == "assistant" else "user"

    if isinstance(message.content, str):
        return {"role": role, "parts": [{"text": message.content}]}

    parts: List[Dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            parts.append({"text": block.text})
        elif isinstance(block, ToolUseBlock):
            parts.append({"functionCall": {"name": block.name, "args": block.input}})
        elif isinstance(block, ToolResultBlock):
            if isinstance(block.content, str):
                response: Any = {"result": block.content}
            else:
                response = block.content
            parts.append({"functionResponse": {"name": block.tool_use_id, "response": response}})
        else:
            logger.debug(f"Skipping untranslatable '{block.type}' block")

    if not parts:
        return None
    return {"role": role, "parts": parts}


class GenerativeAdapter(ProviderAdapter):
    """Adapter for generative-content upstreams.

    Mirrors ChatCompletionsAdapter: system text becomes
    ``systemInstruction``, tools become ``functionDeclarations`` and
    responses are re-shaped into unified content blocks.
    """

    service_type = ServiceType.GENERATIVE.value
    default_version = "v1beta"

    def build_body(self, request: UnifiedRequest) -> Dict[str, Any]:
        contents = []
        for message in request.messages:
            converted = convert_message(message)
            if converted is not None:
                contents.append(converted)

        body: Dict[str, Any] = {"contents": contents}

        system_text = request.system_text()
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}

        generation_config: Dict[str, Any] = {}
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if generation_config:
            body["generationConfig"] = generation_config

        if request.tools:
            body["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": tool.name,
                        "description": tool.description or "",
                        "parameters": clean_json_schema(tool.input_schema),
                    }
                    for tool in request.tools
                ],
            }]
        return body

    async def build_upstream_request(
        self,
        request: UnifiedRequest,
        channel: UpstreamChannel,
        api_key: str,
        inbound_headers: Optional[Mapping[str, str]] = None,
    ) -> ProviderRequest:
        model = redirect_model(request.model, channel.model_mapping)
        action = "streamGenerateContent?alt=sse" if request.stream else "generateContent"
        url = build_url(channel.base_url, f"models/{model}:{action}", default_version=self.default_version)
        headers = {
            "Host": host_of(url),
            "Content-Type": "application/json",
            "x-goog-api-key": api_key,
        }
        return ProviderRequest(
            method="POST",
            url=url,
            headers=headers,
            body=json.dumps(self.build_body(request), ensure_ascii=False).encode("utf-8"),
            model=model,
            stream=request.stream,
        )

    async def translate_upstream_response(
        self,
        response: httpx.Response,
        request: UnifiedRequest,
    ) -> UnifiedResponse:
        if is_event_stream(response):
            transcoder = GenerativeStreamTranscoder(model=request.model)
            return UnifiedResponse(
                status_code=200,
                headers={"content-type": "text/event-stream"},
                stream=transcode_response(transcoder, response),
            )

        data = await read_json(response)
        message = self.parse_response(data if isinstance(data, dict) else {}, request.model)
        return UnifiedResponse(
            status_code=200,
            headers={"content-type": "application/json"},
            body=message.model_dump_json().encode("utf-8"),
        )

    def parse_response(self, data: Dict[str, Any], model: str) -> UnifiedMessageResponse:
        """Translate a buffered generative response."""
        content: List[Dict[str, Any]] = []
        stop_reason: Optional[str] = None

        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
        parts = (candidate.get("content") or {}).get("parts") or []

        for part in parts:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("text"), str):
                content.append({"type": "text", "text": part["text"]})
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                content.append({
                    "type": "tool_use",
                    "id": f"toolu_{len(content)}",
                    "name": function_call.get("name", ""),
                    "input": function_call.get("args", {}),
                })

        finish_reason = (candidate.get("finishReason") or "").lower()
        if "stop" in finish_reason:
            has_tool_use = any(block["type"] == "tool_use" for block in content)
            stop_reason = "tool_use" if has_tool_use else "end_turn"
        elif "length" in finish_reason or "max_tokens" in finish_reason:
            stop_reason = "max_tokens"
        elif finish_reason:
            logger.info(f"Unmapped generative finish reason: {finish_reason}")
            stop_reason = "end_turn"

        usage = data.get("usageMetadata") or {}
        return UnifiedMessageResponse(
            id=generate_message_id(),
            model=model,
            content=content,
            stop_reason=stop_reason,
            usage=Usage(
                input_tokens=usage.get("promptTokenCount", 0) or 0,
                output_tokens=usage.get("candidatesTokenCount", 0) or 0,
            ),
        )
