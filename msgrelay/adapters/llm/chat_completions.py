"""Chat-completions adapters.

Translates unified Messages requests into the chat-completions wire format
and back. Two request conventions exist in the wild, so the adapter comes
in two variants that differ only in the token-limit field and in whether
function declarations carry a ``strict`` flag.
"""
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from msgrelay.adapters.llm.base import (
    ProviderAdapter,
    ProviderRequest,
    UnifiedResponse,
    build_url,
    forwardable_headers,
    generate_message_id,
    host_of,
    is_event_stream,
    read_json,
    redirect_model,
)
from msgrelay.adapters.llm.streaming import StreamTranscoder, transcode_response
from msgrelay.app.schemas import (
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    UnifiedMessage,
    UnifiedMessageResponse,
    UnifiedRequest,
    Usage,
)
from msgrelay.config.schema import ServiceType, UpstreamChannel

logger = logging.getLogger(__name__)

# JSON-schema keywords that chat-completions providers reject
UNSUPPORTED_SCHEMA_KEYS = frozenset({"$schema", "title", "examples", "additionalProperties"})

DEFAULT_MAX_COMPLETION_TOKENS = 65535


def clean_json_schema(schema: Any) -> Any:
    """Strip unsupported keywords from a tool input schema, recursively.

    ``format`` is only removed from string-typed schemas.
    """
    if isinstance(schema, dict):
        cleaned = {}
        for key, value in schema.items():
            if key in UNSUPPORTED_SCHEMA_KEYS:
                continue
            if key == "format" and schema.get("type") == "string":
                continue
            cleaned[key] = clean_json_schema(value)
        return cleaned
    if isinstance(schema, list):
        return [clean_json_schema(item) for item in schema]
    return schema


def normalize_role(role: str) -> str:
    """Map a unified role label onto a chat-completions role."""
    role = (role or "").strip().lower()
    if role.startswith("tool"):
        return "tool"
    if role in ("assistant", "system"):
        return role
    return "user"


def tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


def convert_message(message: UnifiedMessage) -> List[Dict[str, Any]]:
    """Translate one unified message into zero or more chat messages.

    Tool results become their own ``tool`` messages, placed ahead of the
    message that aggregates the remaining text and tool calls.
    """
    role = normalize_role(message.role)

    if isinstance(message.content, str):
        if role == "tool":
            return []
        return [{"role": role, "content": message.content}]

    texts: List[str] = []
    tool_calls: List[Dict[str, Any]] = []
    tool_results: List[Dict[str, Any]] = []

    for block in message.content:
        if isinstance(block, TextBlock):
            texts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            tool_calls.append({
                "id": block.id,
                "type": "function",
                "function": {
                    "name": block.name,
                    "arguments": json.dumps(block.input, ensure_ascii=False),
                },
            })
        elif isinstance(block, ToolResultBlock):
            tool_results.append({
                "role": "tool",
                "tool_call_id": block.tool_use_id,
                "content": tool_result_text(block.content),
            })
        else:
            logger.debug(f"Skipping untranslatable '{block.type}' block")

    messages = list(tool_results)
    if (texts or tool_calls) and role != "tool":
        converted: Dict[str, Any] = {
            "role": role,
            "content": "\n".join(texts) if texts else None,
        }
        if tool_calls:
            converted["tool_calls"] = tool_calls
        messages.append(converted)
    return messages


def convert_messages(request: UnifiedRequest) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    system_text = request.system_text()
    if system_text:
        messages.append({"role": "system", "content": system_text})
    for message in request.messages:
        messages.extend(convert_message(message))
    return messages


class ChatCompletionsAdapter(ProviderAdapter):
    """Adapter for the current chat-completions convention.

    Sends ``max_completion_tokens`` (with a large default) and plain
    function declarations.
    """

    service_type = ServiceType.CHAT_COMPLETIONS_CURRENT.value
    endpoint = "chat/completions"
    max_tokens_field = "max_completion_tokens"
    default_max_tokens: Optional[int] = DEFAULT_MAX_COMPLETION_TOKENS
    strict_tools = False

    def convert_tool(self, tool: ToolSpec) -> Dict[str, Any]:
        function: Dict[str, Any] = {
            "name": tool.name,
            "description": tool.description or "",
            "parameters": clean_json_schema(tool.input_schema),
        }
        if self.strict_tools:
            function["strict"] = True
        return {"type": "function", "function": function}

    def build_body(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": convert_messages(request),
        }
        if request.stream:
            body["stream"] = True
        if request.temperature is not None:
            body["temperature"] = request.temperature

        max_tokens = request.max_tokens if request.max_tokens is not None else self.default_max_tokens
        if max_tokens is not None:
            body[self.max_tokens_field] = max_tokens

        if request.tools:
            body["tools"] = [self.convert_tool(tool) for tool in request.tools]
            body["tool_choice"] = "auto"
        return body

    async def build_upstream_request(
        self,
        request: UnifiedRequest,
        channel: UpstreamChannel,
        api_key: str,
        inbound_headers: Optional[Mapping[str, str]] = None,
    ) -> ProviderRequest:
        model = redirect_model(request.model, channel.model_mapping)
        url = build_url(channel.base_url, self.endpoint)
        headers = forwardable_headers(inbound_headers)
        headers["host"] = host_of(url)
        headers["content-type"] = "application/json"
        headers["authorization"] = f"Bearer {api_key}"
        if request.stream:
            headers["accept"] = "text/event-stream"
        body = self.build_body(request, model)
        return ProviderRequest(
            method="POST",
            url=url,
            headers=headers,
            body=json.dumps(body, ensure_ascii=False).encode("utf-8"),
            model=model,
            stream=request.stream,
        )

    async def translate_upstream_response(
        self,
        response: httpx.Response,
        request: UnifiedRequest,
    ) -> UnifiedResponse:
        if is_event_stream(response):
            transcoder = StreamTranscoder(model=request.model)
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
        """Translate a buffered chat-completions response."""
        content: List[Dict[str, Any]] = []
        stop_reason = "end_turn"

        choices = data.get("choices") or []
        if choices and isinstance(choices[0], dict):
            choice = choices[0]
            message = choice.get("message") or {}

            text = message.get("content")
            if isinstance(text, str) and text:
                content.append({"type": "text", "text": text})

            tool_calls = message.get("tool_calls") or []
            for tool_call in tool_calls:
                function = tool_call.get("function") or {}
                arguments = function.get("arguments") or ""
                if isinstance(arguments, dict):
                    tool_input = arguments
                else:
                    try:
                        tool_input = json.loads(arguments) if arguments else {}
                    except (TypeError, ValueError):
                        logger.warning(
                            f"Tool call {tool_call.get('id')} returned arguments that are not JSON, "
                            f"passing them through unchanged: {str(arguments)[:200]!r}"
                        )
                        tool_input = arguments
                content.append({
                    "type": "tool_use",
                    "id": tool_call.get("id", ""),
                    "name": function.get("name", ""),
                    "input": tool_input,
                })

            if tool_calls:
                stop_reason = "tool_use"
            elif choice.get("finish_reason") == "length":
                stop_reason = "max_tokens"

        usage = data.get("usage") or {}
        return UnifiedMessageResponse(
            id=generate_message_id(),
            model=model,
            content=content,
            stop_reason=stop_reason,
            usage=Usage(
                input_tokens=usage.get("prompt_tokens", 0) or 0,
                output_tokens=usage.get("completion_tokens", 0) or 0,
            ),
        )


class LegacyChatCompletionsAdapter(ChatCompletionsAdapter):
    """Adapter for the older chat-completions convention.

    Sends ``max_tokens`` only when the caller set it, and marks function
    declarations as ``strict``.
    """

    service_type = ServiceType.CHAT_COMPLETIONS_LEGACY.value
    max_tokens_field = "max_tokens"
    default_max_tokens = None
    strict_tools = True
