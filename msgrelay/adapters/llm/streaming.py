"""Server-sent event framing and stream transcoding.

Upstream chat-completions and generative streams are re-framed into the
unified Messages event sequence:

    message_start
    content_block_start / content_block_delta / content_block_stop  (per part)
    message_delta (stop_reason)
    message_stop

Tool-call arguments that arrive split over several chunks are buffered per
tool-call index and only emitted once they decode as JSON, so the caller
never sees partial arguments.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from msgrelay.adapters.llm.base import generate_message_id
from msgrelay.core.errors import UpstreamStreamError
from msgrelay.metrics.prometheus import stream_chunks_skipped_total, tool_calls_dropped_total

logger = logging.getLogger(__name__)

TOOL_CALL_FINISH_REASONS = ("tool_calls", "function_call")


def sse_event(event: str, data: Dict[str, Any]) -> str:
    """Format one SSE frame."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def text_block_events(text: str, index: int) -> List[str]:
    """Events for a complete text block at ``index``."""
    return [
        sse_event("content_block_start", {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "text", "text": ""},
        }),
        sse_event("content_block_delta", {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "text_delta", "text": text},
        }),
        sse_event("content_block_stop", {"type": "content_block_stop", "index": index}),
    ]


def tool_use_block_events(tool_id: str, name: str, tool_input: Any, index: int) -> List[str]:
    """Events for a complete tool_use block at ``index``."""
    return [
        sse_event("content_block_start", {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
        }),
        sse_event("content_block_delta", {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": json.dumps(tool_input, ensure_ascii=False)},
        }),
        sse_event("content_block_stop", {"type": "content_block_stop", "index": index}),
    ]


def stop_reason_event(stop_reason: str, output_tokens: Optional[int] = None) -> str:
    data: Dict[str, Any] = {
        "type": "message_delta",
        "delta": {"stop_reason": stop_reason, "stop_sequence": None},
    }
    if output_tokens is not None:
        data["usage"] = {"output_tokens": output_tokens}
    return sse_event("message_delta", data)


def error_event(error_type: str, code: str, message: str) -> str:
    """Terminal error frame for a stream that cannot continue."""
    return sse_event("error", {
        "type": "error",
        "error": {"type": error_type, "code": code, "message": message},
    })


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` line.

    Blank lines, other SSE fields and the ``[DONE]`` terminator are skipped.
    """
    async for line in lines:
        line = line.strip()
        if not line or not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if payload == "[DONE]":
            continue
        yield payload


@dataclass
class ToolCallAccumulator:
    """Fragments of one streamed tool call."""

    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


class StreamTranscoder:
    """Per-response state machine for chat-completions streams.

    Not restartable: create one per upstream response.
    """

    service_type = "chat-completions"

    def __init__(self, model: str = "", message_id: Optional[str] = None):
        self.model = model
        self.message_id = message_id or generate_message_id()
        self.text_block_index = 0
        self.tool_use_block_index = 0
        self.accumulators: Dict[int, ToolCallAccumulator] = {}
        self.tool_use_stop_emitted = False
        self.finish_reason: Optional[str] = None
        self.input_tokens: Optional[int] = None
        self.output_tokens: Optional[int] = None

    def start(self) -> List[str]:
        """Events that open the message."""
        return [sse_event("message_start", {
            "type": "message_start",
            "message": {
                "id": self.message_id,
                "type": "message",
                "role": "assistant",
                "model": self.model,
                "content": [],
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": 0, "output_tokens": 0},
            },
        })]

    def feed(self, payload: str) -> List[str]:
        """Translate one upstream ``data:`` payload into unified events.

        Raises:
            UpstreamStreamError: If the payload is an upstream error object
        """
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            stream_chunks_skipped_total.labels(service_type=self.service_type).inc()
            logger.debug(f"Skipping malformed stream chunk: {payload[:200]}")
            return []

        if not isinstance(chunk, dict):
            return []

        if chunk.get("error"):
            error = chunk["error"]
            message = error.get("message") if isinstance(error, dict) else None
            raise UpstreamStreamError(
                f"Upstream reported an error mid-stream: {message or error}",
                payload=error,
            )

        return self._handle_chunk(chunk)

    def _handle_chunk(self, chunk: Dict[str, Any]) -> List[str]:
        events: List[str] = []

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            self.input_tokens = usage.get("prompt_tokens", self.input_tokens)
            self.output_tokens = usage.get("completion_tokens", self.output_tokens)

        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return events
        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}

        content = delta.get("content")
        if isinstance(content, str) and content:
            events.extend(text_block_events(content, self.text_block_index))
            self.text_block_index += 1

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for tool_call in tool_calls:
                if isinstance(tool_call, dict):
                    events.extend(self._accumulate_tool_call(tool_call))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            self.finish_reason = finish_reason
            if finish_reason in TOOL_CALL_FINISH_REASONS and not self.tool_use_stop_emitted:
                events.append(stop_reason_event("tool_use", self.output_tokens))
                self.tool_use_stop_emitted = True

        return events

    def _accumulate_tool_call(self, tool_call: Dict[str, Any]) -> List[str]:
        index = tool_call.get("index", 0)
        if not isinstance(index, int):
            index = 0
        acc = self.accumulators.setdefault(index, ToolCallAccumulator())

        if tool_call.get("id"):
            acc.id = tool_call["id"]
        function = tool_call.get("function")
        if isinstance(function, dict):
            if function.get("name"):
                acc.name = function["name"]
            arguments = function.get("arguments")
            if isinstance(arguments, str):
                acc.arguments += arguments

        if not (acc.id and acc.name and acc.arguments):
            return []
        try:
            tool_input = json.loads(acc.arguments)
        except json.JSONDecodeError:
            # Partial arguments, keep accumulating
            return []

        events = tool_use_block_events(acc.id, acc.name, tool_input, self.tool_use_block_index)
        self.tool_use_block_index += 1
        del self.accumulators[index]
        return events

    def final_stop_reason(self) -> str:
        if self.finish_reason == "length":
            return "max_tokens"
        return "end_turn"

    def finish(self) -> List[str]:
        """Events that close the message once the upstream has closed."""
        for index, acc in self.accumulators.items():
            tool_calls_dropped_total.labels(service_type=self.service_type).inc()
            logger.warning(
                f"Dropping incomplete tool call at stream end "
                f"(index={index}, id={acc.id}, name={acc.name}, arguments={acc.arguments[:200]!r})"
            )
        self.accumulators.clear()

        events: List[str] = []
        if not self.tool_use_stop_emitted:
            events.append(stop_reason_event(self.final_stop_reason(), self.output_tokens))
        events.append(sse_event("message_stop", {"type": "message_stop"}))
        return events

    async def transcode(self, lines: AsyncIterator[str]) -> AsyncIterator[str]:
        """Re-frame an upstream line stream, one unified event at a time."""
        for event in self.start():
            yield event
        async for payload in iter_sse_data(lines):
            for event in self.feed(payload):
                yield event
        for event in self.finish():
            yield event


async def transcode_response(transcoder: StreamTranscoder, response: httpx.Response) -> AsyncIterator[bytes]:
    """Pipe an upstream event stream through ``transcoder``.

    The upstream response is closed when the stream ends, fails or is
    closed early by the consumer.
    """
    try:
        async for event in transcoder.transcode(response.aiter_lines()):
            yield event.encode("utf-8")
    finally:
        await response.aclose()


class GenerativeStreamTranscoder(StreamTranscoder):
    """Transcoder for generative (``streamGenerateContent``) streams.

    Function calls arrive whole in a single part, so no accumulation is
    needed; the stop reason is decided once the stream closes.
    """

    service_type = "generative"

    def __init__(self, model: str = "", message_id: Optional[str] = None):
        super().__init__(model=model, message_id=message_id)
        self.tool_used = False

    def _handle_chunk(self, chunk: Dict[str, Any]) -> List[str]:
        events: List[str] = []

        usage = chunk.get("usageMetadata")
        if isinstance(usage, dict):
            self.input_tokens = usage.get("promptTokenCount", self.input_tokens)
            self.output_tokens = usage.get("candidatesTokenCount", self.output_tokens)

        candidates = chunk.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return events
        candidate = candidates[0]

        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        for part in parts if isinstance(parts, list) else []:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                events.extend(text_block_events(text, self.text_block_index))
                self.text_block_index += 1
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                tool_id = f"toolu_{self.tool_use_block_index}"
                events.extend(tool_use_block_events(
                    tool_id,
                    function_call.get("name", ""),
                    function_call.get("args", {}),
                    self.tool_use_block_index,
                ))
                self.tool_use_block_index += 1
                self.tool_used = True

        finish_reason = candidate.get("finishReason")
        if isinstance(finish_reason, str):
            lowered = finish_reason.lower()
            if "length" in lowered or "max_tokens" in lowered:
                self.finish_reason = "length"
            elif "stop" in lowered:
                self.finish_reason = "stop"

        return events

    def final_stop_reason(self) -> str:
        if self.finish_reason == "length":
            return "max_tokens"
        if self.tool_used:
            return "tool_use"
        return "end_turn"
