"""Request/Response schemas for msgrelay.

This module provides Pydantic models for:
- The unified (Messages-style) inbound request and its content blocks
- The unified non-streaming response
- Error structures
"""
import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, PrivateAttr, Tag, ValidationError

from msgrelay.core.errors import InvalidRequestError


class TextBlock(BaseModel):
    """Plain text content."""

    model_config = ConfigDict(extra="allow")

    type: Literal["text"] = "text"
    text: str = Field(..., description="Text content")


class ToolUseBlock(BaseModel):
    """A request from the model to call a tool."""

    model_config = ConfigDict(extra="allow")

    type: Literal["tool_use"] = "tool_use"
    id: str = Field(..., description="Tool call identifier")
    name: str = Field(..., description="Tool name")
    input: Any = Field(default_factory=dict, description="Tool arguments (decoded JSON)")


class ToolResultBlock(BaseModel):
    """The caller's answer to a previous tool call."""

    model_config = ConfigDict(extra="allow")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = Field(..., description="Identifier of the tool call being answered")
    content: Any = Field(default="", description="Result as a string or a list of blocks")


class OtherBlock(BaseModel):
    """Any other block type (image, document, thinking, ...), kept verbatim."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="Block type tag")


KNOWN_BLOCK_TYPES = frozenset({"text", "tool_use", "tool_result"})


def _content_block_tag(value: Any) -> str:
    if isinstance(value, dict):
        tag = value.get("type")
    else:
        tag = getattr(value, "type", None)
    return tag if tag in KNOWN_BLOCK_TYPES else "other"


ContentBlock = Annotated[
    Union[
        Annotated[TextBlock, Tag("text")],
        Annotated[ToolUseBlock, Tag("tool_use")],
        Annotated[ToolResultBlock, Tag("tool_result")],
        Annotated[OtherBlock, Tag("other")],
    ],
    Discriminator(_content_block_tag),
]


class UnifiedMessage(BaseModel):
    """One conversation turn."""

    role: str = Field(..., description="Message role: system, user, assistant or tool")
    content: Union[str, List[ContentBlock]] = Field(..., description="Raw string or ordered content blocks")


class ToolSpec(BaseModel):
    """A tool the model may call."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(..., description="Tool name")
    description: Optional[str] = Field(None, description="Tool description")
    input_schema: Dict[str, Any] = Field(default_factory=dict, description="JSON schema of the tool input")


class UnifiedRequest(BaseModel):
    """Request schema for POST /v1/messages.

    Unknown top-level fields are kept so that the native passthrough can
    forward them untouched.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    model: str = Field(..., min_length=1, description="Requested model name")
    messages: List[UnifiedMessage] = Field(..., min_length=1, description="Conversation turns")
    system: Optional[Union[str, List[TextBlock]]] = Field(None, description="System prompt as a string or text blocks")
    tools: Optional[List[ToolSpec]] = Field(None, description="Tools the model may call")
    stream: bool = Field(False, description="Stream the response as server-sent events")
    temperature: Optional[float] = Field(None, description="Sampling temperature")
    max_tokens: Optional[int] = Field(None, gt=0, description="Maximum tokens to generate")

    _raw_body: bytes = PrivateAttr(default=b"")

    @classmethod
    def parse_body(cls, raw_body: bytes) -> "UnifiedRequest":
        """Parse and validate an inbound request body.

        Raises:
            InvalidRequestError: If the body is not JSON or fails validation
        """
        try:
            data = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidRequestError(f"Request body is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidRequestError("Request body must be a JSON object")

        try:
            request = cls.model_validate(data)
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise InvalidRequestError(f"Invalid request: {errors}") from e
        request._raw_body = bytes(raw_body)
        return request

    @property
    def raw_body(self) -> bytes:
        """The inbound body exactly as received."""
        if not self._raw_body:
            return self.model_dump_json(exclude_none=True).encode("utf-8")
        return self._raw_body

    def system_text(self) -> str:
        """Merge the system prompt into a single string."""
        if self.system is None:
            return ""
        if isinstance(self.system, str):
            return self.system
        return "\n".join(block.text for block in self.system)


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class UnifiedMessageResponse(BaseModel):
    """Non-streaming response in the unified format."""

    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: str = ""
    content: List[Dict[str, Any]] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)


class ErrorDetail(BaseModel):
    """Error detail structure."""

    type: str = Field(..., description="Error category, e.g. authentication_error")
    code: str = Field(..., description="Normalized error code")
    message: str = Field(..., description="Human-readable message")


class ErrorResponse(BaseModel):
    """Structured error body returned to the caller."""

    type: Literal["error"] = "error"
    error: ErrorDetail
