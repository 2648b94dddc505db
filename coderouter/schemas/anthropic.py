from typing import List, Literal, Optional, Union, Dict, Any
from pydantic import BaseModel, Field


# Anthropic v1/messages schema (text + tool blocks)


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class MessageInput(BaseModel):
    role: Literal["user", "assistant"]
    # Either array-of-blocks (text / tool_use / tool_result) or a plain string
    content: Union[str, List[Dict[str, Any]]]


class ToolDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class MessagesRequest(BaseModel):
    model: str
    max_tokens: Optional[int] = Field(default=None, ge=1)
    messages: List[MessageInput]
    system: Optional[Union[str, List[TextContent]]] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    stream: Optional[bool] = False
    metadata: Optional[Dict[str, Any]] = None
    tools: Optional[List[ToolDefinition]] = None


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: str
    content: List[Union[TextBlock, ToolUseBlock]]
    stop_reason: Optional[Literal["end_turn", "max_tokens", "stop_sequence", "tool_use"]] = None
    stop_sequence: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)


class ErrorBody(BaseModel):
    type: str
    message: str


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    error: ErrorBody
