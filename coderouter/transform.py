from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from .prompt_trimmer import (
    get_model_tier,
    reduce_prompt,
    tier_char_budget,
    tier_max_tokens,
    trim_messages,
)
from .schemas.anthropic import MessageResponse, TextBlock, ToolUseBlock
from .schemas.openai import ChatCompletionRequest
from .tool_calls import TOOL_CALL_CLOSE, parse_tool_calls, tool_use_to_xml
from .tool_definitions import inject_tool_definitions


DEFAULT_MAX_TOKENS = 4096
TOOL_RESULT_SHARE = 0.4


def _to_text(content) -> str:
    """Collapse Anthropic content (string or list of text blocks) into a plain string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for block in content:
        if isinstance(block, dict):
            if block.get("type", "text") == "text":
                parts.append(block.get("text") or "")
        else:
            # pydantic model
            if getattr(block, "type", None) == "text":
                parts.append(getattr(block, "text", "") or "")
    return "\n".join(parts)


def truncate_tool_result(text: str, max_chars: int) -> str:
    """Cut a tool result down to ``max_chars``, telling the model how much it lost."""
    if len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return (
        f"(truncated: showing {max_chars} of {len(text)} chars)\n"
        f"{text[:max_chars]}\n"
        f"...({omitted} chars omitted)"
    )


def extract_system_prompt(system: Any) -> str:
    if not system:
        return ""
    if isinstance(system, str):
        return system
    parts: List[str] = []
    for block in system:
        if isinstance(block, dict):
            parts.append(block.get("text") or "")
        else:
            parts.append(getattr(block, "text", "") or "")
    return "\n\n".join(parts)


def flatten_content(content: Any, tool_result_budget: Optional[int] = None) -> str:
    """Render one message's content blocks as the plain text the backend sees.

    tool_use blocks become the same XML markup the model is taught to emit, so
    the history it reads back matches what it would write.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        btype = block.get("type")
        if btype == "text":
            parts.append(block.get("text") or "")
        elif btype == "tool_use":
            parts.append(tool_use_to_xml(block.get("name") or "", block.get("input") or {}))
        elif btype == "tool_result":
            result_text = _to_text(block.get("content"))
            if tool_result_budget is not None:
                result_text = truncate_tool_result(result_text, tool_result_budget)
            parts.append(f"Tool result for {block.get('tool_use_id') or ''}:\n{result_text}")
        # images and other block types are not forwarded
    return "\n\n".join(parts)


def anthropic_to_openai_payload(
    body: Dict[str, Any],
    backend_model: str,
    tier: Optional[str] = None,
) -> Dict[str, Any]:
    """Map an Anthropic v1/messages body to an OpenAI Chat Completions payload for the local backend."""
    tier = tier or get_model_tier(backend_model)

    system_prompt = reduce_prompt(extract_system_prompt(body.get("system")), tier)
    declared_tools = body.get("tools") or []
    if declared_tools:
        # Injected after reduction so tool docs are never trimmed away
        system_prompt = inject_tool_definitions(system_prompt, declared_tools)

    remaining = max(0, tier_char_budget(tier) - len(system_prompt))
    tool_result_budget = int(remaining * TOOL_RESULT_SHARE)

    oai_messages: List[Dict[str, str]] = []
    if system_prompt:
        oai_messages.append({"role": "system", "content": system_prompt})

    for m in trim_messages(body.get("messages") or []):
        role = m.get("role")
        if role not in ("user", "assistant"):
            role = "user"
        content = flatten_content(m.get("content"), tool_result_budget)
        if content:
            oai_messages.append({"role": role, "content": content})

    requested = body.get("max_tokens") or DEFAULT_MAX_TOKENS
    payload: Dict[str, Any] = {
        "model": backend_model,
        "messages": oai_messages,
        "max_tokens": min(requested, tier_max_tokens(tier)),
        "temperature": 0.7,
        "top_p": 0.95,
        "stream": body.get("stream"),
        "stop": [TOOL_CALL_CLOSE],
    }
    return ChatCompletionRequest.model_validate(payload).model_dump(exclude_none=True)


def payload_char_length(payload: Dict[str, Any]) -> int:
    return sum(len(m.get("content") or "") for m in payload.get("messages") or [])


def completion_text(oai: Dict[str, Any]) -> str:
    """Text of the first choice of a non-streaming Chat Completions response."""
    try:
        choice = (oai.get("choices") or [])[0]
        return (choice.get("message") or {}).get("content") or ""
    except (IndexError, AttributeError, TypeError):
        return ""


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


def openai_to_anthropic_response(raw_text: str, model: str) -> Dict[str, Any]:
    """Build an Anthropic message from the backend's raw completion text."""
    parsed = parse_tool_calls(raw_text)
    content: List[Any] = []
    if parsed.text:
        content.append(TextBlock(text=parsed.text))
    for call in parsed.tool_calls:
        content.append(ToolUseBlock(id=_new_id("toolu"), name=call.name, input=call.input))
    if not content:
        # Anthropic clients reject an empty content array
        content.append(TextBlock(text=""))

    resp = MessageResponse(
        id=_new_id("msg_local"),
        model=model,
        content=content,
        stop_reason="tool_use" if parsed.tool_calls else "end_turn",
    )
    return resp.model_dump()
