from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List


TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"
FUNCTION_OPEN = "<function="
FUNCTION_CLOSE = "</function>"

# Special tokens that small local models leak into their text output
LEAK_TOKENS = ("<|im_end|>", "<|im_start|>", "<|endoftext|>", "<|eot_id|>")

# Local tool names (as taught in the injected prompt) -> client-facing names
TOOL_NAME_MAP: Dict[str, str] = {
    "read_file": "Read",
    "write_file": "Write",
    "edit_file": "Edit",
    "bash": "Bash",
    "glob": "Glob",
    "grep": "Grep",
    "web_search": "WebSearch",
    "web_fetch": "WebFetch",
}

# Parameter aliases small models tend to produce, keyed by client-facing tool name
PARAM_NAME_MAP: Dict[str, Dict[str, str]] = {
    "Read": {"path": "file_path", "file": "file_path", "filename": "file_path"},
    "Write": {"path": "file_path", "file": "file_path", "filename": "file_path", "text": "content"},
    "Edit": {"path": "file_path", "file": "file_path", "old": "old_string", "new": "new_string"},
    "Bash": {"cmd": "command"},
    "Glob": {"glob": "pattern", "dir": "path", "directory": "path"},
    "Grep": {"regex": "pattern", "query": "pattern", "dir": "path", "directory": "path"},
    "WebFetch": {"link": "url"},
}

_SENTINEL = "\x00TOOL_CALL_PRESENT\x00"
_WRAPPED_FUNCTION_RE = re.compile(r"<tool_call>\s*(<function=)")
_UNCLOSED_FUNCTION_RE = re.compile(r"</function>(?!\s*</tool_call>)")
_BLOCK_RE = re.compile(r"<tool_call>\s*<function=([^>]+)>(.*?)</function>\s*</tool_call>", re.DOTALL)
_PARAM_RE = re.compile(r"<parameter=([^>]+)>(.*?)</parameter>", re.DOTALL)


@dataclass
class ParsedToolCall:
    name: str
    input: Dict[str, str] = field(default_factory=dict)


@dataclass
class ParseResult:
    text: str
    tool_calls: List[ParsedToolCall] = field(default_factory=list)


def strip_leak_tokens(text: str) -> str:
    if not text:
        return ""
    for token in LEAK_TOKENS:
        if token in text:
            text = text.replace(token, "")
    return text


def map_tool_call(name: str, args: Dict[str, str]) -> ParsedToolCall:
    """Rename a locally-named call into the client's tool vocabulary."""
    mapped_name = TOOL_NAME_MAP.get(name, name)
    aliases = PARAM_NAME_MAP.get(mapped_name)
    if not aliases:
        return ParsedToolCall(name=mapped_name, input=dict(args))
    mapped: Dict[str, str] = {}
    for key, value in args.items():
        target = aliases.get(key, key)
        # An explicit canonical key wins over an alias
        if target in mapped and target != key:
            continue
        mapped[target] = value
    return ParsedToolCall(name=mapped_name, input=mapped)


def normalize_tool_markup(text: str) -> str:
    """Repair the shapes small models actually emit into well-formed blocks.

    - bare ``<function=...>`` gets a ``<tool_call>`` wrapper
    - ``</function>`` without ``</tool_call>`` gets the close synthesized
      (the ``</tool_call>`` stop sequence removes it from every completion)
    - a block with no ``</function>`` anywhere is closed at the end of text
    """
    normalized = _WRAPPED_FUNCTION_RE.sub(_SENTINEL + r"\1", text)
    normalized = normalized.replace(FUNCTION_OPEN, TOOL_CALL_OPEN + "\n" + FUNCTION_OPEN)
    normalized = normalized.replace(_SENTINEL, "")
    normalized = _UNCLOSED_FUNCTION_RE.sub(FUNCTION_CLOSE + "\n" + TOOL_CALL_CLOSE, normalized)
    if FUNCTION_OPEN in normalized and FUNCTION_CLOSE not in normalized:
        normalized += "\n" + FUNCTION_CLOSE + "\n" + TOOL_CALL_CLOSE
    return normalized


def parse_tool_calls(output: str) -> ParseResult:
    """Split raw model output into plain text and tool calls.

    Never raises: markup that does not yield a single call is returned as text.
    """
    try:
        cleaned = strip_leak_tokens(output or "")
        normalized = normalize_tool_markup(cleaned)

        first = normalized.find(TOOL_CALL_OPEN)
        if first == -1:
            return ParseResult(text=cleaned.strip())

        calls: List[ParsedToolCall] = []
        for match in _BLOCK_RE.finditer(normalized):
            name = match.group(1).strip()
            args: Dict[str, str] = {}
            for pm in _PARAM_RE.finditer(match.group(2)):
                args[pm.group(1).strip()] = pm.group(2).strip()
            if name:
                calls.append(map_tool_call(name, args))

        if not calls:
            return ParseResult(text=cleaned.strip())
        return ParseResult(text=normalized[:first].strip(), tool_calls=calls)
    except Exception:
        return ParseResult(text=(output or "").strip())


def _param_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except Exception:
        return str(value)


def tool_use_to_xml(name: str, args: Dict[str, Any]) -> str:
    """Format a tool_use block the way the model is taught to emit it.

    The extractor strips parameter values, so values with leading or trailing
    whitespace (an indented ``old_string``, say) come back trimmed.
    """
    params = "\n".join(
        f"<parameter={key}>{_param_value(value)}</parameter>" for key, value in (args or {}).items()
    )
    return f"{TOOL_CALL_OPEN}\n{FUNCTION_OPEN}{name}>\n{params}\n{FUNCTION_CLOSE}\n{TOOL_CALL_CLOSE}"
