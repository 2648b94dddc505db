"""Incremental OpenAI stream -> Anthropic SSE translation.

Text deltas are forwarded as they arrive. Once a tool-call marker shows up,
per-chunk text is suppressed; ``finish`` re-parses everything accumulated and
emits the tool_use blocks. A short tail is always held back so a marker (or a
leaked special token) split across chunks never reaches the client.
"""

from __future__ import annotations

import enum
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from .tool_calls import FUNCTION_OPEN, LEAK_TOKENS, TOOL_CALL_OPEN, parse_tool_calls, strip_leak_tokens

logger = logging.getLogger(__name__)

_MARKERS = (TOOL_CALL_OPEN, FUNCTION_OPEN)
HOLDBACK = max(len(m) for m in _MARKERS) - 1
_LEAK_MAX = max(len(t) for t in LEAK_TOKENS)


class Phase(enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    SUPPRESSED = "suppressed"
    FINISHED = "finished"


def format_sse(event: str, data: Dict[str, Any]) -> bytes:
    return f"event: {event}\n".encode() + f"data: {json.dumps(data, ensure_ascii=False)}\n\n".encode()


def _delta_content(chunk: Any) -> str:
    if not isinstance(chunk, dict):
        return ""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def _find_marker(text: str) -> int:
    positions = [p for p in (text.find(m) for m in _MARKERS) if p != -1]
    return min(positions) if positions else -1


def _partial_leak_len(text: str) -> int:
    """Length of the longest suffix of ``text`` that could still grow into a leak token."""
    for k in range(min(len(text), _LEAK_MAX - 1), 0, -1):
        suffix = text[-k:]
        if any(t.startswith(suffix) for t in LEAK_TOKENS):
            return k
    return 0


class StreamTranslator:
    """Per-request translator; feed it chunks in order, then call ``finish`` once.

    Work per ``push`` is bounded by the chunk size: only the held-back tail is
    rescanned, never the whole accumulated text.
    """

    def __init__(self, model: str) -> None:
        self.model = model
        self.message_id = f"msg_local_{uuid.uuid4().hex[:24]}"
        self.phase = Phase.IDLE
        self._raw: List[str] = []
        # Possible start of a leak token, not yet stripped
        self._carry = ""
        # Cleaned text not yet released for emission
        self._pending = ""
        # Released whitespace waiting for a non-space character
        self._ws = ""
        self._started = False
        # Text already sent as text_delta; always a prefix of the final extracted text
        self._emitted: List[str] = []
        self._next_index = 0
        self._text_index: Optional[int] = None

    def _header(self) -> bytes:
        if self.phase is not Phase.IDLE:
            return b""
        self.phase = Phase.STREAMING
        return format_sse(
            "message_start",
            {
                "type": "message_start",
                "message": {
                    "id": self.message_id,
                    "type": "message",
                    "role": "assistant",
                    "content": [],
                    "model": self.model,
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": 0, "output_tokens": 0},
                },
            },
        )

    def _text_delta(self, piece: str) -> bytes:
        if not piece:
            return b""
        self._emitted.append(piece)
        out: List[bytes] = []
        if self._text_index is None:
            self._text_index = self._next_index
            self._next_index += 1
            out.append(
                format_sse(
                    "content_block_start",
                    {
                        "type": "content_block_start",
                        "index": self._text_index,
                        "content_block": {"type": "text", "text": ""},
                    },
                )
            )
        out.append(
            format_sse(
                "content_block_delta",
                {
                    "type": "content_block_delta",
                    "index": self._text_index,
                    "delta": {"type": "text_delta", "text": piece},
                },
            )
        )
        return b"".join(out)

    def _release(self, text: str) -> bytes:
        """Emit released text trimmed the way the extractor trims: no leading
        whitespace, trailing whitespace only once more text follows it."""
        if not self._started:
            text = text.lstrip()
            if not text:
                return b""
            self._started = True
        body = text.rstrip()
        if not body:
            self._ws += text
            return b""
        piece = self._ws + body
        self._ws = text[len(body):]
        return self._text_delta(piece)

    def push(self, chunk: Dict[str, Any]) -> bytes:
        if self.phase is Phase.FINISHED:
            return b""
        out = self._header()
        delta = _delta_content(chunk)
        if not delta:
            return out
        self._raw.append(delta)
        if self.phase is Phase.SUPPRESSED:
            return out

        buf = strip_leak_tokens(self._carry + delta)
        keep = _partial_leak_len(buf)
        self._carry = buf[len(buf) - keep:] if keep else ""
        window = self._pending + buf[: len(buf) - keep]

        pos = _find_marker(window)
        if pos != -1:
            self.phase = Phase.SUPPRESSED
            self._pending = ""
            logger.debug("tool-call marker seen; suppressing text")
            return out + self._release(window[:pos])

        cut = max(0, len(window) - HOLDBACK)
        self._pending = window[cut:]
        return out + self._release(window[:cut])

    def finish(self) -> bytes:
        if self.phase is Phase.FINISHED:
            return b""
        out = [self._header()]
        parsed = parse_tool_calls("".join(self._raw))
        emitted = "".join(self._emitted)
        if parsed.text.startswith(emitted):
            out.append(self._text_delta(parsed.text[len(emitted):]))
        else:
            logger.debug("streamed text diverged from final parse; skipping tail")
        self.phase = Phase.FINISHED

        if self._text_index is not None:
            out.append(format_sse("content_block_stop", {"type": "content_block_stop", "index": self._text_index}))

        for call in parsed.tool_calls:
            index = self._next_index
            self._next_index += 1
            out.append(
                format_sse(
                    "content_block_start",
                    {
                        "type": "content_block_start",
                        "index": index,
                        "content_block": {
                            "type": "tool_use",
                            "id": f"toolu_{uuid.uuid4().hex[:24]}",
                            "name": call.name,
                            "input": {},
                        },
                    },
                )
            )
            out.append(
                format_sse(
                    "content_block_delta",
                    {
                        "type": "content_block_delta",
                        "index": index,
                        "delta": {"type": "input_json_delta", "partial_json": json.dumps(call.input, ensure_ascii=False)},
                    },
                )
            )
            out.append(format_sse("content_block_stop", {"type": "content_block_stop", "index": index}))

        stop_reason = "tool_use" if parsed.tool_calls else "end_turn"
        out.append(
            format_sse(
                "message_delta",
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": stop_reason, "stop_sequence": None},
                    "usage": {"output_tokens": 0},
                },
            )
        )
        out.append(format_sse("message_stop", {"type": "message_stop"}))
        return b"".join(out)
