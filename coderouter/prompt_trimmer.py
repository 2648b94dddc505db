"""Shrink the client's system prompt and messages for smaller local models.

The client ships a long system prompt written for its own infrastructure
(permission hooks, memory files, MCP servers). Sections the local model cannot
act on are stripped; the coding guidance and environment details stay.

Always stripped (small and medium):
  ``# System``, ``# Using your tools``, ``# auto memory``,
  ``# MCP Server Instructions``, the identity line, model/cutoff lines.
Small only:
  ``# Executing actions with care`` and the git commit/PR workflow sections.
Large models get the prompt unchanged.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional

ModelSizeTier = Literal["small", "medium", "large"]

# Character budgets for the whole prompt (system + messages); no tokenizer needed
CONTEXT_BUDGETS: Dict[str, int] = {
    "small": 32_000,
    "medium": 96_000,
    "large": 240_000,
}

MAX_TOKENS_CAP: Dict[str, int] = {
    "small": 4096,
    "medium": 8192,
    "large": 16384,
}

_SIZE_RE = re.compile(r"(\d+)[Bb](?:-|$)")


def parse_model_size(model_id: Optional[str]) -> Optional[int]:
    """Parameter count in billions, e.g. ``Qwen2.5-Coder-7B-Instruct-4bit`` -> 7."""
    m = _SIZE_RE.search(model_id or "")
    return int(m.group(1)) if m else None


def get_model_tier(model_id: Optional[str]) -> ModelSizeTier:
    size = parse_model_size(model_id)
    if size is None:
        return "large"
    if size <= 8:
        return "small"
    if size <= 32:
        return "medium"
    return "large"


def tier_char_budget(tier: str) -> int:
    return CONTEXT_BUDGETS.get(tier, CONTEXT_BUDGETS["large"])


def tier_max_tokens(tier: str) -> int:
    return MAX_TOKENS_CAP.get(tier, MAX_TOKENS_CAP["large"])


def _strip_section(prompt: str, heading: str) -> str:
    """Remove a markdown section up to the next heading of the same or higher level."""
    level = len(heading) - len(heading.lstrip("#")) or 1
    pattern = re.compile(r"\n?" + re.escape(heading) + r"\n.*?(?=\n#{1," + str(level) + r"} [^#]|\Z)", re.DOTALL)
    return pattern.sub("", prompt, count=1)


def _strip_lines(prompt: str, pattern: str) -> str:
    rx = re.compile(pattern)
    return "\n".join(line for line in prompt.split("\n") if not rx.search(line))


def _extract_user_instructions(prompt: str) -> str:
    m = re.search(
        r"Contents of [^\n]+:\s*\n(.*?)(?=\n(?:gitStatus:|IMPORTANT:|<system-reminder>)|\Z)",
        prompt,
        re.DOTALL,
    )
    return m.group(1).strip() if m else ""


def reduce_prompt(system_prompt: str, tier: str) -> str:
    if tier == "large" or not system_prompt:
        return system_prompt or ""

    prompt = system_prompt
    prompt = prompt.replace("You are Claude Code, Anthropic's official CLI for Claude.\n", "", 1)
    prompt = re.sub(
        r"IMPORTANT: Assist with authorized security testing.*?(?=IMPORTANT: You must NEVER|# System|\n\n)",
        "",
        prompt,
        count=1,
        flags=re.DOTALL,
    )
    prompt = re.sub(r"IMPORTANT: You must NEVER generate or guess URLs[^\n]*\n[^\n]*\n", "", prompt, count=1)

    prompt = _strip_section(prompt, "# System")
    prompt = _strip_section(prompt, "# Using your tools")
    # Keep MEMORY.md / CLAUDE.md content before dropping the memory section
    user_instructions = _extract_user_instructions(prompt)
    prompt = _strip_section(prompt, "# auto memory")
    prompt = _strip_section(prompt, "# MCP Server Instructions")

    for pattern in (
        r"You are powered by the model",
        r"Assistant knowledge cutoff",
        r"The most recent Claude model family",
        r"The current date is",
    ):
        prompt = _strip_lines(prompt, pattern)

    if tier == "small":
        prompt = _strip_section(prompt, "# Executing actions with care")
        prompt = re.sub(
            r"# Committing changes with git.*?(?=# Creating pull requests|# Other common|# Tone|\Z)",
            "",
            prompt,
            flags=re.DOTALL,
        )
        prompt = re.sub(r"# Creating pull requests.*?(?=# Other common|# Tone|\Z)", "", prompt, flags=re.DOTALL)
        prompt = re.sub(r"# Other common operations.*?(?=# Tone|\Z)", "", prompt, flags=re.DOTALL)

    idx = prompt.find("# Doing tasks")
    if idx != -1:
        nl = prompt.find("\n", idx)
        if nl != -1:
            rule = "- For general knowledge questions, answer directly without using tools.\n"
            prompt = prompt[: nl + 1] + rule + prompt[nl + 1 :]

    if user_instructions:
        prompt += f"\n\n## Project Instructions\n{user_instructions}"

    return re.sub(r"\n{3,}", "\n\n", prompt).strip()


# Message trimming

_REMINDER_RE = re.compile(r"^\s*<system-reminder>.*</system-reminder>\s*$", re.DOTALL)


def _unwrap_reminder(text: str) -> str:
    return re.sub(r"</?system-reminder>", "", text).strip()


def _is_droppable(text: str) -> bool:
    inner = _unwrap_reminder(text)
    if re.match(r"^SessionStart[:.]", inner):
        return True
    if "You have superpowers" in inner or ("EXTREMELY_IMPORTANT" in inner and "superpowers" in inner):
        return True
    if inner.startswith("The following skills are available"):
        return True
    if inner.startswith("The task tools haven't been used recently"):
        return True
    if re.match(r"^Whenever you read a file.*malware", inner, re.DOTALL):
        return True
    # CLAUDE.md / MEMORY.md content is already part of the system prompt
    if "# claudeMd" in inner or ("Contents of " in inner and "MEMORY.md" in inner):
        return True
    return False


def trim_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop client infrastructure reminders from user messages.

    Applied to every tier: even large models gain nothing from skill listings.
    """
    out: List[Dict[str, Any]] = []
    for msg in messages or []:
        if msg.get("role") != "user":
            out.append(msg)
            continue
        content = msg.get("content")
        if isinstance(content, str):
            if _REMINDER_RE.match(content) and _is_droppable(content):
                out.append({**msg, "content": ""})
            else:
                out.append(msg)
            continue
        kept: List[Dict[str, Any]] = []
        for block in content or []:
            if not isinstance(block, dict) or block.get("type") != "text":
                kept.append(block)
                continue
            text = block.get("text") or ""
            if _REMINDER_RE.match(text):
                if _is_droppable(text):
                    continue
                inner = _unwrap_reminder(text)
                if inner:
                    kept.append({"type": "text", "text": inner})
                continue
            kept.append(block)
        out.append({**msg, "content": kept if kept else ""})
    return out
