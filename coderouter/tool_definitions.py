from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .tool_calls import TOOL_NAME_MAP


# Local tool catalogue taught to the backend model. Names are the local ones;
# tool_calls.TOOL_NAME_MAP turns them back into client names.
TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read file contents with line numbers. Reads up to 2000 lines by default.",
        "parameters": {
            "file_path": {"type": "string", "description": "Absolute path to the file", "required": True},
            "offset": {"type": "number", "description": "Line number to start from (1-based)"},
            "limit": {"type": "number", "description": "Max lines to read"},
        },
    },
    {
        "name": "write_file",
        "description": "Create or overwrite a file",
        "parameters": {
            "file_path": {"type": "string", "description": "Absolute path to the file", "required": True},
            "content": {"type": "string", "description": "Content to write", "required": True},
        },
    },
    {
        "name": "edit_file",
        "description": "Replace a string in a file. old_string must be unique in the file unless replace_all is true.",
        "parameters": {
            "file_path": {"type": "string", "description": "Absolute path to the file", "required": True},
            "old_string": {"type": "string", "description": "Text to find", "required": True},
            "new_string": {"type": "string", "description": "Replacement text", "required": True},
            "replace_all": {"type": "boolean", "description": "Replace all occurrences (default false)"},
        },
    },
    {
        "name": "bash",
        "description": "Execute a shell command and return output. Output over 30000 characters is truncated.",
        "parameters": {
            "command": {"type": "string", "description": "The command to execute", "required": True},
            "description": {"type": "string", "description": "Short description of what this command does"},
        },
    },
    {
        "name": "glob",
        "description": "Find files matching a glob pattern",
        "parameters": {
            "pattern": {"type": "string", "description": "Glob pattern (e.g. **/*.py)", "required": True},
            "path": {"type": "string", "description": "Directory to search in"},
        },
    },
    {
        "name": "grep",
        "description": "Search file contents with a regex pattern.",
        "parameters": {
            "pattern": {"type": "string", "description": "Regex pattern to search for", "required": True},
            "path": {"type": "string", "description": "File or directory to search in"},
            "output_mode": {
                "type": "string",
                "description": "content (matching lines), files_with_matches (paths only), count (match counts)",
                "enum": ["content", "files_with_matches", "count"],
            },
            "glob": {"type": "string", "description": "Glob pattern to filter files (e.g. \"*.py\")"},
            "head_limit": {"type": "number", "description": "Limit output to first N lines/entries"},
        },
    },
    {
        "name": "web_search",
        "description": "Search the web and return results. Use for current events or information beyond your knowledge.",
        "parameters": {
            "query": {"type": "string", "description": "The search query", "required": True},
        },
    },
    {
        "name": "web_fetch",
        "description": "Fetch content from a URL and process it. Returns markdown-converted content.",
        "parameters": {
            "url": {"type": "string", "description": "The URL to fetch", "required": True},
            "prompt": {"type": "string", "description": "What information to extract from the page", "required": True},
        },
    },
]


def _format_param(name: str, param: Dict[str, Any]) -> str:
    attrs = f'name="{name}" type="{param.get("type", "string")}" required="{str(bool(param.get("required"))).lower()}"'
    if param.get("enum"):
        attrs += f' enum="{",".join(str(v) for v in param["enum"])}"'
    return f"  <parameter {attrs}>{param.get('description', '')}</parameter>"


def _format_tool(tool: Dict[str, Any]) -> str:
    params = "\n".join(_format_param(n, p) for n, p in (tool.get("parameters") or {}).items())
    return f'<tool name="{tool["name"]}">\n  <description>{tool.get("description", "")}</description>\n{params}\n</tool>'


def _definition_from_schema(tool: Dict[str, Any]) -> Dict[str, Any]:
    """Describe a client-declared tool we have no local definition for."""
    schema = tool.get("input_schema") or {}
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    params: Dict[str, Any] = {}
    for pname, prop in properties.items():
        prop = prop if isinstance(prop, dict) else {}
        params[pname] = {
            "type": str(prop.get("type") or "string"),
            "description": " ".join(str(prop.get("description") or "").split()),
            "required": pname in required,
        }
        if isinstance(prop.get("enum"), list):
            params[pname]["enum"] = prop["enum"]
    description = " ".join(str(tool.get("description") or "").split())
    # Client tool descriptions can be pages long; the first sentence is enough for a small model
    if len(description) > 300:
        description = description[:300].rsplit(" ", 1)[0] + "..."
    return {"name": tool.get("name") or "", "description": description, "parameters": params}


def select_tool_definitions(declared_tools: Optional[Iterable[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    declared = [t for t in (declared_tools or []) if isinstance(t, dict) and t.get("name")]
    declared_names = {t["name"] for t in declared}
    selected = [d for d in TOOL_DEFINITIONS if TOOL_NAME_MAP.get(d["name"], d["name"]) in declared_names]
    covered = {TOOL_NAME_MAP.get(d["name"], d["name"]) for d in selected}
    for tool in declared:
        if tool["name"] not in covered:
            selected.append(_definition_from_schema(tool))
    return selected


def build_tool_injection(declared_tools: Optional[Iterable[Dict[str, Any]]]) -> str:
    """Tool-call format instructions plus the XML tool catalogue."""
    tools_xml = "\n\n".join(_format_tool(t) for t in select_tool_definitions(declared_tools))
    return "\n".join(
        [
            "",
            "## Tools",
            "",
            "You have access to the following tools. To use a tool, output a tool_call block in this exact format:",
            "",
            "<tool_call>",
            "<function=tool_name>",
            "<parameter=param_name>value</parameter>",
            "</function>",
            "</tool_call>",
            "",
            "CRITICAL RULES:",
            "- Only use tools when the task involves files, the filesystem, or running commands.",
            "- For general knowledge questions, answer directly WITHOUT using tools.",
            "- NEVER guess or hallucinate file contents, use tools to read them.",
            "- Always include the opening <tool_call> tag. Never omit it.",
            "- You may include text before a tool call to explain what you're doing.",
            "- After a tool call, STOP and wait for the result before continuing.",
            "",
            "<tools>",
            tools_xml,
            "</tools>",
        ]
    )


def inject_tool_definitions(system_prompt: str, declared_tools: Optional[Iterable[Dict[str, Any]]]) -> str:
    return system_prompt + "\n" + build_tool_injection(declared_tools)
