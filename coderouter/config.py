import json
import os
from typing import Any, Dict, Optional


INTENT_CATEGORIES = ("chit_chat", "simple_code", "hard_question", "try_again")

DEFAULT_ROUTING_RULES: Dict[str, int] = {
    "chit_chat": 1,
    "simple_code": 1,
    "hard_question": 3,
    "try_again": 1,
}

DEFAULT_BACKEND_COMMAND = (
    "python3 -m mlx_lm.server --model {model} --port {port} "
    "--prompt-concurrency 1 --decode-concurrency 1"
)


def default_tier_models(local_model: str) -> Dict[int, Dict[str, Any]]:
    """Default tier -> target mapping.

    Qwen3-Coder-Next is close enough to the mid-size remote model that tier 2
    stays local for those users.
    """
    capable = "qwen3-coder-next" in (local_model or "").lower()
    return {
        1: {"target": "local"},
        2: {"target": "local"} if capable else {"target": "remote", "remote_model": "claude-sonnet-4-5-20250929"},
        3: {"target": "remote", "remote_model": "claude-opus-4-6"},
    }


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _parse_rules(raw: str) -> Dict[str, int]:
    rules = dict(DEFAULT_ROUTING_RULES)
    try:
        data = json.loads(raw)
    except Exception:
        return rules
    if not isinstance(data, dict):
        return rules
    for intent, tier in data.items():
        if intent not in INTENT_CATEGORIES:
            continue
        # Accept {"hard_question": 3} and {"hard_question": {"tier": 3}}
        if isinstance(tier, dict):
            tier = tier.get("tier")
        try:
            tier = int(tier)
        except Exception:
            continue
        if 1 <= tier <= 3:
            rules[intent] = tier
    return rules


def _parse_tiers(raw: str, local_model: str) -> Dict[int, Dict[str, Any]]:
    tiers = default_tier_models(local_model)
    try:
        data = json.loads(raw)
    except Exception:
        return tiers
    if not isinstance(data, dict):
        return tiers
    for key, entry in data.items():
        try:
            tier = int(key)
        except Exception:
            continue
        if tier not in (1, 2, 3) or not isinstance(entry, dict):
            continue
        target = str(entry.get("target") or "local").lower()
        if target == "remote":
            remote_model = entry.get("remote_model") or entry.get("model")
            if not remote_model:
                continue
            tiers[tier] = {"target": "remote", "remote_model": str(remote_model)}
        else:
            tiers[tier] = {"target": "local"}
    return tiers


class Settings:
    def __init__(self) -> None:
        # Local OpenAI-compatible backend (mlx-lm.server or any Chat Completions server)
        self.backend_base_url: str = os.environ.get("BACKEND_BASE_URL", "http://localhost:8080")
        self.local_model: str = os.environ.get("LOCAL_MODEL", "")
        # Remote vendor API used for escalated tiers
        self.remote_base_url: str = os.environ.get("REMOTE_BASE_URL", "https://api.anthropic.com")
        self.remote_api_key: Optional[str] = os.environ.get("REMOTE_API_KEY") or None
        self.anthropic_version: str = os.environ.get("ANTHROPIC_VERSION", "2023-06-01")
        # When on, a well-formed HTTP error from the remote API is relayed unchanged
        # instead of falling back to the local backend.
        self.remote_passthrough_errors: bool = _flag("REMOTE_PASSTHROUGH_ERRORS", "0")
        # ROUTING_RULES: {"chit_chat": 1, "simple_code": 1, "hard_question": 3, "try_again": 1}
        self.routing_rules: Dict[str, int] = _parse_rules(os.environ.get("ROUTING_RULES", "{}"))
        # TIER_MODELS: {"2": {"target": "remote", "remote_model": "claude-sonnet-4-5"}}
        self.tier_models: Dict[int, Dict[str, Any]] = _parse_tiers(
            os.environ.get("TIER_MODELS", "{}"), self.local_model
        )
        try:
            self.classify_max_chars: int = max(1, int(os.environ.get("CLASSIFY_MAX_CHARS", "500")))
        except Exception:
            self.classify_max_chars = 500
        self.auto_restart_backend: bool = _flag("AUTO_RESTART_BACKEND", "1")
        self.backend_command: str = os.environ.get("BACKEND_COMMAND", DEFAULT_BACKEND_COMMAND)
        state_dir = os.path.join(os.path.expanduser("~"), ".coderouter")
        self.backend_log_file: str = os.environ.get("BACKEND_LOG_FILE", os.path.join(state_dir, "server.log"))
        self.backend_pid_file: str = os.environ.get("BACKEND_PID_FILE", os.path.join(state_dir, "server.pid"))
        try:
            self.backend_ready_timeout: float = float(os.environ.get("BACKEND_READY_TIMEOUT", "300"))
        except Exception:
            self.backend_ready_timeout = 300.0
        # Enable HTTP/2 for the remote relay when supported by upstream.
        self.http2: bool = _flag("PROXY_HTTP2", "1")
        self.debug: bool = _flag("DEBUG_PROXY", "")
        self.host: str = os.environ.get("PROXY_HOST", "127.0.0.1")
        try:
            self.port: int = int(os.environ.get("PROXY_PORT", "3456"))
        except Exception:
            self.port = 3456


settings = Settings()
