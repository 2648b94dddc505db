"""Intent classification and tier routing.

Every request is resolved to a tier (1..3) and each tier to a target: the local
backend or a specific remote model. ``try_again`` escalates one tier above the
previous request of the same session instead of using a fixed mapping.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from .config import INTENT_CATEGORIES

logger = logging.getLogger(__name__)

IntentCategory = Literal["chit_chat", "simple_code", "hard_question", "try_again"]

MAX_TIER = 3
DEFAULT_INTENT: IntentCategory = "simple_code"

CLASSIFICATION_PROMPT = """Classify this user message into exactly one category.
Reply with ONLY the category name, nothing else.

Categories:
- chit_chat: casual conversation, explanations, Q&A (not writing/editing code)
- simple_code: single-file edits, small features, renames, fixing imports/typos
- hard_question: multi-file refactors, architecture, planning, complex debugging, system design
- try_again: user says the previous answer was wrong, incomplete, or asks to redo

User message:
"""


@dataclass(frozen=True)
class TierTarget:
    target: Literal["local", "remote"]
    remote_model: Optional[str] = None


@dataclass(frozen=True)
class RoutingDecision:
    tier: int
    intent: str
    target: Literal["local", "remote"]
    remote_model: Optional[str] = None
    reason: str = "intent"


def extract_latest_user_text(messages: List[Dict[str, Any]], limit: int = 500) -> str:
    """Latest user-authored text; tool-result-only user turns are skipped."""
    for msg in reversed(messages or []):
        if msg.get("role") != "user":
            continue
        content = msg.get("content")
        if isinstance(content, str):
            return content[:limit]
        parts = [
            b.get("text") or ""
            for b in content or []
            if isinstance(b, dict) and b.get("type") == "text"
        ]
        if parts:
            return "\n".join(parts)[:limit]
    return ""


def parse_category(raw: str) -> IntentCategory:
    """Map a free-form classifier reply to a category, ``simple_code`` when unsure."""
    lower = (raw or "").strip().lower()
    for cat in INTENT_CATEGORIES:
        if lower == cat:
            return cat  # type: ignore[return-value]
    if "chit" in lower:
        return "chit_chat"
    if "simple" in lower:
        return "simple_code"
    if "hard" in lower or "complex" in lower:
        return "hard_question"
    if "try" in lower:
        return "try_again"
    return DEFAULT_INTENT


async def classify_intent(text: str, backend: Any, model: str) -> IntentCategory:
    """Ask the local model for a category with deterministic sampling.

    ``backend`` is anything with an async ``chat_completion(payload) -> dict``.
    """
    payload = {
        "model": model,
        "messages": [{"role": "user", "content": CLASSIFICATION_PROMPT + text}],
        "max_tokens": 20,
        "temperature": 0.0,
        "top_p": 1.0,
        "stream": False,
    }
    try:
        resp = await backend.chat_completion(payload)
        raw = ((resp.get("choices") or [{}])[0].get("message") or {}).get("content") or ""
    except Exception as e:
        logger.warning("intent classification failed, defaulting to %s: %s", DEFAULT_INTENT, e)
        return DEFAULT_INTENT
    return parse_category(raw)


def session_id_for(body: Dict[str, Any]) -> str:
    metadata = body.get("metadata") if isinstance(body, dict) else None
    if isinstance(metadata, dict) and metadata.get("user_id"):
        return str(metadata["user_id"])
    return "default"


class EscalationState:
    """Last resolved tier per session, read and updated under one lock."""

    def __init__(self, max_sessions: int = 1024) -> None:
        self._tiers: "OrderedDict[str, int]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._max_sessions = max_sessions

    async def resolve(self, session_id: str, tier: Optional[int]) -> int:
        """Record ``tier`` for the session; ``None`` means escalate one above the last."""
        async with self._lock:
            if tier is None:
                tier = min(self._tiers.get(session_id, 1) + 1, MAX_TIER)
            self._tiers[session_id] = tier
            self._tiers.move_to_end(session_id)
            while len(self._tiers) > self._max_sessions:
                self._tiers.popitem(last=False)
            return tier

    def last_tier(self, session_id: str) -> int:
        return self._tiers.get(session_id, 1)


class RoutingEngine:
    def __init__(
        self,
        rules: Dict[str, int],
        tiers: Dict[int, Dict[str, Any]],
        classifier: Callable[[str], Awaitable[str]],
        state: Optional[EscalationState] = None,
        classify_max_chars: int = 500,
    ) -> None:
        self.rules = dict(rules)
        self.tiers = dict(tiers)
        self.classifier = classifier
        self.state = state or EscalationState()
        self.classify_max_chars = classify_max_chars

    def tier_target(self, tier: int) -> TierTarget:
        entry = self.tiers.get(tier) or {}
        if entry.get("target") == "remote" and entry.get("remote_model"):
            return TierTarget("remote", entry["remote_model"])
        return TierTarget("local")

    def lowest_remote_tier(self) -> Optional[int]:
        for tier in sorted(self.tiers):
            if self.tier_target(tier).target == "remote":
                return tier
        return None

    def _decision(self, tier: int, intent: str, reason: str) -> RoutingDecision:
        target = self.tier_target(tier)
        return RoutingDecision(tier, intent, target.target, target.remote_model, reason)

    async def decide(self, body: Dict[str, Any], session_id: str = "default") -> RoutingDecision:
        if all(t == 1 for t in self.rules.values()):
            tier = await self.state.resolve(session_id, 1)
            return self._decision(tier, DEFAULT_INTENT, "all-local")

        text = extract_latest_user_text(body.get("messages") or [], self.classify_max_chars)
        try:
            intent = parse_category(await self.classifier(text))
        except Exception as e:
            logger.warning("classifier raised, defaulting to %s: %s", DEFAULT_INTENT, e)
            intent = DEFAULT_INTENT

        if intent == "try_again":
            tier = await self.state.resolve(session_id, None)
            reason = "escalated"
        else:
            tier = await self.state.resolve(session_id, self.rules.get(intent, 1))
            reason = "intent"
        decision = self._decision(tier, intent, reason)
        logger.info("route: intent=%s tier=%d target=%s", intent, tier, decision.target)
        return decision

    def _overflow(self, decision: RoutingDecision, reason: str) -> RoutingDecision:
        tier = self.lowest_remote_tier()
        if tier is None:
            return decision
        target = self.tier_target(tier)
        return replace(decision, tier=tier, target="remote", remote_model=target.remote_model, reason=reason)

    def divert_if_busy(self, decision: RoutingDecision, in_flight: int) -> RoutingDecision:
        """Overflow a local request to remote while the single local slot is taken."""
        if decision.target != "local" or in_flight <= 0:
            return decision
        diverted = self._overflow(decision, "busy")
        if diverted is not decision:
            logger.info("local backend busy (%d in flight); overflow to tier %d", in_flight, diverted.tier)
        return diverted

    def divert_if_oversized(self, decision: RoutingDecision, payload_chars: int, budget: int) -> RoutingDecision:
        if decision.target != "local" or payload_chars <= budget * 1.2:
            return decision
        diverted = self._overflow(decision, "oversized")
        if diverted is not decision:
            logger.info("prompt of %d chars exceeds budget %d; escalating to tier %d", payload_chars, budget, diverted.tier)
        return diverted
