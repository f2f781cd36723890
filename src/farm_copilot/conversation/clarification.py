"""
Scripted clarification for broad, under-specified questions.

Two states, encoded in ConversationContext.last_intent:

  IDLE                 last_intent is a normal intent (or None)
  AWAITING_CHOICE(key) last_intent == "clarify:<key>"

IDLE -> AWAITING_CHOICE when detect_ambiguity() matches the raw question.
AWAITING_CHOICE -> IDLE when the next reply is a valid choice (1/2/3) and the
entry resolves it; the resolved question is then routed as if typed. Any
other reply drops the pending clarification and is handled as a fresh
question (no second prompt).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Tuple

from farm_copilot.conversation.intent import Intent
from farm_copilot.conversation.normalize import has_any, normalize, pick_choice

logger = logging.getLogger(__name__)

CLARIFY_PREFIX = "clarify:"


@dataclass(frozen=True)
class ClarificationOption:
    label: str
    topic: str
    question: str
    mode: str = ""


@dataclass(frozen=True)
class Resolution:
    topic: str
    question: str
    intent: Intent


@dataclass(frozen=True)
class ClarificationEntry:
    key: str
    options: Tuple[ClarificationOption, ...]

    @property
    def prompt(self) -> str:
        lines = [f"{i}) {opt.label}" for i, opt in enumerate(self.options, start=1)]
        choices = ", ".join(str(i) for i in range(1, len(self.options))) + f", or {len(self.options)}"
        return (
            "Quick question so I pull the right data:\n"
            + "\n".join(lines)
            + f"\n\nReply with {choices}."
        )

    def resolve(self, choice: Optional[int]) -> Optional[Resolution]:
        if choice is None or choice < 1 or choice > len(self.options):
            return None
        opt = self.options[choice - 1]
        return Resolution(topic=opt.topic, question=opt.question, intent=Intent(topic=opt.topic, mode=opt.mode))


CLARIFICATIONS: Mapping[str, ClarificationEntry] = MappingProxyType(
    {
        "grain": ClarificationEntry(
            key="grain",
            options=(
                ClarificationOption("Grain bags", "grain", "grain bags", "bags"),
                ClarificationOption("Grain bins", "grain", "grain bins", "bins"),
                ClarificationOption("Grain summary", "grain", "grain summary", "summary"),
            ),
        ),
        "grainbags": ClarificationEntry(
            key="grainbags",
            options=(
                ClarificationOption("On-hand inventory (by SKU)", "grain", "grain bags", "bags"),
                ClarificationOption(
                    "Where bags are placed (putDown / pickUp by field)",
                    "grainBagEvents",
                    "grain bags putdowns",
                    "putdowns",
                ),
                ClarificationOption(
                    "Recent bag activity (events)", "grainBagEvents", "grain bags events last 10", "events"
                ),
            ),
        ),
        "bins": ClarificationEntry(
            key="bins",
            options=(
                ClarificationOption("Bin sites (locations)", "binSites", "binsites summary"),
                ClarificationOption("Bin movements (in/out/net)", "binMovements", "bins summary"),
                ClarificationOption("Both: sites + movements summary", "grain", "grain bins", "bins"),
            ),
        ),
        "boundaries": ClarificationEntry(
            key="boundaries",
            options=(
                ClarificationOption("Open boundary requests", "boundaryRequests", "open boundary requests", "open"),
                ClarificationOption(
                    "Completed boundary requests", "boundaryRequests", "completed boundary requests", "completed"
                ),
                ClarificationOption("All boundary requests", "boundaryRequests", "all boundary requests", "all"),
            ),
        ),
    }
)


# ---------------------------------------------------------------------------
# Ambiguity detection
# ---------------------------------------------------------------------------

_BAG_SPECIFIC = ("event", "activity", "history", "putdown", "put down", "pickup", "pick up", "on hand", "onhand")


def _ambiguous_grain_bags(q: str) -> bool:
    mentions_bags = has_any(q, ("grain bag", "bag inventory", "bags inventory")) or q == "bags"
    mentions_scope = has_any(q, ("inventory", "placed", "where", "field"))
    specific = has_any(q, _BAG_SPECIFIC) or q.startswith(("sku ", "grain sku ", "bags sku "))
    return mentions_bags and mentions_scope and not specific


def _ambiguous_grain(q: str) -> bool:
    return q in ("grain", "show grain", "grain inventory")


def _ambiguous_bins(q: str) -> bool:
    return q in ("bins", "bin", "show bins", "grain bins") and "movement" not in q


def _ambiguous_boundaries(q: str) -> bool:
    return q in ("boundaries", "boundary", "boundary requests", "show boundaries", "boundary fixes")


AMBIGUITY_RULES: Tuple[Tuple[str, Callable[[str], bool]], ...] = (
    ("grainbags", _ambiguous_grain_bags),
    ("grain", _ambiguous_grain),
    ("bins", _ambiguous_bins),
    ("boundaries", _ambiguous_boundaries),
)


def detect_ambiguity(question: str) -> Optional[str]:
    """Clarification key for a broad question, or None when it is specific enough."""
    q = normalize(question).rstrip("?.!")
    if not q:
        return None
    for key, predicate in AMBIGUITY_RULES:
        if predicate(q):
            logger.info("Question %r needs clarification (%s)", q, key)
            return key
    return None


def clarify_intent(key: str) -> str:
    return f"{CLARIFY_PREFIX}{key}"


def resolve_choice(key: Optional[str], reply: str) -> Optional[Resolution]:
    """Resolve a reply against a pending clarification; None abandons it."""
    entry = CLARIFICATIONS.get(key or "")
    if entry is None:
        return None
    return entry.resolve(pick_choice(reply))
