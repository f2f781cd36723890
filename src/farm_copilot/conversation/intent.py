from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from farm_copilot.conversation.normalize import has_any, has_word, looks_like_field_label, normalize

logger = logging.getLogger(__name__)

# Closed topic vocabulary. The router has exactly one route per topic.
TOPICS: Tuple[str, ...] = (
    "fields",
    "rtkTowers",
    "grain",
    "grainBagEvents",
    "binSites",
    "binMovements",
    "boundaryRequests",
    "fieldMaintenance",
    "equipment",
)


@dataclass(frozen=True)
class Intent:
    topic: str
    mode: str = ""
    include_archived: bool = False

    def with_scope(self, include_archived: bool) -> "Intent":
        return replace(self, include_archived=bool(include_archived))


@dataclass(frozen=True)
class IntentRule:
    name: str
    predicate: Callable[[str], bool]
    topic: str
    mode: Callable[[str], str] = lambda q: ""


# ---------------------------------------------------------------------------
# Keyword groups
# ---------------------------------------------------------------------------

_BAG_EVENT_TERMS = ("event", "activity", "history", "putdown", "put down", "pickup", "pick up")
_EQUIPMENT_TERMS = (
    "equipment", "tractor", "combine", "implement", "sprayer", "truck", "trailer", "starfire",
)
_FIELD_TERMS = (
    "field", "farm", "county", "counties", "tillable", "acre",
    "tell me about", "archived", "inactive",
)


def _grain_mode(q: str) -> str:
    if "bag" in q:
        return "bags"
    if "bin" in q:
        return "bins"
    if "summary" in q:
        return "summary"
    return ""


def _boundary_mode(q: str) -> str:
    if "complete" in q or "done" in q or "closed" in q:
        return "completed"
    if has_word(q, "all") or "archived" in q:
        return "all"
    return "open"


def _tower_mode(q: str) -> str:
    if "field" in q and "total" in q:
        return "total"
    if "total" in q and "acre" in q:
        return "total"
    if "field" in q:
        return "fields"
    if has_any(q, ("how many", "number of")) or has_word(q, "count"):
        return "count"
    return "list"


def _fields_mode(q: str) -> str:
    if q.startswith("tell me about"):
        return "detail"
    if "by county" in q or "by farm" in q:
        return "breakdown"
    if has_any(q, ("total", "how many")) or has_word(q, "count"):
        return "totals"
    if has_any(q, ("list", "show", "which", "what fields")):
        return "list"
    return ""


def _maintenance_mode(q: str) -> str:
    for status in ("needs approved", "pending", "approved", "completed"):
        if status in q:
            return status
    return ""


# Order matters: specific phrasings first, broad field/farm vocabulary last.
INTENT_RULES: Tuple[IntentRule, ...] = (
    IntentRule(
        "grain_bag_events",
        lambda q: "bag" in q and has_any(q, _BAG_EVENT_TERMS),
        "grainBagEvents",
        lambda q: "putdowns" if has_any(q, ("putdown", "put down", "pickup", "pick up")) else "events",
    ),
    IntentRule("bin_movements", lambda q: "bin" in q and "movement" in q, "binMovements"),
    IntentRule("bin_sites", lambda q: has_any(q, ("binsite", "bin site")), "binSites"),
    IntentRule("grain", lambda q: has_any(q, ("grain", "bushel")), "grain", _grain_mode),
    IntentRule("bins", lambda q: has_word(q, "bins") or has_word(q, "bin"), "binSites"),
    IntentRule("boundary", lambda q: "boundar" in q, "boundaryRequests", _boundary_mode),
    IntentRule("maintenance", lambda q: "maintenance" in q, "fieldMaintenance", _maintenance_mode),
    IntentRule("equipment", lambda q: has_any(q, _EQUIPMENT_TERMS), "equipment"),
    IntentRule("rtk_towers", lambda q: has_word(q, "rtk") or has_word(q, "tower") or has_word(q, "towers"), "rtkTowers", _tower_mode),
    IntentRule(
        "fields",
        lambda q: has_any(q, _FIELD_TERMS) or has_word(q, "hel") or has_word(q, "crp") or looks_like_field_label(q),
        "fields",
        _fields_mode,
    ),
)


def normalize_intent(question: str, include_archived: bool = False) -> Optional[Intent]:
    """
    Map a (possibly rewritten) question onto a topic/mode pair.
    Returns None when nothing in the vocabulary matches.
    """
    q = normalize(question)
    if not q:
        return None
    for rule in INTENT_RULES:
        if rule.predicate(q):
            intent = Intent(topic=rule.topic, mode=rule.mode(q), include_archived=include_archived)
            logger.info("Intent rule %s matched -> %s/%s", rule.name, intent.topic, intent.mode)
            return intent
    return None


def wants_include_archived(question: str) -> bool:
    q = normalize(question)
    return has_any(q, ("including archived", "include archived", "incl archived", "archived too", "with archived"))


def wants_active_only(question: str) -> bool:
    q = normalize(question)
    return has_any(q, ("active only", "only active"))


def detect_include_archived(question: str, default: bool = False) -> bool:
    """Explicit wording in the question wins over the remembered scope."""
    if wants_active_only(question):
        return False
    q = normalize(question)
    if wants_include_archived(q) or has_word(q, "archived") or has_word(q, "inactive"):
        return True
    return bool(default)
