from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from farm_copilot.conversation.clarification import CLARIFICATIONS, CLARIFY_PREFIX
from farm_copilot.core.paging import Continuation

ENTITY_TYPES = ("field", "farm", "county", "tower")


@dataclass(frozen=True)
class Entity:
    """Last concrete thing discussed (a field, farm, county or RTK tower)."""
    type: str
    id: Optional[str] = None
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return str(self.name or self.id or "").strip()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.id is not None:
            out["id"] = self.id
        if self.name is not None:
            out["name"] = self.name
        return out

    @classmethod
    def from_dict(cls, obj: Any) -> Optional["Entity"]:
        if isinstance(obj, Entity):
            return obj
        if not isinstance(obj, Mapping):
            return None
        etype = str(obj.get("type") or "").strip().lower()
        if etype not in ENTITY_TYPES:
            return None
        eid = obj.get("id")
        name = obj.get("name")
        return cls(
            type=etype,
            id=str(eid) if eid not in (None, "") else None,
            name=str(name) if name not in (None, "") else None,
        )


@dataclass(frozen=True)
class Scope:
    include_archived: bool = False
    county: Optional[str] = None
    farm_id: Optional[str] = None
    farm_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "include_archived": self.include_archived,
            "county": self.county,
            "farm_id": self.farm_id,
            "farm_name": self.farm_name,
        }

    def merged(self, delta: Mapping[str, Any]) -> "Scope":
        changes: Dict[str, Any] = {}
        for key in ("include_archived", "county", "farm_id", "farm_name"):
            if key in delta:
                changes[key] = bool(delta[key]) if key == "include_archived" else delta[key]
        return replace(self, **changes)


@dataclass(frozen=True)
class ResultItem:
    label: str
    value: float
    key: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "value": self.value, "key": self.key}


@dataclass(frozen=True)
class LastResult:
    """
    Last tabular answer. Result-level follow-ups (sort, total, augment, strip,
    scope) transform this instead of re-asking the question.
    """
    kind: str
    metric: str = ""
    items: Tuple[ResultItem, ...] = ()
    by: str = ""
    include_archived: bool = False
    columns: Tuple[str, ...] = ()
    show_values: bool = True
    source_question: str = ""
    title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "metric": self.metric,
            "items": [i.to_dict() for i in self.items],
            "by": self.by,
            "include_archived": self.include_archived,
            "columns": list(self.columns),
            "show_values": self.show_values,
            "source_question": self.source_question,
            "title": self.title,
        }

    @classmethod
    def from_dict(cls, obj: Any) -> Optional["LastResult"]:
        if isinstance(obj, LastResult):
            return obj
        if not isinstance(obj, Mapping) or not obj.get("kind"):
            return None
        items = []
        for raw in obj.get("items") or []:
            if not isinstance(raw, Mapping):
                continue
            try:
                value = float(raw.get("value") or 0)
            except (TypeError, ValueError):
                value = 0.0
            items.append(ResultItem(label=str(raw.get("label") or ""), value=value, key=str(raw.get("key") or "")))
        return cls(
            kind=str(obj["kind"]),
            metric=str(obj.get("metric") or ""),
            items=tuple(items),
            by=str(obj.get("by") or ""),
            include_archived=bool(obj.get("include_archived")),
            columns=tuple(str(c) for c in obj.get("columns") or ()),
            show_values=bool(obj.get("show_values", True)),
            source_question=str(obj.get("source_question") or ""),
            title=str(obj.get("title") or ""),
        )


@dataclass(frozen=True)
class FocusEntity:
    type: str
    label: str


@dataclass(frozen=True)
class Focus:
    """Drill-down anchor: 'which fields is it' resolves against this."""
    module: str
    entity: FocusEntity
    metric: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module": self.module,
            "entity": {"type": self.entity.type, "label": self.entity.label},
            "metric": self.metric,
        }

    @classmethod
    def from_dict(cls, obj: Any) -> Optional["Focus"]:
        if isinstance(obj, Focus):
            return obj
        if not isinstance(obj, Mapping):
            return None
        ent = obj.get("entity")
        if not isinstance(ent, Mapping) or not ent.get("label"):
            return None
        return cls(
            module=str(obj.get("module") or ""),
            entity=FocusEntity(type=str(ent.get("type") or ""), label=str(ent["label"])),
            metric=str(obj.get("metric") or ""),
        )


# ---------------------------------------------------------------------------
# Merge rules
#
#   replace    value in the delta overwrites; absent keys persist
#   merge      sub-keys in the delta overwrite; other sub-keys persist
#   turn       reset every turn unless the delta supplies a new value
#   transient  carried only inside the turn's delta, never stored
# ---------------------------------------------------------------------------

MERGE_RULES: Dict[str, str] = {
    "last_intent": "replace",
    "last_topic": "replace",
    "last_metric": "replace",
    "last_by": "replace",
    "last_entity": "replace",
    "last_scope": "merge",
    "last_result": "turn",
    "focus": "replace",
    "continuation": "turn",
    "result_op": "transient",
    "result_op_for": "transient",
}


@dataclass(frozen=True)
class ConversationContext:
    last_intent: Optional[str] = None
    last_topic: Optional[str] = None
    last_metric: str = ""
    last_by: str = ""
    last_entity: Optional[Entity] = None
    last_scope: Scope = field(default_factory=Scope)
    last_result: Optional[LastResult] = None
    focus: Optional[Focus] = None
    continuation: Optional[Continuation] = None

    @property
    def pending_clarification(self) -> Optional[str]:
        intent = self.last_intent or ""
        if not intent.startswith(CLARIFY_PREFIX):
            return None
        key = intent[len(CLARIFY_PREFIX):]
        return key if key in CLARIFICATIONS else None

    @property
    def include_archived(self) -> bool:
        return bool(self.last_scope.include_archived)

    def apply(self, delta: Optional[Mapping[str, Any]]) -> "ConversationContext":
        """Return the next turn's context: this one with `delta` merged per MERGE_RULES."""
        d = dict(delta or {})
        changes: Dict[str, Any] = {}

        for name, rule in MERGE_RULES.items():
            present = name in d
            if rule == "transient":
                continue
            if rule == "turn":
                changes[name] = _coerce_field(name, d.get(name)) if present else None
                continue
            if not present:
                continue
            if rule == "merge":
                sub = d[name]
                changes[name] = self.last_scope.merged(sub if isinstance(sub, Mapping) else {})
                continue
            changes[name] = _coerce_field(name, d[name])

        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_intent": self.last_intent,
            "last_topic": self.last_topic,
            "last_metric": self.last_metric,
            "last_by": self.last_by,
            "last_entity": self.last_entity.to_dict() if self.last_entity else None,
            "last_scope": self.last_scope.to_dict(),
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "focus": self.focus.to_dict() if self.focus else None,
            "continuation": self.continuation.to_dict() if self.continuation else None,
        }

    @classmethod
    def from_dict(cls, obj: Optional[Mapping[str, Any]]) -> "ConversationContext":
        d = dict(obj or {})
        scope = d.get("last_scope")
        return cls(
            last_intent=_coerce_field("last_intent", d.get("last_intent")),
            last_topic=_coerce_field("last_topic", d.get("last_topic")),
            last_metric=_coerce_field("last_metric", d.get("last_metric")),
            last_by=_coerce_field("last_by", d.get("last_by")),
            last_entity=Entity.from_dict(d.get("last_entity")),
            last_scope=Scope().merged(scope) if isinstance(scope, Mapping) else Scope(),
            last_result=LastResult.from_dict(d.get("last_result")),
            focus=Focus.from_dict(d.get("focus")),
            continuation=_coerce_field("continuation", d.get("continuation")),
        )

    @classmethod
    def coerce(cls, obj: Any) -> "ConversationContext":
        if isinstance(obj, ConversationContext):
            return obj
        if isinstance(obj, Mapping):
            return cls.from_dict(obj)
        return cls()


def _coerce_field(name: str, value: Any) -> Any:
    if name in ("last_intent", "last_topic"):
        return str(value) if value not in (None, "") else None
    if name in ("last_metric", "last_by"):
        return str(value or "")
    if name == "last_entity":
        return Entity.from_dict(value)
    if name == "last_result":
        return LastResult.from_dict(value)
    if name == "focus":
        return Focus.from_dict(value)
    if name == "continuation":
        if isinstance(value, Continuation):
            return value
        return Continuation.from_dict(value)
    return value
