"""
Follow-up interpretation.

Short replies such as "by county", "same thing but crp", "that field",
"include archived" or "sort largest first" only make sense against the
previous turn. interpret() turns them into either a complete question that
can be routed as if typed, or a result-level operation on the last answer.
It never raises and never touches the snapshot.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from farm_copilot.conversation.context import ConversationContext, Entity
from farm_copilot.conversation.intent import wants_active_only, wants_include_archived
from farm_copilot.conversation.normalize import has_any, has_word, normalize
from farm_copilot.core.field_data import county_name_from_key

RESULT_OP_SENTINEL = "__RESULT_OP__"

RESULT_OPS = ("scope", "augment", "strip", "total", "sort")
SORT_MODES = ("largest", "smallest", "az")


@dataclass(frozen=True)
class ResultOp:
    op: str
    mode: str = ""
    metric: str = ""
    include_archived: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"op": self.op}
        if self.mode:
            out["mode"] = self.mode
        if self.metric:
            out["metric"] = self.metric
        if self.include_archived is not None:
            out["include_archived"] = self.include_archived
        return out

    @classmethod
    def from_dict(cls, obj: Any) -> Optional["ResultOp"]:
        if isinstance(obj, ResultOp):
            return obj
        if not isinstance(obj, dict) or obj.get("op") not in RESULT_OPS:
            return None
        inc = obj.get("include_archived", obj.get("includeArchived"))
        return cls(
            op=str(obj["op"]),
            mode=str(obj.get("mode") or ""),
            metric=str(obj.get("metric") or ""),
            include_archived=None if inc is None else bool(inc),
        )


@dataclass(frozen=True)
class Rewrite:
    """Either a rewritten question (kind='question') or a result op (kind='result_op')."""
    kind: str
    text: str = ""
    op: Optional[ResultOp] = None
    context_delta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_result_op(self) -> bool:
        return self.kind == "result_op"

    @property
    def rewrite_question(self) -> str:
        return RESULT_OP_SENTINEL if self.is_result_op else self.text

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape: {"rewriteQuestion", "contextDelta"} with camelCase keys."""
        if self.is_result_op:
            delta = {
                "resultOp": _camel_keys(self.op.to_dict() if self.op else {}),
                "_resultOpFor": self.context_delta.get("result_op_for", ""),
            }
        else:
            delta = _camel_keys(self.context_delta)
        return {"rewriteQuestion": self.rewrite_question, "contextDelta": delta}


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def _camel_keys(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {_camel(str(k)): _camel_keys(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_camel_keys(v) for v in obj]
    return obj


def _question(text: str, delta: Optional[Dict[str, Any]] = None) -> Rewrite:
    return Rewrite(kind="question", text=text.strip(), context_delta=dict(delta or {}))


# ---------------------------------------------------------------------------
# Metric / grouping extraction
# ---------------------------------------------------------------------------

def extract_metric(text: str) -> str:
    q = normalize(text)
    if has_word(q, "hel"):
        return "hel"
    if has_word(q, "crp"):
        return "crp"
    if has_any(q, ("tillable", "acres", "acre")):
        return "tillable"
    if has_word(q, "fields") or has_word(q, "count"):
        return "fields"
    return ""


def wants_by_farm(q: str) -> bool:
    return "by farm" in q or (has_word(q, "by") and "farm" in q)


def wants_by_county(q: str) -> bool:
    return "by county" in q or (has_word(q, "by") and "county" in q)


def build_totals_question(metric: str, by: str) -> str:
    m = metric or "tillable"
    if by == "farm":
        return {
            "hel": "HEL acres by farm",
            "crp": "CRP acres by farm",
            "fields": "How many fields by farm",
        }.get(m, "Farm totals by farm")
    if by == "county":
        return {
            "hel": "HEL acres by county",
            "crp": "CRP acres by county",
            "fields": "How many fields by county",
        }.get(m, "County totals by county")
    return {
        "hel": "Total HEL acres",
        "crp": "Total CRP acres",
        "fields": "How many active fields do we have?",
    }.get(m, "Total tillable acres")


def _metric_phrase(metric: str) -> str:
    return {"hel": "HEL acres", "crp": "CRP acres"}.get(metric, "tillable acres")


def _scope_flag(q: str) -> Optional[bool]:
    if wants_include_archived(q):
        return True
    if wants_active_only(q):
        return False
    return None


def _words(q: str) -> int:
    return len(q.split())


# ---------------------------------------------------------------------------
# Step 2: focus drill-down
# ---------------------------------------------------------------------------

_DRILLDOWN = re.compile(r"\b(what|which)\s+fields?\s+(is it|are they|are those|is that|are these)\b")


def _focus_drilldown(q: str, ctx: ConversationContext) -> Optional[Rewrite]:
    focus = ctx.focus
    if focus is None or focus.entity.type != "county" or not focus.metric:
        return None
    if not _DRILLDOWN.search(q):
        return None
    county = county_name_from_key(focus.entity.label)
    return _question(f"List fields in {county} County with {_metric_phrase(focus.metric)}")


# ---------------------------------------------------------------------------
# Step 3: result-level operations
# ---------------------------------------------------------------------------

_TOTAL = re.compile(
    r"^(what'?s |what is )?(the )?(total|sum|add (them|it|those) up|total (it|them|those|these|that)( up)?"
    r"|sum (it|them|those|these)( up)?|total (those|the|these) acres|sum (those|the|these) acres)\??$"
)

_AUGMENT = re.compile(r"\b(include|including|with|add|show)\s+(the\s+)?(hel|crp|tillable|acres)\b")
_STRIP = re.compile(r"\b(no|without|hide|drop|remove)\s+(the\s+)?(hel|crp|tillable|acres|values|numbers)\b")


def _sort_mode(q: str) -> str:
    if _words(q) > 6:
        return ""
    if has_any(q, ("a-z", "a to z", "alphabetical", "by name")):
        return "az"
    if has_any(q, ("largest", "biggest", "most", "descending", "high to low")):
        return "largest" if has_any(q, ("sort", "first", "order", "top")) else ""
    if has_any(q, ("smallest", "least", "ascending", "low to high")):
        return "smallest" if has_any(q, ("sort", "first", "order")) else ""
    return ""


def _metric_word(word: str) -> str:
    return "tillable" if word in ("acres", "tillable") else word


def _result_op(q: str, ctx: ConversationContext) -> Optional[ResultOp]:
    short = _words(q) <= 5

    flag = _scope_flag(q)
    if flag is not None and short and not extract_metric(q) and not (wants_by_farm(q) or wants_by_county(q)):
        return ResultOp(op="scope", include_archived=flag)

    m = _AUGMENT.search(q)
    if m and short:
        return ResultOp(op="augment", metric=_metric_word(m.group(3)))

    m = _STRIP.search(q)
    if m and short:
        word = m.group(3)
        return ResultOp(op="strip", metric="all" if word in ("acres", "values", "numbers") else _metric_word(word))

    if _TOTAL.match(q.rstrip(".!")):
        return ResultOp(op="total")

    mode = _sort_mode(q)
    if mode:
        return ResultOp(op="sort", mode=mode)
    return None


# ---------------------------------------------------------------------------
# Step 4: list-fields shortcuts on the last entity
# ---------------------------------------------------------------------------

_LIST_FIELDS = re.compile(
    r"^(list|show|what|which)( me)?( the)? (fields|them)"
    r"( (are|is)( (on|in|under))? (it|there|that|this)( (farm|county|tower|one))?)?"
    r"( (with|incl|including|include) (tillable )?acres?)?$"
)

LIST_FIELDS_INTENTS = ("list_fields_on_farm", "list_fields_in_county", "tower_fields", "tower_fields_tillable")

_INCLUDE_TILLABLE = ("include tillable", "include acres", "with tillable", "with acres")
_TOTAL_ACRES = ("total those acres", "sum those acres", "total the acres", "sum the acres")


def _list_fields_question(entity: Entity, with_acres: bool) -> str:
    label = entity.label
    if entity.type == "farm":
        text = f"List fields on {label} farm"
    elif entity.type == "county":
        text = f"List fields in {county_name_from_key(label)} County"
    elif entity.type == "tower":
        text = f"Fields on {label} tower"
    else:
        return f"Tell me about {entity.id or label}"
    return f"{text} with tillable acres" if with_acres else text


def _entity_totals_question(entity: Entity) -> Optional[str]:
    if entity.type == "farm":
        return f"Farm totals for {entity.label}"
    if entity.type == "county":
        return f"County totals for {county_name_from_key(entity.label)} County"
    if entity.type == "tower":
        return f"Total tillable acres for the {entity.label} tower"
    return None


def _list_fields_shortcut(q: str, ctx: ConversationContext) -> Optional[Rewrite]:
    entity = ctx.last_entity
    if entity is None or not entity.label:
        return None

    if _LIST_FIELDS.match(q.rstrip("?.!")):
        with_acres = has_any(q, ("acre",))
        return _question(_list_fields_question(entity, with_acres))

    if (ctx.last_intent or "") in LIST_FIELDS_INTENTS:
        if has_any(q, _INCLUDE_TILLABLE) and _words(q) <= 4:
            return _question(_list_fields_question(entity, True), {"last_metric": "tillable"})
        if has_any(q, _TOTAL_ACRES) or q in ("total acres", "sum acres"):
            text = _entity_totals_question(entity)
            if text:
                return _question(text, {"last_metric": "tillable"})
    return None


# ---------------------------------------------------------------------------
# Step 5/6: "same thing", breakdown switch, deictic references
# ---------------------------------------------------------------------------

_SAME_THING = ("same thing", "same but", "do that again", "do it again")
_BREAKDOWN_INTENT_WORDS = ("totals", "count", "breakdown", "farm", "county")

_DEICTIC = re.compile(r"\b(that|this) (field|farm|county|tower|one)\b")


def _same_or_breakdown(q: str, ctx: ConversationContext) -> Optional[Rewrite]:
    same = has_any(q, _SAME_THING) or has_word(q, "same")
    switch = _words(q) <= 4 and (wants_by_farm(q) or wants_by_county(q))
    if not (same or switch):
        return None

    last_intent = ctx.last_intent or ""
    metric = extract_metric(q) or ctx.last_metric
    by = "farm" if wants_by_farm(q) else "county" if wants_by_county(q) else ctx.last_by

    if has_any(last_intent, _BREAKDOWN_INTENT_WORDS) or last_intent.endswith(("_by_farm", "_by_county")):
        return _question(build_totals_question(metric, by), {"last_metric": metric, "last_by": by})

    entity = ctx.last_entity
    if last_intent == "field_lookup" and entity is not None and entity.type == "field":
        return _question(f"Tell me about {entity.id or entity.name}")
    return None


def _deictic(q: str, ctx: ConversationContext) -> Optional[Rewrite]:
    entity = ctx.last_entity
    if entity is None:
        return None
    if not (_DEICTIC.search(q) or q.rstrip("?.!") in ("that", "this")):
        return None

    if entity.type == "field":
        return _question(f"Tell me about {entity.id or entity.name}")
    if entity.type == "farm":
        metric = extract_metric(q) or ctx.last_metric or "tillable"
        prefix = {"hel": "HEL acres", "crp": "CRP acres"}.get(metric, "Farm totals")
        return _question(f"{prefix} for {entity.label}")
    if entity.type == "county":
        return _question(f"County totals for {county_name_from_key(entity.label)} County")
    if entity.type == "tower":
        return _question(f"Fields on {entity.label} tower")
    return None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def interpret(question: str, context: Any) -> Optional[Rewrite]:
    """
    Resolve an elliptical follow-up against the previous turn.

    Returns None when the question does not lean on prior context. Checks run
    in a fixed order and the first match wins: scope change, focus
    drill-down, result op, list-fields shortcut, same thing / by X, deictic.
    """
    q = normalize(question)
    if not q:
        return None
    ctx = ConversationContext.coerce(context)
    last_intent = ctx.last_intent or ""
    clarifying = ctx.pending_clarification is not None

    flag = _scope_flag(q)
    if flag is not None and last_intent and not clarifying and ctx.last_result is None:
        metric = extract_metric(q) or ctx.last_metric
        by = "farm" if wants_by_farm(q) else "county" if wants_by_county(q) else ctx.last_by
        return _question(build_totals_question(metric, by), {"last_scope": {"include_archived": flag}})

    rewrite = _focus_drilldown(q, ctx)
    if rewrite:
        return rewrite

    if ctx.last_result is not None:
        op = _result_op(q, ctx)
        if op is not None:
            return Rewrite(
                kind="result_op",
                op=op,
                context_delta={"result_op": op.to_dict(), "result_op_for": ctx.last_result.kind},
            )

    for step in (_list_fields_shortcut, _same_or_breakdown, _deictic):
        rewrite = step(q, ctx)
        if rewrite:
            return rewrite
    return None
