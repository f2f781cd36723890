from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import pandas as pd

from farm_copilot.conversation.context import LastResult, ResultItem
from farm_copilot.conversation.intent import Intent
from farm_copilot.conversation.normalize import normalize
from farm_copilot.core.field_data import (
    NameMatch,
    eligible_fields,
    field_label,
    field_sort_key,
    find_mentioned,
    fmt_acres,
    fmt_int,
    strip_entity_words,
)
from farm_copilot.core.paging import build_paged_answer
from farm_copilot.core.query_engine import PAGE_SIZE_FIELDS, format_row, scope_label
from farm_copilot.core.snapshot import SnapshotHandle

logger = logging.getLogger(__name__)

_TOWER_WORDS = ("rtk", "tower", "towers", "the", "on", "for", "fields", "field", "with", "tillable", "acres", "total")

_FIELDS_ON = re.compile(r"\bfields?\s+(?:are\s+)?(?:on|using|for)\s+(?:the\s+)?(.+?)(?:\s+rtk)?\s+tower\b", re.I)
_TOTAL_FOR = re.compile(r"\bfor\s+(?:the\s+)?(.+?)(?:\s+rtk)?\s+tower\b", re.I)


def _tower_names(snapshot: SnapshotHandle) -> Dict[str, str]:
    return {tid: str(t.get("name") or tid) for tid, t in snapshot.rtk_towers.items()}


def _resolve_tower(question: str, snapshot: SnapshotHandle) -> NameMatch:
    m = _FIELDS_ON.search(question) or _TOTAL_FOR.search(question)
    needle = strip_entity_words(m.group(1) if m else question, _TOWER_WORDS)
    return find_mentioned(_tower_names(snapshot), question, needle)


def _tower_fields(frame: pd.DataFrame, tower_id: str) -> pd.DataFrame:
    return frame.loc[frame["rtkTowerId"] == tower_id]


def tower_count(snapshot: SnapshotHandle) -> Dict[str, Any]:
    n = len(snapshot.rtk_towers)
    return {
        "ok": n > 0,
        "answer": f"RTK towers: {fmt_int(n)}." if n else "No RTK towers found in the snapshot.",
        "meta": {"routed": "rtkTowers", "intent": "tower_count", "count": n},
        "context_delta": {"last_intent": "tower_count"},
    }


def tower_list(snapshot: SnapshotHandle, include_archived: bool) -> Dict[str, Any]:
    towers = _tower_names(snapshot)
    if not towers:
        return {"ok": False, "answer": "No RTK towers found in the snapshot.", "meta": {"routed": "rtkTowers", "intent": "tower_list"}}

    frame = eligible_fields(snapshot.fields_frame(), include_archived)
    counts = frame.loc[frame["rtkTowerId"] != ""].groupby("rtkTowerId")["id"].count().to_dict()
    rows = sorted(towers.items(), key=lambda kv: normalize(kv[1]))
    lines = [f"• {name}: {fmt_int(counts.get(tid, 0))} fields" for tid, name in rows]

    title = f"RTK towers ({scope_label(include_archived)}): {fmt_int(len(rows))}"
    paged = build_paged_answer(title, lines, PAGE_SIZE_FIELDS)
    cont = paged.continuation.to_dict() if paged.continuation else None
    return {
        "ok": True,
        "answer": paged.answer,
        "meta": {"routed": "rtkTowers", "intent": "tower_list", "continuation": cont},
        "context_delta": {"last_intent": "tower_list", "continuation": cont},
    }


def tower_fields(
    snapshot: SnapshotHandle,
    match: NameMatch,
    include_archived: bool,
    with_acres: bool,
    source_question: str,
) -> Dict[str, Any]:
    frame = _tower_fields(eligible_fields(snapshot.fields_frame(), include_archived), match.key)
    intent = "tower_fields_tillable" if with_acres else "tower_fields"
    if frame.empty:
        return {
            "ok": False,
            "answer": f"No fields use the {match.name} tower.",
            "meta": {"routed": "rtkTowers", "intent": intent, "towerId": match.key},
        }

    rows = sorted(frame.to_dict(orient="records"), key=lambda r: field_sort_key(r["name"]))
    lines = [format_row(field_label(r), {"tillable": r["tillable"]}, "tillable", show_values=with_acres) for r in rows]
    title = f"Fields on {match.name} tower ({scope_label(include_archived)}): {fmt_int(len(rows))}"
    if with_acres:
        title += f" · {fmt_acres(frame['tillable'].sum())} tillable ac"
    paged = build_paged_answer(title, lines, PAGE_SIZE_FIELDS)
    cont = paged.continuation.to_dict() if paged.continuation else None

    last_result = LastResult(
        kind="field_list",
        metric="tillable",
        items=tuple(ResultItem(label=field_label(r), value=float(r["tillable"]), key=r["id"]) for r in rows),
        include_archived=include_archived,
        show_values=with_acres,
        source_question=source_question,
        title=title,
    )
    return {
        "ok": True,
        "answer": paged.answer,
        "meta": {"routed": "rtkTowers", "intent": intent, "towerId": match.key, "continuation": cont},
        "context_delta": {
            "last_intent": intent,
            "last_metric": "tillable",
            "last_entity": {"type": "tower", "id": match.key, "name": match.name},
            "last_result": last_result.to_dict(),
            "continuation": cont,
        },
    }


def tower_total(snapshot: SnapshotHandle, match: NameMatch, include_archived: bool) -> Dict[str, Any]:
    frame = _tower_fields(eligible_fields(snapshot.fields_frame(), include_archived), match.key)
    farms = frame.loc[frame["farmId"] != "", "farmId"].nunique()
    answer = (
        f"Tillable acres on the {match.name} tower ({scope_label(include_archived)}): "
        f"{fmt_acres(frame['tillable'].sum())} ac across {fmt_int(len(frame))} fields on {fmt_int(farms)} farms."
    )
    return {
        "ok": True,
        "answer": answer,
        "meta": {"routed": "rtkTowers", "intent": "tower_tillable_total", "towerId": match.key},
        "context_delta": {
            "last_intent": "tower_tillable_total",
            "last_metric": "tillable",
            "last_entity": {"type": "tower", "id": match.key, "name": match.name},
        },
    }


def handle_towers(question: str, snapshot: SnapshotHandle, intent: Optional[Intent] = None) -> Dict[str, Any]:
    include_archived = bool(intent.include_archived) if intent else False
    mode = intent.mode if intent else ""
    raw = str(question or "")
    q = normalize(raw)

    if mode == "count":
        return tower_count(snapshot)

    if mode in ("fields", "total") or "tower" in q:
        match = _resolve_tower(raw, snapshot)
        if match.resolved:
            logger.info("Towers handler: %s for tower %s", mode or "fields", match.key)
            if mode == "total":
                return tower_total(snapshot, match, include_archived)
            return tower_fields(snapshot, match, include_archived, "acre" in q, raw)
        if mode in ("fields", "total"):
            return {
                "ok": False,
                "answer": "I couldn't tell which RTK tower you mean.",
                "meta": {"routed": "rtkTowers", "intent": "tower_fields", "candidates": [c[0] for c in match.candidates]},
            }

    return tower_list(snapshot, include_archived)
