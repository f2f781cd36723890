from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import pandas as pd

from farm_copilot.conversation.context import LastResult, ResultItem
from farm_copilot.conversation.intent import Intent
from farm_copilot.conversation.normalize import has_any, has_word, normalize
from farm_copilot.core.field_data import (
    county_mask,
    eligible_fields,
    field_sort_key,
    find_mentioned,
    fmt_acres,
    fmt_int,
    resolve_field,
    strip_entity_words,
)
from farm_copilot.core.paging import build_paged_answer
from farm_copilot.core.query_engine import PAGE_SIZE_FIELDS, format_row, scope_label, wants_count
from farm_copilot.core.snapshot import SnapshotHandle

logger = logging.getLogger(__name__)

_TELL_ME_ABOUT = re.compile(r"^\s*(tell me about|info on|details for)\s+(?:field\s+)?(.+?)\s*[?.!]*$", re.I)
_FIELD_LIKE = re.compile(r"^\s*(?:field\s+)?(\d{3,4}(?:\s*-\s*.+)?)\s*[?.!]*$", re.I)

_COUNTY_TOTALS = re.compile(r"\bcounty totals? for\s+(.+?)(?:\s+county)?\s*[?.!]*$", re.I)
_FARM_TOTALS = re.compile(r"\bfarm totals? for\s+(.+?)\s*[?.!]*$", re.I)
_METRIC_FOR_FARM = re.compile(r"\b(hel|crp|tillable)\s+acres?\s+(?:for|on)\s+(.+?)\s*[?.!]*$", re.I)
_FIELDS_ON_FARM = re.compile(
    r"\b(?:list|show|which|what)\s+(?:me\s+)?(?:the\s+)?fields\s+(?:are\s+)?(?:on|for|in)\s+(?:the\s+)?(.+?)"
    r"(?:\s+with\s+(?:tillable\s+)?acres?)?\s*[?.!]*$",
    re.I,
)

_FARM_WORDS = ("farm", "farms")


def _ok(answer: str, intent: str, delta: Optional[Dict[str, Any]] = None, **meta: Any) -> Dict[str, Any]:
    out_meta = {"routed": "fields", "intent": intent}
    out_meta.update(meta)
    return {"ok": True, "answer": answer, "meta": out_meta, "context_delta": dict(delta or {})}


def _miss(answer: str, intent: str, **meta: Any) -> Dict[str, Any]:
    out_meta = {"routed": "fields", "intent": intent}
    out_meta.update(meta)
    return {"ok": False, "answer": answer, "meta": out_meta}


def _metric(q: str) -> str:
    if has_word(q, "hel"):
        return "hel"
    if has_word(q, "crp"):
        return "crp"
    if wants_count(q) and not has_any(q, ("acre", "tillable")):
        return "fields"
    return "tillable"


def _totals_lines(frame: pd.DataFrame) -> List[str]:
    return [
        f"• Fields: {fmt_int(len(frame))}",
        f"• Tillable: {fmt_acres(frame['tillable'].sum())} ac",
        f"• HEL: {fmt_acres(frame['helAcres'].sum())} ac",
        f"• CRP: {fmt_acres(frame['crpAcres'].sum())} ac",
    ]


def _farm_names(frame: pd.DataFrame, snapshot: SnapshotHandle) -> Dict[str, str]:
    names = {fid: str(f.get("name") or fid) for fid, f in snapshot.farms.items()}
    for fid, fname in zip(frame["farmId"], frame["farmName"]):
        if fid and fid not in names:
            names[fid] = fname or fid
    return names


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------

def field_detail(query: str, snapshot: SnapshotHandle, include_archived: bool) -> Dict[str, Any]:
    frame = snapshot.fields_frame()
    match = resolve_field(frame, query, include_archived)
    if not match.resolved:
        hint = ", ".join(c[1] for c in match.candidates)
        answer = f"I couldn't pin down field '{query}'." + (f" Did you mean: {hint}?" if hint else "")
        return _miss(answer, "field_lookup", candidates=[c[0] for c in match.candidates])

    row = frame.loc[frame["id"] == match.key].iloc[0].to_dict()
    tower_id = row["rtkTowerId"]
    tower = snapshot.rtk_towers.get(tower_id, {}) if tower_id else {}

    lines = [f"Field: {row['name']}"]
    if row["farmName"]:
        lines.append(f"- Farm: {row['farmName']}")
    if row["countyKey"]:
        lines.append(f"- County: {row['countyKey']}")
    lines.append(f"- Status: {'active' if row['active'] else 'archived'}")
    lines.append(f"- Tillable: {fmt_acres(row['tillable'])} ac")
    if row["helAcres"]:
        lines.append(f"- HEL: {fmt_acres(row['helAcres'])} ac")
    if row["crpAcres"]:
        lines.append(f"- CRP: {fmt_acres(row['crpAcres'])} ac")
    if tower_id:
        lines.append(f"- RTK tower: {tower.get('name') or tower_id}")
        for label, key in (("Network ID", "networkId"), ("Frequency", "frequency")):
            if tower.get(key):
                lines.append(f"  - {label}: {tower[key]}")

    delta = {
        "last_intent": "field_lookup",
        "last_entity": {"type": "field", "id": match.key, "name": row["name"]},
    }
    return _ok("\n".join(lines), "field_lookup", delta, fieldId=match.key, confidence=match.confidence)


def county_totals(county: str, frame: pd.DataFrame, include_archived: bool, metric: str) -> Dict[str, Any]:
    matches = frame.loc[county_mask(frame, county)]
    if matches.empty:
        return _miss(f"No fields found in {county} County.", "county_totals", county=county)

    keys = matches["countyKey"].value_counts()
    label = str(keys.index[0]) if len(keys) == 1 else f"{county} County"
    title = f"County totals for {label} ({scope_label(include_archived)}):"
    delta = {
        "last_intent": "county_totals",
        "last_metric": metric,
        "last_entity": {"type": "county", "name": label},
        "focus": {"module": "fields", "entity": {"type": "county", "label": label}, "metric": metric},
    }
    return _ok("\n".join([title] + _totals_lines(matches)), "county_totals", delta, county=label)


def farm_totals(
    farm_id: str, farm_name: str, frame: pd.DataFrame, include_archived: bool, metric: str
) -> Dict[str, Any]:
    matches = frame.loc[frame["farmId"] == farm_id]
    delta = {
        "last_intent": "farm_totals",
        "last_metric": metric,
        "last_entity": {"type": "farm", "id": farm_id, "name": farm_name},
    }
    if metric in ("hel", "crp"):
        col = "helAcres" if metric == "hel" else "crpAcres"
        with_acres = matches.loc[matches[col] > 0]
        answer = (
            f"{metric.upper()} acres for {farm_name} ({scope_label(include_archived)}): "
            f"{fmt_acres(with_acres[col].sum())} ac across {fmt_int(len(with_acres))} fields."
        )
        return _ok(answer, f"farm_{metric}", delta, farmId=farm_id)

    title = f"Farm totals for {farm_name} ({scope_label(include_archived)}):"
    return _ok("\n".join([title] + _totals_lines(matches)), "farm_totals", delta, farmId=farm_id)


def fields_on_farm(
    farm_id: str,
    farm_name: str,
    frame: pd.DataFrame,
    include_archived: bool,
    with_acres: bool,
    source_question: str,
) -> Dict[str, Any]:
    matches = frame.loc[frame["farmId"] == farm_id]
    if matches.empty:
        return _miss(f"No fields found on {farm_name}.", "list_fields_on_farm", farmId=farm_id)

    rows = sorted(matches.to_dict(orient="records"), key=lambda r: field_sort_key(r["name"]))
    lines = [format_row(r["name"], {"tillable": r["tillable"]}, "tillable", show_values=with_acres) for r in rows]
    title = f"Fields on {farm_name} ({scope_label(include_archived)}): {fmt_int(len(rows))}"
    paged = build_paged_answer(title, lines, PAGE_SIZE_FIELDS)
    cont = paged.continuation.to_dict() if paged.continuation else None

    last_result = LastResult(
        kind="field_list",
        metric="tillable",
        items=tuple(ResultItem(label=r["name"], value=float(r["tillable"]), key=r["id"]) for r in rows),
        include_archived=include_archived,
        show_values=with_acres,
        source_question=source_question,
        title=title,
    )
    delta = {
        "last_intent": "list_fields_on_farm",
        "last_metric": "tillable",
        "last_entity": {"type": "farm", "id": farm_id, "name": farm_name},
        "last_result": last_result.to_dict(),
        "continuation": cont,
    }
    return _ok(paged.answer, "list_fields_on_farm", delta, farmId=farm_id, continuation=cont)


def overall_totals(frame: pd.DataFrame, include_archived: bool, metric: str) -> Dict[str, Any]:
    scope = scope_label(include_archived)
    delta = {"last_intent": f"{metric}_totals", "last_metric": metric, "last_by": ""}
    if metric == "fields":
        answer = f"Fields ({scope}): {fmt_int(len(frame))}."
    elif metric == "hel":
        answer = f"Total HEL acres ({scope}): {fmt_acres(frame['helAcres'].sum())} ac."
    elif metric == "crp":
        answer = f"Total CRP acres ({scope}): {fmt_acres(frame['crpAcres'].sum())} ac."
    else:
        answer = "\n".join([f"Totals ({scope}):"] + _totals_lines(frame))
    return _ok(answer, f"{metric}_totals", delta)


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

def handle_fields(question: str, snapshot: SnapshotHandle, intent: Optional[Intent] = None) -> Dict[str, Any]:
    """Field, farm and county questions the aggregation engine does not cover."""
    include_archived = bool(intent.include_archived) if intent else False
    raw = str(question or "").strip()
    q = normalize(raw)
    all_fields = snapshot.fields_frame()
    frame = eligible_fields(all_fields, include_archived)

    m = _TELL_ME_ABOUT.match(raw) or _FIELD_LIKE.match(raw)
    if m:
        query = m.group(m.lastindex or 1)
        logger.info("Fields handler: detail for %r", query)
        return field_detail(query, snapshot, include_archived)

    m = _COUNTY_TOTALS.search(raw)
    if m:
        county = strip_entity_words(m.group(1), ("county",))
        return county_totals(county, frame, include_archived, _metric(q))

    farm_names = _farm_names(all_fields, snapshot)

    m = _FIELDS_ON_FARM.search(raw)
    if m and not has_word(q, "county"):
        match = find_mentioned(farm_names, raw, strip_entity_words(m.group(1), _FARM_WORDS))
        if match.resolved:
            logger.info("Fields handler: fields on farm %s", match.key)
            return fields_on_farm(match.key, match.name, frame, include_archived, "acre" in q, raw)
        return _miss(f"I couldn't find a farm matching '{m.group(1)}'.", "list_fields_on_farm")

    m = _FARM_TOTALS.search(raw) or _METRIC_FOR_FARM.search(raw)
    if m:
        needle = strip_entity_words(m.group(m.lastindex or 1), _FARM_WORDS)
        match = find_mentioned(farm_names, raw, needle)
        if match.resolved:
            logger.info("Fields handler: farm totals for %s", match.key)
            return farm_totals(match.key, match.name, frame, include_archived, _metric(q))
        if not _FARM_TOTALS.search(raw):
            # "HEL acres for Sangamon" may name a county rather than a farm.
            if county_mask(frame, needle).any():
                return county_totals(needle, frame, include_archived, _metric(q))
        return _miss(f"I couldn't find a farm matching '{needle}'.", "farm_totals")

    if wants_count(q) or has_any(q, ("total", "acres", "tillable")) or (intent and intent.mode == "totals"):
        return overall_totals(frame, include_archived, _metric(q))

    return _miss("I'm not sure which field information you want.", "fields")
