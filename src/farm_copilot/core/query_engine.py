from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from farm_copilot.conversation.context import LastResult, ResultItem
from farm_copilot.conversation.normalize import has_any, has_word, normalize
from farm_copilot.core.field_data import (
    METRIC_COLUMNS,
    eligible_fields,
    county_mask,
    field_label,
    field_sort_key,
    fmt_acres,
    fmt_int,
)
from farm_copilot.core.paging import build_paged_answer
from farm_copilot.core.snapshot import SnapshotHandle

logger = logging.getLogger(__name__)

# Terms that belong to other domains. The keyword checks below are broad
# enough to misfire on these ("how many bins on the Lov Shack farm").
BLOCKED_DOMAIN_TERMS = (
    "equipment", "tractor", "combine", "sprayer", "implement", "truck", "trailer",
    "grain", "bin", "binsite", "bag", "bushel",
    "maintenance", "boundary", "boundaries",
    "rtk", "tower",
    "trial", "product", "vehicle", "weather", "readiness", "aerial", "starfire",
)

_BLOCKED_RE = re.compile(r"\b(" + "|".join(re.escape(t) for t in BLOCKED_DOMAIN_TERMS) + r")s?\b")

LIKELY_TERMS = ("farm", "county", "counties", "field", "tillable", "acre")

# Grouped output: one row per county/farm with every metric accumulated.
GROUP_COLUMNS = ["key", "label", "fields", "tillable", "hel", "crp"]

METRIC_TITLES = {
    "fields": "Fields",
    "tillable": "Tillable acres",
    "hel": "HEL acres",
    "crp": "CRP acres",
}

# Page sizes per answer shape (clamped to [10, 80] by the pagination builder).
PAGE_SIZE_FARMS = 30
PAGE_SIZE_FIELDS = 25
PAGE_SIZE_GROUPS = 12

# Farms listed under one name keep all of their ids in a single item key.
FARM_KEY_SEP = "|"


class QueryEngineError(Exception):
    """Raised when the engine is asked to run against an unusable snapshot."""


@dataclass
class GenericAnswer:
    ok: bool
    answer: str
    meta: Dict[str, Any] = field(default_factory=dict)
    context_delta: Dict[str, Any] = field(default_factory=dict)

    def as_handler_result(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "answer": self.answer,
            "meta": dict(self.meta),
            "context_delta": dict(self.context_delta),
        }


# ---------------------------------------------------------------------------
# Question shape helpers
# ---------------------------------------------------------------------------

def wants_count(q: str) -> bool:
    return has_any(q, ("how many", "number of")) or has_word(q, "count")


def wants_list(q: str) -> bool:
    return has_any(q, ("list", "show"))


def wants_by_county(q: str) -> bool:
    return has_any(q, ("by county", "per county", "by counties", "each county"))


def wants_by_farm(q: str) -> bool:
    return has_any(q, ("by farm", "per farm", "by farms", "each farm"))


def wants_acres(q: str) -> bool:
    return has_any(q, ("acres", "acre", "tillable"))


def metric_from_question(q: str, default: str = "fields") -> str:
    if has_word(q, "hel"):
        return "hel"
    if has_word(q, "crp"):
        return "crp"
    if wants_acres(q) or "total" in q:
        return "tillable"
    return default


_COUNTY_STOPWORDS = {
    "list", "show", "me", "all", "the", "our", "my", "fields", "field", "farms", "farm", "in", "on",
    "for", "of", "by", "per", "each", "every", "how", "many", "what", "which", "are", "is", "do",
    "we", "have", "county", "counties", "totals", "total", "acres", "acre", "tillable", "hel", "crp",
    "with", "and", "number", "count", "give", "tell", "about",
}

_COUNTY_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"\bin\s+([A-Za-z][A-Za-z\s\-.]{2,}?)\s+county\b", re.I), "trailing"),
    (re.compile(r"\b([A-Za-z][A-Za-z\s\-.]{2,}?)\s+county\b", re.I), "trailing"),
    (re.compile(r"\bcounty\s+([A-Za-z][A-Za-z\s\-.]{2,})\b", re.I), "leading"),
)


def _name_run(words: List[str], side: str) -> str:
    run: List[str] = []
    seq = reversed(words) if side == "trailing" else iter(words)
    for w in seq:
        if w.lower() in _COUNTY_STOPWORDS:
            break
        run.append(w)
    if side == "trailing":
        run.reverse()
    return " ".join(run).strip()


def extract_county_guess(raw: str) -> str:
    """
    County name named in a question, tried in order:
    'in X county', 'X county', 'county X'. Query words around the name
    ('list fields in', 'by') are not part of it.
    """
    s = str(raw or "").strip()
    for pattern, side in _COUNTY_PATTERNS:
        for m in pattern.finditer(s):
            guess = _name_run(m.group(1).split(), side)
            if len(guess) >= 3:
                return guess
    return ""


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def format_metric_value(metric: str, value: Any) -> str:
    if metric == "fields":
        return f"{fmt_int(value)} fields"
    if metric == "hel":
        return f"{fmt_acres(value)} HEL ac"
    if metric == "crp":
        return f"{fmt_acres(value)} CRP ac"
    return f"{fmt_acres(value)} tillable ac"


def format_row(
    label: str,
    values: Dict[str, Any],
    metric: str,
    columns: Sequence[str] = (),
    show_values: bool = True,
) -> str:
    if not show_values:
        return f"• {label}"
    parts = [format_metric_value(metric, values.get(metric, 0))]
    for col in columns:
        if col != metric:
            parts.append(format_metric_value(col, values.get(col, 0)))
    return f"• {label}: " + " · ".join(parts)


def scope_label(include_archived: bool) -> str:
    return "incl archived" if include_archived else "active only"


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def aggregate_groups(frame: pd.DataFrame, by: str) -> pd.DataFrame:
    """
    Accumulate fields, tillable, HEL and CRP per county key or farm id in a
    single groupby pass. Rows with an empty key are skipped.
    """
    key_col = "countyKey" if by == "county" else "farmId"
    work = frame.loc[frame[key_col].astype(str).str.strip() != ""] if not frame.empty else frame
    if work.empty:
        return pd.DataFrame(columns=GROUP_COLUMNS)

    work = work.assign(_label=work["farmName"] if by == "farm" else work[key_col])
    grouped = (
        work.groupby(key_col, sort=False)
        .agg(
            label=("_label", "first"),
            fields=("id", "count"),
            tillable=("tillable", "sum"),
            hel=("helAcres", "sum"),
            crp=("crpAcres", "sum"),
        )
        .reset_index()
        .rename(columns={key_col: "key"})
    )
    grouped["label"] = grouped["label"].where(grouped["label"].astype(str).str.strip() != "", grouped["key"])
    return grouped[GROUP_COLUMNS]


def sort_groups(groups: pd.DataFrame, metric: str) -> pd.DataFrame:
    """Metric value descending, label ascending as the tiebreak."""
    if groups.empty:
        return groups
    work = groups.assign(_label_key=groups["label"].astype(str).str.lower())
    work = work.sort_values(by=[metric, "_label_key"], ascending=[False, True], kind="mergesort")
    return work.drop(columns=["_label_key"]).reset_index(drop=True)


def grouped_result(
    snapshot: SnapshotHandle,
    *,
    by: str,
    metric: str,
    include_archived: bool,
    columns: Sequence[str] = (),
    source_question: str = "",
) -> GenericAnswer:
    frame = eligible_fields(snapshot.fields_frame(), include_archived)
    groups = sort_groups(aggregate_groups(frame, by), metric)

    title = f"{METRIC_TITLES[metric]} by {by} ({scope_label(include_archived)}):"
    lines = [
        format_row(str(r["label"]), r, metric, columns)
        for r in groups.to_dict(orient="records")
    ]
    if not lines:
        return GenericAnswer(ok=False, answer="No fields matched.", meta={"routed": "genericQuery", "intent": f"by_{by}"})

    paged = build_paged_answer(title, lines, PAGE_SIZE_GROUPS)
    last_result = LastResult(
        kind=f"by_{by}",
        metric=metric,
        items=tuple(
            ResultItem(label=str(r["label"]), value=float(r[metric]), key=str(r["key"]))
            for r in groups.to_dict(orient="records")
        ),
        by=by,
        include_archived=include_archived,
        columns=tuple(c for c in columns if c != metric),
        source_question=source_question,
        title=title,
    )
    delta: Dict[str, Any] = {
        "last_intent": f"{metric}_by_{by}",
        "last_metric": metric,
        "last_by": by,
        "last_result": last_result.to_dict(),
        "continuation": paged.continuation.to_dict() if paged.continuation else None,
    }
    if by == "county" and len(groups) == 1:
        delta["focus"] = {
            "module": "fields",
            "entity": {"type": "county", "label": str(groups.iloc[0]["label"])},
            "metric": metric,
        }

    meta = {
        "routed": "genericQuery",
        "intent": f"by_{by}",
        "metric": metric,
        "groups": len(groups),
        "continuation": paged.continuation.to_dict() if paged.continuation else None,
    }
    return GenericAnswer(ok=True, answer=paged.answer, meta=meta, context_delta=delta)


# ---------------------------------------------------------------------------
# Query shapes
# ---------------------------------------------------------------------------

def _count_counties(frame: pd.DataFrame, include_archived: bool) -> GenericAnswer:
    keys = {k for k in frame["countyKey"].astype(str) if k}
    return GenericAnswer(
        ok=True,
        answer=f"Counties (from fields, {scope_label(include_archived)}): {fmt_int(len(keys))}.",
        meta={"routed": "genericQuery", "intent": "count_counties", "count": len(keys)},
        context_delta={"last_intent": "count_counties", "last_by": "county"},
    )


def _count_farms(frame: pd.DataFrame, include_archived: bool, county: str) -> GenericAnswer:
    if county:
        frame = frame.loc[county_mask(frame, county)]
    farm_ids = {f for f in frame["farmId"].astype(str).str.strip() if f}
    where = f" in {county} County" if county else ""
    delta: Dict[str, Any] = {"last_intent": "count_farms", "last_by": "farm"}
    if county:
        delta["last_entity"] = {"type": "county", "name": county}
    return GenericAnswer(
        ok=True,
        answer=f"Farms{where} (from fields, {scope_label(include_archived)}): {fmt_int(len(farm_ids))}.",
        meta={"routed": "genericQuery", "intent": "count_farms_from_fields", "count": len(farm_ids)},
        context_delta=delta,
    )


def _farms_by_name(groups: pd.DataFrame) -> pd.DataFrame:
    """
    Collapse per-farm groups to one row per display name. Farms sharing a
    name keep every id in `key`, joined with FARM_KEY_SEP.
    """
    named = groups.assign(label=groups["label"].astype(str).str.strip())
    merged = (
        named.groupby("label", sort=False)
        .agg(key=("key", lambda keys: FARM_KEY_SEP.join(sorted(str(k) for k in keys))), tillable=("tillable", "sum"))
        .reset_index()
    )
    merged = merged.assign(_label_key=merged["label"].str.lower())
    return merged.sort_values(by=["_label_key", "label"], kind="mergesort").reset_index(drop=True)


def _list_farms(frame: pd.DataFrame, include_archived: bool, county: str, source_question: str) -> GenericAnswer:
    if county:
        frame = frame.loc[county_mask(frame, county)]
    groups = aggregate_groups(frame, "farm")
    if groups.empty:
        return GenericAnswer(ok=False, answer="No farms matched.", meta={"routed": "genericQuery", "intent": "list_farms"})

    records = _farms_by_name(groups).to_dict(orient="records")
    lines = [f"• {r['label']}" for r in records]
    where = f" in {county} County" if county else ""
    scope = "incl archived fields" if include_archived else "active fields only"
    title = f"Farms{where} ({scope}): {fmt_int(len(lines))}"
    paged = build_paged_answer(title, lines, PAGE_SIZE_FARMS)

    # Kept as a by-farm table with values hidden so "with acres" can reveal them.
    last_result = LastResult(
        kind="by_farm",
        metric="tillable",
        items=tuple(ResultItem(label=str(r["label"]), value=float(r["tillable"]), key=str(r["key"])) for r in records),
        by="farm",
        include_archived=include_archived,
        show_values=False,
        source_question=source_question,
        title=title,
    )
    return GenericAnswer(
        ok=True,
        answer=paged.answer,
        meta={
            "routed": "genericQuery",
            "intent": "list_farms",
            "continuation": paged.continuation.to_dict() if paged.continuation else None,
        },
        context_delta={
            "last_intent": "list_farms",
            "last_by": "farm",
            "last_result": last_result.to_dict(),
            "continuation": paged.continuation.to_dict() if paged.continuation else None,
        },
    )


def list_fields_in_county(
    frame: pd.DataFrame,
    *,
    county: str,
    include_archived: bool,
    metric: str,
    show_values: bool,
    source_question: str = "",
) -> GenericAnswer:
    """
    Fields whose county matches `county`. For HEL/CRP only fields carrying
    that acreage are listed.
    """
    matches = frame.loc[county_mask(frame, county)]
    col = METRIC_COLUMNS.get(metric, "tillable")
    if metric in ("hel", "crp"):
        matches = matches.loc[matches[col] > 0]

    rows = [(field_label(r), float(r[col]), str(r["id"])) for r in matches.to_dict(orient="records")]
    rows.sort(key=lambda t: field_sort_key(t[0]))

    title = f"Fields in {county} County ({scope_label(include_archived)}): {fmt_int(len(rows))}"
    if not rows:
        return GenericAnswer(
            ok=False,
            answer=f"No fields found in {county} County.",
            meta={"routed": "genericQuery", "intent": "list_fields_in_county", "county": county},
        )

    lines = [format_row(label, {metric: value}, metric, show_values=show_values) for label, value, _ in rows]
    paged = build_paged_answer(title, lines, PAGE_SIZE_FIELDS)

    last_result = LastResult(
        kind="field_list",
        metric=metric,
        items=tuple(ResultItem(label=label, value=value, key=key) for label, value, key in rows),
        include_archived=include_archived,
        show_values=show_values,
        source_question=source_question,
        title=title,
    )
    return GenericAnswer(
        ok=True,
        answer=paged.answer,
        meta={
            "routed": "genericQuery",
            "intent": "list_fields_in_county",
            "county": county,
            "continuation": paged.continuation.to_dict() if paged.continuation else None,
        },
        context_delta={
            "last_intent": "list_fields_in_county",
            "last_metric": metric,
            "last_entity": {"type": "county", "name": county},
            "last_result": last_result.to_dict(),
            "continuation": paged.continuation.to_dict() if paged.continuation else None,
        },
    )


def try_generic_query(
    question: str,
    snapshot: SnapshotHandle,
    include_archived: bool = False,
) -> Optional[GenericAnswer]:
    """
    Answer count / list / group-by questions over field records.

    Returns None when the question is not one of the supported shapes, so the
    caller can hand it to a specific handler instead.
    """
    raw = str(question or "")
    q = normalize(raw)

    if not q or _BLOCKED_RE.search(q):
        return None
    if not (has_any(q, LIKELY_TERMS) or has_word(q, "hel") or has_word(q, "crp")):
        return None

    if not snapshot.is_open:
        raise QueryEngineError("Snapshot is not open; call SnapshotHandle.open() first.")

    frame = eligible_fields(snapshot.fields_frame(), include_archived)
    by_county = wants_by_county(q)
    by_farm = wants_by_farm(q)
    grouped = by_county or by_farm
    county = extract_county_guess(raw)

    # Checked in this order: "how many counties do we farm in" mentions farms,
    # and "list fields in X county" must not fall into the by-county grouping.
    if wants_count(q) and has_any(q, ("county", "counties")) and not grouped and not county and "field" not in q:
        logger.info("Generic query: count counties")
        return _count_counties(frame, include_archived)

    if wants_count(q) and "farm" in q and not grouped and "field" not in q:
        logger.info("Generic query: count farms (county=%s)", county or "-")
        return _count_farms(frame, include_archived, county)

    if (wants_list(q) or has_word(q, "all")) and "farm" in q and not grouped and "field" not in q:
        logger.info("Generic query: list farms (county=%s)", county or "-")
        return _list_farms(frame, include_archived, county, raw)

    if county and "field" in q and not grouped and (
        wants_list(q) or wants_count(q) or has_any(q, ("which", "what"))
    ):
        metric = metric_from_question(q, default="tillable")
        show_values = wants_acres(q) or metric in ("hel", "crp")
        logger.info("Generic query: list fields in county %s (metric=%s)", county, metric)
        return list_fields_in_county(
            frame,
            county=county,
            include_archived=include_archived,
            metric=metric,
            show_values=show_values,
            source_question=raw,
        )

    if grouped and (wants_acres(q) or wants_count(q) or has_any(q, ("hel", "crp", "field", "total"))):
        by = "county" if by_county else "farm"
        metric = metric_from_question(q)
        logger.info("Generic query: %s by %s", metric, by)
        return grouped_result(
            snapshot, by=by, metric=metric, include_archived=include_archived, source_question=raw
        )

    return None
