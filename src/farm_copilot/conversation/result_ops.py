from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from farm_copilot.conversation.context import LastResult, ResultItem
from farm_copilot.conversation.followup import ResultOp
from farm_copilot.core.field_data import METRIC_COLUMNS, eligible_fields
from farm_copilot.core.paging import build_paged_answer
from farm_copilot.core.query_engine import (
    FARM_KEY_SEP,
    PAGE_SIZE_FARMS,
    PAGE_SIZE_FIELDS,
    PAGE_SIZE_GROUPS,
    aggregate_groups,
    format_metric_value,
    format_row,
    try_generic_query,
)
from farm_copilot.core.snapshot import SnapshotHandle

logger = logging.getLogger(__name__)

# rerun(question, include_archived) -> handler-shaped dict, or None when the
# question is not recognized.
Rerun = Callable[[str, bool], Optional[Dict[str, Any]]]

GROUPED_KINDS = ("by_county", "by_farm")
METRICS = ("fields", "tillable", "hel", "crp")


def _fail(answer: str, op: str) -> Dict[str, Any]:
    return {"ok": False, "answer": answer, "meta": {"routed": "resultOp", "intent": f"result_op:{op}"}}


def _page_size(result: LastResult) -> int:
    if result.kind == "by_farm" and not result.show_values:
        return PAGE_SIZE_FARMS
    if result.kind in GROUPED_KINDS:
        return PAGE_SIZE_GROUPS
    return PAGE_SIZE_FIELDS


# ---------------------------------------------------------------------------
# Metric lookups for items of a previous result
# ---------------------------------------------------------------------------

def item_values(result: LastResult, snapshot: SnapshotHandle) -> Dict[str, Dict[str, float]]:
    """
    Every metric for every item key of a result: re-aggregated groups for
    grouped results, the field record for field lists. Other kinds have no
    lookup and return {}.
    """
    if not snapshot.is_open:
        return {}

    if result.kind in GROUPED_KINDS:
        frame = eligible_fields(snapshot.fields_frame(), result.include_archived)
        groups = aggregate_groups(frame, result.by or result.kind[3:])
        return {
            str(r["key"]): {m: float(r[m]) for m in METRICS}
            for r in groups.to_dict(orient="records")
        }

    if result.kind == "field_list":
        frame = snapshot.fields_frame()
        out: Dict[str, Dict[str, float]] = {}
        for r in frame.to_dict(orient="records"):
            vals = {m: float(r[col]) for m, col in METRIC_COLUMNS.items()}
            vals["fields"] = 1.0
            out[str(r["id"])] = vals
        return out

    return {}


def values_for(lookup: Dict[str, Dict[str, float]], key: str) -> Dict[str, float]:
    """Values for one item key; a farm-list key naming several farms sums their groups."""
    if key in lookup or FARM_KEY_SEP not in key:
        return dict(lookup.get(key, {}))
    out: Dict[str, float] = {}
    for part in key.split(FARM_KEY_SEP):
        for metric, value in lookup.get(part, {}).items():
            out[metric] = out.get(metric, 0.0) + value
    return out


def render_result(result: LastResult, snapshot: SnapshotHandle) -> List[str]:
    lookup = item_values(result, snapshot) if result.columns else {}
    lines = []
    for item in result.items:
        values = values_for(lookup, item.key)
        values[result.metric] = item.value
        lines.append(format_row(item.label, values, result.metric, result.columns, result.show_values))
    return lines


def _respond(op: ResultOp, result: LastResult, snapshot: SnapshotHandle) -> Dict[str, Any]:
    lines = render_result(result, snapshot)
    paged = build_paged_answer(result.title or "Results:", lines, _page_size(result))
    cont = paged.continuation.to_dict() if paged.continuation else None
    return {
        "ok": True,
        "answer": paged.answer,
        "meta": {"routed": "resultOp", "intent": f"result_op:{op.op}", "op": op.to_dict(), "continuation": cont},
        "context_delta": {"last_result": result.to_dict(), "continuation": cont},
    }


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def sort_result(result: LastResult, mode: str) -> LastResult:
    items = list(result.items)
    if mode == "az":
        items.sort(key=lambda i: i.label.lower())
    elif mode == "smallest":
        items.sort(key=lambda i: (i.value, i.label.lower()))
    else:
        items.sort(key=lambda i: (-i.value, i.label.lower()))
    return replace(result, items=tuple(items))


def total_result(result: LastResult) -> Dict[str, Any]:
    total = sum(i.value for i in result.items)
    metric = result.metric or "tillable"
    n = len(result.items)
    answer = f"Total across {n} {'row' if n == 1 else 'rows'}: {format_metric_value(metric, total)}."
    return {
        "ok": True,
        "answer": answer,
        "meta": {"routed": "resultOp", "intent": "result_op:total", "total": total, "metric": metric},
        "context_delta": {"last_result": result.to_dict()},
    }


def augment_result(result: LastResult, metric: str, snapshot: SnapshotHandle) -> Optional[LastResult]:
    if metric not in METRICS:
        return None
    if metric == result.metric:
        return replace(result, show_values=True)
    if not item_values(result, snapshot):
        return None
    columns = result.columns if metric in result.columns else result.columns + (metric,)
    if not result.show_values:
        # Hidden primary values are swapped for the requested metric.
        return _with_primary(result, metric, snapshot, columns=tuple(c for c in columns if c != metric))
    return replace(result, columns=columns)


def strip_result(result: LastResult, metric: str, snapshot: SnapshotHandle) -> Optional[LastResult]:
    if metric == "all":
        return replace(result, show_values=False, columns=())
    if metric in result.columns:
        return replace(result, columns=tuple(c for c in result.columns if c != metric))
    if metric == result.metric:
        if not result.columns:
            return replace(result, show_values=False)
        return _with_primary(result, result.columns[0], snapshot, columns=result.columns[1:])
    return None


def _with_primary(result: LastResult, metric: str, snapshot: SnapshotHandle, columns: tuple) -> Optional[LastResult]:
    lookup = item_values(result, snapshot)
    if not lookup:
        return None
    items = tuple(
        ResultItem(label=i.label, value=values_for(lookup, i.key).get(metric, 0.0), key=i.key)
        for i in result.items
    )
    return replace(result, metric=metric, items=items, columns=columns, show_values=True)


def _default_rerun(snapshot: SnapshotHandle) -> Rerun:
    def rerun(question: str, include_archived: bool) -> Optional[Dict[str, Any]]:
        ans = try_generic_query(question, snapshot, include_archived=include_archived)
        return ans.as_handler_result() if ans else None

    return rerun


def apply_result_op(
    op: Any,
    last_result: Any,
    snapshot: SnapshotHandle,
    rerun: Optional[Rerun] = None,
) -> Dict[str, Any]:
    """
    Transform the previous tabular answer instead of re-asking the question.
    Returns a handler-shaped dict; the updated result travels in
    context_delta["last_result"].
    """
    result_op = ResultOp.from_dict(op)
    result = LastResult.from_dict(last_result)
    if result_op is None:
        return _fail("I don't know how to change that result.", "unknown")
    if result is None:
        return _fail("There is no previous result to change.", result_op.op)

    logger.info("Result op %s on %s (%s items)", result_op.to_dict(), result.kind, len(result.items))

    if result_op.op == "sort":
        return _respond(result_op, sort_result(result, result_op.mode), snapshot)

    if result_op.op == "total":
        return total_result(result)

    if result_op.op == "augment":
        updated = augment_result(result, result_op.metric, snapshot)
        if updated is None:
            return _fail(f"I can't add {result_op.metric} to that result.", "augment")
        return _respond(result_op, updated, snapshot)

    if result_op.op == "strip":
        updated = strip_result(result, result_op.metric, snapshot)
        if updated is None:
            return _fail(f"That result has no {result_op.metric} column.", "strip")
        return _respond(result_op, updated, snapshot)

    # scope
    if not result.source_question:
        return _fail("I can't re-run that result with a different scope.", "scope")
    include_archived = bool(result_op.include_archived)
    out = (rerun or _default_rerun(snapshot))(result.source_question, include_archived)
    if not out:
        return _fail("I can't re-run that result with a different scope.", "scope")
    out = dict(out)
    delta = dict(out.get("context_delta") or {})
    delta["last_scope"] = {"include_archived": include_archived}
    out["context_delta"] = delta
    meta = dict(out.get("meta") or {})
    meta["op"] = result_op.to_dict()
    out["meta"] = meta
    return out
