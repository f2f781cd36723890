from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from farm_copilot.conversation.intent import Intent
from farm_copilot.core.field_data import fmt_int, num
from farm_copilot.core.paging import build_paged_answer
from farm_copilot.core.snapshot import SnapshotHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionSummary:
    """
    How to summarize one snapshot collection: record count per group, plus
    an optional numeric total. The first collection name present in the
    snapshot is used, likewise the first group column present in the records.
    """
    title: str
    collections: Tuple[str, ...]
    group_by: Tuple[str, ...] = ()
    sum_column: str = ""
    unit: str = ""
    filter_column: str = ""
    filter_values: Tuple[str, ...] = ()


_BAG_EVENTS = ("grain_bag_events", "grainBagEvents")
_BOUNDARIES = ("boundary_requests", "boundaryRequests")

# Keyed by (topic, mode); (topic, "") is the fallback for a topic.
SUMMARIES: Mapping[Tuple[str, str], CollectionSummary] = MappingProxyType(
    {
        ("grain", "bags"): CollectionSummary(
            "Grain bag inventory", ("inventoryGrainBagMovements",), ("sku", "cropType", "crop"), "count", "bags"
        ),
        ("grain", "bins"): CollectionSummary(
            "Grain in bins", ("binMovements",), ("siteName", "siteId"), "bushels", "bu"
        ),
        ("grain", ""): CollectionSummary(
            "Grain summary", ("inventoryGrainBagMovements", "binMovements", "grain_bag_events")
        ),
        ("grainBagEvents", "putdowns"): CollectionSummary(
            "Grain bag placements", _BAG_EVENTS, ("fieldName", "field", "farmName"),
            filter_column="type", filter_values=("putdown", "pickup"),
        ),
        ("grainBagEvents", ""): CollectionSummary("Grain bag activity", _BAG_EVENTS, ("type",)),
        ("binSites", ""): CollectionSummary("Bin sites", ("binSites",), ("status", "farmName")),
        ("binMovements", ""): CollectionSummary("Bin movements", ("binMovements",), ("direction",), "bushels", "bu"),
        ("boundaryRequests", "open"): CollectionSummary(
            "Open boundary requests", _BOUNDARIES, ("farm", "farmName", "status"),
            filter_column="status", filter_values=("open", "pending", "new"),
        ),
        ("boundaryRequests", "completed"): CollectionSummary(
            "Completed boundary requests", _BOUNDARIES, ("farm", "farmName", "status"),
            filter_column="status", filter_values=("completed", "closed", "done"),
        ),
        ("boundaryRequests", ""): CollectionSummary("Boundary requests", _BOUNDARIES, ("status",)),
        ("fieldMaintenance", ""): CollectionSummary("Field maintenance", ("fieldMaintenance",), ("status", "topic")),
        ("equipment", ""): CollectionSummary("Equipment", ("equipment",), ("type", "status")),
    }
)


def summary_for(topic: str, mode: str = "") -> Optional[CollectionSummary]:
    summary = SUMMARIES.get((topic, mode)) or SUMMARIES.get((topic, ""))
    if summary is None:
        return None
    if topic == "fieldMaintenance" and mode:
        return CollectionSummary(
            f"Field maintenance ({mode})", summary.collections, ("topic", "farmName", "status"),
            filter_column="status", filter_values=(mode,),
        )
    return summary


def _status_key(value: Any) -> str:
    return str(value or "").strip().rstrip(".").lower()


def _frame_for(summary: CollectionSummary, snapshot: SnapshotHandle) -> Tuple[str, pd.DataFrame]:
    for name in summary.collections:
        frame = snapshot.record_frame(name)
        if not frame.empty:
            return name, frame
    return summary.collections[0], pd.DataFrame()


def _group_label(value: Any) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "unknown"
    return str(value).strip() or "unknown"


def _apply_filter(summary: CollectionSummary, frame: pd.DataFrame) -> pd.DataFrame:
    if not summary.filter_column or frame.empty:
        return frame
    if summary.filter_column not in frame.columns:
        return frame.iloc[0:0]
    keys = frame[summary.filter_column].map(_status_key)
    mask = keys.map(lambda k: any(v in k for v in summary.filter_values))
    return frame.loc[mask.astype(bool)]


def _group_lines(summary: CollectionSummary, frame: pd.DataFrame) -> List[str]:
    col = next((c for c in summary.group_by if c in frame.columns), None)
    if col is None:
        return []

    has_sum = bool(summary.sum_column) and summary.sum_column in frame.columns
    work = pd.DataFrame(
        {
            "_group": frame[col].map(_group_label),
            "_value": frame[summary.sum_column].map(num) if has_sum else 0.0,
        }
    )
    by_group = work.groupby("_group")["_value"]
    grouped = pd.DataFrame({"records": by_group.size(), "total": by_group.sum()}).reset_index()

    grouped = grouped.sort_values(by=["records", "_group"], ascending=[False, True], kind="mergesort")
    lines = []
    for r in grouped.to_dict(orient="records"):
        line = f"• {r['_group']}: {fmt_int(r['records'])}"
        if has_sum:
            line += f" · {fmt_int(r['total'])} {summary.unit}".rstrip()
        lines.append(line)
    return lines


def summarize(summary: CollectionSummary, snapshot: SnapshotHandle, topic: str) -> Dict[str, Any]:
    if not summary.group_by:
        # Multi-collection overview: one count per collection.
        counts = [(name, len(snapshot.collection(name))) for name in summary.collections]
        if not any(n for _, n in counts):
            return {"ok": False, "answer": f"No {summary.title.lower()} records found.", "meta": {"routed": "collections", "intent": topic}}
        lines = [f"• {name}: {fmt_int(n)} records" for name, n in counts]
        return {
            "ok": True,
            "answer": "\n".join([f"{summary.title}:"] + lines),
            "meta": {"routed": "collections", "intent": topic, "counts": dict(counts)},
            "context_delta": {"last_intent": topic},
        }

    name, frame = _frame_for(summary, snapshot)
    frame = _apply_filter(summary, frame)
    if frame.empty:
        logger.warning("No %s records for %s", name, summary.title)
        return {"ok": False, "answer": f"No {summary.title.lower()} found.", "meta": {"routed": "collections", "intent": topic, "collection": name}}

    title = f"{summary.title} ({fmt_int(len(frame))} records):"
    lines = _group_lines(summary, frame)
    if summary.sum_column and summary.sum_column in frame.columns:
        total = frame[summary.sum_column].map(num).sum()
        title = f"{summary.title} ({fmt_int(len(frame))} records, {fmt_int(total)} {summary.unit}):"

    paged = build_paged_answer(title, lines)
    cont = paged.continuation.to_dict() if paged.continuation else None
    return {
        "ok": True,
        "answer": paged.answer if lines else title.rstrip(":") + ".",
        "meta": {"routed": "collections", "intent": topic, "collection": name, "count": len(frame), "continuation": cont},
        "context_delta": {"last_intent": topic, "continuation": cont},
    }


def make_collection_handler(topic: str):
    """Handler for a collection-summary topic (grain, binSites, equipment, ...)."""

    def handler(question: str, snapshot: SnapshotHandle, intent: Optional[Intent] = None) -> Dict[str, Any]:
        summary = summary_for(topic, intent.mode if intent else "")
        if summary is None:
            return {"ok": False, "answer": "", "meta": {"routed": "collections", "intent": topic}}
        logger.info("Collection summary for %s (%s)", topic, summary.title)
        return summarize(summary, snapshot, topic)

    handler.__name__ = f"handle_{topic}"
    return handler


COLLECTION_TOPICS = (
    "grain",
    "grainBagEvents",
    "binSites",
    "binMovements",
    "boundaryRequests",
    "fieldMaintenance",
    "equipment",
)
