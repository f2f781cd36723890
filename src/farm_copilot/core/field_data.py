from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from farm_copilot.conversation.normalize import normalize

FIELD_COLUMNS = [
    "id",
    "name",
    "farmId",
    "farmName",
    "county",
    "state",
    "status",
    "tillable",
    "helAcres",
    "crpAcres",
    "rtkTowerId",
    "countyKey",
    "active",
]

# Snapshot attribute -> frame column for the per-field acreage metrics.
METRIC_COLUMNS = {
    "tillable": "tillable",
    "hel": "helAcres",
    "crp": "crpAcres",
}

METRIC_LABELS = {
    "tillable": "tillable",
    "hel": "HEL",
    "crp": "CRP",
}


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def num(value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(out) or math.isinf(out):
        return 0.0
    return out


def fmt_int(value: Any) -> str:
    return f"{int(round(num(value))):,}"


def fmt_acres(value: Any) -> str:
    text = f"{num(value):,.2f}"
    return text.rstrip("0").rstrip(".")


def is_active_status(status: Any) -> bool:
    """A field is active unless its status is 'archived' or 'inactive'."""
    v = normalize(status)
    if not v:
        return True
    return v not in ("archived", "inactive")


def county_key(county: Any, state: Any = "") -> str:
    """
    Grouping key for counties: "Sangamon, IL" when a state is present.
    Every grouping by county goes through this so buckets never split.
    """
    c = str(county or "").strip()
    st = str(state or "").strip()
    if not c:
        return ""
    return f"{c}, {st}" if st else c


def county_name_from_key(key: str) -> str:
    """'Sangamon, IL' -> 'Sangamon'."""
    return str(key or "").split(",", 1)[0].strip()


def farm_name(farms: Mapping[str, Mapping[str, Any]], farm_id: str) -> str:
    farm = farms.get(farm_id) if farm_id else None
    name = str((farm or {}).get("name") or "").strip()
    return name or str(farm_id or "")


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------

def build_fields_frame(
    fields: Mapping[str, Mapping[str, Any]],
    farms: Mapping[str, Mapping[str, Any]],
) -> pd.DataFrame:
    rows: List[Dict[str, Any]] = []
    for field_id, f in fields.items():
        farm_id = str(f.get("farmId") or "").strip()
        county = str(f.get("county") or "").strip()
        state = str(f.get("state") or "").strip()
        rows.append(
            {
                "id": str(field_id),
                "name": str(f.get("name") or field_id).strip(),
                "farmId": farm_id,
                "farmName": farm_name(farms, farm_id) if farm_id else "",
                "county": county,
                "state": state,
                "status": str(f.get("status") or "").strip(),
                "tillable": num(f.get("tillable")),
                "helAcres": num(f.get("helAcres")),
                "crpAcres": num(f.get("crpAcres")),
                "rtkTowerId": str(f.get("rtkTowerId") or "").strip(),
                "countyKey": county_key(county, state),
                "active": is_active_status(f.get("status")),
            }
        )
    return pd.DataFrame(rows, columns=FIELD_COLUMNS)


def eligible_fields(frame: pd.DataFrame, include_archived: bool) -> pd.DataFrame:
    """Apply the active/archived scope before any aggregation."""
    if include_archived or frame.empty:
        return frame
    return frame.loc[frame["active"].astype(bool)]


def county_mask(frame: pd.DataFrame, county: str) -> pd.Series:
    needle = normalize(county)
    counties = frame["county"].astype(str).str.strip().str.lower()
    if not needle:
        return counties != counties
    return (counties == needle) | counties.str.startswith(needle) | counties.str.contains(needle, regex=False)


def field_label(row: Mapping[str, Any]) -> str:
    """'0801-Lloyd N340 (Lov Shack)' when the farm name is known."""
    label = str(row.get("name") or row.get("id") or "").strip()
    farm = str(row.get("farmName") or "").strip()
    return f"{label} ({farm})" if farm and farm != label else label


# ---------------------------------------------------------------------------
# Name resolution
# ---------------------------------------------------------------------------

def score_name(hay: Any, needle: Any) -> int:
    """exact > startsWith > includes > token overlap."""
    h = normalize(hay)
    n = normalize(needle)
    if not h or not n:
        return 0
    if h == n:
        return 100
    if h.startswith(n):
        return 90
    if n in h:
        return 75

    hits = sum(1 for t in n.split() if len(t) >= 2 and t in h)
    return min(74, 50 + hits * 8) if hits else 0


@dataclass
class NameMatch:
    resolved: bool
    key: str = ""
    name: str = ""
    confidence: int = 0
    candidates: List[Tuple[str, str, int]] = field(default_factory=list)


def resolve_name(names: Mapping[str, str], query: str, *, strong: int = 90, gap: int = 12) -> NameMatch:
    """
    Pick the best {key: display name} entry for a free-text query.

    A direct key hit wins; otherwise the top score must be strong and
    separated from the runner-up by `gap` points.
    """
    q = str(query or "").strip()
    if not q:
        return NameMatch(resolved=False)
    if q in names:
        return NameMatch(resolved=True, key=q, name=names[q], confidence=100)

    scored = []
    for key, name in names.items():
        sc = max(score_name(name, q), score_name(key, q))
        if sc > 0:
            scored.append((key, name, sc))
    scored.sort(key=lambda t: (-t[2], normalize(t[1])))

    if not scored:
        return NameMatch(resolved=False)

    top = scored[0]
    second = scored[1] if len(scored) > 1 else None
    separated = second is None or (top[2] - second[2] >= gap)
    if top[2] >= strong and separated:
        return NameMatch(resolved=True, key=top[0], name=top[1], confidence=top[2])
    return NameMatch(resolved=False, candidates=scored[:3])


def resolve_field(frame: pd.DataFrame, query: str, include_archived: bool = False) -> NameMatch:
    scope = frame if include_archived else eligible_fields(frame, include_archived)
    if str(query or "").strip() in set(frame["id"]):
        # Direct id lookups ignore the scope; the answer labels archived fields.
        scope = frame
    names = dict(zip(scope["id"], scope["name"]))
    return resolve_name(names, query)


def strip_entity_words(text: str, words: Tuple[str, ...]) -> str:
    """Remove trailing/leading entity nouns ('farm', 'tower', ...) from a name."""
    out = str(text or "")
    for w in words:
        out = re.sub(rf"\b{re.escape(w)}\b", " ", out, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", out).strip(" ?.!,")


def field_sort_key(label: str) -> Tuple[int, str, str]:
    """Sort '0504-Bierman' style labels by number, then name."""
    s = str(label or "").strip()
    m = re.match(r"^\s*(\d{3,4})\s*[-–—]\s*(.*)$", s)
    n = int(m.group(1)) if m else 999999
    rest = normalize(m.group(2) if m else s)
    return n, rest, normalize(s)


def find_mentioned(names: Mapping[str, str], text: str, fallback: str = "") -> NameMatch:
    """
    Entry whose display name appears verbatim in `text` (longest wins),
    else scored resolution of `fallback`.
    """
    hay = " " + re.sub(r"[?!,]|\.(?=\s|$)", " ", normalize(text)) + " "
    best: Optional[Tuple[str, str]] = None
    for key, name in names.items():
        n = normalize(name)
        if len(n) < 3 or f" {n} " not in hay:
            continue
        if best is None or len(n) > len(normalize(best[1])):
            best = (key, name)
    if best is not None:
        return NameMatch(resolved=True, key=best[0], name=best[1], confidence=100)
    return resolve_name(names, fallback) if fallback else NameMatch(resolved=False)
