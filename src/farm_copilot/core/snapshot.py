from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from farm_copilot.config import SNAPSHOT_FILE, SNAPSHOT_TIMEOUT_SECONDS, SNAPSHOT_URL
from farm_copilot.core.field_data import build_fields_frame

logger = logging.getLogger(__name__)


class SnapshotLoaderError(Exception):
    """Raised when a snapshot cannot be read, fetched or parsed."""


def _build_retry_session() -> requests.Session:
    """
    Build a requests Session with conservative retries.
    Snapshot buckets behind a CDN can be slow or transiently flaky.
    """
    session = requests.Session()

    retry = Retry(
        total=5,
        connect=5,
        read=5,
        status=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


def _read_json_file(path: Path) -> Dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SnapshotLoaderError(f"Cannot read snapshot file {path}: {exc}") from exc
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise SnapshotLoaderError(f"Snapshot file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SnapshotLoaderError(f"Unexpected snapshot root type in {path}: {type(data)}")
    return data


def _fetch_json(session: requests.Session, url: str, timeout_seconds: int) -> Dict[str, Any]:
    try:
        resp = session.get(url, timeout=timeout_seconds)
    except requests.RequestException as exc:
        raise SnapshotLoaderError(f"HTTP error while fetching snapshot: {exc}") from exc

    if resp.status_code != 200:
        preview = (resp.text or "")[:200]
        raise SnapshotLoaderError(f"Snapshot URL returned HTTP {resp.status_code}. Preview: {preview}")

    try:
        data = resp.json()
    except ValueError as exc:
        preview = (resp.text or "")[:200]
        raise SnapshotLoaderError(f"Non-JSON snapshot response. Preview: {preview}") from exc

    if not isinstance(data, dict):
        raise SnapshotLoaderError(f"Unexpected snapshot root type: {type(data)}")
    return data


def find_collections_root(data: Any) -> Optional[Dict[str, Any]]:
    """
    Locate the collection map inside a snapshot document.

    Supported layouts (in order):
      - data.__collections__
      - __collections__
      - data.{farms, fields}
      - {farms, fields}
    """
    if not isinstance(data, dict):
        return None
    inner = data.get("data")
    if isinstance(inner, dict) and isinstance(inner.get("__collections__"), dict):
        return inner["__collections__"]
    if isinstance(data.get("__collections__"), dict):
        return data["__collections__"]
    if isinstance(inner, dict) and "farms" in inner and "fields" in inner:
        return inner
    if "farms" in data and "fields" in data:
        return data
    return None


def _snapshot_id_from_source(source: str) -> Optional[str]:
    m = re.search(r"([A-Za-z0-9_-]+)\.json(\?.*)?$", source or "")
    return m.group(1) if m else None


@dataclass
class SnapshotHandle:
    """
    Read-only handle on one snapshot of the farm document store.

    The caller owns the lifecycle: open once, read many times, call refresh()
    explicitly to pick up a newer snapshot. Nothing here is cached at module
    level; all derived frames hang off the handle and are dropped on refresh.
    """
    source: str
    loader: Callable[["SnapshotHandle"], Dict[str, Any]]
    timeout_seconds: int = SNAPSHOT_TIMEOUT_SECONDS

    data: Optional[Dict[str, Any]] = None
    loaded_at: Optional[datetime] = None

    _session: Optional[requests.Session] = field(default=None, repr=False)
    _fields_frame: Optional[pd.DataFrame] = field(default=None, repr=False)

    # -----------------------------------------------------------------------
    # Constructors
    # -----------------------------------------------------------------------

    @classmethod
    def from_file(cls, path: str | Path) -> "SnapshotHandle":
        p = Path(path)
        return cls(source=str(p), loader=lambda _h: _read_json_file(p))

    @classmethod
    def from_url(cls, url: str, timeout_seconds: int = SNAPSHOT_TIMEOUT_SECONDS) -> "SnapshotHandle":
        return cls(
            source=url,
            loader=lambda h: _fetch_json(h.session, url, h.timeout_seconds),
            timeout_seconds=timeout_seconds,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "memory") -> "SnapshotHandle":
        """Wrap an already-parsed snapshot document (tests, notebooks)."""
        return cls(source=source, loader=lambda _h: data).open()

    @classmethod
    def from_config(cls) -> "SnapshotHandle":
        if SNAPSHOT_FILE:
            return cls.from_file(SNAPSHOT_FILE)
        if SNAPSHOT_URL:
            return cls.from_url(SNAPSHOT_URL)
        raise SnapshotLoaderError("Missing SNAPSHOT_FILE or SNAPSHOT_URL in the environment.")

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = _build_retry_session()
        return self._session

    @property
    def is_open(self) -> bool:
        return self.data is not None

    def open(self) -> "SnapshotHandle":
        if self.data is None:
            self._load()
        return self

    def refresh(self) -> "SnapshotHandle":
        self._load()
        return self

    def _load(self) -> None:
        logger.info("Loading snapshot from %s", self.source)
        data = self.loader(self)
        if find_collections_root(data) is None:
            raise SnapshotLoaderError(f"Snapshot from {self.source} has no farms/fields collections.")
        self.data = data
        self.loaded_at = datetime.now(timezone.utc)
        self._fields_frame = None
        logger.info("Snapshot loaded: %s fields, %s farms", len(self.fields), len(self.farms))

    @property
    def snapshot_id(self) -> Optional[str]:
        return _snapshot_id_from_source(self.source)

    def status(self) -> Dict[str, Any]:
        return {
            "ok": self.is_open,
            "source": self.source,
            "snapshot_id": self.snapshot_id,
            "loaded_at": self.loaded_at.isoformat() if self.loaded_at else None,
        }

    # -----------------------------------------------------------------------
    # Collections
    # -----------------------------------------------------------------------

    def collections(self) -> Dict[str, Any]:
        root = find_collections_root(self.data) if self.data is not None else None
        return root or {}

    def collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        """
        Return a collection as {doc_id: record}. List-shaped collections are
        keyed by their 'id' attribute (or position when missing).
        """
        raw = self.collections().get(name)
        if isinstance(raw, dict):
            return {str(k): v for k, v in raw.items() if isinstance(v, dict)}
        if isinstance(raw, list):
            out: Dict[str, Dict[str, Any]] = {}
            for i, rec in enumerate(raw):
                if isinstance(rec, dict):
                    out[str(rec.get("id") or i)] = rec
            return out
        return {}

    @property
    def fields(self) -> Dict[str, Dict[str, Any]]:
        return self.collection("fields")

    @property
    def farms(self) -> Dict[str, Dict[str, Any]]:
        return self.collection("farms")

    @property
    def rtk_towers(self) -> Dict[str, Dict[str, Any]]:
        return self.collection("rtkTowers")

    def fields_frame(self) -> pd.DataFrame:
        """
        Field records as a DataFrame (one row per field, derived countyKey and
        active columns). Built once per loaded snapshot.
        """
        if self._fields_frame is None:
            self._fields_frame = build_fields_frame(self.fields, self.farms)
        return self._fields_frame

    def record_frame(self, name: str) -> pd.DataFrame:
        recs = [{"id": doc_id, **rec} for doc_id, rec in self.collection(name).items()]
        if not recs:
            return pd.DataFrame()
        return pd.DataFrame.from_records(recs)
