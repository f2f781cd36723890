"""
Test configuration: puts src/ on sys.path and provides in-memory snapshots.

Snapshot layout used throughout (active unless noted):

  Sangamon, IL  0801-Lloyd N340  Lov Shack     100 till  10 HEL        Elm Grove
                0832-North       Lov Shack      50 till         5 CRP  Elm Grove
                0504-Bierman     Bierman Home   25 till   2 HEL        Stonington
  Macon, IL     0411-Stone Seed  Stone Seed    200 till                Stonington
                0900-Old Creek   Stone Seed     40 till   4 HEL        Elm Grove   (archived)
  Logan, IL     0110-Logan East  Bierman Home   80 till        12 CRP
"""

import copy
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).parent.parent
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from farm_copilot.conversation.context import ConversationContext  # noqa: E402
from farm_copilot.core.snapshot import SnapshotHandle  # noqa: E402


def _field(name, farm_id, county, tillable, hel=0, crp=0, tower="", status="active"):
    return {
        "name": name,
        "farmId": farm_id,
        "county": county,
        "state": "IL",
        "status": status,
        "tillable": tillable,
        "helAcres": hel,
        "crpAcres": crp,
        "rtkTowerId": tower,
    }


SNAPSHOT_DOC = {
    "data": {
        "__collections__": {
            "farms": {
                "f1": {"name": "Lov Shack"},
                "f2": {"name": "Bierman Home"},
                "f3": {"name": "Stone Seed"},
            },
            "fields": {
                "fld-0801": _field("0801-Lloyd N340", "f1", "Sangamon", 100, hel=10, tower="t1"),
                "fld-0832": _field("0832-North", "f1", "Sangamon", 50, crp=5, tower="t1"),
                "fld-0504": _field("0504-Bierman", "f2", "Sangamon", 25, hel=2, tower="t2"),
                "fld-0411": _field("0411-Stone Seed", "f3", "Macon", 200, tower="t2"),
                "fld-0900": _field("0900-Old Creek", "f3", "Macon", 40, hel=4, tower="t1", status="Archived"),
                "fld-0110": _field("0110-Logan East", "f2", "Logan", 80, crp=12),
            },
            "rtkTowers": {
                "t1": {"name": "Elm Grove", "networkId": "4010", "frequency": "464.5"},
                "t2": {"name": "Stonington", "networkId": "4022"},
            },
            "binMovements": [
                {"id": "m1", "direction": "in", "bushels": 1000, "siteName": "FPI Macomb"},
                {"id": "m2", "direction": "out", "bushels": 400, "siteName": "FPI Macomb"},
                {"id": "m3", "direction": "in", "bushels": 250, "siteName": "Home"},
            ],
            "binSites": {
                "s1": {"name": "Home", "status": "active"},
            },
            "boundary_requests": {
                "b1": {"status": "Open", "farm": "Lov Shack"},
                "b2": {"status": "Completed.", "farm": "Stone Seed"},
            },
        }
    }
}


@pytest.fixture
def snapshot_doc():
    return copy.deepcopy(SNAPSHOT_DOC)


@pytest.fixture
def snapshot(snapshot_doc):
    return SnapshotHandle.from_dict(snapshot_doc, source="memory/test-snapshot.json")


@pytest.fixture
def big_snapshot():
    """45 active fields in Adams County on one farm."""
    fields = {
        f"a{i:02d}": _field(f"{i:04d}-Plot", "fa", "Adams", 10 + i)
        for i in range(1, 46)
    }
    doc = {"farms": {"fa": {"name": "Adams Farm"}}, "fields": fields}
    return SnapshotHandle.from_dict(doc)


@pytest.fixture
def shared_name_snapshot():
    """Two farms named Home, plus a Ridge farm and a field whose farmId 'Ridge' is not in farms."""
    doc = {
        "farms": {
            "f1": {"name": "Home"},
            "f2": {"name": "Home"},
            "f3": {"name": "Ridge"},
        },
        "fields": {
            "h1": _field("0101-Home North", "f1", "Sangamon", 100, hel=10),
            "h2": _field("0102-Home South", "f2", "Macon", 50, crp=5),
            "r1": _field("0201-Ridge", "f3", "Logan", 30),
            "r2": _field("0202-Ridge Back", "Ridge", "Logan", 20),
        },
    }
    return SnapshotHandle.from_dict(doc)


@pytest.fixture
def empty_context():
    return ConversationContext()
