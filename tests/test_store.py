import json
from pathlib import Path

import pytest

from phasegate.errors import NotFoundError
from phasegate.models import Finding, PhaseDefinition, Severity, WorkItem, WorkItemStatus
from phasegate.state import StateStoreError, WorkItemStore


def _item(item_id: str) -> WorkItem:
    phases = tuple(
        PhaseDefinition.from_dict(
            {
                "phase_name": name,
                "agent_id": "agent",
                "required_capabilities": ["read", "write:src"],
                "gate_rules": {"CRITICAL": "BLOCK", "MEDIUM": "WARN"},
                "max_retry": 1,
            }
        )
        for name in ("plan", "build")
    )
    return WorkItem(
        id=item_id, title="Add cache", description="Cache lookups", pipeline="p", phases=phases
    )


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = WorkItemStore(tmp_path / "state")
    item = _item("wi-1")
    item.status = WorkItemStatus.BLOCKED
    item.phase_index = 1
    item.findings.append(Finding(severity=Severity.CRITICAL, message="bad", location="src/a.py"))

    assert store.save(item.snapshot()) == 1
    assert store.save(item.snapshot()) == 2

    loaded = store.load("wi-1")
    assert loaded == item.snapshot()
    assert loaded.current_phase is not None and loaded.current_phase.name == "build"
    assert store.revision("wi-1") == 2

    envelope = json.loads((tmp_path / "state" / "items" / "wi-1.json").read_text(encoding="utf-8"))
    assert envelope["schema_version"] == 1
    assert envelope["data"]["status"] == "BLOCKED"


def test_list_orders_by_creation(tmp_path: Path) -> None:
    store = WorkItemStore(tmp_path)
    assert store.list() == []
    first, second = _item("wi-b"), _item("wi-a")
    second.created_at = "2099-01-01T00:00:00.000000+00:00"
    store.save(second.snapshot())
    store.save(first.snapshot())

    assert [snapshot.id for snapshot in store.list()] == ["wi-b", "wi-a"]


def test_unknown_and_invalid_ids(tmp_path: Path) -> None:
    store = WorkItemStore(tmp_path)

    with pytest.raises(NotFoundError):
        store.load("wi-missing")
    with pytest.raises(NotFoundError):
        store.load("../etc/passwd")


def test_corrupt_state_is_reported(tmp_path: Path) -> None:
    store = WorkItemStore(tmp_path)
    store.items_dir.mkdir(parents=True)
    (store.items_dir / "wi-bad.json").write_text("{", encoding="utf-8")

    with pytest.raises(StateStoreError):
        store.load("wi-bad")


def test_save_replaces_unreadable_state(tmp_path: Path) -> None:
    store = WorkItemStore(tmp_path)
    store.items_dir.mkdir(parents=True)
    (store.items_dir / "wi-a.json").write_text("{torn", encoding="utf-8")

    assert store.save(_item("wi-a")) == 1
    assert store.load("wi-a").id == "wi-a"
