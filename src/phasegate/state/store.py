from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from phasegate.errors import NotFoundError, PhasegateError
from phasegate.models import WorkItemSnapshot, utcnow_iso

ITEM_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

logger = logging.getLogger(__name__)


class StateStoreError(PhasegateError):
    """Raised when persisted work item state cannot be read or written."""


class WorkItemStore:
    """Persists work item snapshots as one JSON envelope per item."""

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.items_dir = self.root / "items"

    def _item_file(self, work_item_id: str) -> Path:
        if not ITEM_ID_PATTERN.match(work_item_id):
            raise NotFoundError(f"Invalid work item id: {work_item_id!r}")
        return self.items_dir / f"{work_item_id}.json"

    def _read_envelope(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt work item state in {path}: {exc}") from exc
        if isinstance(payload, dict) and "schema_version" in payload and "data" in payload:
            return payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": payload,
        }

    def save(self, snapshot: WorkItemSnapshot) -> int:
        """Write the snapshot atomically and return the new revision."""
        path = self._item_file(snapshot.id)
        try:
            current = self._read_envelope(path)
        except StateStoreError as exc:
            logger.warning("Overwriting unreadable state for %s: %s", snapshot.id, exc)
            current = None
        revision = int(current.get("revision", 0)) + 1 if current else 1
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": snapshot.to_dict(),
        }
        self.items_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{snapshot.id}-", dir=self.items_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(envelope, handle, ensure_ascii=False, separators=(",", ":"))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except OSError:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise
        return revision

    def revision(self, work_item_id: str) -> int:
        envelope = self._read_envelope(self._item_file(work_item_id))
        if envelope is None:
            raise NotFoundError(f"Work item not found: {work_item_id}")
        return int(envelope.get("revision", 1))

    def load(self, work_item_id: str) -> WorkItemSnapshot:
        envelope = self._read_envelope(self._item_file(work_item_id))
        if envelope is None:
            raise NotFoundError(f"Work item not found: {work_item_id}")
        try:
            return WorkItemSnapshot.from_dict(envelope["data"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(f"Unreadable work item state for {work_item_id}: {exc}") from exc

    def list(self) -> list[WorkItemSnapshot]:
        if not self.items_dir.exists():
            return []
        snapshots = [self.load(path.stem) for path in sorted(self.items_dir.glob("*.json"))]
        return sorted(snapshots, key=lambda item: item.created_at)
