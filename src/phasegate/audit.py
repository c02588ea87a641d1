from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from phasegate.models import PhaseResult, WorkItemSnapshot, WorkItemStatus, utcnow_iso

logger = logging.getLogger(__name__)

AuditErrorHook = Callable[[Exception, dict[str, Any]], None]


def _iter_records(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                # A torn final line from a crash mid-write.
                logger.warning("Skipping undecodable audit line in %s", path)
                continue
            if isinstance(parsed, dict):
                records.append(parsed)
    return records


def read_audit_log(path: Path, work_item_id: str | None = None) -> list[dict[str, Any]]:
    records = _iter_records(path)
    if work_item_id is not None:
        records = [record for record in records if record.get("workItemId") == work_item_id]
    return records


class AuditTrailWriter:
    """Append-only JSON Lines trail of phase results and state transitions.

    Sequence numbers are per work item and survive restarts of the process.
    Write failures are logged and handed to ``on_error``; they never propagate
    into the scheduler.
    """

    def __init__(self, path: Path, on_error: AuditErrorHook | None = None) -> None:
        self.path = path
        self.on_error = on_error
        self._sequences: dict[str, int] = {}
        try:
            for record in _iter_records(path):
                item_id = str(record.get("workItemId", ""))
                sequence = int(record.get("sequence", 0))
                if sequence > self._sequences.get(item_id, 0):
                    self._sequences[item_id] = sequence
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Could not recover audit sequences from %s: %s", path, exc)

    def last_sequence(self, work_item_id: str) -> int:
        return self._sequences.get(work_item_id, 0)

    def append(self, work_item_id: str, entry: dict[str, Any]) -> dict[str, Any] | None:
        sequence = self._sequences.get(work_item_id, 0) + 1
        record: dict[str, Any] = {
            "workItemId": work_item_id,
            "sequence": sequence,
            "event": entry.pop("event", "transition"),
            "phase": None,
            "attempt": None,
            "verdict": None,
            "findings": [],
            "timestampUTC": utcnow_iso(),
        }
        record.update(entry)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")))
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            logger.error("Audit write failed for %s #%d: %s", work_item_id, sequence, exc)
            if self.on_error:
                self.on_error(exc, record)
            return None
        self._sequences[work_item_id] = sequence
        return record

    def record_transition(
        self,
        item: WorkItemSnapshot,
        previous: WorkItemStatus | None,
        *,
        reason: str = "",
    ) -> dict[str, Any] | None:
        current = item.current_phase
        return self.append(
            item.id,
            {
                "event": "transition",
                "phase": current.name if current else None,
                "phaseIndex": item.phase_index,
                "fromStatus": previous.value if previous else None,
                "status": item.status.value,
                "reason": reason,
            },
        )

    def record_phase_result(
        self, item: WorkItemSnapshot, result: PhaseResult
    ) -> dict[str, Any] | None:
        return self.append(
            item.id,
            {
                "event": "phase_result",
                "phase": result.phase,
                "phaseIndex": item.phase_index,
                "agentId": result.agent_id,
                "attempt": result.attempt,
                "verdict": result.verdict.outcome.value if result.verdict else None,
                "findings": [finding.to_dict() for finding in result.findings],
                "startedUTC": result.started_at,
                "finishedUTC": result.finished_at,
                "durationSeconds": round(result.duration_seconds, 6),
                "error": result.error,
            },
        )
