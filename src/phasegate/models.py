from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from phasegate.errors import ConfigurationError

CapabilityKind = Literal["read", "write"]


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class Severity(StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: object) -> Severity:
        try:
            return cls(str(value).strip().upper())
        except ValueError as exc:
            raise ConfigurationError(f"Unknown severity: {value!r}") from exc


# Highest first.
SEVERITY_ORDER: tuple[Severity, ...] = (
    Severity.CRITICAL,
    Severity.HIGH,
    Severity.MEDIUM,
    Severity.LOW,
)


class Outcome(StrEnum):
    PASS = "PASS"
    WARN = "WARN"
    BLOCK = "BLOCK"

    @classmethod
    def parse(cls, value: object) -> Outcome:
        try:
            return cls(str(value).strip().upper())
        except ValueError as exc:
            raise ConfigurationError(f"Unknown gate action: {value!r}") from exc


class WorkItemStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in {WorkItemStatus.COMPLETED, WorkItemStatus.CANCELLED}


class LockMode(StrEnum):
    SHARED = "SHARED"
    EXCLUSIVE = "EXCLUSIVE"


def normalize_scope(scope: str) -> str:
    normalized = str(scope).replace("\\", "/").strip().strip("/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    if not normalized:
        raise ConfigurationError("Artifact scope must not be empty.")
    return normalized


def scope_contains(outer: str, inner: str) -> bool:
    """True when ``inner`` is ``outer`` or lies underneath it."""
    if outer == "*":
        return True
    return inner == outer or inner.startswith(f"{outer}/")


def scopes_overlap(left: str, right: str) -> bool:
    return scope_contains(left, right) or scope_contains(right, left)


@dataclass(frozen=True, slots=True)
class Capability:
    kind: CapabilityKind
    scope: str | None = None

    @classmethod
    def parse(cls, raw: str | Capability) -> Capability:
        if isinstance(raw, Capability):
            return raw
        text = str(raw).strip()
        kind, _, scope = text.partition(":")
        kind = kind.strip().lower()
        if kind not in {"read", "write"}:
            raise ConfigurationError(f"Unknown capability: {raw!r}")
        if kind == "write" and not scope.strip():
            raise ConfigurationError(f"Write capability requires an artifact scope: {raw!r}")
        return cls(kind=kind, scope=normalize_scope(scope) if scope.strip() else None)  # type: ignore[arg-type]

    def covers(self, required: Capability) -> bool:
        if self.kind != required.kind:
            return False
        if self.scope is None:
            return self.kind == "read"
        if required.scope is None:
            return False
        return scope_contains(self.scope, required.scope)

    def __str__(self) -> str:
        return self.kind if self.scope is None else f"{self.kind}:{self.scope}"


def parse_capabilities(values: Iterable[str | Capability]) -> frozenset[Capability]:
    return frozenset(Capability.parse(value) for value in values)


def missing_capabilities(
    declared: Iterable[Capability], required: Iterable[Capability]
) -> list[Capability]:
    declared = list(declared)
    return sorted(
        (need for need in required if not any(have.covers(need) for have in declared)),
        key=str,
    )


@dataclass(frozen=True, slots=True)
class Finding:
    severity: Severity
    message: str
    location: str | None = None
    remediation: str | None = None

    def __post_init__(self) -> None:
        # Agents may build findings with plain severity strings.
        object.__setattr__(self, "severity", Severity.parse(self.severity))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Finding:
        return cls(
            severity=Severity.parse(payload["severity"]),
            message=str(payload["message"]),
            location=payload.get("location"),
            remediation=payload.get("remediation"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"severity": self.severity.value, "message": self.message}
        if self.location is not None:
            payload["location"] = self.location
        if self.remediation is not None:
            payload["remediation"] = self.remediation
        return payload


@dataclass(frozen=True, slots=True)
class Verdict:
    outcome: Outcome
    triggering: tuple[Finding, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "triggering": [finding.to_dict() for finding in self.triggering],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Verdict:
        return cls(
            outcome=Outcome.parse(payload["outcome"]),
            triggering=tuple(Finding.from_dict(item) for item in payload.get("triggering", [])),
        )


@dataclass(frozen=True, slots=True)
class PhaseDefinition:
    name: str
    agent_id: str
    required_capabilities: frozenset[Capability] = frozenset()
    gate_rules: tuple[tuple[Severity, Outcome], ...] = ()
    max_retry: int = 0
    timeout_seconds: float = 300.0
    lock_timeout_seconds: float = 60.0

    @property
    def gate_map(self) -> dict[Severity, Outcome]:
        return dict(self.gate_rules)

    def lock_requests(self) -> list[tuple[str, LockMode]]:
        """One entry per scope in global (sorted) order; write wins over read."""
        modes: dict[str, LockMode] = {}
        for capability in self.required_capabilities:
            if capability.scope is None:
                continue
            if capability.kind == "write":
                modes[capability.scope] = LockMode.EXCLUSIVE
            else:
                modes.setdefault(capability.scope, LockMode.SHARED)
        return sorted(modes.items())

    @property
    def write_scopes(self) -> list[str]:
        return sorted(
            capability.scope
            for capability in self.required_capabilities
            if capability.kind == "write" and capability.scope is not None
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PhaseDefinition:
        try:
            name = str(payload["phase_name"]).strip()
            agent_id = str(payload["agent_id"]).strip()
        except KeyError as exc:
            raise ConfigurationError(f"Phase definition missing key: {exc.args[0]}") from exc
        if not name or not agent_id:
            raise ConfigurationError("Phase definitions need a phase_name and an agent_id.")
        raw_rules = payload.get("gate_rules", {})
        if not isinstance(raw_rules, Mapping):
            raise ConfigurationError(f"gate_rules for phase '{name}' must be a table.")
        rules: dict[Severity, Outcome] = {}
        for severity, action in raw_rules.items():
            rules[Severity.parse(severity)] = Outcome.parse(action)
        try:
            max_retry = int(payload.get("max_retry", 0))
            timeout_seconds = float(payload.get("timeout_seconds", 300.0))
            lock_timeout_seconds = float(payload.get("lock_timeout_seconds", 60.0))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid numeric setting in phase '{name}': {exc}") from exc
        if max_retry < 0:
            raise ConfigurationError(f"max_retry for phase '{name}' must be >= 0.")
        if timeout_seconds <= 0 or lock_timeout_seconds <= 0:
            raise ConfigurationError(f"Timeouts for phase '{name}' must be positive.")
        raw_capabilities = payload.get("required_capabilities", [])
        if isinstance(raw_capabilities, str) or not isinstance(raw_capabilities, Iterable):
            raise ConfigurationError(f"required_capabilities for phase '{name}' must be a list.")
        return cls(
            name=name,
            agent_id=agent_id,
            required_capabilities=parse_capabilities(raw_capabilities),
            gate_rules=tuple(sorted(rules.items(), key=lambda item: item[0].rank)),
            max_retry=max_retry,
            timeout_seconds=timeout_seconds,
            lock_timeout_seconds=lock_timeout_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_name": self.name,
            "agent_id": self.agent_id,
            "required_capabilities": sorted(str(item) for item in self.required_capabilities),
            "gate_rules": {severity.value: action.value for severity, action in self.gate_rules},
            "max_retry": self.max_retry,
            "timeout_seconds": self.timeout_seconds,
            "lock_timeout_seconds": self.lock_timeout_seconds,
        }


@dataclass(frozen=True, slots=True)
class PhaseResult:
    phase: str
    agent_id: str
    attempt: int
    findings: tuple[Finding, ...]
    verdict: Verdict | None
    duration_seconds: float
    started_at: str
    finished_at: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "agent_id": self.agent_id,
            "attempt": self.attempt,
            "findings": [finding.to_dict() for finding in self.findings],
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "duration_seconds": self.duration_seconds,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PhaseResult:
        verdict = payload.get("verdict")
        return cls(
            phase=str(payload["phase"]),
            agent_id=str(payload["agent_id"]),
            attempt=int(payload["attempt"]),
            findings=tuple(Finding.from_dict(item) for item in payload.get("findings", [])),
            verdict=Verdict.from_dict(verdict) if isinstance(verdict, Mapping) else None,
            duration_seconds=float(payload.get("duration_seconds", 0.0)),
            started_at=str(payload.get("started_at", "")),
            finished_at=str(payload.get("finished_at", "")),
            error=payload.get("error"),
        )


@dataclass(frozen=True, slots=True)
class WorkItemSnapshot:
    id: str
    title: str
    description: str
    pipeline: str
    phases: tuple[PhaseDefinition, ...]
    phase_index: int
    status: WorkItemStatus
    findings: tuple[Finding, ...]
    warnings: tuple[Finding, ...]
    history: tuple[PhaseResult, ...]
    created_at: str
    updated_at: str

    @property
    def current_phase(self) -> PhaseDefinition | None:
        if 0 <= self.phase_index < len(self.phases):
            return self.phases[self.phase_index]
        return None

    def to_dict(self) -> dict[str, Any]:
        current = self.current_phase
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "pipeline": self.pipeline,
            "status": self.status.value,
            "phase_index": self.phase_index,
            "current_phase": current.name if current else None,
            "phases": [phase.to_dict() for phase in self.phases],
            "findings": [finding.to_dict() for finding in self.findings],
            "warnings": [finding.to_dict() for finding in self.warnings],
            "history": [result.to_dict() for result in self.history],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> WorkItemSnapshot:
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            description=str(payload.get("description", "")),
            pipeline=str(payload.get("pipeline", "")),
            phases=tuple(PhaseDefinition.from_dict(item) for item in payload.get("phases", [])),
            phase_index=int(payload.get("phase_index", 0)),
            status=WorkItemStatus(str(payload.get("status", "PENDING"))),
            findings=tuple(Finding.from_dict(item) for item in payload.get("findings", [])),
            warnings=tuple(Finding.from_dict(item) for item in payload.get("warnings", [])),
            history=tuple(PhaseResult.from_dict(item) for item in payload.get("history", [])),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class WorkItem:
    id: str
    title: str
    description: str
    pipeline: str
    phases: tuple[PhaseDefinition, ...]
    phase_index: int = 0
    status: WorkItemStatus = WorkItemStatus.PENDING
    findings: list[Finding] = field(default_factory=list)
    warnings: list[Finding] = field(default_factory=list)
    history: list[PhaseResult] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def touch(self) -> None:
        self.updated_at = utcnow_iso()

    def next_attempt(self, phase_name: str) -> int:
        return 1 + sum(1 for result in self.history if result.phase == phase_name)

    def snapshot(self) -> WorkItemSnapshot:
        return WorkItemSnapshot(
            id=self.id,
            title=self.title,
            description=self.description,
            pipeline=self.pipeline,
            phases=self.phases,
            phase_index=self.phase_index,
            status=self.status,
            findings=tuple(self.findings),
            warnings=tuple(self.warnings),
            history=tuple(self.history),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_snapshot(cls, snapshot: WorkItemSnapshot) -> WorkItem:
        return cls(
            id=snapshot.id,
            title=snapshot.title,
            description=snapshot.description,
            pipeline=snapshot.pipeline,
            phases=snapshot.phases,
            phase_index=snapshot.phase_index,
            status=snapshot.status,
            findings=list(snapshot.findings),
            warnings=list(snapshot.warnings),
            history=list(snapshot.history),
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
        )

