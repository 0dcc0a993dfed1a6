from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from porch.errors import PorchStateError

SCHEMA_VERSION = 1

GateStatus = Literal["pending", "approved"]
PlanPhaseStatus = Literal["pending", "in_progress", "complete"]

_REQUIRED_FIELDS = ("id", "title", "protocol", "phase", "started_at", "updated_at")


@dataclass(slots=True)
class Gate:
    status: GateStatus = "pending"
    requested_at: str | None = None
    approved_at: str | None = None
    summary: str | None = None

    @property
    def is_waiting(self) -> bool:
        return self.status == "pending" and self.requested_at is not None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.requested_at is not None:
            payload["requested_at"] = self.requested_at
        if self.approved_at is not None:
            payload["approved_at"] = self.approved_at
        if self.summary is not None:
            payload["summary"] = self.summary
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Gate:
        status = data.get("status", "pending")
        if status not in {"pending", "approved"}:
            raise PorchStateError(f"Invalid gate status: {status}")
        return cls(
            status=status,
            requested_at=data.get("requested_at"),
            approved_at=data.get("approved_at"),
            summary=data.get("summary"),
        )


@dataclass(slots=True)
class PlanPhase:
    id: str
    title: str
    status: PlanPhaseStatus = "pending"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "status": self.status}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanPhase:
        status = data.get("status", "pending")
        if status not in {"pending", "in_progress", "complete"}:
            raise PorchStateError(f"Invalid plan phase status: {status}")
        return cls(id=str(data["id"]), title=str(data.get("title", "")), status=status)


@dataclass(slots=True)
class ReviewResult:
    reviewer: str
    verdict: str
    file: str

    def to_dict(self) -> dict[str, Any]:
        return {"model": self.reviewer, "verdict": self.verdict, "file": self.file}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReviewResult:
        return cls(
            reviewer=str(data.get("model") or data.get("reviewer") or ""),
            verdict=str(data.get("verdict", "request_changes")),
            file=str(data.get("file", "")),
        )


@dataclass(slots=True)
class IterationRecord:
    iteration: int
    build_output: str
    reviews: list[ReviewResult] = field(default_factory=list)
    plan_phase: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iteration": self.iteration,
            "build_output": self.build_output,
            "reviews": [review.to_dict() for review in self.reviews],
        }
        if self.plan_phase is not None:
            payload["plan_phase"] = self.plan_phase
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IterationRecord:
        return cls(
            iteration=int(data["iteration"]),
            build_output=str(data.get("build_output", "")),
            reviews=[ReviewResult.from_dict(item) for item in data.get("reviews", [])],
            plan_phase=data.get("plan_phase"),
        )


@dataclass(slots=True)
class ProjectState:
    id: str
    title: str
    protocol: str
    phase: str
    started_at: str
    updated_at: str
    iteration: int = 1
    build_complete: bool = False
    gates: dict[str, Gate] = field(default_factory=dict)
    plan_phases: list[PlanPhase] = field(default_factory=list)
    current_plan_phase: str | None = None
    history: list[IterationRecord] = field(default_factory=list)
    awaiting_input: bool = False
    blocked_reason: str | None = None
    context: dict[str, str] = field(default_factory=dict)
    build_failures: int = 0
    log: list[dict[str, Any]] = field(default_factory=list)

    @property
    def review_scope(self) -> str:
        return self.current_plan_phase or self.phase

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "protocol": self.protocol,
            "phase": self.phase,
            "iteration": self.iteration,
            "build_complete": self.build_complete,
            "gates": {name: gate.to_dict() for name, gate in self.gates.items()},
            "plan_phases": [phase.to_dict() for phase in self.plan_phases],
            "current_plan_phase": self.current_plan_phase,
            "history": [record.to_dict() for record in self.history],
            "awaiting_input": self.awaiting_input,
            "blocked_reason": self.blocked_reason,
            "context": dict(self.context),
            "build_failures": self.build_failures,
            "log": list(self.log),
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }


def state_to_dict(state: ProjectState) -> dict[str, Any]:
    return {"schema_version": SCHEMA_VERSION, "state": state.to_dict()}


def state_from_dict(payload: Any) -> ProjectState:
    if not isinstance(payload, dict):
        raise PorchStateError("Invalid state document: expected an object")
    version = payload.get("schema_version")
    if version != SCHEMA_VERSION:
        raise PorchStateError(f"Unsupported state schema version: {version}")
    data = payload.get("state")
    if not isinstance(data, dict):
        raise PorchStateError('Invalid state document: missing "state" object')
    missing = [name for name in _REQUIRED_FIELDS if not data.get(name)]
    if missing:
        raise PorchStateError(f"Invalid state document: missing {', '.join(missing)}")

    iteration = data.get("iteration", 1)
    if not isinstance(iteration, int) or iteration < 1:
        raise PorchStateError(f"Invalid state document: iteration must be >= 1, got {iteration!r}")

    try:
        return ProjectState(
            id=str(data["id"]),
            title=str(data["title"]),
            protocol=str(data["protocol"]),
            phase=str(data["phase"]),
            started_at=str(data["started_at"]),
            updated_at=str(data["updated_at"]),
            iteration=iteration,
            build_complete=bool(data.get("build_complete", False)),
            gates={
                str(name): Gate.from_dict(gate or {})
                for name, gate in (data.get("gates") or {}).items()
            },
            plan_phases=[PlanPhase.from_dict(item) for item in data.get("plan_phases") or []],
            current_plan_phase=data.get("current_plan_phase"),
            history=[IterationRecord.from_dict(item) for item in data.get("history") or []],
            awaiting_input=bool(data.get("awaiting_input", False)),
            blocked_reason=data.get("blocked_reason"),
            context={str(key): str(value) for key, value in (data.get("context") or {}).items()},
            build_failures=int(data.get("build_failures", 0)),
            log=list(data.get("log") or []),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise PorchStateError(f"Invalid state document: {exc}") from exc
