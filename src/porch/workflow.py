"""State transitions for a project moving through its protocol.

Every mutation of :class:`ProjectState` goes through :class:`Workflow`. The
workflow works on in-memory state; callers persist it through a
:class:`~porch.state.StateStore` transaction.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from porch.checks import substitute_project_vars
from porch.consultation import archive_reviews
from porch.context import PorchContext
from porch.errors import GateApprovalError, PorchStateError
from porch.parsing import all_approve
from porch.plan import (
    advance_plan_phase,
    current_plan_phase,
    extract_phases_from_file,
    find_plan_file,
)
from porch.protocol import TERMINAL_PHASE, PhaseDefinition, Protocol, VerifySettings
from porch.state.models import Gate, IterationRecord, ProjectState, ReviewResult

logger = logging.getLogger(__name__)

_FRONTMATTER = re.compile(r"^---\n(.*?)\n---", re.DOTALL)
_APPROVED_LINE = re.compile(r"^approved:\s*.+$", re.MULTILINE)
_VALIDATED_LINE = re.compile(r"^validated:\s*\[.+\]$", re.MULTILINE)

VerificationAction = Literal[
    "plan_phase_advanced",
    "gate_requested",
    "phase_advanced",
    "iterate",
    "escalated",
]


def require_human_approval(gate_name: str, human_approved: bool) -> None:
    if not human_approved:
        raise GateApprovalError(
            f"Gate {gate_name} can only be approved by a human. "
            "Pass --a-human-explicitly-approved-this to confirm."
        )


@dataclass(slots=True)
class VerificationOutcome:
    action: VerificationAction
    reviews: list[ReviewResult] = field(default_factory=list)
    gate: str | None = None
    gate_newly_requested: bool = False


@dataclass(slots=True)
class CompletionOutcome:
    action: Literal["gate_requested", "plan_phase_advanced", "phase_advanced"]
    gate: str | None = None
    gate_newly_requested: bool = False


class Workflow:
    def __init__(self, context: PorchContext, protocol: Protocol) -> None:
        self.context = context
        self.protocol = protocol

    def phase_def(self, state: ProjectState) -> PhaseDefinition | None:
        return self.protocol.phase(state.phase)

    def verify_settings(self, phase: PhaseDefinition) -> VerifySettings:
        if phase.verify is None:
            raise PorchStateError(f"Phase {phase.id} has no verify step")
        return phase.verify

    def max_iterations(self, state: ProjectState) -> int:
        phase = self.phase_def(state)
        if phase is None:
            return self.context.config.workflow.default_max_iterations
        return phase.max_iterations

    def is_complete(self, state: ProjectState) -> bool:
        return state.phase == TERMINAL_PHASE

    def _log(self, state: ProjectState, event: str, **details: Any) -> None:
        entry: dict[str, Any] = {"at": self.context.now_iso(), "event": event}
        entry.update({key: value for key, value in details.items() if value is not None})
        state.log.append(entry)
        limit = self.context.config.workflow.history_limit
        if limit > 0 and len(state.log) > limit:
            del state.log[: len(state.log) - limit]
        logger.info("[%s] %s %s", state.id, event, details or "")

    def _ensure_gate(self, state: ProjectState, phase: PhaseDefinition) -> None:
        if phase.gate and phase.gate not in state.gates:
            state.gates[phase.gate] = Gate()

    def _load_plan_phases(self, state: ProjectState) -> None:
        plan_file = find_plan_file(self.context, state.id, state.title)
        state.plan_phases = extract_phases_from_file(plan_file)
        current = current_plan_phase(state.plan_phases)
        state.current_plan_phase = current.id if current else None

    def _plan_scopes(self, state: ProjectState) -> set[str]:
        scopes = {phase.id for phase in state.plan_phases}
        plan_file = find_plan_file(self.context, state.id, state.title)
        if plan_file is not None:
            scopes.update(phase.id for phase in extract_phases_from_file(plan_file))
        return scopes

    def create_state(self, project_id: str, title: str) -> ProjectState:
        first = self.protocol.first_phase
        now = self.context.now_iso()
        state = ProjectState(
            id=project_id,
            title=title,
            protocol=self.protocol.name,
            phase=first.id,
            started_at=now,
            updated_at=now,
        )
        self._ensure_gate(state, first)
        if first.is_phased:
            self._load_plan_phases(state)
        self._log(state, "init", protocol=self.protocol.name, phase=first.id)
        return state

    def _enter_phase(self, state: ProjectState, phase_id: str) -> None:
        state.phase = phase_id
        state.iteration = 1
        state.build_complete = False
        state.history = []
        state.plan_phases = []
        state.current_plan_phase = None
        state.awaiting_input = False
        state.blocked_reason = None
        phase = self.protocol.phase(phase_id)
        if phase is None:
            return
        self._ensure_gate(state, phase)
        if phase.is_phased:
            self._load_plan_phases(state)

    def advance_phase(self, state: ProjectState) -> str:
        previous = state.phase
        following = self.protocol.next_phase(state.phase)
        self._enter_phase(state, following.id if following else TERMINAL_PHASE)
        self._log(state, "phase_advanced", from_phase=previous, to_phase=state.phase)
        return state.phase

    def waiting_gate(self, state: ProjectState) -> str | None:
        phase = self.phase_def(state)
        if phase is None or not phase.gate:
            return None
        gate = state.gates.get(phase.gate)
        if gate is not None and gate.is_waiting:
            return phase.gate
        return None

    def gate_approved(self, state: ProjectState) -> bool:
        phase = self.phase_def(state)
        if phase is None or not phase.gate:
            return False
        gate = state.gates.get(phase.gate)
        return gate is not None and gate.status == "approved"

    def request_gate(self, state: ProjectState, gate_name: str, summary: str | None = None) -> bool:
        """Mark ``gate_name`` as requested. Returns ``False`` if it already was."""
        gate = state.gates.setdefault(gate_name, Gate())
        if gate.status == "approved":
            return False
        if summary is not None:
            gate.summary = summary
        if gate.requested_at is not None:
            return False
        gate.requested_at = self.context.now_iso()
        self._log(state, "gate_requested", gate=gate_name, phase=state.phase)
        return True

    def approve_gate(self, state: ProjectState, gate_name: str, *, human_approved: bool) -> bool:
        require_human_approval(gate_name, human_approved)
        gate = state.gates.get(gate_name)
        if gate is None:
            known = ", ".join(state.gates) or "none"
            raise PorchStateError(f"Unknown gate: {gate_name}\nKnown gates: {known}")
        if gate.status == "approved":
            return False
        gate.status = "approved"
        gate.approved_at = self.context.now_iso()
        self._log(state, "gate_approved", gate=gate_name)
        return True

    def preapprove_gate(self, state: ProjectState, gate_name: str) -> None:
        gate = state.gates.setdefault(gate_name, Gate())
        gate.status = "approved"
        gate.approved_at = self.context.now_iso()
        self._log(state, "gate_preapproved", gate=gate_name)

    def mark_build_complete(self, state: ProjectState) -> None:
        state.build_complete = True
        state.build_failures = 0
        state.awaiting_input = False
        state.blocked_reason = None

    def reset_build(self, state: ProjectState) -> None:
        state.build_complete = False

    def record_build_failure(self, state: ProjectState, error: str | None = None) -> int:
        state.build_failures += 1
        self._log(state, "build_failed", failures=state.build_failures, error=error)
        return state.build_failures

    def _record(
        self,
        state: ProjectState,
        iteration: int,
    ) -> IterationRecord:
        for record in state.history:
            if record.iteration == iteration and record.plan_phase == state.current_plan_phase:
                return record
        record = IterationRecord(
            iteration=iteration,
            build_output="",
            plan_phase=state.current_plan_phase,
        )
        state.history.append(record)
        return record

    def record_build_output(self, state: ProjectState, output_path: Path | str) -> None:
        self._record(state, state.iteration).build_output = str(output_path)

    def record_reviews(
        self,
        state: ProjectState,
        reviews: list[ReviewResult],
        iteration: int | None = None,
    ) -> None:
        record = self._record(state, state.iteration if iteration is None else iteration)
        record.reviews = list(reviews)

    def _reset_for_gate(self, state: ProjectState) -> None:
        state.build_complete = False
        state.iteration = 1
        state.history = []

    def _handle_approved(
        self,
        state: ProjectState,
        reviews: list[ReviewResult],
        *,
        action_on_gate: VerificationAction = "gate_requested",
        summary: str | None = None,
    ) -> VerificationOutcome:
        phase = self.phase_def(state)
        if phase is None:
            raise PorchStateError(f"Unknown phase '{state.phase}' in protocol '{self.protocol.name}'")

        if phase.is_phased and state.plan_phases:
            current = current_plan_phase(state.plan_phases)
            if current is not None:
                advance = advance_plan_phase(state.plan_phases, current.id)
                state.plan_phases = advance.phases
                state.build_complete = False
                state.iteration = 1
                self._log(state, "plan_phase_advanced", plan_phase=current.id)
                if not advance.moved_to_next_container:
                    following = current_plan_phase(state.plan_phases)
                    state.current_plan_phase = following.id if following else None
                    return VerificationOutcome(action="plan_phase_advanced", reviews=reviews)
                state.current_plan_phase = None

        if phase.gate and state.gates.get(phase.gate, Gate()).status != "approved":
            newly = self.request_gate(state, phase.gate, summary=summary)
            self._reset_for_gate(state)
            return VerificationOutcome(
                action=action_on_gate,
                reviews=reviews,
                gate=phase.gate,
                gate_newly_requested=newly,
            )

        self.advance_phase(state)
        return VerificationOutcome(action="phase_advanced", reviews=reviews)

    def resolve_verification(
        self,
        state: ProjectState,
        reviews: list[ReviewResult],
    ) -> VerificationOutcome:
        """Apply a complete set of reviews to ``state``.

        Unanimous approval advances the plan phase, requests the gate or
        advances the phase. Otherwise the iteration is bumped, unless the
        phase has run out of iterations, in which case the gate is requested
        with the verdicts attached (or the phase is forced forward when it
        has no gate).
        """
        self.record_reviews(state, reviews)
        if all_approve(r.verdict for r in reviews):
            return self._handle_approved(state, reviews)

        if state.iteration >= self.max_iterations(state):
            summary = "; ".join(f"{r.reviewer}: {r.verdict}" for r in reviews)
            logger.warning(
                "[%s] %s reached max iterations (%s) without unanimous approval",
                state.id,
                state.review_scope,
                self.max_iterations(state),
            )
            return self._handle_approved(
                state,
                reviews,
                action_on_gate="escalated",
                summary=summary,
            )

        state.iteration += 1
        state.build_complete = False
        return VerificationOutcome(action="iterate", reviews=reviews)

    def complete_once_phase(self, state: ProjectState) -> CompletionOutcome:
        phase = self.phase_def(state)
        if phase is None:
            raise PorchStateError(f"Unknown phase '{state.phase}' in protocol '{self.protocol.name}'")

        if phase.gate and state.gates.get(phase.gate, Gate()).status != "approved":
            newly = self.request_gate(state, phase.gate)
            return CompletionOutcome(
                action="gate_requested",
                gate=phase.gate,
                gate_newly_requested=newly,
            )

        if phase.is_phased and state.plan_phases:
            current = current_plan_phase(state.plan_phases)
            if current is not None:
                advance = advance_plan_phase(state.plan_phases, current.id)
                state.plan_phases = advance.phases
                self._log(state, "plan_phase_advanced", plan_phase=current.id)
                if not advance.moved_to_next_container:
                    following = current_plan_phase(state.plan_phases)
                    state.current_plan_phase = following.id if following else None
                    return CompletionOutcome(action="plan_phase_advanced")

        self.advance_phase(state)
        return CompletionOutcome(action="phase_advanced")

    def rollback(self, state: ProjectState, target_phase: str) -> None:
        target = self.protocol.phase(target_phase)
        if target is None:
            known = ", ".join(p.id for p in self.protocol.phases)
            raise PorchStateError(f"Unknown phase: {target_phase}\nKnown phases: {known}")
        target_index = self.protocol.index_of(target_phase)
        current_index = self.protocol.index_of(state.phase)
        if target_index >= current_index:
            raise PorchStateError(
                f"Cannot rollback forward: {state.phase} -> {target_phase}. "
                "Rollback only moves to an earlier phase."
            )

        previous = state.phase
        later = self.protocol.phases[target_index:]
        scopes = {phase.id for phase in later}
        if any(phase.is_phased for phase in later):
            scopes.update(self._plan_scopes(state))
        label = "rollback-" + re.sub(r"[^0-9A-Za-z]", "", self.context.now_iso())
        archived = archive_reviews(self.context, state, scopes, label)

        self._enter_phase(state, target_phase)
        state.build_failures = 0
        for phase in self.protocol.phases[target_index:]:
            if phase.gate and phase.gate in state.gates:
                state.gates[phase.gate] = Gate()
        self._log(state, "rollback", from_phase=previous, to_phase=target_phase, archived=len(archived))

    def set_awaiting_input(
        self,
        state: ProjectState,
        *,
        question: str | None = None,
        reason: str | None = None,
    ) -> None:
        state.awaiting_input = True
        state.blocked_reason = reason
        if question:
            state.context["pending_question"] = question
        self._log(state, "awaiting_input", reason=reason)

    def answer(self, state: ProjectState, text: str) -> None:
        existing = state.context.get("user_answers")
        state.context["user_answers"] = f"{existing}\n\n{text}" if existing else text
        state.context.pop("pending_question", None)
        state.awaiting_input = False
        state.blocked_reason = None

    def artifact_glob(self, state: ProjectState) -> str | None:
        phase = self.phase_def(state)
        if phase is None or phase.build is None or not phase.build.artifact:
            return None
        return substitute_project_vars(phase.build.artifact, state.id, state.title)

    def artifact_path(self, state: ProjectState) -> Path | None:
        pattern = self.artifact_glob(state)
        if pattern is None:
            return None
        matches = sorted(self.context.workspace_root.glob(pattern))
        return matches[0] if matches else None

    def artifact_exists(self, state: ProjectState) -> bool:
        if self.artifact_glob(state) is None:
            return True
        return self.artifact_path(state) is not None

    def is_preapproved(self, state: ProjectState) -> bool:
        phase = self.phase_def(state)
        if phase is None or not phase.is_build_verify:
            return False
        if state.build_complete or state.iteration != 1:
            return False
        artifact = self.artifact_path(state)
        if artifact is None or not artifact.is_file():
            return False
        match = _FRONTMATTER.match(artifact.read_text(encoding="utf-8", errors="replace"))
        if match is None:
            return False
        frontmatter = match.group(1)
        return bool(_APPROVED_LINE.search(frontmatter) and _VALIDATED_LINE.search(frontmatter))

    def apply_preapproval(self, state: ProjectState) -> None:
        phase = self.phase_def(state)
        if phase is not None and phase.gate:
            self.preapprove_gate(state, phase.gate)
        self.advance_phase(state)
