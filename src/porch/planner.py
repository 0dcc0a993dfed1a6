"""Computes the next batch of work for a project.

The planner reads persisted state plus filesystem evidence (artifacts and
review files) and emits tasks. It writes state only when it observes that a
previously emitted step has completed, and then re-evaluates in a bounded
loop. Calling it twice without a filesystem change yields the same result.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, Literal

from porch.backends.consult import ConsultReviewer
from porch.consultation import (
    find_reviews,
    format_verdicts,
    missing_reviewers,
    review_context_path,
    review_requests,
    write_review_context,
)
from porch.context import PorchContext
from porch.notify import GateNotifier
from porch.prompts import build_phase_prompt
from porch.protocol import PhaseDefinition, Protocol
from porch.state.models import ProjectState
from porch.state.store import StateStore
from porch.workflow import Workflow

logger = logging.getLogger(__name__)

NextStatus = Literal["tasks", "gate_pending", "complete", "error"]


@dataclass(slots=True)
class Task:
    subject: str
    active_form: str
    description: str
    sequential: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "active_form": self.active_form,
            "description": self.description,
            "sequential": self.sequential,
        }


@dataclass(slots=True)
class NextResult:
    status: NextStatus
    phase: str
    iteration: int
    plan_phase: str | None = None
    gate: str | None = None
    tasks: list[Task] = field(default_factory=list)
    summary: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "phase": self.phase,
            "iteration": self.iteration,
        }
        if self.plan_phase is not None:
            payload["plan_phase"] = self.plan_phase
        if self.gate is not None:
            payload["gate"] = self.gate
        if self.tasks:
            payload["tasks"] = [task.to_dict() for task in self.tasks]
        if self.summary is not None:
            payload["summary"] = self.summary
        if self.error is not None:
            payload["error"] = self.error
        return payload


class Planner:
    def __init__(
        self,
        context: PorchContext,
        store: StateStore,
        workflow: Workflow,
        notifier: GateNotifier | None = None,
    ) -> None:
        self.context = context
        self.store = store
        self.workflow = workflow
        self.notifier = notifier
        self._dirty = False
        self._opened_gates: list[tuple[str, str | None]] = []

    @property
    def protocol(self) -> Protocol:
        return self.workflow.protocol

    def _transition_limit(self, state: ProjectState) -> int:
        return 4 * (len(self.protocol.phases) + len(state.plan_phases)) + 8

    def next(self) -> NextResult:
        self._dirty = False
        self._opened_gates = []
        with self.store.lock:
            state = self.store.read()
            result: NextResult | None = None
            for _ in range(self._transition_limit(state)):
                result = self._step(state)
                if result is not None:
                    break
            if result is None:
                result = NextResult(
                    status="error",
                    phase=state.phase,
                    iteration=state.iteration,
                    error=f"Transition limit reached while planning project {state.id}",
                )
            if self._dirty:
                self.store.write(state)

        if self.notifier is not None:
            for gate, requested_at in self._opened_gates:
                self.notifier.notify_gate_opened_sync(
                    state.id,
                    gate,
                    requested_at=requested_at,
                    context={"phase": state.phase, "title": state.title},
                )
        return result

    def _changed(self) -> None:
        self._dirty = True

    def _base(self, state: ProjectState, status: NextStatus, **kwargs: Any) -> NextResult:
        return NextResult(
            status=status,
            phase=state.phase,
            iteration=state.iteration,
            plan_phase=state.current_plan_phase,
            **kwargs,
        )

    def _step(self, state: ProjectState) -> NextResult | None:
        phase = self.workflow.phase_def(state)
        if self.workflow.is_complete(state) or phase is None:
            return self._base(
                state,
                "complete",
                summary=f"Project {state.id} has completed the {state.protocol} protocol.",
                tasks=[
                    Task(
                        subject="Merge the pull request",
                        active_form="Merging pull request",
                        description=(
                            "The protocol is complete. Merge the pull request with a regular "
                            "merge commit (do not squash) to preserve development history."
                        ),
                        sequential=True,
                    )
                ],
            )

        if state.awaiting_input:
            question = state.context.get("pending_question") or state.blocked_reason or ""
            return self._base(
                state,
                "tasks",
                tasks=[
                    Task(
                        subject="Wait for human input",
                        active_form="Waiting for human input",
                        description=(
                            f"The worker is waiting for a human answer:\n\n{question}\n\n"
                            f'Record the answer with: porch answer {state.id} "<answer>"'
                        ),
                        sequential=True,
                    )
                ],
            )

        if self.workflow.is_preapproved(state):
            logger.info("[%s] %s artifact is pre-approved, skipping build", state.id, state.phase)
            self.workflow.apply_preapproval(state)
            self._changed()
            return None

        waiting = self.workflow.waiting_gate(state)
        if waiting is not None:
            return self._gate_pending(state, waiting)

        if self.workflow.gate_approved(state):
            self.workflow.advance_phase(state)
            self._changed()
            return None

        if phase.is_build_verify:
            return self._build_verify(state, phase)
        return self._once(state, phase)

    def _gate_pending(self, state: ProjectState, gate: str) -> NextResult:
        summary = state.gates[gate].summary
        verdicts = f"Reviewer verdicts: {summary}\n\n" if summary else ""
        return self._base(
            state,
            "gate_pending",
            gate=gate,
            tasks=[
                Task(
                    subject=f"Request human approval: {gate}",
                    active_form=f"Requesting {gate} approval",
                    description=(
                        f"{verdicts}Run: porch gate {state.id}\n"
                        "This will show the artifact for human review.\n\n"
                        "STOP and wait for human approval before proceeding."
                    ),
                )
            ],
        )

    def _check_tasks(self, phase: PhaseDefinition) -> list[Task]:
        tasks: list[Task] = []
        for name, check in self.protocol.phase_checks(phase.id, self.context.config.checks).items():
            cwd_note = (
                f"\n\nIMPORTANT: Run this from the `{check.cwd}` subdirectory "
                "(relative to project root)."
                if check.cwd
                else ""
            )
            tasks.append(
                Task(
                    subject=f"Run check: {name}",
                    active_form=f"Running {name} check",
                    description=f"Run: {check.command}{cwd_note}\n\nFix any failures before proceeding.",
                    sequential=True,
                )
            )
        return tasks

    def _consult_commands(self, state: ProjectState, phase: PhaseDefinition, reviewers: list[str]) -> str:
        verify = self.workflow.verify_settings(phase)
        context_file = None
        if state.iteration > 1:
            context_file = review_context_path(self.context, state)
            if not context_file.exists():
                context_file = write_review_context(self.context, state)
        requests = review_requests(
            self.context,
            state,
            reviewers,
            verify.type,
            artifact_type=verify.artifact_type,
            context_file=context_file,
        )
        reviewer = ConsultReviewer(self.context.config.review.binary)
        lines = []
        for request in requests:
            command = reviewer.build_command(request)
            command[-2:-2] = ["--output", str(request.output_path)]
            lines.append(shlex.join(command))
        return "\n".join(lines)

    def _build_verify(self, state: ProjectState, phase: PhaseDefinition) -> NextResult | None:
        if not state.build_complete:
            if state.iteration == 1:
                subject = f"{phase.name}: Build artifact"
                active = f"Building {phase.name.lower()} artifact"
            else:
                subject = f"{phase.name}: Fix issues from iteration {state.iteration - 1}"
                active = f"Fixing {phase.name.lower()} issues (iteration {state.iteration})"
            tasks = [
                Task(
                    subject=subject,
                    active_form=active,
                    description=build_phase_prompt(self.context, state, self.protocol),
                    sequential=True,
                ),
                *self._check_tasks(phase),
                Task(
                    subject="Signal build complete",
                    active_form="Signaling build complete",
                    description=(
                        f"Run: porch done {state.id}\n\n"
                        "This validates checks and marks the build as complete for verification."
                    ),
                    sequential=True,
                ),
            ]
            return self._base(state, "tasks", tasks=tasks)

        reviewers = self.workflow.verify_settings(phase).reviewers
        missing = missing_reviewers(self.context, state, reviewers)
        if len(missing) == len(reviewers):
            commands = self._consult_commands(state, phase, reviewers)
            return self._base(
                state,
                "tasks",
                tasks=[
                    Task(
                        subject=f"Run {len(reviewers)}-way consultation",
                        active_form=f"Running {len(reviewers)}-way consultation",
                        description=(
                            f"Run these commands in parallel in the background:\n\n{commands}\n\n"
                            f"Wait for all to complete, then call `porch next {state.id}` "
                            "to get the next step."
                        ),
                    )
                ],
            )
        if missing:
            commands = self._consult_commands(state, phase, missing)
            return self._base(
                state,
                "tasks",
                tasks=[
                    Task(
                        subject=f"Run remaining consultations ({', '.join(missing)})",
                        active_form="Running remaining consultations",
                        description=(
                            f"Some consultations are still missing. Run:\n\n{commands}\n\n"
                            f"Then call `porch next {state.id}` again."
                        ),
                    )
                ],
            )

        reviews = find_reviews(self.context, state, reviewers)
        outcome = self.workflow.resolve_verification(state, reviews)
        self._changed()
        logger.info("[%s] verification: %s (%s)", state.id, outcome.action, format_verdicts(reviews))
        if outcome.gate and outcome.gate_newly_requested:
            self._opened_gates.append((outcome.gate, state.gates[outcome.gate].requested_at))
        return None

    def _once(self, state: ProjectState, phase: PhaseDefinition) -> NextResult:
        description = build_phase_prompt(self.context, state, self.protocol)
        checks = self.protocol.phase_checks(phase.id, self.context.config.checks)
        if checks:
            listing = "\n".join(f"- {name}: {check.command}" for name, check in checks.items())
            description += f"\n\nAfter completing the work, run these checks:\n{listing}"
        description += f"\n\nWhen complete, run: porch done {state.id}"
        return self._base(
            state,
            "tasks",
            tasks=[
                Task(
                    subject=f"{phase.name}: Complete phase work",
                    active_form=f"Working on {phase.name.lower()}",
                    description=description,
                    sequential=True,
                )
            ],
        )
