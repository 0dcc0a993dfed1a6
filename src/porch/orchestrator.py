"""Command-level operations over one workspace.

Each operation opens the project's state store, applies one workflow
transition inside a transaction and returns a plain result object. The CLI is
a thin formatting layer over this module.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from porch.backends import ClaudeWorker, ConsultReviewer, ResilientWorker, RetryPolicy
from porch.backends.resilient import BackendEventHook
from porch.checks import CheckResult, run_phase_checks
from porch.consultation import Consultation, missing_reviewers
from porch.context import PorchContext
from porch.errors import ChecksFailedError, PorchStateError
from porch.notify import GateNotifier, NotificationDeduper
from porch.planner import NextResult, Planner
from porch.protocol import PhaseDefinition, Protocol, ProtocolLoader
from porch.runner import BuildVerifyLoop
from porch.state import FileLock, ProjectState, StateStore, find_status_path, iter_projects
from porch.workflow import Workflow, require_human_approval

logger = logging.getLogger(__name__)

_PROJECT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.]*$")
_TITLE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(slots=True)
class DoneResult:
    status: str
    message: str
    checks: list[CheckResult] = field(default_factory=list)


@dataclass(slots=True)
class GateView:
    gate: str
    status: str
    requested_at: str | None
    summary: str | None
    artifact: Path | None
    newly_requested: bool = False


@dataclass(slots=True)
class PendingGate:
    project_id: str
    title: str
    gate: str
    requested_at: str | None


def status_payload(state: ProjectState) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": state.id,
        "title": state.title,
        "protocol": state.protocol,
        "phase": state.phase,
        "iteration": state.iteration,
        "build_complete": state.build_complete,
        "gates": {name: gate.to_dict() for name, gate in state.gates.items()},
        "started_at": state.started_at,
        "updated_at": state.updated_at,
    }
    if state.plan_phases:
        payload["plan_phases"] = [phase.to_dict() for phase in state.plan_phases]
        payload["current_plan_phase"] = state.current_plan_phase
    if state.awaiting_input:
        payload["awaiting_input"] = True
        payload["pending_question"] = state.context.get("pending_question")
    if state.blocked_reason:
        payload["blocked_reason"] = state.blocked_reason
    if state.build_failures:
        payload["build_failures"] = state.build_failures
    return payload


def _position(state: ProjectState) -> tuple[str, str | None, int, bool]:
    return (state.phase, state.current_plan_phase, state.iteration, state.build_complete)


class Orchestrator:
    def __init__(
        self,
        context: PorchContext,
        *,
        loader: ProtocolLoader | None = None,
        notifier: GateNotifier | None = None,
    ) -> None:
        self.context = context
        self.loader = loader or ProtocolLoader(
            context.protocol_dirs,
            default_max_iterations=context.config.workflow.default_max_iterations,
        )
        notify = context.config.notify
        self.notifier = notifier or GateNotifier(
            notify.endpoint,
            timeout_seconds=notify.timeout_seconds,
            deduper=NotificationDeduper(
                ttl_seconds=notify.dedupe_ttl_seconds,
                max_entries=notify.dedupe_max_entries,
            ),
        )

    def _store(self, status_path: Path) -> StateStore:
        return StateStore(status_path, context=self.context)

    def _open(self, project_id: str) -> tuple[StateStore, Workflow]:
        store = self._store(find_status_path(self.context, project_id))
        with store.lock:
            state = store.read()
        return store, Workflow(self.context, self.loader.load(state.protocol))

    def load_protocol(self, name: str) -> Protocol:
        return self.loader.load(name)

    def init(self, protocol_name: str, project_id: str, title: str) -> tuple[ProjectState, bool]:
        """Create the project, or return the existing state if ``project_id`` is taken."""
        if not _PROJECT_ID.match(project_id):
            raise PorchStateError(f"Invalid project id: {project_id!r}")
        if not _TITLE.match(title):
            raise PorchStateError(
                f"Invalid project title: {title!r} (use letters, digits, '-', '_' or '.')"
            )
        protocol = self.loader.load(protocol_name)
        # Lookup and creation share one lock per id so concurrent inits cannot
        # create two directories for the same project.
        with FileLock(self.context.projects_dir / f".{project_id}.init.lock", name=f"init-{project_id}"):
            try:
                existing = find_status_path(self.context, project_id)
            except PorchStateError:
                existing = None
            if existing is not None:
                store = self._store(existing)
                with store.lock:
                    state = store.read()
                logger.info("Project %s already exists at %s", project_id, existing.parent)
                return state, False

            workflow = Workflow(self.context, protocol)
            state = workflow.create_state(project_id, title)
            store = self._store(self.context.status_path(project_id, title))
            store.write(state)
        logger.info("Initialized project %s-%s with protocol %s", project_id, title, protocol.name)
        return state, True

    def status(self, project_id: str) -> ProjectState:
        store, _ = self._open(project_id)
        with store.lock:
            return store.read()

    def list_status(self) -> list[ProjectState]:
        states: list[ProjectState] = []
        for status_path in iter_projects(self.context):
            store = self._store(status_path)
            try:
                with store.lock:
                    states.append(store.read())
            except PorchStateError as exc:
                logger.warning("Skipping unreadable project %s: %s", status_path.parent.name, exc)
        return states

    def pending(self) -> list[PendingGate]:
        gates: list[PendingGate] = []
        for state in self.list_status():
            for name, gate in state.gates.items():
                if gate.is_waiting:
                    gates.append(
                        PendingGate(
                            project_id=state.id,
                            title=state.title,
                            gate=name,
                            requested_at=gate.requested_at,
                        )
                    )
        return gates

    def check(self, project_id: str) -> list[CheckResult]:
        store, workflow = self._open(project_id)
        with store.lock:
            state = store.read()
        checks = workflow.protocol.phase_checks(state.phase, self.context.config.checks)
        if not checks:
            logger.info("No checks defined for phase %s", state.phase)
            return []
        return run_phase_checks(
            checks,
            workspace_root=self.context.workspace_root,
            project_id=state.id,
            title=state.title,
        )

    def done(self, project_id: str) -> DoneResult:
        store, workflow = self._open(project_id)
        with store.lock:
            snapshot = store.read()
        phase = workflow.phase_def(snapshot)
        if workflow.is_complete(snapshot) or phase is None:
            return DoneResult(status="complete", message=f"Project {snapshot.id} is already complete.")

        # Checks can run for minutes, so they run unlocked against a snapshot.
        checks: list[CheckResult] = []
        if not snapshot.build_complete:
            if phase.is_build_verify and not workflow.artifact_exists(snapshot):
                raise PorchStateError(
                    f"Artifact {workflow.artifact_glob(snapshot)} not found for phase {snapshot.phase}.\n"
                    f"Build it first, then run: porch done {snapshot.id}"
                )
            checks = self._run_checks(workflow, snapshot)

        opened: str | None = None
        with store.transaction() as state:
            if _position(state) != _position(snapshot):
                raise PorchStateError(
                    f"Project {state.id} changed while checks were running.\n"
                    f"Run: porch done {state.id}"
                )
            if phase.is_build_verify:
                result = self._done_build_verify(workflow, state, phase, checks)
            else:
                outcome = workflow.complete_once_phase(state)
                if outcome.action == "gate_requested":
                    result = DoneResult(
                        status="gate_pending",
                        message=f"Gate {outcome.gate} requested. Run: porch gate {state.id}",
                        checks=checks,
                    )
                else:
                    result = DoneResult(
                        status="advanced",
                        message=f"Advanced to {state.review_scope}",
                        checks=checks,
                    )
                if outcome.gate and outcome.gate_newly_requested:
                    opened = outcome.gate
        if opened is not None:
            self._notify(state, opened)
        return result

    def _run_checks(self, workflow: Workflow, state: ProjectState) -> list[CheckResult]:
        checks = workflow.protocol.phase_checks(state.phase, self.context.config.checks)
        results = run_phase_checks(
            checks,
            workspace_root=self.context.workspace_root,
            project_id=state.id,
            title=state.title,
        )
        failed = [result for result in results if not result.passed]
        if failed:
            names = ", ".join(result.name for result in failed)
            raise ChecksFailedError(
                f"Checks failed for phase {state.phase}: {names}\n"
                f"Fix the failures, then run: porch done {state.id}"
            )
        return results

    def _done_build_verify(
        self,
        workflow: Workflow,
        state: ProjectState,
        phase: PhaseDefinition,
        checks: list[CheckResult],
    ) -> DoneResult:
        if not state.build_complete:
            workflow.mark_build_complete(state)
            return DoneResult(
                status="build_complete",
                message=f"Build complete. Run: porch next {state.id}",
                checks=checks,
            )

        missing = missing_reviewers(self.context, state, workflow.verify_settings(phase).reviewers)
        if missing:
            raise PorchStateError(
                f"Verification required for {state.review_scope}: missing reviews from "
                f"{', '.join(missing)}\nRun: porch next {state.id}"
            )
        if phase.gate and not workflow.gate_approved(state):
            return DoneResult(
                status="gate_pending",
                message=f"Gate {phase.gate} must be approved before advancing.",
            )
        workflow.advance_phase(state)
        return DoneResult(status="advanced", message=f"Advanced to {state.phase}")

    def _notify(self, state: ProjectState, gate: str) -> None:
        self.notifier.notify_gate_opened_sync(
            state.id,
            gate,
            requested_at=state.gates[gate].requested_at,
            context={"phase": state.phase, "title": state.title},
        )

    def gate(self, project_id: str) -> GateView:
        store, workflow = self._open(project_id)
        with store.transaction() as state:
            phase = workflow.phase_def(state)
            if phase is None or not phase.gate:
                raise PorchStateError(f"No gate for phase {state.phase}")
            newly = workflow.request_gate(state, phase.gate)
            gate = state.gates[phase.gate]
            view = GateView(
                gate=phase.gate,
                status=gate.status,
                requested_at=gate.requested_at,
                summary=gate.summary,
                artifact=workflow.artifact_path(state),
                newly_requested=newly,
            )
        if newly:
            self._notify(state, phase.gate)
        return view

    def approve(self, project_id: str, gate: str, *, human_approved: bool) -> bool:
        require_human_approval(gate, human_approved)
        store, workflow = self._open(project_id)
        with store.transaction() as state:
            return workflow.approve_gate(state, gate, human_approved=True)

    def rollback(self, project_id: str, phase_id: str) -> ProjectState:
        store, workflow = self._open(project_id)
        with store.transaction() as state:
            workflow.rollback(state, phase_id)
        return state

    def answer(self, project_id: str, text: str) -> ProjectState:
        store, workflow = self._open(project_id)
        with store.transaction() as state:
            if not state.awaiting_input:
                raise PorchStateError(f"Project {project_id} is not waiting for input")
            workflow.answer(state, text)
        return state

    def planner(self, project_id: str) -> Planner:
        store, workflow = self._open(project_id)
        return Planner(self.context, store, workflow, notifier=self.notifier)

    def next(self, project_id: str) -> NextResult:
        return self.planner(project_id).next()

    def runner(self, project_id: str, *, event_hook: BackendEventHook | None = None) -> BuildVerifyLoop:
        store, workflow = self._open(project_id)
        build = self.context.config.build
        review = self.context.config.review
        worker = ResilientWorker(
            ClaudeWorker(build.binary),
            RetryPolicy(
                max_retries=max(0, build.max_retries),
                backoff_seconds=max(0.0, build.retry_backoff_seconds),
                timeout_seconds=max(5.0, build.timeout_seconds),
            ),
            name=build.binary,
            event_hook=event_hook,
        )
        consultation = Consultation(
            ConsultReviewer(review.binary),
            RetryPolicy(
                max_retries=max(0, review.max_retries),
                backoff_seconds=max(0.0, review.retry_backoff_seconds),
                timeout_seconds=max(5.0, review.timeout_seconds),
            ),
            cwd=self.context.workspace_root,
            event_hook=event_hook,
        )
        return BuildVerifyLoop(
            self.context,
            store,
            workflow,
            worker,
            consultation,
            notifier=self.notifier,
            event_hook=event_hook,
        )
