"""The build -> verify -> iterate/gate -> advance driver.

Each step reads state, performs at most one external task (a build or a
round of reviews), then commits the resulting transition in a single state
store transaction. An interrupted run therefore leaves the state file at the
last fully committed step.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from porch.backends.base import BackendExecutionError, BuildWorker
from porch.backends.resilient import BackendEventHook
from porch.checks import run_phase_checks
from porch.consultation import (
    Consultation,
    find_reviews,
    format_verdicts,
    missing_reviewers,
    review_requests,
    write_review_context,
)
from porch.context import PorchContext
from porch.errors import BuildCircuitOpenError
from porch.notify import GateNotifier
from porch.parsing import Signal, SignalKind, parse_signal
from porch.prompts import build_phase_prompt
from porch.protocol import PhaseDefinition
from porch.state.models import ProjectState, ReviewResult
from porch.state.store import StateStore
from porch.workflow import Workflow

logger = logging.getLogger(__name__)

RunStatus = Literal["complete", "gate_pending", "awaiting_input", "blocked", "step_limit"]


@dataclass(slots=True)
class RunSummary:
    status: RunStatus
    project_id: str
    phase: str
    iteration: int
    steps: int
    gate: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "project_id": self.project_id,
            "phase": self.phase,
            "iteration": self.iteration,
            "steps": self.steps,
        }
        if self.gate is not None:
            payload["gate"] = self.gate
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


class GitActions:
    """On-complete commit and push. Failures are logged, never raised."""

    def __init__(
        self,
        workspace_root: Path,
        *,
        remote: str = "origin",
        run: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    ) -> None:
        self.workspace_root = workspace_root
        self.remote = remote
        self._run = run

    def _git(self, args: list[str]) -> bool:
        try:
            proc = self._run(
                ["git", "--no-pager", *args],
                cwd=self.workspace_root,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            logger.warning("git %s failed: %s", args[0], exc)
            return False
        if proc.returncode != 0:
            logger.warning(
                "git %s failed (exit %s): %s",
                args[0],
                proc.returncode,
                (proc.stderr or proc.stdout or "").strip(),
            )
            return False
        return True

    def commit(self, paths: list[Path], message: str) -> bool:
        if paths and not self._git(["add", "--", *(str(path) for path in paths)]):
            return False
        return self._git(["commit", "-m", message])

    def push(self) -> bool:
        return self._git(["push", self.remote, "HEAD"])


def build_output_path(context: PorchContext, state: ProjectState) -> Path:
    return context.project_dir(state.id, state.title) / (
        f"{state.id}-{state.review_scope}-iter-{state.iteration}.txt"
    )


def commit_message(
    state: ProjectState,
    phase_id: str,
    iteration: int,
    reviews: list[ReviewResult],
) -> str:
    return (
        f"[Spec {state.id}] {phase_id}: {state.title}\n\n"
        f"Iteration {iteration}\n"
        f"{len(reviews)}-way review: {format_verdicts(reviews)}"
    )


class BuildVerifyLoop:
    def __init__(
        self,
        context: PorchContext,
        store: StateStore,
        workflow: Workflow,
        worker: BuildWorker,
        consultation: Consultation,
        *,
        notifier: GateNotifier | None = None,
        git: GitActions | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.context = context
        self.store = store
        self.workflow = workflow
        self.worker = worker
        self.consultation = consultation
        self.notifier = notifier
        self.git = git or GitActions(context.workspace_root, remote=context.config.git.remote)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _summary(
        self,
        status: RunStatus,
        state: ProjectState,
        steps: int,
        *,
        gate: str | None = None,
        detail: str | None = None,
    ) -> RunSummary:
        return RunSummary(
            status=status,
            project_id=state.id,
            phase=state.phase,
            iteration=state.iteration,
            steps=steps,
            gate=gate,
            detail=detail,
        )

    async def _notify_gate(self, state: ProjectState, gate: str) -> None:
        if self.notifier is None:
            return
        await self.notifier.notify_gate_opened(
            state.id,
            gate,
            requested_at=state.gates[gate].requested_at,
            context={"phase": state.phase, "title": state.title},
        )

    def _read(self) -> ProjectState:
        with self.store.lock:
            return self.store.read()

    async def run(self, max_steps: int | None = None) -> RunSummary:
        steps = 0
        while True:
            state = self._read()
            phase = self.workflow.phase_def(state)

            if self.workflow.is_complete(state) or phase is None:
                return self._summary("complete", state, steps)
            if state.awaiting_input:
                if state.blocked_reason:
                    return self._summary("blocked", state, steps, detail=state.blocked_reason)
                return self._summary(
                    "awaiting_input", state, steps, detail=state.context.get("pending_question")
                )

            if self.workflow.is_preapproved(state):
                with self.store.transaction() as state:
                    self.workflow.apply_preapproval(state)
                continue

            waiting = self.workflow.waiting_gate(state)
            if waiting is not None:
                await self._notify_gate(state, waiting)
                return self._summary("gate_pending", state, steps, gate=waiting)

            if self.workflow.gate_approved(state):
                with self.store.transaction() as state:
                    self.workflow.advance_phase(state)
                continue

            if max_steps is not None and steps >= max_steps:
                return self._summary("step_limit", state, steps)
            steps += 1
            self._emit({"event": "run_step", "project_id": state.id, "phase": state.phase, "step": steps})

            if not phase.is_build_verify:
                await self._build_step(state, phase, self._complete_once)
            elif not state.build_complete:
                await self._build_step(state, phase, self._complete_build)
            elif not self.workflow.artifact_exists(state):
                logger.warning(
                    "[%s] build reported complete but artifact %s is missing, rebuilding",
                    state.id,
                    self.workflow.artifact_glob(state),
                )
                with self.store.transaction() as state:
                    self.workflow.reset_build(state)
            else:
                await self._verify_step(state, phase)

    async def _run_build(self, state: ProjectState) -> tuple[Path, str] | None:
        output_path = build_output_path(self.context, state)
        prompt = build_phase_prompt(self.context, state, self.workflow.protocol)
        logger.info("[%s] building %s (iteration %s)", state.id, state.review_scope, state.iteration)
        try:
            result = await self.worker.build(prompt, output_path, self.context.workspace_root)
        except BackendExecutionError as exc:
            self._build_failed(state, str(exc), exc)
            return None
        return output_path, result.output

    def _build_failed(self, state: ProjectState, error: str, cause: Exception | None = None) -> None:
        with self.store.transaction() as current:
            failures = self.workflow.record_build_failure(current, error)
        self._emit({"event": "build_failed", "project_id": state.id, "failures": failures})
        if failures >= self.context.config.workflow.circuit_breaker_threshold:
            raise BuildCircuitOpenError(
                f"Build failed {failures} consecutive times for project {state.id}; "
                "halting. Fix the underlying problem, then run again."
            ) from cause

    def _is_pause(self, signal: Signal | None, phase: PhaseDefinition) -> bool:
        if signal is None:
            return False
        if signal.kind in (SignalKind.AWAITING_INPUT, SignalKind.BLOCKED):
            return True
        return signal.kind == SignalKind.GATE_NEEDED and bool(phase.gate)

    def _checks_pass(self, state: ProjectState, phase: PhaseDefinition) -> bool:
        checks = self.workflow.protocol.phase_checks(phase.id, self.context.config.checks)
        if not checks:
            return True
        results = run_phase_checks(
            checks,
            workspace_root=self.context.workspace_root,
            project_id=state.id,
            title=state.title,
        )
        failed = next((result for result in results if not result.passed), None)
        if failed is None:
            return True
        logger.warning("[%s] check %s failed: %s", state.id, failed.name, failed.error)
        self._build_failed(state, f"check {failed.name} failed")
        return False

    def _complete_once(self, state: ProjectState) -> str | None:
        outcome = self.workflow.complete_once_phase(state)
        return outcome.gate if outcome.gate_newly_requested else None

    def _complete_build(self, state: ProjectState) -> str | None:
        self.workflow.mark_build_complete(state)
        return None

    async def _build_step(
        self,
        state: ProjectState,
        phase: PhaseDefinition,
        on_success: Callable[[ProjectState], str | None],
    ) -> None:
        built = await self._run_build(state)
        if built is None:
            return
        output_path, output = built
        signal = parse_signal(output)
        if not self._is_pause(signal, phase) and not self._checks_pass(state, phase):
            return

        opened: str | None = None
        with self.store.transaction() as state:
            self.workflow.record_build_output(state, output_path)
            state.build_failures = 0
            if signal is not None and signal.kind == SignalKind.AWAITING_INPUT:
                self.workflow.set_awaiting_input(state, question=signal.detail)
            elif signal is not None and signal.kind == SignalKind.BLOCKED:
                self.workflow.set_awaiting_input(
                    state,
                    question=signal.detail,
                    reason=signal.detail or "blocked",
                )
            elif self._is_pause(signal, phase) and phase.gate:
                if self.workflow.request_gate(state, phase.gate):
                    opened = phase.gate
            else:
                if signal is not None and signal.kind == SignalKind.UNKNOWN:
                    logger.warning("[%s] ignoring unknown signal %s", state.id, signal.name)
                opened = on_success(state)
        if opened is not None:
            await self._notify_gate(state, opened)

    async def _verify_step(self, state: ProjectState, phase: PhaseDefinition) -> None:
        verify = self.workflow.verify_settings(phase)
        reviewers = verify.reviewers
        existing = find_reviews(self.context, state, reviewers)
        pending = missing_reviewers(self.context, state, reviewers)
        context_file = write_review_context(self.context, state) if state.iteration > 1 else None
        requests = review_requests(
            self.context,
            state,
            pending,
            verify.type,
            artifact_type=verify.artifact_type,
            context_file=context_file,
        )
        fresh = await self.consultation.verify(requests, parallel=verify.parallel)
        by_reviewer = {review.reviewer: review for review in [*existing, *fresh]}
        reviews = [by_reviewer[name] for name in reviewers if name in by_reviewer]

        phase_id = state.phase
        iteration = state.iteration
        artifact = self.workflow.artifact_path(state)
        with self.store.transaction() as state:
            outcome = self.workflow.resolve_verification(state, reviews)
        logger.info(
            "[%s] verification of %s iteration %s: %s (%s)",
            state.id,
            phase_id,
            iteration,
            outcome.action,
            format_verdicts(reviews),
        )
        self._emit(
            {
                "event": "verification",
                "project_id": state.id,
                "phase": phase_id,
                "iteration": iteration,
                "action": outcome.action,
            }
        )

        if outcome.action != "iterate":
            self._on_complete(state, phase, phase_id, iteration, reviews, artifact)
        if outcome.gate and outcome.gate_newly_requested:
            await self._notify_gate(state, outcome.gate)

    def _on_complete(
        self,
        state: ProjectState,
        phase: PhaseDefinition,
        phase_id: str,
        iteration: int,
        reviews: list[ReviewResult],
        artifact: Path | None,
    ) -> None:
        actions = phase.on_complete
        if actions is None:
            return
        if actions.commit:
            paths = [artifact] if artifact is not None else []
            if self.git.commit(paths, commit_message(state, phase_id, iteration, reviews)):
                logger.info("[%s] committed %s", state.id, phase_id)
        if actions.push and self.git.push():
            logger.info("[%s] pushed %s", state.id, phase_id)
