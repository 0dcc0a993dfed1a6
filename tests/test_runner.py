import asyncio
import json
from pathlib import Path

import httpx
import pytest
from conftest import REQUEST_CHANGES_REVIEW, REVIEWERS, ScriptedReviewer, ScriptedWorker, make_loop

from porch.backends.base import BackendExecutionError, BuildResult, BuildWorker
from porch.config import CheckOverride
from porch.context import PorchContext
from porch.errors import BuildCircuitOpenError
from porch.notify import GateNotifier
from porch.runner import build_output_path, commit_message
from porch.state import ReviewResult, StateStore
from porch.workflow import Workflow


class FailingWorker(BuildWorker):
    def __init__(self) -> None:
        self.calls = 0

    async def build(self, prompt: str, output_path: Path, cwd: Path) -> BuildResult:
        _ = prompt, output_path, cwd
        self.calls += 1
        raise BackendExecutionError("worker crashed", backend="claude", retriable=False)


def _approve(store: StateStore, workflow: Workflow, gate: str) -> None:
    with store.transaction() as state:
        workflow.approve_gate(state, gate, human_approved=True)


def test_unanimous_approval_stops_at_gate(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    worker = ScriptedWorker(workspace)
    reviewer = ScriptedReviewer()
    loop = make_loop(context, workflow, worker, reviewer)

    summary = asyncio.run(loop.run())

    assert summary.status == "gate_pending"
    assert summary.gate == "specify_approval"
    assert summary.steps == 2
    state = project.read()
    assert state.gates["specify_approval"].requested_at is not None
    assert state.gates["specify_approval"].status == "pending"
    assert not state.build_complete
    assert state.iteration == 1
    assert state.history == []
    assert len(worker.prompts) == 1
    assert sorted(r.reviewer for r in reviewer.requests) == sorted(REVIEWERS)

    git_calls = loop.git.calls  # type: ignore[attr-defined]
    assert git_calls[0][:3] == ["git", "--no-pager", "add"]
    assert git_calls[0][-1] == str(workspace / "codev/specs/0099-demo.md")
    assert git_calls[1][2:4] == ["commit", "-m"]
    assert git_calls[1][4].startswith("[Spec 0099] specify: demo")
    assert len(git_calls) == 2


def test_request_changes_bumps_iteration(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    reviewer = ScriptedReviewer({"codex": REQUEST_CHANGES_REVIEW})
    loop = make_loop(context, workflow, ScriptedWorker(workspace), reviewer)

    summary = asyncio.run(loop.run(max_steps=2))

    assert summary.status == "step_limit"
    state = project.read()
    assert state.iteration == 2
    assert not state.build_complete
    assert state.gates["specify_approval"].requested_at is None
    assert len(state.history) == 1
    record = state.history[0]
    assert record.iteration == 1
    assert record.build_output.endswith("0099-specify-iter-1.txt")
    assert [(r.reviewer, r.verdict) for r in record.reviews] == [
        ("gemini", "approve"),
        ("codex", "request_changes"),
        ("claude", "approve"),
    ]
    assert loop.git.calls == []  # type: ignore[attr-defined]


def test_exhausted_iterations_escalate_to_gate(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    worker = ScriptedWorker(workspace)
    reviewer = ScriptedReviewer({"codex": REQUEST_CHANGES_REVIEW})
    loop = make_loop(context, workflow, worker, reviewer)

    summary = asyncio.run(loop.run())

    assert summary.status == "gate_pending"
    assert summary.steps == 6
    state = project.read()
    gate = state.gates["specify_approval"]
    assert gate.requested_at is not None
    assert gate.summary == "gemini: approve; codex: request_changes; claude: approve"
    assert len(worker.prompts) == 3
    assert "# REVISION REQUIRED" in worker.prompts[1]
    assert "Missing acceptance criteria" in worker.prompts[1]
    later_requests = [r for r in reviewer.requests if r.context_file is not None]
    assert len(later_requests) == 2 * len(REVIEWERS)
    assert later_requests[0].context_file.name == "0099-specify-iter2-context.md"


def test_existing_reviews_are_not_rerun(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    reviewer = ScriptedReviewer()
    loop = make_loop(context, workflow, ScriptedWorker(workspace), reviewer)
    asyncio.run(loop.run(max_steps=1))
    review_file = context.project_dir("0099", "demo") / "0099-specify-iter1-gemini.txt"
    review_file.write_text(REQUEST_CHANGES_REVIEW, encoding="utf-8")

    asyncio.run(loop.run(max_steps=1))

    assert sorted(r.reviewer for r in reviewer.requests) == ["claude", "codex"]
    state = project.read()
    assert state.iteration == 2
    assert state.history[0].reviews[0] == ReviewResult("gemini", "request_changes", str(review_file))


def test_circuit_breaker_halts_after_consecutive_failures(
    context: PorchContext, workflow: Workflow, project: StateStore
) -> None:
    events: list[dict] = []
    worker = FailingWorker()
    loop = make_loop(context, workflow, worker, ScriptedReviewer(), event_hook=events.append)

    with pytest.raises(BuildCircuitOpenError, match="3 consecutive times"):
        asyncio.run(loop.run())

    assert worker.calls == 3
    assert project.read().build_failures == 3
    assert [e["failures"] for e in events if e["event"] == "build_failed"] == [1, 2, 3]


def test_failing_check_counts_as_build_failure(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    with project.transaction() as state:
        state.phase = "review"
    context.config.workflow.circuit_breaker_threshold = 2
    context.config.checks["tests"] = CheckOverride(command="false")
    worker = ScriptedWorker(workspace)
    loop = make_loop(context, workflow, worker, ScriptedReviewer())

    summary = asyncio.run(loop.run(max_steps=1))
    assert summary.status == "step_limit"
    assert project.read().build_failures == 1
    assert project.read().phase == "review"

    with pytest.raises(BuildCircuitOpenError):
        asyncio.run(loop.run())
    assert len(worker.prompts) == 2


def test_missing_artifact_triggers_rebuild(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    worker = ScriptedWorker(workspace)
    worker.write_artifacts = False
    reviewer = ScriptedReviewer()
    loop = make_loop(context, workflow, worker, reviewer)

    summary = asyncio.run(loop.run(max_steps=3))

    assert summary.status == "step_limit"
    assert len(worker.prompts) == 2
    assert reviewer.requests == []
    assert project.read().build_complete


def test_awaiting_input_pauses_and_answer_reaches_prompt(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    worker = ScriptedWorker(workspace, output="<signal>AWAITING_INPUT: Which database?</signal>")
    loop = make_loop(context, workflow, worker, ScriptedReviewer())

    summary = asyncio.run(loop.run())

    assert summary.status == "awaiting_input"
    assert summary.detail == "Which database?"
    assert not project.read().build_complete

    with project.transaction() as state:
        workflow.answer(state, "Postgres 16")
    worker.output = "<signal>PHASE_COMPLETE</signal>"
    asyncio.run(loop.run(max_steps=1))

    assert "Postgres 16" in worker.prompts[-1]
    assert project.read().build_complete


def test_blocked_and_gate_needed_signals(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    worker = ScriptedWorker(workspace, output="<signal>BLOCKED: missing credentials</signal>")
    loop = make_loop(context, workflow, worker, ScriptedReviewer())

    blocked = asyncio.run(loop.run())
    assert blocked.status == "blocked"
    assert blocked.detail == "missing credentials"

    with project.transaction() as state:
        workflow.answer(state, "Credentials are in the vault now.")
    worker.output = "<signal>GATE_NEEDED</signal>"
    gated = asyncio.run(loop.run())

    assert gated.status == "gate_pending"
    assert gated.steps == 1
    assert not project.read().build_complete


def test_full_protocol_run_with_human_approvals(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    worker = ScriptedWorker(workspace)
    loop = make_loop(context, workflow, worker, ScriptedReviewer())

    first = asyncio.run(loop.run())
    assert (first.status, first.gate) == ("gate_pending", "specify_approval")
    _approve(project, workflow, "specify_approval")

    second = asyncio.run(loop.run())
    assert (second.status, second.gate) == ("gate_pending", "plan_approval")
    _approve(project, workflow, "plan_approval")

    final = asyncio.run(loop.run())

    assert final.status == "complete"
    state = project.read()
    assert state.phase == "complete"
    implement_prompts = [p for p in worker.prompts if "# Phase: Implement" in p]
    assert len(implement_prompts) == 2
    assert "phase_1 - Core model" in implement_prompts[0]
    assert "phase_2 - Command line" in implement_prompts[1]
    assert "# Phase: Review" in worker.prompts[-1]
    events = [entry["event"] for entry in state.log]
    assert events.count("gate_approved") == 2
    assert events.count("plan_phase_advanced") == 2


def test_preapproved_artifact_skips_phase(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    spec = workspace / "codev/specs/0099-demo.md"
    spec.parent.mkdir(parents=True)
    spec.write_text(
        "---\napproved: 2026-01-01\nvalidated: [gemini, codex, claude]\n---\n# Spec\n",
        encoding="utf-8",
    )
    worker = ScriptedWorker(workspace)
    loop = make_loop(context, workflow, worker, ScriptedReviewer())

    summary = asyncio.run(loop.run(max_steps=0))

    assert summary.status == "step_limit"
    assert summary.phase == "plan"
    assert project.read().gates["specify_approval"].status == "approved"
    assert worker.prompts == []


def test_gate_notification_sent_once(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    received: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(200)

    notifier = GateNotifier("http://localhost:4200/api/notify", async_transport=httpx.MockTransport(handler))
    loop = make_loop(context, workflow, ScriptedWorker(workspace), ScriptedReviewer(), notifier=notifier)

    asyncio.run(loop.run())
    asyncio.run(loop.run())

    assert len(received) == 1
    assert received[0]["gate"] == "specify_approval"
    assert received[0]["context"] == {"phase": "specify", "title": "demo"}
    _ = project


def test_output_path_and_commit_message(context: PorchContext, project: StateStore) -> None:
    state = project.read()
    state.phase = "implement"
    state.current_plan_phase = "phase_1"
    state.iteration = 2

    assert build_output_path(context, state).name == "0099-phase_1-iter-2.txt"
    assert commit_message(state, "implement", 2, [ReviewResult("gemini", "approve", "f")]) == (
        "[Spec 0099] implement: demo\n\nIteration 2\n1-way review: gemini=APPROVE"
    )


def test_rollback_reruns_every_reviewer(
    context: PorchContext, workflow: Workflow, project: StateStore, workspace: Path
) -> None:
    loop = make_loop(context, workflow, ScriptedWorker(workspace), ScriptedReviewer())
    asyncio.run(loop.run())
    _approve(project, workflow, "specify_approval")
    assert asyncio.run(loop.run()).gate == "plan_approval"
    with project.transaction() as state:
        workflow.rollback(state, "specify")

    reviewer = ScriptedReviewer({"codex": REQUEST_CHANGES_REVIEW})
    rerun = make_loop(context, workflow, ScriptedWorker(workspace), reviewer)
    summary = asyncio.run(rerun.run(max_steps=2))

    assert summary.status == "step_limit"
    assert sorted(r.reviewer for r in reviewer.requests) == sorted(REVIEWERS)
    state = project.read()
    assert state.phase == "specify"
    assert state.iteration == 2
    assert state.gates["specify_approval"].requested_at is None
    archived = list((context.project_dir("0099", "demo") / "archive").glob("rollback-*/*"))
    assert sorted(path.name for path in archived) == sorted(
        [f"0099-{scope}-iter1-{name}.txt" for scope in ("specify", "plan") for name in REVIEWERS]
    )
