import itertools
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from porch.backends.base import BuildResult, BuildWorker, Reviewer, ReviewRequest
from porch.backends.resilient import RetryPolicy
from porch.config import PorchConfig
from porch.consultation import Consultation
from porch.context import PorchContext
from porch.protocol import ProtocolLoader
from porch.runner import BuildVerifyLoop, GitActions
from porch.state import StateStore, find_status_path
from porch.workflow import Workflow

REVIEWERS = ["gemini", "codex", "claude"]

TEST_PROTOCOL = {
    "name": "spir",
    "alias": "SPIR",
    "version": "1.0.0",
    "defaults": {"checks": {"tests": "true"}},
    "phases": [
        {
            "id": "specify",
            "name": "Specify",
            "type": "build_verify",
            "build": {"prompt": "specify.md", "artifact": "codev/specs/${PROJECT_ID}-*.md"},
            "verify": {"type": "spec-review", "models": REVIEWERS},
            "max_iterations": 3,
            "on_complete": {"commit": True, "push": False},
            "gate": "specify_approval",
        },
        {
            "id": "plan",
            "name": "Plan",
            "type": "build_verify",
            "build": {"prompt": "plan.md", "artifact": "codev/plans/${PROJECT_ID}-*.md"},
            "verify": {"type": "plan-review", "models": REVIEWERS},
            "max_iterations": 3,
            "gate": "plan_approval",
        },
        {
            "id": "implement",
            "name": "Implement",
            "type": "per_plan_phase",
            "build": {"prompt": "implement.md"},
            "verify": {"type": "impl-review", "models": REVIEWERS},
            "max_iterations": 3,
            "checks": ["tests"],
        },
        {
            "id": "review",
            "name": "Review",
            "type": "once",
            "checks": ["tests"],
            "next": "complete",
        },
    ],
}

PLAN_TEXT = """# Plan: demo

### Phase 1: Core model

Build the data model and its tests.

### Phase 2: Command line

Wire the model into the CLI.
"""

APPROVE_REVIEW = (
    "The artifact is complete and consistent with the requirements.\n"
    "SUMMARY: Looks good overall\n"
    "VERDICT: APPROVE\n"
)
REQUEST_CHANGES_REVIEW = (
    "Several acceptance criteria are missing from the document.\n"
    "SUMMARY: Missing acceptance criteria\n"
    "VERDICT: REQUEST_CHANGES\n"
)


def make_clock() -> Callable[[], datetime]:
    base = datetime(2026, 1, 1, tzinfo=UTC)
    counter = itertools.count()
    return lambda: base + timedelta(seconds=next(counter))


class ScriptedWorker(BuildWorker):
    """Writes the artifact the prompt asks for and answers with a fixed output."""

    def __init__(self, workspace: Path, output: str = "<signal>PHASE_COMPLETE</signal>") -> None:
        self.workspace = workspace
        self.output = output
        self.prompts: list[str] = []
        self.write_artifacts = True

    async def build(self, prompt: str, output_path: Path, cwd: Path) -> BuildResult:
        _ = cwd
        self.prompts.append(prompt)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(self.output, encoding="utf-8")
        if self.write_artifacts:
            if "# Phase: Specify" in prompt:
                target = self.workspace / "codev/specs/0099-demo.md"
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text("# Spec\n\nDemo spec.\n", encoding="utf-8")
            elif "# Phase: Plan" in prompt:
                target = self.workspace / "codev/plans/0099-demo.md"
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(PLAN_TEXT, encoding="utf-8")
        return BuildResult(success=True, output=self.output, cost_usd=0.01, duration_ms=10)


class ScriptedReviewer(Reviewer):
    """Returns a canned review per reviewer name, approving by default."""

    def __init__(self, reviews: dict[str, str] | None = None) -> None:
        self.reviews = reviews or {}
        self.requests: list[ReviewRequest] = []

    async def review(self, request: ReviewRequest, cwd: Path) -> str:
        _ = cwd
        self.requests.append(request)
        return self.reviews.get(request.reviewer, APPROVE_REVIEW)


class RecordingGit(GitActions):
    def __init__(self, workspace: Path) -> None:
        self.calls: list[list[str]] = []

        def _run(args: list[str], **kwargs: object) -> object:
            _ = kwargs
            self.calls.append(args)

            class _Done:
                returncode = 0
                stdout = ""
                stderr = ""

            return _Done()

        super().__init__(workspace, run=_run)  # type: ignore[arg-type]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    protocol_dir = tmp_path / "codev/protocols/spir"
    protocol_dir.mkdir(parents=True)
    (protocol_dir / "protocol.json").write_text(json.dumps(TEST_PROTOCOL), encoding="utf-8")
    return tmp_path


@pytest.fixture
def context(workspace: Path) -> PorchContext:
    return PorchContext(workspace_root=workspace, config=PorchConfig(), clock=make_clock())


@pytest.fixture
def workflow(context: PorchContext) -> Workflow:
    loader = ProtocolLoader(context.protocol_dirs, include_builtin=False)
    return Workflow(context, loader.load("spir"))


@pytest.fixture
def project(context: PorchContext, workflow: Workflow) -> StateStore:
    state = workflow.create_state("0099", "demo")
    store = StateStore(context.status_path("0099", "demo"), context=context)
    store.write(state)
    return store


def make_loop(
    context: PorchContext,
    workflow: Workflow,
    worker: BuildWorker,
    reviewer: Reviewer,
    **kwargs: object,
) -> BuildVerifyLoop:
    store = StateStore(find_status_path(context, "0099"), context=context)
    consultation = Consultation(
        reviewer,
        RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
        cwd=context.workspace_root,
    )
    kwargs.setdefault("git", RecordingGit(context.workspace_root))
    return BuildVerifyLoop(context, store, workflow, worker, consultation, **kwargs)  # type: ignore[arg-type]
