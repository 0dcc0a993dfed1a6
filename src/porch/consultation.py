"""Multi-reviewer verification.

Review output files live in the project directory and are named from
(project id, plan phase or phase, iteration, reviewer), so the planner and
the run loop find them without an index.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from porch.backends.base import BackendExecutionError, Reviewer, ReviewRequest
from porch.backends.resilient import BackendEventHook, ResilientReviewer, RetryPolicy
from porch.context import PorchContext
from porch.parsing import Verdict, extract_review_summary, parse_verdict
from porch.state.models import ProjectState, ReviewResult

logger = logging.getLogger(__name__)

_ITERATION_FILE = re.compile(r"^(?P<scope>.+?)-iter\d+-[^/]+\.(?:txt|md)$")

_ARTIFACT_TYPES = {
    "specify": "spec",
    "plan": "plan",
    "implement": "impl",
    "review": "review",
}

_STATEFUL_REVIEW_NOTICE = [
    "### IMPORTANT: Stateful Review Context",
    "This is NOT the first review iteration. Previous reviewers raised concerns "
    "and the builder has responded.",
    "Before re-raising a previous concern:",
    "1. Check if the builder has already addressed it in code",
    "2. If the builder disputes a concern with evidence, verify the claim against "
    "actual project files before insisting",
    "3. Do not re-raise concerns that have been explained as false positives with "
    "valid justification",
    "4. Check package metadata and config files for version numbers before flagging "
    "missing configuration",
    "",
]


def consult_artifact_type(phase_id: str) -> str:
    return _ARTIFACT_TYPES.get(phase_id, "spec")


def _stem(state: ProjectState, iteration: int) -> str:
    return f"{state.id}-{state.review_scope}-iter{iteration}"


def review_path(
    context: PorchContext,
    state: ProjectState,
    reviewer: str,
    iteration: int | None = None,
) -> Path:
    number = state.iteration if iteration is None else iteration
    return context.project_dir(state.id, state.title) / f"{_stem(state, number)}-{reviewer}.txt"


def review_context_path(context: PorchContext, state: ProjectState) -> Path:
    return context.project_dir(state.id, state.title) / f"{_stem(state, state.iteration)}-context.md"


def rebuttal_path(context: PorchContext, state: ProjectState, iteration: int) -> Path:
    return context.project_dir(state.id, state.title) / f"{_stem(state, iteration)}-rebuttals.md"


def find_reviews(
    context: PorchContext,
    state: ProjectState,
    reviewers: Iterable[str],
) -> list[ReviewResult]:
    results: list[ReviewResult] = []
    for reviewer in reviewers:
        path = review_path(context, state, reviewer)
        if not path.exists():
            continue
        verdict = parse_verdict(path.read_text(encoding="utf-8", errors="replace"))
        results.append(ReviewResult(reviewer=reviewer, verdict=verdict.value, file=str(path)))
    return results


def missing_reviewers(
    context: PorchContext,
    state: ProjectState,
    reviewers: Iterable[str],
) -> list[str]:
    return [r for r in reviewers if not review_path(context, state, r).exists()]


def _summary_of(review: ReviewResult) -> str | None:
    path = Path(review.file)
    if not path.exists():
        return None
    return extract_review_summary(path.read_text(encoding="utf-8", errors="replace"))


def build_review_context(context: PorchContext, state: ProjectState) -> str | None:
    """Summarise earlier iterations of the current scope for the next review round."""
    records = [r for r in state.history if r.plan_phase == state.current_plan_phase]
    if not records:
        return None

    lines: list[str] = []
    for record in records:
        lines.append(f"### Iteration {record.iteration} Reviews")
        for review in record.reviews:
            summary = _summary_of(review)
            suffix = f" - {summary}" if summary else ""
            lines.append(f"- {review.reviewer}: {review.verdict.upper()}{suffix}")
        lines.append("")

        rebuttal = rebuttal_path(context, state, record.iteration)
        if rebuttal.exists():
            lines.append(f"### Builder Response to Iteration {record.iteration}")
            lines.append(rebuttal.read_text(encoding="utf-8", errors="replace"))
            lines.append("")

    lines.extend(_STATEFUL_REVIEW_NOTICE)
    return "\n".join(lines)


def write_review_context(context: PorchContext, state: ProjectState) -> Path | None:
    content = build_review_context(context, state)
    if content is None:
        return None
    path = review_context_path(context, state)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def format_verdicts(reviews: Iterable[ReviewResult]) -> str:
    return ", ".join(f"{r.reviewer}={r.verdict.upper()}" for r in reviews) or "N/A"


def review_requests(
    context: PorchContext,
    state: ProjectState,
    reviewers: Iterable[str],
    review_type: str,
    *,
    artifact_type: str | None = None,
    context_file: Path | None = None,
) -> list[ReviewRequest]:
    return [
        ReviewRequest(
            reviewer=reviewer,
            review_type=review_type,
            artifact_type=artifact_type or consult_artifact_type(state.phase),
            project_id=state.id,
            output_path=review_path(context, state, reviewer),
            plan_phase=state.current_plan_phase,
            context_file=context_file,
        )
        for reviewer in reviewers
    ]


class Consultation:
    """Fans review requests out to the reviewer backend and collects verdicts."""

    def __init__(
        self,
        reviewer: Reviewer,
        retry_policy: RetryPolicy,
        *,
        cwd: Path,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.reviewer = ResilientReviewer(reviewer, retry_policy, event_hook=event_hook)
        self.cwd = cwd
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _review_one(self, request: ReviewRequest) -> ReviewResult:
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            output = await self.reviewer.review(request, self.cwd)
        except BackendExecutionError as exc:
            logger.warning("Reviewer %s failed after retries: %s", request.reviewer, exc)
            request.output_path.write_text(
                f"[CONSULT_ERROR] Review by {request.reviewer} failed.\n{exc}\n",
                encoding="utf-8",
            )
            self._emit({"event": "review_failed", "reviewer": request.reviewer, "error": str(exc)})
            return ReviewResult(
                reviewer=request.reviewer,
                verdict=Verdict.ERROR.value,
                file=str(request.output_path),
            )

        request.output_path.write_text(output, encoding="utf-8")
        verdict = parse_verdict(output)
        self._emit({"event": "review_complete", "reviewer": request.reviewer, "verdict": verdict.value})
        return ReviewResult(
            reviewer=request.reviewer,
            verdict=verdict.value,
            file=str(request.output_path),
        )

    async def verify(
        self,
        requests: list[ReviewRequest],
        *,
        parallel: bool = True,
    ) -> list[ReviewResult]:
        if parallel:
            return list(await asyncio.gather(*(self._review_one(r) for r in requests)))
        results: list[ReviewResult] = []
        for request in requests:
            results.append(await self._review_one(request))
        return results


def archive_reviews(
    context: PorchContext,
    state: ProjectState,
    scopes: Iterable[str],
    label: str,
) -> list[Path]:
    """Move review, context and rebuttal files of ``scopes`` into ``archive/<label>``.

    Reviews are found by file name alone, so files left behind by an earlier
    pass through a scope would otherwise count as reviews of the next pass.
    """
    project = context.project_dir(state.id, state.title)
    if not project.is_dir():
        return []
    wanted = set(scopes)
    prefix = f"{state.id}-"
    archive = project / "archive" / label
    suffix = 1
    while archive.exists():
        suffix += 1
        archive = project / "archive" / f"{label}-{suffix}"

    moved: list[Path] = []
    for path in sorted(project.iterdir()):
        if not path.is_file() or not path.name.startswith(prefix):
            continue
        match = _ITERATION_FILE.match(path.name[len(prefix) :])
        if match is None or match["scope"] not in wanted:
            continue
        archive.mkdir(parents=True, exist_ok=True)
        target = archive / path.name
        path.replace(target)
        moved.append(target)
    if moved:
        logger.info("[%s] archived %d review files to %s", state.id, len(moved), archive)
    return moved
