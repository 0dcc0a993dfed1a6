from __future__ import annotations

import logging
import re
from pathlib import Path

from porch.context import PorchContext
from porch.parsing import extract_review_summary
from porch.plan import current_plan_phase, find_plan_file, plan_phase_content
from porch.protocol import Protocol
from porch.state.models import PlanPhase, ProjectState

logger = logging.getLogger(__name__)

_TEMPLATE_VAR = re.compile(r"\{\{(\w+)\}\}")

SIGNAL_FOOTER = """

## Completion Signals

When you complete your work, output one of these signals:

- **Phase complete**: `<signal>PHASE_COMPLETE</signal>`
- **Need human approval**: `<signal>GATE_NEEDED</signal>`
- **Need an answer from a human**: `<signal>AWAITING_INPUT: <question></signal>`
- **Blocked on something**: `<signal>BLOCKED: <reason></signal>`

Output the signal on its own line when appropriate.
"""


def substitute_variables(template: str, state: ProjectState, plan_phase: PlanPhase | None) -> str:
    variables = {
        "project_id": state.id,
        "title": state.title,
        "current_state": state.phase,
        "protocol": state.protocol,
    }
    if plan_phase is not None:
        variables["plan_phase_id"] = plan_phase.id
        variables["plan_phase_title"] = plan_phase.title
    return _TEMPLATE_VAR.sub(lambda m: variables.get(m.group(1), m.group(0)), template)


def revision_header(state: ProjectState) -> str | None:
    previous = next(
        (
            record
            for record in reversed(state.history)
            if record.iteration == state.iteration - 1
            and record.plan_phase == state.current_plan_phase
        ),
        None,
    )
    if previous is None or not previous.reviews:
        return None

    lines = [
        "# REVISION REQUIRED",
        "",
        f"This is iteration {state.iteration}. The previous version received feedback from reviewers.",
        "",
        "## Reviewer Feedback",
        "",
    ]
    for review in previous.reviews:
        summary = None
        review_file = Path(review.file)
        if review_file.exists():
            summary = extract_review_summary(review_file.read_text(encoding="utf-8", errors="replace"))
        lines.append(f"### {review.reviewer.capitalize()} ({review.verdict.upper()})")
        lines.append("")
        lines.append(summary or "(No detailed feedback provided)")
        if review.file:
            lines.append(f"Full review: {review.file}")
        lines.append("")

    lines.extend(
        [
            "## Instructions",
            "",
            "Address the feedback above in your revision. Focus on:",
            "1. Issues flagged as REQUEST_CHANGES",
            "2. Suggestions for improvement from all reviewers",
            "3. Any concerns raised about quality, completeness, or correctness",
            "",
        ]
    )
    return "\n".join(lines)


def _plan_phase_details(context: PorchContext, state: ProjectState, plan_phase: PlanPhase) -> str:
    plan_file = find_plan_file(context, state.id, state.title)
    if plan_file is None:
        return ""
    content = plan_phase_content(plan_file.read_text(encoding="utf-8"), plan_phase.id)
    if not content:
        return ""
    return (
        f"\n\n## Current Plan Phase Details\n\n"
        f"**{plan_phase.id}: {plan_phase.title}**\n\n{content}\n"
    )


def _fallback_prompt(state: ProjectState, phase_name: str, plan_phase: PlanPhase | None) -> str:
    lines = [
        f"# Phase: {phase_name}",
        "",
        f"You are executing the {phase_name} phase of the {state.protocol.upper()} protocol.",
        "",
        "## Context",
        "",
        f"- **Project ID**: {state.id}",
        f"- **Project Title**: {state.title}",
        f"- **Protocol**: {state.protocol}",
    ]
    if plan_phase is not None:
        lines.append(f"- **Plan Phase**: {plan_phase.id} - {plan_phase.title}")
    lines.extend(
        [
            "",
            "## Task",
            "",
            "Complete the work for this phase according to the protocol.",
            "",
        ]
    )
    return "\n".join(lines)


def build_phase_prompt(context: PorchContext, state: ProjectState, protocol: Protocol) -> str:
    phase = protocol.phase(state.phase)
    phase_name = phase.name if phase else state.phase
    plan_phase = current_plan_phase(state.plan_phases) if phase and phase.is_phased else None

    template = None
    if phase is not None:
        prompt_file = phase.build.prompt if phase.build and phase.build.prompt else f"{phase.id}.md"
        template = protocol.prompt_file(prompt_file)

    if template is None:
        logger.debug("No prompt file for phase %s, using fallback prompt", state.phase)
        body = _fallback_prompt(state, phase_name, plan_phase)
    else:
        body = substitute_variables(template, state, plan_phase)
        if plan_phase is not None:
            body += _plan_phase_details(context, state, plan_phase)

    header = revision_header(state) if phase and phase.is_build_verify else None
    if header:
        body = f"{header}\n\n---\n\n{body}"

    answers = state.context.get("user_answers")
    if answers:
        body += f"\n\n## Answers From The Human\n\n{answers}\n"

    return body + SIGNAL_FOOTER
