"""Plan-phase extraction and navigation.

Plans are markdown documents. Phases come from an embedded ```json block
(``{"phases": [{"id": ..., "title": ...}]}``) when one is present, otherwise
from ``### Phase N: Title`` headers.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from porch.context import PorchContext
from porch.errors import PlanError
from porch.state.models import PlanPhase

logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL)
_PHASE_HEADER = re.compile(r"^###\s*Phase\s+(\d+):\s*([^\n]+)$", re.IGNORECASE | re.MULTILINE)


@dataclass(slots=True)
class PlanAdvance:
    phases: list[PlanPhase]
    moved_to_next_container: bool


def find_plan_file(context: PorchContext, project_id: str, title: str | None = None) -> Path | None:
    if title:
        candidate = context.project_dir(project_id, title) / "plan.md"
        if candidate.exists():
            return candidate
    plans_dir = context.plans_dir
    if plans_dir.is_dir():
        for entry in sorted(plans_dir.iterdir()):
            if entry.name.startswith(f"{project_id}-") and entry.suffix == ".md":
                return entry
    return None


def _default_phases() -> list[PlanPhase]:
    return [PlanPhase(id="phase_1", title="Implementation")]


def _from_json_block(text: str) -> list[PlanPhase] | None:
    match = _JSON_BLOCK.search(text)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(1))
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse phases JSON from plan: %s", exc)
        return None
    raw_phases = parsed.get("phases") if isinstance(parsed, dict) else None
    if not isinstance(raw_phases, list):
        return None
    phases = [
        PlanPhase(id=str(item["id"]), title=str(item.get("title", item["id"])))
        for item in raw_phases
        if isinstance(item, dict) and item.get("id")
    ]
    return phases or None


def extract_plan_phases(text: str) -> list[PlanPhase]:
    phases = _from_json_block(text)
    if phases is None:
        phases = [
            PlanPhase(id=f"phase_{number}", title=title.strip())
            for number, title in _PHASE_HEADER.findall(text)
        ]
    if not phases:
        phases = _default_phases()
    phases[0].status = "in_progress"
    for phase in phases[1:]:
        phase.status = "pending"
    return phases


def extract_phases_from_file(path: Path | None) -> list[PlanPhase]:
    if path is None or not path.exists():
        raise PlanError(f"Plan file not found: {path}")
    return extract_plan_phases(path.read_text(encoding="utf-8"))


def current_plan_phase(phases: list[PlanPhase]) -> PlanPhase | None:
    for phase in phases:
        if phase.status != "complete":
            return phase
    return None


def all_plan_phases_complete(phases: list[PlanPhase]) -> bool:
    return all(phase.status == "complete" for phase in phases)


def advance_plan_phase(phases: list[PlanPhase], current_id: str) -> PlanAdvance:
    """Complete ``current_id`` and start the next pending plan phase.

    ``moved_to_next_container`` is true when ``current_id`` was the last
    plan phase, meaning the enclosing protocol phase is done.
    """
    updated = [PlanPhase(id=p.id, title=p.title, status=p.status) for p in phases]
    index = next((i for i, phase in enumerate(updated) if phase.id == current_id), -1)
    if index < 0:
        return PlanAdvance(phases=updated, moved_to_next_container=False)

    updated[index].status = "complete"
    for phase in updated[index + 1 :]:
        if phase.status == "pending":
            phase.status = "in_progress"
            return PlanAdvance(phases=updated, moved_to_next_container=False)
    return PlanAdvance(phases=updated, moved_to_next_container=True)


def plan_phase_content(text: str, phase_id: str) -> str | None:
    number = re.search(r"phase_(\d+)", phase_id)
    if number is None:
        return None
    pattern = re.compile(
        rf"###\s*Phase\s+{number.group(1)}:\s*[^\n]+\n(.*?)(?=\n###\s*Phase|\n##\s|\Z)",
        re.IGNORECASE | re.DOTALL,
    )
    match = pattern.search(text)
    return match.group(1).strip() if match else None
