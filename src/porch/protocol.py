"""Protocol definition loading.

A protocol is a JSON document (``<dir>/<name>/protocol.json``) listing the
phases of a workflow in order. Loading fails loudly: a missing file, bad JSON
or a structurally inconsistent phase graph raises :class:`ProtocolError`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any, Literal

from porch.config import CheckOverride
from porch.errors import ProtocolError

logger = logging.getLogger(__name__)

PhaseType = Literal["once", "per_plan_phase", "build_verify"]
PHASE_TYPES = {"once", "per_plan_phase", "build_verify"}
TERMINAL_PHASE = "complete"
PROTOCOL_FILE = "protocol.json"


@dataclass(slots=True)
class CheckDefinition:
    command: str
    cwd: str | None = None


@dataclass(slots=True)
class BuildSettings:
    prompt: str | None = None
    artifact: str | None = None


@dataclass(slots=True)
class VerifySettings:
    type: str
    reviewers: list[str]
    parallel: bool = True
    artifact_type: str | None = None


@dataclass(slots=True)
class OnCompleteSettings:
    commit: bool = False
    push: bool = False


@dataclass(slots=True)
class PhaseDefinition:
    id: str
    name: str
    type: PhaseType = "once"
    build: BuildSettings | None = None
    verify: VerifySettings | None = None
    max_iterations: int = 3
    gate: str | None = None
    checks: list[str] = field(default_factory=list)
    on_complete: OnCompleteSettings | None = None
    next: str | None = None

    @property
    def is_build_verify(self) -> bool:
        return self.build is not None and self.verify is not None

    @property
    def is_phased(self) -> bool:
        return self.type == "per_plan_phase"


@dataclass(slots=True)
class Protocol:
    name: str
    phases: list[PhaseDefinition]
    version: str | None = None
    description: str | None = None
    alias: str | None = None
    checks: dict[str, CheckDefinition] = field(default_factory=dict)
    phase_completion: dict[str, str] = field(default_factory=dict)
    source: Traversable | None = None

    @property
    def first_phase(self) -> PhaseDefinition:
        return self.phases[0]

    def phase(self, phase_id: str) -> PhaseDefinition | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def index_of(self, phase_id: str) -> int:
        if phase_id == TERMINAL_PHASE:
            return len(self.phases)
        for index, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return index
        return -1

    def next_phase(self, phase_id: str) -> PhaseDefinition | None:
        current = self.phase(phase_id)
        if current is None or not current.next:
            return None
        return self.phase(current.next)

    def phase_checks(
        self,
        phase_id: str,
        overrides: dict[str, CheckOverride] | None = None,
    ) -> dict[str, CheckDefinition]:
        phase = self.phase(phase_id)
        if phase is None or not phase.checks:
            return {}

        if overrides:
            known = set(self.checks) | set(self.phase_completion)
            for name in overrides:
                if name not in known:
                    logger.warning("Unknown check override '%s' (not found in protocol)", name)

        result: dict[str, CheckDefinition] = {}
        for name in phase.checks:
            base = self.checks.get(name)
            if base is None:
                continue
            override = (overrides or {}).get(name)
            if override is None:
                result[name] = base
                continue
            if override.skip:
                continue
            result[name] = CheckDefinition(
                command=override.command or base.command,
                cwd=override.cwd if override.cwd is not None else base.cwd,
            )
        return result

    def prompt_file(self, filename: str) -> str | None:
        if self.source is None:
            return None
        candidate = self.source.joinpath("prompts").joinpath(filename)
        if not candidate.is_file():
            return None
        return candidate.read_text(encoding="utf-8")


def _parse_check(name: str, raw: Any) -> CheckDefinition:
    if isinstance(raw, str) and raw.strip():
        return CheckDefinition(command=raw)
    if isinstance(raw, dict) and isinstance(raw.get("command"), str) and raw["command"].strip():
        cwd = raw.get("cwd")
        return CheckDefinition(command=raw["command"], cwd=str(cwd) if cwd else None)
    raise ProtocolError(f"Invalid protocol: check '{name}' has no command")


def _parse_phase(raw: Any, default_max_iterations: int) -> tuple[PhaseDefinition, dict]:
    if not isinstance(raw, dict):
        raise ProtocolError("Invalid protocol phase: expected an object")
    phase_id = raw.get("id")
    if not isinstance(phase_id, str) or not phase_id.strip():
        raise ProtocolError('Invalid protocol phase: missing "id"')

    explicit: dict[str, Any] = {}
    next_phase = raw.get("next")
    if "next" in raw:
        explicit["next"] = next_phase

    gate_name: str | None = None
    gate_raw = raw.get("gate")
    if isinstance(gate_raw, str):
        gate_name = gate_raw
    elif isinstance(gate_raw, dict):
        gate_name = gate_raw.get("name")
        if not isinstance(gate_name, str) or not gate_name:
            raise ProtocolError(f"Invalid protocol phase '{phase_id}': gate without a name")
        if "next" in gate_raw:
            next_phase = gate_raw["next"]
            explicit["gate_next"] = next_phase
    elif gate_raw is not None:
        raise ProtocolError(f"Invalid protocol phase '{phase_id}': gate must be a string or object")

    transition = raw.get("transition")
    if isinstance(transition, dict) and transition.get("on_complete"):
        next_phase = transition["on_complete"]
        explicit["next"] = next_phase

    build: BuildSettings | None = None
    if isinstance(raw.get("build"), dict):
        build = BuildSettings(
            prompt=raw["build"].get("prompt"),
            artifact=raw["build"].get("artifact"),
        )

    verify: VerifySettings | None = None
    verify_raw = raw.get("verify")
    if isinstance(verify_raw, dict):
        reviewers = verify_raw.get("models") or verify_raw.get("reviewers") or []
        if not isinstance(reviewers, list) or not all(isinstance(r, str) for r in reviewers):
            raise ProtocolError(f"Invalid protocol phase '{phase_id}': verify models must be strings")
        if not reviewers:
            raise ProtocolError(f"Invalid protocol phase '{phase_id}': verify without reviewers")
        verify = VerifySettings(
            type=str(verify_raw.get("type") or "review"),
            reviewers=list(reviewers),
            parallel=bool(verify_raw.get("parallel", True)),
            artifact_type=verify_raw.get("artifact_type"),
        )

    on_complete: OnCompleteSettings | None = None
    if isinstance(raw.get("on_complete"), dict):
        on_complete = OnCompleteSettings(
            commit=bool(raw["on_complete"].get("commit", False)),
            push=bool(raw["on_complete"].get("push", False)),
        )

    phase_type = raw.get("type")
    if phase_type is None:
        phase_type = "build_verify" if build and verify else "once"
    if phase_type not in PHASE_TYPES:
        raise ProtocolError(f"Invalid protocol phase '{phase_id}': unknown type '{phase_type}'")

    max_iterations = raw.get("max_iterations", default_max_iterations)
    if not isinstance(max_iterations, int) or isinstance(max_iterations, bool) or max_iterations < 1:
        raise ProtocolError(
            f"Invalid protocol phase '{phase_id}': max_iterations must be a positive integer"
        )

    checks_raw = raw.get("checks") or {}
    if isinstance(checks_raw, list):
        check_names = [str(name) for name in checks_raw]
        inline_checks: dict[str, CheckDefinition] = {}
    elif isinstance(checks_raw, dict):
        check_names = list(checks_raw)
        inline_checks = {name: _parse_check(name, value) for name, value in checks_raw.items()}
    else:
        raise ProtocolError(f"Invalid protocol phase '{phase_id}': checks must be an object")

    phase = PhaseDefinition(
        id=phase_id,
        name=str(raw.get("name") or phase_id),
        type=phase_type,
        build=build,
        verify=verify,
        max_iterations=max_iterations,
        gate=gate_name,
        checks=check_names,
        on_complete=on_complete,
        next=next_phase if isinstance(next_phase, str) and next_phase else None,
    )
    if next_phase is not None and not isinstance(next_phase, str):
        raise ProtocolError(f"Invalid protocol phase '{phase_id}': next must be a phase id")
    return phase, {"explicit": explicit, "checks": inline_checks}


def parse_protocol(
    data: Any,
    *,
    source: Traversable | None = None,
    default_max_iterations: int = 3,
) -> Protocol:
    if not isinstance(data, dict):
        raise ProtocolError("Invalid protocol: expected a JSON object")
    name = data.get("name")
    if not isinstance(name, str) or not name:
        raise ProtocolError('Invalid protocol: missing "name" field')
    phases_raw = data.get("phases")
    if not isinstance(phases_raw, list) or not phases_raw:
        raise ProtocolError('Invalid protocol: missing "phases" array')

    checks: dict[str, CheckDefinition] = {}
    defaults = data.get("defaults")
    if isinstance(defaults, dict) and isinstance(defaults.get("checks"), dict):
        for check_name, raw_check in defaults["checks"].items():
            checks[check_name] = _parse_check(check_name, raw_check)

    phases: list[PhaseDefinition] = []
    explicit_next: dict[str, dict[str, Any]] = {}
    for raw_phase in phases_raw:
        phase, extras = _parse_phase(raw_phase, default_max_iterations)
        if any(existing.id == phase.id for existing in phases):
            raise ProtocolError(f"Invalid protocol: duplicate phase id '{phase.id}'")
        phases.append(phase)
        explicit_next[phase.id] = extras["explicit"]
        checks.update(extras["checks"])

    phase_ids = {phase.id for phase in phases}
    for index, phase in enumerate(phases):
        declared = explicit_next[phase.id]
        if not declared and index + 1 < len(phases):
            phase.next = phases[index + 1].id
        if phase.next is None:
            continue
        if phase.next == phase.id:
            kind = "gate" if "gate_next" in declared else "phase"
            raise ProtocolError(
                f"Invalid protocol: {kind} of phase '{phase.id}' transitions to itself"
            )
        if phase.next != TERMINAL_PHASE and phase.next not in phase_ids:
            raise ProtocolError(
                f"Invalid protocol: phase '{phase.id}' references unknown next phase '{phase.next}'"
            )
        if phase.next == TERMINAL_PHASE:
            phase.next = None

    gate_owners: dict[str, str] = {}
    for phase in phases:
        if phase.gate is None:
            continue
        if phase.gate in phase_ids:
            raise ProtocolError(
                f"Invalid protocol: gate '{phase.gate}' of phase '{phase.id}' shadows a phase id"
            )
        if phase.gate in gate_owners:
            raise ProtocolError(
                f"Invalid protocol: gate '{phase.gate}' is declared by phases "
                f"'{gate_owners[phase.gate]}' and '{phase.id}'"
            )
        gate_owners[phase.gate] = phase.id

    for phase in phases:
        for check_name in phase.checks:
            if check_name not in checks:
                raise ProtocolError(
                    f"Invalid protocol: phase '{phase.id}' references undefined check '{check_name}'"
                )

    phase_completion: dict[str, str] = {}
    if isinstance(data.get("phase_completion"), dict):
        for key, value in data["phase_completion"].items():
            if isinstance(value, str):
                phase_completion[key] = value

    version = data.get("version")
    return Protocol(
        name=name,
        phases=phases,
        version=str(version) if version is not None else None,
        description=data.get("description"),
        alias=data.get("alias"),
        checks=checks,
        phase_completion=phase_completion,
        source=source,
    )


class ProtocolLoader:
    """Finds protocol definitions in the workspace, then in the bundled set."""

    def __init__(
        self,
        protocol_dirs: list[Path],
        *,
        default_max_iterations: int = 3,
        include_builtin: bool = True,
    ) -> None:
        self.protocol_dirs = list(protocol_dirs)
        self.default_max_iterations = default_max_iterations
        self.include_builtin = include_builtin

    def _roots(self) -> list[Traversable]:
        roots: list[Traversable] = [directory for directory in self.protocol_dirs]
        if self.include_builtin:
            roots.append(resources.files("porch.protocols"))
        return roots

    def _find(self, name: str) -> Traversable | None:
        candidates = [name]
        if name.lower() != name:
            candidates.append(name.lower())
        for root in self._roots():
            for candidate in candidates:
                definition = root.joinpath(candidate).joinpath(PROTOCOL_FILE)
                if definition.is_file():
                    return root.joinpath(candidate)

        for root in self._roots():
            if not root.is_dir():
                continue
            for entry in sorted(root.iterdir(), key=lambda item: item.name):
                definition = entry.joinpath(PROTOCOL_FILE)
                if not entry.is_dir() or not definition.is_file():
                    continue
                try:
                    payload = json.loads(definition.read_text(encoding="utf-8"))
                except json.JSONDecodeError:
                    logger.debug("Skipping unreadable protocol file during alias scan: %s", entry)
                    continue
                if isinstance(payload, dict) and payload.get("alias") in candidates:
                    return entry
        return None

    def load(self, name: str) -> Protocol:
        location = self._find(name)
        if location is None:
            searched = ", ".join(str(directory / name) for directory in self.protocol_dirs)
            raise ProtocolError(f"Protocol '{name}' not found.\nSearched in: {searched}")
        try:
            data = json.loads(location.joinpath(PROTOCOL_FILE).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Invalid protocol '{name}': JSON parse error\n{exc}") from exc
        return parse_protocol(
            data,
            source=location,
            default_max_iterations=self.default_max_iterations,
        )
