from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from porch.protocol import CheckDefinition

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
CHECK_TIMEOUT_SECONDS = 300.0
OUTPUT_TAIL_CHARS = 2000


@dataclass(slots=True)
class CheckResult:
    name: str
    command: str
    passed: bool
    output: str = ""
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "command": self.command,
            "passed": self.passed,
            "duration_ms": self.duration_ms,
        }
        if self.output:
            payload["output"] = self.output
        if self.error:
            payload["error"] = self.error
        return payload


def substitute_project_vars(command: str, project_id: str, title: str) -> str:
    return command.replace("${PROJECT_ID}", project_id).replace("${PROJECT_TITLE}", title)


def run_check(
    name: str,
    check: CheckDefinition,
    *,
    workspace_root: Path,
    project_id: str,
    title: str,
    timeout_seconds: float = CHECK_TIMEOUT_SECONDS,
) -> CheckResult:
    command_text = substitute_project_vars(check.command, project_id, title).strip()
    if not command_text:
        return CheckResult(name=name, command=check.command, passed=False, error="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    cwd = workspace_root / check.cwd if check.cwd else workspace_root
    env = {**os.environ, "PROJECT_ID": project_id, "PROJECT_TITLE": title}
    started = time.monotonic()
    logger.info("Running check %s: %s", name, command_text)
    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
            env=env,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        partial = exc.stdout if isinstance(exc.stdout, str) else ""
        return CheckResult(
            name=name,
            command=command_text,
            passed=False,
            output=partial[-OUTPUT_TAIL_CHARS:],
            error=f"Command timed out after {timeout_seconds:g}s",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    except OSError as exc:
        return CheckResult(
            name=name,
            command=command_text,
            passed=False,
            error=str(exc),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    duration_ms = int((time.monotonic() - started) * 1000)
    output = (proc.stdout + proc.stderr).strip()[-OUTPUT_TAIL_CHARS:]
    passed = proc.returncode == 0
    if passed:
        logger.info("Check %s passed (%sms)", name, duration_ms)
    else:
        logger.warning("Check %s failed with exit code %s", name, proc.returncode)
    return CheckResult(
        name=name,
        command=command_text,
        passed=passed,
        output=output,
        error=None if passed else f"Exit code: {proc.returncode}",
        duration_ms=duration_ms,
    )


def run_phase_checks(
    checks: dict[str, CheckDefinition],
    *,
    workspace_root: Path,
    project_id: str,
    title: str,
    timeout_seconds: float = CHECK_TIMEOUT_SECONDS,
) -> list[CheckResult]:
    """Run every check in order, stopping at the first failure."""
    results: list[CheckResult] = []
    for name, check in checks.items():
        result = run_check(
            name,
            check,
            workspace_root=workspace_root,
            project_id=project_id,
            title=title,
            timeout_seconds=timeout_seconds,
        )
        results.append(result)
        if not result.passed:
            break
    return results
