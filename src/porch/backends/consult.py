from __future__ import annotations

import asyncio
from pathlib import Path

from porch.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    Reviewer,
    ReviewRequest,
)


class ConsultReviewer(Reviewer):
    """Reviewer backed by the external ``consult`` CLI."""

    def __init__(self, binary: str = "consult") -> None:
        self.binary = binary

    def build_command(self, request: ReviewRequest) -> list[str]:
        command = [self.binary, "--model", request.reviewer, "--type", request.review_type]
        if request.plan_phase:
            command.extend(["--plan-phase", request.plan_phase])
        if request.context_file is not None:
            command.extend(["--context", str(request.context_file)])
        command.extend([request.artifact_type, request.project_id])
        return command

    async def review(self, request: ReviewRequest, cwd: Path) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(request),
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Reviewer binary not found: {self.binary}",
                backend=request.reviewer,
                retriable=False,
            ) from exc

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        if process.returncode != 0:
            raise BackendExecutionError(
                f"Reviewer {request.reviewer} exited with code {process.returncode}: "
                f"{output.strip()[-500:]}",
                backend=request.reviewer,
                exit_code=process.returncode,
                retriable=True,
            )
        return output
