from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from porch.errors import PorchError


class BackendExecutionError(PorchError):
    """Raised when a worker or reviewer process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when execution exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the process cannot be started or exposes no pipes."""


@dataclass(slots=True)
class BuildResult:
    success: bool
    output: str
    cost_usd: float | None = None
    duration_ms: int | None = None


@dataclass(slots=True)
class ReviewRequest:
    reviewer: str
    review_type: str
    artifact_type: str
    project_id: str
    output_path: Path
    plan_phase: str | None = None
    context_file: Path | None = None


class BuildWorker(ABC):
    @abstractmethod
    async def build(self, prompt: str, output_path: Path, cwd: Path) -> BuildResult:
        """Run one build attempt, streaming output into ``output_path``."""


class Reviewer(ABC):
    @abstractmethod
    async def review(self, request: ReviewRequest, cwd: Path) -> str:
        """Run one review and return its full text output."""
