from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from porch.config import PorchConfig


def utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


@dataclass(slots=True)
class PorchContext:
    """Workspace, configuration and clock shared by every engine entry point."""

    workspace_root: Path
    config: PorchConfig = field(default_factory=PorchConfig.default)
    clock: Callable[[], datetime] = utcnow

    def now_iso(self) -> str:
        return self.clock().isoformat()

    @property
    def projects_dir(self) -> Path:
        return self.workspace_root / self.config.paths.projects_dir

    @property
    def plans_dir(self) -> Path:
        return self.workspace_root / self.config.paths.plans_dir

    @property
    def protocol_dirs(self) -> list[Path]:
        return [self.workspace_root / entry for entry in self.config.paths.protocol_dirs]

    def project_dir(self, project_id: str, title: str) -> Path:
        return self.projects_dir / f"{project_id}-{title}"

    def status_path(self, project_id: str, title: str) -> Path:
        return self.project_dir(project_id, title) / "status.json"
