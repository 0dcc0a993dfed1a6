from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from porch.context import PorchContext
from porch.errors import PorchStateError
from porch.state.lock import FileLock
from porch.state.models import ProjectState, state_from_dict, state_to_dict

logger = logging.getLogger(__name__)

STATUS_FILE = "status.json"


class StateStore:
    """Atomic, lock-guarded persistence for one project's ``status.json``."""

    def __init__(
        self,
        path: Path,
        *,
        context: PorchContext | None = None,
        lock_timeout_seconds: float = 5.0,
    ) -> None:
        self.path = path
        self.context = context
        self.tmp_path = path.with_name(path.name + ".tmp")
        self.lock = FileLock(
            path.with_name(path.name + ".lock"),
            name=path.parent.name,
            timeout_seconds=lock_timeout_seconds,
        )

    def exists(self) -> bool:
        return self.path.exists() or self.tmp_path.exists()

    def _load(self, path: Path) -> ProjectState:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PorchStateError(f"Corrupt state file {path}: {exc}") from exc
        return state_from_dict(payload)

    def _recover(self) -> None:
        if not self.tmp_path.exists():
            return
        try:
            self._load(self.tmp_path)
        except PorchStateError as exc:
            logger.warning("Discarding corrupt interrupted write %s: %s", self.tmp_path, exc)
            self.tmp_path.unlink(missing_ok=True)
            return
        logger.info("Recovering interrupted write %s", self.tmp_path)
        os.replace(self.tmp_path, self.path)

    def read(self) -> ProjectState:
        self._recover()
        if not self.path.exists():
            raise PorchStateError(f"Project state not found: {self.path}")
        return self._load(self.path)

    def _write_unlocked(self, state: ProjectState) -> None:
        if not self.lock.owns():
            raise PorchStateError(
                f"Lost lock {self.lock.path} before writing {self.path}; "
                "another process reclaimed it. Re-run the command."
            )
        if self.context is not None:
            state.updated_at = self.context.now_iso()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(state_to_dict(state), indent=2, ensure_ascii=False) + "\n"
        with self.tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(self.tmp_path, self.path)

    def write(self, state: ProjectState) -> None:
        if self.lock.held:
            self._write_unlocked(state)
            return
        with self.lock:
            self._write_unlocked(state)

    @contextmanager
    def transaction(self) -> Iterator[ProjectState]:
        with self.lock:
            state = self.read()
            yield state
            self._write_unlocked(state)


def project_dir(context: PorchContext, project_id: str, title: str) -> Path:
    return context.project_dir(project_id, title)


def iter_projects(context: PorchContext) -> Iterator[Path]:
    root = context.projects_dir
    if not root.is_dir():
        return
    for entry in sorted(root.iterdir()):
        if not entry.is_dir():
            continue
        if (entry / STATUS_FILE).exists() or (entry / (STATUS_FILE + ".tmp")).exists():
            yield entry / STATUS_FILE


def find_status_path(context: PorchContext, project_id: str) -> Path:
    for status_path in iter_projects(context):
        if status_path.parent.name.startswith(f"{project_id}-"):
            return status_path
    raise PorchStateError(
        f"Project {project_id} not found.\nRun 'porch init' to create a new project."
    )
