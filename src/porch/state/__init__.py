from porch.state.lock import FileLock
from porch.state.models import (
    SCHEMA_VERSION,
    Gate,
    IterationRecord,
    PlanPhase,
    ProjectState,
    ReviewResult,
    state_from_dict,
    state_to_dict,
)
from porch.state.store import StateStore, find_status_path, iter_projects, project_dir

__all__ = [
    "FileLock",
    "Gate",
    "IterationRecord",
    "PlanPhase",
    "ProjectState",
    "ReviewResult",
    "SCHEMA_VERSION",
    "StateStore",
    "find_status_path",
    "iter_projects",
    "project_dir",
    "state_from_dict",
    "state_to_dict",
]
