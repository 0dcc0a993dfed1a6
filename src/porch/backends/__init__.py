from porch.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    BuildResult,
    BuildWorker,
    Reviewer,
    ReviewRequest,
)
from porch.backends.claude import ClaudeWorker
from porch.backends.consult import ConsultReviewer
from porch.backends.resilient import ResilientReviewer, ResilientWorker, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "BuildResult",
    "BuildWorker",
    "ClaudeWorker",
    "ConsultReviewer",
    "ResilientReviewer",
    "ResilientWorker",
    "RetryPolicy",
    "Reviewer",
    "ReviewRequest",
]
