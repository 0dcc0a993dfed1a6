from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from porch.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    BuildResult,
    BuildWorker,
    Reviewer,
    ReviewRequest,
)

BackendEventHook = Callable[[dict[str, Any]], None]
T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 5.0
    timeout_seconds: float = 3600.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))


async def _run_with_retries(
    name: str,
    call_name: str,
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    emit: Callable[[dict[str, Any]], None],
    accept: Callable[[T], str | None] | None = None,
) -> T:
    errors: list[str] = []
    for attempt in range(policy.max_retries + 1):
        if attempt > 0:
            delay = policy.delay_for(attempt)
            emit(
                {
                    "event": "backend_retry",
                    "backend": name,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "call": call_name,
                }
            )
            await asyncio.sleep(delay)
        try:
            result = await asyncio.wait_for(call(), timeout=policy.timeout_seconds)
        except TimeoutError:
            error = BackendTimeoutError(
                f"{call_name} timed out after {policy.timeout_seconds:.1f}s",
                backend=name,
                retriable=True,
            )
            errors.append(f"{name}[{attempt}]: {error}")
            emit(
                {
                    "event": "backend_attempt_failed",
                    "backend": name,
                    "attempt": attempt,
                    "call": call_name,
                    "error": str(error),
                    "retriable": True,
                }
            )
            continue
        except BackendExecutionError as exc:
            errors.append(f"{name}[{attempt}]: {exc}")
            emit(
                {
                    "event": "backend_attempt_failed",
                    "backend": name,
                    "attempt": attempt,
                    "call": call_name,
                    "error": str(exc),
                    "retriable": exc.retriable,
                }
            )
            if not exc.retriable:
                break
            continue

        rejection = accept(result) if accept else None
        if rejection is None:
            return result
        errors.append(f"{name}[{attempt}]: {rejection}")
        emit(
            {
                "event": "backend_attempt_failed",
                "backend": name,
                "attempt": attempt,
                "call": call_name,
                "error": rejection,
                "retriable": True,
            }
        )

    summary = "; ".join(errors[-6:])
    raise BackendExecutionError(
        f"All attempts failed for {call_name}. {summary}",
        backend=name,
        retriable=False,
    )


class ResilientWorker(BuildWorker):
    """Wraps a build worker with per-attempt timeout and exponential backoff."""

    def __init__(
        self,
        worker: BuildWorker,
        retry_policy: RetryPolicy,
        *,
        name: str = "worker",
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.worker = worker
        self.retry_policy = retry_policy
        self.name = name
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def build(self, prompt: str, output_path: Path, cwd: Path) -> BuildResult:
        return await _run_with_retries(
            self.name,
            "build",
            lambda: self.worker.build(prompt, output_path, cwd),
            self.retry_policy,
            self._emit,
            accept=lambda result: None if result.success else "worker reported failure",
        )


class ResilientReviewer(Reviewer):
    """Wraps a reviewer with per-attempt timeout and exponential backoff."""

    def __init__(
        self,
        reviewer: Reviewer,
        retry_policy: RetryPolicy,
        *,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.reviewer = reviewer
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def review(self, request: ReviewRequest, cwd: Path) -> str:
        return await _run_with_retries(
            request.reviewer,
            "review",
            lambda: self.reviewer.review(request, cwd),
            self.retry_policy,
            self._emit,
        )
