"""Gate notifications to a supervising process.

Delivery is best effort: every failure is logged and reported as ``False``,
never raised back into the caller's loop.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)


def gate_message(project_id: str, gate: str) -> str:
    return (
        f"GATE: {gate} (Builder {project_id})\n"
        f"Builder {project_id} is waiting for approval.\n"
        f"Run: porch approve {project_id} {gate}"
    )


class NotificationDeduper:
    """Remembers recently sent (project, gate, requested_at) keys for ``ttl_seconds``."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[tuple[str, str, str], float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def _expire(self, now: float) -> None:
        while self._seen:
            key, sent_at = next(iter(self._seen.items()))
            if now - sent_at < self.ttl_seconds:
                break
            del self._seen[key]

    def should_send(self, project_id: str, gate: str, requested_at: str | None) -> bool:
        now = self._clock()
        self._expire(now)
        key = (project_id, gate, requested_at or "")
        if key in self._seen:
            return False
        self._seen[key] = now
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return True


class GateNotifier:
    def __init__(
        self,
        endpoint: str = "",
        *,
        timeout_seconds: float = 10.0,
        deduper: NotificationDeduper | None = None,
        transport: httpx.BaseTransport | None = None,
        async_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.deduper = deduper or NotificationDeduper()
        self._transport = transport
        self._async_transport = async_transport

    @property
    def configured(self) -> bool:
        return bool(self.endpoint)

    def _payload(
        self,
        project_id: str,
        gate: str,
        context: dict[str, Any] | None,
    ) -> dict[str, Any]:
        return {
            "event": "gate_pending",
            "project_id": project_id,
            "gate": gate,
            "message": gate_message(project_id, gate),
            "context": context or {},
        }

    def _admit(self, project_id: str, gate: str, requested_at: str | None) -> bool:
        if not self.configured:
            logger.debug("Notification endpoint not configured, skipping gate %s", gate)
            return False
        if not self.deduper.should_send(project_id, gate, requested_at):
            logger.debug("Suppressing duplicate notification for %s/%s", project_id, gate)
            return False
        return True

    def _accepted(self, response: httpx.Response, gate: str) -> bool:
        if response.is_success:
            logger.info("Notified supervisor about gate %s", gate)
            return True
        logger.warning("Gate notification rejected with HTTP %s", response.status_code)
        return False

    async def notify_gate_opened(
        self,
        project_id: str,
        gate: str,
        *,
        requested_at: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> bool:
        if not self._admit(project_id, gate, requested_at):
            return False
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._async_transport,
            ) as client:
                response = await client.post(
                    self.endpoint, json=self._payload(project_id, gate, context)
                )
        except httpx.HTTPError as exc:
            logger.warning("Gate notification failed: %s", exc)
            return False
        return self._accepted(response, gate)

    def notify_gate_opened_sync(
        self,
        project_id: str,
        gate: str,
        *,
        requested_at: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> bool:
        if not self._admit(project_id, gate, requested_at):
            return False
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.post(self.endpoint, json=self._payload(project_id, gate, context))
        except httpx.HTTPError as exc:
            logger.warning("Gate notification failed: %s", exc)
            return False
        return self._accepted(response, gate)
