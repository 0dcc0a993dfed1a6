from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from uuid import uuid4

from porch.errors import PorchStateError

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class FileLock:
    """Advisory lock file holding ``{name, pid, token, created_at}``.

    Acquisition retries on a fixed interval and fails with
    :class:`PorchStateError` once ``timeout_seconds`` elapse. A lock whose
    owner process is gone, or that is older than ``stale_seconds``, is
    reclaimed. A holder whose lock was reclaimed no longer owns it: it cannot
    write through it and its release leaves the new holder's file alone.
    """

    def __init__(
        self,
        path: Path,
        *,
        name: str = "porch",
        timeout_seconds: float = 5.0,
        retry_interval_seconds: float = 0.1,
        stale_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self.name = name
        self.timeout_seconds = timeout_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._held = False
        self._token = ""

    @property
    def held(self) -> bool:
        return self._held

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        self._token = uuid4().hex
        payload = {
            "name": self.name,
            "pid": os.getpid(),
            "token": self._token,
            "created_at": datetime.fromtimestamp(self._clock(), UTC).isoformat(),
        }
        try:
            os.write(fd, json.dumps(payload).encode("utf-8"))
        finally:
            os.close(fd)
        return True

    def _is_stale(self) -> bool:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False
        try:
            payload = json.loads(raw)
            created = datetime.fromisoformat(payload["created_at"]).timestamp()
            pid = int(payload["pid"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Half-written or foreign lock file: judge by mtime only.
            try:
                created = self.path.stat().st_mtime
            except FileNotFoundError:
                return False
            return self._clock() - created > self.stale_seconds
        if pid != os.getpid() and not _pid_alive(pid):
            return True
        return self._clock() - created > self.stale_seconds

    def acquire(self) -> None:
        start = time.monotonic()
        while True:
            if self._try_create():
                self._held = True
                return
            if self._is_stale():
                logger.warning("Reclaiming stale lock %s", self.path)
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            if time.monotonic() - start >= self.timeout_seconds:
                raise PorchStateError(
                    f"Timed out after {self.timeout_seconds:g}s waiting for lock {self.path}"
                )
            time.sleep(self.retry_interval_seconds)

    def owns(self) -> bool:
        if not self._held:
            return False
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return False
        return isinstance(payload, dict) and payload.get("token") == self._token

    def release(self) -> None:
        if not self._held:
            return
        owned = self.owns()
        self._held = False
        if not owned:
            logger.warning("Lock %s was reclaimed by another holder; leaving it in place", self.path)
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
