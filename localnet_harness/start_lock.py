"""Cross-process serialization of localnet startup.

CI runners execute many pytest workers on one host; letting all of them run
``sui genesis`` at once makes them fight over well-known ports and disk.  The
:class:`FileStartLock` marker file serialises that phase.  Callers only see
the :class:`StartLock` interface so a native advisory lock or a distributed
lock can replace the marker without touching them.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import os
import time
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from .errors import StartLockTimeoutError
from .polling import Clock, Sleep
from .settings import HarnessSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:  # pragma: no cover - platform differences
        return exc.errno != errno.ESRCH
    return True


class StartLock:
    """Interface for the startup mutex."""

    @contextlib.asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        yield

    async def run(self, action: Callable[[], Awaitable[T]]) -> T:
        async with self.hold():
            return await action()


class NullStartLock(StartLock):
    """Used when serialization is disabled; runs the action immediately."""


class FileStartLock(StartLock):
    """Marker file created with ``O_EXCL`` holding the owner's pid."""

    def __init__(
        self,
        path: Path | str,
        *,
        timeout: float = 120.0,
        interval: float = 0.25,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        is_alive: Callable[[int], bool] = process_alive,
    ) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._is_alive = is_alive

    def _try_acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{os.getpid()}\n")
        return True

    def owner_pid(self) -> int | None:
        try:
            pid = int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None
        return pid if pid > 0 else None

    def _release_if_stale(self) -> bool:
        pid = self.owner_pid()
        if pid is None or self._is_alive(pid):
            return False
        logger.info("Removing stale localnet start lock %s (pid %s not running)", self.path, pid)
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        return True

    @contextlib.asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        start = self._clock()
        while True:
            if self._try_acquire():
                break
            if self._release_if_stale():
                continue
            if self._clock() - start >= self.timeout:
                raise StartLockTimeoutError(str(self.path))
            await self._sleep(self.interval)

        logger.debug("Acquired localnet start lock %s", self.path)
        try:
            yield
        finally:
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()


def resolve_start_lock(settings: HarnessSettings) -> StartLock:
    if not settings.serialize_start:
        return NullStartLock()
    return FileStartLock(
        settings.lock_path,
        timeout=settings.lock_timeout,
        interval=settings.lock_interval,
    )


__all__ = [
    "StartLock",
    "NullStartLock",
    "FileStartLock",
    "process_alive",
    "resolve_start_lock",
]
