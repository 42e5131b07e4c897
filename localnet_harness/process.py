from __future__ import annotations

import asyncio
import logging
import signal
import subprocess
import time
from pathlib import Path
from typing import IO, Mapping, Sequence

from .errors import LocalnetCrashError

logger = logging.getLogger(__name__)

DEFAULT_LOG_TAIL_LINES = 200
DEFAULT_STOP_GRACE = 10.0
_EXIT_POLL_INTERVAL = 0.1


def read_log_tail(log_path: Path | str | None, max_lines: int = DEFAULT_LOG_TAIL_LINES) -> str:
    """Return the last ``max_lines`` lines of ``log_path`` or ``""`` when unreadable."""

    if not log_path:
        return ""
    try:
        contents = Path(log_path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    if not contents:
        return ""
    return "\n".join(contents.rstrip().splitlines()[-max_lines:])


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class LocalnetProcess:
    """Own the node subprocess: spawn it, check liveness, stop it."""

    def __init__(self, proc: subprocess.Popen, log_path: Path, log_handle: IO[str] | None = None) -> None:
        self.proc = proc
        self.log_path = Path(log_path)
        self._log_handle = log_handle
        self._stopped = False

    @classmethod
    def spawn(
        cls,
        args: Sequence[str],
        *,
        log_path: Path | str,
        env: Mapping[str, str] | None = None,
        cwd: Path | str | None = None,
    ) -> "LocalnetProcess":
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handle = log_path.open("a", encoding="utf-8")
        try:
            proc = subprocess.Popen(
                list(args),
                stdin=subprocess.DEVNULL,
                stdout=handle,
                stderr=subprocess.STDOUT,
                env=dict(env) if env is not None else None,
                cwd=str(cwd) if cwd is not None else None,
            )
        except BaseException:
            handle.close()
            raise
        logger.info("Started %s (pid %s), logging to %s", args[0], proc.pid, log_path)
        return cls(proc, log_path, handle)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> int | None:
        return self.proc.poll()

    @property
    def running(self) -> bool:
        return self.proc.poll() is None

    def log_tail(self, max_lines: int = DEFAULT_LOG_TAIL_LINES) -> str:
        if self._log_handle is not None and not self._log_handle.closed:
            self._log_handle.flush()
        return read_log_tail(self.log_path, max_lines)

    def ensure_alive(self) -> None:
        """Raise :class:`LocalnetCrashError` if the process has exited. Never blocks."""

        returncode = self.proc.poll()
        if returncode is None:
            return
        raise LocalnetCrashError(returncode, _signal_name(returncode), self.log_tail())

    async def _wait_for_exit(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while self.proc.poll() is None:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(_EXIT_POLL_INTERVAL)
        return True

    async def stop(self, grace: float = DEFAULT_STOP_GRACE) -> None:
        """SIGTERM, wait up to ``grace`` seconds, then SIGKILL. Idempotent."""

        if self._stopped:
            return
        self._stopped = True
        try:
            if self.proc.poll() is None:
                self.proc.terminate()
                if not await self._wait_for_exit(grace):
                    logger.warning("Localnet pid %s ignored SIGTERM; killing", self.proc.pid)
                    self.proc.kill()
                    await self._wait_for_exit(grace)
        finally:
            if self._log_handle is not None:
                self._log_handle.close()

    async def kill(self, timeout: float = 5.0) -> None:
        """Immediate SIGKILL used when a start is aborted."""

        if self.proc.poll() is None:
            self.proc.kill()
            if not await self._wait_for_exit(timeout):
                logger.warning("Localnet pid %s did not exit after SIGKILL", self.proc.pid)
        self._stopped = True
        if self._log_handle is not None:
            self._log_handle.close()


__all__ = ["LocalnetProcess", "read_log_tail"]
