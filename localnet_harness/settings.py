"""Environment-driven settings for the localnet harness.

Every knob the harness reads from ``os.environ`` is resolved here so callers
receive a single immutable :class:`HarnessSettings` snapshot instead of
reaching for ``os.getenv`` throughout the code base.  Tests that mutate the
environment simply call :meth:`HarnessSettings.from_env` again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import tempfile
from typing import Mapping

__all__ = [
    "HarnessSettings",
    "LOCALNET_SKIP_ENV_KEYS",
    "parse_bool",
    "parse_positive_int",
    "parse_non_negative_int",
]

_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}

LOCALNET_SKIP_ENV_KEYS: tuple[str, ...] = ("SUI_IT_SKIP_LOCALNET", "SKIP_LOCALNET")

DEFAULT_LOCK_TIMEOUT_MS = 120_000
DEFAULT_LOCK_INTERVAL_MS = 250
DEFAULT_RPC_WAIT_TIMEOUT_MS = 10_000
CI_RPC_WAIT_TIMEOUT_MS = 120_000


def parse_bool(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def parse_positive_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value > 0 else None


def parse_non_negative_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value >= 0 else None


def _default_lock_path() -> Path:
    return Path(tempfile.gettempdir()) / "sui-it-localnet-start.lock"


@dataclass(frozen=True)
class HarnessSettings:
    """Snapshot of the ``SUI_IT_*`` environment toggles."""

    skip_env_key: str | None = None
    keep_temp: bool = False
    with_faucet: bool = True
    random_ports: bool = True
    treasury_index: int | None = None
    serialize_start: bool = False
    lock_path: Path = field(default_factory=_default_lock_path)
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT_MS / 1000
    lock_interval: float = DEFAULT_LOCK_INTERVAL_MS / 1000
    rpc_wait_timeout: float = DEFAULT_RPC_WAIT_TIMEOUT_MS / 1000
    debug_move: bool = False

    @property
    def localnet_disabled(self) -> bool:
        return self.skip_env_key is not None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "HarnessSettings":
        """Create a :class:`HarnessSettings` snapshot from environment variables."""

        source = os.environ if env is None else env

        skip_key = next(
            (key for key in LOCALNET_SKIP_ENV_KEYS if parse_bool(source.get(key))),
            None,
        )
        in_ci = parse_bool(source.get("CI"))

        serialize_raw = source.get("SUI_IT_SERIALIZE_LOCALNET_START")
        serialize = parse_bool(serialize_raw) if serialize_raw is not None else in_ci

        lock_timeout_ms = (
            parse_positive_int(source.get("SUI_IT_LOCALNET_START_LOCK_TIMEOUT_MS"))
            or DEFAULT_LOCK_TIMEOUT_MS
        )
        lock_interval_ms = (
            parse_positive_int(source.get("SUI_IT_LOCALNET_START_LOCK_INTERVAL_MS"))
            or DEFAULT_LOCK_INTERVAL_MS
        )

        rpc_wait_ms = parse_positive_int(source.get("SUI_IT_RPC_WAIT_TIMEOUT_MS"))
        if rpc_wait_ms is None:
            rpc_wait_ms = CI_RPC_WAIT_TIMEOUT_MS if source.get("CI") else DEFAULT_RPC_WAIT_TIMEOUT_MS

        lock_path_raw = source.get("SUI_IT_LOCALNET_START_LOCK_PATH")

        return cls(
            skip_env_key=skip_key,
            keep_temp=source.get("SUI_IT_KEEP_TEMP") == "1",
            with_faucet=source.get("SUI_IT_WITH_FAUCET") != "0",
            random_ports=parse_bool(source.get("SUI_IT_RANDOM_PORTS"), True),
            treasury_index=parse_non_negative_int(source.get("SUI_IT_TREASURY_INDEX")),
            serialize_start=serialize,
            lock_path=Path(lock_path_raw) if lock_path_raw else _default_lock_path(),
            lock_timeout=lock_timeout_ms / 1000,
            lock_interval=lock_interval_ms / 1000,
            rpc_wait_timeout=rpc_wait_ms / 1000,
            debug_move=parse_bool(source.get("SUI_IT_DEBUG_MOVE")),
        )
