"""Turn "process spawned" into "service usable".

Two probes exist because the faucet sidecar exposes no RPC contract, only a
listening socket: :func:`wait_for_rpc_ready` polls a cheap read-only RPC
snapshot while :func:`wait_for_port_in_use` only checks that a port is bound.
Both check the tracked process first on every iteration so a crashed node
fails fast with its log tail instead of waiting out the whole timeout.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .errors import LocalnetCrashError, LocalnetNetworkBlockedError, LocalnetTimeoutError
from .polling import PollAttempt, format_error, poll_with_timeout
from .port_utils import is_port_available
from .process import LocalnetProcess
from .rpc import SuiRpcClient

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 0.25


@dataclass(frozen=True)
class RpcSnapshot:
    rpc_url: str
    epoch: str
    protocol_version: str
    latest_checkpoint: str
    validator_count: int
    reference_gas_price: int
    epoch_start_timestamp_ms: str | None = None


@dataclass(frozen=True)
class ProbeResult:
    status: str
    snapshot: RpcSnapshot | None = None
    error: str | None = None

    @property
    def running(self) -> bool:
        return self.status == "running"


async def get_rpc_snapshot(client: SuiRpcClient) -> RpcSnapshot:
    system_state, checkpoint, gas_price = await asyncio.gather(
        client.get_latest_sui_system_state(),
        client.get_latest_checkpoint_sequence_number(),
        client.get_reference_gas_price(),
    )
    start_ms = system_state.get("epochStartTimestampMs")
    return RpcSnapshot(
        rpc_url=client.url,
        epoch=str(system_state.get("epoch", "")),
        protocol_version=str(system_state.get("protocolVersion", "")),
        latest_checkpoint=checkpoint,
        validator_count=len(system_state.get("activeValidators") or []),
        reference_gas_price=gas_price,
        epoch_start_timestamp_ms=str(start_ms) if start_ms is not None else None,
    )


async def probe_rpc_health(rpc_url: str) -> ProbeResult:
    try:
        snapshot = await get_rpc_snapshot(SuiRpcClient(rpc_url))
    except Exception as exc:
        return ProbeResult(status="offline", error=format_error(exc) or "Unable to reach localnet RPC")
    return ProbeResult(status="running", snapshot=snapshot)


def _is_fatal(exc: BaseException) -> bool:
    return isinstance(exc, (LocalnetCrashError, LocalnetNetworkBlockedError))


def _log_tail(process: LocalnetProcess | None) -> str:
    return process.log_tail() if process is not None else ""


async def wait_for_rpc_ready(
    rpc_url: str,
    timeout: float,
    interval: float = DEFAULT_PROBE_INTERVAL,
    *,
    process: LocalnetProcess | None = None,
    probe: Callable[[str], Awaitable[ProbeResult]] = probe_rpc_health,
    **poll_kwargs,
) -> RpcSnapshot:
    """Block until ``rpc_url`` answers a snapshot probe; returns that snapshot."""

    async def attempt() -> PollAttempt[RpcSnapshot]:
        if process is not None:
            process.ensure_alive()
        result = await probe(rpc_url)
        if result.running and result.snapshot is not None:
            return PollAttempt(done=True, result=result.snapshot)
        return PollAttempt(done=False, error_message=result.error)

    outcome = await poll_with_timeout(
        attempt,
        timeout=timeout,
        interval=interval,
        should_abort_on_error=_is_fatal,
        **poll_kwargs,
    )
    if not outcome.timed_out and outcome.result is not None:
        logger.info(
            "Localnet RPC ready at %s (epoch %s, checkpoint %s)",
            rpc_url,
            outcome.result.epoch,
            outcome.result.latest_checkpoint,
        )
        return outcome.result

    last_error = outcome.error_message or "RPC probe failed"
    raise LocalnetTimeoutError(
        f"Localnet RPC did not become ready within {timeout:g}s at {rpc_url}: {last_error}",
        last_error=last_error,
        log_tail=_log_tail(process),
    )


async def wait_for_port_in_use(
    port: int,
    timeout: float,
    interval: float = DEFAULT_PROBE_INTERVAL,
    *,
    process: LocalnetProcess | None = None,
    **poll_kwargs,
) -> None:
    async def attempt() -> PollAttempt[bool]:
        if process is not None:
            process.ensure_alive()
        if not is_port_available(port):
            return PollAttempt(done=True, result=True)
        return PollAttempt(done=False, error_message=f"port {port} not bound yet")

    outcome = await poll_with_timeout(
        attempt,
        timeout=timeout,
        interval=interval,
        should_abort_on_error=_is_fatal,
        **poll_kwargs,
    )
    if not outcome.timed_out:
        return

    raise LocalnetTimeoutError(
        f"Localnet port {port} did not become ready within {timeout:g}s.",
        last_error=outcome.error_message,
        log_tail=_log_tail(process),
    )


__all__ = [
    "RpcSnapshot",
    "ProbeResult",
    "get_rpc_snapshot",
    "probe_rpc_health",
    "wait_for_rpc_ready",
    "wait_for_port_in_use",
]
