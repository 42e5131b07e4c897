import socket

import pytest

from localnet_harness.errors import LocalnetCrashError, LocalnetTimeoutError
from localnet_harness.readiness import (
    ProbeResult,
    RpcSnapshot,
    wait_for_port_in_use,
    wait_for_rpc_ready,
)

RPC_URL = "http://127.0.0.1:9000"


class FakeProcess:
    def __init__(self, crash_after=None, tail="panicked at genesis"):
        self.checks = 0
        self.crash_after = crash_after
        self.tail = tail

    def ensure_alive(self):
        self.checks += 1
        if self.crash_after is not None and self.checks > self.crash_after:
            raise LocalnetCrashError(101, None, self.tail)

    def log_tail(self, max_lines=200):
        return self.tail


def _snapshot():
    return RpcSnapshot(
        rpc_url=RPC_URL,
        epoch="0",
        protocol_version="70",
        latest_checkpoint="3",
        validator_count=1,
        reference_gas_price=1000,
    )


@pytest.mark.asyncio
async def test_rpc_ready_after_offline_probes(fake_clock):
    probes = []

    async def probe(url):
        probes.append(url)
        if len(probes) < 3:
            return ProbeResult(status="offline", error="connection refused")
        return ProbeResult(status="running", snapshot=_snapshot())

    snapshot = await wait_for_rpc_ready(
        RPC_URL, 10, process=FakeProcess(), probe=probe, clock=fake_clock, sleep=fake_clock.sleep
    )

    assert snapshot.latest_checkpoint == "3"
    assert len(probes) == 3


@pytest.mark.asyncio
async def test_rpc_wait_fails_fast_when_process_crashes(fake_clock):
    process = FakeProcess(crash_after=1)

    async def probe(url):
        return ProbeResult(status="offline", error="connection refused")

    with pytest.raises(LocalnetCrashError) as excinfo:
        await wait_for_rpc_ready(
            RPC_URL, 120, process=process, probe=probe, clock=fake_clock, sleep=fake_clock.sleep
        )

    assert excinfo.value.returncode == 101
    assert "panicked at genesis" in str(excinfo.value)
    assert fake_clock.now == 0.25


@pytest.mark.asyncio
async def test_rpc_wait_timeout_carries_last_error_and_tail(fake_clock):
    async def probe(url):
        return ProbeResult(status="offline", error="connection refused")

    with pytest.raises(LocalnetTimeoutError) as excinfo:
        await wait_for_rpc_ready(
            RPC_URL, 2, process=FakeProcess(), probe=probe, clock=fake_clock, sleep=fake_clock.sleep
        )

    assert excinfo.value.last_error == "connection refused"
    assert "within 2s" in str(excinfo.value)
    assert "panicked at genesis" in excinfo.value.log_tail


@pytest.mark.asyncio
async def test_port_in_use_detects_listener():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        await wait_for_port_in_use(port, 1, process=FakeProcess())


@pytest.mark.asyncio
async def test_port_wait_times_out_when_nothing_binds(fake_clock):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    with pytest.raises(LocalnetTimeoutError) as excinfo:
        await wait_for_port_in_use(port, 1, clock=fake_clock, sleep=fake_clock.sleep)
    assert excinfo.value.last_error == f"port {port} not bound yet"


@pytest.mark.asyncio
async def test_port_wait_fails_fast_on_crash(fake_clock):
    with pytest.raises(LocalnetCrashError):
        await wait_for_port_in_use(
            1, 30, process=FakeProcess(crash_after=0), clock=fake_clock, sleep=fake_clock.sleep
        )
    assert fake_clock.sleeps == []
