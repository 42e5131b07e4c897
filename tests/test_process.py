import asyncio
import signal
import sys

import pytest

from localnet_harness.errors import LocalnetCrashError
from localnet_harness.process import LocalnetProcess, read_log_tail


def _python(code):
    return [sys.executable, "-c", code]


async def _wait_exit(process, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while process.running and loop.time() < deadline:
        await asyncio.sleep(0.02)


def test_read_log_tail_limits_lines(tmp_path):
    log = tmp_path / "localnet.log"
    log.write_text("\n".join(f"line {i}" for i in range(10)) + "\n", encoding="utf-8")

    assert read_log_tail(log, 3) == "line 7\nline 8\nline 9"
    assert read_log_tail(tmp_path / "missing.log") == ""
    assert read_log_tail(None) == ""


@pytest.mark.asyncio
async def test_crash_reports_exit_code_and_log_tail(tmp_path):
    process = LocalnetProcess.spawn(
        _python("print('genesis blob missing', flush=True); raise SystemExit(3)"),
        log_path=tmp_path / "logs" / "localnet.log",
    )
    await _wait_exit(process)

    with pytest.raises(LocalnetCrashError) as excinfo:
        process.ensure_alive()

    assert excinfo.value.returncode == 3
    assert excinfo.value.signal_name is None
    assert "genesis blob missing" in excinfo.value.log_tail
    assert "code 3" in str(excinfo.value)
    await process.stop()


@pytest.mark.asyncio
async def test_stop_terminates_and_is_idempotent(tmp_path):
    process = LocalnetProcess.spawn(
        _python("import time; time.sleep(60)"),
        log_path=tmp_path / "localnet.log",
    )
    process.ensure_alive()

    await process.stop(grace=5.0)
    assert not process.running
    await process.stop(grace=5.0)


@pytest.mark.asyncio
async def test_kill_stops_running_process(tmp_path):
    process = LocalnetProcess.spawn(
        _python("import time; time.sleep(60)"),
        log_path=tmp_path / "localnet.log",
    )
    await process.kill()

    assert not process.running
    with pytest.raises(LocalnetCrashError) as excinfo:
        process.ensure_alive()
    assert excinfo.value.signal_name == "SIGKILL"


@pytest.mark.asyncio
async def test_stop_kills_process_ignoring_sigterm(tmp_path):
    log_path = tmp_path / "localnet.log"
    process = LocalnetProcess.spawn(
        _python(
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(60)"
        ),
        log_path=log_path,
    )
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 10.0
    while "ready" not in read_log_tail(log_path) and loop.time() < deadline:
        await asyncio.sleep(0.02)

    await process.stop(grace=0.5)

    assert not process.running
    assert process.returncode == -signal.SIGKILL
