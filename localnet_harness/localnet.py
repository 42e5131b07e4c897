"""Boot and tear down a disposable Sui localnet.

:func:`start_localnet` runs the whole startup sequence under the start lock:
temp directory, port allocation, ``sui genesis``, config patching, ``sui
start``, readiness probes and treasury discovery.  Anything that fails after
the temp directory exists kills the node and removes the directory (unless
``SUI_IT_KEEP_TEMP=1``) before the error propagates.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Mapping

from .env_override import ENV_OVERRIDES, EnvironmentOverrideStack
from .errors import LocalnetConfigurationError, LocalnetDisabledError, LocalnetError
from .keystore import TestAccount, resolve_treasury_account, sanitize_label
from .move_package import LOCALNET_ENVIRONMENT
from .port_utils import LOOPBACK_HOST, PortSet, patch_config_files, resolve_localnet_ports
from .process import LocalnetProcess
from .readiness import wait_for_port_in_use, wait_for_rpc_ready
from .rpc import SuiRpcClient
from .settings import HarnessSettings
from .start_lock import StartLock, resolve_start_lock
from .sui_cli import ensure_client_environment, run_sui_command, sui_binary

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 0.25

Spawner = Callable[..., LocalnetProcess]


def temp_prefix(label: str) -> str:
    return f"sui-it-{sanitize_label(label)}-"


def isolated_sui_env(config_dir: Path | str, base: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["SUI_CONFIG_DIR"] = str(config_dir)
    env["SUI_LOCALNET_CONFIG_DIR"] = str(config_dir)
    return env


def build_start_args(config_dir: Path | str, ports: PortSet, with_faucet: bool) -> list[str]:
    args = [
        "start",
        "--network.config",
        str(config_dir),
        "--fullnode-rpc-port",
        str(ports.rpc_port),
    ]
    if with_faucet:
        host_port = ports.faucet_host_port
        args.append(f"--with-faucet={host_port}" if host_port else "--with-faucet")
    return args


@dataclass(frozen=True)
class LocalnetStartOptions:
    """Per-start overrides; ``None`` falls back to :class:`HarnessSettings`."""

    test_id: str = "localnet"
    with_faucet: bool | None = None
    keep_temp: bool | None = None
    random_ports: bool | None = None
    rpc_wait_timeout: float | None = None


class LocalnetInstance:
    """A running node plus the directories and accounts tests need."""

    def __init__(
        self,
        *,
        rpc_url: str,
        ports: PortSet,
        temp_dir: Path,
        config_dir: Path,
        logs_dir: Path,
        process: LocalnetProcess,
        client: SuiRpcClient,
        treasury_account: TestAccount | None = None,
        faucet_host: str | None = None,
        keep_temp: bool = False,
    ) -> None:
        self.rpc_url = rpc_url
        self.ports = ports
        self.temp_dir = temp_dir
        self.config_dir = config_dir
        self.logs_dir = logs_dir
        self.process = process
        self.client = client
        self.treasury_account = treasury_account
        self.faucet_host = faucet_host
        self.keep_temp = keep_temp
        self._stopped = False

    def __repr__(self) -> str:
        return f"LocalnetInstance(rpc_url={self.rpc_url!r}, pid={self.process.pid})"

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def log_path(self) -> Path:
        return self.process.log_path

    def cli_env(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        """Environment updates pointing the ``sui`` CLI at this node's config."""

        updates = {
            "SUI_CONFIG_DIR": str(self.config_dir),
            "SUI_LOCALNET_CONFIG_DIR": str(self.config_dir),
        }
        updates.update(extra or {})
        return updates

    async def stop(self) -> None:
        """Stop the node and remove the temp directory. Safe to call twice."""

        if self._stopped:
            return
        self._stopped = True

        try:
            await self.process.stop()
        except Exception:
            logger.warning("Failed to stop localnet pid %s", self.process.pid, exc_info=True)

        if self.keep_temp:
            logger.info("Keeping localnet temp dir %s", self.temp_dir)
            return
        try:
            shutil.rmtree(self.temp_dir)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove localnet temp dir %s", self.temp_dir, exc_info=True)


async def start_localnet(
    options: LocalnetStartOptions | None = None,
    *,
    settings: HarnessSettings | None = None,
    start_lock: StartLock | None = None,
    spawn: Spawner = LocalnetProcess.spawn,
    probe_interval: float = DEFAULT_PROBE_INTERVAL,
) -> LocalnetInstance:
    options = options or LocalnetStartOptions()
    settings = settings or HarnessSettings.from_env()
    if settings.localnet_disabled:
        raise LocalnetDisabledError(settings.skip_env_key or "SUI_IT_SKIP_LOCALNET")

    lock = start_lock or resolve_start_lock(settings)
    async with lock.hold():
        return await _start_locked(options, settings, spawn, probe_interval)


async def _start_locked(
    options: LocalnetStartOptions,
    settings: HarnessSettings,
    spawn: Spawner,
    probe_interval: float,
) -> LocalnetInstance:
    with_faucet = settings.with_faucet if options.with_faucet is None else options.with_faucet
    keep_temp = settings.keep_temp if options.keep_temp is None else options.keep_temp
    random_ports = settings.random_ports if options.random_ports is None else options.random_ports
    rpc_timeout = settings.rpc_wait_timeout if options.rpc_wait_timeout is None else options.rpc_wait_timeout

    temp_dir = Path(tempfile.mkdtemp(prefix=temp_prefix(options.test_id)))
    config_dir = temp_dir / "localnet-config"
    logs_dir = temp_dir / "logs"
    seed_path = temp_dir / "genesis-config.yaml"
    log_path = logs_dir / "localnet.log"
    config_dir.mkdir(parents=True, exist_ok=True)
    logs_dir.mkdir(parents=True, exist_ok=True)
    env = isolated_sui_env(config_dir)

    process: LocalnetProcess | None = None
    try:
        ports = resolve_localnet_ports(with_faucet, random_ports=random_ports)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(
                f"[harness] localnet ports rpc={ports.rpc_port} ws={ports.websocket_port} "
                f"faucet={ports.faucet_port if ports.faucet_port is not None else 'disabled'}\n"
            )

        genesis_args = ["genesis", "--write-config", str(seed_path)]
        if with_faucet:
            genesis_args.append("--with-faucet")
        await run_sui_command(genesis_args, env=env)
        remap = patch_config_files([seed_path], ports, random_ports=random_ports)
        logger.debug("Patched localnet seed config ports: %s", remap)
        await run_sui_command(
            ["genesis", "--from-config", str(seed_path), "--working-dir", str(config_dir)],
            env=env,
        )

        process = spawn(
            [sui_binary(), *build_start_args(config_dir, ports, with_faucet)],
            log_path=log_path,
            env=env,
        )

        rpc_url = f"http://{LOOPBACK_HOST}:{ports.rpc_port}"
        await wait_for_rpc_ready(rpc_url, rpc_timeout, probe_interval, process=process)
        if with_faucet and ports.faucet_port is not None:
            await wait_for_port_in_use(ports.faucet_port, rpc_timeout, probe_interval, process=process)

        active_env = await ensure_client_environment(LOCALNET_ENVIRONMENT, rpc_url, env=env)
        if active_env != LOCALNET_ENVIRONMENT:
            logger.warning("sui client active env is %s, expected %s", active_env, LOCALNET_ENVIRONMENT)

        client = SuiRpcClient(rpc_url)
        faucet_host = f"http://{ports.faucet_host_port}" if with_faucet and ports.faucet_host_port else None

        treasury: TestAccount | None = None
        try:
            treasury = await resolve_treasury_account(
                config_dir, client, override_index=settings.treasury_index
            )
        except LocalnetConfigurationError:
            if not with_faucet:
                raise
            logger.info("No funded treasury account found; funding will use the faucet at %s", faucet_host)

        logger.info("Localnet %s ready at %s (temp dir %s)", options.test_id, rpc_url, temp_dir)
        return LocalnetInstance(
            rpc_url=rpc_url,
            ports=ports,
            temp_dir=temp_dir,
            config_dir=config_dir,
            logs_dir=logs_dir,
            process=process,
            client=client,
            treasury_account=treasury,
            faucet_host=faucet_host,
            keep_temp=keep_temp,
        )
    except BaseException:
        if process is not None:
            await process.kill()
        if not keep_temp:
            shutil.rmtree(temp_dir, ignore_errors=True)
        raise


class LocalnetHarness:
    """Lazily start one localnet and hand out the same instance until stopped."""

    def __init__(self, starter: Callable[..., Awaitable[LocalnetInstance]] | None = None) -> None:
        self._starter = starter or start_localnet
        self._instance: LocalnetInstance | None = None
        self._lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._instance is not None

    async def start(self, options: LocalnetStartOptions | None = None, **kwargs) -> LocalnetInstance:
        async with self._lock:
            if self._instance is None:
                self._instance = await self._starter(options, **kwargs)
            return self._instance

    def get(self) -> LocalnetInstance:
        if self._instance is None:
            raise LocalnetError("Localnet has not been started")
        return self._instance

    async def stop(self) -> None:
        async with self._lock:
            instance, self._instance = self._instance, None
        if instance is not None:
            await instance.stop()


async def run_with_cli_env(
    instance: LocalnetInstance,
    action: Callable,
    *,
    extra: Mapping[str, str] | None = None,
    stack: EnvironmentOverrideStack = ENV_OVERRIDES,
):
    """Run ``action`` with ``SUI_CONFIG_DIR`` pointed at ``instance``'s config."""

    return await stack.run(instance.cli_env(extra), action)


__all__ = [
    "LocalnetStartOptions",
    "LocalnetInstance",
    "LocalnetHarness",
    "start_localnet",
    "build_start_args",
    "isolated_sui_env",
    "temp_prefix",
    "run_with_cli_env",
]
