"""Thin async wrappers around the ``sui`` command line tool."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from .errors import LocalnetConfigurationError, SuiCliError

logger = logging.getLogger(__name__)

_ACTIVE_ENV_RE = re.compile(r"active\s+env(?:ironment)?\s*:\s*(\S+)", re.IGNORECASE)


def sui_binary() -> str:
    return os.getenv("SUI_BIN") or "sui"


@dataclass(frozen=True)
class CliResult:
    args: tuple[str, ...]
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


async def run_sui_command(
    args: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> CliResult:
    """Run ``sui <args>`` in a worker thread and capture its output."""

    command = [sui_binary(), *args]
    logger.debug("Running %s", " ".join(command))
    try:
        completed = await asyncio.to_thread(
            subprocess.run,
            command,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise LocalnetConfigurationError(
            "The Sui CLI is required but was not found. Install it and ensure `sui` is on your PATH."
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise SuiCliError(list(args), f"timed out after {timeout:g}s") from exc

    result = CliResult(
        args=tuple(args),
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        returncode=completed.returncode,
    )
    if check and not result.ok:
        raise SuiCliError(list(args), result.output, result.returncode)
    return result


def ensure_sui_cli() -> str:
    path = shutil.which(sui_binary())
    if path is None:
        raise LocalnetConfigurationError(
            "The Sui CLI is required but was not found. Install it and ensure `sui` is on your PATH."
        )
    return path


def parse_active_environment(output: str) -> str | None:
    text = output.strip()
    if not text:
        return None
    match = _ACTIVE_ENV_RE.search(text)
    if match:
        return match.group(1)
    tokens = text.split()
    return tokens[-1] if tokens else None


def parse_environment_list(output: str) -> tuple[str | None, list[str]]:
    """Parse ``sui client envs`` output into ``(active, names)``.

    Handles both the boxed table layout and the plain ``* alias url`` listing.
    """

    active: str | None = None
    names: list[str] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if "│" in stripped:
            cells = [cell.strip() for cell in stripped.strip("│").split("│")]
            name = cells[0] if cells else ""
            is_active = any(cell == "*" for cell in cells[1:])
        else:
            is_active = stripped.startswith("*")
            tokens = stripped.lstrip("*").split()
            name = tokens[0] if tokens else ""
        if not name or name.lower() == "alias" or not re.match(r"^[\w.-]+$", name):
            continue
        if name not in names:
            names.append(name)
        if is_active and active is None:
            active = name
    return active, names


async def get_active_environment(env: Mapping[str, str] | None = None) -> str | None:
    result = await run_sui_command(["client", "active-env"], env=env, check=False)
    if result.ok:
        parsed = parse_active_environment(result.stdout)
        if parsed:
            return parsed
    envs = await run_sui_command(["client", "envs"], env=env, check=False)
    if not envs.ok:
        return None
    return parse_environment_list(envs.stdout)[0]


async def create_environment(alias: str, rpc_url: str, *, env: Mapping[str, str] | None = None) -> bool:
    result = await run_sui_command(
        ["client", "new-env", "--alias", alias, "--rpc", rpc_url], env=env, check=False
    )
    return result.ok


async def switch_environment(alias: str, *, env: Mapping[str, str] | None = None) -> bool:
    result = await run_sui_command(["client", "switch", "--env", alias], env=env, check=False)
    return result.ok


async def ensure_client_environment(
    alias: str, rpc_url: str, *, env: Mapping[str, str] | None = None
) -> str | None:
    """Make ``alias`` exist and be the active client env; returns the env now active."""

    listing = await run_sui_command(["client", "envs"], env=env, check=False)
    active, names = parse_environment_list(listing.stdout) if listing.ok else (None, [])
    if alias not in names and not await create_environment(alias, rpc_url, env=env):
        logger.warning("Could not register sui client env %s -> %s", alias, rpc_url)
    if active != alias and not await switch_environment(alias, env=env):
        logger.warning("Could not switch sui client env to %s", alias)
    return await get_active_environment(env)


__all__ = [
    "CliResult",
    "run_sui_command",
    "ensure_sui_cli",
    "sui_binary",
    "parse_active_environment",
    "parse_environment_list",
    "get_active_environment",
    "create_environment",
    "switch_environment",
    "ensure_client_environment",
]
