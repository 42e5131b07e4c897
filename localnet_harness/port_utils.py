"""Helpers for probing, allocating and remapping TCP ports on localhost.

The localnet node binds several ports (JSON-RPC, websocket, faucet and a
handful of validator/consensus ports declared in the genesis config).  These
utilities pick free loopback ports, keep concurrently starting harnesses in
the same process from colliding, and rewrite the genesis YAML so the node
actually binds the ports we picked.
"""

from __future__ import annotations

import errno
import logging
import re
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from .errors import LocalnetNetworkBlockedError

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

DEFAULT_RPC_PORT = 9000
DEFAULT_WEBSOCKET_PORT = 9001
DEFAULT_FAUCET_PORT = 9123

_PERMISSION_ERRNOS = {errno.EPERM, errno.EACCES}

# Ports handed out by this process.  Never reused so that harness instances
# started in the same process keep disjoint port sets.
_allocated_lock = threading.Lock()
_allocated_ports: set[int] = set()

_CONFIG_PORT_PATTERN = re.compile(
    r"(?P<host>(?:localhost|127\.0\.0\.1|0\.0\.0\.0):)(?P<host_port>\d{2,5})\b"
    r"|(?P<transport>/(?:tcp|udp)/)(?P<transport_port>\d{2,5})\b"
    r"|(?P<field>(?:^|(?<=\s))(?:port|[A-Za-z0-9_-]+(?:_|-)port)\s*:\s*)(?P<field_port>\d{2,5})\b",
    re.MULTILINE,
)
_PORT_GROUPS = (("host", "host_port"), ("transport", "transport_port"), ("field", "field_port"))


@dataclass(frozen=True)
class PortSet:
    rpc_port: int
    websocket_port: int
    faucet_port: int | None = None

    def ports(self) -> tuple[int, ...]:
        values = [self.rpc_port, self.websocket_port]
        if self.faucet_port is not None:
            values.append(self.faucet_port)
        return tuple(values)

    @property
    def faucet_host_port(self) -> str | None:
        if self.faucet_port is None:
            return None
        return f"{LOOPBACK_HOST}:{self.faucet_port}"


def _is_permission_error(exc: OSError) -> bool:
    return exc.errno in _PERMISSION_ERRNOS


def _errno_name(exc: OSError) -> str:
    return errno.errorcode.get(exc.errno or 0, "unknown")


def is_port_available(port: int, host: str = LOOPBACK_HOST) -> bool:
    """Return ``True`` when ``port`` can be bound on ``host`` right now."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as exc:
            if _is_permission_error(exc):
                raise LocalnetNetworkBlockedError("bind", _errno_name(exc)) from exc
            return False
    return True


def get_available_port(host: str = LOOPBACK_HOST) -> int:
    """Let the OS pick a free port by binding port 0, then release it."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, 0))
        except OSError as exc:
            if _is_permission_error(exc):
                raise LocalnetNetworkBlockedError("open", _errno_name(exc)) from exc
            raise
        return int(sock.getsockname()[1])


def reserve_port(exclude: set[int]) -> int:
    """Pick a port that is neither in ``exclude`` nor handed out earlier.

    The chosen port is added to ``exclude`` and to the process-wide registry.
    """

    while True:
        port = get_available_port()
        with _allocated_lock:
            if port in exclude or port in _allocated_ports:
                continue
            _allocated_ports.add(port)
        exclude.add(port)
        return port


def _claim_port(port: int, exclude: set[int]) -> bool:
    with _allocated_lock:
        if port in exclude or port in _allocated_ports:
            return False
        _allocated_ports.add(port)
    exclude.add(port)
    return True


def allocate_ports(with_faucet: bool, exclude: Iterable[int] | None = None) -> PortSet:
    """Return a :class:`PortSet` of mutually distinct OS-assigned ports."""

    taken = set(int(p) for p in exclude or ())
    rpc_port = reserve_port(taken)
    websocket_port = reserve_port(taken)
    faucet_port = reserve_port(taken) if with_faucet else None
    return PortSet(rpc_port, websocket_port, faucet_port)


def resolve_localnet_ports(with_faucet: bool, *, random_ports: bool = True) -> PortSet:
    """Pick ports for one localnet start.

    With ``random_ports`` disabled the well-known defaults are preferred when
    they are still bindable.
    """

    if random_ports:
        return allocate_ports(with_faucet)

    taken: set[int] = set()

    def _prefer(default: int) -> int:
        if is_port_available(default) and _claim_port(default, taken):
            return default
        return reserve_port(taken)

    rpc_port = _prefer(DEFAULT_RPC_PORT)
    websocket_port = _prefer(DEFAULT_WEBSOCKET_PORT)
    faucet_port = _prefer(DEFAULT_FAUCET_PORT) if with_faucet else None
    return PortSet(rpc_port, websocket_port, faucet_port)


def _match_parts(match: re.Match[str]) -> tuple[str, str]:
    for prefix_group, port_group in _PORT_GROUPS:
        port = match.group(port_group)
        if port is not None:
            return match.group(prefix_group), port
    raise ValueError(f"unexpected port match {match.group(0)!r}")


def collect_config_ports(text: str) -> set[int]:
    """Return every literal port referenced by ``text``."""

    return {int(_match_parts(match)[1]) for match in _CONFIG_PORT_PATTERN.finditer(text)}


def default_port_remap(ports: PortSet) -> dict[int, int]:
    remap = {
        DEFAULT_RPC_PORT: ports.rpc_port,
        DEFAULT_WEBSOCKET_PORT: ports.websocket_port,
    }
    if ports.faucet_port is not None:
        remap[DEFAULT_FAUCET_PORT] = ports.faucet_port
    return remap


def build_port_remap(texts: Iterable[str], ports: PortSet) -> dict[int, int]:
    """Map the default ports onto ``ports`` and every other config port to a fresh one."""

    remap = default_port_remap(ports)
    taken = set(remap.values())

    discovered: set[int] = set()
    for text in texts:
        discovered |= collect_config_ports(text)

    for port in sorted(discovered):
        if port in remap:
            continue
        remap[port] = reserve_port(taken)
    return remap


def _remap(port_text: str, remap: Mapping[int, int]) -> str:
    port = int(port_text)
    return str(remap.get(port, port))


def patch_config_text(text: str, remap: Mapping[int, int]) -> str:
    """Rewrite host:port pairs, ``/tcp|udp/<port>`` addresses and ``*port:`` keys."""

    def _replace(match: re.Match[str]) -> str:
        prefix, port = _match_parts(match)
        return prefix + _remap(port, remap)

    return _CONFIG_PORT_PATTERN.sub(_replace, text)


def patch_config_files(paths: Iterable[Path], ports: PortSet, *, random_ports: bool = True) -> dict[int, int]:
    """Patch every YAML file in ``paths`` so the node binds ``ports``.

    Only the defaults are remapped when ``random_ports`` is off and no port
    differs from the defaults; files whose text does not change are left
    untouched.  Returns the remap that was applied.
    """

    paths = [Path(p) for p in paths]
    if not paths:
        return {}

    remap = default_port_remap(ports)
    customised = any(original != mapped for original, mapped in remap.items())
    if not random_ports and not customised:
        return {}

    contents = [path.read_text(encoding="utf-8") for path in paths]
    if random_ports:
        remap = build_port_remap(contents, ports)

    for path, text in zip(paths, contents):
        updated = patch_config_text(text, remap)
        if updated != text:
            path.write_text(updated, encoding="utf-8")
            logger.debug("Patched localnet ports in %s", path)
    return remap


__all__ = [
    "PortSet",
    "DEFAULT_RPC_PORT",
    "DEFAULT_WEBSOCKET_PORT",
    "DEFAULT_FAUCET_PORT",
    "is_port_available",
    "get_available_port",
    "reserve_port",
    "allocate_ports",
    "resolve_localnet_ports",
    "collect_config_ports",
    "default_port_remap",
    "build_port_remap",
    "patch_config_text",
    "patch_config_files",
]
