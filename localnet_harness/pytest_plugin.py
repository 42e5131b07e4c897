"""pytest fixtures for localnet integration tests.

Enable with ``pytest_plugins = ["localnet_harness.pytest_plugin"]`` in a
``conftest.py``.  Tests that request :func:`localnet` or
:func:`localnet_context` are skipped, not failed, when localnet execution is
disabled or the sandbox refuses loopback networking.
"""

from __future__ import annotations

import re
from typing import AsyncIterator

import pytest
import pytest_asyncio

from .context import TestContext, create_test_context
from .errors import LocalnetDisabledError, LocalnetNetworkBlockedError
from .http import close_session
from .localnet import LocalnetInstance, LocalnetStartOptions, start_localnet
from .logging_utils import setup_stdout_logging
from .settings import HarnessSettings


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "localnet: test boots a disposable Sui localnet")
    if HarnessSettings.from_env().debug_move:
        setup_stdout_logging()


def _node_test_id(node: pytest.Item) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "-", node.name).strip("-") or "test"


async def stop_localnet(instance: LocalnetInstance) -> None:
    """Stop ``instance`` and close the HTTP session bound to this event loop."""

    try:
        await instance.stop()
    finally:
        await close_session()


@pytest.fixture
def localnet_settings() -> HarnessSettings:
    return HarnessSettings.from_env()


@pytest_asyncio.fixture
async def localnet(
    request: pytest.FixtureRequest, localnet_settings: HarnessSettings
) -> AsyncIterator[LocalnetInstance]:
    if localnet_settings.localnet_disabled:
        pytest.skip(f"localnet disabled via {localnet_settings.skip_env_key}")
    options = LocalnetStartOptions(test_id=_node_test_id(request.node))
    try:
        instance = await start_localnet(options, settings=localnet_settings)
    except (LocalnetDisabledError, LocalnetNetworkBlockedError) as exc:
        pytest.skip(str(exc))
    try:
        yield instance
    finally:
        await stop_localnet(instance)


@pytest_asyncio.fixture
async def localnet_context(
    request: pytest.FixtureRequest, localnet: LocalnetInstance
) -> AsyncIterator[TestContext]:
    context = await create_test_context(localnet, _node_test_id(request.node))
    try:
        yield context
    finally:
        await context.cleanup()


__all__ = ["localnet", "localnet_context", "localnet_settings", "stop_localnet"]
