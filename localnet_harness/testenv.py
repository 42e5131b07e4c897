from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Literal

from .context import TestContext, create_test_context
from .errors import LocalnetError
from .http import close_session
from .localnet import LocalnetHarness, LocalnetInstance, LocalnetStartOptions, start_localnet
from .settings import HarnessSettings

logger = logging.getLogger(__name__)

TestEnvMode = Literal["suite", "test"]

Starter = Callable[..., Awaitable[LocalnetInstance]]


def scoped_test_id(suite_id: str | None, test_id: str) -> str:
    suite = (suite_id or "").strip()
    test = test_id.strip()
    return f"{suite}--{test}" if suite else test


class LocalnetTestEnv:
    """Hands out test contexts backed by a shared or a per-test localnet.

    In ``suite`` mode one node is started by :meth:`start_suite` and every
    context created until :meth:`stop_suite` shares it, with test ids scoped
    as ``<suite>--<test>``.  In ``test`` mode each context starts its own node
    and stops it again on cleanup.
    """

    __test__ = False

    def __init__(
        self,
        mode: TestEnvMode = "test",
        *,
        with_faucet: bool | None = None,
        keep_temp: bool | None = None,
        rpc_wait_timeout: float | None = None,
        move_source_root: Path | str | None = None,
        settings: HarnessSettings | None = None,
        starter: Starter = start_localnet,
    ) -> None:
        if mode not in ("suite", "test"):
            raise ValueError(f"unknown test env mode {mode!r}")
        self.mode = mode
        self.with_faucet = with_faucet
        self.keep_temp = keep_temp
        self.rpc_wait_timeout = rpc_wait_timeout
        self.move_source_root = move_source_root
        self.settings = settings
        self._starter = starter
        self._suite_id: str | None = None
        self._suite_harness = LocalnetHarness(self._start)

    async def _start(self, options: LocalnetStartOptions | None = None) -> LocalnetInstance:
        return await self._starter(options, settings=self.settings or HarnessSettings.from_env())

    def start_options(self, test_id: str) -> LocalnetStartOptions:
        return LocalnetStartOptions(
            test_id=test_id,
            with_faucet=self.with_faucet,
            keep_temp=self.keep_temp,
            rpc_wait_timeout=self.rpc_wait_timeout,
        )

    @property
    def suite_id(self) -> str | None:
        return self._suite_id

    async def start_suite(self, suite_id: str) -> LocalnetInstance:
        if self.mode != "suite":
            raise LocalnetError("start_suite is not available in test mode.")
        self._suite_id = suite_id
        return await self._suite_harness.start(self.start_options(suite_id))

    async def stop_suite(self) -> None:
        self._suite_id = None
        try:
            await self._suite_harness.stop()
        finally:
            await close_session()

    async def create_test_context(self, test_id: str) -> TestContext:
        if self.mode == "suite":
            if self._suite_id is None:
                raise LocalnetError("Suite localnet is not started. Call start_suite(suite_id) first.")
            return await create_test_context(
                self._suite_harness.get(),
                scoped_test_id(self._suite_id, test_id),
                move_source_root=self.move_source_root,
            )

        harness = LocalnetHarness(self._start)
        instance = await harness.start(self.start_options(test_id))
        try:
            context = await create_test_context(instance, test_id, move_source_root=self.move_source_root)
        except BaseException:
            await harness.stop()
            raise
        context.add_finalizer(harness.stop)
        return context

    @contextlib.asynccontextmanager
    async def test_context(self, test_id: str) -> AsyncIterator[TestContext]:
        context = await self.create_test_context(test_id)
        try:
            yield context
        finally:
            await context.cleanup()


__all__ = ["LocalnetTestEnv", "TestEnvMode", "scoped_test_id"]
