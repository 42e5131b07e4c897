"""Per-test workspace on top of a running localnet.

A :class:`TestContext` owns a temp directory holding a private copy of the
Move sources plus an artifacts directory, derives deterministic accounts for
the test, funds them, and runs builds and publishes with the ``sui`` CLI
pointed at the localnet config.  :meth:`TestContext.cleanup` always removes
the temp directory and may be called any number of times.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from .env_override import ENV_OVERRIDES, EnvironmentOverrideStack
from .errors import RpcError
from .funding import AccountFundingReconciler, FundingRequirement, FundingResult
from .keystore import TestAccount, derive_test_account, register_account, write_account_keystore
from .localnet import LocalnetInstance, temp_prefix
from .move_package import (
    LOCALNET_ENVIRONMENT,
    BuildOutput,
    PublishArtifact,
    build_move_package,
    clear_published_entry,
    clear_published_metadata,
    copy_move_sources,
    ensure_environment_entry_file,
    publish_package,
    record_publish_artifact,
    register_localnet_environment,
)
from .rpc import SuiRpcClient
from .transactions import (
    sign_and_execute,
    wait_for_object_state,
    wait_for_package_availability,
    wait_for_transaction_finality,
)

logger = logging.getLogger(__name__)

FALLBACK_CHAIN_ID = "00000000"
DEFAULT_FINALITY_TIMEOUT = 30.0
PACKAGE_AVAILABILITY_TIMEOUT = 20.0


class TestContext:
    __test__ = False

    def __init__(
        self,
        localnet: LocalnetInstance,
        test_id: str,
        *,
        temp_dir: Path,
        chain_id: str = FALLBACK_CHAIN_ID,
        env_stack: EnvironmentOverrideStack = ENV_OVERRIDES,
        reconciler: AccountFundingReconciler | None = None,
    ) -> None:
        self.localnet = localnet
        self.test_id = test_id
        self.temp_dir = temp_dir
        self.move_root = temp_dir / "contracts"
        self.artifacts_dir = temp_dir / "artifacts"
        self.chain_id = chain_id
        self.accounts: dict[str, TestAccount] = {}
        self._env = env_stack
        self._closed = False
        self._finalizers: list[Callable[[], Awaitable[None]]] = []
        self.reconciler = reconciler or AccountFundingReconciler(
            localnet.client,
            treasury_account=localnet.treasury_account,
            faucet_host=localnet.faucet_host,
        )

    def __repr__(self) -> str:
        return f"TestContext({self.test_id!r}, temp_dir={str(self.temp_dir)!r})"

    @property
    def client(self) -> SuiRpcClient:
        return self.localnet.client

    @property
    def closed(self) -> bool:
        return self._closed

    def create_account(self, label: str) -> TestAccount:
        """Return the account derived from ``(test_id, label)``; stable across calls."""

        account = self.accounts.get(label)
        if account is None:
            account = derive_test_account(self.test_id, label)
            self.accounts[label] = account
        return account

    async def fund_account(
        self,
        account: TestAccount,
        *,
        minimum_total_balance: int | None = None,
        minimum_coin_count: int | None = None,
        minimum_single_coin_balance: int | None = None,
    ) -> FundingResult:
        requirement = FundingRequirement.resolve(
            minimum_total_balance=minimum_total_balance,
            minimum_coin_count=minimum_coin_count,
            minimum_single_coin_balance=minimum_single_coin_balance,
        )
        return await self.reconciler.fund(account.address, requirement)

    def package_path(self, package: str | Path) -> Path:
        path = Path(package)
        return path if path.is_absolute() else self.move_root / path

    def _prepare_package(self, package: str | Path) -> Path:
        path = self.package_path(package)
        move_toml = path / "Move.toml"
        if move_toml.exists():
            ensure_environment_entry_file(move_toml, LOCALNET_ENVIRONMENT, self.chain_id)
        return path

    async def build(self, package: str | Path) -> BuildOutput:
        path = self._prepare_package(package)
        return await self._env.run(
            self.localnet.cli_env(),
            lambda: build_move_package(path, env=dict(self._env.environ)),
        )

    async def publish(
        self,
        package: str | Path,
        account: TestAccount,
        *,
        gas_budget: int | None = None,
        with_unpublished_dependencies: bool = True,
    ) -> PublishArtifact:
        keystore_path, entry = write_account_keystore(self.artifacts_dir, account)
        register_account(self.localnet.config_dir, entry)
        path = self._prepare_package(package)
        clear_published_entry(path, LOCALNET_ENVIRONMENT)

        kwargs: dict[str, Any] = {"with_unpublished_dependencies": with_unpublished_dependencies}
        if gas_budget is not None:
            kwargs["gas_budget"] = gas_budget

        artifact = await self._env.run(
            self.localnet.cli_env({"SUI_KEYSTORE_PATH": str(keystore_path)}),
            lambda: publish_package(path, account.address, env=dict(self._env.environ), **kwargs),
        )
        await wait_for_package_availability(self.client, artifact.package_id, PACKAGE_AVAILABILITY_TIMEOUT)
        record_publish_artifact(self.artifacts_dir, artifact)
        return artifact

    async def execute(
        self,
        tx_bytes: str,
        account: TestAccount,
        *,
        request_type: str = "WaitForLocalExecution",
    ) -> dict[str, Any]:
        return await sign_and_execute(self.client, tx_bytes, account.keypair, request_type=request_type)

    async def wait_for_finality(
        self,
        digest: str,
        *,
        timeout: float = DEFAULT_FINALITY_TIMEOUT,
        interval: float = 0.25,
    ) -> dict[str, Any]:
        return await wait_for_transaction_finality(self.client, digest, timeout, interval)

    async def wait_for_object_state(
        self,
        object_id: str,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
        *,
        timeout: float = 30.0,
        label: str = "object",
    ) -> dict[str, Any]:
        return await wait_for_object_state(self.client, object_id, predicate, timeout=timeout, label=label)

    async def query_events_by_transaction(self, digest: str) -> list[dict[str, Any]]:
        return await self.client.query_events({"Transaction": digest})

    async def query_events_by_type(self, event_type: str) -> list[dict[str, Any]]:
        return await self.client.query_events({"MoveEventType": event_type})

    def add_finalizer(self, finalizer: Callable[[], Awaitable[None]]) -> None:
        """Run ``finalizer`` after the temp directory is removed during :meth:`cleanup`."""

        self._finalizers.append(finalizer)

    async def cleanup(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            shutil.rmtree(self.temp_dir)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove test context dir %s", self.temp_dir, exc_info=True)

        for finalizer in reversed(self._finalizers):
            try:
                await finalizer()
            except Exception:
                logger.warning("Test context finalizer failed for %s", self.test_id, exc_info=True)


async def resolve_chain_id(client: SuiRpcClient) -> str:
    try:
        return await client.get_chain_identifier()
    except RpcError as exc:
        logger.warning("Unable to resolve localnet chain id, using %s: %s", FALLBACK_CHAIN_ID, exc)
        return FALLBACK_CHAIN_ID


async def create_test_context(
    localnet: LocalnetInstance,
    test_id: str,
    *,
    move_source_root: Path | str | None = None,
    env_stack: EnvironmentOverrideStack = ENV_OVERRIDES,
) -> TestContext:
    """Prepare a workspace: copied Move sources registered against this localnet's chain id."""

    temp_dir = Path(tempfile.mkdtemp(prefix=temp_prefix(test_id)))
    try:
        (temp_dir / "artifacts").mkdir(parents=True, exist_ok=True)
        move_root = temp_dir / "contracts"
        if move_source_root is not None:
            copy_move_sources(move_source_root, move_root)
        else:
            move_root.mkdir(parents=True, exist_ok=True)

        chain_id = await resolve_chain_id(localnet.client)
        register_localnet_environment(move_root, chain_id)
        clear_published_metadata(move_root, LOCALNET_ENVIRONMENT)
    except BaseException:
        shutil.rmtree(temp_dir, ignore_errors=True)
        raise

    return TestContext(
        localnet,
        test_id,
        temp_dir=temp_dir,
        chain_id=chain_id,
        env_stack=env_stack,
    )


@contextlib.asynccontextmanager
async def test_context(
    localnet: LocalnetInstance,
    test_id: str,
    **kwargs: Any,
) -> AsyncIterator[TestContext]:
    context = await create_test_context(localnet, test_id, **kwargs)
    try:
        yield context
    finally:
        await context.cleanup()


test_context.__test__ = False  # type: ignore[attr-defined]


__all__ = ["TestContext", "create_test_context", "test_context", "resolve_chain_id"]
