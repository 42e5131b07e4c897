"""Disposable Sui localnet harness for integration tests."""

from .context import TestContext, create_test_context, test_context
from .env_override import ENV_OVERRIDES, EnvironmentOverrideStack, EnvOverrideToken
from .errors import (
    FaucetError,
    FundingExhaustedError,
    KeystoreEntryNotFoundError,
    LocalnetConfigurationError,
    LocalnetCrashError,
    LocalnetDisabledError,
    LocalnetError,
    LocalnetNetworkBlockedError,
    LocalnetTimeoutError,
    RpcError,
    StartLockTimeoutError,
    SuiCliError,
    TransactionFailedError,
)
from .funding import AccountFundingReconciler, FundingRequirement, FundingResult, FundingSnapshot
from .keystore import SuiKeypair, TestAccount, derive_test_account
from .localnet import LocalnetHarness, LocalnetInstance, LocalnetStartOptions, start_localnet
from .port_utils import PortSet, resolve_localnet_ports
from .rpc import SuiRpcClient
from .settings import HarnessSettings
from .testenv import LocalnetTestEnv

__all__ = [
    "TestContext",
    "create_test_context",
    "test_context",
    "ENV_OVERRIDES",
    "EnvironmentOverrideStack",
    "EnvOverrideToken",
    "FaucetError",
    "FundingExhaustedError",
    "KeystoreEntryNotFoundError",
    "LocalnetConfigurationError",
    "LocalnetCrashError",
    "LocalnetDisabledError",
    "LocalnetError",
    "LocalnetNetworkBlockedError",
    "LocalnetTimeoutError",
    "RpcError",
    "StartLockTimeoutError",
    "SuiCliError",
    "TransactionFailedError",
    "AccountFundingReconciler",
    "FundingRequirement",
    "FundingResult",
    "FundingSnapshot",
    "SuiKeypair",
    "TestAccount",
    "derive_test_account",
    "LocalnetHarness",
    "LocalnetInstance",
    "LocalnetStartOptions",
    "start_localnet",
    "PortSet",
    "resolve_localnet_ports",
    "SuiRpcClient",
    "HarnessSettings",
    "LocalnetTestEnv",
]
