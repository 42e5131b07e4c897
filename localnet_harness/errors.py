"""Exception hierarchy raised by the localnet harness."""

from __future__ import annotations

__all__ = [
    "LocalnetError",
    "LocalnetDisabledError",
    "LocalnetNetworkBlockedError",
    "LocalnetCrashError",
    "LocalnetTimeoutError",
    "StartLockTimeoutError",
    "FundingExhaustedError",
    "LocalnetConfigurationError",
    "KeystoreEntryNotFoundError",
    "SuiCliError",
    "RpcError",
    "FaucetError",
    "TransactionFailedError",
]


class LocalnetError(RuntimeError):
    """Base class for every harness failure."""


class LocalnetDisabledError(LocalnetError):
    """Raised when localnet execution is switched off through the environment."""

    def __init__(self, env_key: str) -> None:
        super().__init__(
            f"Localnet execution is disabled via {env_key}. "
            "Unset it to run localnet tests."
        )
        self.env_key = env_key


class LocalnetNetworkBlockedError(LocalnetError):
    """The OS refused to bind a loopback port (``EPERM``/``EACCES``).

    Test suites usually want to skip rather than fail on this condition.
    """

    def __init__(self, action: str, code: str) -> None:
        super().__init__(
            f"Localnet could not {action} a port on 127.0.0.1 ({code}). "
            "This environment may block localnet networking. Re-run with "
            "elevated permissions or set SUI_IT_SKIP_LOCALNET=1 to skip "
            "localnet tests."
        )
        self.action = action
        self.code = code


class LocalnetCrashError(LocalnetError):
    """The node process exited before it was asked to stop."""

    def __init__(
        self,
        returncode: int | None,
        signal_name: str | None = None,
        log_tail: str = "",
    ) -> None:
        parts = []
        if returncode is not None and signal_name is None:
            parts.append(f"code {returncode}")
        if signal_name:
            parts.append(f"signal {signal_name}")
        summary = ", ".join(parts) or "unknown exit"
        message = f"Localnet process exited ({summary})."
        if log_tail:
            message += f"\nLocalnet log tail:\n{log_tail}"
        super().__init__(message)
        self.returncode = returncode
        self.signal_name = signal_name
        self.log_tail = log_tail


class LocalnetTimeoutError(LocalnetError, TimeoutError):
    """A readiness, port or confirmation wait exceeded its deadline."""

    def __init__(self, message: str, *, last_error: str | None = None, log_tail: str = "") -> None:
        if log_tail:
            message = f"{message}\nLocalnet log tail:\n{log_tail}"
        super().__init__(message)
        self.last_error = last_error
        self.log_tail = log_tail


class StartLockTimeoutError(LocalnetTimeoutError):
    def __init__(self, lock_path: str) -> None:
        super().__init__(
            f"Timed out while waiting for the localnet start lock at {lock_path}."
        )
        self.lock_path = lock_path


class FundingExhaustedError(LocalnetError):
    """All funding rounds failed for an account."""

    def __init__(self, message: str, *, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class LocalnetConfigurationError(LocalnetError):
    """Missing funding source, keystore or other required local configuration."""


class KeystoreEntryNotFoundError(LocalnetConfigurationError):
    def __init__(self, address: str, keystore_path: str, available: list[str]) -> None:
        listing = "\n".join(available)
        super().__init__(
            f"Address {address} not found in {keystore_path}.\n"
            f"Available keystore entries:\n{listing}"
        )
        self.address = address
        self.keystore_path = keystore_path
        self.available = available


class SuiCliError(LocalnetError):
    """A ``sui`` subcommand exited with a non-zero status."""

    def __init__(self, args: list[str], details: str = "", returncode: int | None = None) -> None:
        message = f"sui {' '.join(args)} failed"
        if details:
            message += f":\n{details}"
        super().__init__(message)
        self.cli_args = list(args)
        self.details = details
        self.returncode = returncode


class RpcError(LocalnetError):
    """JSON-RPC error payload or transport failure talking to the node."""

    def __init__(self, method: str, message: str, code: int | None = None) -> None:
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.code = code


class FaucetError(LocalnetError):
    pass


class TransactionFailedError(LocalnetError):
    def __init__(self, digest: str | None, error: str) -> None:
        label = digest or "<unknown digest>"
        super().__init__(f"Transaction {label} failed: {error}")
        self.digest = digest
        self.error = error
