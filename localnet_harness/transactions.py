from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from .errors import LocalnetTimeoutError, TransactionFailedError
from .keystore import SuiKeypair
from .polling import PollAttempt, poll_with_timeout
from .rpc import FULL_TRANSACTION_OPTIONS, SuiRpcClient

logger = logging.getLogger(__name__)

DEFAULT_FINALITY_TIMEOUT = 10.0
DEFAULT_FINALITY_INTERVAL = 0.25
DEFAULT_OBJECT_TIMEOUT = 30.0

OBJECT_STATE_OPTIONS: dict[str, bool] = {"showOwner": True, "showContent": True, "showType": True}


def transaction_status(response: Mapping[str, Any]) -> tuple[str, str | None]:
    status = ((response.get("effects") or {}).get("status")) or {}
    return str(status.get("status", "unknown")), status.get("error")


async def sign_and_execute(
    client: SuiRpcClient,
    tx_bytes: str,
    signer: SuiKeypair,
    *,
    options: Mapping[str, bool] | None = None,
    request_type: str = "WaitForLocalExecution",
) -> dict[str, Any]:
    """Sign ``tx_bytes`` with ``signer``, execute it and require a successful status."""

    signature = signer.sign_transaction(tx_bytes)
    response = await client.execute_transaction_block(
        tx_bytes,
        [signature],
        options=options or FULL_TRANSACTION_OPTIONS,
        request_type=request_type,
    )
    digest = response.get("digest")
    status, error = transaction_status(response)
    if status != "success":
        raise TransactionFailedError(digest, error or f"status {status}")
    logger.debug("Executed transaction %s from %s", digest, signer.address)
    return response


async def wait_for_transaction_finality(
    client: SuiRpcClient,
    digest: str,
    timeout: float = DEFAULT_FINALITY_TIMEOUT,
    interval: float = DEFAULT_FINALITY_INTERVAL,
    **poll_kwargs,
) -> dict[str, Any]:
    async def attempt() -> PollAttempt[dict]:
        response = await client.get_transaction_block(digest, FULL_TRANSACTION_OPTIONS)
        if response and response.get("effects"):
            return PollAttempt(done=True, result=response)
        return PollAttempt(done=False, error_message="Transaction missing effects")

    outcome = await poll_with_timeout(attempt, timeout=timeout, interval=interval, **poll_kwargs)
    if not outcome.timed_out and outcome.result is not None:
        return outcome.result

    last_error = outcome.error_message or "Transaction not found"
    raise LocalnetTimeoutError(f"Transaction {digest} not finalized: {last_error}", last_error=last_error)


async def wait_for_package_availability(
    client: SuiRpcClient,
    package_id: str,
    timeout: float = DEFAULT_FINALITY_TIMEOUT,
    interval: float = DEFAULT_FINALITY_INTERVAL,
    **poll_kwargs,
) -> None:
    async def attempt() -> PollAttempt[bool]:
        response = await client.get_object(package_id, {"showContent": True, "showType": True})
        content = ((response or {}).get("data") or {}).get("content") or {}
        if content.get("dataType") == "package":
            return PollAttempt(done=True, result=True)
        return PollAttempt(done=False, error_message="package content not available")

    outcome = await poll_with_timeout(attempt, timeout=timeout, interval=interval, **poll_kwargs)
    if not outcome.timed_out:
        return

    last_error = outcome.error_message or "package not found"
    raise LocalnetTimeoutError(
        f"Package {package_id} not available on-chain within {timeout:g}s: {last_error}",
        last_error=last_error,
    )


def describe_object_error(error: Mapping[str, Any] | None) -> str:
    """Turn a ``sui_getObject`` error payload into a readable sentence."""

    if not error:
        return "Object state did not match expected predicate."
    code = error.get("code")
    if code == "displayError":
        return str(error.get("error"))
    if code == "notExists":
        return f"Object {error.get('object_id')} does not exist."
    if code == "deleted":
        return f"Object {error.get('object_id')} was deleted at version {error.get('version')}."
    if code == "dynamicFieldNotFound":
        return f"Dynamic field parent {error.get('parent_object_id')} was not found."
    return "Unknown object error."


async def wait_for_object_state(
    client: SuiRpcClient,
    object_id: str,
    predicate: Callable[[Mapping[str, Any]], bool] | None = None,
    *,
    timeout: float = DEFAULT_OBJECT_TIMEOUT,
    interval: float = DEFAULT_FINALITY_INTERVAL,
    label: str = "object",
    options: Mapping[str, bool] | None = None,
    **poll_kwargs,
) -> dict[str, Any]:
    """Poll ``object_id`` until it exists and ``predicate`` accepts the response."""

    opts = {**OBJECT_STATE_OPTIONS, **(options or {})}

    async def attempt() -> PollAttempt[dict]:
        response = await client.get_object(object_id, opts) or {}
        if response.get("data") and (predicate is None or predicate(response)):
            return PollAttempt(done=True, result=response)
        return PollAttempt(done=False, error_message=describe_object_error(response.get("error")))

    outcome = await poll_with_timeout(attempt, timeout=timeout, interval=interval, **poll_kwargs)
    if not outcome.timed_out and outcome.result is not None:
        return outcome.result

    last_error = outcome.error_message or "Object not available yet."
    raise LocalnetTimeoutError(f"Timed out waiting for {label} {object_id}: {last_error}", last_error=last_error)


__all__ = [
    "sign_and_execute",
    "transaction_status",
    "wait_for_transaction_finality",
    "wait_for_package_availability",
    "wait_for_object_state",
    "describe_object_error",
]
