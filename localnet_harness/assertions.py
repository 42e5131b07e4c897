"""Assertion helpers for localnet transaction responses.

Helpers raise :class:`AssertionError` so pytest reports a mismatch as a test
failure rather than an error.  The async helpers read state from the node
through a :class:`~localnet_harness.rpc.SuiRpcClient`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from .errors import TransactionFailedError
from .keystore import normalize_sui_address
from .rpc import SUI_COIN_TYPE, SuiRpcClient
from .transactions import describe_object_error, transaction_status

_MODULE_PATTERNS = (
    re.compile(r'name:\s*Identifier\("([^"]+)"\)', re.IGNORECASE),
    re.compile(r'module:\s*"?([^",}\s]+)"?', re.IGNORECASE),
    re.compile(r'module\s*=\s*"?([^",}\s]+)"?', re.IGNORECASE),
)
_FUNCTION_PATTERNS = (
    re.compile(r'function_name:\s*Some\("([^"]+)"\)', re.IGNORECASE),
    re.compile(r'function_name:\s*"?([^",}\s]+)"?', re.IGNORECASE),
    re.compile(r'function:\s*"?([^",}\s]+)"?', re.IGNORECASE),
    re.compile(r'function\s*=\s*"?([^",}\s]+)"?', re.IGNORECASE),
)
_ABORT_CODE_PATTERNS = (
    re.compile(r"abort_code:\s*(0x[0-9a-f]+|\d+)", re.IGNORECASE),
    re.compile(r"abort\s*code\s*:?\s*(0x[0-9a-f]+|\d+)", re.IGNORECASE),
    re.compile(r"abort_code\s*=\s*(0x[0-9a-f]+|\d+)", re.IGNORECASE),
    re.compile(r"MoveAbort[\s\S]*?,\s*(0x[0-9a-f]+|\d+)\s*\)?", re.IGNORECASE),
)
_MOVE_ABORT = re.compile(r"moveabort|move abort", re.IGNORECASE)


@dataclass(frozen=True)
class MoveAbortDetails:
    module: str | None
    function_name: str | None
    abort_code: int | None


def _first_capture(message: str, patterns: Sequence[re.Pattern[str]]) -> str | None:
    for pattern in patterns:
        match = pattern.search(message)
        if match and match.group(1):
            return match.group(1)
    return None


def _parse_abort_code(value: str | None) -> int | None:
    if not value:
        return None
    value = value.strip()
    try:
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    except ValueError:
        return None


def parse_move_abort(message: str) -> MoveAbortDetails:
    module = _first_capture(message, _MODULE_PATTERNS)
    return MoveAbortDetails(
        module=module.split("::")[-1] if module else None,
        function_name=_first_capture(message, _FUNCTION_PATTERNS),
        abort_code=_parse_abort_code(_first_capture(message, _ABORT_CODE_PATTERNS)),
    )


def assert_transaction_succeeded(response: Mapping[str, Any]) -> Mapping[str, Any]:
    status, error = transaction_status(response)
    if status != "success":
        raise TransactionFailedError(response.get("digest"), error or f"status {status}")
    return response


def assert_transaction_failed(response: Mapping[str, Any], label: str = "transaction") -> str:
    """Require a failed status and return the node's error message."""

    status, error = transaction_status(response)
    if status == "unknown":
        raise AssertionError(f"Expected {label} to fail, but status was missing.")
    if status == "success":
        raise AssertionError(f"Expected {label} to fail, but it succeeded.")
    return error or "Unknown failure"


def assert_move_abort(
    response: Mapping[str, Any],
    *,
    module: str | None = None,
    function_name: str | None = None,
    abort_code: int | None = None,
    label: str = "transaction",
) -> MoveAbortDetails:
    """Require a ``MoveAbort`` failure, optionally pinned to a location and code."""

    message = assert_transaction_failed(response, label)
    if not _MOVE_ABORT.search(message):
        raise AssertionError(f"Expected {label} to fail with MoveAbort, got: {message}")

    details = parse_move_abort(message)
    if module and details.module != module:
        raise AssertionError(f"Expected {label} to abort in module {module}, got {details.module or 'unknown'}.")
    if function_name and details.function_name != function_name:
        raise AssertionError(
            f"Expected {label} to abort in {module or 'module'}::{function_name}, "
            f"got {details.function_name or 'unknown'}."
        )
    if abort_code is not None and details.abort_code != abort_code:
        actual = "unknown" if details.abort_code is None else str(details.abort_code)
        raise AssertionError(f"Expected {label} to abort with code {abort_code}, got {actual}.")
    return details


def find_created_object_ids(response: Mapping[str, Any], type_suffix: str) -> list[str]:
    return [
        str(change["objectId"])
        for change in response.get("objectChanges") or []
        if change.get("type") == "created" and str(change.get("objectType", "")).endswith(type_suffix)
    ]


def require_created_object_id(
    response: Mapping[str, Any], type_suffix: str, label: str | None = None
) -> str:
    ids = find_created_object_ids(response, type_suffix)
    if not ids:
        raise AssertionError(f"Expected {label or type_suffix} to be created, but none was found.")
    return ids[0]


def owner_address(owner: Any) -> str | None:
    """Return the normalized address behind an object owner, if there is one."""

    if not owner:
        return None
    # balanceChanges entries sometimes carry a bare address string
    if isinstance(owner, str):
        return normalize_sui_address(owner) if owner.startswith("0x") else None
    if "AddressOwner" in owner:
        return normalize_sui_address(owner["AddressOwner"])
    if "ObjectOwner" in owner:
        return normalize_sui_address(owner["ObjectOwner"])
    if "ConsensusAddressOwner" in owner:
        return normalize_sui_address(owner["ConsensusAddressOwner"]["owner"])
    return None


def assert_owner_address(owner: Any, expected_address: str, label: str = "owner") -> None:
    expected = normalize_sui_address(expected_address)
    actual = owner_address(owner)
    if actual is None:
        raise AssertionError(f"Expected {label} to be an address owner.")
    if actual != expected:
        raise AssertionError(f"Expected {label} to be {expected}, got {actual}.")


async def assert_object_owner_by_id(
    client: SuiRpcClient,
    object_id: str,
    expected_owner: str,
    label: str = "object",
) -> Any:
    response = await client.get_object(object_id, {"showOwner": True}) or {}
    data = response.get("data")
    if not data:
        missing = f"Expected {label} {object_id} to exist, but it was not found."
        error = response.get("error")
        raise AssertionError(f"{missing} ({describe_object_error(error)})" if error else missing)

    assert_owner_address(data.get("owner"), expected_owner, f"{label} owner")
    return data.get("owner")


async def assert_event_by_digest(
    client: SuiRpcClient,
    digest: str,
    *,
    event_type: str | None = None,
    predicate: Callable[[Mapping[str, Any]], bool] | None = None,
    label: str = "event",
) -> dict[str, Any]:
    """Return the first event emitted by ``digest`` that matches the filters."""

    for event in await client.query_events({"Transaction": digest}):
        if event_type and event.get("type") != event_type:
            continue
        if predicate is None or predicate(event):
            return event

    type_label = f" of type {event_type}" if event_type else ""
    raise AssertionError(f"Expected {label}{type_label} for digest {digest}, but none was found.")


def assert_balance_change(
    response: Mapping[str, Any],
    *,
    owner: str,
    delta: int,
    coin_type: str = SUI_COIN_TYPE,
) -> None:
    expected_owner = normalize_sui_address(owner)
    for change in response.get("balanceChanges") or []:
        if owner_address(change.get("owner")) == expected_owner and change.get("coinType") == coin_type:
            actual = int(change.get("amount", 0))
            if actual != delta:
                raise AssertionError(f"Expected balance delta {delta}, got {actual}.")
            return
    raise AssertionError(f"Expected a balance change for {expected_owner} {coin_type}.")


__all__ = [
    "MoveAbortDetails",
    "parse_move_abort",
    "assert_transaction_succeeded",
    "assert_transaction_failed",
    "assert_move_abort",
    "find_created_object_ids",
    "require_created_object_id",
    "owner_address",
    "assert_owner_address",
    "assert_object_owner_by_id",
    "assert_event_by_digest",
    "assert_balance_change",
]
