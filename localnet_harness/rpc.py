"""Minimal asynchronous Sui JSON-RPC client.

Only the calls the harness needs are wrapped: coin and balance lookups,
transaction execution and lookup, object lookup, system state and checkpoint
queries, events, and the node-side ``unsafe_paySui`` builder used to split
treasury coins without a local transaction builder.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Mapping, Sequence

import aiohttp

from .errors import RpcError
from .http import HTTPError, get_session

logger = logging.getLogger(__name__)

SUI_COIN_TYPE = "0x2::sui::SUI"
DEFAULT_TX_GAS_BUDGET = 100_000_000

FULL_TRANSACTION_OPTIONS: dict[str, bool] = {
    "showInput": True,
    "showEffects": True,
    "showEvents": True,
    "showObjectChanges": True,
    "showBalanceChanges": True,
}

_request_ids = itertools.count(1)


class SuiRpcClient:
    def __init__(self, url: str, *, session: aiohttp.ClientSession | None = None) -> None:
        self.url = url
        self._session = session

    def __repr__(self) -> str:
        return f"SuiRpcClient({self.url!r})"

    async def call(self, method: str, params: Sequence[Any] = ()) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": method,
            "params": list(params),
        }
        session = self._session or await get_session()
        try:
            async with session.post(self.url, json=payload) as resp:
                if resp.status >= 400:
                    raise HTTPError(self.url, resp.status, await resp.text())
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, HTTPError, OSError) as exc:
            raise RpcError(method, str(exc) or type(exc).__name__) from exc

        if not isinstance(body, Mapping):
            raise RpcError(method, f"unexpected response {body!r}")
        error = body.get("error")
        if error:
            if isinstance(error, Mapping):
                raise RpcError(method, str(error.get("message", error)), error.get("code"))
            raise RpcError(method, str(error))
        return body.get("result")

    async def get_coins(
        self,
        owner: str,
        coin_type: str = SUI_COIN_TYPE,
        *,
        limit: int = 50,
        cursor: str | None = None,
    ) -> list[dict[str, Any]]:
        result = await self.call("suix_getCoins", [owner, coin_type, cursor, limit])
        return list((result or {}).get("data") or [])

    async def get_balance(self, owner: str, coin_type: str = SUI_COIN_TYPE) -> int:
        result = await self.call("suix_getBalance", [owner, coin_type])
        return int((result or {}).get("totalBalance", 0))

    async def get_latest_sui_system_state(self) -> dict[str, Any]:
        return await self.call("suix_getLatestSuiSystemState")

    async def get_latest_checkpoint_sequence_number(self) -> str:
        return str(await self.call("sui_getLatestCheckpointSequenceNumber"))

    async def get_reference_gas_price(self) -> int:
        return int(await self.call("suix_getReferenceGasPrice"))

    async def get_chain_identifier(self) -> str:
        return str(await self.call("sui_getChainIdentifier"))

    async def get_object(self, object_id: str, options: Mapping[str, bool] | None = None) -> dict[str, Any]:
        opts = dict(options or {"showContent": True, "showType": True})
        return await self.call("sui_getObject", [object_id, opts])

    async def get_transaction_block(
        self, digest: str, options: Mapping[str, bool] | None = None
    ) -> dict[str, Any]:
        opts = dict(options or FULL_TRANSACTION_OPTIONS)
        return await self.call("sui_getTransactionBlock", [digest, opts])

    async def execute_transaction_block(
        self,
        tx_bytes: str,
        signatures: Sequence[str],
        *,
        options: Mapping[str, bool] | None = None,
        request_type: str = "WaitForLocalExecution",
    ) -> dict[str, Any]:
        opts = dict(options or FULL_TRANSACTION_OPTIONS)
        return await self.call(
            "sui_executeTransactionBlock",
            [tx_bytes, list(signatures), opts, request_type],
        )

    async def unsafe_pay_sui(
        self,
        signer: str,
        input_coins: Sequence[str],
        recipients: Sequence[str],
        amounts: Sequence[int],
        gas_budget: int = DEFAULT_TX_GAS_BUDGET,
    ) -> str:
        """Have the node build a PaySui transaction; returns base64 ``txBytes``."""

        result = await self.call(
            "unsafe_paySui",
            [
                signer,
                list(input_coins),
                list(recipients),
                [str(amount) for amount in amounts],
                str(gas_budget),
            ],
        )
        return str(result["txBytes"])

    async def query_events(self, query: Mapping[str, Any], *, limit: int = 50) -> list[dict[str, Any]]:
        result = await self.call("suix_queryEvents", [dict(query), None, limit, False])
        return list((result or {}).get("data") or [])

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


__all__ = [
    "SuiRpcClient",
    "SUI_COIN_TYPE",
    "DEFAULT_TX_GAS_BUDGET",
    "FULL_TRANSACTION_OPTIONS",
]
