"""Bring a test account up to a funding requirement.

Sui pays gas from a single coin object, so "funded" means more than an
aggregate balance: the account needs enough distinct coins, enough total SUI
and at least one coin that clears the per-transaction gas bar on its own.
:class:`AccountFundingReconciler` checks the account, funds it from the
localnet treasury (one PaySui split) or the local faucet (one request per
missing coin), then waits for the node to report the new coins.  The
request/wait/re-check loop runs for a bounded number of rounds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Protocol, Sequence

from .errors import FaucetError, FundingExhaustedError, LocalnetConfigurationError, LocalnetError
from .faucet import request_sui_from_faucet
from .keystore import TestAccount, normalize_sui_address
from .polling import Clock, PollAttempt, Sleep, format_error, poll_with_timeout
from .rpc import SUI_COIN_TYPE
from .transactions import sign_and_execute

logger = logging.getLogger(__name__)

DEFAULT_MINIMUM_COIN_OBJECTS = 2
DEFAULT_MINIMUM_GAS_COIN_BALANCE = 500_000_000
DEFAULT_SPLIT_GAS_BUDGET = 10_000_000
DEFAULT_MAX_ROUNDS = 5
DEFAULT_CONFIRMATION_TIMEOUT = 10.0
DEFAULT_CONFIRMATION_INTERVAL = 0.25
DEFAULT_FAUCET_ATTEMPTS = 1
DEFAULT_FAUCET_DELAY = 0.05
SNAPSHOT_COIN_LIMIT = 50

FundingState = Literal[
    "checking",
    "transferring",
    "requesting",
    "waiting_for_confirmation",
    "satisfied",
    "failed",
]

FaucetRequest = Callable[[str, str], Awaitable[Any]]


class FundingClient(Protocol):
    async def get_coins(self, owner: str, coin_type: str = ..., *, limit: int = ...) -> list[dict]: ...

    async def unsafe_pay_sui(
        self,
        signer: str,
        input_coins: Sequence[str],
        recipients: Sequence[str],
        amounts: Sequence[int],
        gas_budget: int = ...,
    ) -> str: ...

    async def execute_transaction_block(self, tx_bytes: str, signatures: Sequence[str], **kwargs: Any) -> dict: ...


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


@dataclass(frozen=True)
class FundingRequirement:
    """Funding target for one account, amounts in MIST."""

    minimum_total_balance: int
    minimum_coin_count: int = DEFAULT_MINIMUM_COIN_OBJECTS
    minimum_single_coin_balance: int = DEFAULT_MINIMUM_GAS_COIN_BALANCE

    @classmethod
    def resolve(
        cls,
        *,
        minimum_total_balance: int | None = None,
        minimum_coin_count: int | None = None,
        minimum_single_coin_balance: int | None = None,
    ) -> "FundingRequirement":
        # An explicit total always wins over the derived single * count.
        count = DEFAULT_MINIMUM_COIN_OBJECTS if minimum_coin_count is None else minimum_coin_count
        single = (
            DEFAULT_MINIMUM_GAS_COIN_BALANCE
            if minimum_single_coin_balance is None
            else minimum_single_coin_balance
        )
        if count < 0 or single < 0:
            raise ValueError("funding requirement values must be non-negative")
        total = single * count if minimum_total_balance is None else minimum_total_balance
        if total < 0:
            raise ValueError("minimum_total_balance must be non-negative")
        return cls(
            minimum_total_balance=int(total),
            minimum_coin_count=int(count),
            minimum_single_coin_balance=int(single),
        )

    @property
    def split_coin_count(self) -> int:
        return max(1, self.minimum_coin_count)

    @property
    def split_amount(self) -> int:
        per_coin = _ceil_div(self.minimum_total_balance, self.split_coin_count)
        return max(per_coin, self.minimum_single_coin_balance)


@dataclass(frozen=True)
class FundingSnapshot:
    coin_count: int
    total_balance: int
    largest_coin_balance: int

    @classmethod
    def from_coins(cls, coins: Sequence[dict]) -> "FundingSnapshot":
        balances = [int(coin.get("balance", 0)) for coin in coins]
        return cls(
            coin_count=len(balances),
            total_balance=sum(balances),
            largest_coin_balance=max(balances, default=0),
        )

    def has_gas_coin(self, requirement: FundingRequirement) -> bool:
        if requirement.minimum_single_coin_balance <= 0:
            return True
        return self.coin_count > 0 and self.largest_coin_balance >= requirement.minimum_single_coin_balance

    def satisfies(self, requirement: FundingRequirement) -> bool:
        return (
            self.coin_count >= requirement.minimum_coin_count
            and self.total_balance >= requirement.minimum_total_balance
            and self.has_gas_coin(requirement)
        )


@dataclass
class FundingResult:
    address: str
    state: FundingState
    snapshot: FundingSnapshot
    rounds: int = 0
    transfers: list[str] = field(default_factory=list)
    faucet_requests: int = 0
    history: list[FundingState] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return self.state == "satisfied"


class AccountFundingReconciler:
    """Funding state machine for localnet test accounts.

    Exactly one funding source is used: the treasury account when present,
    the faucet otherwise.  With neither, :meth:`fund` raises
    :class:`LocalnetConfigurationError` before touching the network.
    """

    def __init__(
        self,
        client: FundingClient,
        *,
        treasury_account: TestAccount | None = None,
        faucet_host: str | None = None,
        gas_budget: int = DEFAULT_SPLIT_GAS_BUDGET,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        confirmation_interval: float = DEFAULT_CONFIRMATION_INTERVAL,
        faucet_attempts: int = DEFAULT_FAUCET_ATTEMPTS,
        faucet_delay: float = DEFAULT_FAUCET_DELAY,
        faucet_request: FaucetRequest = request_sui_from_faucet,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.treasury_account = treasury_account
        self.faucet_host = faucet_host
        self.gas_budget = gas_budget
        self.max_rounds = max(1, max_rounds)
        self.confirmation_timeout = confirmation_timeout
        self.confirmation_interval = confirmation_interval
        self.faucet_attempts = max(1, faucet_attempts)
        self.faucet_delay = faucet_delay
        self._faucet_request = faucet_request
        self._clock = clock
        self._sleep = sleep

    async def snapshot(self, address: str) -> FundingSnapshot:
        coins = await self.client.get_coins(address, SUI_COIN_TYPE, limit=SNAPSHOT_COIN_LIMIT)
        return FundingSnapshot.from_coins(coins)

    def _funding_source(self) -> TestAccount | str:
        """Return the treasury account, or the faucet host when there is no treasury."""

        if self.treasury_account is not None:
            return self.treasury_account
        if self.faucet_host:
            return self.faucet_host
        raise LocalnetConfigurationError(
            "Localnet funding unavailable. Start with SUI_IT_WITH_FAUCET=1 "
            "or set SUI_IT_TREASURY_INDEX."
        )

    async def fund(
        self,
        address: str,
        requirement: FundingRequirement | None = None,
    ) -> FundingResult:
        """Reconcile ``address`` against ``requirement`` and return the final state."""

        source = self._funding_source()
        requirement = requirement or FundingRequirement.resolve()
        address = normalize_sui_address(address)

        result = FundingResult(address=address, state="checking", snapshot=await self.snapshot(address))
        result.history.append("checking")
        if result.snapshot.satisfies(requirement):
            return self._finish(result, "satisfied")

        last_error: BaseException | None = None
        while result.rounds < self.max_rounds:
            result.rounds += 1
            try:
                if isinstance(source, TestAccount):
                    self._transition(result, "transferring")
                    digest = await self._transfer_from_treasury(source, address, requirement)
                    result.transfers.append(digest)
                else:
                    self._transition(result, "requesting")
                    missing = max(1, requirement.minimum_coin_count - result.snapshot.coin_count)
                    for _ in range(missing):
                        await self._request_with_retry(source, address)
                        result.faucet_requests += 1
            except LocalnetError as exc:
                last_error = exc
                logger.warning(
                    "Funding round %s/%s for %s failed: %s",
                    result.rounds,
                    self.max_rounds,
                    address,
                    format_error(exc),
                )
                await self._sleep(self.faucet_delay)
                continue

            self._transition(result, "waiting_for_confirmation")
            outcome = await self._wait_for_funding(address, requirement)
            if outcome.result is not None:
                result.snapshot = outcome.result
            if not outcome.timed_out:
                return self._finish(result, "satisfied")
            if outcome.error_message:
                last_error = LocalnetError(outcome.error_message)

        self._finish(result, "failed")
        source_name = (
            f"treasury {source.address}" if isinstance(source, TestAccount) else f"local faucet at {source}"
        )
        details = f" {format_error(last_error)}" if last_error is not None else ""
        raise FundingExhaustedError(
            f"Failed to fund {address} from {source_name} after {result.rounds} rounds.{details}",
            last_error=last_error,
        )

    def _transition(self, result: FundingResult, state: FundingState) -> None:
        logger.debug("Funding %s: %s -> %s", result.address, result.state, state)
        result.state = state
        result.history.append(state)

    def _finish(self, result: FundingResult, state: FundingState) -> FundingResult:
        self._transition(result, state)
        if state == "satisfied":
            logger.info(
                "Account %s funded: %s coins, %s MIST",
                result.address,
                result.snapshot.coin_count,
                result.snapshot.total_balance,
            )
        return result

    async def _wait_for_funding(self, address: str, requirement: FundingRequirement):
        async def attempt() -> PollAttempt[FundingSnapshot]:
            snapshot = await self.snapshot(address)
            return PollAttempt(done=snapshot.satisfies(requirement), result=snapshot)

        return await poll_with_timeout(
            attempt,
            timeout=self.confirmation_timeout,
            interval=self.confirmation_interval,
            clock=self._clock,
            sleep=self._sleep,
        )

    async def _transfer_from_treasury(
        self, treasury: TestAccount, address: str, requirement: FundingRequirement
    ) -> str:
        count = requirement.split_coin_count
        amount = requirement.split_amount
        needed = amount * count + self.gas_budget

        coins = await self.client.get_coins(treasury.address, SUI_COIN_TYPE, limit=SNAPSHOT_COIN_LIMIT)
        coins = sorted(coins, key=lambda coin: int(coin.get("balance", 0)), reverse=True)
        if not coins:
            raise FundingExhaustedError(f"Treasury {treasury.address} holds no SUI coins.")

        # PaySui merges its inputs into the first coin and pays gas from it.
        inputs: list[str] = []
        covered = 0
        for coin in coins:
            inputs.append(coin["coinObjectId"])
            covered += int(coin.get("balance", 0))
            if covered >= needed:
                break

        logger.info("Splitting %s x %s MIST from treasury %s to %s", count, amount, treasury.address, address)
        tx_bytes = await self.client.unsafe_pay_sui(
            treasury.address,
            inputs,
            [address] * count,
            [amount] * count,
            self.gas_budget,
        )
        response = await sign_and_execute(self.client, tx_bytes, treasury.keypair)
        return str(response.get("digest", ""))

    async def _request_with_retry(self, faucet_host: str, address: str) -> None:
        last_error: BaseException | None = None
        for attempt in range(self.faucet_attempts):
            try:
                await self._faucet_request(faucet_host, address)
                return
            except LocalnetError as exc:
                last_error = exc
                if attempt < self.faucet_attempts - 1:
                    await self._sleep(self.faucet_delay)

        raise FaucetError(
            f"Faucet request failed after {self.faucet_attempts} attempts: "
            f"{format_error(last_error) if last_error else 'Unknown error'}"
        )


__all__ = [
    "FundingRequirement",
    "FundingSnapshot",
    "FundingResult",
    "FundingState",
    "AccountFundingReconciler",
    "DEFAULT_MINIMUM_COIN_OBJECTS",
    "DEFAULT_MINIMUM_GAS_COIN_BALANCE",
]
