import base64
import itertools
import json

import pytest

from localnet_harness.keystore import SuiKeypair, TestAccount
from localnet_harness.localnet import LocalnetInstance
from localnet_harness.port_utils import PortSet


class FakeSuiClient:
    """In-memory stand-in for :class:`SuiRpcClient` with PaySui semantics."""

    def __init__(self, url="http://127.0.0.1:9000"):
        self.url = url
        self.coins = {}
        self.pending = {}
        self.executed = []
        self.transactions = {}
        self.objects = {}
        self.events = []
        self.calls = []
        self.execute_failures = []
        self.chain_id = "4c78adac"
        self._ids = itertools.count(1)

    def add_coin(self, owner, balance):
        coin_id = f"0x{next(self._ids):064x}"
        self.coins.setdefault(owner, []).append(
            {"coinObjectId": coin_id, "balance": str(balance), "coinType": "0x2::sui::SUI"}
        )
        return coin_id

    def balances(self, owner):
        return sorted(int(c["balance"]) for c in self.coins.get(owner, []))

    async def get_coins(self, owner, coin_type="0x2::sui::SUI", *, limit=50, cursor=None):
        self.calls.append(("get_coins", owner))
        return [dict(c) for c in self.coins.get(owner, [])][:limit]

    async def get_balance(self, owner, coin_type="0x2::sui::SUI"):
        return sum(self.balances(owner))

    async def unsafe_pay_sui(self, signer, input_coins, recipients, amounts, gas_budget=100_000_000):
        self.calls.append(("unsafe_pay_sui", signer, list(input_coins), list(recipients), list(amounts)))
        tx_bytes = base64.b64encode(f"pay:{len(self.pending)}".encode()).decode()
        self.pending[tx_bytes] = (signer, list(input_coins), list(recipients), list(amounts))
        return tx_bytes

    async def execute_transaction_block(self, tx_bytes, signatures, *, options=None, request_type="WaitForLocalExecution"):
        self.calls.append(("execute", tx_bytes))
        digest = f"digest-{len(self.executed) + 1}"
        if self.execute_failures:
            error = self.execute_failures.pop(0)
            return {"digest": digest, "effects": {"status": {"status": "failure", "error": error}}}

        self.executed.append((tx_bytes, list(signatures)))
        payment = self.pending.pop(tx_bytes, None)
        if payment is not None:
            signer, inputs, recipients, amounts = payment
            owned = self.coins.get(signer, [])
            merged = sum(int(c["balance"]) for c in owned if c["coinObjectId"] in inputs)
            remaining = [c for c in owned if c["coinObjectId"] not in inputs]
            change = merged - sum(amounts)
            if change > 0:
                remaining.append({"coinObjectId": inputs[0], "balance": str(change), "coinType": "0x2::sui::SUI"})
            self.coins[signer] = remaining
            for recipient, amount in zip(recipients, amounts):
                self.add_coin(recipient, amount)

        response = {"digest": digest, "effects": {"status": {"status": "success"}}}
        self.transactions[digest] = response
        return response

    async def get_transaction_block(self, digest, options=None):
        return self.transactions.get(digest) or {"digest": digest}

    async def get_object(self, object_id, options=None):
        return self.objects.get(object_id, {"error": {"code": "notExists", "object_id": object_id}})

    async def get_chain_identifier(self):
        return self.chain_id

    async def query_events(self, query, *, limit=50):
        self.calls.append(("query_events", dict(query)))
        return list(self.events)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_client():
    return FakeSuiClient()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def treasury():
    keypair = SuiKeypair.from_seed(bytes(range(32)))
    return TestAccount(label="treasury-0", keypair=keypair, address=keypair.address)


@pytest.fixture
def localnet_config_dir(tmp_path):
    """Config dir with a three-entry keystore as written by ``sui genesis``."""

    config_dir = tmp_path / "localnet-config"
    config_dir.mkdir()
    entries = [SuiKeypair.from_seed(bytes([i]) * 32).keystore_entry() for i in (1, 2, 3)]
    (config_dir / "sui.keystore").write_text(json.dumps(entries), encoding="utf-8")
    return config_dir


@pytest.fixture
def move_sources(tmp_path):
    root = tmp_path / "move-src"
    pkg = root / "oracle_market"
    (pkg / "sources").mkdir(parents=True)
    (pkg / "build" / "oracle_market").mkdir(parents=True)
    (pkg / "build" / "oracle_market" / "BuildInfo.yaml").write_text("stale", encoding="utf-8")
    (pkg / "sources" / "shop.move").write_text("module oracle_market::shop {}\n", encoding="utf-8")
    (pkg / "Move.toml").write_text(
        '[package]\nname = "oracle_market"\nedition = "2024.beta"\n\n'
        "[dependencies]\n\n[addresses]\noracle_market = \"0x0\"\n",
        encoding="utf-8",
    )
    (pkg / "Published.toml").write_text(
        '[published.localnet]\npublished-at = "0x1"\n\n[published.testnet]\npublished-at = "0x2"\n',
        encoding="utf-8",
    )
    return root


class FakeNodeProcess:
    pid = 4242

    def __init__(self):
        self.stopped = 0

    async def stop(self):
        self.stopped += 1


@pytest.fixture
def fake_localnet(tmp_path, fake_client, localnet_config_dir, treasury):
    return LocalnetInstance(
        rpc_url=fake_client.url,
        ports=PortSet(9000, 9001),
        temp_dir=tmp_path / "node",
        config_dir=localnet_config_dir,
        logs_dir=tmp_path / "node" / "logs",
        process=FakeNodeProcess(),
        client=fake_client,
        treasury_account=treasury,
    )
