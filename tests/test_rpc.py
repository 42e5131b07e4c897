import asyncio

import aiohttp
import pytest
from aiohttp import web

from localnet_harness.errors import FaucetError, RpcError
from localnet_harness.faucet import faucet_url, request_sui_from_faucet
from localnet_harness.http import close_session
from localnet_harness.readiness import probe_rpc_health
from localnet_harness.rpc import SuiRpcClient


async def _serve(routes):
    app = web.Application()
    for path, handler in routes:
        app.router.add_post(path, handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]
    return runner, f"http://127.0.0.1:{port}"


def _rpc_app(results, seen):
    async def handler(request):
        data = await request.json()
        seen.append(data)
        method = data["method"]
        if method not in results:
            return web.json_response(
                {"jsonrpc": "2.0", "error": {"code": -32601, "message": f"Method not found: {method}"}, "id": data["id"]}
            )
        return web.json_response({"jsonrpc": "2.0", "result": results[method], "id": data["id"]})

    return [("/", handler)]


@pytest.mark.asyncio
async def test_rpc_client_wire_format():
    seen = []
    results = {
        "suix_getCoins": {"data": [{"coinObjectId": "0x1", "balance": "7"}], "hasNextPage": False},
        "suix_getBalance": {"totalBalance": "7"},
        "unsafe_paySui": {"txBytes": "AAAB"},
    }
    runner, url = await _serve(_rpc_app(results, seen))
    try:
        client = SuiRpcClient(url)
        coins = await client.get_coins("0xabc", limit=10)
        balance = await client.get_balance("0xabc")
        tx_bytes = await client.unsafe_pay_sui("0xabc", ["0x1"], ["0xdef"], [5], gas_budget=9)
    finally:
        await close_session()
        await runner.cleanup()

    assert coins == [{"coinObjectId": "0x1", "balance": "7"}]
    assert balance == 7
    assert tx_bytes == "AAAB"
    assert seen[0]["jsonrpc"] == "2.0"
    assert seen[0]["params"] == ["0xabc", "0x2::sui::SUI", None, 10]
    assert seen[2]["params"] == ["0xabc", ["0x1"], ["0xdef"], ["5"], "9"]


@pytest.mark.asyncio
async def test_rpc_error_payload_raises():
    runner, url = await _serve(_rpc_app({}, []))
    try:
        with pytest.raises(RpcError) as excinfo:
            await SuiRpcClient(url).get_chain_identifier()
    finally:
        await close_session()
        await runner.cleanup()

    assert excinfo.value.method == "sui_getChainIdentifier"
    assert excinfo.value.code == -32601


@pytest.mark.asyncio
async def test_probe_reports_running_snapshot():
    results = {
        "suix_getLatestSuiSystemState": {
            "epoch": "0",
            "protocolVersion": "70",
            "activeValidators": [{}, {}],
            "epochStartTimestampMs": "1700000000000",
        },
        "sui_getLatestCheckpointSequenceNumber": "12",
        "suix_getReferenceGasPrice": "1000",
    }
    runner, url = await _serve(_rpc_app(results, []))
    try:
        result = await probe_rpc_health(url)
    finally:
        await close_session()
        await runner.cleanup()

    assert result.running
    assert result.snapshot.validator_count == 2
    assert result.snapshot.latest_checkpoint == "12"
    assert result.snapshot.reference_gas_price == 1000


@pytest.mark.asyncio
async def test_probe_reports_offline_when_unreachable():
    runner, url = await _serve([])
    await runner.cleanup()
    try:
        result = await probe_rpc_health(url)
    finally:
        await close_session()

    assert not result.running
    assert result.error


def test_faucet_url_normalises_host():
    assert faucet_url("127.0.0.1:9123") == "http://127.0.0.1:9123/v2/gas"
    assert faucet_url("http://127.0.0.1:9123/") == "http://127.0.0.1:9123/v2/gas"


@pytest.mark.asyncio
async def test_faucet_request_payload_and_failures():
    bodies = []

    async def gas(request):
        body = await request.json()
        bodies.append(body)
        recipient = body["FixedAmountRequest"]["recipient"]
        if recipient == "0xlimited":
            return web.json_response({"status": {"Failure": {"internal": "rate limited"}}})
        if recipient == "0xbroken":
            return web.Response(status=500, text="faucet down")
        return web.json_response({"status": "Success", "coins_sent": [{"amount": 1}]})

    runner, url = await _serve([("/v2/gas", gas)])
    host = url.removeprefix("http://")
    try:
        body = await request_sui_from_faucet(host, "0xfunded")
        with pytest.raises(FaucetError, match="rate limited"):
            await request_sui_from_faucet(host, "0xlimited")
        with pytest.raises(FaucetError, match="HTTP 500"):
            await request_sui_from_faucet(host, "0xbroken")
    finally:
        await close_session()
        await runner.cleanup()

    assert body["status"] == "Success"
    assert bodies[0] == {"FixedAmountRequest": {"recipient": "0xfunded"}}


def _stalled_app(release):
    async def handler(request):
        await release.wait()
        return web.json_response({"jsonrpc": "2.0", "result": None, "id": 1})

    return handler


@pytest.mark.asyncio
async def test_rpc_timeout_raises_rpc_error():
    release = asyncio.Event()
    runner, url = await _serve([("/", _stalled_app(release))])
    session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=0.2))
    try:
        with pytest.raises(RpcError) as excinfo:
            await SuiRpcClient(url, session=session).get_chain_identifier()
    finally:
        release.set()
        await session.close()
        await runner.cleanup()

    assert excinfo.value.method == "sui_getChainIdentifier"


@pytest.mark.asyncio
async def test_faucet_timeout_raises_faucet_error(monkeypatch):
    monkeypatch.setenv("SUI_IT_HTTP_TIMEOUT_SEC", "0.2")
    release = asyncio.Event()
    runner, url = await _serve([("/v2/gas", _stalled_app(release))])
    await close_session()
    try:
        with pytest.raises(FaucetError, match="failed"):
            await request_sui_from_faucet(url, "0xslow")
    finally:
        release.set()
        await close_session()
        await runner.cleanup()
