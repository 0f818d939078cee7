"""Gateway ledger client against a local aiohttp server."""

from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as GatewayServer

from cult_sim.chain.ledger import GatewayLedgerClient, hash_reason
from cult_sim.config.settings import LedgerSettings
from cult_sim.utils.errors import LedgerError


def test_hash_reason():
    digest = hash_reason("Lost faith after defeat")
    assert digest == hash_reason("Lost faith after defeat")
    assert digest != hash_reason("Lost faith after victory")
    assert digest.startswith("0x")
    assert len(digest) == 66
    int(digest, 16)


def _app(received: list) -> web.Application:
    async def get_cult(request: web.Request) -> web.Response:
        cult_id = int(request.match_info["cult_id"])
        if cult_id == 404:
            return web.json_response({"error": "cult does not exist"}, status=404)
        return web.json_response(
            {"id": cult_id, "name": "Alpha", "treasuryBalance": "12.5", "followerCount": 7}
        )

    async def list_cults(request: web.Request) -> web.Response:
        return web.json_response(
            {"cults": [{"id": 1, "name": "Alpha"}, {"id": 2, "name": "Beta", "active": False}]}
        )

    async def raids(request: web.Request) -> web.Response:
        received.append(await request.json())
        return web.json_response({"txHash": "0xabc"})

    async def transfers(request: web.Request) -> web.Response:
        return web.json_response({"error": "insufficient treasury"})

    async def stats(request: web.Request) -> web.Response:
        return web.json_response({"totalCults": 2, "totalRaids": 9})

    app = web.Application()
    app.router.add_get("/cults", list_cults)
    app.router.add_get("/cults/{cult_id}", get_cult)
    app.router.add_post("/raids", raids)
    app.router.add_post("/transfers", transfers)
    app.router.add_get("/stats", stats)
    return app


@pytest.fixture()
async def gateway():
    received: list = []
    async with GatewayServer(_app(received)) as server:
        client = GatewayLedgerClient(
            LedgerSettings(gateway_url=str(server.make_url("/")), timeout_seconds=5.0)
        )
        yield client, received
        await client.close()


class TestGateway:
    async def test_reads(self, gateway):
        client, _ = gateway
        cult = await client.get_cult(1)
        assert (cult.id, cult.name, cult.treasury, cult.follower_count) == (1, "Alpha", 12.5, 7)
        cults = await client.get_all_cults()
        assert [c.active for c in cults] == [True, False]
        assert await client.get_total_cults() == 2
        assert await client.get_total_raids() == 9

    async def test_write_returns_tx_hash(self, gateway):
        client, received = gateway
        assert await client.record_raid(1, 2, True, 2.5) == "0xabc"
        assert received == [{"attackerId": 1, "defenderId": 2, "attackerWon": True, "amount": 2.5}]

    async def test_http_error_raises(self, gateway):
        client, _ = gateway
        with pytest.raises(LedgerError, match="HTTP 404"):
            await client.get_cult(404)

    async def test_error_body_raises(self, gateway):
        client, _ = gateway
        with pytest.raises(LedgerError, match="insufficient treasury"):
            await client.transfer_token(1, 2, 100.0)

    async def test_unreachable_gateway_raises(self):
        client = GatewayLedgerClient(LedgerSettings(gateway_url="http://127.0.0.1:9", timeout_seconds=2.0))
        try:
            with pytest.raises(LedgerError):
                await client.get_total_cults()
        finally:
            await client.close()
