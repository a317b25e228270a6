"""Tests for the WebRCON client against an in-process fake game server."""

from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from paybridge.services.rcon import RconClient, RconError, RconNotConfigured, RconTimeout

PASSWORD = "hunter2"


class FakeGameServer:
    def __init__(self, reply: bool = True, raw_reply: str | None = None):
        self.reply = reply
        self.raw_reply = raw_reply
        self.frames: list[dict] = []
        self.connections = 0

    async def handle(self, request: web.Request):
        if request.match_info["password"] != PASSWORD:
            raise web.HTTPUnauthorized()
        self.connections += 1
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for message in ws:
            if message.type != WSMsgType.TEXT:
                break
            frame = json.loads(message.data)
            self.frames.append(frame)
            if not self.reply:
                continue
            if self.raw_reply is not None:
                await ws.send_str(self.raw_reply)
            else:
                await ws.send_str(
                    json.dumps(
                        {"Identifier": frame["Identifier"], "Message": f"done: {frame['Message']}", "Type": "Generic"}
                    )
                )
        return ws


async def _start(game: FakeGameServer) -> TestServer:
    app = web.Application()
    app.router.add_get("/{password}", game.handle)
    server = TestServer(app)
    await server.start_server()
    return server


@pytest.fixture()
async def game():
    game = FakeGameServer()
    server = await _start(game)
    game.port = server.port
    yield game
    await server.close()


def _client(port: int, **kwargs) -> RconClient:
    return RconClient(host="127.0.0.1", port=port, password=PASSWORD, sender="PayBridgeTest", **kwargs)


class TestRconClient:
    async def test_sends_single_frame_and_returns_reply(self, game):
        client = _client(game.port)
        result = await client.send("loverustvip.grant 76561199026505924 30d", timeout=2)

        assert result.ok is True
        assert result.response == "done: loverustvip.grant 76561199026505924 30d"
        assert game.frames == [
            {"Identifier": 1, "Message": "loverustvip.grant 76561199026505924 30d", "Name": "PayBridgeTest"}
        ]

    async def test_each_call_opens_its_own_connection(self, game):
        client = _client(game.port)
        await client.send("status", timeout=2)
        await client.send("status", timeout=2)

        assert game.connections == 2
        assert [frame["Identifier"] for frame in game.frames] == [1, 2]

    async def test_non_json_reply_returned_verbatim(self):
        game = FakeGameServer(raw_reply="plain text reply")
        server = await _start(game)
        try:
            result = await _client(server.port).send("status", timeout=2)
        finally:
            await server.close()
        assert result.response == "plain text reply"

    async def test_timeout_when_server_never_replies(self):
        game = FakeGameServer(reply=False)
        server = await _start(game)
        try:
            with pytest.raises(RconTimeout):
                await _client(server.port).send("status", timeout=0.2)
        finally:
            await server.close()

    async def test_wrong_password_is_an_error(self, game):
        client = RconClient(host="127.0.0.1", port=game.port, password="wrong")
        with pytest.raises(RconError):
            await client.send("status", timeout=2)

    async def test_connection_refused_is_an_error(self):
        server = await _start(FakeGameServer())
        port = server.port
        await server.close()
        with pytest.raises(RconError):
            await _client(port).send("status", timeout=2)


class TestRconModes:
    async def test_dry_run_bypasses_network(self):
        client = RconClient(dry_run=True)
        result = await client.send("loverustvip.grant 1 30d")
        assert result.dry_run is True
        assert result.ok is True
        assert client.is_available is True
        assert client.is_configured is False

    async def test_unconfigured_raises(self):
        client = RconClient(host="127.0.0.1")
        assert client.is_available is False
        with pytest.raises(RconNotConfigured):
            await client.send("status")

    def test_url(self):
        assert _client(28016).url == f"ws://127.0.0.1:28016/{PASSWORD}"

    async def test_timeout_cancels_exchange(self, monkeypatch):
        client = _client(1)

        async def hang(identifier, command):
            await asyncio.sleep(10)

        monkeypatch.setattr(client, "_exchange", hang)
        with pytest.raises(RconTimeout):
            await client.send("status", timeout=0.05)
