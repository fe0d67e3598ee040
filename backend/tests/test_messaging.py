"""Websocket fan-out bookkeeping."""

import asyncio

from fastapi import WebSocketDisconnect

from doppelganger.messaging import ConnectionManager


class FakeSocket:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.accepted = False
        self.sent: list[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, payload: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


def test_broadcast_reaches_subscribers_and_drops_closed_sockets():
    manager = ConnectionManager()
    live, dead, other = FakeSocket(), FakeSocket(fail=True), FakeSocket()

    async def scenario():
        await manager.connect(1, live)
        await manager.connect(1, dead)
        await manager.connect(2, other)
        await manager.broadcast(1, {"type": "status", "status": "running"})

    asyncio.run(scenario())

    assert live.accepted and dead.accepted
    assert live.sent == [{"type": "status", "status": "running"}]
    assert other.sent == []
    assert manager.subscriber_count(1) == 1
    assert manager.subscriber_count(2) == 1


class VanishedSocket(FakeSocket):
    async def send_json(self, payload: dict) -> None:
        raise WebSocketDisconnect(code=1006)


def test_broadcast_drops_peer_that_disconnected():
    manager = ConnectionManager()
    live, gone = FakeSocket(), VanishedSocket()

    async def scenario():
        await manager.connect(7, live)
        await manager.connect(7, gone)
        await manager.broadcast(7, {"type": "snapshot"})

    asyncio.run(scenario())

    assert live.sent == [{"type": "snapshot"}]
    assert manager.subscriber_count(7) == 1
