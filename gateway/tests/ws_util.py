import asyncio
from typing import Any, Callable

from aiohttp import WSMessage, WSMsgType
from aiohttp.test_utils import TestClient


async def _receive_with_deadline(ws, deadline: float) -> WSMessage:
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket message")
    return await ws.receive(timeout=remaining)


async def recv_frame(ws, *, timeout: float = 2.0, predicate: Callable[[Any], bool] | None = None) -> dict:
    """Return the next JSON frame matching ``predicate``, skipping pings."""

    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        msg = await _receive_with_deadline(ws, deadline)
        if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            raise AssertionError(f"WebSocket closed while waiting for frame (code {ws.close_code})")
        if msg.type == WSMsgType.ERROR:
            raise AssertionError(f"WebSocket error while waiting for frame: {ws.exception()}")
        if msg.type != WSMsgType.TEXT:
            continue
        frame = msg.json()
        if frame.get("type") == "ping":
            continue
        if predicate is None or predicate(frame):
            return frame


async def recv_type(ws, frame_type: str, *, timeout: float = 2.0) -> dict:
    return await recv_frame(ws, timeout=timeout, predicate=lambda frame: frame.get("type") == frame_type)


async def assert_no_frames(ws, *, timeout: float = 0.2) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_with_deadline(ws, deadline)
        except asyncio.TimeoutError:
            return
        if msg.type != WSMsgType.TEXT:
            continue
        frame = msg.json()
        if frame.get("type") == "ping":
            continue
        raise AssertionError(f"Unexpected websocket frame: {frame}")


async def wait_closed(ws, *, timeout: float = 2.0) -> int | None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not ws.closed:
        try:
            msg = await _receive_with_deadline(ws, deadline)
        except asyncio.TimeoutError:
            raise AssertionError("Timed out waiting for websocket close")
        if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            break
    return ws.close_code


async def open_session(client: TestClient, user_id: str):
    """Start a session over HTTP, authenticate a socket, and return ``(ws, ready, token)``."""

    resp = await client.post("/v1/session/start", json={"user_id": user_id})
    assert resp.status == 200, await resp.text()
    token = (await resp.json())["session_token"]
    ws = await client.ws_connect("/ws")
    await ws.send_json({"type": "authenticate", "sessionToken": token})
    ready = await recv_type(ws, "sessionReady")
    return ws, ready, token


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
