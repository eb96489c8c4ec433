import asyncio
import json
from typing import Any, Callable

from aiohttp import ClientWebSocketResponse, WSMessage, WSMsgType


async def _receive_with_deadline(ws: ClientWebSocketResponse, deadline: float) -> WSMessage:
    loop = asyncio.get_running_loop()
    remaining = deadline - loop.time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket message")
    return await ws.receive(timeout=remaining)


def _parse_json_payload(msg: WSMessage) -> Any | None:
    if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
        raise AssertionError("WebSocket closed while waiting for message")
    if msg.type == WSMsgType.ERROR:
        raise AssertionError("WebSocket error while waiting for message")
    if msg.type != WSMsgType.TEXT:
        return None
    try:
        return json.loads(msg.data)
    except ValueError:
        return None


async def recv_json_until(
    ws: ClientWebSocketResponse,
    *,
    timeout: float = 2.0,
    predicate: Callable[[Any], bool],
) -> Any:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        payload = _parse_json_payload(await _receive_with_deadline(ws, deadline))
        if payload is not None and predicate(payload):
            return payload


async def recv_frame(ws: ClientWebSocketResponse, frame_type: str, *, timeout: float = 2.0) -> dict:
    return await recv_json_until(ws, timeout=timeout, predicate=lambda p: p.get("type") == frame_type)


async def assert_no_app_messages(ws: ClientWebSocketResponse, *, timeout: float) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_with_deadline(ws, deadline)
        except asyncio.TimeoutError:
            return
        payload = _parse_json_payload(msg)
        if payload is None:
            continue
        raise AssertionError(f"Unexpected websocket message: {payload}")
