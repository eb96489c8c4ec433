from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import WSMsgType, web

from .contacts import InMemoryContactGraph, SQLiteContactGraph
from .delivery import DeliveryCoordinator
from .errors import ChannelError, NotFoundError, RelayError, ValidationError
from .identity import InMemoryIdentityStore, SQLiteIdentityStore, normalize_username
from .log import MessageLog
from .registry import ConnectionRegistry
from .sqlite_backend import SQLiteBackend, _now_ms
from .sqlite_log import SQLiteMessageLog

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 50 * 1024 * 1024
OUTBOUND_QUEUE_SIZE = 1000


class Runtime:
    def __init__(
        self,
        *,
        identities,
        contacts,
        log,
        registry: ConnectionRegistry,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.identities = identities
        self.contacts = contacts
        self.log = log
        self.registry = registry
        self.backend = backend
        self.delivery = DeliveryCoordinator(identities=identities, log=log, registry=registry)


class WebSocketChannel:
    """Delivery channel over one websocket.

    Frames are queued and written by a single writer task, so ``push`` never
    waits on the socket. A full queue closes the socket.
    """

    def __init__(self, ws: web.WebSocketResponse, *, queue_size: int = OUTBOUND_QUEUE_SIZE) -> None:
        self._ws = ws
        self._outbound: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=queue_size)
        self._closing = False
        self._writer_task: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return not self._closing and not self._ws.closed

    def start(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer())

    def push(self, frame: dict[str, Any]) -> None:
        if not self.is_open:
            raise ChannelError("channel is closed")
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            self._closing = True
            asyncio.create_task(self._ws.close(code=1011, message=b"backpressure"))
            raise ChannelError("outbound queue full") from None

    async def close(self, *, code: int = 1000, message: bytes = b"") -> None:
        if self._closing:
            return
        self._closing = True
        await self._ws.close(code=code, message=message)

    async def stop(self) -> None:
        self._closing = True
        if self._writer_task is None:
            return
        self._writer_task.cancel()
        await asyncio.gather(self._writer_task, return_exceptions=True)
        self._writer_task = None

    async def _writer(self) -> None:
        try:
            while True:
                frame = await self._outbound.get()
                if frame is None:
                    break
                await self._ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except (ConnectionError, RuntimeError):
            logger.debug("websocket writer stopped", exc_info=True)


def _error_body(code: str, message: str) -> dict[str, Any]:
    return {"code": code, "message": message}


def _invalid_request(message: str) -> web.Response:
    return web.json_response(_error_body("invalid_request", message), status=400)


def _not_found(message: str) -> web.Response:
    return web.json_response(_error_body("not_found", message), status=404)


def _internal_error() -> web.Response:
    return web.json_response(_error_body("internal_error", "storage error"), status=500)


def _error_response(exc: RelayError, request: web.Request) -> web.Response:
    if isinstance(exc, ValidationError):
        return _invalid_request(str(exc))
    if isinstance(exc, NotFoundError):
        return _not_found(str(exc))
    # PersistenceError and anything unexpected: server fault, always logged.
    logger.error("%s %s failed", request.method, request.path, exc_info=exc)
    return _internal_error()


async def _read_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("malformed json") from None
    if not isinstance(body, dict):
        raise ValidationError("request body must be a json object")
    return body


async def handle_health(_: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "serverTime": _now_ms()})


async def handle_login(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await _read_body(request)
        user = runtime.identities.get_or_create(body.get("username"))
    except RelayError as exc:
        return _error_response(exc, request)
    return web.json_response(user.to_api_dict())


async def handle_contacts_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        username = normalize_username(request.match_info["username"])
        contacts = runtime.contacts.list(username)
    except RelayError as exc:
        return _error_response(exc, request)
    return web.json_response([contact.to_api_dict() for contact in contacts])


async def handle_contacts_add(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await _read_body(request)
        contact = runtime.contacts.add(body.get("username"), body.get("contactUsername"))
    except RelayError as exc:
        return _error_response(exc, request)
    return web.json_response(contact.to_api_dict())


async def handle_messages_history(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        messages = runtime.delivery.history(
            request.match_info["username"], request.match_info["contact_username"]
        )
    except RelayError as exc:
        return _error_response(exc, request)
    return web.json_response([message.to_api_dict() for message in messages])


async def handle_messages_send(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await _read_body(request)
        message = runtime.delivery.send(
            body.get("sender"),
            body.get("recipient"),
            text=body.get("text"),
            image=body.get("image"),
            timestamp=body.get("timestamp"),
        )
    except RelayError as exc:
        return _error_response(exc, request)
    return web.json_response(message.to_api_dict())


def create_app(
    *,
    db_path: str | None = None,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    ws_heartbeat_s: float | None = 30.0,
    registry: ConnectionRegistry | None = None,
) -> web.Application:
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        identities = SQLiteIdentityStore(backend)
        contacts = SQLiteContactGraph(backend, identities)
        log = SQLiteMessageLog(backend)
    else:
        identities = InMemoryIdentityStore()
        contacts = InMemoryContactGraph(identities)
        log = MessageLog()

    registry = registry if registry is not None else ConnectionRegistry()
    runtime = Runtime(
        identities=identities,
        contacts=contacts,
        log=log,
        registry=registry,
        backend=backend,
    )
    app = web.Application(client_max_size=max_body_bytes)
    app["runtime"] = runtime
    app["ws_config"] = {
        "heartbeat_s": ws_heartbeat_s,
        "max_msg_size": max_body_bytes,
    }
    app.router.add_get("/api/health", handle_health)
    app.router.add_post("/api/auth/login", handle_login)
    app.router.add_get("/api/contacts/{username}", handle_contacts_list)
    app.router.add_post("/api/contacts", handle_contacts_add)
    app.router.add_get("/api/messages/{username}/{contact_username}", handle_messages_history)
    app.router.add_post("/api/messages", handle_messages_send)
    app.router.add_get("/ws", websocket_handler)

    async def close_channels(_: web.Application) -> None:
        await registry.close_all()

    app.on_shutdown.append(close_channels)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str) -> dict[str, Any]:
    return {"type": "error", "code": code, "message": message}


def _handle_frame(runtime: Runtime, channel: WebSocketChannel, frame: Any) -> None:
    if not isinstance(frame, dict):
        channel.push(_error_frame("invalid_request", "frame must be a json object"))
        return

    frame_type = frame.get("type")
    if frame_type == "ping":
        channel.push({"type": "pong"})
        return
    if frame_type not in {"register", "unregister"}:
        channel.push(_error_frame("invalid_request", "unknown frame type"))
        return

    try:
        username = normalize_username(frame.get("username"))
    except ValidationError as exc:
        channel.push(_error_frame("invalid_request", str(exc)))
        return

    if frame_type == "register":
        runtime.registry.register(username, channel)
        channel.push({"type": "registered", "username": username})
    else:
        # Only detach a username bound to this channel; a newer connection keeps its entry.
        if runtime.registry.lookup(username) is channel:
            runtime.registry.unregister(username)
        channel.push({"type": "unregistered", "username": username})


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(heartbeat=ws_config["heartbeat_s"], max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)
    logger.info("websocket connection opened from %s", request.remote)

    channel = WebSocketChannel(ws)
    channel.start()
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    channel.push(_error_frame("invalid_request", "malformed json"))
                    continue
                _handle_frame(runtime, channel, frame)
            elif msg.type == WSMsgType.ERROR:
                logger.warning("websocket error: %s", ws.exception())
                break
            else:
                await channel.close(code=1003, message=b"unsupported frame type")
                break
    except ChannelError:
        logger.debug("websocket channel closed while replying")
    finally:
        runtime.registry.on_channel_closed(channel)
        await channel.stop()

    return ws
