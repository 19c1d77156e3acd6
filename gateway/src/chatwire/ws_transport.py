from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import WSMsgType, web

from .channel import ChatChannel, InvalidCommand
from .consent import ConsentError, ConsentGate, ConsentPolicy, InMemoryConsentStore, SQLiteConsentStore
from .conversations import InMemoryConversationStore, SQLiteConversationStore
from .hub import ConnectionHub
from .notifications import (
    MESSAGE_RECEIVED,
    PROFILE_VIEW,
    InMemoryNotificationStore,
    NotificationFanout,
    SQLiteNotificationStore,
)
from .sessions import DEFAULT_SESSION_TTL_MS, Session, SessionStore, SQLiteSessionStore
from .sqlite_backend import SQLiteBackend
from .users import InMemoryUserDirectory, SQLiteUserDirectory

logger = logging.getLogger(__name__)

CLOSE_GOING_AWAY = 1001
CLOSE_REPLACED = 4000
CLOSE_LOGGED_OUT = 4001
CLOSE_UNAUTHORIZED = 4401


class Runtime:
    def __init__(
        self,
        *,
        users,
        sessions,
        conversations,
        consent: ConsentGate,
        notifications: NotificationFanout,
        hub: ConnectionHub,
        channel: ChatChannel,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.conversations = conversations
        self.consent = consent
        self.notifications = notifications
        self.hub = hub
        self.channel = channel
        self.backend = backend


def build_runtime(
    *,
    db_path: str | None = None,
    consent_policy: ConsentPolicy | None = None,
    session_ttl_ms: int = DEFAULT_SESSION_TTL_MS,
) -> Runtime:
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        users = SQLiteUserDirectory(backend)
        sessions: Any = SQLiteSessionStore(backend, ttl_ms=session_ttl_ms)
        conversations: Any = SQLiteConversationStore(backend)
        consent_store: Any = SQLiteConsentStore(backend)
        notification_store: Any = SQLiteNotificationStore(backend)
    else:
        users = InMemoryUserDirectory()
        sessions = SessionStore(ttl_ms=session_ttl_ms)
        conversations = InMemoryConversationStore()
        consent_store = InMemoryConsentStore()
        notification_store = InMemoryNotificationStore()

    hub = ConnectionHub()
    consent = ConsentGate(consent_store, consent_policy)
    notifications = NotificationFanout(notification_store, users, hub.send_to_user)
    channel = ChatChannel(
        hub=hub,
        users=users,
        conversations=conversations,
        consent=consent,
        notifications=notifications,
    )
    return Runtime(
        users=users,
        sessions=sessions,
        conversations=conversations,
        consent=consent,
        notifications=notifications,
        hub=hub,
        channel=channel,
        backend=backend,
    )


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error("unauthorized", "invalid session_token", 401)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _authenticate_request(request: web.Request) -> Session | None:
    runtime: Runtime = request.app["runtime"]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get(session_token)


async def handle_session_start(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    user_id = body.get("user_id") if isinstance(body, dict) else None
    if not isinstance(user_id, str) or not user_id:
        return _invalid_request("user_id required")
    if runtime.users.get(user_id) is None:
        return _not_found("unknown user")
    session = runtime.sessions.create(user_id)
    return _with_no_store(
        web.json_response({"session_token": session.session_token, "expires_at": session.expires_at_ms})
    )


async def handle_session_logout(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    runtime.sessions.invalidate(session)
    connection = runtime.hub.get(session.user_id)
    if connection is not None:
        # The socket's own teardown broadcasts userOffline.
        await connection.close(CLOSE_LOGGED_OUT, "logged out")
    logger.info("user %s logged out", session.user_id)
    return web.json_response({"status": "ok"})


async def handle_consent_status(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    other_user_id = request.match_info["user_id"]
    status, consent = runtime.consent.permission(session.user_id, other_user_id)
    payload: dict[str, Any] = {"status": status, "allowed": status == "accepted"}
    if consent is not None:
        payload["consent"] = consent.to_wire()
        payload["role"] = "requester" if consent.requester_id == session.user_id else "responder"
    return _with_no_store(web.json_response(payload))


async def _handle_consent_decision(request: web.Request, accept: bool) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    consent_id = request.match_info["consent_id"]
    try:
        consent = runtime.channel.respond_to_consent(session.user_id, consent_id, accept)
    except PermissionError as exc:
        return _error("forbidden", str(exc), 403)
    except ConsentError as exc:
        return _error("conflict", str(exc), 409)
    except ValueError as exc:
        return _not_found(str(exc))
    return web.json_response({"consent": consent.to_wire()})


async def handle_consent_accept(request: web.Request) -> web.Response:
    return await _handle_consent_decision(request, True)


async def handle_consent_reject(request: web.Request) -> web.Response:
    return await _handle_consent_decision(request, False)


async def handle_notifications_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    items = []
    for notification in runtime.notifications.store.list_for_user(session.user_id):
        sender = runtime.users.get(notification.from_user_id)
        item = notification.to_wire()
        item["fromUser"] = sender.public() if sender else None
        items.append(item)
    return _with_no_store(web.json_response({"items": items}))


async def handle_notifications_unread_count(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    count = runtime.notifications.store.unread_count(session.user_id, PROFILE_VIEW)
    return _with_no_store(web.json_response({"count": count}))


async def handle_messages_unread_count(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    count = runtime.notifications.store.unread_count(session.user_id, MESSAGE_RECEIVED)
    return _with_no_store(web.json_response({"count": count}))


async def handle_notification_read(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    if not runtime.notifications.store.mark_read(request.match_info["notification_id"], session.user_id):
        return _not_found("unknown notification")
    return web.json_response({"status": "ok"})


async def handle_notifications_read_all(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    count = runtime.notifications.store.mark_all_read(session.user_id)
    return web.json_response({"status": "ok", "updated": count})


async def handle_notification_delete(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    if not runtime.notifications.store.delete(request.match_info["notification_id"], session.user_id):
        return _not_found("unknown notification")
    return web.json_response({"status": "ok"})


async def _handle_profile_event(request: web.Request, kind: str) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    target_id = request.match_info["user_id"]
    if target_id == session.user_id:
        return _invalid_request("cannot target your own profile")
    target = runtime.users.get(target_id)
    if target is None:
        return _not_found("unknown user")
    try:
        if kind == "view":
            runtime.notifications.profile_viewed(session.user_id, target_id)
        else:
            runtime.notifications.profile_liked(session.user_id, target_id)
    except Exception:
        # The profile request itself succeeds even when the notification cannot be recorded.
        logger.exception("failed to record profile %s notification for %s", kind, target_id)
    return web.json_response({"status": "ok", "user": target.public()})


async def handle_profile_view(request: web.Request) -> web.Response:
    return await _handle_profile_event(request, "view")


async def handle_profile_like(request: web.Request) -> web.Response:
    return await _handle_profile_event(request, "like")


async def handle_conversations_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    items = []
    for conversation in runtime.conversations.list_for_user(session.user_id):
        other = runtime.users.get(conversation.other_participant(session.user_id))
        last = runtime.conversations.list_messages(conversation.conversation_id, limit=1)
        item = conversation.to_wire()
        item["otherUser"] = other.public() if other else None
        item["lastMessage"] = last[0].to_wire() if last else None
        items.append(item)
    return _with_no_store(web.json_response({"items": items}))


async def handle_conversation_messages(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    limit_param = request.query.get("limit")
    limit: int | None = None
    if limit_param is not None:
        try:
            limit = int(limit_param)
        except ValueError:
            return _invalid_request("limit must be an integer")
    conversation = runtime.conversations.get(session.user_id, request.match_info["user_id"])
    if conversation is None:
        return _with_no_store(web.json_response({"conversation": None, "items": []}))
    messages = runtime.conversations.list_messages(conversation.conversation_id, limit=limit)
    return _with_no_store(
        web.json_response(
            {"conversation": conversation.to_wire(), "items": [message.to_wire() for message in messages]}
        )
    )


def create_app(
    *,
    ping_interval_s: float = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    outbound_queue_size: int = 1000,
    handshake_timeout_s: float = 10,
    db_path: str | None = None,
    consent_policy: ConsentPolicy | None = None,
    session_ttl_ms: int = DEFAULT_SESSION_TTL_MS,
    runtime: Runtime | None = None,
) -> web.Application:
    runtime = runtime or build_runtime(
        db_path=db_path,
        consent_policy=consent_policy,
        session_ttl_ms=session_ttl_ms,
    )
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
        "outbound_queue_size": outbound_queue_size,
        "handshake_timeout_s": handshake_timeout_s,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_post("/v1/session/logout", handle_session_logout)
    app.router.add_get("/v1/consent/{user_id}", handle_consent_status)
    app.router.add_post("/v1/consent/{consent_id}/accept", handle_consent_accept)
    app.router.add_post("/v1/consent/{consent_id}/reject", handle_consent_reject)
    app.router.add_get("/v1/notifications", handle_notifications_list)
    app.router.add_get("/v1/notifications/unread_count", handle_notifications_unread_count)
    app.router.add_post("/v1/notifications/read_all", handle_notifications_read_all)
    app.router.add_post("/v1/notifications/{notification_id}/read", handle_notification_read)
    app.router.add_delete("/v1/notifications/{notification_id}", handle_notification_delete)
    app.router.add_get("/v1/messages/unread_count", handle_messages_unread_count)
    app.router.add_post("/v1/profiles/{user_id}/view", handle_profile_view)
    app.router.add_post("/v1/profiles/{user_id}/like", handle_profile_like)
    app.router.add_get("/v1/conversations", handle_conversations_list)
    app.router.add_get("/v1/conversations/{user_id}/messages", handle_conversation_messages)
    app.router.add_get("/ws", websocket_handler)

    async def close_connections(_: web.Application) -> None:
        for user_id in runtime.hub.connected_user_ids():
            connection = runtime.hub.get(user_id)
            if connection is not None:
                await connection.close(CLOSE_GOING_AWAY, "server shutdown")

    app.on_shutdown.append(close_connections)

    backend = runtime.backend
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str) -> dict[str, Any]:
    return {"type": "error", "code": code, "message": message}


async def _authenticate_socket(
    ws: web.WebSocketResponse, runtime: Runtime, timeout_s: float
) -> Session | None:
    try:
        first_msg = await ws.receive(timeout=timeout_s)
    except asyncio.TimeoutError:
        await ws.close(code=CLOSE_UNAUTHORIZED, message=b"handshake timeout")
        return None
    if first_msg.type != WSMsgType.TEXT:
        await ws.close(code=1002, message=b"invalid handshake")
        return None
    try:
        payload = first_msg.json()
    except ValueError:
        await ws.close(code=1002, message=b"invalid json")
        return None

    if not isinstance(payload, dict) or payload.get("type") != "authenticate":
        await ws.send_json(_error_frame("invalid_request", "first frame must authenticate"))
        await ws.close(code=CLOSE_UNAUTHORIZED, message=b"authentication required")
        return None
    session_token = payload.get("sessionToken")
    session = runtime.sessions.get(session_token) if isinstance(session_token, str) else None
    if session is None or runtime.users.get(session.user_id) is None:
        await ws.send_json(_error_frame("unauthorized", "invalid session token"))
        await ws.close(code=CLOSE_UNAUTHORIZED, message=b"authentication required")
        return None
    return session


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    session = await _authenticate_socket(ws, runtime, ws_config["handshake_timeout_s"])
    if session is None:
        return ws
    user_id = session.user_id

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    closed = False

    async def close_with(code: int, message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=code, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue_frame(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("outbound queue full for %s; closing", user_id)
            asyncio.create_task(close_with(1011, "backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("writer for %s stopped: connection reset", user_id)

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    enqueue_frame({"type": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await close_with(CLOSE_GOING_AWAY, "heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    online_user_ids = sorted(set(runtime.users.online_user_ids()) | {user_id})
    enqueue_frame(
        {
            "type": "sessionReady",
            "userId": user_id,
            "sessionToken": session.session_token,
            "expiresAt": session.expires_at_ms,
            "onlineUserIds": online_user_ids,
        }
    )
    connection, replaced = runtime.hub.register(
        user_id, enqueue_frame, close_with
    )
    if replaced is not None:
        logger.info("user %s reconnected; closing previous connection", user_id)
        asyncio.create_task(replaced.close(CLOSE_REPLACED, "replaced"))
    else:
        runtime.channel.connected(user_id)

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                mark_activity()
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue_frame(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
                    enqueue_frame(_error_frame("invalid_request", "type required"))
                    continue

                frame_type = frame["type"]
                if frame_type == "pong":
                    continue
                if frame_type == "ping":
                    enqueue_frame({"type": "pong"})
                    continue
                try:
                    runtime.channel.handle(user_id, frame)
                except InvalidCommand as exc:
                    enqueue_frame(_error_frame("invalid_request", str(exc)))
                except PermissionError as exc:
                    enqueue_frame(_error_frame("forbidden", str(exc)))
                except ConsentError as exc:
                    enqueue_frame(_error_frame("conflict", str(exc)))
                except ValueError as exc:
                    enqueue_frame(_error_frame("not_found", str(exc)))
            elif msg.type == WSMsgType.ERROR:
                logger.warning("websocket error for %s: %s", user_id, ws.exception())
                break
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED}:
                break
            else:
                await close_with(1003, "unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        if runtime.hub.unregister(connection):
            runtime.channel.disconnected(user_id)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
