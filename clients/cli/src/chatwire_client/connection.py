from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Callable, Optional

import aiohttp

from . import bus as topics
from .bus import EventBus
from .config import ClientConfig
from .dispatcher import InboundDispatcher
from .events import FrameError, Ping, SessionReady, parse_frame
from .state import Scheduler, TimerHandle, loop_scheduler

logger = logging.getLogger(__name__)

CONNECTING = "connecting"
OPEN = "open"
CLOSED = "closed"
OFFLINE = "offline"

# Replaced by a newer connection, logged out, or rejected at the handshake.
NO_RECONNECT_CODES = frozenset({4000, 4001, 4401})


class ConnectionManager:
    """Owns the single socket of a client session.

    ``connect`` opens the socket and authenticates; an unexpected close while
    the session is active arms exactly one reconnect timer whose delay comes
    from the configured :class:`~chatwire_client.config.ReconnectPolicy`.
    ``logout`` cancels that timer and closes the socket.
    """

    def __init__(
        self,
        config: ClientConfig,
        dispatcher: InboundDispatcher,
        bus: EventBus,
        *,
        scheduler: Optional[Scheduler] = None,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self.bus = bus
        self._scheduler = scheduler or loop_scheduler
        self._session_factory = session_factory or aiohttp.ClientSession
        self._rand = rand
        self._state = CLOSED
        self._active = False
        self._attempt = 0
        self._reconnect_timer: Optional[TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.close_code: Optional[int] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == OPEN and self._ws is not None and not self._ws.closed

    @property
    def session_active(self) -> bool:
        return self._active

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    async def connect(self) -> None:
        if self._state in (CONNECTING, OPEN):
            return
        if not self._active:
            self._attempt = 0
        self._active = True
        self._cancel_reconnect()
        self._start()

    async def logout(self) -> None:
        self._active = False
        self._cancel_reconnect()
        task, self._task = self._task, None
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close(code=aiohttp.WSCloseCode.OK, message=b"logout")
        elif task is not None and not task.done():
            task.cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        self._ws = None
        if self._state != CLOSED:
            self._set_state(CLOSED)

    async def wait_closed(self) -> None:
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def send_frame(self, frame: dict[str, Any]) -> bool:
        ws = self._ws
        if self._state != OPEN or ws is None or ws.closed:
            logger.debug("dropping %s: connection not open", frame.get("type"))
            return False
        try:
            await ws.send_json(frame)
        except (ConnectionResetError, aiohttp.ClientError) as exc:
            logger.debug("dropping %s: %s", frame.get("type"), exc)
            return False
        return True

    def _start(self) -> None:
        self._set_state(CONNECTING)
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        close_code: Optional[int] = None
        try:
            async with self._session_factory() as session:
                async with session.ws_connect(self.config.url, heartbeat=self.config.heartbeat_s) as ws:
                    self._ws = ws
                    await ws.send_json({"type": "authenticate", "sessionToken": self.config.session_token})
                    while True:
                        timeout = None if self._state == OPEN else self.config.handshake_timeout_s
                        msg = await ws.receive(timeout=timeout)
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            await self._on_text(ws, msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.warning("websocket error: %s", ws.exception())
                        elif msg.type in (
                            aiohttp.WSMsgType.CLOSE,
                            aiohttp.WSMsgType.CLOSING,
                            aiohttp.WSMsgType.CLOSED,
                        ):
                            break
                    close_code = ws.close_code
        except asyncio.CancelledError:
            self._ws = None
            raise
        except asyncio.TimeoutError:
            logger.warning("no sessionReady within %.1fs", self.config.handshake_timeout_s)
        except (aiohttp.ClientError, OSError) as exc:
            logger.warning("connection to %s failed: %s", self.config.url, exc)
        self._ws = None
        self._on_closed(close_code)

    async def _on_text(self, ws: aiohttp.ClientWebSocketResponse, data: str) -> None:
        try:
            event = parse_frame(data)
        except FrameError as exc:
            logger.warning("dropping malformed frame: %s", exc)
            return
        if event is None:
            logger.debug("ignoring frame of unknown type")
            return
        if isinstance(event, SessionReady) and self._state == CONNECTING:
            self._attempt = 0
            self._set_state(OPEN)
        self.dispatcher.dispatch(event)
        if isinstance(event, Ping):
            await ws.send_json({"type": "pong"})

    def _on_closed(self, code: Optional[int]) -> None:
        self.close_code = code
        if not self._active:
            if self._state != CLOSED:
                self._set_state(CLOSED, code=code)
            return
        if code in NO_RECONNECT_CODES:
            logger.info("session ended by server (code %s)", code)
            self._active = False
            self._set_state(CLOSED, code=code)
            self.bus.publish(topics.SESSION_ENDED, {"code": code})
            return
        self._schedule_reconnect(code)

    def _schedule_reconnect(self, code: Optional[int]) -> None:
        self._cancel_reconnect()
        self._attempt += 1
        delay = self.config.reconnect.delay_for(self._attempt, self._rand)
        if delay is None:
            logger.warning("giving up after %d reconnect attempts", self._attempt - 1)
            self._active = False
            self._set_state(OFFLINE, code=code)
            return
        logger.info("connection closed (code %s); reconnecting in %.1fs", code, delay)
        self._reconnect_timer = self._scheduler(delay, self._fire_reconnect)
        self._set_state(CLOSED, code=code, reconnectIn=delay, attempt=self._attempt)

    def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        if not self._active or self._state in (CONNECTING, OPEN):
            return
        self._start()

    def _cancel_reconnect(self) -> None:
        timer, self._reconnect_timer = self._reconnect_timer, None
        if timer is not None:
            timer.cancel()

    def _set_state(self, state: str, **details: Any) -> None:
        self._state = state
        self.bus.publish(topics.CONNECTION_CHANGED, {"state": state, **details})
