"""Discord gateway connection producing a stream of inbound messages."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, AsyncIterator, Mapping

import aiohttp

from .discord import parse_message
from .errors import TransportError
from .models import InboundMessage

logger = logging.getLogger(__name__)

GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"

INTENT_GUILDS = 1 << 0
INTENT_GUILD_MESSAGES = 1 << 9
INTENT_MESSAGE_CONTENT = 1 << 15
DEFAULT_INTENTS = INTENT_GUILDS | INTENT_GUILD_MESSAGES | INTENT_MESSAGE_CONTENT

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RESUME = 6
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

# Authentication failed, invalid shard, sharding required, bad API version, bad intents.
FATAL_CLOSE_CODES = frozenset({4004, 4010, 4011, 4012, 4013, 4014})
# Session can no longer be resumed after these.
_RESET_SESSION_CODES = frozenset({4007, 4009})

_RESUMABLE_CLOSE_CODE = 4000
_MAX_RECONNECT_DELAY = 60.0


class GatewayEventSource:
    """Yield ``MESSAGE_CREATE`` events as :class:`InboundMessage` objects.

    Reconnects (resuming the session when possible) until the consumer stops
    iterating. Close codes that cannot be fixed by reconnecting raise a fatal
    :class:`TransportError`.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        *,
        intents: int = DEFAULT_INTENTS,
        url: str = GATEWAY_URL,
        reconnect_delay: float = 1.0,
        invalid_session_delay: tuple[float, float] = (1.0, 5.0),
    ):
        self._session = session
        self._token = token
        self._intents = intents
        self._url = url
        self._reconnect_delay = reconnect_delay
        self._invalid_session_delay = invalid_session_delay
        self._sequence: int | None = None
        self._session_id: str | None = None
        self._resume_url: str | None = None
        self._heartbeat_acked = True
        self.user_id: int | None = None

    def __aiter__(self) -> AsyncIterator[InboundMessage]:
        return self.events()

    async def events(self) -> AsyncIterator[InboundMessage]:
        delay = self._reconnect_delay
        while True:
            try:
                async for message in self._connection_events():
                    delay = self._reconnect_delay
                    yield message
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("Gateway connection failed: %s", exc)
            logger.info("Reconnecting to the gateway in %.1fs", delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, _MAX_RECONNECT_DELAY)

    async def _connection_events(self) -> AsyncIterator[InboundMessage]:
        resuming = self._session_id is not None and self._resume_url is not None
        url = self._url
        if resuming and self._resume_url:
            url = f"{self._resume_url.rstrip('/')}/?v=10&encoding=json"
        heartbeat_task: asyncio.Task[None] | None = None
        async with self._session.ws_connect(url, heartbeat=None, max_msg_size=0) as ws:
            try:
                async for frame in ws:
                    if frame.type != aiohttp.WSMsgType.TEXT:
                        if frame.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.ERROR}:
                            break
                        continue
                    try:
                        data = json.loads(frame.data)
                    except ValueError as exc:
                        logger.warning("Gateway sent invalid JSON: %s", exc)
                        continue

                    op = data.get("op")
                    if data.get("s") is not None:
                        self._sequence = int(data["s"])

                    if op == OP_HELLO:
                        interval = float((data.get("d") or {}).get("heartbeat_interval", 41250))
                        if heartbeat_task is not None:
                            heartbeat_task.cancel()
                        self._heartbeat_acked = True
                        heartbeat_task = asyncio.create_task(
                            self._heartbeat(ws, interval / 1000), name="gateway-heartbeat"
                        )
                        if resuming:
                            await self._resume(ws)
                        else:
                            await self._identify(ws)
                    elif op == OP_HEARTBEAT_ACK:
                        self._heartbeat_acked = True
                    elif op == OP_HEARTBEAT:
                        await ws.send_json({"op": OP_HEARTBEAT, "d": self._sequence})
                    elif op == OP_RECONNECT:
                        logger.info("Gateway asked to reconnect")
                        # A 1000/1001 close ends the session; 4000 keeps it resumable.
                        await ws.close(code=_RESUMABLE_CLOSE_CODE, message=b"reconnect")
                        break
                    elif op == OP_INVALID_SESSION:
                        resumable = bool(data.get("d"))
                        if resumable:
                            await ws.close(code=_RESUMABLE_CLOSE_CODE, message=b"reconnect")
                        else:
                            self._reset_session()
                        logger.info(
                            "Gateway session invalidated (resumable: %s), reconnecting", resumable
                        )
                        await asyncio.sleep(random.uniform(*self._invalid_session_delay))
                        break
                    elif op == OP_DISPATCH:
                        message = self._handle_dispatch(data.get("t"), data.get("d"))
                        if message is not None:
                            yield message
            finally:
                if heartbeat_task is not None:
                    heartbeat_task.cancel()

        code = ws.close_code
        if code in FATAL_CLOSE_CODES:
            raise TransportError(
                f"Gateway closed the connection with code {code}",
                recoverable=False,
                status=code,
            )
        if code in _RESET_SESSION_CODES:
            self._reset_session()
        logger.info("Gateway connection closed (code %s)", code)

    def _handle_dispatch(self, event: str | None, payload: Any) -> InboundMessage | None:
        if not isinstance(payload, Mapping):
            return None
        if event == "READY":
            self._session_id = str(payload.get("session_id") or "") or None
            self._resume_url = str(payload.get("resume_gateway_url") or "") or None
            user = payload.get("user") or {}
            user_raw = str(user.get("id") or "")
            self.user_id = int(user_raw) if user_raw.isdigit() else None
            logger.info("Gateway ready as %s", user.get("username") or self.user_id)
            return None
        if event == "RESUMED":
            logger.info("Gateway session resumed")
            return None
        if event != "MESSAGE_CREATE":
            return None
        channel_raw = str(payload.get("channel_id") or "")
        if not channel_raw.isdigit():
            return None
        return parse_message(payload, int(channel_raw))

    async def _identify(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        await ws.send_json(
            {
                "op": OP_IDENTIFY,
                "d": {
                    "token": self._token,
                    "intents": self._intents,
                    "properties": {
                        "os": "linux",
                        "browser": "thread-mirror",
                        "device": "thread-mirror",
                    },
                },
            }
        )

    async def _resume(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        await ws.send_json(
            {
                "op": OP_RESUME,
                "d": {
                    "token": self._token,
                    "session_id": self._session_id,
                    "seq": self._sequence,
                },
            }
        )

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse, interval: float) -> None:
        await asyncio.sleep(interval * random.random())
        try:
            while not ws.closed:
                if not self._heartbeat_acked:
                    logger.warning("Gateway heartbeat not acknowledged, reconnecting")
                    await ws.close(code=_RESUMABLE_CLOSE_CODE, message=b"zombie")
                    return
                self._heartbeat_acked = False
                await ws.send_json({"op": OP_HEARTBEAT, "d": self._sequence})
                await asyncio.sleep(interval)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.debug("Heartbeat stopped: %s", exc)

    def _reset_session(self) -> None:
        self._session_id = None
        self._resume_url = None
        self._sequence = None
