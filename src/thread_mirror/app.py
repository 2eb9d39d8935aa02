"""Application bootstrap for Thread Mirror."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import aiohttp

from .config import Settings
from .discord import DiscordClient
from .engine import ForwardingEngine
from .errors import TransportError
from .gateway import GatewayEventSource
from .registry import MappingRegistry

logger = logging.getLogger(__name__)


class ThreadMirrorApp:
    """High level coordinator tying together the gateway, REST client and engine."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._registry = MappingRegistry.from_mappings(settings.mappings)

    @property
    def registry(self) -> MappingRegistry:
        return self._registry

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            client = DiscordClient(session, self._settings.token)
            check = await client.verify_token()
            if not check.ok:
                raise TransportError(
                    f"Discord rejected the bot token: {check.error}",
                    recoverable=False,
                    status=check.status,
                )
            logger.info(
                "Logged in as %s, mirroring %d threads",
                check.display_name or check.user_id,
                len(self._registry),
            )
            for mapping in self._registry.all():
                logger.info(
                    "Mapping: thread %s -> channel %s",
                    mapping.source_id,
                    mapping.destination_id,
                )

            engine = ForwardingEngine(
                client, self._registry, options=self._settings.runtime
            )
            gateway = GatewayEventSource(session, _raw_token(self._settings.token))

            try:
                await self._supervise("gateway-events", lambda: engine.run(gateway))
            finally:
                await engine.drain()

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Task %s stopped", name)
                raise
            except TransportError as exc:
                if not exc.recoverable:
                    logger.error("Task %s failed permanently: %s", name, exc)
                    raise
                logger.exception("Task %s failed", name)
            except Exception:
                logger.exception("Task %s failed", name)
            else:
                logger.warning("Task %s finished unexpectedly, restarting", name)
            await asyncio.sleep(retry_delay)


def _raw_token(token: str) -> str:
    stripped = token.strip()
    if stripped.lower().startswith("bot "):
        return stripped[4:].strip()
    return stripped
