"""Classify inbound messages and route them to forwarding or backfill."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import AsyncIterable, Awaitable, Callable

from .backfill import BackfillCoordinator
from .config import BACKFILL_FLAG, parse_snowflake, validate_webhook_url
from .discord import ChatClient
from .errors import AlreadyRunning, BackfillError, InvalidEndpoint, NotBound, TransportError
from .models import ChannelKind, InboundMessage, Mapping, RuntimeOptions
from .registry import MappingRegistry
from .rendering import render
from .transport import DispatchTransport
from .utils import SingleFlight, resolve_timezone

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    IGNORED = "ignored"
    COMPLETED = "completed"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"


@dataclass(frozen=True, slots=True)
class Command:
    name: str
    args: str


def parse_command(body: str) -> Command | None:
    text = body.strip()
    if not text.startswith("!") or len(text) < 2:
        return None
    # Names are case-sensitive: "!ALL" is an ordinary message.
    name, _, args = text[1:].partition(" ")
    return Command(name=name, args=args.strip())


CommandHandler = Callable[[InboundMessage, Command], Awaitable[Outcome]]

# Handled before the mapping lookup: binding has to work in unmapped threads.
_RUNTIME_COMMANDS = frozenset({"thread2channel", "set_webhook"})
_BACKFILL_COMMAND = "all"
_AUTO_BACKFILL_COMMAND = "start"


class ForwardingEngine:
    """Route every inbound message of a mapped thread to its destination."""

    def __init__(
        self,
        client: ChatClient,
        registry: MappingRegistry,
        *,
        options: RuntimeOptions | None = None,
        transport: DispatchTransport | None = None,
        coordinator: BackfillCoordinator | None = None,
    ):
        self._options = options or RuntimeOptions()
        self._client = client
        self._registry = registry
        self._zone = resolve_timezone(self._options.timezone)
        self._transport = transport or DispatchTransport(
            client,
            rich_embeds=self._options.rich_embeds,
            max_content_length=self._options.max_content_length,
        )
        self._backfill = coordinator or BackfillCoordinator(
            client, self._transport, options=self._options, zone=self._zone
        )
        self._single_flight = SingleFlight()
        self._max_tasks = max(1, self._options.max_concurrency)
        self._slots = asyncio.Semaphore(self._max_tasks)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def registry(self) -> MappingRegistry:
        return self._registry

    async def run(self, events: AsyncIterable[InboundMessage]) -> None:
        """Consume ``events`` forever, handling each one in its own task."""

        async for message in events:
            while len(self._tasks) >= self._max_tasks:
                await asyncio.wait(set(self._tasks), return_when=asyncio.FIRST_COMPLETED)
            task = asyncio.create_task(
                self._process(message), name=f"mirror-{message.source_id}-{message.id}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for all in-flight message tasks."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process(self, message: InboundMessage) -> None:
        async with self._slots:
            try:
                outcome = await self.handle(message)
                logger.debug(
                    "Message %s in %s: %s", message.id, message.source_id, outcome.value
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Unexpected error while handling message %s in %s",
                    message.id,
                    message.source_id,
                )

    async def handle(self, message: InboundMessage) -> Outcome:
        if message.is_automated_author:
            # Our own webhook and bot posts come back through the gateway.
            return Outcome.IGNORED

        command = parse_command(message.body)
        if command is not None and command.name in _RUNTIME_COMMANDS:
            handler: CommandHandler = getattr(self, f"cmd_{command.name}")
            return await handler(message, command)

        mapping = self._registry.lookup(message.source_id)
        if mapping is None:
            return Outcome.IGNORED

        if command is not None and not command.args:
            if command.name == _BACKFILL_COMMAND or (
                command.name == _AUTO_BACKFILL_COMMAND and mapping.backfill_on_demand
            ):
                logger.info(
                    "Backfill requested with !%s in thread %s", command.name, message.source_id
                )
                return await self._run_backfill(mapping, message)

        if message.is_system_generated:
            return Outcome.IGNORED
        return await self._forward(mapping, message)

    async def _forward(self, mapping: Mapping, message: InboundMessage) -> Outcome:
        payload = render(
            message,
            impersonated=bool(mapping.impersonation_endpoint),
            zone=self._zone,
        )
        result = await self._transport.send(mapping, payload)
        if result.ok:
            logger.info(
                "Forwarded message %s: thread %s -> channel %s (%s)",
                message.id,
                mapping.source_id,
                mapping.destination_id,
                result.strategy,
            )
            return Outcome.COMPLETED
        logger.warning(
            "Dropped message %s from thread %s after trying %s: %s",
            message.id,
            mapping.source_id,
            ", ".join(result.attempts) or "nothing",
            result.error,
        )
        return Outcome.FAILED

    async def _run_backfill(self, mapping: Mapping, message: InboundMessage) -> Outcome:
        try:
            with self._single_flight.hold(mapping.source_id):
                # Re-read under the slot so a webhook set meanwhile is used.
                current = self._registry.lookup(mapping.source_id) or mapping
                await self._backfill.run(current, trigger_id=message.id)
        except AlreadyRunning:
            job = next(
                (
                    running
                    for running in self._backfill.active_jobs()
                    if running.source_id == mapping.source_id
                ),
                None,
            )
            progress = ""
            if job is not None and job.total_known is not None:
                progress = f" ({job.transferred_count}/{job.total_known} messages sent)"
            logger.info(
                "Backfill of thread %s already running%s", mapping.source_id, progress
            )
            await self._reply(
                message,
                f"⏳ A transfer for this thread is already running{progress}, please wait.",
            )
            return Outcome.ALREADY_RUNNING
        except BackfillError as exc:
            logger.warning("%s", exc)
            return Outcome.FAILED
        return Outcome.COMPLETED

    async def cmd_thread2channel(self, message: InboundMessage, command: Command) -> Outcome:
        parts = command.args.split()
        flags = [part.lower() for part in parts[1:]]
        if not parts or any(flag != BACKFILL_FLAG for flag in flags):
            await self._reply(message, "ℹ️ Usage: `!thread2channel <channel_id> [all]`")
            return Outcome.FAILED
        try:
            destination_id = parse_snowflake(parts[0])
        except ValueError:
            await self._reply(message, f"❌ `{parts[0]}` is not a channel ID.")
            return Outcome.FAILED

        try:
            source = await self._client.fetch_channel_kind(message.source_id)
            destination = await self._client.fetch_channel_kind(destination_id)
        except TransportError as exc:
            logger.warning(
                "Could not inspect channels for binding %s -> %s: %s",
                message.source_id,
                destination_id,
                exc,
            )
            await self._reply(message, f"❌ Could not look up channel <#{destination_id}>.")
            return Outcome.FAILED
        if source.kind is not ChannelKind.THREAD:
            await self._reply(message, "❌ This command only works inside a thread.")
            return Outcome.FAILED
        if not destination.kind.accepts_messages:
            await self._reply(
                message, f"❌ <#{destination_id}> cannot receive messages."
            )
            return Outcome.FAILED

        mapping = await self._registry.bind(
            message.source_id, destination_id, backfill_on_demand=bool(flags)
        )
        reply = f"✅ Messages from this thread will be forwarded to <#{destination_id}>."
        if mapping.backfill_on_demand:
            reply += " Send `!start` to transfer the existing history."
        await self._reply(message, reply)
        return Outcome.COMPLETED

    async def cmd_set_webhook(self, message: InboundMessage, command: Command) -> Outcome:
        if not command.args:
            await self._reply(message, "ℹ️ Usage: `!set_webhook <webhook_url>`")
            return Outcome.FAILED
        try:
            endpoint = validate_webhook_url(command.args)
            await self._registry.set_transport(message.source_id, endpoint)
        except InvalidEndpoint:
            await self._reply(message, "❌ That does not look like a Discord webhook URL.")
            return Outcome.FAILED
        except NotBound:
            await self._reply(
                message,
                "❌ This thread is not forwarded anywhere yet, "
                "use `!thread2channel <channel_id>` first.",
            )
            return Outcome.FAILED
        await self._reply(message, "✅ Webhook set, messages will keep their authors' names.")
        return Outcome.COMPLETED

    async def _reply(self, message: InboundMessage, text: str) -> None:
        await self._transport.notify(message.source_id, text)
