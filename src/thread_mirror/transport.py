"""Deliver rendered payloads through an ordered chain of representations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from .discord import ChatClient
from .errors import TransportError
from .models import Mapping, RenderedPayload
from .rendering import build_embed, build_plain_text, build_webhook_content

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one :meth:`DispatchTransport.send` call."""

    ok: bool
    strategy: str | None = None
    error: TransportError | None = None
    attempts: tuple[str, ...] = ()


class DeliveryStrategy(Protocol):
    name: str

    def applies(self, mapping: Mapping, *, rich_embeds: bool) -> bool: ...

    async def deliver(
        self,
        client: ChatClient,
        mapping: Mapping,
        payload: RenderedPayload,
        *,
        limit: int,
    ) -> None: ...


class ImpersonationStrategy:
    """Post through the mapping's webhook under the author's name and avatar."""

    name = "webhook"

    def applies(self, mapping: Mapping, *, rich_embeds: bool) -> bool:
        return bool(mapping.impersonation_endpoint)

    async def deliver(
        self,
        client: ChatClient,
        mapping: Mapping,
        payload: RenderedPayload,
        *,
        limit: int,
    ) -> None:
        endpoint = mapping.impersonation_endpoint
        if not endpoint:
            raise TransportError("No webhook configured", recoverable=True)
        await client.execute_webhook(
            endpoint,
            username=payload.display_name,
            avatar_url=payload.avatar_ref,
            content=build_webhook_content(payload, limit=limit),
        )


class EmbedStrategy:
    name = "embed"

    def applies(self, mapping: Mapping, *, rich_embeds: bool) -> bool:
        # Always the first fallback behind a webhook; standalone only when enabled.
        return rich_embeds or bool(mapping.impersonation_endpoint)

    async def deliver(
        self,
        client: ChatClient,
        mapping: Mapping,
        payload: RenderedPayload,
        *,
        limit: int,
    ) -> None:
        await client.send_message(mapping.destination_id, embeds=[build_embed(payload)])


class PlainTextStrategy:
    name = "plain"

    def applies(self, mapping: Mapping, *, rich_embeds: bool) -> bool:
        return True

    async def deliver(
        self,
        client: ChatClient,
        mapping: Mapping,
        payload: RenderedPayload,
        *,
        limit: int,
    ) -> None:
        await client.send_message(
            mapping.destination_id, build_plain_text(payload, limit=limit)
        )


DEFAULT_STRATEGIES: tuple[DeliveryStrategy, ...] = (
    ImpersonationStrategy(),
    EmbedStrategy(),
    PlainTextStrategy(),
)


class DispatchTransport:
    """Send payloads to a mapping's destination, degrading on recoverable errors.

    Strategies are tried in order and the first success wins. A recoverable
    failure moves on to the next strategy; a fatal one ends the chain, since
    the platform rejected the request itself.
    """

    def __init__(
        self,
        client: ChatClient,
        *,
        rich_embeds: bool = False,
        max_content_length: int = 2000,
        strategies: Sequence[DeliveryStrategy] = DEFAULT_STRATEGIES,
    ):
        self._client = client
        self._rich_embeds = rich_embeds
        self._limit = max_content_length
        self._strategies = tuple(strategies)

    def strategies_for(self, mapping: Mapping) -> list[DeliveryStrategy]:
        return [
            strategy
            for strategy in self._strategies
            if strategy.applies(mapping, rich_embeds=self._rich_embeds)
        ]

    async def send(self, mapping: Mapping, payload: RenderedPayload) -> DispatchResult:
        attempts: list[str] = []
        last_error: TransportError | None = None
        for strategy in self.strategies_for(mapping):
            attempts.append(strategy.name)
            try:
                await strategy.deliver(self._client, mapping, payload, limit=self._limit)
            except TransportError as exc:
                last_error = exc
                if not exc.recoverable:
                    logger.warning(
                        "Fatal %s delivery error for thread %s -> channel %s: %s",
                        strategy.name,
                        mapping.source_id,
                        mapping.destination_id,
                        exc,
                    )
                    break
                logger.info(
                    "%s delivery to channel %s failed (%s), trying next representation",
                    strategy.name,
                    mapping.destination_id,
                    exc,
                )
                continue
            logger.debug(
                "Delivered message from %s to channel %s via %s",
                payload.display_name,
                mapping.destination_id,
                strategy.name,
            )
            return DispatchResult(ok=True, strategy=strategy.name, attempts=tuple(attempts))
        return DispatchResult(ok=False, error=last_error, attempts=tuple(attempts))

    async def notify(self, channel_id: int, text: str) -> bool:
        """Post a status notice; failures are logged and reported as ``False``."""

        try:
            await self._client.send_message(channel_id, text)
        except TransportError as exc:
            logger.warning("Could not post notice to channel %s: %s", channel_id, exc)
            return False
        return True
