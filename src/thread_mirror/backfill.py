"""Replay a thread's full history into its destination channel."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable

from .discord import ChatClient
from .errors import BackfillError, TransportError
from .models import BackfillJob, BackfillSummary, InboundMessage, Mapping, RuntimeOptions
from .rendering import is_eligible, render
from .transport import DispatchTransport

logger = logging.getLogger(__name__)

_PROGRESS_LOG_EVERY = 25

Sleep = Callable[[float], Awaitable[None]]


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class BackfillCoordinator:
    """Fetch, order and re-post the history of one source thread at a time.

    Callers must make sure that no two jobs run for the same thread; see
    :class:`~thread_mirror.utils.SingleFlight`.
    """

    def __init__(
        self,
        client: ChatClient,
        transport: DispatchTransport,
        *,
        options: RuntimeOptions | None = None,
        zone: tzinfo = timezone.utc,
        sleep: Sleep = asyncio.sleep,
    ):
        self._client = client
        self._transport = transport
        self._options = options or RuntimeOptions()
        self._zone = zone
        self._sleep = sleep
        self._jobs: dict[int, BackfillJob] = {}

    def active_jobs(self) -> list[BackfillJob]:
        """Snapshot of running jobs for status reporting."""

        return [dataclasses.replace(job) for job in self._jobs.values()]

    async def run(self, mapping: Mapping, *, trigger_id: int | None = None) -> BackfillSummary:
        """Replay every message posted before ``trigger_id`` oldest-first.

        Raises :class:`BackfillError` when the history cannot be fetched; the
        destination is told about it before the error propagates. Individual
        send failures are logged and skipped.
        """

        job = BackfillJob(
            source_id=mapping.source_id,
            destination_id=mapping.destination_id,
            started_at=datetime.now(timezone.utc),
        )
        self._jobs[mapping.source_id] = job
        started = time.monotonic()
        try:
            logger.info(
                "Backfill started: thread %s -> channel %s",
                mapping.source_id,
                mapping.destination_id,
            )
            await self._transport.notify(
                mapping.destination_id,
                "🔄 Fetching every message in this thread to transfer it here...",
            )

            try:
                history = await self._fetch_history(job)
            except TransportError as exc:
                logger.error(
                    "Backfill of thread %s aborted, history fetch failed: %s",
                    mapping.source_id,
                    exc,
                )
                await self._transport.notify(
                    mapping.destination_id, f"❌ Failed to fetch message history: {exc}"
                )
                raise BackfillError(mapping.source_id, exc) from exc

            eligible = [
                message
                for message in history
                if is_eligible(message) and (trigger_id is None or message.id < trigger_id)
            ]
            job.total_known = len(eligible)
            logger.info(
                "Fetched %d messages from thread %s, %d eligible",
                len(history),
                mapping.source_id,
                len(eligible),
            )
            await self._transport.notify(
                mapping.destination_id,
                f"ℹ️ {_plural(len(eligible), 'message')} will be transferred from this thread",
            )

            await self._replay(mapping, job, eligible)

            completion = f"✅ Transfer completed: {_plural(job.transferred_count, 'message')}"
            if job.failed_count:
                completion += f" ({job.failed_count} failed)"
            await self._transport.notify(mapping.destination_id, completion)

            summary = BackfillSummary(
                source_id=mapping.source_id,
                destination_id=mapping.destination_id,
                fetched=len(history),
                eligible=len(eligible),
                transferred=job.transferred_count,
                failed=job.failed_count,
                elapsed_seconds=time.monotonic() - started,
            )
            logger.info(
                "Backfill finished: thread %s -> channel %s, %d transferred, %d failed in %.1fs",
                summary.source_id,
                summary.destination_id,
                summary.transferred,
                summary.failed,
                summary.elapsed_seconds,
            )
            return summary
        finally:
            self._jobs.pop(mapping.source_id, None)

    async def _fetch_history(self, job: BackfillJob) -> list[InboundMessage]:
        page_size = max(1, min(self._options.page_size, 100))
        collected: dict[int, InboundMessage] = {}
        while True:
            page = await self._client.fetch_messages(
                job.source_id, before=job.cursor, limit=page_size
            )
            if not page:
                break
            for message in page:
                collected.setdefault(message.id, message)
            oldest = min(message.id for message in page)
            logger.debug(
                "Fetched page of %d messages from thread %s before %s",
                len(page),
                job.source_id,
                job.cursor,
            )
            if job.cursor is not None and oldest >= job.cursor:
                logger.warning(
                    "Pagination of thread %s did not advance past %s, stopping",
                    job.source_id,
                    job.cursor,
                )
                break
            job.cursor = oldest
            if len(page) < page_size:
                break
        # Pages arrive newest-first; snowflakes sort in creation order.
        return sorted(collected.values(), key=lambda message: message.id)

    async def _replay(
        self, mapping: Mapping, job: BackfillJob, messages: list[InboundMessage]
    ) -> None:
        impersonated = bool(mapping.impersonation_endpoint)
        for position, message in enumerate(messages, start=1):
            payload = render(
                message, impersonated=impersonated, backfill=True, zone=self._zone
            )
            result = await self._transport.send(mapping, payload)
            if not result.ok:
                job.failed_count += 1
                logger.error(
                    "Skipping message %s of thread %s: %s",
                    message.id,
                    mapping.source_id,
                    result.error,
                )
                error = result.error
                if error is not None and error.status == 429:
                    delay = max(self._options.pacing_delay, error.retry_after or 0.0)
                    logger.warning(
                        "Rate limited during backfill of thread %s, waiting %.2fs",
                        mapping.source_id,
                        delay,
                    )
                    await self._sleep(delay)
                continue
            job.transferred_count += 1
            if position % _PROGRESS_LOG_EVERY == 0:
                logger.info(
                    "Backfill of thread %s: %d/%d messages processed",
                    mapping.source_id,
                    position,
                    len(messages),
                )
            await self._sleep(self._options.pacing_delay)
