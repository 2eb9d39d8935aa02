"""In-memory store of thread → channel mappings."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Iterable

from .errors import NotBound
from .models import Mapping

logger = logging.getLogger(__name__)


class MappingRegistry:
    """Hold active mappings keyed by source thread.

    Stored values are frozen and replaced as a whole, so a reader always sees
    either the old or the new mapping. Writers are serialized by a lock.
    """

    def __init__(self) -> None:
        self._mappings: dict[int, Mapping] = {}
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_mappings(cls, mappings: Iterable[Mapping]) -> "MappingRegistry":
        registry = cls()
        for mapping in mappings:
            previous = registry._mappings.get(mapping.source_id)
            if previous is not None:
                logger.warning(
                    "Duplicate mapping for thread %s: %s replaces %s",
                    mapping.source_id,
                    mapping.destination_id,
                    previous.destination_id,
                )
            registry._mappings[mapping.source_id] = mapping
        return registry

    def __len__(self) -> int:
        return len(self._mappings)

    def lookup(self, source_id: int) -> Mapping | None:
        return self._mappings.get(source_id)

    def all(self) -> list[Mapping]:
        return sorted(self._mappings.values(), key=lambda mapping: mapping.source_id)

    async def bind(
        self,
        source_id: int,
        destination_id: int,
        backfill_on_demand: bool = False,
    ) -> Mapping:
        async with self._write_lock:
            previous = self._mappings.get(source_id)
            endpoint = None
            if previous is not None and previous.destination_id == destination_id:
                # A webhook belongs to its channel, keep it only for the same target.
                endpoint = previous.impersonation_endpoint
            mapping = Mapping(
                source_id=source_id,
                destination_id=destination_id,
                backfill_on_demand=backfill_on_demand,
                impersonation_endpoint=endpoint,
            )
            self._mappings[source_id] = mapping
        logger.info(
            "Mapping bound: thread %s -> channel %s (backfill on demand: %s)",
            source_id,
            destination_id,
            backfill_on_demand,
        )
        return mapping

    async def set_transport(self, source_id: int, endpoint: str) -> Mapping:
        async with self._write_lock:
            previous = self._mappings.get(source_id)
            if previous is None:
                raise NotBound(source_id)
            mapping = dataclasses.replace(previous, impersonation_endpoint=endpoint)
            self._mappings[source_id] = mapping
        logger.info("Webhook transport set for thread %s", source_id)
        return mapping
