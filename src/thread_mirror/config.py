"""Environment configuration: thread mappings and runtime settings."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Mapping as MappingType

from .errors import ConfigParseError, InvalidEndpoint
from .models import Mapping, RuntimeOptions
from .utils import parse_bool, parse_delay_setting, parse_int

logger = logging.getLogger(__name__)

MAPPING_PREFIX = "THREAD_MAPPING_"
BACKFILL_FLAG = "all"

_MAX_SNOWFLAKE = 2**64 - 1
_WEBHOOK_URL = re.compile(
    r"^https://(?:(?:ptb|canary)\.)?discord(?:app)?\.com"
    r"/api(?:/v\d+)?/webhooks/(?P<id>\d+)/(?P<token>[A-Za-z0-9_\-]+)/?$"
)


@dataclass(slots=True)
class Settings:
    token: str
    mappings: list[Mapping] = field(default_factory=list)
    runtime: RuntimeOptions = field(default_factory=RuntimeOptions)


def validate_webhook_url(url: str) -> str:
    """Return ``url`` stripped if it has the shape of a Discord webhook."""

    candidate = url.strip()
    if not _WEBHOOK_URL.match(candidate):
        raise InvalidEndpoint(candidate)
    return candidate.rstrip("/")


def parse_snowflake(value: str) -> int:
    stripped = value.strip()
    if not stripped.isdigit():
        raise ValueError(f"not a numeric identifier: {value!r}")
    parsed = int(stripped)
    if parsed == 0 or parsed > _MAX_SNOWFLAKE:
        raise ValueError(f"identifier out of range: {value!r}")
    return parsed


def parse_thread_mapping_entry(entry: str) -> Mapping:
    """Parse ``source_id:destination_id[:webhook_url][:all]``.

    The webhook URL carries its own colon after the scheme, so ``http`` and
    ``https`` tokens are glued back to the part that follows them. An
    endpoint that is not a Discord webhook is dropped with a warning and the
    mapping is kept without impersonation.
    """

    parts = entry.strip().split(":")
    if len(parts) < 2:
        raise ConfigParseError(entry, "expected source_id:destination_id")
    try:
        source_id = parse_snowflake(parts[0])
        destination_id = parse_snowflake(parts[1])
    except ValueError as exc:
        raise ConfigParseError(entry, str(exc)) from exc

    extras: list[str] = []
    rest = parts[2:]
    index = 0
    while index < len(rest):
        token = rest[index].strip()
        if token.lower() in {"http", "https"} and index + 1 < len(rest):
            extras.append(f"{token}:{rest[index + 1].strip()}")
            index += 2
            continue
        extras.append(token)
        index += 1

    if len(extras) > 2:
        raise ConfigParseError(entry, "too many fields")

    backfill_on_demand = False
    endpoint: str | None = None
    for token in extras:
        if token == BACKFILL_FLAG:
            backfill_on_demand = True
            continue
        if endpoint is not None:
            raise ConfigParseError(entry, "more than one webhook URL")
        try:
            endpoint = validate_webhook_url(token)
        except InvalidEndpoint:
            logger.warning(
                "Ignoring invalid webhook URL for thread %s, impersonation disabled",
                source_id,
            )
            endpoint = ""

    return Mapping(
        source_id=source_id,
        destination_id=destination_id,
        backfill_on_demand=backfill_on_demand,
        impersonation_endpoint=endpoint or None,
    )


def _mapping_key_order(key: str) -> tuple[int, str]:
    suffix = key[len(MAPPING_PREFIX):]
    return (int(suffix), key) if suffix.isdigit() else (0, key)


def load_thread_mappings(environ: MappingType[str, str]) -> list[Mapping]:
    """Collect every valid ``THREAD_MAPPING_*`` entry, skipping broken ones."""

    keys = sorted(
        (key for key in environ if key.startswith(MAPPING_PREFIX)),
        key=_mapping_key_order,
    )
    mappings: list[Mapping] = []
    for key in keys:
        value = environ[key]
        logger.debug("Parsing %s=%s", key, value)
        try:
            mapping = parse_thread_mapping_entry(value)
        except ConfigParseError as exc:
            logger.warning("Skipping %s: %s", key, exc)
            continue
        logger.info(
            "Mapping loaded: thread %s -> channel %s (backfill on demand: %s, webhook: %s)",
            mapping.source_id,
            mapping.destination_id,
            mapping.backfill_on_demand,
            "yes" if mapping.impersonation_endpoint else "no",
        )
        mappings.append(mapping)
    logger.info("Loaded %d thread mappings", len(mappings))
    return mappings


def load_runtime_options(environ: MappingType[str, str]) -> RuntimeOptions:
    defaults = RuntimeOptions()
    return RuntimeOptions(
        page_size=parse_int(
            environ.get("BACKFILL_PAGE_SIZE"), defaults.page_size, maximum=100
        ),
        pacing_delay=parse_delay_setting(
            environ.get("BACKFILL_DELAY"), defaults.pacing_delay
        ),
        timezone=(environ.get("MIRROR_TIMEZONE") or "").strip() or defaults.timezone,
        max_concurrency=parse_int(
            environ.get("MAX_CONCURRENCY"), defaults.max_concurrency
        ),
        rich_embeds=parse_bool(environ.get("RICH_EMBEDS"), defaults.rich_embeds),
    )


def load_settings(environ: MappingType[str, str]) -> Settings:
    token = (environ.get("DISCORD_TOKEN") or "").strip()
    if not token:
        raise ConfigParseError("DISCORD_TOKEN", "missing bot token")
    return Settings(
        token=token,
        mappings=load_thread_mappings(environ),
        runtime=load_runtime_options(environ),
    )
