"""Data models used across the mirroring service."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class Mapping:
    """Forwarding policy for a single source thread."""

    source_id: int
    destination_id: int
    backfill_on_demand: bool = False
    impersonation_endpoint: str | None = None


@dataclass(frozen=True, slots=True)
class Attachment:
    filename: str
    url: str


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """Subset of the Discord message payload used by the engine."""

    id: int
    source_id: int
    author_id: int
    author_display_name: str
    author_avatar_ref: str | None
    body: str
    attachments: tuple[Attachment, ...] = ()
    created_at: datetime | None = None
    is_system_generated: bool = False
    is_automated_author: bool = False
    message_type: int = 0


@dataclass(frozen=True, slots=True)
class RenderedPayload:
    """Transport-agnostic representation of a message ready to send."""

    display_name: str
    avatar_ref: str | None
    body_text: str
    content: str
    attachment_links: tuple[str, ...] = ()
    rendered_timestamp_label: str | None = None
    timestamp: datetime | None = None


@dataclass(slots=True)
class BackfillJob:
    """Mutable progress of one running history replay."""

    source_id: int
    destination_id: int
    started_at: datetime
    total_known: int | None = None
    transferred_count: int = 0
    failed_count: int = 0
    cursor: int | None = None


@dataclass(frozen=True, slots=True)
class BackfillSummary:
    source_id: int
    destination_id: int
    fetched: int
    eligible: int
    transferred: int
    failed: int
    elapsed_seconds: float


class ChannelKind(enum.Enum):
    TEXT = "text"
    THREAD = "thread"
    VOICE = "voice"
    CATEGORY = "category"
    FORUM = "forum"
    OTHER = "other"

    @property
    def accepts_messages(self) -> bool:
        return self in {ChannelKind.TEXT, ChannelKind.THREAD, ChannelKind.VOICE}


_CHANNEL_KINDS: dict[int, ChannelKind] = {
    0: ChannelKind.TEXT,
    2: ChannelKind.VOICE,
    4: ChannelKind.CATEGORY,
    5: ChannelKind.TEXT,
    10: ChannelKind.THREAD,
    11: ChannelKind.THREAD,
    12: ChannelKind.THREAD,
    13: ChannelKind.VOICE,
    15: ChannelKind.FORUM,
    16: ChannelKind.FORUM,
}


def channel_kind_from_type(channel_type: int) -> ChannelKind:
    return _CHANNEL_KINDS.get(channel_type, ChannelKind.OTHER)


@dataclass(frozen=True, slots=True)
class ChannelInfo:
    """Basic channel metadata from Discord API."""

    id: int
    type: int
    kind: ChannelKind
    guild_id: int | None = None
    name: str | None = None
    parent_id: int | None = None


@dataclass(slots=True)
class RuntimeOptions:
    """Tunable behaviour of the engine and the backfill replay."""

    page_size: int = 100
    pacing_delay: float = 0.5
    timezone: str = "Asia/Tokyo"
    max_concurrency: int = 16
    rich_embeds: bool = False
    max_content_length: int = 2000
