"""Turn inbound Discord messages into payloads for the destination channel."""

from __future__ import annotations

from datetime import timezone, tzinfo
from typing import Any

from .models import InboundMessage, RenderedPayload
from .utils import as_local_time, snowflake_time

_CDN_BASE = "https://cdn.discordapp.com"
DEFAULT_AVATAR_COUNT = 6
TIMESTAMP_FORMAT = "%Y/%m/%d %H:%M:%S"

_MESSAGE_LIMIT = 2000
_EMBED_DESCRIPTION_LIMIT = 4096
_ELLIPSIS = "…"
_IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp")


def is_eligible(message: InboundMessage) -> bool:
    """Only human, non-system messages are mirrored."""

    return not message.is_automated_author and not message.is_system_generated


def avatar_url(author_id: int, avatar_hash: str | None) -> str:
    if avatar_hash:
        extension = "gif" if avatar_hash.startswith("a_") else "png"
        return f"{_CDN_BASE}/avatars/{author_id}/{avatar_hash}.{extension}"
    index = author_id % DEFAULT_AVATAR_COUNT
    return f"{_CDN_BASE}/embed/avatars/{index}.png"


def render(
    message: InboundMessage,
    *,
    impersonated: bool = False,
    backfill: bool = False,
    zone: tzinfo = timezone.utc,
) -> RenderedPayload:
    """Build the payload for ``message``.

    Without a webhook the destination cannot show the author as sender, so
    the name becomes a bold label inside the text. Historical replays and
    webhook posts carry the original time, since the copy is posted now.
    """

    display_name = message.author_display_name
    body = message.body
    if impersonated:
        body_text = body
    else:
        body_text = f"**{display_name}**: {body}"

    moment = message.created_at or (snowflake_time(message.id) if message.id else None)
    label: str | None = None
    if (backfill or impersonated) and moment is not None:
        label = as_local_time(moment, zone).strftime(TIMESTAMP_FORMAT)

    return RenderedPayload(
        display_name=display_name,
        avatar_ref=avatar_url(message.author_id, message.author_avatar_ref),
        body_text=body_text,
        content=body,
        attachment_links=tuple(attachment.url for attachment in message.attachments),
        rendered_timestamp_label=label,
        timestamp=moment,
    )


def build_plain_text(payload: RenderedPayload, *, limit: int = _MESSAGE_LIMIT) -> str:
    lines = [f"**{payload.display_name}**: {payload.content}"]
    return _with_trailer(lines, payload, limit)


def build_webhook_content(payload: RenderedPayload, *, limit: int = _MESSAGE_LIMIT) -> str:
    lines = [payload.body_text] if payload.body_text else []
    return _with_trailer(lines, payload, limit)


def build_embed(payload: RenderedPayload) -> dict[str, Any]:
    """Title-less card carrying author, text, time and attachments."""

    embed: dict[str, Any] = {
        "author": {"name": payload.display_name[:256]},
        "description": _truncate(payload.content, _EMBED_DESCRIPTION_LIMIT),
    }
    if payload.avatar_ref:
        embed["author"]["icon_url"] = payload.avatar_ref
    if payload.timestamp is not None:
        embed["timestamp"] = payload.timestamp.astimezone(timezone.utc).isoformat()
    if payload.rendered_timestamp_label:
        embed["footer"] = {"text": payload.rendered_timestamp_label}
    if payload.attachment_links:
        links = "\n".join(payload.attachment_links)
        embed["fields"] = [{"name": "Attachments", "value": _truncate(links, 1024)}]
        image = next(
            (link for link in payload.attachment_links if _looks_like_image(link)), None
        )
        if image:
            embed["image"] = {"url": image}
    return embed


def _with_trailer(lines: list[str], payload: RenderedPayload, limit: int) -> str:
    trailer: list[str] = []
    if payload.rendered_timestamp_label:
        trailer.append(f"🕒 {payload.rendered_timestamp_label}")
    trailer.extend(payload.attachment_links)
    head = "\n".join(lines)
    tail = "\n".join(trailer)
    if not tail:
        return _truncate(head, limit)
    if not head:
        return _truncate(tail, limit)
    # Links must survive truncation intact, so the text is cut first.
    room = limit - len(tail) - 1
    if room <= 0:
        return _truncate(tail, limit)
    return f"{_truncate(head, room)}\n{tail}"


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= len(_ELLIPSIS):
        return text[:limit]
    return text[: limit - len(_ELLIPSIS)].rstrip() + _ELLIPSIS


def _looks_like_image(url: str) -> bool:
    path = url.split("?", 1)[0].lower()
    return path.endswith(_IMAGE_SUFFIXES)
