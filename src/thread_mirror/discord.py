"""Discord API client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import aiohttp

from .errors import TransportError
from .models import Attachment, ChannelInfo, InboundMessage, channel_kind_from_type
from .utils import parse_discord_timestamp

_API_BASE = "https://discord.com/api/v10"
_DEFAULT_USER_AGENT = "DiscordBot (https://github.com, 1.0)"
_REQUEST_TIMEOUT = 15

# Regular messages and replies; everything else (joins, pins, renames...) is system noise.
FORWARDABLE_MESSAGE_TYPES: frozenset[int] = frozenset({0, 19})

_NO_MENTIONS: dict[str, Any] = {"parse": []}


logger = logging.getLogger(__name__)


class ChatClient(Protocol):
    """Operations the mirroring core needs from the chat platform."""

    async def send_message(
        self,
        channel_id: int,
        content: str | None = None,
        *,
        embeds: Sequence[Mapping[str, Any]] | None = None,
    ) -> None: ...

    async def fetch_messages(
        self,
        channel_id: int,
        *,
        before: int | None = None,
        limit: int = 100,
    ) -> Sequence[InboundMessage]: ...

    async def fetch_channel_kind(self, channel_id: int) -> ChannelInfo: ...

    async def execute_webhook(
        self,
        url: str,
        *,
        username: str,
        avatar_url: str | None,
        content: str,
    ) -> None: ...


@dataclass(slots=True)
class TokenCheckResult:
    """Outcome of a Discord token validation attempt."""

    ok: bool
    user_id: int | None = None
    display_name: str | None = None
    error: str | None = None
    status: int | None = None


def normalize_bot_token(token: str) -> str:
    stripped = token.strip()
    if stripped.lower().startswith("bot "):
        return f"Bot {stripped[4:].strip()}"
    return f"Bot {stripped}"


def classify_status(status: int, *, webhook: bool = False) -> bool:
    """Return whether a failed response status is worth a fallback attempt."""

    if status == 429 or status >= 500:
        return True
    # A rejected webhook call leaves the bot's own send path usable.
    if webhook and 400 <= status < 500:
        return True
    return False


class DiscordClient:
    """Thin asynchronous wrapper around the Discord REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        *,
        user_agent: str | None = None,
    ):
        self._session = session
        self._token = normalize_bot_token(token)
        self._user_agent = user_agent or _DEFAULT_USER_AGENT

    async def send_message(
        self,
        channel_id: int,
        content: str | None = None,
        *,
        embeds: Sequence[Mapping[str, Any]] | None = None,
    ) -> None:
        payload: dict[str, Any] = {"allowed_mentions": _NO_MENTIONS}
        if content:
            payload["content"] = content
        if embeds:
            payload["embeds"] = [dict(embed) for embed in embeds]
        await self._request(
            "POST",
            f"{_API_BASE}/channels/{channel_id}/messages",
            json=payload,
            what=f"sending message to channel {channel_id}",
        )

    async def fetch_messages(
        self,
        channel_id: int,
        *,
        before: int | None = None,
        limit: int = 100,
    ) -> Sequence[InboundMessage]:
        params = {"limit": str(max(1, min(limit, 100)))}
        if before is not None:
            params["before"] = str(before)
        data = await self._request(
            "GET",
            f"{_API_BASE}/channels/{channel_id}/messages",
            params=params,
            what=f"fetching messages of channel {channel_id}",
        )
        if not isinstance(data, list):
            raise TransportError(
                f"Unexpected message list payload for channel {channel_id}",
                recoverable=True,
            )
        return [
            parse_message(item, channel_id) for item in data if isinstance(item, Mapping)
        ]

    async def fetch_channel_kind(self, channel_id: int) -> ChannelInfo:
        data = await self._request(
            "GET",
            f"{_API_BASE}/channels/{channel_id}",
            what=f"fetching channel {channel_id}",
        )
        if not isinstance(data, Mapping):
            raise TransportError(
                f"Unexpected channel payload for {channel_id}", recoverable=True
            )
        return parse_channel(data, channel_id)

    async def execute_webhook(
        self,
        url: str,
        *,
        username: str,
        avatar_url: str | None,
        content: str,
    ) -> None:
        payload: dict[str, Any] = {
            "content": content,
            # Discord rejects webhook names longer than 80 characters.
            "username": username[:80] or "Unknown",
            "allowed_mentions": _NO_MENTIONS,
        }
        if avatar_url:
            payload["avatar_url"] = avatar_url
        await self._request(
            "POST",
            url,
            params={"wait": "true"},
            json=payload,
            authorized=False,
            webhook=True,
            what="executing webhook",
        )

    async def verify_token(self) -> TokenCheckResult:
        try:
            payload = await self._request(
                "GET", f"{_API_BASE}/users/@me", what="verifying token"
            )
        except TransportError as exc:
            return TokenCheckResult(ok=False, error=str(exc), status=exc.status)
        if not isinstance(payload, Mapping):
            return TokenCheckResult(ok=False, error="Unexpected /users/@me payload")
        user_id_raw = str(payload.get("id") or "")
        return TokenCheckResult(
            ok=True,
            user_id=int(user_id_raw) if user_id_raw.isdigit() else None,
            display_name=str(payload.get("global_name") or payload.get("username") or ""),
            status=200,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        what: str,
        params: Mapping[str, str] | None = None,
        json: Mapping[str, Any] | None = None,
        authorized: bool = True,
        webhook: bool = False,
    ) -> Any:
        headers = {
            "User-Agent": self._user_agent,
            "Accept": "application/json",
        }
        if authorized:
            headers["Authorization"] = self._token
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=_REQUEST_TIMEOUT)
            async with self._session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                if status >= 400:
                    body = await resp.json(content_type=None) if _is_json(resp) else None
                    retry_after = _retry_after(resp, body)
                    detail = _error_detail(body)
                    logger.warning(
                        "Discord responded with status %s while %s%s",
                        status,
                        what,
                        f": {detail}" if detail else "",
                    )
                    raise TransportError(
                        f"Discord responded with status {status} while {what}",
                        recoverable=classify_status(status, webhook=webhook),
                        status=status,
                        retry_after=retry_after,
                    )
                if status == 204:
                    return None
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("Request failed while %s: %s", what, exc)
            raise TransportError(
                f"Request failed while {what}: {exc}", recoverable=True
            ) from exc


def _is_json(resp: aiohttp.ClientResponse) -> bool:
    return "json" in (resp.headers.get("Content-Type") or "")


def _retry_after(resp: aiohttp.ClientResponse, body: Any) -> float | None:
    if isinstance(body, Mapping) and body.get("retry_after") is not None:
        try:
            return float(body["retry_after"])
        except (TypeError, ValueError):
            pass
    header = resp.headers.get("Retry-After")
    try:
        return float(header) if header else None
    except ValueError:
        return None


def _error_detail(body: Any) -> str:
    if not isinstance(body, Mapping):
        return ""
    message = str(body.get("message") or "").strip()
    code = body.get("code")
    if message and code is not None:
        return f"{message} (code {code})"
    return message


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return default


def parse_message(payload: Mapping[str, Any], channel_id: int) -> InboundMessage:
    author = payload.get("author") or {}
    member = payload.get("member") or {}
    display_name = (
        str(member.get("nick") or "")
        or str(author.get("global_name") or "")
        or str(author.get("username") or "")
        or "Unknown"
    )
    attachments = tuple(
        Attachment(
            filename=str(item.get("filename") or ""),
            url=str(item.get("url") or item.get("proxy_url") or ""),
        )
        for item in payload.get("attachments") or []
        if isinstance(item, Mapping) and (item.get("url") or item.get("proxy_url"))
    )
    message_type = _as_int(payload.get("type"))
    automated = bool(author.get("bot")) or bool(payload.get("webhook_id"))

    return InboundMessage(
        id=_as_int(payload.get("id")),
        source_id=_as_int(payload.get("channel_id"), channel_id),
        author_id=_as_int(author.get("id")),
        author_display_name=display_name,
        author_avatar_ref=str(author.get("avatar")) if author.get("avatar") else None,
        body=str(payload.get("content") or ""),
        attachments=attachments,
        created_at=parse_discord_timestamp(payload.get("timestamp")),
        is_system_generated=message_type not in FORWARDABLE_MESSAGE_TYPES,
        is_automated_author=automated,
        message_type=message_type,
    )


def parse_channel(payload: Mapping[str, Any], channel_id: int) -> ChannelInfo:
    channel_type = _as_int(payload.get("type"))
    guild_raw = payload.get("guild_id")
    parent_raw = payload.get("parent_id")
    return ChannelInfo(
        id=_as_int(payload.get("id"), channel_id),
        type=channel_type,
        kind=channel_kind_from_type(channel_type),
        guild_id=_as_int(guild_raw) if guild_raw else None,
        name=str(payload.get("name")) if payload.get("name") else None,
        parent_id=_as_int(parent_raw) if parent_raw else None,
    )
