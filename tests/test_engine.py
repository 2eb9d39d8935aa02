from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Mapping as MappingType, Sequence

from thread_mirror.engine import ForwardingEngine, Outcome, parse_command
from thread_mirror.errors import TransportError
from thread_mirror.models import (
    ChannelInfo,
    ChannelKind,
    InboundMessage,
    Mapping,
    RuntimeOptions,
)
from thread_mirror.registry import MappingRegistry

WEBHOOK = "https://discord.com/api/webhooks/1/token"


def make_message(
    message_id: int,
    body: str = "hi",
    *,
    source_id: int = 111,
    **extra: Any,
) -> InboundMessage:
    return InboundMessage(
        id=message_id,
        source_id=source_id,
        author_id=42,
        author_display_name="Ann",
        author_avatar_ref=None,
        body=body,
        **extra,
    )


class DummyDiscordClient:
    def __init__(self) -> None:
        self.sent: list[tuple[int, str | None]] = []
        self.webhooks: list[dict[str, Any]] = []
        self.history: list[InboundMessage] = []
        self.channels: dict[int, ChannelInfo] = {}
        self.fetch_gate: asyncio.Event | None = None
        self.fetch_started = 0
        self.send_gate: asyncio.Event | None = None
        self.in_flight = 0
        self.peak_in_flight = 0

    async def send_message(
        self,
        channel_id: int,
        content: str | None = None,
        *,
        embeds: Sequence[MappingType[str, Any]] | None = None,
    ) -> None:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.send_gate is not None and (content or "").startswith("**"):
                await self.send_gate.wait()
            self.sent.append((channel_id, content))
        finally:
            self.in_flight -= 1

    async def execute_webhook(
        self, url: str, *, username: str, avatar_url: str | None, content: str
    ) -> None:
        self.webhooks.append({"url": url, "username": username, "content": content})

    async def fetch_messages(
        self, channel_id: int, *, before: int | None = None, limit: int = 100
    ) -> list[InboundMessage]:
        self.fetch_started += 1
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        older = [m for m in self.history if before is None or m.id < before]
        return sorted(older, key=lambda message: message.id, reverse=True)[:limit]

    async def fetch_channel_kind(self, channel_id: int) -> ChannelInfo:
        try:
            return self.channels[channel_id]
        except KeyError:
            raise TransportError("unknown channel", recoverable=False, status=404) from None

    def texts_to(self, channel_id: int) -> list[str]:
        return [content or "" for channel, content in self.sent if channel == channel_id]


def _engine(
    client: DummyDiscordClient, *mappings: Mapping, **options: Any
) -> ForwardingEngine:
    runtime = RuntimeOptions(pacing_delay=0.0, timezone="UTC", **options)
    return ForwardingEngine(client, MappingRegistry.from_mappings(mappings), options=runtime)


def test_parse_command() -> None:
    upper = parse_command("!ALL")
    assert upper is not None
    assert upper.name == "ALL"
    command = parse_command("  !thread2channel 222 all ")
    assert command is not None
    assert command.name == "thread2channel"
    assert command.args == "222 all"
    assert parse_command("hello") is None
    assert parse_command("!") is None


def test_ordinary_message_is_forwarded_as_labeled_text() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222))

    outcome = asyncio.run(engine.handle(make_message(1)))

    assert outcome is Outcome.COMPLETED
    assert client.sent == [(222, "**Ann**: hi")]


def test_impersonated_message_goes_through_webhook() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222, impersonation_endpoint=WEBHOOK))

    outcome = asyncio.run(engine.handle(make_message(1)))

    assert outcome is Outcome.COMPLETED
    assert client.sent == []
    assert client.webhooks[0]["username"] == "Ann"
    assert client.webhooks[0]["content"].startswith("hi\n🕒 ")


def test_automated_authors_never_cause_sends() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222, backfill_on_demand=True))

    async def scenario() -> list[Outcome]:
        return [
            await engine.handle(make_message(1, is_automated_author=True)),
            await engine.handle(make_message(2, "!all", is_automated_author=True)),
            await engine.handle(
                make_message(3, "!thread2channel 333", is_automated_author=True)
            ),
        ]

    assert asyncio.run(scenario()) == [Outcome.IGNORED] * 3
    assert client.sent == []
    assert client.webhooks == []


def test_unmapped_and_system_messages_are_ignored() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222))

    async def scenario() -> list[Outcome]:
        return [
            await engine.handle(make_message(1, source_id=999)),
            await engine.handle(make_message(2, "!all", source_id=999)),
            await engine.handle(make_message(3, "", is_system_generated=True, message_type=7)),
        ]

    assert asyncio.run(scenario()) == [Outcome.IGNORED] * 3
    assert client.sent == []


def test_start_without_flag_is_forwarded_as_text() -> None:
    client = DummyDiscordClient()
    client.history = [make_message(1)]
    engine = _engine(client, Mapping(111, 222))

    outcome = asyncio.run(engine.handle(make_message(5, "!start")))

    assert outcome is Outcome.COMPLETED
    assert client.sent == [(222, "**Ann**: !start")]
    assert client.fetch_started == 0


def test_all_runs_backfill_of_earlier_messages() -> None:
    client = DummyDiscordClient()
    client.history = [make_message(1, "a"), make_message(2, "b"), make_message(3, "c")]
    engine = _engine(client, Mapping(111, 222))

    outcome = asyncio.run(engine.handle(make_message(4, "!all")))

    assert outcome is Outcome.COMPLETED
    texts = client.texts_to(222)
    assert texts[1] == "ℹ️ 3 messages will be transferred from this thread"
    assert [text.splitlines()[0] for text in texts[2:5]] == [
        "**Ann**: a",
        "**Ann**: b",
        "**Ann**: c",
    ]
    assert texts[-1] == "✅ Transfer completed: 3 messages"


def test_start_runs_backfill_when_enabled() -> None:
    client = DummyDiscordClient()
    client.history = [make_message(1, "a")]
    engine = _engine(client, Mapping(111, 222, backfill_on_demand=True))

    outcome = asyncio.run(engine.handle(make_message(2, "!start")))

    assert outcome is Outcome.COMPLETED
    assert client.texts_to(222)[-1] == "✅ Transfer completed: 1 message"


def test_concurrent_backfills_are_rejected() -> None:
    client = DummyDiscordClient()
    client.history = [make_message(1, "a")]
    client.fetch_gate = asyncio.Event()
    engine = _engine(client, Mapping(111, 222))

    async def scenario() -> tuple[Outcome, Outcome]:
        first = asyncio.create_task(engine.handle(make_message(10, "!all")))
        while client.fetch_started == 0:
            await asyncio.sleep(0)
        second = await engine.handle(make_message(11, "!all"))
        assert client.fetch_gate is not None
        client.fetch_gate.set()
        return await first, second

    first, second = asyncio.run(scenario())

    assert first is Outcome.COMPLETED
    assert second is Outcome.ALREADY_RUNNING
    assert client.fetch_started == 1
    assert client.texts_to(111) == [
        "⏳ A transfer for this thread is already running, please wait."
    ]
    assert client.texts_to(222).count("✅ Transfer completed: 1 message") == 1


def test_uppercase_commands_are_ordinary_messages() -> None:
    client = DummyDiscordClient()
    client.history = [make_message(1)]
    engine = _engine(client, Mapping(111, 222, backfill_on_demand=True))

    async def scenario() -> list[Outcome]:
        return [
            await engine.handle(make_message(5, "!ALL")),
            await engine.handle(make_message(6, "!Start")),
        ]

    assert asyncio.run(scenario()) == [Outcome.COMPLETED, Outcome.COMPLETED]
    assert client.sent == [(222, "**Ann**: !ALL"), (222, "**Ann**: !Start")]
    assert client.fetch_started == 0


def test_already_running_reply_reports_progress() -> None:
    client = DummyDiscordClient()
    client.history = [make_message(1, "a"), make_message(2, "b")]
    engine = _engine(client, Mapping(111, 222))

    async def scenario() -> Outcome:
        client.send_gate = asyncio.Event()
        first = asyncio.create_task(engine.handle(make_message(10, "!all")))
        while client.in_flight == 0:
            await asyncio.sleep(0)
        second = await engine.handle(make_message(11, "!all"))
        client.send_gate.set()
        await first
        return second

    assert asyncio.run(scenario()) is Outcome.ALREADY_RUNNING
    assert client.texts_to(111) == [
        "⏳ A transfer for this thread is already running (0/2 messages sent), please wait."
    ]


def test_backfill_fetch_failure_is_reported() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222))

    async def failing_fetch(*args: Any, **kwargs: Any) -> list[InboundMessage]:
        raise TransportError("missing access", recoverable=False, status=403)

    client.fetch_messages = failing_fetch  # type: ignore[method-assign]

    outcome = asyncio.run(engine.handle(make_message(4, "!all")))

    assert outcome is Outcome.FAILED
    assert client.texts_to(222)[-1] == "❌ Failed to fetch message history: missing access"


def test_thread2channel_binds_current_thread() -> None:
    client = DummyDiscordClient()
    client.channels = {
        555: ChannelInfo(555, 11, ChannelKind.THREAD),
        666: ChannelInfo(666, 0, ChannelKind.TEXT),
    }
    engine = _engine(client)

    async def scenario() -> Outcome:
        outcome = await engine.handle(make_message(1, "!thread2channel 666 all", source_id=555))
        await engine.handle(make_message(2, "after", source_id=555))
        return outcome

    assert asyncio.run(scenario()) is Outcome.COMPLETED
    assert engine.registry.lookup(555) == Mapping(555, 666, backfill_on_demand=True)
    assert client.texts_to(555)[0].startswith(
        "✅ Messages from this thread will be forwarded to <#666>."
    )
    assert client.texts_to(666) == ["**Ann**: after"]


def test_thread2channel_rejects_bad_input() -> None:
    client = DummyDiscordClient()
    client.channels = {
        555: ChannelInfo(555, 11, ChannelKind.THREAD),
        777: ChannelInfo(777, 0, ChannelKind.TEXT),
        888: ChannelInfo(888, 4, ChannelKind.CATEGORY),
    }
    engine = _engine(client)

    async def scenario() -> list[Outcome]:
        return [
            await engine.handle(make_message(1, "!thread2channel", source_id=555)),
            await engine.handle(make_message(2, "!thread2channel abc", source_id=555)),
            await engine.handle(make_message(3, "!thread2channel 777 maybe", source_id=555)),
            await engine.handle(make_message(4, "!thread2channel 777", source_id=777)),
            await engine.handle(make_message(5, "!thread2channel 888", source_id=555)),
            await engine.handle(make_message(6, "!thread2channel 999", source_id=555)),
        ]

    assert asyncio.run(scenario()) == [Outcome.FAILED] * 6
    assert len(engine.registry) == 0
    replies = client.texts_to(555)
    assert replies[0].startswith("ℹ️ Usage")
    assert "is not a channel ID" in replies[1]
    assert replies[2].startswith("ℹ️ Usage")
    assert client.texts_to(777) == ["❌ This command only works inside a thread."]
    assert "cannot receive messages" in replies[3]
    assert "Could not look up" in replies[4]


def test_set_webhook_updates_mapping() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222))

    async def scenario() -> list[Outcome]:
        return [
            await engine.handle(make_message(1, "!set_webhook https://example.com/x")),
            await engine.handle(make_message(2, f"!set_webhook {WEBHOOK}", source_id=999)),
            await engine.handle(make_message(3, f"!set_webhook {WEBHOOK}")),
            await engine.handle(make_message(4, "now impersonated")),
        ]

    outcomes = asyncio.run(scenario())

    assert outcomes == [Outcome.FAILED, Outcome.FAILED, Outcome.COMPLETED, Outcome.COMPLETED]
    assert engine.registry.lookup(111) == Mapping(111, 222, impersonation_endpoint=WEBHOOK)
    assert engine.registry.lookup(999) is None
    assert "not forwarded anywhere" in client.texts_to(999)[0]
    assert client.webhooks[0]["content"].startswith("now impersonated")


def test_run_processes_events_and_survives_errors() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222), max_concurrency=2)

    async def failing_channel_lookup(channel_id: int) -> ChannelInfo:
        raise RuntimeError("unexpected")

    client.fetch_channel_kind = failing_channel_lookup  # type: ignore[method-assign]

    async def events() -> AsyncIterator[InboundMessage]:
        yield make_message(1, "one")
        yield make_message(2, "!thread2channel 222")
        yield make_message(3, "two")
        yield make_message(4, "three", source_id=999)

    async def scenario() -> None:
        await engine.run(events())
        await engine.drain()

    asyncio.run(scenario())

    assert sorted(client.texts_to(222)) == ["**Ann**: one", "**Ann**: two"]


async def _single(message: InboundMessage) -> AsyncIterator[InboundMessage]:
    yield message


def test_run_bounds_tasks_in_flight() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222), max_concurrency=2)

    async def events() -> AsyncIterator[InboundMessage]:
        for message_id in range(1, 5):
            yield make_message(message_id, f"m{message_id}")

    async def scenario() -> None:
        client.send_gate = asyncio.Event()
        runner = asyncio.create_task(engine.run(events()))
        while client.in_flight < 2:
            await asyncio.sleep(0)
        for _ in range(5):
            await asyncio.sleep(0)
        assert client.in_flight == 2
        assert len(engine._tasks) == 2
        client.send_gate.set()
        await runner
        await engine.drain()

    asyncio.run(scenario())

    assert client.peak_in_flight == 2
    assert sorted(client.texts_to(222)) == [f"**Ann**: m{i}" for i in range(1, 5)]


def test_cancelled_task_does_not_leak_its_slot() -> None:
    client = DummyDiscordClient()
    engine = _engine(client, Mapping(111, 222), max_concurrency=1)

    async def scenario() -> None:
        await engine.run(_single(make_message(1, "dropped")))
        for task in list(engine._tasks):
            task.cancel()
        await engine.drain()
        await asyncio.wait_for(engine.run(_single(make_message(2, "kept"))), timeout=1)
        await asyncio.wait_for(engine.drain(), timeout=1)

    asyncio.run(scenario())

    assert client.sent == [(222, "**Ann**: kept")]
