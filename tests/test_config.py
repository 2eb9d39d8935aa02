from __future__ import annotations

import logging

import pytest

from thread_mirror.config import (
    load_runtime_options,
    load_settings,
    load_thread_mappings,
    parse_thread_mapping_entry,
    validate_webhook_url,
)
from thread_mirror.errors import ConfigParseError, InvalidEndpoint
from thread_mirror.models import Mapping

WEBHOOK = "https://discord.com/api/webhooks/123456789/abcDEF_-xyz"


@pytest.mark.parametrize(
    ("entry", "expected"),
    [
        ("111:222", Mapping(111, 222)),
        ("111:222:all", Mapping(111, 222, backfill_on_demand=True)),
        (f"111:222:{WEBHOOK}", Mapping(111, 222, impersonation_endpoint=WEBHOOK)),
        (
            f"111:222:{WEBHOOK}:all",
            Mapping(111, 222, backfill_on_demand=True, impersonation_endpoint=WEBHOOK),
        ),
        (
            f"111:222:all:{WEBHOOK}",
            Mapping(111, 222, backfill_on_demand=True, impersonation_endpoint=WEBHOOK),
        ),
        (
            "1350283354309660672:1350283354309660999",
            Mapping(1350283354309660672, 1350283354309660999),
        ),
    ],
)
def test_valid_entries_round_trip(entry: str, expected: Mapping) -> None:
    assert parse_thread_mapping_entry(entry) == expected


@pytest.mark.parametrize(
    "entry",
    [
        "111",
        "",
        "abc:222",
        "111:xyz",
        "-1:222",
        "0:222",
        "111:18446744073709551616",
        f"111:222:{WEBHOOK}:all:extra",
        f"111:222:{WEBHOOK}:{WEBHOOK}",
    ],
)
def test_malformed_entries_raise(entry: str) -> None:
    with pytest.raises(ConfigParseError):
        parse_thread_mapping_entry(entry)


def test_invalid_webhook_is_dropped_but_mapping_kept(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        mapping = parse_thread_mapping_entry("111:222:https://example.com/hook:all")

    assert mapping == Mapping(111, 222, backfill_on_demand=True)
    assert "impersonation disabled" in caplog.text


def test_webhook_url_validation() -> None:
    assert validate_webhook_url(f" {WEBHOOK}/ ") == WEBHOOK
    assert validate_webhook_url(
        "https://canary.discord.com/api/v10/webhooks/1/token"
    ).startswith("https://canary.discord.com")
    assert validate_webhook_url("https://discordapp.com/api/webhooks/1/token")
    for bad in (
        "http://discord.com/api/webhooks/1/token",
        "https://discord.com/api/webhooks/abc/token",
        "https://evil.example/api/webhooks/1/token",
        "discord.com/api/webhooks/1/token",
    ):
        with pytest.raises(InvalidEndpoint):
            validate_webhook_url(bad)


def test_load_thread_mappings_skips_broken_entries() -> None:
    environ = {
        "THREAD_MAPPING_2": "333:444:all",
        "THREAD_MAPPING_1": "111:222",
        "THREAD_MAPPING_BROKEN": "not-a-mapping",
        "THREAD_MAPPING_10": "555:abc",
        "UNRELATED": "999:888",
    }

    mappings = load_thread_mappings(environ)

    assert mappings == [Mapping(111, 222), Mapping(333, 444, backfill_on_demand=True)]


def test_load_runtime_options_reads_environment() -> None:
    options = load_runtime_options(
        {
            "BACKFILL_DELAY": "300",
            "BACKFILL_PAGE_SIZE": "500",
            "MIRROR_TIMEZONE": "Europe/Berlin",
            "MAX_CONCURRENCY": "4",
            "RICH_EMBEDS": "on",
        }
    )

    assert options.pacing_delay == 0.3
    assert options.page_size == 100
    assert options.timezone == "Europe/Berlin"
    assert options.max_concurrency == 4
    assert options.rich_embeds is True


def test_load_runtime_options_defaults() -> None:
    options = load_runtime_options({"BACKFILL_DELAY": "soon", "MAX_CONCURRENCY": "x"})

    assert options.pacing_delay == 0.5
    assert options.page_size == 100
    assert options.timezone == "Asia/Tokyo"
    assert options.max_concurrency == 16
    assert options.rich_embeds is False


def test_load_settings_requires_token() -> None:
    with pytest.raises(ConfigParseError):
        load_settings({"THREAD_MAPPING_1": "111:222"})

    settings = load_settings({"DISCORD_TOKEN": " secret ", "THREAD_MAPPING_1": "111:222"})
    assert settings.token == "secret"
    assert settings.mappings == [Mapping(111, 222)]
