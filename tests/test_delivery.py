import asyncio
import types

import pytest
from unittest.mock import AsyncMock, MagicMock
from telegram.error import BadRequest

import delivery
from delivery import (
    DeliveryEngine,
    PresenceTicker,
    TelegramMessenger,
    parse_download_command,
    send_file,
)
from errors import (
    DeliveryError,
    FetchError,
    ForwardError,
    InvalidRequest,
    NotFound,
    TierUnavailable,
)
from models import Book, CacheMode, CacheReference, OriginPayload, Source

REF = CacheReference(chat_id=-100123, message_id=77)


def _tier(get_side_effect=None, get_return=REF):
    tier = MagicMock()
    tier.get = AsyncMock(return_value=get_return, side_effect=get_side_effect)
    tier.invalidate = AsyncMock(return_value=None)
    return tier


def _engine(cache_mode, primary=None, buffer=None, catalog=None, origin=None, messenger=None):
    primary = primary or _tier()
    buffer = buffer or _tier()
    messenger = messenger or types.SimpleNamespace(
        copy_message=AsyncMock(), send_document=AsyncMock()
    )
    engine = DeliveryEngine(
        cache_mode=cache_mode,
        tiers={CacheMode.PRIMARY: primary, CacheMode.BUFFER: buffer},
        catalog=catalog or types.SimpleNamespace(get_book=AsyncMock()),
        origin=origin or types.SimpleNamespace(fetch=AsyncMock()),
        messenger=messenger,
    )
    return engine, primary, buffer, messenger


@pytest.mark.asyncio
async def test_primary_cache_hit_copies_message():
    engine, primary, buffer, messenger = _engine(CacheMode.PRIMARY)

    await engine.deliver(42, "fb2", 555)

    primary.get.assert_awaited_once_with(42, "fb2")
    messenger.copy_message.assert_awaited_once_with(555, REF)
    primary.invalidate.assert_not_awaited()
    buffer.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_buffer_mode_uses_buffer_tier_only():
    engine, primary, buffer, messenger = _engine(CacheMode.BUFFER)

    await engine.deliver(42, "epub", 555)

    buffer.get.assert_awaited_once_with(42, "epub")
    primary.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_stale_reference_is_invalidated_and_retried_once():
    messenger = types.SimpleNamespace(
        copy_message=AsyncMock(side_effect=[ForwardError("gone"), None]),
        send_document=AsyncMock(),
    )
    fresh = CacheReference(chat_id=-100123, message_id=99)
    primary = _tier(get_side_effect=[REF, fresh])
    engine, primary, _, messenger = _engine(
        CacheMode.PRIMARY, primary=primary, messenger=messenger
    )

    await engine.deliver(42, "fb2", 555)

    primary.invalidate.assert_awaited_once_with(42, "fb2")
    assert primary.get.await_count == 2
    assert messenger.copy_message.await_args_list[1].args == (555, fresh)


@pytest.mark.asyncio
async def test_second_failure_is_reported_after_exactly_one_retry():
    messenger = types.SimpleNamespace(
        copy_message=AsyncMock(side_effect=ForwardError("gone")),
        send_document=AsyncMock(),
    )
    engine, primary, _, messenger = _engine(CacheMode.PRIMARY, messenger=messenger)

    with pytest.raises(DeliveryError):
        await engine.deliver(42, "fb2", 555)

    assert primary.invalidate.await_count == 1
    assert primary.get.await_count == 2
    assert messenger.copy_message.await_count == 2


@pytest.mark.asyncio
async def test_unreachable_tier_is_treated_like_a_stale_reference():
    primary = _tier(get_side_effect=[TierUnavailable("timeout"), REF])
    engine, primary, _, messenger = _engine(CacheMode.PRIMARY, primary=primary)

    await engine.deliver(1, "mobi", 2)

    primary.invalidate.assert_awaited_once_with(1, "mobi")
    messenger.copy_message.assert_awaited_once_with(2, REF)


@pytest.mark.asyncio
async def test_failed_invalidation_does_not_prevent_retry():
    primary = _tier(get_side_effect=[NotFound("miss"), REF])
    primary.invalidate.side_effect = TierUnavailable("down")
    engine, primary, _, messenger = _engine(CacheMode.PRIMARY, primary=primary)

    await engine.deliver(1, "fb2", 2)

    messenger.copy_message.assert_awaited_once_with(2, REF)


@pytest.mark.asyncio
async def test_no_cache_fetches_from_origin_without_touching_tiers():
    book = Book(id=42, title="Дюна", lang="ru", source=Source(id=1), remote_id=4242)
    catalog = types.SimpleNamespace(get_book=AsyncMock(return_value=book))
    origin = types.SimpleNamespace(
        fetch=AsyncMock(return_value=OriginPayload(content=b"data", filename="dune.fb2"))
    )
    engine, primary, buffer, messenger = _engine(
        CacheMode.NO_CACHE, catalog=catalog, origin=origin
    )

    await engine.deliver(42, "fb2", 555)

    origin.fetch.assert_awaited_once_with(1, 4242, "fb2")
    messenger.send_document.assert_awaited_once_with(
        555, OriginPayload(content=b"data", filename="dune.fb2", caption="Дюна")
    )
    for tier in (primary, buffer):
        tier.get.assert_not_awaited()
        tier.invalidate.assert_not_awaited()


@pytest.mark.asyncio
async def test_no_cache_origin_failure_is_not_retried():
    book = Book(id=42, title="Дюна", lang="ru", source=Source(id=1), remote_id=4242)
    origin = types.SimpleNamespace(fetch=AsyncMock(side_effect=FetchError("502")))
    engine, primary, _, messenger = _engine(
        CacheMode.NO_CACHE,
        catalog=types.SimpleNamespace(get_book=AsyncMock(return_value=book)),
        origin=origin,
    )

    with pytest.raises(FetchError):
        await engine.deliver(42, "fb2", 555)

    assert origin.fetch.await_count == 1
    messenger.send_document.assert_not_awaited()
    primary.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_no_cache_unknown_book_is_a_fetch_error():
    engine, *_ = _engine(
        CacheMode.NO_CACHE,
        catalog=types.SimpleNamespace(get_book=AsyncMock(side_effect=NotFound("404"))),
    )

    with pytest.raises(FetchError):
        await engine.deliver(42, "fb2", 555)


def test_engine_requires_tier_for_cached_modes():
    with pytest.raises(ValueError):
        DeliveryEngine(CacheMode.BUFFER, {}, catalog=None, origin=None, messenger=None)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("/d_fb2_42", ("fb2", 42)),
        ("/d_epub_7@LibraryBot", ("epub", 7)),
        (" /d_mobi_100 ", ("mobi", 100)),
    ],
)
def test_parse_download_command(text, expected):
    assert parse_download_command(text) == expected


@pytest.mark.parametrize("text", ["", "/d_fb2_", "/d_fb2_abc", "/d__42", "/d_fb2_0", "d_fb2_1"])
def test_parse_download_command_rejects_garbage(text):
    with pytest.raises(InvalidRequest):
        parse_download_command(text)


@pytest.mark.asyncio
async def test_presence_ticker_repeats_until_stopped():
    send_action = AsyncMock()

    async with PresenceTicker(send_action, interval=0.01):
        await asyncio.sleep(0.035)

    calls = send_action.await_count
    assert calls >= 2

    await asyncio.sleep(0.03)
    assert send_action.await_count == calls


@pytest.mark.asyncio
async def test_presence_ticker_survives_failing_action():
    send_action = AsyncMock(side_effect=BadRequest("chat not found"))

    async with PresenceTicker(send_action, interval=0.01):
        await asyncio.sleep(0.025)

    assert send_action.await_count >= 2


class _CountingTicker(PresenceTicker):
    started = 0
    stopped = 0

    def start(self):
        type(self).started += 1
        super().start()

    async def stop(self):
        type(self).stopped += 1
        await super().stop()


@pytest.mark.asyncio
async def test_send_file_stops_presence_on_failure(monkeypatch):
    monkeypatch.setattr(_CountingTicker, "started", 0)
    monkeypatch.setattr(_CountingTicker, "stopped", 0)
    monkeypatch.setattr(delivery, "PresenceTicker", _CountingTicker)

    messenger = types.SimpleNamespace(
        copy_message=AsyncMock(side_effect=ForwardError("message to copy not found")),
        send_document=AsyncMock(),
    )
    # stale on the first lookup, gone after invalidation
    primary = _tier(get_side_effect=[REF, NotFound("miss")])
    engine, primary, _, _ = _engine(CacheMode.PRIMARY, primary=primary, messenger=messenger)

    with pytest.raises(DeliveryError):
        await send_file(engine, "/d_fb2_42", 555, AsyncMock(), interval=0.01)

    assert primary.invalidate.await_count == 1
    assert primary.get.await_count == 2
    assert _CountingTicker.started == 1
    assert _CountingTicker.stopped == 1


@pytest.mark.asyncio
async def test_send_file_rejects_invalid_command_before_any_work(monkeypatch):
    monkeypatch.setattr(_CountingTicker, "started", 0)
    monkeypatch.setattr(delivery, "PresenceTicker", _CountingTicker)
    engine, primary, _, _ = _engine(CacheMode.PRIMARY)

    with pytest.raises(InvalidRequest):
        await send_file(engine, "/d_fb2_notanid", 555, AsyncMock())

    primary.get.assert_not_awaited()
    assert _CountingTicker.started == 0


@pytest.mark.asyncio
async def test_telegram_messenger_maps_errors():
    bot = MagicMock()
    bot.copy_message = AsyncMock(side_effect=BadRequest("Message to copy not found"))
    bot.send_document = AsyncMock()
    messenger = TelegramMessenger(bot)

    with pytest.raises(ForwardError):
        await messenger.copy_message(1, REF)

    await messenger.send_document(1, OriginPayload(content=b"x", filename="a.fb2"))
    bot.send_document.assert_awaited_once_with(
        chat_id=1, document=b"x", filename="a.fb2", caption=None
    )
