"""
Book file delivery.

A ready-to-send copy of a book usually already sits in a cache channel,
so sending it is a cheap copy_message. Which channel is asked depends on
the deployment's cache mode:

  - original: the channel the file was first uploaded to
  - buffer:   a secondary channel with re-uploaded copies
  - no_cache: skip the channels and download from the origin

A cached reference can go stale (message deleted, channel gone). When
the copy fails the reference is dropped from its tier and the lookup +
copy is tried exactly once more.
"""
import asyncio
import logging
import re
from typing import Awaitable, Callable

from telegram.error import TelegramError

from errors import (
    CatalogError,
    DeliveryError,
    FetchError,
    ForwardError,
    InvalidRequest,
    NotFound,
    TierUnavailable,
)
from models import CacheMode, CacheReference, OriginPayload

logger = logging.getLogger(__name__)

PRESENCE_INTERVAL = 5.0

DOWNLOAD_COMMAND_RE = re.compile(r"^/d_([a-zA-Z0-9]+)_(\d+)$")

# failures of one lookup + copy attempt that are worth one more try
RECOVERABLE_ERRORS = (NotFound, TierUnavailable, ForwardError)


def parse_download_command(text: str) -> tuple[str, int]:
    """
    "/d_fb2_42" or "/d_fb2_42@SomeBot" -> ("fb2", 42).
    Raises InvalidRequest for anything else.
    """
    command = (text or "").strip().split("@", 1)[0]
    m = DOWNLOAD_COMMAND_RE.match(command)
    if not m:
        raise InvalidRequest(f"Not a download command: {text!r}")

    file_format, raw_id = m.groups()
    book_id = int(raw_id)
    if book_id <= 0:
        raise InvalidRequest(f"Invalid book id in {text!r}")

    return file_format, book_id


class TelegramMessenger:
    """Sends files through a python-telegram-bot Bot, mapping its errors."""

    def __init__(self, bot) -> None:
        self._bot = bot

    async def copy_message(self, chat_id: int, reference: CacheReference) -> None:
        try:
            await self._bot.copy_message(
                chat_id=chat_id,
                from_chat_id=reference.chat_id,
                message_id=reference.message_id,
            )
        except TelegramError as e:
            raise ForwardError(
                f"copy of {reference.chat_id}/{reference.message_id} failed: {e}"
            ) from e

    async def send_document(self, chat_id: int, payload: OriginPayload) -> None:
        try:
            await self._bot.send_document(
                chat_id=chat_id,
                document=payload.content,
                filename=payload.filename,
                caption=payload.caption or None,
            )
        except TelegramError as e:
            raise ForwardError(f"send of {payload.filename} failed: {e}") from e


class DeliveryEngine:
    """
    Collaborators:

      tiers:     {CacheMode: store} with get(id, fmt) -> CacheReference
                 and invalidate(id, fmt)
      catalog:   get_book(id) -> Book (origin ids for no_cache)
      origin:    fetch(source_id, remote_id, fmt) -> OriginPayload
      messenger: copy_message(chat_id, ref), send_document(chat_id, payload)
    """

    def __init__(self, cache_mode: CacheMode, tiers: dict, catalog, origin, messenger) -> None:
        if cache_mode is not CacheMode.NO_CACHE and cache_mode not in tiers:
            raise ValueError(f"No cache tier configured for mode {cache_mode.value!r}")

        self.cache_mode = cache_mode
        self._tiers = tiers
        self._catalog = catalog
        self._origin = origin
        self._messenger = messenger

    async def deliver(self, book_id: int, file_format: str, chat_id: int) -> None:
        if self.cache_mode is CacheMode.NO_CACHE:
            await self._send_from_origin(book_id, file_format, chat_id)
            return

        tier = self._tiers[self.cache_mode]

        try:
            await self._send_cached(tier, book_id, file_format, chat_id)
            return
        except RECOVERABLE_ERRORS as e:
            logger.warning(
                "Cached copy of %s/%s unusable (%s): %s; invalidating and retrying",
                book_id,
                file_format,
                self.cache_mode.value,
                e,
            )

        try:
            await tier.invalidate(book_id, file_format)
        except TierUnavailable as e:
            logger.warning("Invalidation of %s/%s failed: %s", book_id, file_format, e)

        try:
            await self._send_cached(tier, book_id, file_format, chat_id)
        except RECOVERABLE_ERRORS as e:
            logger.error(
                "Delivery of %s/%s to chat %s failed after retry: %s",
                book_id,
                file_format,
                chat_id,
                e,
            )
            raise DeliveryError(f"Could not deliver {book_id}/{file_format}") from e

    async def _send_cached(self, tier, book_id: int, file_format: str, chat_id: int) -> None:
        reference = await tier.get(book_id, file_format)
        await self._messenger.copy_message(chat_id, reference)

    async def _send_from_origin(self, book_id: int, file_format: str, chat_id: int) -> None:
        try:
            book = await self._catalog.get_book(book_id)
        except (NotFound, CatalogError) as e:
            raise FetchError(f"Book {book_id} is not available: {e}") from e

        if book.source is None or book.remote_id is None:
            raise FetchError(f"Book {book_id} has no origin reference")

        payload = await self._origin.fetch(book.source.id, book.remote_id, file_format)
        if not payload.caption:
            payload = OriginPayload(
                content=payload.content, filename=payload.filename, caption=book.title
            )

        await self._messenger.send_document(chat_id, payload)


class PresenceTicker:
    """
    Keeps an "uploading document" chat action alive while a delivery runs:
    sent right away, then every `interval` seconds until the block exits.
    """

    def __init__(
        self,
        send_action: Callable[[], Awaitable[object]],
        interval: float = PRESENCE_INTERVAL,
    ) -> None:
        self._send_action = send_action
        self._interval = interval
        self._task: asyncio.Task | None = None

    async def _tick(self) -> None:
        try:
            await self._send_action()
        except Exception as e:
            logger.warning("Failed to send chat action: %s", e)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self._tick()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def __aenter__(self) -> "PresenceTicker":
        await self._tick()
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


async def send_file(
    engine: DeliveryEngine,
    text: str,
    chat_id: int,
    send_action: Callable[[], Awaitable[object]],
    interval: float = PRESENCE_INTERVAL,
) -> None:
    """
    Handle one "/d_<format>_<id>" request end to end.

    Invalid commands fail before anything is contacted; every other
    failure surfaces after the chat action ticker has been stopped.
    """
    file_format, book_id = parse_download_command(text)

    async with PresenceTicker(send_action, interval):
        await engine.deliver(book_id, file_format, chat_id)

    logger.info("Delivered %s/%s to chat %s", book_id, file_format, chat_id)
