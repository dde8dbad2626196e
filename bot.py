#!/usr/bin/env python3
import asyncio
import html
import logging
import re
from functools import partial
from typing import Any, Callable, NamedTuple

from telegram import BotCommand, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import BadRequest, RetryAfter, TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

import pagination
from config import BotConfig, load_config
from delivery import DeliveryEngine, TelegramMessenger, send_file
from errors import InvalidRequest, LibraryBotError, NotFound
from formatting import (
    format_author,
    format_book,
    format_book_short,
    format_sequence,
    format_translator,
)
from models import CacheMode
from services import (
    BookCacheClient,
    BookLibraryClient,
    BufferCacheClient,
    DownloaderClient,
)

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)
logging.getLogger("httpx").setLevel(logging.WARNING)

START_MESSAGE = (
    "Привет, {name}!\n"
    "Напиши название книги, имя автора или название серии, и я поищу в каталоге."
)

HELP_MESSAGE = (
    "Просто напиши, что ищешь, и выбери: книгу, автора, серию или переводчика.\n"
    "/random   Случайная книга, автор или серия\n"
    "/help     Эта справка\n"
    "\n"
    "Команды в карточках:\n"
    "  /d_<формат>_<id>   скачать книгу\n"
    "  /b_info_<id>       аннотация книги\n"
    "  /a_<id>            книги автора\n"
    "  /t_<id>            переводы переводчика\n"
    "  /s_<id>            книги серии"
)

SEARCH_MESSAGE = "Что ищем?"
DOWNLOAD_FAILED_MESSAGE = "Ошибка! Попробуйте позже :("
PAGINATION_FAILED_MESSAGE = "Ошибка! Повторите поиск :("
INVALID_REQUEST_MESSAGE = "Неверная команда."

RANDOM_BOOK = "random_book"
RANDOM_AUTHOR = "random_author"
RANDOM_SEQUENCE = "random_sequence"


class Listing(NamedTuple):
    getter: str
    formatter: Callable[[Any], str]
    empty_message: str
    numeric_key: bool = False


LISTINGS: dict[str, Listing] = {
    pagination.SEARCH_BOOK_PREFIX: Listing(
        "search_books", format_book_short, "Книги не найдены."
    ),
    pagination.SEARCH_AUTHORS_PREFIX: Listing(
        "search_authors", format_author, "Авторы не найдены."
    ),
    pagination.SEARCH_SERIES_PREFIX: Listing(
        "search_sequences", format_sequence, "Серии не найдены."
    ),
    pagination.SEARCH_TRANSLATORS_PREFIX: Listing(
        "search_translators", format_translator, "Переводчики не найдены."
    ),
    pagination.AUTHOR_BOOKS_PREFIX: Listing(
        "get_author_books", format_book, "У автора нет книг на выбранных языках.", True
    ),
    pagination.TRANSLATOR_BOOKS_PREFIX: Listing(
        "get_translator_books", format_book, "У переводчика нет книг на выбранных языках.", True
    ),
    pagination.SEQUENCE_BOOKS_PREFIX: Listing(
        "get_sequence_books", format_book, "В серии нет книг на выбранных языках.", True
    ),
}

RANDOM_ITEMS: dict[str, tuple[str, Callable[[Any], str]]] = {
    RANDOM_BOOK: ("get_random_book", format_book),
    RANDOM_AUTHOR: ("get_random_author", format_author),
    RANDOM_SEQUENCE: ("get_random_sequence", format_sequence),
}

# /a_<id>, /t_<id>, /s_<id> open the first page of a bibliography
BIBLIOGRAPHY_COMMANDS = {
    "a": pagination.AUTHOR_BOOKS_PREFIX,
    "t": pagination.TRANSLATOR_BOOKS_PREFIX,
    "s": pagination.SEQUENCE_BOOKS_PREFIX,
}

DOWNLOAD_PATTERN = r"^/d_[a-zA-Z0-9]+_\d+(@\w+)?$"
BOOK_INFO_PATTERN = r"^/b_info_(\d+)(@\w+)?$"
BIBLIOGRAPHY_PATTERN = r"^/([ats])_(\d+)(@\w+)?$"
PAGINATION_PATTERN = "^(" + "|".join(re.escape(p) for p in pagination.PREFIXES) + ")"


def _config(context: ContextTypes.DEFAULT_TYPE) -> BotConfig:
    return context.bot_data["config"]


def _library(context: ContextTypes.DEFAULT_TYPE) -> BookLibraryClient:
    return context.bot_data["library"]


def _allowed_langs(context: ContextTypes.DEFAULT_TYPE) -> list[str]:
    return list(_config(context).default_langs)


def is_normal_text(value: str | None) -> bool:
    return bool(value and value.replace("\n", "").replace(" ", ""))


async def render_listing(
    context: ContextTypes.DEFAULT_TYPE,
    prefix: str,
    key: str,
    page: int,
) -> pagination.PreparedMessage:
    listing = LISTINGS[prefix]

    if listing.numeric_key and not (key.isascii() and key.isdigit()):
        raise InvalidRequest(f"Expected a numeric id for {prefix!r}, got {key!r}")

    return await pagination.render_page(
        prefix,
        key,
        page,
        _allowed_langs(context),
        getattr(_library(context), listing.getter),
        listing.formatter,
        empty_message=listing.empty_message,
    )


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return

    user = update.effective_user
    name = (user.first_name or user.username) if user else None

    await message.reply_text(
        START_MESSAGE.format(name=name or "пользователь"),
        reply_to_message_id=message.message_id,
    )


async def help_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return

    await message.reply_text(
        f"<pre>{html.escape(HELP_MESSAGE)}</pre>",
        parse_mode=ParseMode.HTML,
    )


async def search_menu(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or not is_normal_text(message.text):
        return

    query = message.text.strip()

    def button(title: str, prefix: str) -> list[InlineKeyboardButton]:
        key = pagination.fit_key(prefix, query)
        return [
            InlineKeyboardButton(title, callback_data=pagination.encode(prefix, key, 1))
        ]

    keyboard = InlineKeyboardMarkup(
        [
            button("Книгу", pagination.SEARCH_BOOK_PREFIX),
            button("Автора", pagination.SEARCH_AUTHORS_PREFIX),
            button("Серию", pagination.SEARCH_SERIES_PREFIX),
            button("Переводчика", pagination.SEARCH_TRANSLATORS_PREFIX),
        ]
    )

    await message.reply_text(
        SEARCH_MESSAGE,
        reply_to_message_id=message.message_id,
        reply_markup=keyboard,
    )


async def pagination_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None:
        return

    await query.answer()

    token = pagination.decode(query.data or "")
    if token is None:
        logger.warning("Undecodable pagination token: %r", query.data)
        if query.message:
            await query.message.reply_text(PAGINATION_FAILED_MESSAGE)
        return

    try:
        prepared = await render_listing(context, token.prefix, token.key, token.page)
    except LibraryBotError as e:
        logger.error("Failed to render %r: %s", query.data, e)
        if query.message:
            await query.message.reply_text(PAGINATION_FAILED_MESSAGE)
        return

    try:
        await query.edit_message_text(prepared.text, reply_markup=prepared.keyboard)
    except BadRequest as e:
        # the same page was requested twice
        if "message is not modified" not in str(e).lower():
            raise


async def bibliography_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or not message.text:
        return

    m = re.match(BIBLIOGRAPHY_PATTERN, message.text.strip())
    if not m:
        return

    kind, item_id = m.group(1), m.group(2)

    try:
        prepared = await render_listing(context, BIBLIOGRAPHY_COMMANDS[kind], item_id, 1)
    except LibraryBotError as e:
        logger.error("Failed to list %r: %s", message.text, e)
        await message.reply_text(PAGINATION_FAILED_MESSAGE)
        return

    await message.reply_text(prepared.text, reply_markup=prepared.keyboard)


async def book_info_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or not message.text:
        return

    m = re.match(BOOK_INFO_PATTERN, message.text.strip())
    if not m:
        return

    try:
        annotation = await _library(context).get_book_annotation(int(m.group(1)))
    except NotFound:
        await message.reply_text("Аннотация недоступна.")
        return
    except LibraryBotError as e:
        logger.error("Failed to get annotation for %r: %s", message.text, e)
        await message.reply_text(DOWNLOAD_FAILED_MESSAGE)
        return

    await message.reply_text(annotation.text or "Аннотация пуста.")


async def download_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    chat = update.effective_chat
    if message is None or chat is None or not message.text:
        return

    send_action = partial(
        context.bot.send_chat_action,
        chat_id=chat.id,
        action=ChatAction.UPLOAD_DOCUMENT,
    )

    try:
        await send_file(
            context.bot_data["engine"],
            message.text,
            chat.id,
            send_action,
            interval=_config(context).presence_interval,
        )
    except InvalidRequest as e:
        logger.info("Rejected download request %r: %s", message.text, e)
        await message.reply_text(INVALID_REQUEST_MESSAGE)
    except LibraryBotError as e:
        logger.error("Download %r for chat %s failed: %s", message.text, chat.id, e)
        await message.reply_text(
            DOWNLOAD_FAILED_MESSAGE,
            reply_to_message_id=message.message_id,
        )
    except Exception:
        # error_handler logs the trace
        await message.reply_text(
            DOWNLOAD_FAILED_MESSAGE,
            reply_to_message_id=message.message_id,
        )
        raise


async def random_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return

    keyboard = InlineKeyboardMarkup(
        [
            [InlineKeyboardButton("Книгу", callback_data=RANDOM_BOOK)],
            [InlineKeyboardButton("Автора", callback_data=RANDOM_AUTHOR)],
            [InlineKeyboardButton("Серию", callback_data=RANDOM_SEQUENCE)],
        ]
    )
    await message.reply_text("Что хотим получить?", reply_markup=keyboard)


async def random_item_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.data not in RANDOM_ITEMS:
        return

    await query.answer()

    getter, formatter = RANDOM_ITEMS[query.data]

    try:
        item = await getattr(_library(context), getter)(_allowed_langs(context))
    except LibraryBotError as e:
        logger.error("Failed to get %s: %s", query.data, e)
        if query.message:
            await query.message.reply_text(DOWNLOAD_FAILED_MESSAGE)
        return

    try:
        await query.edit_message_reply_markup(reply_markup=None)
    except TelegramError:
        # already edited / too old – ignore quietly
        pass

    keyboard = InlineKeyboardMarkup(
        [[InlineKeyboardButton("Повторить?", callback_data=query.data)]]
    )
    if query.message:
        await query.message.reply_text(formatter(item), reply_markup=keyboard)


async def log_any_update(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    chat = update.effective_chat
    message = update.effective_message

    text = None
    if update.callback_query is not None:
        text = update.callback_query.data
    elif message is not None:
        text = message.text or message.caption

    logger.info(
        "Incoming update: user_id=%s username=%r chat_id=%s chat_type=%s text=%r",
        user.id if user else None,
        user.username if user else None,
        chat.id if chat else None,
        chat.type if chat else None,
        text,
    )


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Exception while handling an update:", exc_info=context.error)


BOT_COMMANDS = [
    BotCommand("random", "Попытать удачу"),
    BotCommand("help", "Помощь"),
]


async def _set_commands_later(application: Application, delay: float) -> None:
    await asyncio.sleep(delay)
    try:
        await application.bot.set_my_commands(BOT_COMMANDS)
    except TelegramError as e:
        logger.warning("Failed to set bot commands after retry: %s", e)


async def post_init(application: Application) -> None:
    try:
        await application.bot.set_my_commands(BOT_COMMANDS)
    except RetryAfter as e:
        delay = float(e.retry_after)
        logger.warning("set_my_commands rate limited, retrying in %.0fs", delay)
        application.create_task(_set_commands_later(application, delay))


async def post_shutdown(application: Application) -> None:
    for name in ("library", "book_cache", "buffer_cache", "downloader"):
        client = application.bot_data.get(name)
        if client is not None:
            await client.aclose()


def build_services(config: BotConfig, bot) -> dict:
    """HTTP clients plus the delivery engine wired to them."""
    library = BookLibraryClient(
        config.book_library.url, config.book_library.api_key, config.http_timeout
    )
    book_cache = BookCacheClient(
        config.book_cache.url, config.book_cache.api_key, config.http_timeout
    )
    buffer_cache = BufferCacheClient(
        config.buffer_cache.url, config.buffer_cache.api_key, config.http_timeout
    )
    downloader = DownloaderClient(
        config.downloader.url, config.downloader.api_key, config.http_timeout
    )

    engine = DeliveryEngine(
        cache_mode=config.cache_mode,
        tiers={CacheMode.PRIMARY: book_cache, CacheMode.BUFFER: buffer_cache},
        catalog=library,
        origin=downloader,
        messenger=TelegramMessenger(bot),
    )

    return {
        "config": config,
        "library": library,
        "book_cache": book_cache,
        "buffer_cache": buffer_cache,
        "downloader": downloader,
        "engine": engine,
    }


def main() -> None:
    config = load_config()

    builder = (
        ApplicationBuilder()
        .token(config.token)
        .concurrent_updates(True)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
    )
    if config.api_root:
        builder = builder.base_url(config.api_root)

    application = builder.build()
    application.bot_data.update(build_services(config, application.bot))

    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_cmd))
    application.add_handler(CommandHandler("random", random_cmd))

    application.add_handler(
        MessageHandler(filters.Regex(DOWNLOAD_PATTERN), download_cmd)
    )
    application.add_handler(
        MessageHandler(filters.Regex(BOOK_INFO_PATTERN), book_info_cmd)
    )
    application.add_handler(
        MessageHandler(filters.Regex(BIBLIOGRAPHY_PATTERN), bibliography_cmd)
    )

    application.add_handler(
        CallbackQueryHandler(pagination_callback, pattern=PAGINATION_PATTERN)
    )
    application.add_handler(
        CallbackQueryHandler(
            random_item_callback,
            pattern=f"^({RANDOM_BOOK}|{RANDOM_AUTHOR}|{RANDOM_SEQUENCE})$",
        )
    )

    # Log every update
    application.add_handler(
        MessageHandler(filters.ALL, log_any_update),
        group=-1,
    )
    application.add_handler(
        CallbackQueryHandler(log_any_update),
        group=-1,
    )

    application.add_handler(
        MessageHandler(filters.TEXT & ~filters.COMMAND, search_menu),
    )

    application.add_error_handler(error_handler)

    application.run_polling(drop_pending_updates=True)


if __name__ == "__main__":
    main()
