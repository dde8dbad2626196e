"""
Paging through catalog listings without any server-side session.

Everything needed to show a page travels in the callback data of the
inline buttons: "<prefix><key>_<page>", e.g. "sb_dune_2" or "ba_1234_7".

The prefix is one of the fixed scope tags below and the page is always
the last "_"-separated segment, so the key is whatever sits between
them and may itself contain underscores.

Old messages keep their buttons across restarts, so the token format and
the prefixes must not change.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from models import Page

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEARCH_BOOK_PREFIX = "sb_"
SEARCH_AUTHORS_PREFIX = "sa_"
SEARCH_SERIES_PREFIX = "ss_"
SEARCH_TRANSLATORS_PREFIX = "st_"

AUTHOR_BOOKS_PREFIX = "ba_"
TRANSLATOR_BOOKS_PREFIX = "bt_"
SEQUENCE_BOOKS_PREFIX = "bs_"

PREFIXES = (
    SEARCH_BOOK_PREFIX,
    SEARCH_AUTHORS_PREFIX,
    SEARCH_SERIES_PREFIX,
    SEARCH_TRANSLATORS_PREFIX,
    AUTHOR_BOOKS_PREFIX,
    TRANSLATOR_BOOKS_PREFIX,
    SEQUENCE_BOOKS_PREFIX,
)

SEPARATOR = "_"

# Telegram rejects callback_data longer than 64 bytes
CALLBACK_DATA_LIMIT = 64
MAX_PAGE_DIGITS = 4

PAGE_STEPS = (1, 5)


@dataclass(frozen=True)
class PageToken:
    prefix: str
    key: str
    page: int


@dataclass
class PreparedMessage:
    text: str
    keyboard: InlineKeyboardMarkup | None = None


def encode(prefix: str, key: str, page: int) -> str:
    if prefix not in PREFIXES:
        raise ValueError(f"Unknown pagination prefix: {prefix!r}")
    if page < 1:
        raise ValueError(f"Page must be >= 1, got {page}")

    return f"{prefix}{key}{SEPARATOR}{page}"


def decode(token: str) -> PageToken | None:
    """
    Parse callback data back into a PageToken.

    Returns None for anything that is not a well-formed token; callers
    treat that as a normal "please search again" branch.
    """
    if not token:
        return None

    # longest first, so a prefix never shadows a longer one
    prefix = next(
        (p for p in sorted(PREFIXES, key=len, reverse=True) if token.startswith(p)),
        None,
    )
    if prefix is None:
        return None

    rest = token[len(prefix):]
    key, sep, raw_page = rest.rpartition(SEPARATOR)
    if not sep:
        return None

    if not (raw_page.isascii() and raw_page.isdigit()):
        return None

    page = int(raw_page)
    if page < 1:
        return None

    return PageToken(prefix=prefix, key=key, page=page)


def fit_key(prefix: str, key: str) -> str:
    """
    Trim a free-text key so that any token built from it stays within
    Telegram's callback data limit. Cuts on a character boundary.
    """
    budget = (
        CALLBACK_DATA_LIMIT
        - len(prefix.encode("utf-8"))
        - len(SEPARATOR)
        - MAX_PAGE_DIGITS
    )
    raw = key.encode("utf-8")
    if len(raw) <= budget:
        return key
    return raw[:budget].decode("utf-8", errors="ignore")


def build_pagination_keyboard(
    prefix: str,
    key: str,
    page: int,
    total_pages: int,
) -> InlineKeyboardMarkup | None:
    """
    Rows of "-N" / "+N" buttons for N in PAGE_STEPS.

    A button is only offered when its target page exists; jumps past
    either end are omitted rather than clamped.
    """
    rows: list[list[InlineKeyboardButton]] = []

    for step in PAGE_STEPS:
        row: list[InlineKeyboardButton] = []

        if page - step >= 1:
            row.append(
                InlineKeyboardButton(
                    f"-{step}", callback_data=encode(prefix, key, page - step)
                )
            )
        if page + step <= total_pages:
            row.append(
                InlineKeyboardButton(
                    f"+{step}", callback_data=encode(prefix, key, page + step)
                )
            )

        if row:
            rows.append(row)

    if not rows:
        return None

    return InlineKeyboardMarkup(rows)


async def render_page(
    prefix: str,
    key: str,
    page: int,
    allowed_langs: list[str],
    items_getter: Callable[[str, int, list[str]], Awaitable[Page[T]]],
    item_formatter: Callable[[T], str],
    header: str = "",
    empty_message: str = "",
) -> PreparedMessage:
    """
    Fetch one page of a listing and turn it into message text + keyboard.

    - An empty listing (total_pages == 0) yields empty_message and no
      keyboard, whatever page was asked for.
    - A page past the end is re-requested once as the last page. If that
      page comes back empty the listing shrank meanwhile, and empty_message
      is returned.
    - Errors from items_getter propagate; nothing is rendered partially.
    """
    items_page = await items_getter(key, page, allowed_langs)

    if items_page.total_pages == 0:
        return PreparedMessage(text=empty_message)

    if page > items_page.total_pages:
        logger.info(
            "Page %d of %s%s is past the end (%d pages); showing the last one",
            page,
            prefix,
            key,
            items_page.total_pages,
        )
        page = items_page.total_pages
        items_page = await items_getter(key, page, allowed_langs)

        # listing shrank between the two calls; no further hops
        if items_page.total_pages == 0 or not items_page.items:
            return PreparedMessage(text=empty_message)

        page = min(page, items_page.total_pages)

    formatted_items = "\n\n\n".join(item_formatter(item) for item in items_page.items)
    text = f"{header}{formatted_items}\n\nСтраница {page}/{items_page.total_pages}"

    keyboard = build_pagination_keyboard(prefix, key, page, items_page.total_pages)

    return PreparedMessage(text=text, keyboard=keyboard)
