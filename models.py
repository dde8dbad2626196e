import enum
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


class CacheMode(enum.Enum):
    """
    Where a ready-to-send copy of a book is looked up.

    The values match the ``cache_mode`` option in bot.conf.
    """

    NO_CACHE = "no_cache"
    PRIMARY = "original"
    BUFFER = "buffer"


class BookKind(enum.Enum):
    """
    Which listing produced a book.

    Author bibliographies carry translators, translator bibliographies
    carry authors, everything else carries authors.
    """

    GENERAL = "general"
    AUTHOR = "author"
    TRANSLATOR = "translator"


@dataclass(frozen=True)
class CacheReference:
    chat_id: int
    message_id: int


@dataclass(frozen=True)
class OriginPayload:
    content: bytes
    filename: str
    caption: str = ""


@dataclass(frozen=True)
class Person:
    id: int
    first_name: str = ""
    last_name: str = ""
    middle_name: str = ""

    @property
    def full_name(self) -> str:
        return " ".join(
            p for p in (self.last_name, self.first_name, self.middle_name) if p
        )


@dataclass(frozen=True)
class Source:
    id: int
    name: str = ""


@dataclass(frozen=True)
class Book:
    id: int
    title: str
    lang: str
    kind: BookKind = BookKind.GENERAL
    available_types: tuple[str, ...] = ()
    authors: tuple[Person, ...] = ()
    translators: tuple[Person, ...] = ()
    annotation_exists: bool = False
    source: Source | None = None
    remote_id: int | None = None


@dataclass(frozen=True)
class Sequence:
    id: int
    name: str


@dataclass(frozen=True)
class Annotation:
    title: str
    text: str


@dataclass(frozen=True)
class Page(Generic[T]):
    """
    One page of a listing.

    total_pages == 0 means the listing is empty, not that the page is out
    of range.
    """

    items: list[T] = field(default_factory=list)
    total_pages: int = 0
