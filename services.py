"""
HTTP clients for the services the bot sits on:

  - book library: catalog search and listings
  - book cache / buffer cache: where already uploaded files live
  - downloader: origin of the raw files

All of them authenticate with a static API key in the Authorization
header and share the same error mapping: 404 -> NotFound, any other
failure -> the service specific error class.
"""
import logging
from email.message import Message
from typing import Any, Callable
from urllib.parse import quote

import httpx

from errors import CatalogError, FetchError, NotFound, TierUnavailable
from models import (
    Annotation,
    Book,
    BookKind,
    CacheReference,
    OriginPayload,
    Page,
    Person,
    Sequence,
    Source,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 7


class _ServiceClient:
    error_class: type[Exception] = CatalogError

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": api_key},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise self.error_class(f"{method} {url} failed: {e}") from e

        if response.status_code == 404:
            raise NotFound(f"{method} {url}: not found")

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise self.error_class(
                f"{method} {url} returned {response.status_code}"
            ) from e

        return response

    async def _get_json(self, url: str, **kwargs) -> dict:
        response = await self._request("GET", url, **kwargs)
        try:
            data = response.json()
        except ValueError as e:
            raise self.error_class(f"GET {url}: invalid JSON") from e

        # every endpoint answers with an object
        if not isinstance(data, dict):
            raise self.error_class(
                f"GET {url}: expected a JSON object, got {type(data).__name__}"
            )
        return data


# --- book library ---


def _parse_person(data: dict) -> Person:
    return Person(
        id=int(data["id"]),
        first_name=data.get("first_name") or "",
        last_name=data.get("last_name") or "",
        middle_name=data.get("middle_name") or "",
    )


def _parse_book(data: dict, kind: BookKind) -> Book:
    source = data.get("source")
    remote_id = data.get("remote_id")
    return Book(
        id=int(data["id"]),
        title=data.get("title") or "",
        lang=data.get("lang") or "",
        kind=kind,
        available_types=tuple(data.get("available_types") or ()),
        authors=tuple(_parse_person(a) for a in data.get("authors") or ()),
        translators=tuple(_parse_person(t) for t in data.get("translators") or ()),
        annotation_exists=bool(data.get("annotation_exists", False)),
        source=Source(id=int(source["id"]), name=source.get("name") or "")
        if source
        else None,
        remote_id=int(remote_id) if remote_id is not None else None,
    )


def _parse_sequence(data: dict) -> Sequence:
    return Sequence(id=int(data["id"]), name=data.get("name") or "")


def _book_parser(kind: BookKind) -> Callable[[dict], Book]:
    return lambda data: _parse_book(data, kind)


class BookLibraryClient(_ServiceClient):
    error_class = CatalogError

    async def _get_page(
        self,
        url: str,
        page: int,
        allowed_langs: list[str],
        parse: Callable[[dict], Any],
    ) -> Page:
        params = [("page", page), ("size", PAGE_SIZE)]
        params.extend(self._langs_params(allowed_langs))

        data = await self._get_json(url, params=params)
        try:
            return Page(
                items=[parse(item) for item in data.get("items") or []],
                total_pages=int(data.get("total_pages") or 0),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CatalogError(f"GET {url}: unexpected payload: {e}") from e

    async def _get_item(self, url: str, parse: Callable[[dict], Any], **kwargs):
        data = await self._get_json(url, **kwargs)
        try:
            return parse(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CatalogError(f"GET {url}: unexpected payload: {e}") from e

    @staticmethod
    def _langs_params(allowed_langs: list[str]) -> list[tuple[str, str]]:
        return [("allowed_langs", lang) for lang in allowed_langs]

    async def search_books(self, query: str, page: int, allowed_langs: list[str]) -> Page[Book]:
        return await self._get_page(
            f"/api/v1/books/search/{quote(query, safe='')}", page, allowed_langs,
            _book_parser(BookKind.GENERAL),
        )

    async def search_authors(self, query: str, page: int, allowed_langs: list[str]) -> Page[Person]:
        return await self._get_page(
            f"/api/v1/authors/search/{quote(query, safe='')}", page, allowed_langs, _parse_person
        )

    async def search_translators(self, query: str, page: int, allowed_langs: list[str]) -> Page[Person]:
        return await self._get_page(
            f"/api/v1/translators/search/{quote(query, safe='')}", page, allowed_langs, _parse_person
        )

    async def search_sequences(self, query: str, page: int, allowed_langs: list[str]) -> Page[Sequence]:
        return await self._get_page(
            f"/api/v1/sequences/search/{quote(query, safe='')}", page, allowed_langs, _parse_sequence
        )

    async def get_author_books(self, author_id: int | str, page: int, allowed_langs: list[str]) -> Page[Book]:
        return await self._get_page(
            f"/api/v1/authors/{author_id}/books", page, allowed_langs,
            _book_parser(BookKind.AUTHOR),
        )

    async def get_translator_books(self, translator_id: int | str, page: int, allowed_langs: list[str]) -> Page[Book]:
        return await self._get_page(
            f"/api/v1/translators/{translator_id}/books", page, allowed_langs,
            _book_parser(BookKind.TRANSLATOR),
        )

    async def get_sequence_books(self, sequence_id: int | str, page: int, allowed_langs: list[str]) -> Page[Book]:
        return await self._get_page(
            f"/api/v1/sequences/{sequence_id}/books", page, allowed_langs,
            _book_parser(BookKind.GENERAL),
        )

    async def get_book(self, book_id: int) -> Book:
        return await self._get_item(
            f"/api/v1/books/{book_id}", _book_parser(BookKind.GENERAL)
        )

    async def get_book_annotation(self, book_id: int) -> Annotation:
        return await self._get_item(
            f"/api/v1/books/{book_id}/annotation",
            lambda d: Annotation(title=d.get("title") or "", text=d.get("text") or ""),
        )

    async def get_random_book(self, allowed_langs: list[str]) -> Book:
        return await self._get_item(
            "/api/v1/books/random", _book_parser(BookKind.GENERAL),
            params=self._langs_params(allowed_langs),
        )

    async def get_random_author(self, allowed_langs: list[str]) -> Person:
        return await self._get_item(
            "/api/v1/authors/random", _parse_person,
            params=self._langs_params(allowed_langs),
        )

    async def get_random_sequence(self, allowed_langs: list[str]) -> Sequence:
        return await self._get_item(
            "/api/v1/sequences/random", _parse_sequence,
            params=self._langs_params(allowed_langs),
        )


# --- cache tiers ---


class BookCacheClient(_ServiceClient):
    """Primary tier: messages in the channel the files were first uploaded to."""

    error_class = TierUnavailable

    async def get(self, book_id: int, file_format: str) -> CacheReference:
        data = await self._get_json(f"/api/v1/{book_id}/{file_format}")
        try:
            return CacheReference(
                chat_id=int(data["chat_id"]), message_id=int(data["message_id"])
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise TierUnavailable(
                f"cache entry for {book_id}/{file_format} is malformed: {e}"
            ) from e

    async def invalidate(self, book_id: int, file_format: str) -> None:
        try:
            await self._request("DELETE", f"/api/v1/{book_id}/{file_format}")
        except NotFound:
            # already gone
            return
        logger.info("Cache entry invalidated: %s/%s (%s)", book_id, file_format, type(self).__name__)


class BufferCacheClient(BookCacheClient):
    """Secondary tier: copies re-uploaded to a buffer channel."""


# --- downloader ---


def _filename_from_headers(headers: httpx.Headers) -> str | None:
    raw = headers.get("content-disposition")
    if not raw:
        return None

    msg = Message()
    msg["content-disposition"] = raw
    return msg.get_filename()


class DownloaderClient(_ServiceClient):
    error_class = FetchError

    async def fetch(self, source_id: int, remote_id: int, file_format: str) -> OriginPayload:
        url = f"/download/{source_id}/{remote_id}/{file_format}"
        try:
            response = await self._request("GET", url)
        except NotFound as e:
            raise FetchError(f"origin has no {file_format} for {source_id}/{remote_id}") from e

        filename = _filename_from_headers(response.headers) or f"{remote_id}.{file_format}"
        return OriginPayload(content=response.content, filename=filename)
