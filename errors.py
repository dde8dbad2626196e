class LibraryBotError(Exception):
    """Base class for errors raised by the bot core and its service clients."""


class InvalidRequest(LibraryBotError):
    """Malformed command or callback data; nothing was touched."""


class NotFound(LibraryBotError):
    """The requested record does not exist in the service."""


class TierUnavailable(LibraryBotError):
    """A cache tier could not be reached or answered with an error."""


class ForwardError(LibraryBotError):
    """Copying a cached message to the destination chat failed."""


class FetchError(LibraryBotError):
    """The origin downloader could not provide the file."""


class CatalogError(LibraryBotError):
    """The catalog service could not be reached or answered with an error."""


class DeliveryError(LibraryBotError):
    """The file could not be delivered even after recovery."""
