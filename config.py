import configparser
import logging
from dataclasses import dataclass
from pathlib import Path

from models import CacheMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "bot.conf"

DEFAULT_LANGS = ("ru", "be", "uk")
DEFAULT_PRESENCE_INTERVAL = 5.0
DEFAULT_HTTP_TIMEOUT = 60.0


@dataclass(frozen=True)
class ServiceConfig:
    url: str
    api_key: str


@dataclass(frozen=True)
class BotConfig:
    token: str
    cache_mode: CacheMode
    default_langs: tuple[str, ...]
    book_library: ServiceConfig
    book_cache: ServiceConfig
    buffer_cache: ServiceConfig
    downloader: ServiceConfig
    api_root: str | None = None
    presence_interval: float = DEFAULT_PRESENCE_INTERVAL
    http_timeout: float = DEFAULT_HTTP_TIMEOUT


def _require(section: configparser.SectionProxy, key: str) -> str:
    value = section.get(key, "").strip()
    if not value:
        raise RuntimeError(f"{key} is missing or empty in [{section.name}] section")
    return value


def _service(section: configparser.SectionProxy, name: str) -> ServiceConfig:
    return ServiceConfig(
        url=_require(section, f"{name}_url"),
        api_key=_require(section, f"{name}_api_key"),
    )


def load_config(config_path: Path | str = DEFAULT_CONFIG_PATH) -> BotConfig:
    """Load bot.conf (by default the one next to this script)."""
    config_path = Path(config_path)

    if not config_path.is_file():
        raise RuntimeError(f"Config file not found: {config_path}")

    cfg = configparser.ConfigParser()
    cfg.read(config_path, encoding="utf-8")

    for name in ("bot", "services"):
        if name not in cfg:
            raise RuntimeError(f"[{name}] section missing in config file")

    bot = cfg["bot"]
    services = cfg["services"]

    raw_mode = bot.get("cache_mode", CacheMode.PRIMARY.value).strip().lower()
    try:
        cache_mode = CacheMode(raw_mode)
    except ValueError:
        allowed = ", ".join(m.value for m in CacheMode)
        raise RuntimeError(f"Invalid cache_mode {raw_mode!r}; expected one of: {allowed}")

    # comma-separated, e.g. "ru, uk"
    langs = tuple(
        part.strip().lower()
        for part in bot.get("default_langs", ",".join(DEFAULT_LANGS)).split(",")
        if part.strip()
    )
    if not langs:
        raise RuntimeError("default_langs must name at least one language")

    try:
        presence_interval = bot.getfloat(
            "presence_interval", fallback=DEFAULT_PRESENCE_INTERVAL
        )
        http_timeout = bot.getfloat("http_timeout", fallback=DEFAULT_HTTP_TIMEOUT)
    except ValueError as e:
        raise RuntimeError(f"Invalid numeric value in [bot] section: {e}") from e

    if presence_interval <= 0 or http_timeout <= 0:
        raise RuntimeError("presence_interval and http_timeout must be positive")

    config = BotConfig(
        token=_require(bot, "token"),
        cache_mode=cache_mode,
        default_langs=langs,
        book_library=_service(services, "book_server"),
        book_cache=_service(services, "cache_server"),
        buffer_cache=_service(services, "buffer_server"),
        downloader=_service(services, "downloader"),
        api_root=bot.get("api_root", "").strip() or None,
        presence_interval=presence_interval,
        http_timeout=http_timeout,
    )

    logger.info(
        "Config loaded: cache_mode=%s, default_langs=%s",
        config.cache_mode.value,
        ",".join(config.default_langs),
    )

    return config
