import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv() # Carica le variabili dal file .env

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/137.0.0.0 Mobile Safari/537.36"

HIANIME_BASE_URL = "https://hianime.to"
MEGACLOUD_KEY_URL = "https://raw.githubusercontent.com/yogesh-hacker/MegacloudKeys/refs/heads/main/keys.json"
MEGACLOUD_SOURCES_PATH = "{domain}/embed-2/v3/{embed_type}/getSources"
MEGACLOUD_NONCE_PARAM = "_k"


def parse_proxies(proxy_env_var: str) -> list:
    """Analizza una stringa di proxy separati da virgola da una variabile d'ambiente."""
    proxies_str = os.environ.get(proxy_env_var, "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Valore non valido per {name}: {raw!r}, uso il default {default}")
        return default


@dataclass
class Settings:
    base_url: str = HIANIME_BASE_URL
    key_url: str = MEGACLOUD_KEY_URL
    sources_path: str = MEGACLOUD_SOURCES_PATH
    nonce_param: str = MEGACLOUD_NONCE_PARAM
    key_ttl: float = 1800.0
    key_fresh_window: float = 60.0
    request_timeout: float = 15.0
    request_retries: int = 1
    global_proxies: List[str] = field(default_factory=list)
    megacloud_proxies: List[str] = field(default_factory=list)
    api_password: Optional[str] = None
    log_level: str = "INFO"
    port: int = 7860

    @property
    def proxies(self) -> List[str]:
        # I proxy specifici MegaCloud hanno la precedenza su quelli globali
        return self.megacloud_proxies or self.global_proxies


def load_settings() -> Settings:
    """Costruisce le impostazioni leggendo l'ambiente (già popolato da .env)."""
    settings = Settings(
        base_url=os.environ.get("HIANIME_BASE_URL", HIANIME_BASE_URL).rstrip("/"),
        key_url=os.environ.get("MEGACLOUD_KEY_URL", MEGACLOUD_KEY_URL),
        sources_path=os.environ.get("MEGACLOUD_SOURCES_PATH", MEGACLOUD_SOURCES_PATH),
        nonce_param=os.environ.get("MEGACLOUD_NONCE_PARAM", MEGACLOUD_NONCE_PARAM),
        key_ttl=_env_float("KEY_CACHE_TTL", 1800.0),
        key_fresh_window=_env_float("KEY_FRESH_WINDOW", 60.0),
        request_timeout=_env_float("REQUEST_TIMEOUT", 15.0),
        request_retries=max(1, int(_env_float("REQUEST_RETRIES", 1))),
        global_proxies=parse_proxies("GLOBAL_PROXY"),
        megacloud_proxies=parse_proxies("MEGACLOUD_PROXY"),
        api_password=os.environ.get("API_PASSWORD") or None,
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        port=int(_env_float("PORT", 7860)),
    )

    if settings.global_proxies: logger.info(f"🌍 Caricati {len(settings.global_proxies)} proxy globali.")
    if settings.megacloud_proxies: logger.info(f"🎬 Caricati {len(settings.megacloud_proxies)} proxy MegaCloud.")

    return settings
