import asyncio
import json
import logging
import random
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector
from aiohttp_proxy import ProxyConnector

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Errore di rete: timeout, connessione rifiutata, payload troncato."""
    pass


class FetchedResponse:
    """Risposta già letta, così la sessione può essere rilasciata subito."""

    def __init__(self, text: str, status: int, headers: Dict[str, str], url: str):
        self.text = text
        self.status = status
        self.headers = headers
        self.url = url

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.text)


def pick_proxy(proxies: Optional[List[str]]) -> Optional[str]:
    """Restituisce un proxy casuale dalla lista."""
    return random.choice(proxies) if proxies else None


def build_session(proxies: Optional[List[str]] = None, headers: Optional[dict] = None,
                  timeout: float = 15) -> ClientSession:
    """Crea una sessione HTTP persistente, via proxy se configurato."""
    client_timeout = ClientTimeout(total=timeout, connect=min(timeout, 10))
    proxy = pick_proxy(proxies)
    if proxy:
        logger.info(f"🔗 Utilizzo del proxy {proxy} per la sessione.")
        connector = ProxyConnector.from_url(proxy)
    else:
        connector = TCPConnector(
            limit=20,
            limit_per_host=10,
            keepalive_timeout=60,
            enable_cleanup_closed=True,
            force_close=False,
            use_dns_cache=True
        )
    return ClientSession(
        timeout=client_timeout,
        connector=connector,
        headers=headers or {},
        cookie_jar=aiohttp.CookieJar()
    )


async def fetch(session: ClientSession, url: str, headers: Optional[dict] = None,
                timeout: float = 15, retries: int = 1, initial_delay: float = 1) -> FetchedResponse:
    """GET con timeout limitato e retry sui soli errori di connessione.

    Gli status HTTP non vengono interpretati qui: il chiamante decide cosa
    significa un 404 o un 500. Gli errori di trasporto diventano TransportError.
    """
    retries = max(1, retries)
    for attempt in range(retries):
        try:
            async with session.get(url, headers=headers or {}, timeout=ClientTimeout(total=timeout)) as response:
                text = await response.text()
                return FetchedResponse(text, response.status, dict(response.headers), str(response.url))
        except (
            aiohttp.ClientConnectionError,
            aiohttp.ClientPayloadError,
            aiohttp.ClientResponseError,
            asyncio.TimeoutError,
            OSError,
        ) as e:
            reason = str(e) or type(e).__name__
            logger.warning(f"⚠️ Errore connessione tentativo {attempt + 1}/{retries} per {url}: {reason}")
            if attempt == retries - 1:
                raise TransportError(f"Richiesta fallita per {url}: {reason}") from e
            delay = initial_delay * (2 ** attempt)
            logger.info(f"⏳ Aspetto {delay} secondi prima del prossimo tentativo...")
            await asyncio.sleep(delay)
    raise TransportError(f"Richiesta fallita per {url}")
