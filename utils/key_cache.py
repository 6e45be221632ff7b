import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from utils.http import TransportError, build_session, fetch

logger = logging.getLogger(__name__)


class KeyUnavailable(Exception):
    """Nessuna password utilizzabile: documento chiavi irraggiungibile e cache vuota."""
    pass


@dataclass(frozen=True)
class KeyCacheEntry:
    passwords: Dict[str, str] = field(default_factory=dict)
    fetched_at: float = 0.0
    source_url: str = ""


class KeyCache:
    """Cache condivisa delle password di decrittazione MegaCloud.

    Il documento remoto è una mappa JSON nome -> password che ruota in modo
    indipendente. La voce corrente viene sostituita solo dopo un refresh
    riuscito: se il refresh fallisce, la voce precedente resta valida.
    Un solo refresh alla volta (single-flight); chi arriva durante un refresh
    in corso aspetta il suo esito invece di lanciarne un altro.
    """

    def __init__(self, key_url: str, ttl: float = 1800, timeout: float = 15,
                 proxies: Optional[List[str]] = None, clock: Callable[[], float] = time.monotonic):
        self.key_url = key_url
        self.ttl = ttl
        self.timeout = timeout
        self.proxies = proxies or []
        self._clock = clock
        self._entry: Optional[KeyCacheEntry] = None
        self._stale = False
        self._refresh_lock = asyncio.Lock()
        # Incrementato a ogni tentativo di refresh concluso, riuscito o no
        self._refresh_generation = 0
        self._last_refresh_ok = False
        self.session = None

    @property
    def entry(self) -> Optional[KeyCacheEntry]:
        return self._entry

    def age(self) -> Optional[float]:
        if self._entry is None:
            return None
        return self._clock() - self._entry.fetched_at

    def is_expired(self) -> bool:
        age = self.age()
        return age is None or self._stale or age >= self.ttl

    def is_fresh(self, window: float) -> bool:
        """True se la voce corrente è stata scaricata negli ultimi `window` secondi."""
        age = self.age()
        return age is not None and age < window

    def invalidate(self):
        """Forza il prossimo get_password a ricaricare, senza buttare la voce corrente."""
        if self._entry is not None:
            logger.info("🔄 Chiavi marcate come obsolete, verranno ricaricate alla prossima richiesta.")
        self._stale = True

    def prime(self, passwords: Dict[str, str]):
        """Imposta le chiavi direttamente (avvio con chiavi note, test)."""
        self._entry = KeyCacheEntry(dict(passwords), self._clock(), "primed")
        self._stale = False

    async def _get_session(self):
        if self.session is None or self.session.closed:
            self.session = build_session(self.proxies, timeout=self.timeout)
        return self.session

    async def _fetch_document(self) -> Dict[str, str]:
        session = await self._get_session()
        response = await fetch(session, self.key_url, timeout=self.timeout)
        if not response.ok:
            raise TransportError(f"Documento chiavi ha risposto {response.status}")
        document = response.json()
        if not isinstance(document, dict):
            raise ValueError(f"Documento chiavi non è una mappa JSON: {type(document).__name__}")
        # Le chiavi sconosciute sono tollerate, i valori non stringa ignorati
        return {str(name): value for name, value in document.items() if isinstance(value, str) and value}

    async def refresh(self) -> bool:
        """Scarica il documento chiavi; True se la voce è stata sostituita."""
        generation = self._refresh_generation
        async with self._refresh_lock:
            if generation != self._refresh_generation:
                # Un refresh si è concluso mentre aspettavamo: vale il suo esito
                return self._last_refresh_ok
            return await self._do_refresh()

    async def _do_refresh(self) -> bool:
        logger.info(f"🔑 Recupero chiavi di decrittazione da {self.key_url}")
        try:
            passwords = await self._fetch_document()
        except (TransportError, ValueError) as e:
            logger.warning(f"⚠️ Refresh chiavi fallito: {e}")
            return self._finish_refresh(False)
        if not passwords:
            logger.warning("⚠️ Documento chiavi vuoto, mantengo la voce precedente.")
            return self._finish_refresh(False)
        # Sostituzione atomica: un solo assegnamento dopo il parsing completo
        self._entry = KeyCacheEntry(passwords, self._clock(), self.key_url)
        self._stale = False
        logger.info(f"✅ Chiavi aggiornate: {', '.join(sorted(passwords))}")
        return self._finish_refresh(True)

    def _finish_refresh(self, ok: bool) -> bool:
        self._refresh_generation += 1
        self._last_refresh_ok = ok
        return ok

    async def _ensure_current(self):
        if not self.is_expired():
            return
        generation = self._refresh_generation
        async with self._refresh_lock:
            # Un altro task ha già tentato il refresh mentre aspettavamo:
            # si usa la voce che ha lasciato, anche se ancora obsoleta
            if generation != self._refresh_generation or not self.is_expired():
                return
            await self._do_refresh()

    async def get_password(self, label: str, *fallback_labels: str) -> str:
        await self._ensure_current()
        entry = self._entry
        if entry is None:
            raise KeyUnavailable("Documento chiavi non disponibile e nessuna chiave in cache")
        for name in (label,) + fallback_labels:
            password = entry.passwords.get(name)
            if password:
                return password
        raise KeyUnavailable(f"Nessuna chiave per {', '.join((label,) + fallback_labels)}")

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
