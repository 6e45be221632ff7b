import logging
import threading
from typing import Dict, List, Tuple

from extractors.types import BaseExtractor, ErrorKind, ExtractorContext, ExtractorResult

logger = logging.getLogger(__name__)


class ExtractorRegistry:
    """Registro provider -> estrattori, ordinati per priorità decrescente.

    La mappa viene pubblicata come snapshot: `register` costruisce una copia
    sotto lock e la sostituisce, quindi chi sta iterando non vede mai una
    lista a metà.
    """

    def __init__(self):
        self._extractors: Dict[str, Tuple[BaseExtractor, ...]] = {}
        self._all: Tuple[BaseExtractor, ...] = ()
        self._lock = threading.Lock()

    def register(self, extractor: BaseExtractor):
        with self._lock:
            snapshot = dict(self._extractors)
            for provider in extractor.providers:
                existing = list(snapshot.get(provider, ()))
                for i, current in enumerate(existing):
                    if current is extractor or current.name == extractor.name:
                        existing[i] = extractor
                        break
                else:
                    existing.append(extractor)
                # sorted è stabile: a parità di priorità resta l'ordine di registrazione
                snapshot[provider] = tuple(sorted(existing, key=lambda e: -e.priority))

            all_extractors = [e for e in self._all if e is not extractor and e.name != extractor.name]
            all_extractors.append(extractor)

            self._extractors = snapshot
            self._all = tuple(all_extractors)

        logger.info(f"✅ Registrato {extractor.name} per i provider: {', '.join(extractor.providers)}")

    def get_extractors(self, provider: str) -> List[BaseExtractor]:
        return list(self._extractors.get(provider, ()))

    def has_extractors(self, provider: str) -> bool:
        return bool(self._extractors.get(provider))

    def all_extractors(self) -> List[BaseExtractor]:
        return list(self._all)

    def providers(self) -> List[str]:
        return [p for p, extractors in self._extractors.items() if extractors]

    async def extract(self, provider: str, context: ExtractorContext) -> ExtractorResult:
        """Prova gli estrattori in ordine; restituisce il primo successo o l'ultimo errore."""
        extractors = self.get_extractors(provider)

        if not extractors:
            return ExtractorResult.fail(
                ErrorKind.NOT_CONFIGURED,
                f"No extractors registered for provider: {provider}",
                should_fallback=True,
            )

        logger.info(f"🔍 Provo {len(extractors)} estrattori per {provider}")

        # Estrattori presenti ma nessuno adatto al contesto: diverso da NOT_CONFIGURED
        last_error = ExtractorResult.fail(
            ErrorKind.NO_HANDLER,
            "No extractor could handle this request",
            should_fallback=True,
        )

        for extractor in extractors:
            if not extractor.can_handle(context):
                logger.info(f"ℹ️ {extractor.name} non può gestire questo contesto")
                continue

            logger.info(f"▶️ Provo l'estrattore: {extractor.name}")
            try:
                result = await extractor.extract(context)
            except Exception as e:
                logger.exception(f"❌ {extractor.name} ha sollevato un errore inatteso: {e}")
                last_error = ExtractorResult.fail(
                    ErrorKind.NETWORK,
                    str(e) or type(e).__name__,
                    should_fallback=True,
                    debug={"extractor": extractor.name, "errorType": type(e).__name__},
                )
                continue

            if result.success:
                logger.info(f"✅ {extractor.name} riuscito")
                return result

            logger.warning(f"⚠️ {extractor.name} fallito: {result.error}")
            last_error = result

            if not result.should_fallback:
                return result

        return last_error

    async def close(self):
        for extractor in self._all:
            try:
                await extractor.close()
            except Exception as e:
                logger.error(f"Errore durante la chiusura di {extractor.name}: {e}")


def build_default_registry(settings, key_cache=None):
    """Crea il registry con gli estrattori integrati e la cache chiavi condivisa."""
    from extractors.megacloud import MegaCloudExtractor
    from utils.key_cache import KeyCache

    if key_cache is None:
        key_cache = KeyCache(
            settings.key_url,
            ttl=settings.key_ttl,
            timeout=settings.request_timeout,
            proxies=settings.proxies,
        )

    registry = ExtractorRegistry()
    registry.register(MegaCloudExtractor(
        key_cache,
        base_url=settings.base_url,
        sources_path=settings.sources_path,
        nonce_param=settings.nonce_param,
        timeout=settings.request_timeout,
        retries=settings.request_retries,
        key_fresh_window=settings.key_fresh_window,
        proxies=settings.proxies,
    ))
    return registry, key_cache
