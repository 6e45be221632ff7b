import logging
from typing import Iterable, Optional

from aiohttp import web

from extractors.providers import (
    MEDIA_KINDS,
    fallback_providers,
    get_provider_display_name,
    primary_provider,
    ranked_provider_info,
)
from extractors.registry import ExtractorRegistry
from extractors.types import ErrorKind, ExtractorContext, ExtractorResult

logger = logging.getLogger(__name__)


def provider_order(media_kind: str) -> list:
    return [primary_provider(media_kind)] + fallback_providers(media_kind)


async def resolve_sources(registry: ExtractorRegistry, providers: Iterable[str], context: ExtractorContext) -> ExtractorResult:
    """Prova i provider nell'ordine dato, con la stessa disciplina del registry.

    I provider senza estrattori registrati vengono saltati; un fallimento con
    should_fallback=False interrompe subito la catena.
    """
    last_result: Optional[ExtractorResult] = None
    for provider in providers:
        if not registry.has_extractors(provider):
            continue
        result = await registry.extract(provider, context)
        if result.success or not result.should_fallback:
            return result
        last_result = result

    if last_result is None:
        return ExtractorResult.fail(ErrorKind.NOT_CONFIGURED, "No provider with registered extractors", should_fallback=True)
    return last_result


def status_for(result: ExtractorResult) -> int:
    """Successo -> 200, errore definitivo -> 404, tentativi esauriti -> 502."""
    if result.success:
        return 200
    if result.kind is ErrorKind.NOT_CONFIGURED or not result.should_fallback:
        return 404
    return 502


class SourceRoutes:
    """Handler HTTP sopra il registry: nessuna logica di estrazione qui."""

    def __init__(self, registry: ExtractorRegistry, key_cache=None, api_password: Optional[str] = None):
        self.registry = registry
        self.key_cache = key_cache
        self.api_password = api_password

    def check_password(self, request) -> bool:
        """Verifica la password API se impostata."""
        if not self.api_password:
            return True
        if request.query.get("api_password") == self.api_password:
            return True
        return request.headers.get("x-api-password") == self.api_password

    async def handle_sources(self, request):
        if not self.check_password(request):
            logger.warning(f"⛔ Accesso negato: Password API non valida o mancante. IP: {request.remote}")
            return web.Response(status=401, text="Unauthorized: Invalid API Password")

        episode_id = request.query.get("episodeId", "").strip()
        if not episode_id:
            return web.json_response({"success": False, "error": "Missing episodeId"}, status=400)

        context = ExtractorContext(
            episode_id=episode_id,
            server_id=request.query.get("serverId") or None,
            server=request.query.get("server") or None,
            sub_or_dub=request.query.get("subOrDub") or None,
            media_id=request.query.get("mediaId") or None,
        )

        provider = request.query.get("provider")
        media_kind = request.query.get("mediaType", "anime")
        if provider:
            providers = [provider]
        elif media_kind in MEDIA_KINDS:
            providers = provider_order(media_kind)
        else:
            return web.json_response({"success": False, "error": f"Unknown mediaType: {media_kind}"}, status=400)

        logger.info(f"📥 Richiesta sorgenti: {episode_id} (provider: {', '.join(providers)})")
        result = await resolve_sources(self.registry, providers, context)
        return web.json_response(result.to_dict(), status=status_for(result))

    async def handle_providers(self, request):
        media_kind = request.query.get("mediaType", "anime")
        if media_kind not in MEDIA_KINDS:
            return web.json_response({"error": f"Unknown mediaType: {media_kind}"}, status=400)
        ranking = ranked_provider_info(media_kind)
        return web.json_response({
            "mediaType": media_kind,
            "primary": primary_provider(media_kind),
            "fallbacks": fallback_providers(media_kind),
            "providers": [dict(p.to_dict(), hasExtractors=self.registry.has_extractors(p.name)) for p in ranking],
        })

    async def handle_api_info(self, request):
        key_status = None
        if self.key_cache is not None:
            entry = self.key_cache.entry
            key_status = {
                "cached": entry is not None,
                "labels": sorted(entry.passwords) if entry else [],
                "ageSeconds": self.key_cache.age(),
                "sourceUrl": self.key_cache.key_url,
            }
        return web.json_response({
            "extractors": [
                {
                    "name": e.name,
                    "priority": e.priority,
                    "providers": [
                        {"name": p, "displayName": get_provider_display_name(p)}
                        for p in e.providers
                    ],
                }
                for e in self.registry.all_extractors()
            ],
            "registeredProviders": self.registry.providers(),
            "keyCache": key_status,
        })

    async def cleanup(self):
        """Pulizia delle risorse"""
        await self.registry.close()
        if self.key_cache is not None:
            await self.key_cache.close()
