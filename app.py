import logging
import sys

from aiohttp import web

from config import load_settings
from extractors.registry import build_default_registry
from routes.sources import SourceRoutes

settings = load_settings()

# --- Configurazione Logging ---
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s'
)

logger = logging.getLogger(__name__)


def create_app(app_settings=None, registry=None, key_cache=None):
    """Crea e configura l'applicazione aiohttp."""
    app_settings = app_settings or settings
    if registry is None:
        registry, key_cache = build_default_registry(app_settings, key_cache)

    routes = SourceRoutes(registry, key_cache=key_cache, api_password=app_settings.api_password)

    app = web.Application()
    app["registry"] = registry
    app["key_cache"] = key_cache

    app.router.add_get('/api/sources', routes.handle_sources)
    app.router.add_get('/api/providers', routes.handle_providers)
    app.router.add_get('/api/info', routes.handle_api_info)

    async def cleanup_handler(app):
        await routes.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Funzione principale per avviare il server."""
    # Workaround per Windows
    if sys.platform == 'win32':
        logging.getLogger('asyncio').setLevel(logging.CRITICAL)

    logger.info(f"🚀 Avvio server sorgenti su http://0.0.0.0:{settings.port}")
    logger.info("🔗 Endpoints: /api/sources, /api/providers, /api/info")

    web.run_app(create_app(), host='0.0.0.0', port=settings.port)


if __name__ == '__main__':
    main()
