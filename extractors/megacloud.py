import html as html_lib
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlparse

from config import DEFAULT_USER_AGENT, HIANIME_BASE_URL, MEGACLOUD_NONCE_PARAM, MEGACLOUD_SOURCES_PATH
from extractors.types import (
    BaseExtractor,
    EmbedInfo,
    ErrorKind,
    ExtractorContext,
    ExtractorError,
    ExtractorResult,
    ServerInfo,
    SkipMarker,
    SourceBundle,
    SubtitleTrack,
    VideoVariant,
)
from utils.crypto import DecryptionError, decrypt_openssl
from utils.http import FetchedResponse, TransportError, build_session, fetch
from utils.key_cache import KeyCache, KeyUnavailable

logger = logging.getLogger(__name__)

EPISODE_ID_RE = re.compile(r'^(.+?)\$episode\$(\d+)$')
PREFERRED_SERVERS = ("HD-1", "HD-2")

NONCE_48_RE = re.compile(r'\b[a-zA-Z0-9]{48}\b')
NONCE_3X16_RE = re.compile(
    r'x:\s*"([a-zA-Z0-9]{16})".*?y:\s*"([a-zA-Z0-9]{16})".*?z:\s*"([a-zA-Z0-9]{16})"',
    re.DOTALL,
)
PLAYER_TAG_RE = re.compile(r'<[^>]*\bid=["\']megacloud-player["\'][^>]*>', re.IGNORECASE)
DATA_ID_RE = re.compile(r'\bdata-id=["\']([^"\']+)["\']', re.IGNORECASE)

SERVER_ITEM_RE = re.compile(
    r'<(\w+)([^>]*\bclass="[^"]*\bserver-item\b[^"]*"[^>]*)>(.*?)</\1>',
    re.DOTALL | re.IGNORECASE,
)
TAG_RE = re.compile(r'<[^>]+>')


# --- Funzioni di pipeline (pure, testabili singolarmente) ---

def parse_episode_id(episode_id: str) -> Optional[Tuple[str, str]]:
    """Formato: "jujutsu-kaisen-tv-534$episode$10789" -> ("534", "10789")."""
    match = EPISODE_ID_RE.match(episode_id or "")
    if match:
        slug_match = re.search(r'-(\d+)$', match.group(1))
        return (slug_match.group(1) if slug_match else match.group(1)), match.group(2)

    # Fallback: solo il numero dell'episodio
    num_match = re.search(r'(\d+)$', episode_id or "")
    return ("", num_match.group(1)) if num_match else None


def _attr(attrs: str, name: str) -> Optional[str]:
    match = re.search(rf'\b{name}="([^"]*)"', attrs)
    return html_lib.unescape(match.group(1)) if match else None


def parse_servers_html(fragment: str) -> List[ServerInfo]:
    servers = []
    for match in SERVER_ITEM_RE.finditer(fragment or ""):
        attrs, inner = match.group(2), match.group(3)
        server_id = _attr(attrs, "data-id")
        if not server_id:
            continue
        name = " ".join(html_lib.unescape(TAG_RE.sub(" ", inner)).split())
        servers.append(ServerInfo(id=server_id, name=name, type=_attr(attrs, "data-type")))
    return servers


def select_server(servers: List[ServerInfo], context: ExtractorContext) -> Optional[ServerInfo]:
    """Preferenza: server richiesto, poi HD-1/HD-2 del tipo richiesto, poi qualsiasi del tipo."""
    wanted_type = context.sub_or_dub

    def type_ok(server: ServerInfo) -> bool:
        return not wanted_type or server.type == wanted_type

    if context.server:
        for server in servers:
            if server.name.lower() == context.server.lower() and type_ok(server):
                return server

    for server in servers:
        if server.name in PREFERRED_SERVERS and type_ok(server):
            return server

    if wanted_type:
        return next((s for s in servers if s.type == wanted_type), None)
    return servers[0] if servers else None


def parse_embed_url(url: str, referer: Optional[str] = None) -> EmbedInfo:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ExtractorError(f"Embed URL non valido: {url}", ErrorKind.PARSE)
    segments = [s for s in parsed.path.split("/") if s]
    if not segments:
        raise ExtractorError(f"Embed URL senza video id: {url}", ErrorKind.PARSE)
    embed_type = next((s for s in segments if re.fullmatch(r'e-\d+', s)), "e-1")
    return EmbedInfo(
        url=url,
        domain=f"{parsed.scheme}://{parsed.netloc}",
        video_id=segments[-1],
        embed_type=embed_type,
        referer=referer,
    )


def extract_nonce(html: str) -> Optional[str]:
    """Cerca il nonce nella pagina embed; None se nessun pattern corrisponde."""
    html = html or ""

    match = NONCE_48_RE.search(html)
    if match:
        logger.info("🔑 Trovato nonce da 48 caratteri")
        return match.group(0)

    match = NONCE_3X16_RE.search(html)
    if match:
        logger.info("🔑 Trovato nonce 3x16 caratteri")
        return match.group(1) + match.group(2) + match.group(3)

    tag = PLAYER_TAG_RE.search(html)
    if tag:
        data_id = DATA_ID_RE.search(tag.group(0))
        if data_id and len(data_id.group(1)) >= 48:
            logger.info("🔑 Trovato nonce in data-id")
            return data_id.group(1)

    return None


def build_sources_url(embed: EmbedInfo, nonce: str, path_template: str = MEGACLOUD_SOURCES_PATH,
                      nonce_param: str = MEGACLOUD_NONCE_PARAM) -> str:
    base = path_template.format(domain=embed.domain, embed_type=embed.embed_type, video_id=embed.video_id)
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{urlencode({'id': embed.video_id, nonce_param: nonce})}"


def is_encrypted(payload: Dict[str, Any]) -> bool:
    sources = payload.get("sources")
    return isinstance(sources, str) or (bool(payload.get("encrypted")) and not isinstance(sources, list))


def _skip_marker(raw: Any) -> Optional[SkipMarker]:
    if not isinstance(raw, dict):
        return None
    start, end = raw.get("start"), raw.get("end")
    if isinstance(start, bool) or isinstance(end, bool):
        return None
    if not isinstance(start, (int, float)) or not isinstance(end, (int, float)):
        return None
    if end <= start:
        return None
    return SkipMarker(start=start, end=end)


def normalize_sources(payload: Dict[str, Any], referer: Optional[str] = None) -> SourceBundle:
    raw_sources = payload.get("sources")
    variants = []
    for entry in raw_sources if isinstance(raw_sources, list) else []:
        if not isinstance(entry, dict):
            continue
        url = entry.get("file") or entry.get("url")
        if not url or not isinstance(url, str):
            continue
        variants.append(VideoVariant(
            url=url,
            quality=str(entry.get("label") or entry.get("quality") or "auto"),
            is_m3u8=".m3u8" in url or str(entry.get("type") or "").lower() == "hls",
        ))

    raw_tracks = payload.get("tracks")
    subtitles = []
    for track in raw_tracks if isinstance(raw_tracks, list) else []:
        if not isinstance(track, dict):
            continue
        file, label = track.get("file"), track.get("label")
        if not file or not label or not isinstance(file, str) or not isinstance(label, str):
            continue
        # Le tracce "thumbnails" non sono sottotitoli
        if track.get("kind") not in (None, "captions", "subtitles"):
            continue
        subtitles.append(SubtitleTrack(url=file, lang=label))

    return SourceBundle(
        sources=variants,
        subtitles=subtitles,
        intro=_skip_marker(payload.get("intro")),
        outro=_skip_marker(payload.get("outro")),
        headers={"Referer": referer} if referer else {},
    )


class MegaCloudExtractor(BaseExtractor):
    """Estrattore MegaCloud per gli episodi HiAnime.

    1. lista server dell'episodio (ajax HiAnime)
    2. link embed MegaCloud del server scelto
    3. pagina embed -> nonce
    4. getSources con id video e nonce
    5. decrittazione AES-256-CBC se le sorgenti sono cifrate
    """

    name = "megacloud"
    providers = ("hianime",)
    priority = 100
    KEY_LABELS = ("mega", "vidstr")

    def __init__(self, key_cache: KeyCache, base_url: str = HIANIME_BASE_URL,
                 sources_path: str = MEGACLOUD_SOURCES_PATH, nonce_param: str = MEGACLOUD_NONCE_PARAM,
                 timeout: float = 15, retries: int = 1, key_fresh_window: float = 60,
                 proxies: list = None):
        self.key_cache = key_cache
        self.base_url = base_url.rstrip("/")
        self.sources_path = sources_path
        self.nonce_param = nonce_param
        self.timeout = timeout
        self.retries = retries
        self.key_fresh_window = key_fresh_window
        self.proxies = proxies or []
        self.base_headers = {
            "User-Agent": DEFAULT_USER_AGENT,
            "Referer": self.base_url,
            "X-Requested-With": "XMLHttpRequest",
            "Accept": "application/json, text/javascript, */*; q=0.01",
        }
        self.session = None

    def can_handle(self, context: ExtractorContext) -> bool:
        episode_id = context.episode_id or ""
        return bool(EPISODE_ID_RE.match(episode_id)) or episode_id.isdigit()

    async def _get_session(self):
        if self.session is None or self.session.closed:
            self.session = build_session(self.proxies, headers={"User-Agent": DEFAULT_USER_AGENT}, timeout=self.timeout)
        return self.session

    async def _make_request(self, url: str, headers: dict = None) -> FetchedResponse:
        session = await self._get_session()
        try:
            return await fetch(session, url, headers=headers, timeout=self.timeout, retries=self.retries)
        except TransportError as e:
            raise ExtractorError(str(e), ErrorKind.NETWORK) from e

    @staticmethod
    def _json(response: FetchedResponse, what: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ExtractorError(f"Risposta {what} non è JSON valido: {e}", ErrorKind.PARSE) from e

    @staticmethod
    def _expect_ok(response: FetchedResponse, what: str):
        if not response.ok:
            raise ExtractorError(f"{what} ha risposto {response.status}", ErrorKind.NETWORK)

    async def get_servers(self, episode_id: str) -> List[ServerInfo]:
        parsed = parse_episode_id(episode_id)
        if not parsed:
            raise ExtractorError(f"Formato episode ID non valido: {episode_id}", ErrorKind.PARSE)

        endpoint = f"{self.base_url}/ajax/v2/episode/servers?{urlencode({'episodeId': parsed[1]})}"
        logger.info(f"📡 Recupero server da: {endpoint}")
        response = await self._make_request(endpoint, headers=self.base_headers)
        self._expect_ok(response, "Lista server")

        data = self._json(response, "lista server")
        if not isinstance(data, dict):
            raise ExtractorError("Lista server in formato inatteso", ErrorKind.PARSE)
        if data.get("status") is False:
            raise ExtractorError(f"Episodio non disponibile: {episode_id}", ErrorKind.EXPLICIT_UNAVAILABLE)

        servers = parse_servers_html(data.get("html") or "")
        logger.info(f"Trovati {len(servers)} server: {', '.join(s.name for s in servers)}")
        return servers

    async def get_embed_url(self, server_id: str) -> str:
        endpoint = f"{self.base_url}/ajax/v2/episode/sources?{urlencode({'id': server_id})}"
        logger.info(f"📡 Recupero embed URL per il server: {server_id}")
        response = await self._make_request(endpoint, headers=self.base_headers)
        self._expect_ok(response, "Endpoint embed")

        data = self._json(response, "embed")
        link = data.get("link") if isinstance(data, dict) else None
        if not link:
            raise ExtractorError("Nessun embed URL nella risposta", ErrorKind.PARSE)
        logger.info(f"Embed URL: {link}")
        return link

    async def fetch_embed_page(self, embed: EmbedInfo) -> str:
        headers = {
            "User-Agent": DEFAULT_USER_AGENT,
            "Referer": f"{self.base_url}/",
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }
        logger.info("📄 Scarico la pagina embed per il nonce...")
        response = await self._make_request(embed.url, headers=headers)
        if response.status != 200 or not response.text.strip():
            raise ExtractorError(f"Pagina embed non valida (status {response.status})", ErrorKind.NETWORK)
        return response.text

    async def fetch_sources(self, embed: EmbedInfo, nonce: str) -> Dict[str, Any]:
        api_url = build_sources_url(embed, nonce, self.sources_path, self.nonce_param)
        headers = {
            "User-Agent": DEFAULT_USER_AGENT,
            "Referer": embed.url,
            "Origin": embed.domain,
            "X-Requested-With": "XMLHttpRequest",
            "Accept": "*/*",
        }
        logger.info("📡 Recupero sorgenti dall'API MegaCloud...")
        response = await self._make_request(api_url, headers=headers)
        self._expect_ok(response, "getSources")

        data = self._json(response, "getSources")
        if not isinstance(data, dict) or "sources" not in data:
            raise ExtractorError("Risposta getSources senza campo sources", ErrorKind.PARSE)
        return data

    async def decrypt_sources(self, ciphertext: Any) -> List[Dict[str, Any]]:
        if not isinstance(ciphertext, str):
            raise ExtractorError("Payload cifrato non è una stringa", ErrorKind.DECRYPTION)

        try:
            password = await self.key_cache.get_password(*self.KEY_LABELS)
        except KeyUnavailable as e:
            raise ExtractorError(str(e), ErrorKind.KEY_UNAVAILABLE) from e

        try:
            sources = json.loads(decrypt_openssl(ciphertext, password))
            if not isinstance(sources, list):
                raise ValueError(f"attesa una lista, ricevuto {type(sources).__name__}")
        except DecryptionError as e:
            if e.format_mismatch:
                raise ExtractorError(f"Schema di cifratura cambiato: {e}", ErrorKind.DECRYPTION) from e
            raise self._decryption_failure(e) from e
        except ValueError as e:
            raise self._decryption_failure(e) from e

        logger.info(f"🔓 Decrittazione riuscita, {len(sources)} sorgenti")
        return sources

    def _decryption_failure(self, cause: Exception) -> ExtractorError:
        # Chiave appena scaricata e comunque sbagliata: riprovare non serve
        if self.key_cache.is_fresh(self.key_fresh_window):
            return ExtractorError(f"Decrittazione fallita con chiave aggiornata: {cause}",
                                  ErrorKind.DECRYPTION, should_fallback=False)
        self.key_cache.invalidate()
        return ExtractorError(f"Decrittazione fallita, chiave forse obsoleta: {cause}",
                              ErrorKind.DECRYPTION, should_fallback=True)

    async def extract(self, context: ExtractorContext) -> ExtractorResult:
        stage = "servers"
        debug: Dict[str, Any] = {"episodeId": context.episode_id}
        if context.media_id:
            debug["mediaId"] = context.media_id
        try:
            logger.info(f"🎬 Avvio estrazione MegaCloud per: {context.episode_id}")

            if context.server_id:
                server = ServerInfo(id=context.server_id, name=context.server or "", type=context.sub_or_dub)
            else:
                servers = await self.get_servers(context.episode_id)
                if not servers:
                    raise ExtractorError("No servers found", ErrorKind.PARSE)
                server = select_server(servers, context)
                if not server:
                    raise ExtractorError("No suitable server found", ErrorKind.PARSE)
            debug.update(server=server.name, serverType=server.type)
            logger.info(f"Uso il server: {server.name} ({server.type})")

            stage = "embed"
            embed = parse_embed_url(await self.get_embed_url(server.id), referer=self.base_url)
            html = await self.fetch_embed_page(embed)

            stage = "nonce"
            nonce = extract_nonce(html)
            if not nonce:
                raise ExtractorError("Could not find nonce in embed page", ErrorKind.PARSE)

            stage = "sources"
            payload = await self.fetch_sources(embed, nonce)
            debug["encrypted"] = is_encrypted(payload)
            if debug["encrypted"]:
                stage = "decrypt"
                logger.info("🔐 Sorgenti cifrate, decrittazione in corso...")
                payload = dict(payload, sources=await self.decrypt_sources(payload.get("sources")))

            stage = "normalize"
            bundle = normalize_sources(payload, referer=f"{embed.domain}/")
            if not bundle.sources:
                raise ExtractorError("No sources in response", ErrorKind.PARSE)

            debug.update(sourceCount=len(bundle.sources), subtitleCount=len(bundle.subtitles))
            logger.info(f"✅ Estratte {len(bundle.sources)} sorgenti MegaCloud")
            return ExtractorResult.ok(bundle, debug=debug)

        except ExtractorError as e:
            logger.warning(f"⚠️ Estrazione MegaCloud fallita ({stage}): {e}")
            debug["stage"] = stage
            return ExtractorResult.from_error(e, debug=debug)

    async def close(self):
        """Chiude definitivamente la sessione."""
        if self.session and not self.session.closed:
            await self.session.close()
