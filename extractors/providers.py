"""
Tabella di affidabilità dei provider.

Classifica e ordine di fallback vengono da test manuali di affidabilità;
aggiornare le tabelle quando cambia la disponibilità di un provider.
"""

from dataclasses import dataclass
from typing import List, Optional

WORKING = "working"
PARTIAL = "partial"
BROKEN = "broken"


@dataclass(frozen=True)
class ProviderInfo:
    name: str
    display_name: str
    status: str
    search_works: bool
    info_works: bool
    sources_work: bool
    has_m3u8: bool
    score: int
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "status": self.status,
            "searchWorks": self.search_works,
            "infoWorks": self.info_works,
            "sourcesWork": self.sources_work,
            "hasM3U8": self.has_m3u8,
            "score": self.score,
            "notes": self.notes,
        }


ANIME_PROVIDERS: List[ProviderInfo] = [
    ProviderInfo("hianime", "HiAnime", WORKING, True, True, True, True, 100,
                 "Primary anime provider. Uses the MegaCloud extractor for sources."),
    ProviderInfo("animepahe", "AnimePahe", WORKING, True, True, True, True, 95,
                 "Reliable sources, multiple quality options."),
    ProviderInfo("animekai", "AnimeKai", WORKING, True, True, True, True, 95,
                 "Fast and reliable. Good subtitle support."),
    ProviderInfo("kickassanime", "KickAssAnime", BROKEN, False, False, False, False, 6,
                 "Currently returning 404 errors on all requests."),
]

MOVIE_PROVIDERS: List[ProviderInfo] = [
    ProviderInfo("flixhq", "FlixHQ", WORKING, True, True, True, True, 100,
                 "Primary movie/TV provider. Wide content library."),
    ProviderInfo("goku", "Goku", WORKING, True, True, True, True, 100,
                 "Good backup for FlixHQ. Similar content library."),
    ProviderInfo("sflix", "SFlix", PARTIAL, True, True, False, False, 56,
                 "Search and info work but sources return 502 errors."),
    ProviderInfo("himovies", "HiMovies", PARTIAL, True, True, False, False, 50,
                 "Uses FlixHQ backend. May have similar issues."),
    ProviderInfo("dramacool", "DramaCool", BROKEN, False, False, False, False, 6,
                 "For Asian dramas only. Not returning results for general searches."),
]

# Usati quando la classifica risulta vuota
DEFAULT_ANIME_PROVIDERS = ["animepahe", "animekai"]
DEFAULT_MOVIE_PROVIDERS = ["flixhq", "goku"]

ALL_VIDEO_PROVIDERS = [p.name for p in ANIME_PROVIDERS + MOVIE_PROVIDERS]

MEDIA_KINDS = ("anime", "movie", "tv")


def _table(media_kind: str) -> List[ProviderInfo]:
    if media_kind == "anime":
        return ANIME_PROVIDERS
    if media_kind in ("movie", "tv"):
        return MOVIE_PROVIDERS
    raise ValueError(f"Unknown media kind: {media_kind}")


def ranked_provider_info(media_kind: str, table: Optional[List[ProviderInfo]] = None) -> List[ProviderInfo]:
    providers = table if table is not None else _table(media_kind)
    # sorted è stabile: a parità di punteggio resta l'ordine della tabella
    return sorted((p for p in providers if p.sources_work), key=lambda p: -p.score)


def ranked_providers(media_kind: str, table: Optional[List[ProviderInfo]] = None) -> List[str]:
    return [p.name for p in ranked_provider_info(media_kind, table)]


def primary_provider(media_kind: str, table: Optional[List[ProviderInfo]] = None) -> str:
    ranking = ranked_providers(media_kind, table)
    if ranking:
        return ranking[0]
    return DEFAULT_ANIME_PROVIDERS[0] if media_kind == "anime" else DEFAULT_MOVIE_PROVIDERS[0]


def fallback_providers(media_kind: str, table: Optional[List[ProviderInfo]] = None) -> List[str]:
    return ranked_providers(media_kind, table)[1:]


def working_providers(media_kind: str) -> List[str]:
    """Provider non segnati come rotti, nell'ordine della tabella (anche solo ricerca)."""
    return [p.name for p in _table(media_kind) if p.status != BROKEN]


def get_provider_info(name: str) -> Optional[ProviderInfo]:
    for info in ANIME_PROVIDERS + MOVIE_PROVIDERS:
        if info.name == name:
            return info
    return None


def is_provider_working(name: str) -> bool:
    info = get_provider_info(name)
    return info.sources_work if info else False


def get_provider_display_name(name: str) -> str:
    info = get_provider_info(name)
    return info.display_name if info else name
