from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorKind(str, Enum):
    NOT_CONFIGURED = "not_configured"
    NETWORK = "network"
    PARSE = "parse"
    DECRYPTION = "decryption"
    KEY_UNAVAILABLE = "key_unavailable"
    EXPLICIT_UNAVAILABLE = "explicit_unavailable"
    NO_HANDLER = "no_handler"

    @property
    def default_fallback(self) -> bool:
        # Solo un'indisponibilità dichiarata dall'upstream è definitiva
        return self is not ErrorKind.EXPLICIT_UNAVAILABLE


class ExtractorError(Exception):
    """Eccezione personalizzata per errori di estrazione."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.NETWORK, should_fallback: Optional[bool] = None):
        super().__init__(message)
        self.kind = kind
        self.should_fallback = kind.default_fallback if should_fallback is None else should_fallback


@dataclass(frozen=True)
class ExtractorContext:
    episode_id: str
    server_id: Optional[str] = None
    server: Optional[str] = None
    sub_or_dub: Optional[str] = None  # "sub" | "dub" | "raw"
    media_id: Optional[str] = None


@dataclass(frozen=True)
class VideoVariant:
    url: str
    quality: str = "auto"
    is_m3u8: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "quality": self.quality, "isM3U8": self.is_m3u8}


@dataclass(frozen=True)
class SubtitleTrack:
    url: str
    lang: str

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "lang": self.lang}


@dataclass(frozen=True)
class SkipMarker:
    start: float
    end: float

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end}


@dataclass
class SourceBundle:
    sources: List[VideoVariant] = field(default_factory=list)
    subtitles: List[SubtitleTrack] = field(default_factory=list)
    intro: Optional[SkipMarker] = None
    outro: Optional[SkipMarker] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "sources": [s.to_dict() for s in self.sources],
            "subtitles": [t.to_dict() for t in self.subtitles],
            "headers": dict(self.headers),
        }
        if self.intro:
            data["intro"] = self.intro.to_dict()
        if self.outro:
            data["outro"] = self.outro.to_dict()
        return data


@dataclass
class ExtractorResult:
    success: bool
    sources: Optional[SourceBundle] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    should_fallback: bool = False
    debug: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, sources: SourceBundle, debug: Optional[Dict[str, Any]] = None) -> "ExtractorResult":
        return cls(success=True, sources=sources, debug=debug)

    @classmethod
    def fail(cls, kind: ErrorKind, error: str, should_fallback: Optional[bool] = None,
             debug: Optional[Dict[str, Any]] = None) -> "ExtractorResult":
        if should_fallback is None:
            should_fallback = kind.default_fallback
        return cls(success=False, error=error, kind=kind, should_fallback=should_fallback, debug=debug)

    @classmethod
    def from_error(cls, exc: ExtractorError, debug: Optional[Dict[str, Any]] = None) -> "ExtractorResult":
        return cls.fail(exc.kind, str(exc), exc.should_fallback, debug)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            data = {"success": True, "sources": self.sources.to_dict() if self.sources else None}
        else:
            data = {
                "success": False,
                "error": self.error,
                "kind": self.kind.value if self.kind else None,
                "shouldFallback": self.should_fallback,
            }
        if self.debug:
            data["debug"] = self.debug
        return data


@dataclass(frozen=True)
class ServerInfo:
    id: str
    name: str
    type: Optional[str] = None


@dataclass(frozen=True)
class EmbedInfo:
    url: str
    domain: str
    video_id: str
    embed_type: str = "e-1"
    referer: Optional[str] = None


class BaseExtractor(ABC):
    """
    Contratto comune a tutti gli estrattori di sorgenti.

    Il registry lavora solo su questa interfaccia. `extract` non deve mai
    lasciar uscire errori di rete o di decrittazione: li restituisce come
    ExtractorResult con `should_fallback` impostato.
    """

    name: str = ""
    providers: Tuple[str, ...] = ()
    priority: int = 0

    @abstractmethod
    def can_handle(self, context: ExtractorContext) -> bool:
        """Controllo strutturale sul contesto, senza chiamate di rete."""

    @abstractmethod
    async def extract(self, context: ExtractorContext) -> ExtractorResult:
        """Risolve le sorgenti video per il contesto."""

    async def close(self):
        pass
