import pytest

from extractors.megacloud import (
    build_sources_url,
    extract_nonce,
    is_encrypted,
    normalize_sources,
    parse_embed_url,
    parse_episode_id,
    parse_servers_html,
    select_server,
)
from extractors.types import ExtractorContext, ExtractorError, ServerInfo, SkipMarker

NONCE_48 = "aB3dE5gH7jK9mN1pQ3sT5vX7zA9cE1gI3kM5oQ7sU9wY1aC3"
PART_X = "A1b2C3d4E5f6G7h8"
PART_Y = "I9j0K1l2M3n4O5p6"
PART_Z = "Q7r8S9t0U1v2W3x4"
DATA_ID_LONG = "Zz9Yy8Xx7Ww6Vv5Uu4Tt3Ss2Rr1Qq0Pp9Oo8Nn7Mm6Ll5Kk4Jj3Ii2Hh1Gg0Ff9"

EMBED_48 = f"""<html><head><script>window._xy_ws = "{NONCE_48}";</script></head>
<body><div id="megacloud-player" data-id="abc"></div></body></html>"""

EMBED_3X16 = f"""<html><body><script>
window._lk_db = {{
    x: "{PART_X}",
    y: "{PART_Y}",
    z: "{PART_Z}"
}};
</script></body></html>"""

EMBED_DATA_ID = f"""<html><body>
<div class="player" id="megacloud-player" data-id="{DATA_ID_LONG}" data-realid="x"></div>
</body></html>"""

EMBED_NOTHING = """<html><body><div id="megacloud-player" data-id="short"></div>
<script>var token = "tooShort123";</script></body></html>"""

SERVERS_HTML = """
<div class="ps_-block ps_-block-sub servers-sub">
  <div class="ps__-list">
    <div class="item server-item" data-type="sub" data-id="111" data-server-id="4">
        <a href="javascript:;" class="btn">HD-1</a>
    </div>
    <div class="item server-item" data-type="sub" data-id="222" data-server-id="1">
        <a href="javascript:;" class="btn">HD-2</a>
    </div>
  </div>
</div>
<div class="ps_-block ps_-block-sub servers-dub">
  <div class="ps__-list">
    <div class="item server-item" data-type="dub" data-id="333" data-server-id="4">
        <a href="javascript:;" class="btn">HD-1</a>
    </div>
    <div class="item server-item" data-type="dub" data-id="444" data-server-id="6">
        <a href="javascript:;" class="btn">StreamSB</a>
    </div>
  </div>
</div>
"""


def test_nonce_48_char_token() -> None:
    assert extract_nonce(EMBED_48) == NONCE_48


def test_nonce_three_16_char_parts() -> None:
    assert extract_nonce(EMBED_3X16) == PART_X + PART_Y + PART_Z


def test_nonce_player_data_id() -> None:
    assert extract_nonce(EMBED_DATA_ID) == DATA_ID_LONG


def test_nonce_not_found_returns_none() -> None:
    assert extract_nonce(EMBED_NOTHING) is None
    assert extract_nonce("") is None


def test_parse_episode_id_formats() -> None:
    assert parse_episode_id("jujutsu-kaisen-tv-534$episode$10789") == ("534", "10789")
    assert parse_episode_id("12345") == ("", "12345")
    assert parse_episode_id("no-digits-here") is None


def test_parse_servers_html() -> None:
    servers = parse_servers_html(SERVERS_HTML)
    assert servers == [
        ServerInfo("111", "HD-1", "sub"),
        ServerInfo("222", "HD-2", "sub"),
        ServerInfo("333", "HD-1", "dub"),
        ServerInfo("444", "StreamSB", "dub"),
    ]


def test_select_server_preferences() -> None:
    servers = parse_servers_html(SERVERS_HTML)
    assert select_server(servers, ExtractorContext("1")).id == "111"
    assert select_server(servers, ExtractorContext("1", sub_or_dub="dub")).id == "333"
    assert select_server(servers, ExtractorContext("1", server="hd-2")).id == "222"
    assert select_server(servers, ExtractorContext("1", server="StreamSB", sub_or_dub="dub")).id == "444"
    assert select_server(servers, ExtractorContext("1", sub_or_dub="raw")) is None
    assert select_server([], ExtractorContext("1")) is None


def test_select_server_falls_back_to_type_then_first() -> None:
    servers = [ServerInfo("9", "Vidstreaming", "sub"), ServerInfo("8", "MegaCloud", "dub")]
    assert select_server(servers, ExtractorContext("1", sub_or_dub="dub")).id == "8"
    assert select_server(servers, ExtractorContext("1")).id == "9"


def test_parse_embed_url() -> None:
    embed = parse_embed_url("https://megacloud.blog/embed-2/v3/e-1/AbCdEf123?k=1", referer="https://hianime.to")
    assert embed.domain == "https://megacloud.blog"
    assert embed.video_id == "AbCdEf123"
    assert embed.embed_type == "e-1"
    assert embed.referer == "https://hianime.to"

    assert parse_embed_url("https://host.example/video/xyz").embed_type == "e-1"


def test_parse_embed_url_rejects_garbage() -> None:
    with pytest.raises(ExtractorError):
        parse_embed_url("not a url")


def test_build_sources_url_default_and_legacy_shapes() -> None:
    embed = parse_embed_url("https://megacloud.blog/embed-2/v3/e-1/VID")
    assert build_sources_url(embed, "NONCE") == "https://megacloud.blog/embed-2/v3/e-1/getSources?id=VID&_k=NONCE"
    legacy = build_sources_url(embed, "NONCE", "{domain}/embed-2/ajax/{embed_type}/getSources", "t")
    assert legacy == "https://megacloud.blog/embed-2/ajax/e-1/getSources?id=VID&t=NONCE"


def test_is_encrypted() -> None:
    assert is_encrypted({"sources": "U2FsdGVkX1..."})
    assert is_encrypted({"sources": None, "encrypted": True})
    assert not is_encrypted({"sources": [], "encrypted": True})
    assert not is_encrypted({"sources": [{"file": "x"}]})


def test_normalize_sources_maps_everything() -> None:
    payload = {
        "sources": [
            {"file": "https://cdn/master.m3u8", "type": "hls"},
            {"file": "https://cdn/video.mp4", "type": "mp4", "label": "720p"},
            {"type": "hls"},
            "garbage",
        ],
        "tracks": [
            {"file": "https://cdn/en.vtt", "label": "English", "kind": "captions", "default": True},
            {"file": "https://cdn/es.vtt", "label": "Spanish"},
            {"file": "https://cdn/thumbs.vtt", "kind": "thumbnails"},
            {"file": "https://cdn/unlabelled.vtt", "kind": "captions"},
        ],
        "intro": {"start": 31, "end": 115},
        "outro": {"start": 0, "end": 0},
    }
    bundle = normalize_sources(payload, referer="https://megacloud.blog/")

    assert [(v.url, v.quality, v.is_m3u8) for v in bundle.sources] == [
        ("https://cdn/master.m3u8", "auto", True),
        ("https://cdn/video.mp4", "720p", False),
    ]
    assert [(t.url, t.lang) for t in bundle.subtitles] == [
        ("https://cdn/en.vtt", "English"),
        ("https://cdn/es.vtt", "Spanish"),
    ]
    assert bundle.intro == SkipMarker(31, 115)
    assert bundle.outro is None
    assert bundle.headers == {"Referer": "https://megacloud.blog/"}


def test_normalize_sources_tolerates_missing_fields() -> None:
    bundle = normalize_sources({"sources": "still-encrypted"})
    assert bundle.sources == []
    assert bundle.subtitles == []
    assert bundle.intro is None and bundle.outro is None
    assert bundle.headers == {}


def test_normalize_sources_skips_wrongly_typed_fields() -> None:
    payload = {
        "sources": [
            {"file": 123, "type": "hls"},
            {"url": ["https://cdn/list.m3u8"]},
            {"file": "https://cdn/ok.m3u8", "type": "hls"},
        ],
        "tracks": [
            {"file": 7, "label": "English"},
            {"file": "https://cdn/es.vtt", "label": {"lang": "es"}},
            {"file": "https://cdn/it.vtt", "label": "Italian"},
        ],
    }
    bundle = normalize_sources(payload)

    assert [v.url for v in bundle.sources] == ["https://cdn/ok.m3u8"]
    assert [(t.url, t.lang) for t in bundle.subtitles] == [("https://cdn/it.vtt", "Italian")]


@pytest.mark.parametrize("tracks", [5, "https://cdn/en.vtt", {"file": "https://cdn/en.vtt"}, None])
def test_normalize_sources_ignores_non_list_tracks(tracks) -> None:
    bundle = normalize_sources({"sources": [{"file": "https://cdn/x.m3u8"}], "tracks": tracks})

    assert len(bundle.sources) == 1
    assert bundle.subtitles == []
