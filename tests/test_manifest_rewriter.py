import re
from urllib.parse import parse_qs, urlparse

import pytest

PROXY = "http://gateway.local/proxy"
BASE = "https://origin.example/live/index.m3u8"


def _reveal(cipher, proxied: str):
    parsed = urlparse(proxied)
    return parsed.path.rsplit("/", 1)[-1], cipher.reveal(parse_qs(parsed.query)["url"][0])


def _uri_attr(line: str) -> str:
    return re.search(r'URI="([^"]+)"', line).group(1)


def test_relative_segment_is_resolved_and_concealed(rewriter, cipher):
    out = rewriter.rewrite("#EXTINF:4.0,\nsegment001.ts", BASE, PROXY).split("\n")

    assert out[0] == "#EXTINF:4.0,"
    assert out[1].startswith(f"{PROXY}/segment?url=")
    assert _reveal(cipher, out[1]) == ("segment", "https://origin.example/live/segment001.ts")


def test_master_playlist_variants_go_to_manifest_endpoint(rewriter, cipher):
    master = (
        "#EXTM3U\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=1280000,RESOLUTION=1280x720\n"
        "720p/index.m3u8\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=2560000,RESOLUTION=1920x1080\n"
        "https://other-cdn.example/1080p/index.m3u8?auth=abc\n"
    )
    lines = rewriter.rewrite(master, "https://origin.example/live/master.m3u8", PROXY).split("\n")

    assert lines[0] == "#EXTM3U"
    assert lines[1].startswith("#EXT-X-STREAM-INF:BANDWIDTH=1280000")
    assert _reveal(cipher, lines[2]) == ("manifest", "https://origin.example/live/720p/index.m3u8")
    assert _reveal(cipher, lines[4]) == ("manifest", "https://other-cdn.example/1080p/index.m3u8?auth=abc")
    assert lines[5] == ""


def test_key_uri_is_routed_to_key_endpoint(rewriter, cipher):
    line = '#EXT-X-KEY:METHOD=AES-128,URI="../keys/k1.key",IV=0x1234'
    out = rewriter.rewrite(line, BASE, PROXY)

    assert out.startswith("#EXT-X-KEY:METHOD=AES-128,URI=\"")
    assert out.endswith(",IV=0x1234")
    assert _reveal(cipher, _uri_attr(out)) == ("key", "https://origin.example/keys/k1.key")


def test_key_without_uri_passes_through(rewriter):
    line = "#EXT-X-KEY:METHOD=NONE"
    assert rewriter.rewrite(line, BASE, PROXY) == line


def test_fmp4_init_and_segments_go_to_segment_endpoint(rewriter, cipher):
    playlist = (
        '#EXT-X-MAP:URI="init.mp4"\n'
        "#EXTINF:2.0,\n"
        "chunk-1.m4s\n"
        "#EXTINF:2.0,\n"
        "/abs/chunk-2.mp4\n"
    )
    lines = rewriter.rewrite(playlist, BASE, PROXY).split("\n")

    assert _reveal(cipher, _uri_attr(lines[0])) == ("segment", "https://origin.example/live/init.mp4")
    assert _reveal(cipher, lines[2]) == ("segment", "https://origin.example/live/chunk-1.m4s")
    assert _reveal(cipher, lines[4]) == ("segment", "https://origin.example/abs/chunk-2.mp4")


def test_alternate_renditions_are_rewritten(rewriter, cipher):
    line = '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="en",URI="audio/en.m3u8"'
    out = rewriter.rewrite(line, BASE, PROXY)
    assert 'GROUP-ID="aud"' in out
    assert _reveal(cipher, _uri_attr(out)) == ("manifest", "https://origin.example/live/audio/en.m3u8")


def test_segment_with_query_string(rewriter, cipher):
    out = rewriter.rewrite("seg_5.ts?hdnts=exp=1~hmac=ff", BASE, PROXY)
    assert _reveal(cipher, out) == ("segment", "https://origin.example/live/seg_5.ts?hdnts=exp=1~hmac=ff")


@pytest.mark.parametrize("line", [
    "",
    "#EXTM3U",
    "#EXT-X-TARGETDURATION:4",
    "#EXT-X-PROGRAM-DATE-TIME:2024-01-01T00:00:00Z",
    "#EXT-X-ENDLIST",
    "some-unknown-resource.vtt",
    "   ",
])
def test_other_lines_pass_through(rewriter, line):
    assert rewriter.rewrite(line, BASE, PROXY) == line


def test_origin_never_leaks_into_output(rewriter):
    playlist = "#EXTM3U\n#EXTINF:4,\nsegment001.ts\n#EXTINF:4,\nsegment002.ts\n"
    out = rewriter.rewrite(playlist, BASE, PROXY)
    assert "origin.example" not in out
    assert out.count(f"{PROXY}/segment?url=") == 2


def test_ciphertexts_differ_between_runs(rewriter, cipher):
    first = rewriter.rewrite("segment001.ts", BASE, PROXY)
    second = rewriter.rewrite("segment001.ts", BASE, PROXY)
    assert first != second
    assert _reveal(cipher, first) == _reveal(cipher, second)


def test_crlf_playlists(rewriter, cipher):
    lines = rewriter.rewrite("#EXTINF:4,\r\nsegment001.ts\r\n", BASE, PROXY).split("\n")
    assert lines[0] == "#EXTINF:4,\r"
    assert _reveal(cipher, lines[1]) == ("segment", "https://origin.example/live/segment001.ts")
