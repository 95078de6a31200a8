import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from services.manifest_rewriter import ManifestRewriter
from services.segment_cache import SegmentCache
from services.stream_registry import StreamRegistry
from services.token_service import TokenService
from utils.url_cipher import UrlCipher

SECRET = "test-secret-with-at-least-32-characters"
ISSUER = "live-streaming-platform"
AUDIENCE = "stream-viewers"

MEDIA_PLAYLIST = (
    "#EXTM3U\n"
    "#EXT-X-VERSION:3\n"
    "#EXT-X-TARGETDURATION:4\n"
    "#EXT-X-KEY:METHOD=AES-128,URI=\"keys/k1.key\",IV=0x00000000000000000000000000000001\n"
    "#EXTINF:4.0,\n"
    "segment001.ts\n"
    "#EXTINF:4.0,\n"
    "segment002.ts\n"
)
SEGMENT_BYTES = b"\x47" + bytes(range(256)) * 80
# fMP4 media segment opening with an event message box ahead of moof
FMP4_AUDIO_BYTES = b"\x00\x00\x00\x20emsg" + bytes(24) + b"\x00\x00\x10\x08moof" + bytes(4096)
KEY_BYTES = bytes(range(16))


class FakeClock:
    """Datetime clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture(scope="session")
def cipher():
    return UrlCipher(SECRET)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return StreamRegistry(clock=clock)


def make_token_service(cipher, registry, max_viewers=1000):
    return TokenService(
        SECRET, cipher, registry,
        issuer=ISSUER, audience=AUDIENCE,
        default_expiry_minutes=120, max_viewers=max_viewers,
    )


@pytest.fixture
def token_service(cipher, registry):
    return make_token_service(cipher, registry)


@pytest.fixture
def rewriter(cipher):
    return ManifestRewriter(cipher)


@pytest.fixture
def segment_cache():
    return SegmentCache(max_size=1024 * 1024, ttl=30)


def build_origin(hits: Counter) -> web.Application:
    async def media_playlist(request):
        hits[request.path] += 1
        return web.Response(text=MEDIA_PLAYLIST, content_type="application/vnd.apple.mpegurl")

    async def moved(request):
        hits[request.path] += 1
        raise web.HTTPFound("/new/live/index.m3u8")

    async def redirect_loop(request):
        hits[request.path] += 1
        raise web.HTTPFound("/loop.m3u8")

    async def segment(request):
        hits[request.path] += 1
        return web.Response(body=SEGMENT_BYTES, content_type="video/mp2t")

    async def key(request):
        hits[request.path] += 1
        return web.Response(body=KEY_BYTES, content_type="application/octet-stream")

    async def fmp4_audio(request):
        hits[request.path] += 1
        return web.Response(body=FMP4_AUDIO_BYTES, content_type="audio/mp4")

    async def fmp4_untyped(request):
        hits[request.path] += 1
        return web.Response(body=FMP4_AUDIO_BYTES)

    async def truncated(request):
        hits[request.path] += 1
        response = web.StreamResponse(headers={"Content-Type": "video/mp2t"})
        response.content_length = 100 * 1024
        await response.prepare(request)
        await response.write(SEGMENT_BYTES[:20 * 1024])
        # Let the client consume what was sent before the connection drops
        await asyncio.sleep(0.2)
        request.transport.close()
        return response

    async def slow(request):
        await asyncio.sleep(1.5)
        return web.Response(body=SEGMENT_BYTES)

    async def broken(request):
        return web.Response(status=500, text="origin exploded")

    app = web.Application()
    app.router.add_get("/live/index.m3u8", media_playlist)
    app.router.add_get("/new/live/index.m3u8", media_playlist)
    app.router.add_get("/old/index.m3u8", moved)
    app.router.add_get("/loop.m3u8", redirect_loop)
    app.router.add_get("/live/segment001.ts", segment)
    app.router.add_get("/new/live/segment001.ts", segment)
    app.router.add_get("/live/keys/k1.key", key)
    app.router.add_get("/slow.ts", slow)
    app.router.add_get("/live/audio/chunk-1.m4s", fmp4_audio)
    app.router.add_get("/live/untyped.m4s", fmp4_untyped)
    app.router.add_get("/truncated.ts", truncated)
    app.router.add_get("/slow.m3u8", slow)
    app.router.add_get("/broken.ts", broken)
    return app


@pytest.fixture
def origin_hits():
    return Counter()


@pytest.fixture
async def origin(origin_hits):
    server = TestServer(build_origin(origin_hits))
    await server.start_server()
    yield server
    await server.close()
