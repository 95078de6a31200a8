import asyncio
import logging
from contextlib import asynccontextmanager
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector
from aiohttp_socks import ProxyConnector

from config import get_proxy_for_url, get_ssl_setting_for_url
from services.errors import UpstreamError, UpstreamTimeout
from services.manifest_rewriter import ManifestRewriter
from services.segment_cache import SegmentCache
from utils.url_cipher import UrlCipher, mask_url

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
REDIRECT_STATUSES = (301, 302, 303, 307, 308)
# Box types an fMP4 media segment or init segment can start with
FMP4_BOXES = (b'ftyp', b'styp', b'moof', b'moov', b'sidx', b'emsg', b'prft', b'free')


def segment_content_type(payload: bytes = b'', upstream_type: str = None) -> str:
    """video/mp2t for transport stream segments, the fMP4 type passed through otherwise."""
    if upstream_type:
        media_type = upstream_type.split(';', 1)[0].strip().lower()
        if 'mp4' in media_type or media_type == 'video/iso.segment':
            return upstream_type
    if payload[4:8] in FMP4_BOXES:
        return 'video/mp4'
    return 'video/mp2t'


class ProxyFetcher:
    """Upstream side of the proxy: decrypts concealed URLs and fetches them.

    Manifests are rewritten before being returned and are never cached.
    Segments are stored in the SegmentCache once fully received.
    """

    def __init__(self, cipher: UrlCipher, rewriter: ManifestRewriter, cache: SegmentCache,
                 user_agent: str, timeout: float = 30, key_timeout: float = 10,
                 max_redirects: int = 5, transport_routes: list = None, global_proxies: list = None):
        self.cipher = cipher
        self.rewriter = rewriter
        self.cache = cache
        self.user_agent = user_agent
        self.timeout = timeout
        self.key_timeout = key_timeout
        self.max_redirects = max_redirects
        self.transport_routes = transport_routes or []
        self.global_proxies = global_proxies or []

        # Shared direct session
        self.session = None
        # Cache for proxy sessions (proxy_url -> session)
        self.proxy_sessions = {}

    async def _get_session(self):
        if self.session is None or self.session.closed:
            connector = TCPConnector(
                limit=0,
                limit_per_host=0,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )
            self.session = ClientSession(
                timeout=ClientTimeout(total=self.timeout),
                connector=connector
            )
        return self.session

    async def _get_proxy_session(self, url: str):
        """Returns the session to use for ``url``, routed through a proxy when configured."""
        proxy = get_proxy_for_url(url, self.transport_routes, self.global_proxies)

        if proxy:
            cached_session = self.proxy_sessions.get(proxy)
            if cached_session is not None and not cached_session.closed:
                return cached_session
            self.proxy_sessions.pop(proxy, None)

            logger.info(f"🌍 Creating proxy session: {proxy}")
            try:
                connector = ProxyConnector.from_url(
                    proxy,
                    limit=0,
                    limit_per_host=0,
                    keepalive_timeout=60
                )
            except ValueError as e:
                logger.warning(f"⚠️ Failed to create proxy connector: {e}, falling back to direct")
            else:
                session = ClientSession(timeout=ClientTimeout(total=self.timeout), connector=connector)
                self.proxy_sessions[proxy] = session
                return session

        return await self._get_session()

    @asynccontextmanager
    async def _open(self, url: str, timeout: float, allow_redirects: bool):
        """GETs ``url`` and yields the response. Timeouts and connection failures
        become UpstreamTimeout / UpstreamError."""
        session = await self._get_proxy_session(url)
        disable_ssl = get_ssl_setting_for_url(url, self.transport_routes)
        headers = {'User-Agent': self.user_agent, 'Accept': '*/*'}
        try:
            async with session.get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=timeout),
                allow_redirects=allow_redirects,
                max_redirects=self.max_redirects,
                ssl=not disable_ssl,
            ) as resp:
                yield resp
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Upstream timeout after {timeout:.0f}s: {mask_url(url)}")
            raise UpstreamTimeout() from None
        except aiohttp.TooManyRedirects:
            logger.warning(f"⚠️ Too many redirects: {mask_url(url)}")
            raise UpstreamError("Too many redirects from stream source") from None
        except aiohttp.ClientError as e:
            logger.warning(f"⚠️ Connection to source failed: {mask_url(url)} ({type(e).__name__})")
            raise UpstreamError("Failed to connect to stream source") from None

    @staticmethod
    def _check_status(resp, url: str):
        if not 200 <= resp.status < 300:
            logger.error(f"❌ Upstream returned {resp.status} for {mask_url(url)}")
            raise UpstreamError(upstream_status=resp.status)

    async def fetch_manifest(self, encrypted_url: str, proxy_base: str, redirects: int = 0) -> str:
        """Fetches a playlist and returns it rewritten to point at ``proxy_base``.

        Redirects are followed by re-concealing the target and fetching again,
        so relative URIs resolve against the final location.
        """
        original_url = self.cipher.reveal(encrypted_url)
        logger.info(f"📜 Manifest request: {mask_url(original_url)}")

        async with self._open(original_url, self.timeout, allow_redirects=False) as resp:
            location = resp.headers.get('Location')
            if resp.status in REDIRECT_STATUSES and location:
                if redirects >= self.max_redirects:
                    logger.warning(f"⚠️ Redirect limit ({self.max_redirects}) reached for {mask_url(original_url)}")
                    raise UpstreamError("Too many redirects from stream source", upstream_status=resp.status)
                redirect_url = urljoin(original_url, location)
                logger.info(f"↪️ Manifest redirect: {mask_url(redirect_url)}")
                next_url = self.cipher.conceal(redirect_url)
            else:
                self._check_status(resp, original_url)
                content_bytes = await resp.read()
                next_url = None

        if next_url is not None:
            return await self.fetch_manifest(next_url, proxy_base, redirects + 1)

        manifest = content_bytes.decode('utf-8', errors='replace')
        rewritten = self.rewriter.rewrite(manifest, original_url, proxy_base)
        logger.info(f"✅ Manifest proxied: {mask_url(original_url)} ({len(rewritten)} chars)")
        return rewritten

    def cached_segment(self, encrypted_url: str):
        """Returns ``(payload, content_type)`` from the cache, or None."""
        return self.cache.lookup(encrypted_url)

    async def fetch_segment(self, encrypted_url: str, on_chunk=None):
        """Downloads a segment, handing each chunk to ``on_chunk`` as it arrives.

        ``on_chunk(chunk, content_type)`` is only called once the upstream
        status is known to be a success, so a caller can still send an error
        response before that. The complete payload is stored in the cache
        afterwards together with its content type. Returns
        ``(payload, content_type)``.
        """
        original_url = self.cipher.reveal(encrypted_url)

        chunks = []
        content_type = None
        async with self._open(original_url, self.timeout, allow_redirects=True) as resp:
            self._check_status(resp, original_url)
            upstream_type = resp.headers.get('Content-Type')
            try:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    if content_type is None:
                        content_type = segment_content_type(chunk, upstream_type)
                    chunks.append(chunk)
                    if on_chunk is not None:
                        await on_chunk(chunk, content_type)
            except asyncio.TimeoutError:
                logger.warning(f"⏱️ Segment body timed out: {mask_url(original_url)}")
                raise UpstreamTimeout() from None
            except aiohttp.ClientPayloadError:
                logger.warning(f"⚠️ Segment body truncated: {mask_url(original_url)}")
                raise UpstreamError("Stream source closed the connection") from None

        data = b''.join(chunks)
        if content_type is None:
            content_type = segment_content_type(data, upstream_type)
        self.cache.put(encrypted_url, data, content_type)
        logger.debug(f"📦 Segment proxied: {mask_url(original_url)} ({len(data)} bytes, {content_type})")
        return data, content_type

    async def fetch_key(self, encrypted_url: str) -> bytes:
        original_url = self.cipher.reveal(encrypted_url)
        logger.info(f"🔑 Fetching key: {mask_url(original_url)}")
        async with self._open(original_url, self.key_timeout, allow_redirects=True) as resp:
            self._check_status(resp, original_url)
            return await resp.read()

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        for session in list(self.proxy_sessions.values()):
            if not session.closed:
                await session.close()
        self.proxy_sessions.clear()
