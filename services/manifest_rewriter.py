import logging
import re
import urllib.parse
from urllib.parse import urljoin, urlparse

from utils.url_cipher import UrlCipher

logger = logging.getLogger(__name__)

PLAYLIST_EXTENSIONS = ('.m3u8',)
SEGMENT_EXTENSIONS = ('.ts',)
FMP4_EXTENSIONS = ('.mp4', '.m4s')

URI_ATTRIBUTE = re.compile(r'URI="([^"]+)"')

# URI-bearing tags and the proxy endpoint their URI is routed to
TAG_ENDPOINTS = (
    ('#EXT-X-KEY', 'key'),
    ('#EXT-X-SESSION-KEY', 'key'),
    ('#EXT-X-MAP', 'segment'),
    ('#EXT-X-MEDIA', 'manifest'),
    ('#EXT-X-I-FRAME-STREAM-INF', 'manifest'),
)


class ManifestRewriter:
    """Rewrites every URI of an HLS playlist so it points back at the proxy.

    Each URI is resolved against the playlist URL, concealed with the
    UrlCipher and emitted as ``<proxy_base>/<endpoint>?url=<ciphertext>``.
    The rewriter never performs any I/O.
    """

    def __init__(self, cipher: UrlCipher):
        self.cipher = cipher

    def proxy_url(self, absolute_url: str, endpoint: str, proxy_base: str) -> str:
        encrypted = self.cipher.conceal(absolute_url)
        return f"{proxy_base.rstrip('/')}/{endpoint}?url={urllib.parse.quote(encrypted, safe='')}"

    def rewrite(self, manifest: str, base_url: str, proxy_base: str) -> str:
        rewritten = []
        for line in manifest.split('\n'):
            rewritten.append(self._rewrite_line(line, base_url, proxy_base))
        return '\n'.join(rewritten)

    def _rewrite_line(self, line: str, base_url: str, proxy_base: str) -> str:
        stripped = line.strip()
        if not stripped:
            return line

        if stripped.startswith('#'):
            return self._rewrite_tag(line, stripped, base_url, proxy_base)

        endpoint = self.endpoint_for(stripped)
        if endpoint is None:
            return line
        return self.proxy_url(urljoin(base_url, stripped), endpoint, proxy_base)

    def _rewrite_tag(self, line: str, stripped: str, base_url: str, proxy_base: str) -> str:
        tag = stripped.split(':', 1)[0]
        endpoint = next((ep for name, ep in TAG_ENDPOINTS if tag == name), None)
        if endpoint is None:
            return line

        match = URI_ATTRIBUTE.search(stripped)
        if not match:
            # e.g. METHOD=NONE keys or audio renditions muxed into the variant
            return line

        proxied = self.proxy_url(urljoin(base_url, match.group(1)), endpoint, proxy_base)
        return URI_ATTRIBUTE.sub(lambda _: f'URI="{proxied}"', stripped, count=1)

    @staticmethod
    def endpoint_for(uri: str):
        """Picks the proxy endpoint for a playlist URI line, or None to pass it through."""
        path = urlparse(uri).path.lower()
        if path.endswith(PLAYLIST_EXTENSIONS):
            return 'manifest'
        if path.endswith(SEGMENT_EXTENSIONS) or path.endswith(FMP4_EXTENSIONS):
            return 'segment'
        return None
