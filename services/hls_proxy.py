import logging

from aiohttp import web

from services.errors import GatewayError
from services.proxy_fetcher import ProxyFetcher

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, OPTIONS',
    'Access-Control-Allow-Headers': 'Range, Content-Type',
}


class ClientDisconnected(Exception):
    """The viewer closed its connection while a segment was being relayed."""


def error_response(error: GatewayError) -> web.Response:
    return web.json_response(error.to_dict(), status=error.status, headers=CORS_HEADERS)


class HLSProxy:
    """HTTP face of the proxy: manifest, segment and key endpoints.

    Every endpoint takes the concealed origin URL in the ``url`` query
    parameter. Nothing here ever reveals the origin to the client.
    """

    def __init__(self, fetcher: ProxyFetcher, segment_max_age: int = 30):
        self.fetcher = fetcher
        self.segment_max_age = segment_max_age

    @staticmethod
    def _proxy_base(request) -> str:
        # Detect the correct scheme and host when behind a reverse proxy
        scheme = request.headers.get('X-Forwarded-Proto', request.scheme)
        host = request.headers.get('X-Forwarded-Host', request.host)
        return f"{scheme}://{host}/proxy"

    @staticmethod
    def _encrypted_url(request):
        encrypted_url = request.query.get('url')
        if not encrypted_url:
            return None, web.json_response({'error': 'Missing URL parameter'}, status=400, headers=CORS_HEADERS)
        return encrypted_url, None

    async def handle_manifest(self, request):
        """Proxies an HLS playlist, rewriting every URI it references."""
        encrypted_url, bad_request = self._encrypted_url(request)
        if bad_request:
            return bad_request

        try:
            manifest = await self.fetcher.fetch_manifest(encrypted_url, self._proxy_base(request))
        except GatewayError as e:
            return error_response(e)
        except Exception as e:
            logger.error(f"❌ Unexpected error in manifest proxy: {type(e).__name__}")
            return web.json_response({'error': 'Internal proxy error'}, status=500, headers=CORS_HEADERS)

        return web.Response(
            text=manifest,
            headers={
                **CORS_HEADERS,
                'Content-Type': 'application/vnd.apple.mpegurl',
                'Cache-Control': 'no-cache, no-store, must-revalidate'
            }
        )

    async def handle_segment(self, request):
        """Serves a segment from cache, or relays it from the origin while caching it."""
        encrypted_url, bad_request = self._encrypted_url(request)
        if bad_request:
            return bad_request

        cached = self.fetcher.cached_segment(encrypted_url)
        if cached is not None:
            payload, content_type = cached
            return web.Response(
                body=payload,
                headers={
                    **CORS_HEADERS,
                    'Content-Type': content_type or 'video/mp2t',
                    'X-Cache': 'HIT',
                    'Cache-Control': f'public, max-age={self.segment_max_age}'
                }
            )

        response = None

        async def relay(chunk, content_type):
            nonlocal response
            try:
                if response is None:
                    response = web.StreamResponse(
                        status=200,
                        headers={
                            **CORS_HEADERS,
                            'Content-Type': content_type,
                            'X-Cache': 'MISS',
                            'Cache-Control': f'public, max-age={self.segment_max_age}'
                        }
                    )
                    await response.prepare(request)
                await response.write(chunk)
            except ConnectionResetError:
                raise ClientDisconnected() from None

        try:
            data, content_type = await self.fetcher.fetch_segment(encrypted_url, on_chunk=relay)
        except ClientDisconnected:
            logger.info("ℹ️ Client disconnected during segment relay")
            return response
        except GatewayError as e:
            if response is None:
                return error_response(e)
            # Headers are already out: the only honest signal left is closing the connection
            logger.warning(f"⚠️ Segment relay aborted mid-stream: {e.message}")
            if request.transport is not None:
                request.transport.close()
            return response
        except Exception as e:
            logger.error(f"❌ Unexpected error in segment proxy: {type(e).__name__}")
            if response is None:
                return web.json_response({'error': 'Internal proxy error'}, status=500, headers=CORS_HEADERS)
            if request.transport is not None:
                request.transport.close()
            return response

        if response is None:
            # Empty upstream body
            return web.Response(
                body=data,
                headers={**CORS_HEADERS, 'Content-Type': content_type, 'X-Cache': 'MISS'}
            )
        await response.write_eof()
        return response

    async def handle_key(self, request):
        """Proxies an AES-128 key URI."""
        encrypted_url, bad_request = self._encrypted_url(request)
        if bad_request:
            return bad_request

        try:
            key_data = await self.fetcher.fetch_key(encrypted_url)
        except GatewayError as e:
            return error_response(e)
        except Exception as e:
            logger.error(f"❌ Unexpected error in key proxy: {type(e).__name__}")
            return web.json_response({'error': 'Internal proxy error'}, status=500, headers=CORS_HEADERS)

        return web.Response(
            body=key_data,
            headers={
                **CORS_HEADERS,
                'Content-Type': 'application/octet-stream',
                'Cache-Control': 'no-cache'
            }
        )

    async def handle_options(self, request):
        """Handles OPTIONS requests for CORS"""
        return web.Response(headers={**CORS_HEADERS, 'Access-Control-Max-Age': '86400'})

    async def cleanup(self):
        """Resource cleanup"""
        try:
            await self.fetcher.close()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
