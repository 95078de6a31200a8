import asyncio
import contextlib
import logging

from aiohttp import web

from config import (
    CACHE_MAX_SIZE, DEFAULT_EXPIRY_MINUTES, GENERATE_RATE_LIMIT_MAX_REQUESTS, GENERATE_RATE_LIMIT_WINDOW_SECONDS,
    GLOBAL_PROXIES, JWT_ALGORITHM, JWT_AUDIENCE, JWT_ISSUER, KEY_REQUEST_TIMEOUT, MAX_CONCURRENT_VIEWERS,
    MAX_EXPIRY_MINUTES, MAX_REDIRECTS, PORT, RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS,
    REAP_INTERVAL_SECONDS, REQUEST_TIMEOUT, SEGMENT_TTL_SECONDS, STREAM_SECRET, TRANSPORT_ROUTES,
    UPSTREAM_USER_AGENT,
)
from routes.api import routes as api_routes
from services.hls_proxy import HLSProxy
from services.keys import (
    CACHE_KEY, MAX_EXPIRY_KEY, PROXY_KEY, REAP_INTERVAL_KEY, REGISTRY_KEY, TOKEN_SERVICE_KEY,
)
from services.manifest_rewriter import ManifestRewriter
from services.proxy_fetcher import ProxyFetcher
from services.rate_limiter import RateLimitRule, SlidingWindowLimiter
from services.segment_cache import SegmentCache
from services.stream_registry import StreamRegistry, reap_periodically
from services.token_service import TokenService
from utils.url_cipher import UrlCipher

logger = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request, handler):
    """Turns anything a handler did not answer itself into a generic JSON error."""
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return web.json_response({'error': 'Not found', 'path': request.path}, status=404)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Unhandled error on {request.method} {request.path}: {type(e).__name__}")
        return web.json_response({'error': 'Internal server error'}, status=500)


def rate_limit_middleware(rules):
    """Answers 429 once a client IP exceeds any rule matching the request path."""

    @web.middleware
    async def middleware(request, handler):
        client = request.remote or 'unknown'
        for rule in rules:
            if not rule.matches(request.path):
                continue
            retry_after = rule.limiter.hit(client)
            if retry_after is not None:
                logger.warning(f"🚦 Rate limit hit on {rule.prefix} by {client}, retry in {retry_after}s")
                return web.json_response(
                    {'error': rule.message, 'retryAfter': retry_after},
                    status=429,
                    headers={'Retry-After': str(retry_after)}
                )
        return await handler(request)

    return middleware


async def stream_reaper(app):
    task = asyncio.create_task(reap_periodically(app[REGISTRY_KEY], app[REAP_INTERVAL_KEY]))
    yield
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def close_upstream_sessions(app):
    await app[PROXY_KEY].cleanup()


def create_app(secret: str = STREAM_SECRET, registry: StreamRegistry = None, cache: SegmentCache = None,
               max_viewers: int = MAX_CONCURRENT_VIEWERS, reap_interval: float = REAP_INTERVAL_SECONDS,
               request_timeout: float = REQUEST_TIMEOUT,
               api_rate_limit: tuple = (RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS),
               generate_rate_limit: tuple = (GENERATE_RATE_LIMIT_MAX_REQUESTS, GENERATE_RATE_LIMIT_WINDOW_SECONDS),
               ) -> web.Application:
    """Builds the gateway: one registry, one cache and one upstream fetcher per process.

    Rate limits are ``(max_requests, window_seconds)`` pairs. The API limit
    covers every ``/api/`` route and the generate limit additionally covers
    ``/api/generate``.
    """
    cipher = UrlCipher(secret)
    registry = registry or StreamRegistry()
    cache = cache or SegmentCache(CACHE_MAX_SIZE, ttl=SEGMENT_TTL_SECONDS)

    token_service = TokenService(
        secret, cipher, registry,
        issuer=JWT_ISSUER,
        audience=JWT_AUDIENCE,
        algorithm=JWT_ALGORITHM,
        default_expiry_minutes=DEFAULT_EXPIRY_MINUTES,
        max_viewers=max_viewers,
    )
    fetcher = ProxyFetcher(
        cipher, ManifestRewriter(cipher), cache,
        user_agent=UPSTREAM_USER_AGENT,
        timeout=request_timeout,
        key_timeout=min(KEY_REQUEST_TIMEOUT, request_timeout),
        max_redirects=MAX_REDIRECTS,
        transport_routes=TRANSPORT_ROUTES,
        global_proxies=GLOBAL_PROXIES,
    )
    proxy = HLSProxy(fetcher, segment_max_age=int(SEGMENT_TTL_SECONDS))

    rate_limits = [
        RateLimitRule('/api/', SlidingWindowLimiter(*api_rate_limit),
                      'Too many requests, please try again later'),
        RateLimitRule('/api/generate', SlidingWindowLimiter(*generate_rate_limit),
                      'Too many link generations, please try again later'),
    ]

    app = web.Application(middlewares=[error_middleware, rate_limit_middleware(rate_limits)])
    app[REGISTRY_KEY] = registry
    app[TOKEN_SERVICE_KEY] = token_service
    app[CACHE_KEY] = cache
    app[PROXY_KEY] = proxy
    app[MAX_EXPIRY_KEY] = MAX_EXPIRY_MINUTES
    app[REAP_INTERVAL_KEY] = reap_interval

    app.add_routes(api_routes)
    app.router.add_get('/proxy/manifest', proxy.handle_manifest)
    app.router.add_get('/proxy/segment', proxy.handle_segment)
    app.router.add_get('/proxy/key', proxy.handle_key)
    for path in ('/proxy/manifest', '/proxy/segment', '/proxy/key'):
        app.router.add_route('OPTIONS', path, proxy.handle_options)

    app.cleanup_ctx.append(stream_reaper)
    app.on_cleanup.append(close_upstream_sessions)
    return app


def main():
    logger.info("=================================")
    logger.info("HLS Stream Gateway starting")
    logger.info(f"Port: {PORT}")
    logger.info(f"Health Check: http://localhost:{PORT}/health")
    logger.info("=================================")
    web.run_app(create_app(), port=PORT)


if __name__ == '__main__':
    main()
