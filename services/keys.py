from aiohttp import web

from services.hls_proxy import HLSProxy
from services.segment_cache import SegmentCache
from services.stream_registry import StreamRegistry
from services.token_service import TokenService

REGISTRY_KEY = web.AppKey("registry", StreamRegistry)
TOKEN_SERVICE_KEY = web.AppKey("token_service", TokenService)
CACHE_KEY = web.AppKey("segment_cache", SegmentCache)
PROXY_KEY = web.AppKey("hls_proxy", HLSProxy)
MAX_EXPIRY_KEY = web.AppKey("max_expiry_minutes", int)
REAP_INTERVAL_KEY = web.AppKey("reap_interval", float)
