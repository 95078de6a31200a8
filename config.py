import os
import json
import logging
import random
from dotenv import load_dotenv

load_dotenv() # Load variables from .env file

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

# Silence the asyncio "Unknown child process pid" warning (known race condition in asyncio)
class AsyncioWarningFilter(logging.Filter):
    def filter(self, record):
        return "Unknown child process pid" not in record.getMessage()

logging.getLogger('asyncio').addFilter(AsyncioWarningFilter())

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# --- Upstream proxy configuration ---
def parse_proxies(proxy_env_var: str) -> list:
    """Parses a comma-separated proxy string from an environment variable."""
    proxies_str = os.environ.get(proxy_env_var, "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []

def parse_transport_routes(routes_str: str = None) -> list:
    """Parses TRANSPORT_ROUTES in the format {URL=domain, PROXY=proxy, DISABLE_SSL=true/false}, {URL=domain2, PROXY=proxy2}"""
    if routes_str is None:
        routes_str = os.environ.get('TRANSPORT_ROUTES', "")
    routes_str = routes_str.strip()
    if not routes_str:
        return []

    routes = []
    route_parts = [part.strip() for part in routes_str.replace(' ', '').split('},{')]

    for part in route_parts:
        part = part.strip('{}')
        if not part:
            continue

        url_match = None
        proxy_match = None
        disable_ssl_match = False

        for item in part.split(','):
            if item.startswith('URL='):
                url_match = item[4:]
            elif item.startswith('PROXY='):
                proxy_match = item[6:] or None
            elif item.startswith('DISABLE_SSL='):
                disable_ssl_match = item[12:].lower() in ('true', '1', 'yes', 'on')

        if url_match:
            routes.append({
                'url': url_match,
                'proxy': proxy_match,
                'disable_ssl': disable_ssl_match
            })
        else:
            logger.warning(f"Ignoring TRANSPORT_ROUTES entry without URL: {part}")

    return routes

def get_proxy_for_url(url: str, transport_routes: list, global_proxies: list) -> str:
    """Finds the appropriate proxy for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return random.choice(global_proxies) if global_proxies else None

    for route in transport_routes:
        if route['url'] in url:
            # An empty proxy on a matching route means direct connection
            return route['proxy']

    return random.choice(global_proxies) if global_proxies else None

def get_ssl_setting_for_url(url: str, transport_routes: list) -> bool:
    """Determines if SSL verification should be disabled for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return False

    for route in transport_routes:
        if route['url'] in url:
            return route.get('disable_ssl', False)

    return False

GLOBAL_PROXIES = parse_proxies('GLOBAL_PROXY')
TRANSPORT_ROUTES = parse_transport_routes()

if GLOBAL_PROXIES: logging.info(f"🌍 Loaded {len(GLOBAL_PROXIES)} global proxies.")
if TRANSPORT_ROUTES: logging.info(f"🚦 Loaded {len(TRANSPORT_ROUTES)} transport rules.")

# --- Token configuration (token.json, overridden by environment) ---
def load_token_config(path: str) -> dict:
    """Reads the optional token.json file; a missing or broken file yields an empty config."""
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"⚠️ Could not read token config {path}: {e}")
        return {}

TOKEN_CONFIG_PATH = os.environ.get("TOKEN_CONFIG_PATH", "token.json")
_token_config = load_token_config(TOKEN_CONFIG_PATH)
_jwt_config = _token_config.get("jwt", {})
_stream_config = _token_config.get("stream", {})

DEV_SECRET = "fallback-secret-min-32-characters-long"
STREAM_SECRET = os.environ.get("STREAM_SECRET") or os.environ.get("JWT_SECRET") or _jwt_config.get("secret")
if not STREAM_SECRET:
    logging.warning("⚠️ STREAM_SECRET is not set. Using the development secret, do not run like this in production.")
    STREAM_SECRET = DEV_SECRET

JWT_ISSUER = os.environ.get("JWT_ISSUER", _jwt_config.get("issuer", "live-streaming-platform"))
JWT_AUDIENCE = os.environ.get("JWT_AUDIENCE", _jwt_config.get("audience", "stream-viewers"))
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

DEFAULT_EXPIRY_MINUTES = int(os.environ.get("DEFAULT_EXPIRY_MINUTES", _stream_config.get("defaultExpiryMinutes", 120)))
MAX_EXPIRY_MINUTES = int(os.environ.get("MAX_EXPIRY_MINUTES", 1440))  # 24 hours
MAX_CONCURRENT_VIEWERS = int(os.environ.get("MAX_CONCURRENT_VIEWERS", _stream_config.get("maxConcurrentViewers", 1000)))

# --- Proxy / cache configuration ---
CACHE_MAX_SIZE = int(os.environ.get("CACHE_MAX_SIZE", 50 * 1024 * 1024))  # 50MB
SEGMENT_TTL_SECONDS = float(os.environ.get("SEGMENT_TTL_SECONDS", 30))
REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT", 30))
KEY_REQUEST_TIMEOUT = float(os.environ.get("KEY_REQUEST_TIMEOUT", 10))
MAX_REDIRECTS = int(os.environ.get("MAX_REDIRECTS", 5))
REAP_INTERVAL_SECONDS = float(os.environ.get("REAP_INTERVAL_SECONDS", 300))  # 5 minutes

# --- Rate limiting (per client IP) ---
RATE_LIMIT_WINDOW_SECONDS = float(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", 15 * 60))
RATE_LIMIT_MAX_REQUESTS = int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", 100))
GENERATE_RATE_LIMIT_WINDOW_SECONDS = float(os.environ.get("GENERATE_RATE_LIMIT_WINDOW_SECONDS", 5 * 60))
GENERATE_RATE_LIMIT_MAX_REQUESTS = int(os.environ.get("GENERATE_RATE_LIMIT_MAX_REQUESTS", 20))

UPSTREAM_USER_AGENT = os.environ.get(
    "UPSTREAM_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
)

API_PASSWORD = os.environ.get("API_PASSWORD")
PORT = int(os.environ.get("PORT", 3000))

def check_password(request):
    """Verifies the API password if set."""
    if not API_PASSWORD:
        return True

    # Check query param
    api_password_param = request.query.get("api_password")
    if api_password_param == API_PASSWORD:
        return True

    # Check header
    if request.headers.get("x-api-password") == API_PASSWORD:
        return True

    return False
