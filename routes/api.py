import logging
from datetime import datetime, timezone

from aiohttp import web

from config import check_password
from services.errors import GatewayError, ValidationError
from services.keys import CACHE_KEY, MAX_EXPIRY_KEY, REGISTRY_KEY, TOKEN_SERVICE_KEY

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


def _error(error: GatewayError):
    return web.json_response(error.to_dict(), status=error.status)


def _unauthorized(request):
    logger.warning(f"⛔ Access denied: Invalid or missing API Password. IP: {request.remote}")
    return web.json_response({'error': 'Unauthorized: Invalid API Password'}, status=401)


async def _json_body(request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _string_field(body: dict, name: str, required: bool = True):
    value = body.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"Missing {name}")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _parse_expiry(value, max_minutes: int):
    if value in (None, ""):
        return None
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise ValidationError("expiryMinutes must be a number") from None
    if minutes <= 0 or minutes > max_minutes:
        raise ValidationError(f"expiryMinutes must be between 1 and {max_minutes}")
    return minutes


def _is_hls_url(url) -> bool:
    return isinstance(url, str) and url.startswith(('http://', 'https://')) and (
        url.endswith('.m3u8') or '.m3u8?' in url
    )


@routes.post('/api/generate')
async def generate(request):
    """Issues a temporary viewing link for an HLS source."""
    if not check_password(request):
        return _unauthorized(request)

    try:
        body = await _json_body(request)
        url = body.get('url')
        if not url:
            raise ValidationError("Missing required field: url")
        if not _is_hls_url(url):
            raise ValidationError("URL must be a valid HLS manifest (.m3u8)")
        expiry_minutes = _parse_expiry(body.get('expiryMinutes'), request.app[MAX_EXPIRY_KEY])

        issued = request.app[TOKEN_SERVICE_KEY].issue(url, expiry_minutes)
    except GatewayError as e:
        return _error(e)

    minutes = issued.expiry_minutes
    return web.json_response({
        'success': True,
        'data': {
            'token': issued.token,
            'streamId': issued.stream_id,
            'expiresAt': issued.expires_at.isoformat(),
            'viewerUrl': f"{request.scheme}://{request.host}{issued.viewer_path}",
            'expiresIn': f"{minutes} minutes",
        }
    })


@routes.get('/api/validate')
async def validate(request):
    token = request.query.get('token')
    if not token:
        return web.json_response({'error': 'Missing token parameter'}, status=400)

    try:
        verified = request.app[TOKEN_SERVICE_KEY].verify(token)
    except GatewayError as e:
        return web.json_response({'valid': False, **e.to_dict()}, status=e.status)

    record = verified.record
    return web.json_response({
        'valid': True,
        'streamData': {
            'streamId': record.stream_id,
            'expiresAt': record.expires_at.isoformat(),
            'isActive': record.is_active,
            'viewerCount': record.viewer_count,
        }
    })


@routes.get('/api/stats/{stream_id}')
async def stats(request):
    registry = request.app[REGISTRY_KEY]
    record = registry.get(request.match_info['stream_id'])
    if record is None:
        return web.json_response({'error': 'Stream not found'}, status=404)
    return web.json_response({'success': True, 'data': record.to_stats(registry.clock())})


@routes.post('/api/stop')
async def stop(request):
    """Stops a stream and invalidates every token issued for it."""
    if not check_password(request):
        return _unauthorized(request)

    try:
        body = await _json_body(request)
        stream_id = _string_field(body, 'streamId')
        request.app[TOKEN_SERVICE_KEY].stop(stream_id)
    except GatewayError as e:
        return web.json_response({'success': False, 'message': e.message}, status=e.status)

    return web.json_response({'success': True, 'message': 'Stream stopped successfully'})


@routes.post('/api/viewer/join')
async def viewer_join(request):
    try:
        body = await _json_body(request)
        stream_id = _string_field(body, 'streamId')
        session_id = _string_field(body, 'sessionId', required=False)
        session = request.app[REGISTRY_KEY].register_viewer(stream_id, session_id)
    except GatewayError as e:
        return _error(e)

    return web.json_response({'success': True, 'sessionId': session.session_id})


@routes.post('/api/viewer/leave')
async def viewer_leave(request):
    try:
        body = await _json_body(request)
        session_id = _string_field(body, 'sessionId')
    except GatewayError as e:
        return _error(e)

    request.app[REGISTRY_KEY].remove_viewer(session_id)
    return web.json_response({'success': True})


@routes.get('/api/streams')
async def list_streams(request):
    """Operator listing of every known stream."""
    if not check_password(request):
        return _unauthorized(request)

    streams = request.app[REGISTRY_KEY].list_streams()
    return web.json_response({'success': True, 'count': len(streams), 'data': streams})


@routes.get('/health')
async def health(request):
    return web.json_response({
        'status': 'healthy',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'activeStreams': request.app[REGISTRY_KEY].active_stream_count,
        'proxy': request.app[CACHE_KEY].stats(),
    })
