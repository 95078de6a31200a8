"""Error taxonomy shared by the token engine and the proxy.

Every error carries the HTTP status it maps to and a message that is safe to
show to clients: origin URLs and secrets never end up in ``message``.
"""


class GatewayError(Exception):
    """Base class for every error the gateway reports to a client."""
    status = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(GatewayError):
    status = 400
    default_message = "Invalid request"


class NotFoundError(GatewayError):
    status = 404
    default_message = "Stream not found"


class AuthError(GatewayError):
    """Token could not be accepted. ``reason`` tells retry apart from re-issue."""
    status = 401
    reason = "invalid"
    default_message = "Invalid token"

    def to_dict(self) -> dict:
        return {"error": self.message, "reason": self.reason}


class TokenExpired(AuthError):
    reason = "expired"
    default_message = "Token has expired"


class SignatureInvalid(AuthError):
    reason = "signature_invalid"
    default_message = "Invalid token signature"


class StreamGone(AuthError):
    reason = "stream_gone"
    default_message = "Stream not found or expired"


class StreamStopped(AuthError):
    reason = "stream_stopped"
    default_message = "Stream has been stopped"


class TokenRevoked(AuthError):
    reason = "revoked"
    default_message = "Token has been revoked"


class TamperError(GatewayError):
    """A concealed URL failed authentication. Treated as hostile, never retried."""
    status = 403
    default_message = "Invalid or tampered URL"


class CapacityError(GatewayError):
    status = 429
    default_message = "Maximum viewer limit reached"


class UpstreamError(GatewayError):
    """The origin could not be reached or answered with a non-success status."""
    status = 502
    default_message = "Failed to fetch from stream source"

    def __init__(self, message: str = None, upstream_status: int = None):
        super().__init__(message)
        self.upstream_status = upstream_status

    def to_dict(self) -> dict:
        data = {"error": self.message}
        if self.upstream_status is not None:
            data["statusCode"] = self.upstream_status
        return data


class UpstreamTimeout(UpstreamError):
    status = 504
    default_message = "Stream source timeout"
