import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from jose import jwt, ExpiredSignatureError, JWTError

from services.errors import (
    SignatureInvalid, StreamGone, StreamStopped, TokenExpired, TokenRevoked, ValidationError,
)
from services.stream_registry import StreamRecord, StreamRegistry
from utils.url_cipher import UrlCipher, generate_stream_id, mask_url

logger = logging.getLogger(__name__)

TOKEN_TYPE = "stream-access"


@dataclass
class IssuedToken:
    token: str
    stream_id: str
    expires_at: datetime
    expiry_minutes: int

    @property
    def viewer_path(self) -> str:
        return f"/player.html?token={self.token}&sid={self.stream_id}"


@dataclass
class VerifiedToken:
    claims: dict
    record: StreamRecord


class TokenService:
    """Issues, verifies and revokes signed stream access tokens.

    A token is valid only while its ``jti`` matches the generation id stored on
    the stream record. Stopping a stream rotates that id, which voids every
    token issued before, without keeping a blacklist.
    """

    def __init__(self, secret: str, cipher: UrlCipher, registry: StreamRegistry,
                 issuer: str, audience: str, algorithm: str = "HS256",
                 default_expiry_minutes: int = 120, max_viewers: int = 1000):
        self.secret = secret
        self.cipher = cipher
        self.registry = registry
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm
        self.default_expiry_minutes = default_expiry_minutes
        self.max_viewers = max_viewers

    def issue(self, original_url: str, expiry_minutes: int = None, stream_id: str = None) -> IssuedToken:
        """Creates (or re-arms) a stream record and signs a token for it."""
        if not original_url:
            raise ValidationError("Missing required field: url")
        if expiry_minutes is None:
            expiry_minutes = self.default_expiry_minutes
        if expiry_minutes <= 0:
            raise ValidationError("expiryMinutes must be a positive number")

        now = self.registry.clock()
        expires_at = now + timedelta(minutes=expiry_minutes)
        stream_id = stream_id or generate_stream_id(self.secret)
        generation_id = str(uuid.uuid4())
        encrypted_url = self.cipher.conceal(original_url)

        claims = {
            "streamId": stream_id,
            "url": encrypted_url,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
            "jti": generation_id,
            "type": TOKEN_TYPE,
        }
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)

        record = self.registry.streams.get(stream_id)
        if record is None:
            self.registry.add(StreamRecord(
                stream_id=stream_id,
                encrypted_url=encrypted_url,
                original_url=original_url,
                created_at=now,
                expires_at=expires_at,
                max_viewers=self.max_viewers,
                generation_id=generation_id,
            ))
        else:
            # Re-issue for a known stream: earlier tokens stop matching
            record.encrypted_url = encrypted_url
            record.original_url = original_url
            record.expires_at = expires_at
            record.generation_id = generation_id
            record.is_active = True
            record.stopped_at = None

        logger.info(f"🎟️ Token issued for stream {stream_id} ({expiry_minutes} min, source: {mask_url(original_url)})")
        return IssuedToken(token=token, stream_id=stream_id, expires_at=expires_at, expiry_minutes=expiry_minutes)

    def verify(self, token: str) -> VerifiedToken:
        """Checks signature and expiry, then the stream record the token points at."""
        try:
            claims = jwt.decode(
                token, self.secret, algorithms=[self.algorithm],
                audience=self.audience, issuer=self.issuer,
            )
        except ExpiredSignatureError:
            self._log_rejection(token, "expired")
            raise TokenExpired() from None
        except (JWTError, AttributeError) as e:
            self._log_rejection(token, str(e))
            raise SignatureInvalid() from None

        if claims.get("type") != TOKEN_TYPE or not claims.get("streamId"):
            self._log_rejection(token, "wrong token type")
            raise SignatureInvalid()

        record = self.registry.get(claims["streamId"])
        if record is None:
            self._log_rejection(token, "stream gone")
            raise StreamGone()
        if not record.is_active:
            self._log_rejection(token, "stream stopped")
            raise StreamStopped()
        if claims.get("jti") != record.generation_id:
            self._log_rejection(token, "revoked")
            raise TokenRevoked()

        logger.debug(f"✅ Token validated for stream {record.stream_id}")
        return VerifiedToken(claims=claims, record=record)

    def stop(self, stream_id: str) -> StreamRecord:
        """Stops a stream and voids every outstanding token. Raises NotFoundError."""
        return self.registry.stop(stream_id, new_generation_id=str(uuid.uuid4()))

    @staticmethod
    def _log_rejection(token, reason: str):
        preview = f"{token[:20]}..." if isinstance(token, str) and token else "none"
        logger.warning(f"🛡️ Token validation failed ({reason}): {preview}")
