from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from services.errors import (
    NotFoundError, SignatureInvalid, StreamGone, StreamStopped, TokenExpired, TokenRevoked, ValidationError,
)
from services.stream_registry import StreamRegistry
from tests.conftest import AUDIENCE, ISSUER, SECRET, FakeClock, make_token_service

ORIGIN = "https://origin.example/live/index.m3u8"


def test_issue_creates_active_record(token_service, registry):
    issued = token_service.issue(ORIGIN, 30)

    record = registry.get(issued.stream_id)
    assert record.is_active
    assert record.viewer_count == 0
    assert record.max_viewers == 1000
    assert record.original_url == ORIGIN
    assert record.expires_at == issued.expires_at
    assert issued.expires_at - record.created_at == timedelta(minutes=30)
    assert issued.viewer_path == f"/player.html?token={issued.token}&sid={issued.stream_id}"


def test_issue_uses_default_expiry(token_service, registry):
    issued = token_service.issue(ORIGIN)
    assert issued.expiry_minutes == 120


def test_issue_rejects_missing_url(token_service):
    with pytest.raises(ValidationError):
        token_service.issue("")


@pytest.mark.parametrize("minutes", [0, -5])
def test_issue_rejects_non_positive_expiry(token_service, registry, minutes):
    with pytest.raises(ValidationError):
        token_service.issue(ORIGIN, expiry_minutes=minutes)
    assert registry.streams == {}


def test_token_conceals_origin(token_service, cipher):
    issued = token_service.issue(ORIGIN)
    claims = jwt.get_unverified_claims(issued.token)

    assert ORIGIN not in issued.token
    assert claims["streamId"] == issued.stream_id
    assert claims["type"] == "stream-access"
    assert cipher.reveal(claims["url"]) == ORIGIN


def test_verify_accepts_fresh_token(token_service):
    issued = token_service.issue(ORIGIN)
    verified = token_service.verify(issued.token)

    assert verified.record.stream_id == issued.stream_id
    assert verified.claims["jti"] == verified.record.generation_id


def test_verify_rejects_tampered_signature(token_service):
    token = token_service.issue(ORIGIN).token
    head, body, signature = token.split(".")
    forged = ".".join([head, body, signature[::-1]])
    with pytest.raises(SignatureInvalid):
        token_service.verify(forged)


def test_verify_rejects_foreign_secret(token_service):
    claims = {
        "streamId": "x", "url": "y", "type": "stream-access",
        "iss": ISSUER, "aud": AUDIENCE,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    forged = jwt.encode(claims, "someone-elses-secret", algorithm="HS256")
    with pytest.raises(SignatureInvalid):
        token_service.verify(forged)


def test_verify_rejects_wrong_audience(token_service):
    claims = {
        "streamId": "x", "url": "y", "type": "stream-access",
        "iss": ISSUER, "aud": "someone-else",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    with pytest.raises(SignatureInvalid):
        token_service.verify(jwt.encode(claims, SECRET, algorithm="HS256"))


def test_verify_rejects_other_token_type(token_service):
    issued = token_service.issue(ORIGIN)
    claims = jwt.get_unverified_claims(issued.token)
    claims["type"] = "refresh"
    with pytest.raises(SignatureInvalid):
        token_service.verify(jwt.encode(claims, SECRET, algorithm="HS256"))


@pytest.mark.parametrize("garbage", ["", "not.a.jwt", "abc"])
def test_verify_rejects_garbage(token_service, garbage):
    with pytest.raises(SignatureInvalid):
        token_service.verify(garbage)


def test_token_expires_after_its_lifetime(cipher):
    # Issue 61 seconds in the past with a one minute lifetime
    clock = FakeClock(datetime.now(timezone.utc) - timedelta(seconds=61))
    service = make_token_service(cipher, StreamRegistry(clock=clock))
    issued = service.issue(ORIGIN, 1)

    with pytest.raises(TokenExpired):
        service.verify(issued.token)


def test_reaped_stream_is_gone(token_service, registry, clock):
    issued = token_service.issue(ORIGIN, 5)
    assert registry.reap_expired(clock.now + timedelta(minutes=6)) == 1

    with pytest.raises(StreamGone):
        token_service.verify(issued.token)


def test_stop_invalidates_every_previous_token(token_service, registry):
    first = token_service.issue(ORIGIN)
    stream_id = first.stream_id
    second = token_service.issue(ORIGIN, stream_id=stream_id)

    token_service.stop(stream_id)

    for token in (first.token, second.token):
        with pytest.raises((StreamStopped, TokenRevoked)):
            token_service.verify(token)
    assert not registry.get(stream_id).is_active


def test_reissue_after_stop_is_unaffected(token_service):
    old = token_service.issue(ORIGIN)
    token_service.stop(old.stream_id)

    fresh = token_service.issue(ORIGIN, stream_id=old.stream_id)

    assert token_service.verify(fresh.token).record.is_active
    with pytest.raises(TokenRevoked):
        token_service.verify(old.token)


def test_reissue_revokes_earlier_token(token_service):
    old = token_service.issue(ORIGIN)
    token_service.issue(ORIGIN, stream_id=old.stream_id)
    with pytest.raises(TokenRevoked):
        token_service.verify(old.token)


def test_stop_is_idempotent(token_service, registry):
    issued = token_service.issue(ORIGIN)
    token_service.stop(issued.stream_id)
    stopped_at = registry.get(issued.stream_id).stopped_at

    token_service.stop(issued.stream_id)

    record = registry.get(issued.stream_id)
    assert not record.is_active
    assert record.stopped_at == stopped_at


def test_stop_unknown_stream(token_service):
    with pytest.raises(NotFoundError):
        token_service.stop("does-not-exist")
