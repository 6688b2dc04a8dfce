import httpx
import pytest
from jose import jwt

from app.config import Settings
from app.errors import AuthenticationFailure, UpstreamFailure
from app.security import (
    JWTCredentialVerifier,
    RemoteCredentialVerifier,
    build_verifier,
    strip_bearer,
)

SECRET = "unit-test-secret"


def test_strip_bearer():
    assert strip_bearer("Bearer abc.def") == "abc.def"
    assert strip_bearer("bearer   xyz ") == "xyz"
    assert strip_bearer("raw-token") == "raw-token"
    assert strip_bearer("Basic dXNlcjpwYXNz") is None
    assert strip_bearer("") is None
    assert strip_bearer(None) is None


async def test_jwt_verifier_resolves_subject():
    verifier = JWTCredentialVerifier(SECRET)
    token = jwt.encode({"sub": "42"}, SECRET, algorithm="HS256")
    assert await verifier.verify(token) == 42


@pytest.mark.parametrize(
    "token",
    [
        None,
        "not-a-jwt",
        jwt.encode({"sub": "42"}, "other-secret", algorithm="HS256"),
        jwt.encode({"name": "no subject"}, SECRET, algorithm="HS256"),
        jwt.encode({"sub": "alice"}, SECRET, algorithm="HS256"),
    ],
)
async def test_jwt_verifier_rejects(token):
    with pytest.raises(AuthenticationFailure):
        await JWTCredentialVerifier(SECRET).verify(token)


def _remote(handler):
    return RemoteCredentialVerifier("http://auth.local/verify", transport=httpx.MockTransport(handler))


async def test_remote_verifier_accepts():
    def handler(request):
        assert request.headers["authorization"] == "Bearer good"
        return httpx.Response(200, json={"user_id": 7})

    assert await _remote(handler).verify("good") == 7


async def test_remote_verifier_rejects_on_401():
    verifier = _remote(lambda request: httpx.Response(401))
    with pytest.raises(AuthenticationFailure):
        await verifier.verify("bad")


async def test_remote_verifier_server_error_is_upstream_failure():
    verifier = _remote(lambda request: httpx.Response(503))
    with pytest.raises(UpstreamFailure):
        await verifier.verify("any")


async def test_remote_verifier_transport_error_is_upstream_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamFailure):
        await _remote(handler).verify("any")


async def test_remote_verifier_malformed_body_is_upstream_failure():
    verifier = _remote(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(UpstreamFailure):
        await verifier.verify("any")


def test_build_verifier_prefers_remote_url():
    assert isinstance(build_verifier(Settings(AUTH_VERIFY_URL="http://auth.local/verify")), RemoteCredentialVerifier)
    assert isinstance(build_verifier(Settings(AUTH_VERIFY_URL="")), JWTCredentialVerifier)
