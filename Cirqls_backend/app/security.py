import logging
from typing import Protocol

import httpx
from fastapi import Request
from jose import JWTError, jwt
from starlette.requests import HTTPConnection

from app.config import Settings, settings
from app.errors import AuthenticationFailure, UpstreamFailure


def _split_header_names(raw_value: str, fallback: list[str]) -> list[str]:
    names = [item.strip().lower() for item in (raw_value or "").split(",") if item.strip()]
    return names or fallback


TOKEN_HEADER_NAMES = _split_header_names(
    settings.AUTH_TOKEN_HEADERS,
    ["authorization", "x-auth-token"],
)
logger = logging.getLogger("cirqls.security")


def _mask_user_id(user_id) -> str:
    value = str(user_id if user_id is not None else "").strip()
    if not value:
        return "-"
    if len(value) <= 8:
        return value
    return f"{value[:4]}...{value[-4:]}"


def audit_auth_failure(
    conn: HTTPConnection | None,
    reason: str,
    *,
    claimed_user_id=None,
    token_present: bool | None = None,
) -> None:
    if not conn:
        logger.warning("AUTH_DENY reason=%s", reason)
        return
    path = getattr(getattr(conn, "url", None), "path", "-")
    method = getattr(conn, "method", None) or conn.scope.get("type", "-")
    client = getattr(conn, "client", None)
    ip = getattr(client, "host", "-") if client else "-"
    if token_present is None:
        token_present = bool(extract_auth_token(conn))
    logger.warning(
        "AUTH_DENY reason=%s method=%s path=%s ip=%s claimed=%s token_present=%s",
        reason,
        method,
        path,
        ip,
        _mask_user_id(claimed_user_id),
        int(bool(token_present)),
    )


def strip_bearer(raw: str | None) -> str | None:
    value = (raw or "").strip()
    if not value:
        return None
    if value.lower().startswith("bearer "):
        return value.split(" ", 1)[1].strip() or None
    if " " in value:
        # Only the Bearer scheme is accepted
        return None
    return value


def extract_auth_token(conn: HTTPConnection | None) -> str | None:
    if not conn:
        return None
    headers = getattr(conn, "headers", None)
    token = None
    if headers:
        for name in TOKEN_HEADER_NAMES:
            value = headers.get(name)
            if not value:
                continue
            if name == "authorization":
                token = strip_bearer(value)
            else:
                token = value.strip()
            if token:
                break
    if not token:
        query = getattr(conn, "query_params", None)
        if query:
            token = query.get("token") or query.get("access_token")
            if token:
                token = token.strip()
    return token or None


class CredentialVerifier(Protocol):
    async def verify(self, token: str | None) -> int:
        """Resolve a bearer credential to a user id or raise AuthenticationFailure."""
        ...


def _coerce_user_id(subject) -> int:
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise AuthenticationFailure("Credential carries an invalid subject")


class JWTCredentialVerifier:
    """Verifies locally signed JWTs; the ``sub`` claim is the user id."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    async def verify(self, token: str | None) -> int:
        if not token:
            raise AuthenticationFailure("Missing credential")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            raise AuthenticationFailure("Invalid credential")
        subject = payload.get("sub")
        if not subject:
            raise AuthenticationFailure("Credential is missing its subject")
        return _coerce_user_id(subject)


class RemoteCredentialVerifier:
    """Delegates verification to a credential service over HTTP.

    The service answers ``{"user_id": ...}`` for a valid bearer token and
    401/403 otherwise. Transport errors and other failures are upstream
    failures, never retried here.
    """

    def __init__(self, url: str, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = httpx.Timeout(timeout, connect=min(timeout, 5.0))
        self.transport = transport

    async def verify(self, token: str | None) -> int:
        if not token:
            raise AuthenticationFailure("Missing credential")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.url, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as exc:
            logger.warning("credential service unreachable url=%s error=%s", self.url, exc)
            raise UpstreamFailure("Credential service unavailable") from exc
        if resp.status_code in (401, 403):
            raise AuthenticationFailure("Invalid credential")
        if resp.status_code >= 400:
            logger.warning("credential service error url=%s status=%s", self.url, resp.status_code)
            raise UpstreamFailure("Credential service unavailable")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamFailure("Credential service returned malformed data") from exc
        return _coerce_user_id(payload.get("user_id") or payload.get("sub"))


def build_verifier(config: Settings) -> CredentialVerifier:
    if config.AUTH_VERIFY_URL:
        return RemoteCredentialVerifier(config.AUTH_VERIFY_URL, timeout=config.AUTH_VERIFY_TIMEOUT)
    return JWTCredentialVerifier(config.AUTH_JWT_SECRET, config.AUTH_JWT_ALGORITHM or "HS256")


async def get_viewer_id(request: Request) -> int | None:
    """Optional identity: anonymous requests get ``None``, bad credentials fail."""
    token = extract_auth_token(request)
    if not token:
        return None
    try:
        return await request.app.state.verifier.verify(token)
    except AuthenticationFailure:
        audit_auth_failure(request, "invalid_token", token_present=True)
        raise


async def require_viewer_id(request: Request) -> int:
    viewer_id = await get_viewer_id(request)
    if viewer_id is None:
        audit_auth_failure(request, "missing_identity", token_present=False)
        raise AuthenticationFailure("Not authenticated")
    return viewer_id
