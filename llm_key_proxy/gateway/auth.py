from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

import jwt
from fastapi import Request, status
from fastapi.responses import JSONResponse
from jwt import InvalidTokenError

from llm_key_proxy.runtime.usage_recorder import UsageRecorder
from llm_key_proxy.settings import Settings
from llm_key_proxy.storage.key_store import KeyRecord, KeyStore
from llm_key_proxy.utils.time_utils import now_ms

logger = logging.getLogger("uvicorn.error")

SESSION_PATH_PREFIXES = ("/keys", "/analytics", "/router")
PUBLIC_PATHS = {"/", "/health"}

RouteGroup = Literal["public", "session", "api_key"]


class AuthConfigurationError(RuntimeError):
    """Raised when session authentication is required but misconfigured."""


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str
    claims: dict[str, Any] | None = None
    key_record: KeyRecord | None = None


class SessionVerifier:
    def __init__(self, settings: Settings):
        if not settings.jwt_secret:
            raise AuthConfigurationError(
                "Session auth is required but JWT_SECRET is not configured.",
            )
        self.jwt_secret = settings.jwt_secret
        self.algorithms = settings.jwt_algorithms_list
        self.verify_expiration = settings.jwt_verify_expiration

    def verify(self, token: str) -> AuthResult:
        claims = jwt.decode(
            token,
            self.jwt_secret,
            algorithms=self.algorithms,
            options={"verify_exp": self.verify_expiration},
        )
        principal = str(
            claims.get("username") or claims.get("sub") or "session-user",
        )
        return AuthResult(method="session", principal=principal, claims=claims)


@dataclass(slots=True)
class UsageTicket:
    """Start of one authenticated proxied call; completes into a usage record."""

    secret: str
    start_time: int
    recorder: UsageRecorder
    _done: bool = field(default=False, repr=False)

    def complete(self, completed: bool) -> None:
        if self._done:
            return
        self._done = True
        end_time = now_ms() if completed else None
        self.recorder.submit(self.secret, self.start_time, end_time)


class AuthGate:
    def __init__(
        self,
        settings: Settings,
        *,
        key_store: KeyStore,
        usage_recorder: UsageRecorder,
    ):
        self.proxy_auth_required = settings.proxy_auth_required
        self.session_auth_required = settings.session_auth_required
        self.key_store = key_store
        self.usage_recorder = usage_recorder
        self.session_verifier: SessionVerifier | None = None
        if settings.jwt_secret or self.session_auth_required:
            self.session_verifier = SessionVerifier(settings)

    @staticmethod
    def route_group(path: str) -> RouteGroup:
        if path in PUBLIC_PATHS:
            return "public"
        for prefix in SESSION_PATH_PREFIXES:
            if path == prefix or path.startswith(prefix + "/"):
                return "session"
        return "api_key"

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        group = self.route_group(request.url.path)
        if group == "session":
            return self.authenticate_session(request)
        if group == "api_key":
            return self.authenticate_api_key(request)
        return None

    def authenticate_api_key(self, request: Request) -> JSONResponse | None:
        if not self.proxy_auth_required:
            return None
        token = _bearer_token(request)
        if token is None:
            return _unauthorized("Missing Bearer token.", code="invalid_api_key")
        record = self.key_store.validate(token)
        if record is None:
            logger.info("api_key_rejected path=%s", request.url.path)
            return _unauthorized("Invalid API key.", code="invalid_api_key")
        request.state.auth = AuthResult(
            method="api_key",
            principal=record.owner_label,
            key_record=record,
        )
        return None

    def authenticate_session(self, request: Request) -> JSONResponse | None:
        if not self.session_auth_required:
            return None
        token = _bearer_token(request)
        if token is None:
            logger.warning("session_auth_missing path=%s", request.url.path)
            return _unauthorized(
                "Missing or invalid Authorization header.", code="invalid_token"
            )
        if self.session_verifier is None:
            raise AuthConfigurationError("Session verifier is not configured.")
        try:
            request.state.auth = self.session_verifier.verify(token)
        except InvalidTokenError as exc:
            logger.warning("session_token_rejected error=%s", str(exc))
            return _unauthorized("Invalid token.", code="invalid_token")
        return None

    def begin_usage(self, request: Request) -> UsageTicket | None:
        auth: AuthResult | None = getattr(request.state, "auth", None)
        if auth is None or auth.key_record is None:
            return None
        return UsageTicket(
            secret=auth.key_record.secret,
            start_time=now_ms(),
            recorder=self.usage_recorder,
        )


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _unauthorized(message: str, *, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": code,
            },
        },
    )
