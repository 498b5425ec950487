from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from llm_key_proxy.runtime.model_registry import BackendTarget, ModelRegistry
from llm_key_proxy.settings import Settings

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}

BACKEND_ERROR_BODY = {"error": "Error processing request"}
GATEWAY_ERROR_BODY = {"error": "Internal Server Error"}
MAX_LOGGED_ERROR_BODY = 4096

CompletionCallback = Callable[[bool], None]

logger = logging.getLogger("uvicorn.error")


def build_backend_client(settings: Settings) -> httpx.AsyncClient:
    connect_timeout = max(0.1, float(settings.backend_connect_timeout_seconds))
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=max(0.1, float(settings.backend_timeout_seconds)),
            connect=connect_timeout,
            read=max(0.1, float(settings.backend_read_timeout_seconds)),
            write=max(0.1, float(settings.backend_write_timeout_seconds)),
            pool=max(0.1, float(settings.backend_pool_timeout_seconds)),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
    )


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        details["request_url"] = str(exc.request.url)
    except RuntimeError:
        details["request_url"] = None
    return details


def rewrite_path(path: str, version_prefix: str, target_prefix: str) -> str:
    """Swap the inbound version prefix for the backend's path prefix."""
    normalized = path if path.startswith("/") else f"/{path}"
    prefix = "/" + version_prefix.strip("/")
    remainder = normalized[len(prefix) :] if normalized.startswith(prefix) else normalized
    return f"{target_prefix.rstrip('/')}{remainder}"


def build_upstream_headers(
    incoming_headers: Mapping[str, str],
    api_key: str | None,
) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in DROPPED_REQUEST_HEADERS:
            continue
        if api_key and lower == "authorization":
            continue
        headers[name] = value
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _relayed_raw_headers(upstream: httpx.Response) -> list[tuple[bytes, bytes]]:
    return [
        (name.lower(), value)
        for name, value in upstream.headers.raw
        if name.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS
    ]


def _notify(on_complete: CompletionCallback | None, completed: bool) -> None:
    if on_complete is None:
        return
    try:
        on_complete(completed)
    except Exception as exc:
        logger.warning("proxy_completion_hook_failed error=%s", exc)


class _StreamRelay:
    """Relays a backend body and releases it exactly once.

    Release happens when the body is exhausted, when the body iterator is
    closed early, or when the response exits for any other reason, including
    cancellation after the caller disconnects.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        on_complete: CompletionCallback | None,
        request_id: str,
    ) -> None:
        self._upstream = upstream
        self._on_complete = on_complete
        self._request_id = request_id
        self._completed = False
        self._released = False

    async def iter_body(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._upstream.aiter_raw():
                yield chunk
            self._completed = True
        except httpx.HTTPError as exc:
            logger.warning(
                "proxy_upstream_stream_error request_id=%s error_type=%s error=%s",
                self._request_id,
                exc.__class__.__name__,
                str(exc),
            )
        finally:
            await self.release()

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        if not self._completed:
            logger.info("proxy_stream_aborted request_id=%s", self._request_id)
        _notify(self._on_complete, self._completed)
        await asyncio.shield(self._upstream.aclose())


class RelayStreamingResponse(StreamingResponse):
    def __init__(self, relay: _StreamRelay, *, status_code: int) -> None:
        super().__init__(content=relay.iter_body(), status_code=status_code)
        self.relay = relay

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.relay.release()


class ForwardingProxy:
    """Forwards model-bearing POST requests to the backend serving that model."""

    def __init__(
        self,
        *,
        registry: ModelRegistry,
        client: httpx.AsyncClient,
        version_prefix: str = "/v1",
    ) -> None:
        self.registry = registry
        self.client = client
        self.version_prefix = "/" + version_prefix.strip("/")

    async def close(self) -> None:
        await self.client.aclose()

    def should_forward(self, method: str, path: str, payload: Any) -> bool:
        if method.upper() != "POST":
            return False
        bare_prefix = self.version_prefix.lstrip("/") + "/"
        if not (path.startswith(self.version_prefix + "/") or path.startswith(bare_prefix)):
            return False
        if not isinstance(payload, dict) or payload.get("model") is None:
            return False
        return bool(self.registry.backends)

    def resolve_url(self, path: str, target: BackendTarget) -> str:
        return f"{target.base_url}{rewrite_path(path, self.version_prefix, target.path_prefix)}"

    async def forward(
        self,
        *,
        method: str,
        path: str,
        headers: Mapping[str, str],
        payload: Any,
        body: bytes | None = None,
        on_complete: CompletionCallback | None = None,
        request_id: str = "-",
    ) -> Response | None:
        """Forward the request, or return ``None`` when it is not ours to handle."""
        if not self.should_forward(method, path, payload):
            return None
        target = self.registry.resolve(payload["model"])
        if target is None:
            return None

        url = self.resolve_url(path, target)
        upstream_headers = build_upstream_headers(headers, target.api_key)
        logger.info(
            "proxy_forward request_id=%s model=%s backend=%s url=%s",
            request_id,
            payload["model"],
            target.name,
            url,
        )

        started = time.perf_counter()
        try:
            if body is not None:
                request = self.client.build_request(
                    "POST", url, content=body, headers=upstream_headers
                )
            else:
                request = self.client.build_request(
                    "POST", url, json=payload, headers=upstream_headers
                )
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s backend=%s error_type=%s is_timeout=%s error=%s",
                request_id,
                target.name,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            _notify(on_complete, False)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=GATEWAY_ERROR_BODY,
            )

        connect_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "proxy_upstream_connected request_id=%s backend=%s connect_ms=%.2f status=%d",
            request_id,
            target.name,
            connect_ms,
            upstream.status_code,
        )

        if upstream.status_code >= 400:
            return await self._backend_error_response(
                upstream, target, request_id, on_complete
            )

        relay = _StreamRelay(upstream, on_complete, request_id)
        response = RelayStreamingResponse(relay, status_code=upstream.status_code)
        response.raw_headers = _relayed_raw_headers(upstream)
        return response

    async def _backend_error_response(
        self,
        upstream: httpx.Response,
        target: BackendTarget,
        request_id: str,
        on_complete: CompletionCallback | None,
    ) -> Response:
        try:
            error_body = await upstream.aread()
        except httpx.HTTPError as exc:
            error_body = f"<unreadable: {exc}>".encode()
        finally:
            await upstream.aclose()
        logger.warning(
            "proxy_backend_error request_id=%s backend=%s status=%d body=%s",
            request_id,
            target.name,
            upstream.status_code,
            error_body[:MAX_LOGGED_ERROR_BODY].decode("utf-8", errors="replace"),
        )
        _notify(on_complete, True)
        return JSONResponse(status_code=upstream.status_code, content=BACKEND_ERROR_BODY)
