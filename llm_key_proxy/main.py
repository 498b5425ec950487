from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from llm_key_proxy.config import backends_from_settings
from llm_key_proxy.errors import (
    GatewayServiceError,
    InvalidInputError,
    NotFoundError,
)
from llm_key_proxy.gateway.auth import AuthConfigurationError, AuthGate
from llm_key_proxy.gateway.proxy import ForwardingProxy, build_backend_client
from llm_key_proxy.gateway.validation import (
    AnalyticsQuery,
    CreateKeyRequest,
    parse_model,
)
from llm_key_proxy.runtime.model_registry import BackendTarget, ModelRegistry
from llm_key_proxy.runtime.retention import RetentionPruner
from llm_key_proxy.runtime.usage_recorder import UsageRecorder
from llm_key_proxy.settings import get_settings
from llm_key_proxy.storage.key_store import KeyStore
from llm_key_proxy.storage.usage_log import UsageLog

app = FastAPI(
    title="LLM Key Proxy",
    description="Model-aware OpenAI-compatible proxy with per-key auth and usage analytics.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    auth_gate: AuthGate | None = getattr(app.state, "auth_gate", None)
    if auth_gate is not None:
        auth_error = await auth_gate.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    backends_config = backends_from_settings(settings)
    key_store = await asyncio.to_thread(
        KeyStore,
        settings.keys_store_path,
        lock_max_attempts=settings.key_lock_max_attempts,
        lock_retry_delay_seconds=settings.key_lock_retry_delay_seconds,
    )
    usage_log = UsageLog(
        settings.usage_data_dir,
        retention_ms=settings.usage_retention_ms,
        recent_max_keys=settings.usage_recent_max_keys,
        recent_window_size=settings.usage_recent_window_size,
    )
    usage_recorder = UsageRecorder(
        usage_log=usage_log,
        queue_size=settings.usage_queue_size,
    )
    await usage_recorder.start()

    backend_client = build_backend_client(settings)
    model_registry = ModelRegistry(
        backends=[
            BackendTarget.from_config(backend)
            for backend in backends_config.enabled_backends()
        ],
        client=backend_client,
        interval_seconds=settings.model_refresh_interval_seconds,
        timeout_seconds=settings.model_refresh_timeout_seconds,
    )
    retention_pruner = RetentionPruner(
        key_store=key_store,
        usage_log=usage_log,
        interval_seconds=settings.usage_prune_interval_seconds,
        retention_ms=settings.usage_retention_ms,
    )

    app.state.settings = settings
    app.state.key_store = key_store
    app.state.usage_log = usage_log
    app.state.usage_recorder = usage_recorder
    app.state.model_registry = model_registry
    app.state.forwarding_proxy = ForwardingProxy(
        registry=model_registry,
        client=backend_client,
        version_prefix=settings.api_version_prefix,
    )
    app.state.retention_pruner = retention_pruner
    app.state.auth_gate = AuthGate(
        settings,
        key_store=key_store,
        usage_recorder=usage_recorder,
    )

    await model_registry.refresh()
    await model_registry.start()
    await retention_pruner.start()
    logger.info(
        "startup complete backends=%d models=%d keys=%d keys_store_path=%s usage_data_dir=%s",
        len(model_registry.backends),
        len(model_registry.snapshot()),
        len(key_store.list()),
        settings.keys_store_path,
        settings.usage_data_dir,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    model_registry: ModelRegistry | None = getattr(app.state, "model_registry", None)
    if model_registry is not None:
        await model_registry.stop()
    retention_pruner: RetentionPruner | None = getattr(
        app.state, "retention_pruner", None
    )
    if retention_pruner is not None:
        await retention_pruner.stop()
    usage_recorder: UsageRecorder | None = getattr(app.state, "usage_recorder", None)
    if usage_recorder is not None:
        await usage_recorder.close()
    proxy: ForwardingProxy | None = getattr(app.state, "forwarding_proxy", None)
    if proxy is not None:
        await proxy.close()
    app.state.auth_gate = None
    logger.info("shutdown complete")


@app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "LLM Proxy"


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/keys")
async def list_keys() -> dict[str, Any]:
    key_store: KeyStore = app.state.key_store
    # Secrets are returned unredacted.
    return {"success": True, "keys": [record.to_dict() for record in key_store.list()]}


@app.post("/keys")
async def create_key(request: Request) -> dict[str, Any]:
    body = parse_model(CreateKeyRequest, await _read_json_object(request))
    key_store: KeyStore = app.state.key_store
    record = await asyncio.to_thread(key_store.create, body.owner_label)
    return {
        "success": True,
        "message": "API key created successfully",
        "key": record.to_dict(),
    }


@app.get("/keys/validate/{secret}")
async def validate_key(secret: str) -> dict[str, Any]:
    key_store: KeyStore = app.state.key_store
    record = key_store.validate(secret)
    if record is None:
        return {"success": True, "valid": False}
    return {"success": True, "valid": True, "ownerLabel": record.owner_label}


@app.delete("/keys/{key_id}")
async def delete_key(key_id: str) -> dict[str, Any]:
    key_store: KeyStore = app.state.key_store
    record = await asyncio.to_thread(key_store.delete, key_id)
    usage_log: UsageLog = app.state.usage_log
    usage_log.forget(record.secret)
    return {"success": True, "message": "API key deleted successfully"}


@app.get("/analytics/{key_id}")
async def analytics(key_id: str, request: Request) -> dict[str, Any]:
    query = parse_model(
        AnalyticsQuery,
        {
            "key_id": key_id,
            "start_date": _blank_to_none(request.query_params.get("startDate")),
            "end_date": _blank_to_none(request.query_params.get("endDate")),
        },
    )
    key_store: KeyStore = app.state.key_store
    record = key_store.get_by_id(query.key_id)
    if record is None:
        raise NotFoundError("API key not found")

    usage_recorder: UsageRecorder = app.state.usage_recorder
    await usage_recorder.flush()
    usage_log: UsageLog = app.state.usage_log
    if query.has_range:
        records = await asyncio.to_thread(
            usage_log.query, record.secret, query.start_date, query.end_date
        )
    else:
        records = await asyncio.to_thread(
            usage_log.query_last_window, record.secret, usage_log.retention_ms
        )
    return {"success": True, "records": [item.to_dict() for item in records]}


@app.get("/router/status")
async def router_status() -> dict[str, Any]:
    model_registry: ModelRegistry = app.state.model_registry
    usage_recorder: UsageRecorder = app.state.usage_recorder
    retention_pruner: RetentionPruner = app.state.retention_pruner
    return {
        "object": "router.status",
        "model_registry": asdict(model_registry.status),
        "usage_recorder": {
            "queue_depth": usage_recorder.queue_depth,
            "queue_capacity": usage_recorder.queue_capacity,
            "recorded_total": usage_recorder.recorded_total,
            "failed_records": usage_recorder.failed_records,
            "dropped_records": usage_recorder.dropped_records,
        },
        "retention": asdict(retention_pruner.status),
    }


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    model_registry: ModelRegistry = app.state.model_registry
    return {
        "data": [entry.model for entry in model_registry.snapshot()],
        "object": "list",
    }


@app.post("/{path:path}")
async def forward_request(path: str, request: Request) -> Response:
    proxy: ForwardingProxy = app.state.forwarding_proxy
    body = await request.body()
    payload = _decode_json(body)
    request_path = request.url.path
    if not proxy.should_forward(request.method, request_path, payload):
        return _not_found()

    auth_gate: AuthGate = app.state.auth_gate
    ticket = auth_gate.begin_usage(request)
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    try:
        response = await proxy.forward(
            method=request.method,
            path=request_path,
            headers=request.headers,
            payload=payload,
            body=body,
            on_complete=ticket.complete if ticket is not None else None,
            request_id=request_id,
        )
    except asyncio.CancelledError:
        if ticket is not None:
            ticket.complete(False)
        raise
    if response is None:
        return _not_found()
    return response


@app.exception_handler(GatewayServiceError)
async def service_error_handler(_: Request, exc: GatewayServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request_failed error_type=%s detail=%s", exc.error_type, exc.message
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.safe_message,
            "error": {"type": exc.error_type, "message": exc.safe_message},
        },
    )


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    logger.error("auth_configuration_error error=%s", str(exc))
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


async def _read_json_object(request: Request) -> dict[str, Any]:
    payload = _decode_json(await request.body())
    if not isinstance(payload, dict):
        raise InvalidInputError("Expected a JSON object request body.")
    return payload


def _decode_json(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "Not Found"})


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("llm_key_proxy.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
