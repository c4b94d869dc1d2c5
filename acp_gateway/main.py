from __future__ import annotations

import asyncio
import logging
import platform
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)

from acp_gateway import __version__
from acp_gateway.config import ModelCatalog, load_model_catalog
from acp_gateway.gateway.errors import ErrorKind, GatewayError
from acp_gateway.gateway.orchestrator import RequestContext, RequestOrchestrator
from acp_gateway.gateway.pool import ClientPool
from acp_gateway.gateway.retry import RetryPolicy
from acp_gateway.runtime.metrics import (
    RequestMetrics,
    format_uptime,
    render_prometheus_metrics,
)
from acp_gateway.settings import Settings, get_settings
from acp_gateway.upstream.channel import CLIENT_GONE
from acp_gateway.upstream.credentials import CredentialStore
from acp_gateway.upstream.protocol import load_client_factory

app = FastAPI(
    title="ACP Gateway",
    description="OpenAI-compatible chat completions over an ACP agent client.",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins_list,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

logger = logging.getLogger("uvicorn.error")

REQUEST_ID_MAX_CHARS = 36
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _request_id(request: Request) -> str:
    supplied = request.headers.get("x-request-id")
    if supplied:
        return supplied[:REQUEST_ID_MAX_CHARS]
    return uuid4().hex[:12]


def _error_response(error: GatewayError, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_envelope(),
        headers={"X-Request-ID": request_id},
    )


def _model_entry(model_id: str, catalog: ModelCatalog, created: int) -> dict[str, Any]:
    config = catalog.models[model_id]
    return {
        "id": model_id,
        "object": "model",
        "created": created,
        "owned_by": catalog.owned_by,
        "permission": [],
        "root": model_id,
        "parent": None,
        "name": config.display_name,
        "context_length": config.context_tokens,
        "max_output_tokens": config.max_output_tokens,
        "upstream_id": config.upstream_id,
    }


def _effective_config(settings: Settings) -> dict[str, Any]:
    return {
        "port": settings.port,
        "request_timeout_seconds": settings.request_timeout_seconds,
        "shutdown_timeout_seconds": settings.shutdown_timeout_seconds,
        "pool_size": settings.pool_size,
        "debug": settings.debug,
    }


def _setup_optional_tracing(*, app_obj: FastAPI, settings: Settings) -> None:
    if not settings.observability_tracing_enabled:
        return
    try:
        from opentelemetry import trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception as exc:
        logger.warning("observability_tracing_unavailable reason=%s", str(exc))
        return

    provider = TracerProvider(
        resource=Resource.create({"service.name": settings.observability_service_name})
    )
    if settings.observability_otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter,
            )

            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.observability_otlp_endpoint))
            )
        except Exception as exc:
            logger.warning("observability_otlp_exporter_unavailable reason=%s", str(exc))
    trace.set_tracer_provider(provider)

    try:
        FastAPIInstrumentor.instrument_app(app_obj)
    except Exception as exc:
        logger.warning("observability_fastapi_instrumentation_failed reason=%s", str(exc))


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    catalog = load_model_catalog(
        settings.models_config_path or None,
        default_model=settings.default_model,
    )
    credentials = CredentialStore(settings.credentials_file)
    if settings.has_override_credentials:
        credentials.set_override(
            str(settings.acp_access_token),
            str(settings.acp_endpoint_url),
        )
    else:
        await asyncio.to_thread(credentials.check)
    if not settings.agent_client_factory:
        raise RuntimeError(
            "AGENT_CLIENT_FACTORY is not set; point it at 'module:attribute' of an "
            "agent client factory."
        )
    factory = load_client_factory(settings.agent_client_factory)
    pool = ClientPool(
        catalog=catalog,
        factory=factory,
        credentials=credentials,
        capacity=settings.pool_size,
        default_workspace=settings.workspace_root,
    )
    metrics = RequestMetrics()
    retry_policy = RetryPolicy(
        max_retries=settings.retry_max_retries,
        initial_delay_ms=settings.retry_initial_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        backoff_multiplier=settings.retry_backoff_multiplier,
        jitter_factor=settings.retry_jitter_factor,
    )
    app.state.settings = settings
    app.state.catalog = catalog
    app.state.credentials = credentials
    app.state.metrics = metrics
    app.state.orchestrator = RequestOrchestrator(
        catalog=catalog,
        pool=pool,
        retry_policy=retry_policy,
        metrics=metrics,
        request_timeout_seconds=settings.request_timeout_seconds,
    )
    app.state.started_at = datetime.now(UTC)
    _setup_optional_tracing(app_obj=app, settings=settings)
    logger.info(
        (
            "startup complete models=%d default_model=%s pool_size=%d workspace=%s "
            "credentials_override=%s request_timeout_seconds=%.1f"
        ),
        len(catalog.models),
        catalog.default_model,
        settings.pool_size,
        settings.workspace_root,
        credentials.has_override,
        settings.request_timeout_seconds,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    orchestrator: RequestOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        settings: Settings = app.state.settings
        await orchestrator.shutdown(settings.shutdown_timeout_seconds)
    logger.info("shutdown complete")


async def _watch_disconnect(request: Request, ctx: RequestContext, interval: float) -> None:
    while not ctx.finished and not ctx.cancellation.is_set:
        if await request.is_disconnected():
            if ctx.cancellation.cancel(CLIENT_GONE):
                logger.info("request_client_disconnected request_id=%s", ctx.request_id)
            return
        await asyncio.sleep(interval)


async def _stream_response(
    request: Request,
    orchestrator: RequestOrchestrator,
    ctx: RequestContext,
    poll_interval: float,
) -> Response:
    watcher = asyncio.create_task(_watch_disconnect(request, ctx, poll_interval))
    chunks = orchestrator.stream(ctx)
    try:
        first = await anext(chunks)
    except GatewayError as exc:
        watcher.cancel()
        await chunks.aclose()
        return _error_response(exc, ctx.request_id)
    except BaseException:
        watcher.cancel()
        await chunks.aclose()
        raise

    async def body() -> AsyncIterator[bytes]:
        try:
            yield first
            async for chunk in chunks:
                yield chunk
        finally:
            watcher.cancel()
            await chunks.aclose()

    return StreamingResponse(
        content=body(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Request-ID": ctx.request_id},
    )


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    orchestrator: RequestOrchestrator = app.state.orchestrator
    settings: Settings = app.state.settings
    request_id = _request_id(request)
    body = await request.body()
    try:
        ctx = orchestrator.begin(body, request_id)
    except GatewayError as exc:
        return _error_response(exc, request_id)

    if ctx.stream:
        return await _stream_response(
            request,
            orchestrator,
            ctx,
            settings.disconnect_poll_interval_seconds,
        )

    watcher = asyncio.create_task(
        _watch_disconnect(request, ctx, settings.disconnect_poll_interval_seconds)
    )
    try:
        payload = await orchestrator.complete(ctx)
    except GatewayError as exc:
        return _error_response(exc, request_id)
    finally:
        watcher.cancel()
    return JSONResponse(content=payload, headers={"X-Request-ID": request_id})


@app.get("/v1/models")
async def list_models() -> dict[str, Any]:
    catalog: ModelCatalog = app.state.catalog
    created = int(time.time())
    return {
        "object": "list",
        "data": [_model_entry(model_id, catalog, created) for model_id in catalog.public_ids()],
    }


@app.get("/v1/models/{model_id:path}")
async def get_model(model_id: str) -> Response:
    catalog: ModelCatalog = app.state.catalog
    if catalog.get(model_id) is None:
        error = GatewayError(
            ErrorKind.MODEL_NOT_FOUND,
            f"Model '{model_id}' not found",
            suggestion=(
                "Use GET /v1/models to see available models. "
                f"Default model: {catalog.default_model}"
            ),
        )
        return JSONResponse(status_code=error.status_code, content=error.to_envelope())
    return JSONResponse(content=_model_entry(model_id, catalog, int(time.time())))


@app.get("/health")
async def health() -> JSONResponse:
    settings: Settings = app.state.settings
    catalog: ModelCatalog = app.state.catalog
    metrics: RequestMetrics = app.state.metrics
    orchestrator: RequestOrchestrator = app.state.orchestrator

    status = "ok"
    message = "ACP gateway is running"
    if not orchestrator.accepting:
        status = "unhealthy"
        message = "Server is shutting down"
    elif metrics.active_requests > settings.pool_size * len(catalog.models):
        status = "degraded"
        message = "High request load"
    elif metrics.success_rate < 0.9 and metrics.total_requests > 10:
        status = "degraded"
        message = "High error rate detected"

    uptime_seconds = metrics.uptime_seconds
    payload = {
        "status": status,
        "message": message,
        "timestamp": datetime.now(UTC).isoformat(),
        "uptime": {
            "seconds": int(uptime_seconds),
            "formatted": format_uptime(uptime_seconds),
        },
        "metrics": metrics.snapshot(),
        "models": {
            "available": catalog.public_ids(),
            "default": catalog.default_model,
        },
        "pool": orchestrator.pool.stats(),
        "config": _effective_config(settings),
    }
    return JSONResponse(status_code=503 if status == "unhealthy" else 200, content=payload)


@app.get("/")
@app.get("/healthz")
@app.get("/ready")
async def liveness() -> JSONResponse:
    orchestrator: RequestOrchestrator = app.state.orchestrator
    if not orchestrator.accepting:
        return JSONResponse(status_code=503, content={"status": "shutting_down"})
    return JSONResponse(content={"status": "ok"})


@app.get("/version")
async def version() -> dict[str, Any]:
    settings: Settings = app.state.settings
    catalog: ModelCatalog = app.state.catalog
    started_at: datetime = app.state.started_at
    return {
        "name": "acp-gateway",
        "version": __version__,
        "catalog_version": catalog.version,
        "description": app.description,
        "runtime": {
            "python": platform.python_version(),
            "platform": platform.system().lower(),
            "arch": platform.machine(),
        },
        "api": {
            "openai_compatible": True,
            "version": "v1",
            "default_model": catalog.default_model,
            "available_models": catalog.public_ids(),
        },
        "config": _effective_config(settings),
        "started_at": started_at.isoformat(),
    }


@app.get("/metrics")
async def metrics_snapshot() -> dict[str, Any]:
    metrics: RequestMetrics = app.state.metrics
    orchestrator: RequestOrchestrator = app.state.orchestrator
    return {
        **metrics.snapshot(),
        "uptime_seconds": int(metrics.uptime_seconds),
        "pool": orchestrator.pool.stats(),
    }


@app.get("/metrics/prometheus")
async def metrics_prometheus() -> PlainTextResponse:
    settings: Settings = app.state.settings
    if not settings.observability_metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics endpoint is disabled.")
    metrics: RequestMetrics = app.state.metrics
    orchestrator: RequestOrchestrator = app.state.orchestrator
    return PlainTextResponse(
        content=render_prometheus_metrics(metrics, orchestrator.pool.stats()),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "acp_gateway.main:app",
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
        reload=False,
    )


if __name__ == "__main__":
    run()
