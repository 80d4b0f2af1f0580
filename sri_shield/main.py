"""FastAPI reverse proxy applying SRI/CSP hardening to dynamic pages."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import Response

from sri_shield.config.loader import get_settings, load_settings
from sri_shield.context import ShieldContext, build_context
from sri_shield.health import router as health_router
from sri_shield.logging_config import setup_logging
from sri_shield.middleware.pipeline import MiddlewarePipeline, RequestContext
from sri_shield.middleware.sri_headers import SRIHeaders

logger = structlog.get_logger()

_http_client: httpx.AsyncClient | None = None
_pipeline: MiddlewarePipeline | None = None
_shield: ShieldContext | None = None


def _build_pipeline(shield: ShieldContext) -> MiddlewarePipeline:
    """Build the ordered middleware pipeline."""
    pipeline = MiddlewarePipeline()
    pipeline.add(SRIHeaders(shield))
    return pipeline


def get_shield_context() -> ShieldContext | None:
    return _shield


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    global _http_client, _pipeline, _shield

    settings = load_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.log_json)

    # Loaded once, shared read-only by every request
    _shield = build_context(settings)
    _pipeline = _build_pipeline(_shield)

    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.proxy_timeout),
        follow_redirects=False,
    )

    logger.info(
        "proxy_started",
        upstream=settings.upstream_url,
        port=settings.listen_port,
        global_hashes=len(_shield.global_hashes),
    )

    yield

    if _http_client:
        await _http_client.aclose()
        _http_client = None

    logger.info("proxy_stopped")


app = FastAPI(title="sri-shield proxy", lifespan=lifespan)
app.include_router(health_router)


HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def proxy_request(request: Request, path: str) -> Response:
    """Catch-all reverse proxy handler."""
    if _http_client is None:
        return Response(content="Proxy not initialized", status_code=503)

    settings = get_settings()
    context = RequestContext(path=f"/{path}")

    upstream_url = f"{settings.upstream_url.rstrip('/')}/{path}"
    if request.url.query:
        upstream_url = f"{upstream_url}?{request.url.query}"

    headers = {}
    for key, value in request.headers.items():
        lower = key.lower()
        # Rewriting needs a plain body
        if lower in HOP_BY_HOP_HEADERS or lower in ("host", "accept-encoding"):
            continue
        headers[key] = value
    headers["x-request-id"] = context.request_id

    body = await request.body()
    if len(body) > settings.max_body_bytes:
        return Response(content="Request body too large", status_code=413)

    try:
        upstream_resp = await _http_client.request(
            method=request.method,
            url=upstream_url,
            headers=headers,
            content=body,
        )
    except httpx.TimeoutException:
        logger.error("upstream_timeout", url=upstream_url, request_id=context.request_id)
        return Response(content="Upstream timeout", status_code=504)
    except httpx.ConnectError:
        logger.error("upstream_connect_error", url=upstream_url, request_id=context.request_id)
        return Response(content="Upstream unreachable", status_code=502)
    except httpx.HTTPError as exc:
        logger.error("upstream_error", url=upstream_url, request_id=context.request_id, error=str(exc))
        return Response(content="Upstream error", status_code=502)

    if len(upstream_resp.content) > settings.max_body_bytes:
        logger.error(
            "upstream_response_too_large",
            actual_size=len(upstream_resp.content),
            max=settings.max_body_bytes,
            request_id=context.request_id,
        )
        return Response(content="Upstream response too large", status_code=502)

    # httpx already decoded the body, so the encoding headers no longer apply
    response_headers = {}
    for key, value in upstream_resp.headers.items():
        lower = key.lower()
        if lower in HOP_BY_HOP_HEADERS or lower in ("content-length", "content-encoding"):
            continue
        response_headers[key] = value
    response_headers["x-request-id"] = context.request_id

    response = Response(
        content=upstream_resp.content,
        status_code=upstream_resp.status_code,
        headers=response_headers,
    )

    if _pipeline:
        response = await _pipeline.process_response(response, context)

    return response
