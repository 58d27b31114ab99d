import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import ConfigLoader, RoutingSettings
from .errors import MissingApiKeyError, NotFoundError, ProxyError
from .injector import provider_injector
from .logging_json import RequestLogger, new_request_id
from .routing import is_injectable_path, model_resolver
from .types import HealthResponse, RequestLogMeta
from .upstream import UpstreamClient, build_upstream_headers, build_upstream_url, relay_headers

logger = logging.getLogger(__name__)

NO_STORE = {"cache-control": "no-store"}
REQUEST_ID_HEADER = "x-pinproxy-request-id"
STATIC_DIR = os.path.join(os.path.dirname(__file__), "static")


def create_app(
    config_loader: Optional[ConfigLoader] = None,
    log_dir: Optional[str] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the proxy application.

    config_loader is the only source of settings; it is read on every request.
    upstream_transport lets tests stand in for the real upstream.
    """
    config_loader = config_loader or ConfigLoader()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        app.state.request_log = RequestLogger(log_dir=log_dir)
        settings = config_loader.load_config()
        app.state.upstream = UpstreamClient(transport=upstream_transport)
        logger.info(
            f"Starting pinproxy, config {config_loader.config_path}, "
            f"{len(settings.model_providers)} model mapping(s), upstream {settings.base_url}"
        )
        yield
        # Shutdown
        await app.state.upstream.aclose()
        app.state.request_log.close()
        logger.info("Shutting down...")

    app = FastAPI(title="pinproxy", lifespan=lifespan, redirect_slashes=False)
    app.state.config_loader = config_loader

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return JSONResponse({"error": exc.message}, status_code=exc.status_code, headers=NO_STORE)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            return await proxy_error_handler(request, NotFoundError())
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=NO_STORE)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request parameters."}, status_code=400, headers=NO_STORE)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse({"error": str(exc) or "Unknown error"}, status_code=500, headers=NO_STORE)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request.state.request_id = new_request_id()
        app.state.request_log.log_request(request.state.request_id, request.method, request.url.path)
        return await call_next(request)

    _register_routes(app)
    return app


def get_config_loader(request: Request) -> ConfigLoader:
    return request.app.state.config_loader


def get_settings(loader: ConfigLoader = Depends(get_config_loader)) -> RoutingSettings:
    return loader.load_config()


def _register_routes(app: FastAPI):

    @app.get("/")
    async def index():
        return FileResponse(os.path.join(STATIC_DIR, "index.html"), media_type="text/html", headers=NO_STORE)

    @app.api_route("/health", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    async def health(settings: RoutingSettings = Depends(get_settings)):
        payload = HealthResponse(
            hasApiKey=bool(settings.openrouter_api_key),
            modelProviderMappings=len(settings.model_providers),
            allowFallbacks=settings.allow_fallbacks,
            bindHost=settings.bind_host,
            port=settings.port,
        )
        return JSONResponse(payload.model_dump(), headers=NO_STORE)

    @app.get("/api/config")
    async def get_config(settings: RoutingSettings = Depends(get_settings)):
        """Current settings, API key included: the admin surface is local-only."""
        return JSONResponse(settings.to_json(), headers=NO_STORE)

    @app.post("/api/config")
    async def save_config(request: Request, loader: ConfigLoader = Depends(get_config_loader)):
        raw = await request.body()
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None

        saved = loader.save_config(payload)
        logger.info(f"Saved config with {len(saved.model_providers)} model mapping(s)")
        return JSONResponse({"ok": True, "config": saved.to_json()}, headers=NO_STORE)

    @app.get("/api/logs")
    async def get_logs(request: Request, limit: int = 100):
        """Most recent request log records, newest last."""
        return JSONResponse({"logs": request.app.state.request_log.get_recent_requests(limit)}, headers=NO_STORE)

    @app.api_route("/v1/{path:path}", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    async def proxy_v1(request: Request, settings: RoutingSettings = Depends(get_settings)):
        try:
            return await _proxy(request, settings)
        except ProxyError as e:
            logger.error(f"[{request.state.request_id}] {request.method} {request.url.path} failed: {e.message}")
            raise
        except Exception as e:
            logger.exception(f"[{request.state.request_id}] Proxy failure")
            raise ProxyError(str(e) or e.__class__.__name__) from e


async def _proxy(request: Request, settings: RoutingSettings) -> Response:
    request_id = request.state.request_id
    request_log: RequestLogger = request.app.state.request_log
    upstream: UpstreamClient = request.app.state.upstream
    method = request.method
    path = request.url.path

    if not settings.openrouter_api_key:
        request_log.log_request(request_id, method, path, RequestLogMeta(injected_provider=False))
        raise MissingApiKeyError()

    upstream_url = build_upstream_url(settings, path, request.url.query)
    headers = build_upstream_headers(settings, request.headers)
    meta = RequestLogMeta(injected_provider=False, upstream_url=upstream_url)

    body: Optional[bytes] = None
    if method not in ("GET", "HEAD"):
        body = await request.body()
        content_type = request.headers.get("content-type", "")
        if body and "application/json" in content_type and is_injectable_path(path):
            body, meta = _rewrite_body(request, settings, body, meta)
    request_log.log_request(request_id, method, path, meta)

    response = await upstream.send(method, upstream_url, headers, body)
    request_log.log_request(
        request_id, method, path,
        RequestLogMeta(upstream_url=upstream_url, upstream_status=response.status_code),
    )

    relayed = StreamingResponse(
        upstream.relay(response, request_id),
        status_code=response.status_code,
        background=BackgroundTask(response.aclose),
    )
    relayed.raw_headers = relay_headers(response) + [(REQUEST_ID_HEADER.encode(), request_id.encode())]
    return relayed


def _rewrite_body(request: Request, settings: RoutingSettings, body: bytes, meta: RequestLogMeta):
    """Pin the provider on a JSON completion body. Bodies that fail to parse go out as they came in."""
    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body, meta
    if not isinstance(parsed, dict):
        return body, meta

    model = model_resolver.resolve(request.url.path, request.query_params, request.headers, parsed)
    result = provider_injector.inject(model, settings, parsed)
    meta = meta.model_copy(update={
        "model": model or None,
        "mapped_provider": result.provider,
        "injected_provider": result.injected,
    })
    return json.dumps(result.body, ensure_ascii=False, separators=(",", ":")).encode("utf-8"), meta


app = create_app(log_dir=os.environ.get("PINPROXY_LOG_DIR", "logs"))
