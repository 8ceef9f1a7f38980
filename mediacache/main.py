"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mediacache.core.config import Settings, settings as default_settings
from mediacache.core.exceptions import MediaCacheError
from mediacache.core.logging import log_error, setup_logging
from mediacache.core.metrics import get_content_type, get_metrics, set_app_info
from mediacache.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    TracingMiddleware,
)
from mediacache.core.providers import ProviderSelector
from mediacache.core.tracing import setup_tracing, shutdown_tracing
from mediacache.modules.monitoring.router import router as monitoring_router
from mediacache.modules.monitoring.service import UsageMonitor
from mediacache.modules.notification.service import AlertNotifier
from mediacache.modules.optimize.fetcher import OriginFetcher
from mediacache.modules.optimize.keys import KeyDeriver
from mediacache.modules.optimize.router import router as optimize_router
from mediacache.modules.optimize.schemas import TransformOptionsNormalizer
from mediacache.modules.optimize.service import TransformCacheService
from mediacache.modules.optimize.tenants import TenantResolver
from mediacache.modules.transcoding.ffmpeg import FFmpegVideoEncoder
from mediacache.modules.transcoding.service import MediaEncoder

logger = logging.getLogger(__name__)


def build_transform_service(
    settings: Settings,
    selector: ProviderSelector,
    http_client: httpx.AsyncClient,
    encoder: MediaEncoder,
) -> TransformCacheService:
    """Wire the transform pipeline from settings and shared resources."""
    fetcher = OriginFetcher(
        client=http_client,
        max_bytes=settings.MAX_SOURCE_BYTES,
        timeout=settings.FETCH_TIMEOUT_SECONDS,
        max_redirects=settings.FETCH_MAX_REDIRECTS,
        resolve_hosts=settings.FETCH_RESOLVE_HOSTS,
        user_agent=settings.FETCH_USER_AGENT,
    )
    return TransformCacheService(
        selector=selector,
        encoder=encoder,
        fetcher=fetcher,
        tenants=TenantResolver(settings.ALLOWED_TENANTS, settings.DEFAULT_TENANT),
        keys=KeyDeriver(),
        normalizer=TransformOptionsNormalizer.from_settings(settings),
        notifier=AlertNotifier.from_settings(settings),
        coalesce=settings.COALESCE_INFLIGHT,
        max_upload_bytes=settings.MAX_SOURCE_BYTES,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared components at startup and release them at shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime()

    selector = ProviderSelector.from_settings(settings)
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.FETCH_TIMEOUT_SECONDS),
        follow_redirects=False,
    )
    encoder = MediaEncoder(
        video_encoder=FFmpegVideoEncoder(settings.FFMPEG_PATH, settings.FFPROBE_PATH),
        max_workers=settings.ENCODE_WORKERS,
    )

    app.state.transform_service = build_transform_service(settings, selector, http_client, encoder)
    app.state.usage_monitor = UsageMonitor(
        selector,
        access_code=settings.MONITOR_ACCESS_CODE,
        max_keys=settings.MONITOR_MAX_KEYS,
    )
    logger.info(f"Storage providers: {', '.join(selector.names)}")

    try:
        yield
    finally:
        await http_client.aclose()
        encoder.shutdown()
        shutdown_tracing()


async def media_error_handler(request: Request, exc: MediaCacheError) -> JSONResponse:
    """Render pipeline errors; server faults get a generic message."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log_error(logger, "Unhandled error", exception=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": MediaCacheError.public_message, "code": MediaCacheError.code},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Settings to use; defaults to the environment-loaded settings

    Returns:
        FastAPI: Configured application
    """
    settings = settings or default_settings

    setup_logging(
        level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
        json_format=settings.LOG_JSON,
        include_stack_trace=True,
    )
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=settings.environment,
        enable_console_export=settings.DEBUG,
    )
    set_app_info(version=settings.VERSION, environment=settings.environment)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=(
            "Content-addressed media transform cache. Resizes and re-encodes "
            "remote or uploaded images and videos and serves them from object storage."
        ),
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "optimize", "description": "Media transforms, uploads and srcsets"},
            {"name": "monitoring", "description": "Storage usage by tenant"},
        ],
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(TracingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(MediaCacheError, media_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint.

        Returns:
            dict: Health status
        """
        return {"status": "healthy"}

    @app.get("/metrics", tags=["health"], include_in_schema=False)
    async def prometheus_metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_content_type())

    app.include_router(optimize_router)
    app.include_router(monitoring_router)

    return app


app = create_app()
