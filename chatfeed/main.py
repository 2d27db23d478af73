from __future__ import annotations

import logging
from typing import Optional, Tuple

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from chatfeed.core.settings import S
from chatfeed.dependencies import Services, build_services
from chatfeed.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from chatfeed.responses import install_error_handlers
from chatfeed.routers.events import router as events_router
from chatfeed.routers.misc import router as misc_router
from chatfeed.routers.posts import router as posts_router


class CompressionMiddleware:
    """GZip responses, except streams that must reach the client event by event."""

    def __init__(self, app: ASGIApp, minimum_size: int = 1000, skip_prefixes: Tuple[str, ...] = ("/events",)) -> None:
        self.app = app
        self.gzip = GZipMiddleware(app, minimum_size=minimum_size)
        self.skip_prefixes = skip_prefixes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and not scope["path"].startswith(self.skip_prefixes):
            await self.gzip(scope, receive, send)
        else:
            await self.app(scope, receive, send)


def configure_logging() -> None:
    logging.basicConfig(level=S.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def create_app(services: Optional[Services] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="chatfeed", version="0.1.0")
    app.state.services = services or build_services()

    app.add_middleware(CompressionMiddleware, minimum_size=S.gzip_min_bytes)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in S.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Idempotency-Key", "X-User-Sub"],
    )
    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    install_error_handlers(app)

    app.include_router(misc_router)
    app.include_router(posts_router)
    app.include_router(events_router)

    return app


app = create_app()
