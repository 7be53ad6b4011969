"""FastAPI service exposing OWA stored procedures over HTTP."""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.auth import BasicAuthMiddleware
from app.config import ROOT, HandlerConfig, load_config, load_env_file, static_auth
from app.db import OraclePool, get_db_stats, reset_db_stats
from app.invoke import PlsqlHandler

load_env_file(ROOT / "app" / ".env")

logger = logging.getLogger("webplsql")
logging.basicConfig(level=logging.INFO)

REQ_SLOW_MS = float(os.getenv("WEBPLSQL_REQ_SLOW_MS", "250"))


def create_app(config: HandlerConfig | None = None, pool: Any | None = None) -> FastAPI:
    config = config or load_config()
    pool = pool if pool is not None else OraclePool()
    handler = PlsqlHandler(pool, config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("gateway_start route=/%s document_table=%s error_style=%s", config.route, config.document_table or "-", config.error_style)
        try:
            yield
        finally:
            close = getattr(pool, "close", None)
            if close is not None:
                await close()
            logger.info("gateway_stop route=/%s", config.route)

    app = FastAPI(lifespan=lifespan)
    app.state.handler = handler
    app.state.pool = pool

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        reset_db_stats()
        start = time.perf_counter()
        response = await call_next(request)
        total_ms = (time.perf_counter() - start) * 1000
        auth_ms = getattr(request.state, "auth_ms", 0.0)
        db_stats = get_db_stats()
        log = logger.warning if total_ms >= REQ_SLOW_MS else logger.info
        log(
            "%s %s %s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
            request.method,
            request.url.path,
            response.status_code,
            total_ms,
            auth_ms,
            db_stats.get("total_ms", 0.0),
            db_stats.get("queries", 0),
        )
        return response

    admin_paths = ("/admin",)
    if config.auth_callback is not None:
        # admin paths answer to their own credentials only
        exclude = admin_paths if config.admin_enabled else ()
        app.add_middleware(BasicAuthMiddleware, callback=config.auth_callback, realm=config.auth_realm, exclude=exclude)
    if config.admin_enabled:
        app.add_middleware(
            BasicAuthMiddleware,
            callback=static_auth({config.admin_user: config.admin_password}),
            realm=f"{config.auth_realm} admin",
            include=admin_paths,
        )

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    if config.admin_enabled:

        @app.get("/admin/cache")
        async def admin_cache() -> dict:
            return {"ok": True, "route": config.route, "caches": handler.caches.stats(), "pool": pool.stats()}

        @app.post("/admin/cache/clear")
        async def admin_cache_clear() -> dict:
            handler.caches.clear()
            logger.info("admin_cache_cleared route=/%s", config.route)
            return {"ok": True}

    prefix = f"/{config.route}"

    @app.api_route(prefix, methods=["GET", "POST"], include_in_schema=False)
    @app.api_route(prefix + "/", methods=["GET", "POST"])
    async def default_page(request: Request):
        return await handler.handle(request, None)

    @app.api_route(prefix + "/{name}", methods=["GET", "POST"])
    async def procedure(request: Request, name: str):
        return await handler.handle(request, name)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s error=%s", request.url.path, exc)
        return JSONResponse({"ok": False, "errors": [{"code": "INTERNAL", "message": "Internal error"}]}, status_code=500)

    return app


app = create_app()
