from __future__ import annotations

import logging
import sqlite3

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import router
from app.core.config import settings
from app.services.ml_api_client import ml_config_issue
from app.services.persistence import init_db

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    logging.getLogger("app").setLevel(settings.log_level.strip().upper() or "INFO")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(sqlite3.Error)
    async def _storage_error(request: Request, exc: sqlite3.Error) -> JSONResponse:
        logger.exception("Storage error while handling %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=503,
            content={"detail": {"code": "storage_unavailable", "message": "storage temporarily unavailable"}},
        )

    @app.on_event("startup")
    async def _startup() -> None:
        init_db()

        issue = ml_config_issue()
        if issue:
            logger.warning("Mercado Livre integration not configured (%s)", issue)
        else:
            logger.info("Mercado Livre integration configured (redirect_uri=%s)", settings.ml_redirect_uri)

        if not settings.openai_api_key.strip():
            logger.info("OPENAI_API_KEY missing; AI suggestions will use the fallback text")

    app.include_router(router, prefix="/api")
    return app


app = create_app()
