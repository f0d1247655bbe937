from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rematch.api.routes import router as api_router
from rematch.config import get_settings
from rematch.db.init import init_database
from rematch.logging_config import configure_logging
from rematch.queue.workers import WorkerPool, build_pools

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()

    app = FastAPI(title=settings.app_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    pools: list[WorkerPool] = []

    @app.on_event("startup")
    async def _startup() -> None:
        init_database()
        if settings.api_run_workers:
            pools.extend(build_pools(settings))
            for pool in pools:
                await pool.start()
            logger.info("Started %s in-process worker pools", len(pools))

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        for pool in pools:
            await pool.stop()
        pools.clear()

    @app.get("/health")
    def health() -> JSONResponse:
        return JSONResponse({"status": "ok", "llm_available": settings.llm_available})

    app.include_router(api_router)
    return app
