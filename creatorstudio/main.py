"""
Creator Studio — main.py
─────────────────────────────────────────────────────────────────
Central entry point. All routers mount here.

Start server:
    uvicorn creatorstudio.main:app --reload --port 8000
    creatorstudio                       (console script)

File map:
    api.py          → /api/jobs/*, /api/credits, /api/notifications
    webhooks.py     → /api/webhooks/{provider}
    coordinator.py  → service only (no direct routes)
    reaper.py       → background sweep (no direct routes)
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from creatorstudio import __version__
from creatorstudio.api import router as api_router
from creatorstudio.core.config import cfg
from creatorstudio.core.database import init_all_tables
from creatorstudio.services import Services, build_services
from creatorstudio.webhooks import router as webhooks_router

# ── Logging ───────────────────────────────────
logging.basicConfig(
    level   = logging.INFO,
    format  = "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt = "%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("creatorstudio.main")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the app. Tests pass their own Services (temp DB, fake
    providers); production builds them from .env on startup.
    """

    # ─────────────────────────────────────────────
    # Startup / Shutdown
    # ─────────────────────────────────────────────
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 Creator Studio starting [{cfg.ENV}]")
        svc = services or build_services()
        app.state.services = svc

        await init_all_tables(svc.db_path)
        logger.info("✓ Job + credit tables ready")

        await svc.coordinator.start_background()
        await svc.coordinator.rehydrate()
        reaper_task = asyncio.create_task(svc.reaper.run(), name="timeout-reaper")

        if not cfg.webhooks_ready:
            logger.warning("⚠️  WEBHOOK_SECRET not set — webhook callbacks will be rejected")
        if svc.push is None:
            logger.info("Push gateway not configured, device notifications are off")
        logger.info("✅ Creator Studio is live.")

        yield  # App runs here

        svc.reaper.stop()
        reaper_task.cancel()
        await asyncio.gather(reaper_task, return_exceptions=True)
        await svc.coordinator.shutdown()
        logger.info("Creator Studio shutting down.")

    # ─────────────────────────────────────────────
    # App
    # ─────────────────────────────────────────────
    app = FastAPI(
        title       = "Creator Studio API",
        description = "Generated-media job orchestration",
        version     = __version__,
        docs_url    = "/docs"  if not cfg.is_production else None,  # hide in prod
        redoc_url   = "/redoc" if not cfg.is_production else None,
        lifespan    = lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins     = [cfg.FRONTEND_URL],
        allow_credentials = True,
        allow_methods     = ["*"],
        allow_headers     = ["*"],
    )

    app.include_router(api_router)
    app.include_router(webhooks_router)

    # ─────────────────────────────────────────────
    # Health Check
    # ─────────────────────────────────────────────
    @app.get("/health", tags=["system"])
    async def health(request: Request):
        """Liveness plus the list of configured providers."""
        svc = request.app.state.services
        return {
            "status":      "ok",
            "app":         "Creator Studio",
            "version":     __version__,
            "env":         cfg.ENV,
            "providers":   sorted(svc.providers),
            "active_jobs": len(svc.coordinator.registry),
            "storage":     svc.storage is not None,
        }

    # ─────────────────────────────────────────────
    # Global Error Handler
    # ─────────────────────────────────────────────
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error: {exc}", exc_info=True)
        return JSONResponse(
            status_code = 500,
            content     = {"detail": "Internal server error."},
        )

    return app


app = create_app()


# ─────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────
def run():
    import uvicorn
    uvicorn.run(
        "creatorstudio.main:app",
        host    = cfg.HOST,
        port    = cfg.PORT,
        reload  = cfg.is_dev,
        workers = 1,  # one process owns the job registry
    )


if __name__ == "__main__":
    run()
