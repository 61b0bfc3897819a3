#=================================================================
# app/main_app.py
# FastAPI application entry-point: webhook intake, status, admin.
#=================================================================

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app import logging_filters
from app.config import settings
from app.context import ReconciliationContext, build_context
from app.db import init_db
from app.mapping.mapping_api import router as mapping_router
from app.webhooks.intake import router as intake_router
from app.webhooks.status_api import router as status_router
from app.workers.jobs_worker import WorkerPool

# --- Logging setup (console, INFO level) ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("uvicorn.error")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging_filters.install()


def create_app(context: Optional[ReconciliationContext] = None) -> FastAPI:
    """
    Build the service. With no context, one is assembled from settings at startup;
    tests pass their own (fake platform clients, temp database).
    """
    app = FastAPI(
        title="Storefront/Marketplace Webhook Reconciliation",
        description="Verifies Shopify and Naver webhooks and reconciles orders and stock between them.",
    )
    app.state.context = context
    app.state.workers = None

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------------- Include routers ----------------
    # status/admin first: fixed paths under /webhooks win over the intake pattern
    app.include_router(status_router)    # /webhooks/status, /webhooks/retry/*, ...
    app.include_router(intake_router)    # /webhooks/{source}/{resource}/{action}
    app.include_router(mapping_router)   # /api/integration/mapping/*

    @app.get("/")
    async def home():
        return {"status": "running", "service": "webhook-reconciliation"}

    # --- Global error handler (keeps full stack trace in logs) ---
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # ---- Context + worker lifecycle ----
    @app.on_event("startup")
    async def _startup():
        if app.state.context is None:
            app.state.context = build_context(settings)
        ctx: ReconciliationContext = app.state.context
        if ctx.engine is not None:
            await init_db(ctx.engine)
        if ctx.settings.WORKERS_ENABLED:
            pool = WorkerPool(ctx)
            pool.start()
            app.state.workers = pool
        else:
            logger.info("[WORKER] disabled by WORKERS_ENABLED=false")

    @app.on_event("shutdown")
    async def _shutdown():
        pool: Optional[WorkerPool] = app.state.workers
        if pool is not None:
            await pool.stop(timeout=5.0)
            app.state.workers = None
        if app.state.context is not None:
            await app.state.context.aclose()

    return app


app = create_app()

#if __name__ == "__main__":
#    import uvicorn
#
#    uvicorn.run(app, host="0.0.0.0", port=8000)
