"""
Google Ads Copilot — FastAPI Backend
Consolidates Google Ads account data, derives insights and serves
token-bounded context to a conversational assistant.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ads_copilot.config import get_settings
from ads_copilot.database import init_db, check_db_connection
from ads_copilot.auth import require_auth
from ads_copilot.errors import ContextError
from ads_copilot.routers import ai, context, cron

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Google Ads Copilot...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Google Ads Copilot",
    description="Account consolidation, insights and AI context for Google Ads",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ContextError)
async def context_error_handler(request: Request, exc: ContextError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Register Routers (all require auth except cron) ───────────────────
_auth = [Depends(require_auth)]
app.include_router(context.router, prefix="/api/context", tags=["AI Context"], dependencies=_auth)
app.include_router(ai.router, prefix="/api/ai", tags=["AI Assistant"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No API key; uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Google Ads Copilot",
        "database": "connected" if db_ok else "disconnected",
    }
