import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadrelay.config import settings
from leadrelay.database import SessionLocal, init_db
from leadrelay.logging_config import get_logger, setup_logging
from leadrelay.routers import webhook
from leadrelay.services.pipeline import build_pipeline

setup_logging(settings.log_level)

app = FastAPI(
    title="LeadRelay",
    description="Webhook pipeline routing WhatsApp leads through conversation agents",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)

logger = get_logger("main")


@app.on_event("startup")
async def startup() -> None:
    init_db()
    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = build_pipeline(settings, SessionLocal)
    sweeper = getattr(app.state, "sweeper_task", None)
    if sweeper is None or sweeper.done():
        app.state.sweeper_task = asyncio.create_task(app.state.pipeline.run_sweeper(settings.sweep_interval_seconds))
    logger.info("Pipeline started", extra={"context": {"bot_number": settings.bot_number or None}})


@app.on_event("shutdown")
async def shutdown() -> None:
    sweeper = getattr(app.state, "sweeper_task", None)
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        app.state.sweeper_task = None
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.aclose()


@app.get("/health")
async def health():
    return {"status": "ok"}
