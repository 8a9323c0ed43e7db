import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kahani.config import settings
from kahani.database import Base, engine
from kahani.dependencies import build_services
from kahani.logging_config import get_logger, setup_logging
from kahani.routers import alerts, scheduler, trials, webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="Kahani API",
    description="WhatsApp story collection backend",
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
app.include_router(trials.router)
app.include_router(scheduler.router)
app.include_router(alerts.router)

app.state.services = build_services(settings)

scheduler_logger = get_logger("scheduler_worker")


def _is_scheduler_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.scheduler_enabled


@app.on_event("startup")
async def start_scheduler() -> None:
    Base.metadata.create_all(bind=engine)
    if not _is_scheduler_enabled():
        scheduler_logger.info("Scheduler disabled")
        return
    app.state.services.scheduler.start()


@app.on_event("shutdown")
async def stop_scheduler() -> None:
    await app.state.services.scheduler.stop()
    await app.state.services.dispatcher.drain()


@app.get("/health")
async def health():
    return {"status": "ok", "whatsapp_configured": app.state.services.gateway.is_configured}
