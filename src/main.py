"""Entry point for the Twilio <-> realtime speech bridge."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.twilio_routes import router as twilio_router
from bridge.session import SessionManager
from config.settings import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager = SessionManager(settings)
    app.state.session_manager = manager
    yield
    await manager.shutdown()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Realtime Voice Bridge",
    description="Relays Twilio Media Streams to a realtime speech model and back.",
    lifespan=lifespan,
)
app.include_router(twilio_router, prefix="/api")
