from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from common.config import get_settings

from .endpoints.health import router as health_router
from .service import start_service, stop_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if not start_service(settings):
        logger.error("[SERVICE] Automation service failed to start; /ready will report 503")
    yield
    stop_service()


app = FastAPI(title="IoT Automation Engine", version="0.1.0", lifespan=lifespan)
app.include_router(health_router)
