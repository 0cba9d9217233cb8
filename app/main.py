import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from app.config import get_settings
from app.core.errors import register_exception_handlers
from app.core.logging import setup_logging
from app.database import create_tables
from app.hash_password import create_or_update_admin
from app.routers import (
    appointments, auth, circle_posts, circles, departments, doctors, health, live_streams, logs,
    notifications, patient_profiles, prescriptions, realtime, reviews, users, video_consultations,
)
from app.services.cache_service import get_cache
from app.services.realtime_service import connection_manager

settings = get_settings()
setup_logging(level=settings.log_level, json_output=settings.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    create_or_update_admin()
    cache = get_cache()
    if cache.ping():
        logger.info(f"Cache backend '{cache.backend_name}' reachable")
    else:
        logger.warning(f"Cache backend '{cache.backend_name}' unreachable; running without cache")
    yield
    connection_manager.clear()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")
app.include_router(departments.router, prefix="/api/v1")
app.include_router(doctors.router, prefix="/api/v1")
app.include_router(patient_profiles.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(prescriptions.router, prefix="/api/v1")
app.include_router(reviews.router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")
app.include_router(live_streams.router, prefix="/api/v1")
app.include_router(circles.router, prefix="/api/v1")
app.include_router(circle_posts.router, prefix="/api/v1")
app.include_router(video_consultations.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")
app.include_router(logs.router, prefix="/api/v1")
app.include_router(realtime.router, prefix="/api/v1")

os.makedirs(settings.storage_local_dir, exist_ok=True)
app.mount(settings.storage_public_url, StaticFiles(directory=settings.storage_local_dir), name="uploads")


if __name__ == "__main__":
    uvicorn.run("app.main:app", host=settings.server_host, port=settings.server_port)
