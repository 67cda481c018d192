from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kivendi.api.errors import register_exception_handlers
from kivendi.api.middleware import MaintenanceMiddleware
from kivendi.api.routes.admin import router as admin_router
from kivendi.api.routes.boosts import router as boosts_router
from kivendi.api.routes.conversations import router as conversations_router
from kivendi.api.routes.maintenance import router as maintenance_router
from kivendi.api.routes.notifications import router as notifications_router
from kivendi.api.routes.webhooks import router as webhooks_router
from kivendi.api.routes.ws import router as ws_router
from kivendi.core.config import settings
from kivendi.db.base import Base
from kivendi.db.session import engine
from kivendi.services.payment_gateway import KKiaPayClient
from kivendi.services.push import PushService, build_sender
from kivendi.services.scheduler import start_scheduler, stop_scheduler
from kivendi.services.storage import S3Storage

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def wire_services(app: FastAPI) -> None:
    """Attach the shared external clients to app.state."""
    app.state.gateway = KKiaPayClient.from_settings(settings)
    app.state.storage = S3Storage.from_settings(settings)
    app.state.push = PushService(build_sender(settings.firebase_credentials_file))


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    # Skeleton bootstrap: create tables automatically (sync engine).
    Base.metadata.create_all(bind=engine)
    wire_services(fastapi_app)
    await start_scheduler()
    logger.info("Kivendi backend started (environment=%s)", settings.environment)

    yield

    await stop_scheduler()
    try:
        await fastapi_app.state.gateway.close()
    except Exception as exc:
        logger.warning("Error closing KKiaPay client: %s", exc)


def create_app() -> FastAPI:
    app = FastAPI(title="Kivendi Backend", lifespan=lifespan)

    app.add_middleware(MaintenanceMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    @app.get("/health")
    async def health():
        return {"ok": True}

    app.include_router(boosts_router)
    app.include_router(webhooks_router)
    app.include_router(conversations_router)
    app.include_router(notifications_router)
    app.include_router(maintenance_router)
    app.include_router(admin_router)
    app.include_router(ws_router)

    return app


app = create_app()
