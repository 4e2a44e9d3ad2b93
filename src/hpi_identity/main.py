"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from hpi_identity.auth.router import router as auth_router
from hpi_identity.config import settings
from hpi_identity.database.engine import init_db
from hpi_identity.dependencies import sweeper
from hpi_identity.errors import IdentityError
from hpi_identity.responses import error_response
from hpi_identity.webhook.handler import router as webhook_router

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hook."""
    logger.info("Starting %s (%s) …", settings.app_name, settings.environment.value)
    await init_db()
    logger.info("Database initialised")
    sweeper.start()
    yield
    await sweeper.stop()
    logger.info("Shutting down %s …", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="Phone verification, session gating and webhook authentication",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(auth_router)
app.include_router(webhook_router)


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError):
    """Render taxonomy errors without echoing the request."""
    return error_response(exc)


@app.get("/health")
async def health_check():
    """Simple liveness probe."""
    return {"status": "healthy", "app": settings.app_name}
