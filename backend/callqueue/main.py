"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from callqueue.api.v1.endpoints import health
from callqueue.api.v1.routes import api_router
from callqueue.core.config import get_settings
from callqueue.core.tenant_middleware import TenantMiddleware
from callqueue.infrastructure.storage.database import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup:
    - Creates tables and the dispatch lock row if missing
    """
    logger.info("Starting Call Queue service...")

    try:
        init_db()
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    logger.info("Call Queue service started successfully")

    yield  # Application is running

    logger.info("Call Queue service shutdown complete")


settings = get_settings()

app = FastAPI(
    title="Call Queue & Campaign Scheduler",
    description="Outbound call queue, admission control and campaign lifecycle",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(TenantMiddleware)

app.include_router(health.router)
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
