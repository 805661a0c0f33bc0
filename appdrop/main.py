"""
appdrop API server.

Run with:
    uvicorn appdrop.main:app --host 127.0.0.1 --port 62710
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from appdrop.api.v1 import channels, releases, upload, web_hooks
from appdrop.config import settings
from appdrop.db.database import init_db
from appdrop.services.ingest import shutdown_extract_pool
from appdrop.services.teardown import drain_teardowns
from appdrop.services.webhooks import get_notifier

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info("appdrop started")
    yield
    await get_notifier().drain()
    await drain_teardowns()
    shutdown_extract_pool()
    logger.info("appdrop stopped")


app = FastAPI(
    title="appdrop",
    description="Mobile build distribution: release ingestion, versioning and web hooks",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.include_router(upload.router, prefix="/api/v1")
app.include_router(channels.router, prefix="/api/v1")
app.include_router(releases.router, prefix="/api/v1")
app.include_router(web_hooks.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok"}
