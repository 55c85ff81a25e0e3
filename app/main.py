import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from app.config import get_settings, reload_settings

reload_settings()
from app.database import get_pool, close_pool
from app.modules.whatsapp.webhook import router as whatsapp_router
from app.modules.calendly.webhook import router as calendly_router
from app.admin.api import router as admin_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    if get_settings().store_backend == "postgres":
        await get_pool()
    else:
        logger.info("Using %s store backend", get_settings().store_backend)
    yield
    await close_pool()


settings = get_settings()

app = FastAPI(
    title="Lead Lifecycle Engine",
    description="Webhook-driven lead correlation, qualification state, daily queues and change notifications",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(whatsapp_router, prefix="/whatsapp", tags=["whatsapp"])
app.include_router(calendly_router, prefix="/calendly", tags=["calendly"])
app.include_router(admin_router, prefix="/admin", tags=["admin"])


@app.get("/health")
async def health():
    return {"status": "ok", "environment": settings.environment, "store": settings.store_backend}
