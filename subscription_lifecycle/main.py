"""
Subscription lifecycle service: plan changes, pauses, perk usage and payment
gateway reconciliation for home-services subscriptions.

Run locally with ``uvicorn subscription_lifecycle.main:app --reload --port 8010``.
"""

import time
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# .env must be loaded before settings are instantiated
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env")

from fastapi import FastAPI, Request

from .core.config import settings
from .core.database import engine, Base
from .core.logging_config import setup_logging, get_logger, set_request_context, generate_request_id
from .core.redis_lock import check_redis_connection
from .api import perks, subscriptions, webhooks
from .api.errors import register_exception_handlers
from .services.notification_publisher import notification_publisher
from .services.scheduler import start_scheduler, stop_scheduler, list_jobs

SERVICE_NAME = "subscription-lifecycle"
SERVICE_VERSION = "1.0.0"

setup_logging()
logger = get_logger(SERVICE_NAME)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.PROJECT_NAME} starting ({settings.ENVIRONMENT}), API at {settings.API_V1_STR}")

    # Alembic owns the schema in deployed environments; this covers local runs
    Base.metadata.create_all(bind=engine)

    start_scheduler()

    yield

    logger.info(f"{settings.PROJECT_NAME} shutting down")
    stop_scheduler()
    notification_publisher.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=SERVICE_VERSION,
    description="Subscription lifecycle management for home-services plans",
    lifespan=lifespan
)

register_exception_handlers(app)

for module, tag in ((subscriptions, "subscriptions"), (perks, "perks"), (webhooks, "webhooks")):
    app.include_router(module.router, prefix=settings.API_V1_STR, tags=[tag])


@app.middleware("http")
async def log_requests(request: Request, call_next):
    if request.url.path == "/health":
        return await call_next(request)

    request_logger = set_request_context(request_id=request.headers.get("x-request-id") or generate_request_id())
    started = time.perf_counter()
    request_logger.info(f"--> {request.method} {request.url.path}")

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - started) * 1000
    request_logger.info(f"<-- {request.method} {request.url.path} {response.status_code} in {elapsed_ms:.1f}ms")
    return response


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "redis": "connected" if check_redis_connection() else "unavailable"
    }


@app.get(f"{settings.API_V1_STR}/jobs", tags=["jobs"])
async def get_jobs():
    """Scheduled lifecycle sweeps and their next run times."""
    return {"jobs": list_jobs()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("subscription_lifecycle.main:app", host="0.0.0.0", port=8010, reload=True)
