"""
Guardian Connect ASGI application.

    uvicorn guardian.app.main:app --port 8000

Room membership for the realtime channel is held in process memory, so run
a single worker per deployment.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from guardian.app.api.v1.emergencies import router as emergency_router
from guardian.app.api.v1.messages import router as message_router
from guardian.app.api.v1.notifications import router as notification_router
from guardian.app.api.v1.realtime import router as realtime_router
from guardian.app.core.cache import close_redis
from guardian.app.core.config import settings
from guardian.app.core.database import close_db, init_db
from guardian.app.core.errors import register_error_handlers
from guardian.app.core.health import HealthStatus, run_health_check
from guardian.app.core.logging_config import get_logger, setup_logging
from guardian.app.core.middleware import RequestLoggingMiddleware

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s %s starting (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)
    if settings.DATABASE_AUTO_CREATE:
        await init_db()
    for channel, enabled, keys in (
        ("mobile push", settings.mobile_push_enabled, "MOBILE_PUSH_URL, MOBILE_PUSH_AUTH_TOKEN"),
        ("web push", settings.web_push_enabled, "VAPID_PUBLIC_KEY, VAPID_PRIVATE_KEY"),
    ):
        if not enabled:
            logger.warning("%s disabled: set %s", channel, keys)

    yield

    logger.info("%s stopping", settings.APP_NAME)
    await close_redis()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Emergency coordination: a user raises an emergency, their contacts "
        "are notified over mobile push, web push and a realtime socket, and "
        "accepted responders share live location and chat until it ends."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
register_error_handlers(app)

for router in (emergency_router, message_router, notification_router, realtime_router):
    app.include_router(router)


@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health():
    """Per-component report; always 200."""
    return (await run_health_check()).to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """503 only when a hard dependency (the database) is down."""
    report = await run_health_check()
    status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(report.to_dict(), status_code=status_code)
