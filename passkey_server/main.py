import asyncio
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
import structlog

from passkey_server.api.v1 import ceremonies, health, users
from passkey_server.api.errors import passkey_exception_handler
from passkey_server.api.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from passkey_server.core.config import settings
from passkey_server.core.exceptions import PasskeyError
from passkey_server.core.logging import setup_logging
from passkey_server.db import postgres, redis
from passkey_server.services.challenge_ledger import (
    ChallengeLedger,
    MemoryChallengeLedger,
    RedisChallengeLedger,
)
from passkey_server.services.verifier import Fido2Verifier

# Setup structured logging
setup_logging()
logger = structlog.get_logger()


def build_ledger() -> ChallengeLedger:
    """Redis when configured, so several instances share pending challenges."""
    if settings.REDIS_URL:
        return RedisChallengeLedger(redis.redis_client)
    return MemoryChallengeLedger()


async def sweep_challenges(ledger: ChallengeLedger, interval: float):
    """Periodically evict expired challenges nobody came back for"""
    while True:
        await asyncio.sleep(interval)
        try:
            await ledger.sweep()
        except PasskeyError as e:
            logger.warning("Challenge sweep failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    logger.info(
        "Starting passkey server",
        version=settings.VERSION,
        rp_id=settings.RP_ID,
        ledger=type(app.state.ledger).__name__,
    )

    await postgres.init_db()
    if settings.REDIS_URL:
        await redis.init_pool()

    sweeper = None
    if isinstance(app.state.ledger, MemoryChallengeLedger):
        sweeper = asyncio.create_task(
            sweep_challenges(app.state.ledger, settings.CHALLENGE_SWEEP_INTERVAL_SECONDS)
        )

    logger.info("Application startup complete.")
    yield

    # Shutdown
    logger.info("Shutting down passkey server")
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper

    await postgres.close_db()
    if settings.REDIS_URL:
        await redis.close_pool()
    logger.info("Application shutdown complete.")

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan
)

app.state.ledger = build_ledger()
app.state.verifier = Fido2Verifier()

app.add_exception_handler(PasskeyError, passkey_exception_handler)

# Middleware
app.add_middleware(RequestIDMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Prometheus metrics
Instrumentator().instrument(app).expose(app)

app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(ceremonies.router, tags=["ceremonies"])
app.include_router(users.router, prefix="/api/users", tags=["users"])


@app.get("/")
def read_root():
    return {"project": settings.PROJECT_NAME, "version": settings.VERSION}
