import sys
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api import inventory, maintenance, reservations
from backend.app.api.deps import get_session
from backend.app.core.logging import get_logger, setup_logging
from backend.app.core.metrics import PrometheusMiddleware, get_metrics_response
from backend.app.core.settings import get_settings

APP_VERSION = "1.0.0"

try:
    settings = get_settings()
except ValueError as e:
    print(f"Configuration error: {e}", file=sys.stderr)
    sys.exit(1)

setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.is_production)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: log subscriber on the event bus, expiry sweeper task.
    Shutdown: stop the sweeper before the pool goes away.
    """
    from backend.app.core.database import async_session, engine
    from backend.app.services.events import get_event_bus, log_inventory_event
    from backend.app.services.expiry import ExpirySweeper

    logger.info(
        "Reservation service starting",
        version=APP_VERSION,
        environment=settings.ENVIRONMENT,
        reservation_ttl_seconds=settings.RESERVATION_TTL_SECONDS,
        lock_timeout_seconds=settings.LOCK_TIMEOUT_SECONDS,
    )
    bus = get_event_bus()
    bus.subscribe(log_inventory_event)

    sweeper = ExpirySweeper(
        async_session,
        interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
        batch_size=settings.SWEEP_BATCH_SIZE,
    )
    if settings.SWEEPER_ENABLED:
        sweeper.start()
    else:
        logger.warning("Expiry sweeper disabled; stale holds are only reclaimed via POST /maintenance/sweep")

    try:
        yield
    finally:
        await sweeper.stop()
        bus.unsubscribe(log_inventory_event)
        await engine.dispose()
        logger.info("Reservation service stopped")


app = FastAPI(title="LapXpert Inventory Reservations", version=APP_VERSION, lifespan=lifespan)

origins = settings.allowed_origins_list
if not origins:
    # get_settings() already refused an empty list in production
    origins = ["*"]
    logger.warning("CORS open to all origins (development)")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(PrometheusMiddleware)

app.include_router(inventory.router, prefix="/inventory", tags=["inventory"])
app.include_router(reservations.router, prefix="/reservations", tags=["reservations"])
app.include_router(maintenance.router, prefix="/maintenance", tags=["maintenance"])


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """Liveness plus a database round trip, for load balancers and orchestration."""
    checks = {"database": "ok"}
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check: database unreachable", error=str(e))
        checks["database"] = f"error: {e}"

    status = "healthy" if all(v == "ok" for v in checks.values()) else "unhealthy"
    return {"status": status, "version": APP_VERSION, "checks": checks}


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    return get_metrics_response(openmetrics=openmetrics)
