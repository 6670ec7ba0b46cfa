from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

import redis.asyncio as redis_async

# Database migrations are managed exclusively via Alembic
from app.routers import mh, sync, alerts
from app.core.config import settings
from app.core.background_tasks import NonReportTimerManager
from app.services.command_channel import DeviceCommandChannel
from app.services.event_bus import EventBus
import app.core.background_tasks as background_tasks_module
import app.services.command_channel as command_channel_module
import app.services.event_bus as event_bus_module

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # NOTE: Database migrations are managed by Alembic exclusively.
    # Run: alembic upgrade head
    logger.info("Starting application...")

    # Initialize Redis for the event bus
    redis_async_client = None
    try:
        if settings.REDIS_URL:
            logger.info(f"Initializing Redis connection: {settings.REDIS_URL}")
            redis_async_client = redis_async.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5
            )
            await redis_async_client.ping()
            logger.info("✓ Redis (async) initialized successfully")
        else:
            logger.info("Redis not configured, using in-memory events (development mode)")
    except Exception as e:
        logger.warning(f"Failed to initialize Redis: {e}")
        logger.warning("Falling back to in-memory events")
        redis_async_client = None

    # Initialize EventBus
    event_bus_module.event_bus = EventBus(redis_async_client)
    await event_bus_module.event_bus.initialize()
    await event_bus_module.event_bus.start_listener()
    logger.info("✓ EventBus initialized")

    # Message Handler command channel
    command_channel_module.command_channel = DeviceCommandChannel.from_settings()
    logger.info(f"✓ Command channel targeting {settings.mh_base_url}")

    # Non-Report timers
    background_tasks_module.non_report_timers = NonReportTimerManager(
        channel=command_channel_module.command_channel
    )
    if settings.NON_REPORT_INIT_ON_STARTUP:
        try:
            await background_tasks_module.non_report_timers.initialize(force_check=True)
        except Exception as e:
            logger.error(f"Failed to initialize Non-Report timers: {e}")
    logger.info("✓ Non-Report timers started")

    logger.info("Application startup complete")

    yield

    # Cleanup on shutdown
    logger.info("Application shutdown initiated...")

    if background_tasks_module.non_report_timers:
        await background_tasks_module.non_report_timers.stop()
        logger.info("✓ Non-Report timers stopped")

    # Stop EventBus listener
    if event_bus_module.event_bus:
        await event_bus_module.event_bus.stop_listener()
        logger.info("✓ EventBus stopped")

    # Close async Redis connection
    if redis_async_client:
        await redis_async_client.close()
        logger.info("✓ Redis (async) connection closed")

    logger.info("Application shutdown complete")

app = FastAPI(
    title="Fleet Sync Backend",
    description="Offline device sync and alert evaluation for the fleet platform",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.FRONTEND_URL,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(mh.router)      # MH: /mh/v1/* (device sync, POIs, ping)
app.include_router(sync.router)    # Sync: /sync/* (entity changes, sync module)
app.include_router(alerts.router)  # Alerts: /alerts/* (alert events and listing)


@app.get("/")
def read_root():
    return {
        "message": "Welcome to the Fleet Sync Backend API",
        "version": "1.0.0",
        "modules": {
            "mh": "/mh/v1/* (tactical device sync through the Message Handler)",
            "sync": "/sync/* (sync ledger and sync module)",
            "alerts": "/alerts/* (alert engine)"
        },
        "docs": "/docs",
        "redoc": "/redoc"
    }


@app.get("/health")
def health_check():
    return {"status": "healthy"}
