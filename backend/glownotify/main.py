"""Main FastAPI application: notification API plus the background scheduler."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import settings
from .database import async_session, init_db, close_db
from .routers import notifications_router, events_router
from .services.behavior import BehaviorTracker
from .services.delivery import ScheduledDeliveryService
from .services.dispatcher import Dispatcher
from .services.push_sender import PushTransport, build_push_sender
from .services.scheduler import NotificationScheduler
from .services.templates import TemplateRegistry, seed_templates
from .services.weather import WeatherClient, build_weather_client
from .utils.timeutils import Clock, utcnow

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info("Starting glownotify")

    # Initialize database
    await init_db()
    async with app.state.session_factory() as session:
        await seed_templates(session, app.state.registry)
    logger.info("Database initialized")

    if app.state.start_scheduler:
        app.state.scheduler.start()

    yield

    # Shutdown
    app.state.scheduler.stop()
    await close_db()
    logger.info("Shutdown complete")


def create_app(
    session_factory: Optional[async_sessionmaker] = None,
    transport: Optional[PushTransport] = None,
    clock: Optional[Clock] = None,
    weather: Optional[WeatherClient] = None,
    start_scheduler: Optional[bool] = None,
    admin_api_key: Optional[str] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Every collaborator can be injected; anything left out is built from
    settings. Components live on ``app.state`` for the routers to use.
    """
    session_factory = session_factory or async_session
    clock = clock or utcnow
    registry = TemplateRegistry()

    dispatcher = Dispatcher(
        session_factory,
        transport or build_push_sender(settings),
        registry,
        clock=clock,
    )
    tracker = BehaviorTracker(
        session_factory,
        dispatcher,
        registry,
        clock=clock,
        streak_reset_on_gap=settings.streak_reset_on_gap,
        weather=weather or build_weather_client(settings),
        uv_threshold=settings.weather_uv_threshold,
    )
    delivery = ScheduledDeliveryService(
        session_factory,
        dispatcher,
        registry,
        clock=clock,
        batch_size=settings.sweep_batch_size,
        max_attempts=settings.max_delivery_attempts,
        retention_days=settings.retention_days,
    )
    scheduler = NotificationScheduler(tracker, delivery, timezone=settings.scheduler_timezone)

    app = FastAPI(
        title="glownotify",
        description="Behavior-driven push notifications for the skincare app",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.tracker = tracker
    app.state.delivery = delivery
    app.state.scheduler = scheduler
    app.state.start_scheduler = settings.scheduler_enabled if start_scheduler is None else start_scheduler
    app.state.admin_api_key = admin_api_key or settings.admin_api_key

    # CORS middleware for the mobile web views
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(notifications_router)
    app.include_router(events_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "scheduler": scheduler.running,
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
