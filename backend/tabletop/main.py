"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tabletop.config import settings
from tabletop.database import Base, SessionLocal, engine
from tabletop.integrations.registry import build_surfaces, close_http_client

# Import routers
from tabletop.routers import auth, cron, events, integrations

# Import all models so Base.metadata knows about them
from tabletop.models.event import Event                 # noqa: F401
from tabletop.models.time_slot import TimeSlot          # noqa: F401
from tabletop.models.participant import Participant     # noqa: F401
from tabletop.models.vote import Vote                   # noqa: F401
from tabletop.models.webhook_event import WebhookEvent  # noqa: F401
from tabletop.models.login_token import LoginToken      # noqa: F401

logger = logging.getLogger(__name__)


def _start_poller(app: FastAPI) -> None:
    from tabletop.bot.handlers import BotHandler
    from tabletop.bot.poller import TelegramPoller
    from tabletop.services.dashboard_service import DashboardSync

    surfaces = build_surfaces()
    telegram = surfaces.get("telegram")
    if telegram is None:
        logger.warning("TELEGRAM_POLLING is on but TELEGRAM_BOT_TOKEN is not set; not polling")
        return
    poller = TelegramPoller(telegram, BotHandler(DashboardSync(surfaces)), SessionLocal)
    poller.start()
    app.state.telegram_poller = poller


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # Create database tables on startup (for SQLite dev mode)
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)

    app.state.telegram_poller = None
    if settings.TELEGRAM_POLLING:
        _start_poller(app)
    logger.info("Tabletop backend ready")
    yield

    if app.state.telegram_poller is not None:
        app.state.telegram_poller.stop()
    close_http_client()


app = FastAPI(
    title="Tabletop Scheduler",
    description="Group availability polls kept in sync with Telegram, Discord and webhook subscribers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(events.router, prefix="/api", tags=["Events"])
app.include_router(auth.router, tags=["Auth"])
app.include_router(integrations.router, prefix="/api", tags=["Integrations"])
app.include_router(cron.router, prefix="/api/cron", tags=["Cron"])


@app.get("/api/health")
def health_check():
    return {"status": "ok"}
