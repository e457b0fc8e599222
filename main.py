from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from app.core.config import settings
from app.core.database import Database, open_redis
from app.core.exceptions import register_exception_handlers
from app.core.logging import configure_logging
from app.modules.ledger.engine import LedgerEngine
from app.modules.users.router import auth_router, router as users_router
from app.modules.accounts.router import router as accounts_router
from app.modules.ledger.router import router as ledger_router
from app.modules.payments.router import router as payments_router
from app.modules.dashboard.router import router as dashboard_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    configure_logging(settings.LOG_LEVEL)

    database = getattr(app.state, "database", None)
    if database is None:
        database = app.state.database = Database.from_settings(settings)
    # Create all tables (for development - use Alembic in production)
    await database.create_all()

    if getattr(app.state, "redis", None) is None:
        app.state.redis = await open_redis(settings.REDIS_URL)
    if getattr(app.state, "ledger", None) is None:
        app.state.ledger = LedgerEngine(database, settings)

    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.ENVIRONMENT})")

    yield

    # Shutdown
    await app.state.redis.close()
    await database.dispose()


app = FastAPI(
    title="Debt Manager API",
    description="Accounts, ledger and payments",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(accounts_router)
app.include_router(ledger_router)
app.include_router(payments_router)
app.include_router(dashboard_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "ok",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT
    }


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "docs": "/docs"
    }
