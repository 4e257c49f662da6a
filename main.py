import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from app.core.database import Base, AsyncSessionLocal, async_engine, close_redis
from app.core.config import settings
from app.core.exceptions import LedgerError
from app.core.logging_config import setup_logging
from app.modules.accounts.ledger import LedgerStore
from app.modules.accounts.router import router as accounts_router
from app.modules.fees.router import router as fees_router
from app.modules.transactions.router import router as transactions_router
from app.modules.payments.router import router as payments_router
from app.modules.geofences.router import router as geofences_router
from app.modules.savings.router import router as savings_router
from app.modules.notifications.router import router as notifications_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    setup_logging(settings.LOG_LEVEL, debug=settings.DEBUG)
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        await LedgerStore(session).ensure_system_accounts()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.ENVIRONMENT})")

    yield

    # Shutdown
    await close_redis()
    await async_engine.dispose()


app = FastAPI(
    title="Money Buddy API",
    description="Ledger and fee-settlement core: wallets, transfers, geofenced payments and savings locks",
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


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(accounts_router)
app.include_router(fees_router)
app.include_router(transactions_router)
app.include_router(payments_router)
app.include_router(geofences_router)
app.include_router(savings_router)
app.include_router(notifications_router)


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
        "message": "Welcome to Money Buddy API",
        "version": settings.APP_VERSION,
        "docs": "/docs"
    }
