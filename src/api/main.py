"""
PHI Audit Engine - Main API
Compliance audit trail and tiered rate limiting for medication scanning
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import structlog

from src.api.routes import audit, rate_limit
from src.services.audit_service import AuditService
from src.services.error_reporter import LoggingErrorReporter
from src.services.persistence import InMemoryAuditStore
from src.services.rate_limiter import RateLimiter
from src.services.tier_resolver import StaticTierResolver
from src.utils.config import settings
from src.utils.logging import configure_logging

logger = structlog.get_logger()


def build_services(app: FastAPI) -> None:
    """Construct the per-process service objects and attach them to app.state"""
    store = InMemoryAuditStore()
    error_reporter = LoggingErrorReporter()

    audit_service = AuditService(store, error_reporter=error_reporter)
    rate_limiter = RateLimiter(
        store,
        audit_log=audit_service,
        pending=audit_service.queue,
        tier_resolver=StaticTierResolver(),
        error_reporter=error_reporter,
    )

    app.state.audit_store = store
    app.state.audit_service = audit_service
    app.state.rate_limiter = rate_limiter


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    configure_logging()
    build_services(app)
    app.state.audit_service.start()
    app.state.rate_limiter.start()
    logger.info("Starting PHI Audit Engine", environment=settings.ENVIRONMENT)
    yield
    await app.state.rate_limiter.stop()
    await app.state.audit_service.stop()
    logger.info("Shutting down PHI Audit Engine")


app = FastAPI(
    title="PHI Audit Engine",
    description="Compliance-grade audit trail and tiered rate limiting",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(audit.router, prefix="/audit", tags=["Audit"])
app.include_router(rate_limit.router, prefix="/rate-limit", tags=["Rate Limiting"])


@app.get("/")
async def root():
    return {
        "service": "PHI Audit Engine",
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
