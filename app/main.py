# app/main.py

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.db import init_db
from app.utils.logger import setup_app_logging, get_logger
# Local application imports - Routes
from app.audit_trail.router import router as audit_trail_routes
from app.students.router import router as student_routes
from app.ledger.router import router as ledger_routes
from app.discounts.router import router as discount_routes
from app.tuition.router import router as tuition_routes
from app.payments.router import router as payment_routes
from app.review.router import router as review_routes


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create any missing tables"""
    await init_db()
    yield


# Create the FastAPI app
tuition_app = FastAPI(
    title=f"Tuition Billing - {settings.environment}",
    description="Tuition billing ledger and payment allocation API",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Configure logging
if settings.environment.lower() != "production":
    setup_app_logging(
        tuition_app,
        log_level=settings.log_level,
        use_json=settings.log_json,
        log_file=settings.log_file,
        app_name="Tuition Billing",
        environment=settings.environment,
    )
else:
    setup_app_logging(
        tuition_app,
        log_level=settings.log_level,
        use_json=True,
        log_file=settings.log_file or "/var/log/tuition_billing.log",
        app_name="Tuition Billing",
        environment="production",
    )
logger = get_logger(__name__)

# Add CORS middleware
tuition_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_cors_urls.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
tuition_app.include_router(student_routes)
tuition_app.include_router(ledger_routes)
tuition_app.include_router(discount_routes)
tuition_app.include_router(tuition_routes)
tuition_app.include_router(payment_routes)
tuition_app.include_router(review_routes)
tuition_app.include_router(audit_trail_routes)


# Root API to check if the server is up
@tuition_app.get("/", tags=["Base"])
async def health_check():
    """
    Root API to check if the server is up
    """
    logger.info("Calling root API for testing")
    return {"status": "ok"}
