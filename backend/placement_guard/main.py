"""
Placement Guard - FastAPI Application

Main entry point for the check-in scheduling and circumvention detection
backend.

Flow:
- Introduction registered -> check-ins at day 30/60/90/180/365
- Candidate reply (pasted email or self-service link) -> classified risk
- Reply naming the introduced employer -> circumvention flag
- Operator investigates -> invoice -> paid / disputed / written off
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .background import check_in_scheduler_loop
from .config import CHECK_IN_SCHEDULER_ENABLED, LOG_LEVEL
from .database import init_db
from .routers import (
    check_ins_router,
    circumvention_router,
    introductions_router,
    check_in_responses_router,
    scheduler_router,
)

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and start the check-in scheduler on startup."""
    init_db()

    scheduler_task = None
    if CHECK_IN_SCHEDULER_ENABLED:
        scheduler_task = asyncio.create_task(check_in_scheduler_loop())

    yield

    if scheduler_task:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
        logger.info("Check-in scheduler stopped")

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Placement Guard",
    description="""
    Placement Guard - Check-in Scheduling & Circumvention Detection

    Monitors introduced candidates for 12 months and recovers placement
    fees when an employer hires around the platform.

    ## Components
    1. **Check-in Scheduler**: day 30/60/90/180/365 check-in emails
    2. **Response Classifier**: reply text -> structured risk assessment
    3. **Flag Generator**: risky replies naming the employer -> circumvention flag
    4. **Flag State Machine**: OPEN -> INVESTIGATING -> INVOICE_SENT -> PAID
    5. **Invoice Issuer**: fee recovery through the billing service
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(check_ins_router)
app.include_router(circumvention_router)
app.include_router(introductions_router)
app.include_router(check_in_responses_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Placement Guard",
        "version": "1.0.0",
        "description": "Check-in Scheduling & Circumvention Detection",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m placement_guard.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
