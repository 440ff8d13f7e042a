"""
Scheduler & Platform Hook API Routes

Internal endpoints for cron and for the platform: check-in runs and
introduction registration/status updates. Protected by the shared
X-Internal-Key header.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..background import get_mail_client
from ..database import get_db
from ..models.db_models import IntroductionStatus
from ..services.errors import MonitoringError
from ..services.monitoring import CheckInScheduler, IntroductionRegistry
from ..services.monitoring.queries import introduction_summary
from .errors import http_error


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class RegisterIntroductionRequest(BaseModel):
    """A candidate introduced to an employer for a job."""
    id: Optional[str] = Field(None, description="Platform introduction id; generated if omitted")
    candidate_id: str
    candidate_name: str
    candidate_email: str
    employer_id: str
    employer_name: str
    employer_email: Optional[str] = None
    job_id: Optional[str] = None
    job_title: Optional[str] = None
    job_salary_min: Optional[Decimal] = None
    job_salary_max: Optional[Decimal] = None
    introduced_at: Optional[datetime] = Field(None, description="Naive UTC; defaults to now")


class UpdateIntroductionStatusRequest(BaseModel):
    status: IntroductionStatus


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/check-ins/run", response_model=dict)
def run_check_in_scheduler(
    db: Session = Depends(get_db),
    mail_client=Depends(get_mail_client),
    _: bool = Depends(verify_internal_key),
):
    """
    Run the check-in scheduler.

    For deployments that drive scheduling from cron instead of the
    in-process loop.
    """
    return CheckInScheduler(db, mail_client).run()


# =============================================================================
# PLATFORM HOOKS
# =============================================================================

@router.post("/introductions", response_model=dict)
async def register_introduction(
    request: RegisterIntroductionRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Register an introduction and start its protection window."""
    try:
        introduction = IntroductionRegistry(db).register(
            candidate_id=request.candidate_id,
            candidate_name=request.candidate_name,
            candidate_email=request.candidate_email,
            employer_id=request.employer_id,
            employer_name=request.employer_name,
            employer_email=request.employer_email,
            job_id=request.job_id,
            job_title=request.job_title,
            job_salary_min=request.job_salary_min,
            job_salary_max=request.job_salary_max,
            introduced_at=request.introduced_at,
            introduction_id=request.id,
        )
    except MonitoringError as e:
        raise http_error(e)

    return introduction_summary(introduction)


@router.patch("/introductions/{introduction_id}/status", response_model=dict)
async def update_introduction_status(
    introduction_id: str,
    request: UpdateIntroductionStatusRequest,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """Record the platform's latest status for an introduction."""
    try:
        introduction = IntroductionRegistry(db).update_status(introduction_id, request.status)
    except MonitoringError as e:
        raise http_error(e)

    return introduction_summary(introduction)
