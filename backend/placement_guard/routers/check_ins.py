"""
Check-in Admin API Routes

Operator views of scheduled check-ins: listing, stats, manual scheduler
runs, resends, reply classification and review bookkeeping.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import require_operator
from ..background import get_classifier, get_mail_client
from ..database import get_db
from ..models.monitoring import OperatorContext
from ..services.errors import MonitoringError
from ..services.monitoring import (
    CheckInQueries, CheckInReview, CheckInScheduler, MonitoringStats, ResponseClassifierAdapter,
)
from ..services.monitoring.queries import check_in_to_dict
from .errors import http_error


router = APIRouter(prefix="/admin/check-ins", tags=["check-ins"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ParseReplyRequest(BaseModel):
    """Reply text an operator pasted in for a check-in."""
    check_in_id: str = Field(..., description="Check-in the reply belongs to")
    raw_text: str = Field(..., description="Reply text exactly as received")


class UpdateCheckInRequest(BaseModel):
    """Review bookkeeping. Omitted fields are left alone."""
    review_notes: Optional[str] = Field(None, description="Operator notes")
    flagged_for_review: Optional[bool] = Field(None, description="Set or clear the review marker")
    mark_reviewed: bool = Field(default=False, description="Stamp reviewed_at/reviewed_by")


# =============================================================================
# READ ENDPOINTS
# =============================================================================

@router.get("", response_model=dict)
async def list_check_ins(
    tab: str = Query("all", description="all, pending, responded or flagged"),
    risk_level: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Candidate name/email or employer"),
    introduction_id: Optional[str] = Query(None),
    scheduled_from: Optional[datetime] = Query(None),
    scheduled_to: Optional[datetime] = Query(None),
    page: int = Query(1),
    page_size: int = Query(20),
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """List check-ins with filters and pagination."""
    try:
        return CheckInQueries(db).list_check_ins(
            tab=tab,
            risk_level=risk_level,
            search=search,
            introduction_id=introduction_id,
            scheduled_from=scheduled_from,
            scheduled_to=scheduled_to,
            page=page,
            page_size=page_size,
        )
    except MonitoringError as e:
        raise http_error(e)


@router.get("/stats", response_model=dict)
async def check_in_stats(
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """Sent/responded counts, response rates and risk breakdown."""
    return MonitoringStats(db).check_in_stats()


# =============================================================================
# ACTIONS
# =============================================================================

@router.post("/run-scheduler", response_model=dict)
def run_scheduler(
    db: Session = Depends(get_db),
    mail_client=Depends(get_mail_client),
    operator: OperatorContext = Depends(require_operator),
):
    """
    Run the check-in scheduler now.

    Same run as the timed loop; safe to trigger while it is running.
    """
    return CheckInScheduler(db, mail_client).run()


@router.post("/parse-reply", response_model=dict)
def parse_reply(
    request: ParseReplyRequest,
    db: Session = Depends(get_db),
    classifier=Depends(get_classifier),
    operator: OperatorContext = Depends(require_operator),
):
    """Classify (or re-classify) a pasted reply and open/update a flag if warranted."""
    adapter = ResponseClassifierAdapter(db, classifier)
    try:
        return adapter.classify_reply(request.check_in_id, request.raw_text, operator)
    except MonitoringError as e:
        raise http_error(e)


@router.get("/{check_in_id}", response_model=dict)
async def get_check_in(
    check_in_id: str,
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """Check-in detail with the introduction's other check-ins and flags."""
    try:
        return CheckInQueries(db).get_check_in(check_in_id)
    except MonitoringError as e:
        raise http_error(e)


@router.post("/{check_in_id}/resend", response_model=dict)
def resend_check_in(
    check_in_id: str,
    db: Session = Depends(get_db),
    mail_client=Depends(get_mail_client),
    operator: OperatorContext = Depends(require_operator),
):
    """Send a check-in email again."""
    try:
        outcome = CheckInScheduler(db, mail_client).resend(check_in_id, operator)
    except MonitoringError as e:
        raise http_error(e)

    return {"success": True, "check_in_id": check_in_id, "sent_to": outcome["to"]}


@router.patch("/{check_in_id}", response_model=dict)
async def update_check_in(
    check_in_id: str,
    request: UpdateCheckInRequest,
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """Update review notes / review marker."""
    if request.review_notes is None and request.flagged_for_review is None and not request.mark_reviewed:
        raise HTTPException(status_code=422, detail="Nothing to update")

    try:
        check_in = CheckInReview(db).update(
            check_in_id,
            operator,
            review_notes=request.review_notes,
            flagged_for_review=request.flagged_for_review,
            mark_reviewed=request.mark_reviewed,
        )
    except MonitoringError as e:
        raise http_error(e)

    return check_in_to_dict(check_in)
