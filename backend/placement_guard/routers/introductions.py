"""
Introduction Admin API Routes

Expired introductions and the operator-triggered final (365-day) check-in.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import require_operator
from ..background import get_mail_client
from ..database import get_db
from ..models.monitoring import OperatorContext
from ..services.errors import MonitoringError
from ..services.monitoring import CheckInScheduler
from .errors import http_error


router = APIRouter(prefix="/admin/introductions", tags=["introductions"])


@router.get("/expired", response_model=dict)
async def list_expired_introductions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    mail_client=Depends(get_mail_client),
    operator: OperatorContext = Depends(require_operator),
):
    """Introductions whose protection window has ended."""
    return CheckInScheduler(db, mail_client).list_expired_introductions(page=page, page_size=page_size)


@router.post("/{introduction_id}/final-check-in", response_model=dict)
def send_final_check_in(
    introduction_id: str,
    db: Session = Depends(get_db),
    mail_client=Depends(get_mail_client),
    operator: OperatorContext = Depends(require_operator),
):
    """Send the 365-day check-in for an expired introduction."""
    try:
        outcome = CheckInScheduler(db, mail_client).send_final_check_in(introduction_id, operator)
    except MonitoringError as e:
        raise http_error(e)

    return {
        "success": True,
        "introduction_id": introduction_id,
        "check_in_id": outcome["check_in_id"],
        "sent_to": outcome["to"],
    }
