"""
Circumvention Admin API Routes

Operator workflow for circumvention flags: listing, stats, manual
reports, status transitions, fee recalculation and invoicing.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import require_operator
from ..background import get_billing_client
from ..database import get_db
from ..models.db_models import FlagStatus
from ..models.monitoring import OperatorContext
from ..services.errors import MonitoringError
from ..services.monitoring import FlagGenerator, FlagQueries, FlagStateMachine, InvoiceIssuer, MonitoringStats
from ..services.monitoring.flag_state_machine import SYSTEM_ONLY_ACTIONS, action_for
from ..services.monitoring.queries import flag_to_dict
from .errors import http_error


router = APIRouter(prefix="/admin/circumvention", tags=["circumvention"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ManualReportRequest(BaseModel):
    """Evidence an operator found outside the check-in flow."""
    introduction_id: str = Field(..., description="Introduction the evidence concerns")
    description: str = Field(..., description="What was found")
    source: Optional[str] = Field(None, description="e.g. LinkedIn, employer disclosure, tip")
    source_url: Optional[str] = Field(None, description="Link to the evidence")
    reported_salary: Optional[Decimal] = Field(None, description="Salary, if the evidence states one")


class UpdateFlagRequest(BaseModel):
    """
    Any combination of a status change, notes and a fee recalculation.
    Fee changes are applied before the status change.
    """
    status: Optional[FlagStatus] = Field(None, description="Target status")
    expected_status: Optional[FlagStatus] = Field(None, description="Status the operator last saw")
    resolution_notes: Optional[str] = Field(None)
    estimated_salary: Optional[Decimal] = Field(None)
    fee_percentage: Optional[Decimal] = Field(None)


class SendInvoiceRequest(BaseModel):
    """Invoice amount; defaults to the flag's estimated fee owed."""
    amount: Optional[Decimal] = Field(None, description="Amount to invoice")
    expected_status: Optional[FlagStatus] = Field(None, description="Status the operator last saw")


# =============================================================================
# READ ENDPOINTS
# =============================================================================

@router.get("", response_model=dict)
async def list_flags(
    status: Optional[str] = Query(None),
    detection_method: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Candidate name/email or employer"),
    detected_from: Optional[datetime] = Query(None),
    detected_to: Optional[datetime] = Query(None),
    page: int = Query(1),
    page_size: int = Query(20),
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """List circumvention flags with filters and pagination."""
    try:
        return FlagQueries(db).list_flags(
            status=status,
            detection_method=detection_method,
            search=search,
            detected_from=detected_from,
            detected_to=detected_to,
            page=page,
            page_size=page_size,
        )
    except MonitoringError as e:
        raise http_error(e)


@router.get("/stats", response_model=dict)
async def circumvention_stats(
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """Counts by status, action required and revenue roll-ups."""
    return MonitoringStats(db).circumvention_stats()


@router.get("/{flag_id}", response_model=dict)
async def get_flag(
    flag_id: str,
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """Flag detail with its event log and the introduction's check-ins."""
    try:
        return FlagQueries(db).get_flag(flag_id)
    except MonitoringError as e:
        raise http_error(e)


# =============================================================================
# MUTATIONS
# =============================================================================

@router.post("", response_model=dict)
async def report_circumvention(
    request: ManualReportRequest,
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """Record operator-found evidence. Opens a flag or adds to the active one."""
    try:
        flag, created = FlagGenerator(db).report_manual(
            request.introduction_id,
            request.description,
            operator,
            source=request.source,
            source_url=request.source_url,
            reported_salary=request.reported_salary,
        )
    except MonitoringError as e:
        raise http_error(e)

    return {"created": created, "flag": flag_to_dict(flag)}


@router.patch("/{flag_id}", response_model=dict)
async def update_flag(
    flag_id: str,
    request: UpdateFlagRequest,
    db: Session = Depends(get_db),
    operator: OperatorContext = Depends(require_operator),
):
    """
    Change a flag's status, notes and/or fee.

    The fee change and the status change commit together; when the status
    change is rejected the fee is left as it was.
    """
    state_machine = FlagStateMachine(db)
    fee_change = request.estimated_salary is not None or request.fee_percentage is not None

    try:
        flag = state_machine.get_flag(flag_id)

        action = None
        if request.status is not None:
            from_status = request.expected_status or FlagStatus(flag.status)
            action = action_for(from_status, request.status)
            if action in SYSTEM_ONLY_ACTIONS:
                raise HTTPException(
                    status_code=422,
                    detail=f"Use POST /admin/circumvention/{flag_id}/send-invoice to move a flag to INVOICE_SENT",
                )
            if action is None:
                raise HTTPException(status_code=409, detail={
                    "error": f"Cannot move a flag from {from_status.value} to {request.status.value}",
                    "from_status": from_status.value,
                    "to_status": request.status.value,
                })

        if fee_change:
            salary = request.estimated_salary if request.estimated_salary is not None else flag.estimated_salary
            if salary is None:
                raise HTTPException(status_code=422, detail="estimated_salary is required to calculate the fee")
            state_machine.recalculate_fee(
                flag_id, salary, operator, fee_percentage=request.fee_percentage, commit=action is None
            )

        if action is not None:
            state_machine.transition(
                flag_id,
                action,
                operator,
                expected_status=request.expected_status,
                resolution_notes=request.resolution_notes,
            )
        elif request.resolution_notes is not None:
            state_machine.update_notes(flag_id, request.resolution_notes, operator)

        flag = state_machine.get_flag(flag_id)
    except MonitoringError as e:
        db.rollback()
        raise http_error(e)

    return flag_to_dict(flag)


@router.post("/{flag_id}/send-invoice", response_model=dict)
def send_invoice(
    flag_id: str,
    request: SendInvoiceRequest,
    db: Session = Depends(get_db),
    billing_client=Depends(get_billing_client),
    operator: OperatorContext = Depends(require_operator),
):
    """Issue the placement fee invoice and move the flag to INVOICE_SENT."""
    issuer = InvoiceIssuer(db, billing_client)
    try:
        amount = request.amount
        if amount is None:
            amount = issuer.state_machine.get_flag(flag_id).estimated_fee_owed
            if amount is None:
                raise HTTPException(status_code=422, detail="Set an estimated salary or an amount before invoicing")
        return issuer.send_invoice(flag_id, amount, operator, expected_status=request.expected_status)
    except MonitoringError as e:
        raise http_error(e)
