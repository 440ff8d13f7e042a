"""
Candidate Check-in Response Routes (public)

The link in every check-in email lands here. The token is the only
credential; it identifies exactly one check-in.
"""
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.errors import MonitoringError
from ..services.monitoring import SelfServiceResponses
from .errors import http_error


router = APIRouter(prefix="/check-in/respond", tags=["check-in-responses"])


class SubmitResponseRequest(BaseModel):
    """Candidate's answer. Accepts camelCase from the web form."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str = Field(..., description="One of the offered status options")
    start_date: Optional[str] = Field(None, description="For hired_there")
    role_title: Optional[str] = Field(None, description="For hired_there")
    company_name: Optional[str] = Field(None, description="For hired_elsewhere")
    salary: Optional[Decimal] = Field(None)
    message: Optional[str] = Field(None, max_length=2000)


@router.get("/{token}", response_model=dict)
async def get_check_in_form(token: str, db: Session = Depends(get_db)):
    """Check-in context and status options for the response page."""
    try:
        return SelfServiceResponses(db).get_form(token)
    except MonitoringError as e:
        raise http_error(e)


@router.post("/{token}", response_model=dict)
async def submit_check_in_response(
    token: str,
    request: SubmitResponseRequest,
    db: Session = Depends(get_db),
):
    """Record the candidate's answer. Each link accepts one answer."""
    try:
        result = SelfServiceResponses(db).submit(
            token,
            request.status,
            start_date=request.start_date,
            role_title=request.role_title,
            company_name=request.company_name,
            salary=request.salary,
            message=request.message,
        )
    except MonitoringError as e:
        raise http_error(e)

    # The candidate never sees risk or flag details
    return {"success": True, "status": result["status"]}
