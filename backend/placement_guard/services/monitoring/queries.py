"""
Monitoring Queries

Read-side listing, filtering and serialization of check-ins and
circumvention flags for the admin screens. Money is serialized as strings.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...models.db_models import (
    CheckInDB, CircumventionFlagDB, DetectionMethod, FlagStatus, IntroductionDB, RiskLevel,
)
from ..errors import NotFoundError, ValidationError
from .flag_state_machine import next_states

MAX_PAGE_SIZE = 100

CHECK_IN_TABS = ("all", "pending", "responded", "flagged")


def paginate(query, page: int, page_size: int):
    """Apply offset/limit and return (items, pagination dict)."""
    if page < 1:
        raise ValidationError("page must be at least 1")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    total = query.count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return items, {
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": (total + page_size - 1) // page_size,
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


# =============================================================================
# SERIALIZERS
# =============================================================================

def introduction_summary(introduction: IntroductionDB) -> Dict[str, Any]:
    return {
        "id": introduction.id,
        "candidate_id": introduction.candidate_id,
        "candidate_name": introduction.candidate_name,
        "candidate_email": introduction.candidate_email,
        "employer_id": introduction.employer_id,
        "employer_name": introduction.employer_name,
        "job_id": introduction.job_id,
        "job_title": introduction.job_title,
        "job_salary_min": _money(introduction.job_salary_min),
        "job_salary_max": _money(introduction.job_salary_max),
        "status": introduction.status.value,
        "introduced_at": _iso(introduction.introduced_at),
        "protection_expiry": _iso(introduction.protection_expiry),
    }


def check_in_to_dict(check_in: CheckInDB, include_introduction: bool = True) -> Dict[str, Any]:
    result = {
        "id": check_in.id,
        "introduction_id": check_in.introduction_id,
        "check_in_number": check_in.check_in_number,
        "scheduled_for": _iso(check_in.scheduled_for),
        "sent_at": _iso(check_in.sent_at),
        "sent_to": check_in.sent_to,
        "send_attempts": check_in.send_attempts,
        "delivery_confirmed_at": _iso(check_in.delivery_confirmed_at),
        "last_send_error": check_in.last_send_error,
        "responded_at": _iso(check_in.responded_at),
        "response_type": check_in.response_type.value if check_in.response_type else None,
        "response_raw": check_in.response_raw,
        "response_parsed": check_in.response_parsed,
        "risk_level": check_in.risk_level.value if check_in.risk_level else None,
        "risk_reason": check_in.risk_reason,
        "flagged_for_review": check_in.flagged_for_review,
        "reviewed_at": _iso(check_in.reviewed_at),
        "reviewed_by": check_in.reviewed_by,
        "review_notes": check_in.review_notes,
    }
    if include_introduction:
        result["introduction"] = introduction_summary(check_in.introduction)
    return result


def flag_to_dict(flag: CircumventionFlagDB, include_introduction: bool = True) -> Dict[str, Any]:
    status = FlagStatus(flag.status)
    result = {
        "id": flag.id,
        "introduction_id": flag.introduction_id,
        "status": status.value,
        "allowed_next_statuses": [s.value for s in next_states(status)],
        "detected_at": _iso(flag.detected_at),
        "detection_method": flag.detection_method.value,
        "evidence": flag.evidence or [],
        "estimated_salary": _money(flag.estimated_salary),
        "fee_percentage": _money(flag.fee_percentage),
        "estimated_fee_owed": _money(flag.estimated_fee_owed),
        "invoice_pending": flag.invoice_pending_since is not None,
        "invoice_number": flag.invoice_number,
        "invoice_sent_at": _iso(flag.invoice_sent_at),
        "invoice_amount": _money(flag.invoice_amount),
        "invoice_paid_at": _iso(flag.invoice_paid_at),
        "resolved_at": _iso(flag.resolved_at),
        "resolution": flag.resolution,
        "resolution_notes": flag.resolution_notes,
        "created_at": _iso(flag.created_at),
        "updated_at": _iso(flag.updated_at),
    }
    if include_introduction:
        result["introduction"] = introduction_summary(flag.introduction)
    return result


def flag_event_to_dict(event) -> Dict[str, Any]:
    return {
        "id": event.id,
        "event": event.event,
        "from_status": event.from_status.value if event.from_status else None,
        "to_status": event.to_status.value if event.to_status else None,
        "notes": event.notes,
        "actor_type": event.actor_type.value,
        "actor_id": event.actor_id,
        "metadata": event.event_metadata or {},
        "created_at": _iso(event.created_at),
    }


# =============================================================================
# CHECK-IN QUERIES
# =============================================================================

class CheckInQueries:
    """Admin listing and detail views of check-ins."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def list_check_ins(
        self,
        tab: str = "all",
        risk_level: Optional[str] = None,
        search: Optional[str] = None,
        introduction_id: Optional[str] = None,
        scheduled_from: Optional[datetime] = None,
        scheduled_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        if tab not in CHECK_IN_TABS:
            raise ValidationError(f"tab must be one of {', '.join(CHECK_IN_TABS)}")

        query = self.db.query(CheckInDB).join(IntroductionDB, CheckInDB.introduction_id == IntroductionDB.id)

        if tab == "pending":
            query = query.filter(CheckInDB.sent_at.isnot(None), CheckInDB.responded_at.is_(None))
        elif tab == "responded":
            query = query.filter(CheckInDB.responded_at.isnot(None))
        elif tab == "flagged":
            query = query.filter(CheckInDB.flagged_for_review.is_(True))

        if risk_level:
            try:
                query = query.filter(CheckInDB.risk_level == RiskLevel(risk_level.upper()))
            except ValueError:
                raise ValidationError(f"Unknown risk level '{risk_level}'")

        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(
                IntroductionDB.candidate_name.ilike(pattern),
                IntroductionDB.candidate_email.ilike(pattern),
                IntroductionDB.employer_name.ilike(pattern),
            ))

        if introduction_id:
            query = query.filter(CheckInDB.introduction_id == introduction_id)
        if scheduled_from:
            query = query.filter(CheckInDB.scheduled_for >= scheduled_from)
        if scheduled_to:
            query = query.filter(CheckInDB.scheduled_for <= scheduled_to)

        query = query.order_by(CheckInDB.scheduled_for.desc(), CheckInDB.check_in_number.desc())
        check_ins, pagination = paginate(query, page, page_size)

        return {
            "check_ins": [check_in_to_dict(c) for c in check_ins],
            "pagination": pagination,
        }

    def get_check_in(self, check_in_id: str) -> Dict[str, Any]:
        check_in = self.db.query(CheckInDB).filter(CheckInDB.id == check_in_id).first()
        if not check_in:
            raise NotFoundError(f"Check-in {check_in_id} not found")

        result = check_in_to_dict(check_in)
        result["other_check_ins"] = [
            check_in_to_dict(c, include_introduction=False)
            for c in check_in.introduction.check_ins
            if c.id != check_in.id
        ]
        result["flags"] = [flag_to_dict(f, include_introduction=False) for f in check_in.introduction.flags]
        return result


# =============================================================================
# FLAG QUERIES
# =============================================================================

class FlagQueries:
    """Admin listing and detail views of circumvention flags."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def list_flags(
        self,
        status: Optional[str] = None,
        detection_method: Optional[str] = None,
        search: Optional[str] = None,
        detected_from: Optional[datetime] = None,
        detected_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = self.db.query(CircumventionFlagDB).join(
            IntroductionDB, CircumventionFlagDB.introduction_id == IntroductionDB.id
        )

        if status:
            try:
                query = query.filter(CircumventionFlagDB.status == FlagStatus(status.upper()))
            except ValueError:
                raise ValidationError(f"Unknown flag status '{status}'")

        if detection_method:
            try:
                query = query.filter(
                    CircumventionFlagDB.detection_method == DetectionMethod(detection_method.upper())
                )
            except ValueError:
                raise ValidationError(f"Unknown detection method '{detection_method}'")

        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(
                IntroductionDB.candidate_name.ilike(pattern),
                IntroductionDB.candidate_email.ilike(pattern),
                IntroductionDB.employer_name.ilike(pattern),
            ))

        if detected_from:
            query = query.filter(CircumventionFlagDB.detected_at >= detected_from)
        if detected_to:
            query = query.filter(CircumventionFlagDB.detected_at <= detected_to)

        query = query.order_by(CircumventionFlagDB.detected_at.desc())
        flags, pagination = paginate(query, page, page_size)

        return {
            "flags": [flag_to_dict(f) for f in flags],
            "pagination": pagination,
        }

    def get_flag(self, flag_id: str) -> Dict[str, Any]:
        flag = self.db.query(CircumventionFlagDB).filter(CircumventionFlagDB.id == flag_id).first()
        if not flag:
            raise NotFoundError(f"Circumvention flag {flag_id} not found")

        result = flag_to_dict(flag)
        result["events"] = [flag_event_to_dict(e) for e in flag.events]
        result["check_ins"] = [
            check_in_to_dict(c, include_introduction=False) for c in flag.introduction.check_ins
        ]
        return result

