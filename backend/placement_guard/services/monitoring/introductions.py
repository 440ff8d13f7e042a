"""
Introduction Registry

The platform registers each candidate-employer introduction here and
reports later status changes. Registration starts the 365-day protection
window; everything except status is fixed from then on.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import IntroductionDB, IntroductionStatus
from ..errors import ConflictError, NotFoundError, ValidationError
from . import fee_calculator
from .check_in_scheduler import PROTECTION_WINDOW_DAYS


logger = logging.getLogger(__name__)


class IntroductionRegistry:

    def __init__(self, db_session: Session):
        self.db = db_session

    def register(
        self,
        candidate_id: str,
        candidate_name: str,
        candidate_email: str,
        employer_id: str,
        employer_name: str,
        introduced_at: Optional[datetime] = None,
        employer_email: Optional[str] = None,
        job_id: Optional[str] = None,
        job_title: Optional[str] = None,
        job_salary_min=None,
        job_salary_max=None,
        introduction_id: Optional[str] = None,
    ) -> IntroductionDB:
        """
        Record a new introduction.

        introduction_id lets the platform reuse its own id; registering the
        same id twice is a ConflictError.
        """
        for field_name, value in (
            ("candidate_id", candidate_id),
            ("candidate_name", candidate_name),
            ("candidate_email", candidate_email),
            ("employer_id", employer_id),
            ("employer_name", employer_name),
        ):
            if not value or not str(value).strip():
                raise ValidationError(f"{field_name} is required")

        salary_min = _optional_salary(job_salary_min, "job_salary_min")
        salary_max = _optional_salary(job_salary_max, "job_salary_max")
        if salary_min is not None and salary_max is not None and salary_min > salary_max:
            raise ValidationError("job_salary_min cannot exceed job_salary_max")

        if introduction_id and self.db.query(IntroductionDB.id).filter(IntroductionDB.id == introduction_id).first():
            raise ConflictError(f"Introduction {introduction_id} already exists")

        introduced_at = introduced_at or datetime.utcnow()
        if introduced_at.tzinfo is not None:
            introduced_at = introduced_at.astimezone(timezone.utc).replace(tzinfo=None)

        introduction = IntroductionDB(
            id=introduction_id or str(uuid4()),
            candidate_id=candidate_id,
            candidate_name=candidate_name.strip(),
            candidate_email=candidate_email.strip(),
            employer_id=employer_id,
            employer_name=employer_name.strip(),
            employer_email=employer_email,
            job_id=job_id,
            job_title=job_title,
            job_salary_min=salary_min,
            job_salary_max=salary_max,
            introduced_at=introduced_at,
            protection_expiry=introduced_at + timedelta(days=PROTECTION_WINDOW_DAYS),
            status=IntroductionStatus.INTRODUCED,
        )
        self.db.add(introduction)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"Introduction {introduction.id} already exists")

        logger.info(
            f"Registered introduction {introduction.id}: {candidate_name} -> {employer_name}, "
            f"protected until {introduction.protection_expiry.date().isoformat()}"
        )
        return introduction

    def update_status(self, introduction_id: str, status: Union[IntroductionStatus, str]) -> IntroductionDB:
        try:
            status = IntroductionStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown introduction status '{status}'")

        introduction = self.db.query(IntroductionDB).filter(IntroductionDB.id == introduction_id).first()
        if not introduction:
            raise NotFoundError(f"Introduction {introduction_id} not found")

        previous = introduction.status
        introduction.status = status
        introduction.updated_at = datetime.utcnow()
        self.db.commit()

        logger.info(f"Introduction {introduction_id} status {previous.value} -> {status.value}")
        return introduction


def _optional_salary(value, field_name: str):
    if value is None:
        return None
    salary = fee_calculator.to_decimal(value, field_name)
    if salary <= 0:
        raise ValidationError(f"{field_name} must be greater than 0")
    return salary
