"""
Candidate Self-Service Responses

Every check-in email carries a link with an opaque token. The candidate
picks one status option; "hired_there" additionally collects the start
date and role. A hire at the introduced employer goes to the flag
generator as a CANDIDATE_SELF_REPORT signal.

A link accepts a single submission and expires SELF_SERVICE_LINK_DAYS
after the check-in was sent.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import SELF_SERVICE_LINK_DAYS
from ...models.db_models import CheckInDB, CheckInResponseType, RiskLevel
from ...models.monitoring import EmploymentStatus, OperatorContext, ParsedResponse, SelfReportEvidence
from ..errors import ConflictError, NotFoundError, ValidationError
from . import fee_calculator
from .company_matcher import companies_match
from .flag_generator import FlagGenerator


logger = logging.getLogger(__name__)


# =============================================================================
# STATUS OPTIONS
# =============================================================================
#
# option -> how it is recorded on the check-in. "flag" options open (or
# add evidence to) a circumvention flag for the introduction.
#
# =============================================================================

STATUS_OPTIONS = {
    "hired_there": {
        "label": "I was hired!",
        "status": EmploymentStatus.STILL_EMPLOYED,
        "risk_level": RiskLevel.HIGH,
        "summary": "Candidate reports being hired by the introduced employer",
        "flag": True,
    },
    "hired_elsewhere": {
        "label": "Hired elsewhere",
        "status": EmploymentStatus.NOT_HIRED,
        "risk_level": RiskLevel.CLEAR,
        "summary": "Candidate reports being hired by a different company",
        "flag": False,
    },
    "interviewing": {
        "label": "Interviewing",
        "status": EmploymentStatus.UNCLEAR,
        "risk_level": RiskLevel.LOW,
        "summary": "Candidate is still interviewing",
        "flag": False,
    },
    "still_looking": {
        "label": "Still looking",
        "status": EmploymentStatus.UNCLEAR,
        "risk_level": RiskLevel.LOW,
        "summary": "Candidate is waiting to hear back",
        "flag": False,
    },
    "offer": {
        "label": "Got an offer",
        "status": EmploymentStatus.UNCLEAR,
        "risk_level": RiskLevel.MEDIUM,
        "summary": "Candidate has an offer and is considering it",
        "flag": False,
    },
    "rejected": {
        "label": "Not selected",
        "status": EmploymentStatus.NOT_HIRED,
        "risk_level": RiskLevel.CLEAR,
        "summary": "Employer passed on the candidate",
        "flag": False,
    },
    "withdrew": {
        "label": "I withdrew",
        "status": EmploymentStatus.NOT_HIRED,
        "risk_level": RiskLevel.CLEAR,
        "summary": "Candidate withdrew from the process",
        "flag": False,
    },
    "no_response": {
        "label": "No response",
        "status": EmploymentStatus.UNCLEAR,
        "risk_level": RiskLevel.LOW,
        "summary": "Candidate never heard back from the employer",
        "flag": False,
    },
}


class SelfServiceResponses:
    """Token-based check-in replies submitted by the candidate."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _get_by_token(self, token: str) -> CheckInDB:
        check_in = self.db.query(CheckInDB).filter(CheckInDB.response_token == token).first()
        if not check_in or check_in.sent_at is None:
            raise NotFoundError("Check-in link not found")
        return check_in

    def link_state(self, check_in: CheckInDB, now: Optional[datetime] = None) -> str:
        now = now or datetime.utcnow()
        if check_in.responded_at is not None:
            return "responded"
        if now > check_in.sent_at + timedelta(days=SELF_SERVICE_LINK_DAYS):
            return "expired"
        return "pending"

    def get_form(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """What the candidate sees when opening the link."""
        check_in = self._get_by_token(token)
        introduction = check_in.introduction

        return {
            "check_in": {
                "status": self.link_state(check_in, now),
                "check_in_number": check_in.check_in_number,
                "candidate_first_name": (introduction.candidate_name or "").split(" ")[0],
                "employer_name": introduction.employer_name,
                "job_title": introduction.job_title,
                "introduced_at": introduction.introduced_at.date().isoformat(),
                "responded_at": check_in.responded_at.isoformat() if check_in.responded_at else None,
            },
            "status_options": [
                {"id": option_id, "label": option["label"]}
                for option_id, option in STATUS_OPTIONS.items()
            ],
        }

    def submit(
        self,
        token: str,
        status: str,
        start_date: Optional[str] = None,
        role_title: Optional[str] = None,
        company_name: Optional[str] = None,
        salary=None,
        message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Record the candidate's answer.

        A "hired_elsewhere" answer naming the introduced employer is treated
        as "hired_there".

        Raises:
            NotFoundError: unknown token
            ValidationError: unknown status option or bad salary
            ConflictError: link already used or expired
        """
        option = STATUS_OPTIONS.get(status)
        if option is None:
            raise ValidationError(f"Unknown status '{status}'. Choose one of: {', '.join(STATUS_OPTIONS)}")

        reported_salary = None
        if salary is not None:
            reported_salary = fee_calculator.to_decimal(salary, "salary")
            if reported_salary <= 0:
                raise ValidationError("salary must be greater than 0")

        now = now or datetime.utcnow()

        for attempt in range(2):
            check_in = self._get_by_token(token)
            introduction = check_in.introduction
            state = self.link_state(check_in, now)
            if state != "pending":
                raise ConflictError(f"This check-in link is {state}")

            if status == "hired_elsewhere" and companies_match(company_name, introduction.employer_name):
                status, option = "hired_there", STATUS_OPTIONS["hired_there"]

            parsed = ParsedResponse(
                status=option["status"],
                risk_level=option["risk_level"],
                confidence=1.0,
                company_mentioned=introduction.employer_name if option["flag"] else company_name,
                hire_date=start_date if option["flag"] else None,
                summary=option["summary"],
                suggested_action="Review the circumvention flag" if option["flag"] else "",
            )

            actor = OperatorContext.candidate(introduction.candidate_id)

            values = {
                "responded_at": now,
                "response_type": CheckInResponseType.SELF_SERVICE,
                "response_raw": _raw_text(status, start_date, role_title, company_name, reported_salary, message),
                "response_parsed": parsed.to_record(),
                "risk_level": parsed.risk_level,
                "risk_reason": parsed.summary,
                "updated_at": now,
            }
            if option["flag"]:
                values["flagged_for_review"] = True

            # Conditional on responded_at so a double submit records once
            rows = self.db.query(CheckInDB).filter(
                CheckInDB.id == check_in.id,
                CheckInDB.responded_at.is_(None),
            ).update(values, synchronize_session=False)

            if rows == 0:
                self.db.rollback()
                raise ConflictError("This check-in link is responded")

            flag_id = None
            try:
                if option["flag"]:
                    evidence = SelfReportEvidence(
                        recorded_at=now,
                        recorded_by=actor.label,
                        check_in_id=check_in.id,
                        check_in_number=check_in.check_in_number,
                        reported_status=status,
                        start_date=start_date,
                        job_title=role_title,
                        reported_salary=reported_salary,
                    )
                    flag, _ = FlagGenerator(self.db).record_signal(introduction, evidence, actor)
                    flag_id = flag.id
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.info(f"Concurrent flag creation on self-service check-in {check_in.id}, retrying")
                continue

            logger.info(f"Check-in {check_in.id} answered by candidate: {status}")
            return {
                "check_in_id": check_in.id,
                "status": status,
                "risk_level": parsed.risk_level.value,
                "flag_id": flag_id,
            }

        raise ConflictError("Could not record the response; please try again")


def _raw_text(status, start_date, role_title, company_name, salary, message) -> str:
    """Human-readable record of the form submission for the admin view."""
    lines = [f"Status: {STATUS_OPTIONS[status]['label']}"]
    if company_name:
        lines.append(f"Company: {company_name}")
    if start_date:
        lines.append(f"Start date: {start_date}")
    if role_title:
        lines.append(f"Role: {role_title}")
    if salary is not None:
        lines.append(f"Salary: {salary}")
    if message:
        lines.append(f"Message: {message}")
    return "\n".join(lines)
