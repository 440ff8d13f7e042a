"""
Flag Generator

Turns circumvention signals (a classified reply naming the employer, a
candidate self-report, an operator's manual report) into a circumvention
case. An introduction has at most one active (OPEN or INVESTIGATING) flag:
the first signal opens it, later signals append evidence to it.

Persistence only. Nobody is notified from here.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import DEFAULT_FEE_PERCENTAGE
from ...models.db_models import (
    ACTIVE_FLAG_STATUSES, CircumventionFlagDB, DetectionMethod, FlagStatus, IntroductionDB,
)
from ...models.monitoring import Evidence, ManualReportEvidence, OperatorContext, dump_evidence, load_evidence
from ..errors import ConflictError, NotFoundError, ValidationError
from . import fee_calculator
from .flag_state_machine import record_flag_event


logger = logging.getLogger(__name__)


class FlagGenerator:
    """Opens circumvention flags and appends evidence to active ones."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def get_active_flag(self, introduction_id: str, for_update: bool = False) -> Optional[CircumventionFlagDB]:
        query = self.db.query(CircumventionFlagDB).filter(
            CircumventionFlagDB.introduction_id == introduction_id,
            CircumventionFlagDB.status.in_(ACTIVE_FLAG_STATUSES),
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def record_signal(
        self,
        introduction: IntroductionDB,
        evidence: Evidence,
        actor: OperatorContext,
    ) -> Tuple[CircumventionFlagDB, bool]:
        """
        Open a flag for the introduction or append to its active one.

        Runs inside the caller's transaction and does not commit. A
        concurrent writer that opened the active flag first surfaces as an
        IntegrityError on flush; the caller rolls back and retries, at which
        point the flag is found and appended to.

        Returns (flag, created)
        """
        flag = self.get_active_flag(introduction.id, for_update=True)

        if flag is None:
            flag = CircumventionFlagDB(
                id=str(uuid4()),
                introduction_id=introduction.id,
                status=FlagStatus.OPEN,
                detected_at=evidence.recorded_at,
                detection_method=DetectionMethod(evidence.detection_method),
                evidence=dump_evidence([evidence]),
            )
            salary = self.best_salary_signal(introduction, evidence)
            if salary is not None:
                fee_calculator.apply_to_flag(flag, salary, DEFAULT_FEE_PERCENTAGE)

            self.db.add(flag)
            self.db.flush()

            record_flag_event(
                self.db,
                flag.id,
                event="flag_created",
                actor=actor,
                to_status=FlagStatus.OPEN,
                metadata={
                    "detection_method": evidence.detection_method,
                    "estimated_salary": _money(flag.estimated_salary),
                    "estimated_fee_owed": _money(flag.estimated_fee_owed),
                },
            )
            logger.info(
                f"Opened circumvention flag {flag.id} for introduction {introduction.id} "
                f"({evidence.detection_method})"
            )
            return flag, True

        entries = load_evidence(flag.evidence)
        entries.append(evidence)
        # Assign a new list so the JSON column is marked dirty
        flag.evidence = dump_evidence(entries)
        flag.updated_at = datetime.utcnow()

        if flag.estimated_salary is None:
            salary = self.best_salary_signal(introduction, evidence)
            if salary is not None:
                fee_calculator.apply_to_flag(flag, salary, flag.fee_percentage or DEFAULT_FEE_PERCENTAGE)

        record_flag_event(
            self.db,
            flag.id,
            event="evidence_appended",
            actor=actor,
            metadata={"detection_method": evidence.detection_method, "evidence_count": len(entries)},
        )
        logger.info(f"Appended {evidence.detection_method} evidence to flag {flag.id}")
        return flag, False

    def best_salary_signal(self, introduction: IntroductionDB, evidence: Evidence) -> Optional[Decimal]:
        """
        Salary to pre-fill a flag's fee with.

        A salary reported with the evidence wins; otherwise the midpoint of the
        job's advertised range (or whichever end is known).
        """
        reported = getattr(evidence, "reported_salary", None)
        if reported is not None and reported > 0:
            return Decimal(reported)

        low, high = introduction.job_salary_min, introduction.job_salary_max
        if low and high:
            return (Decimal(low) + Decimal(high)) / 2
        if low or high:
            return Decimal(low or high)
        return None

    # =========================================================================
    # MANUAL REPORTS
    # =========================================================================

    def report_manual(
        self,
        introduction_id: str,
        description: str,
        actor: OperatorContext,
        source: Optional[str] = None,
        source_url: Optional[str] = None,
        reported_salary=None,
    ) -> Tuple[CircumventionFlagDB, bool]:
        """Record operator-found evidence against an introduction and commit."""
        if not description or not description.strip():
            raise ValidationError("description is required")

        salary = None
        if reported_salary is not None:
            salary = fee_calculator.to_decimal(reported_salary, "reported_salary")
            if salary <= 0:
                raise ValidationError("reported_salary must be greater than 0")

        for attempt in range(2):
            introduction = self.db.query(IntroductionDB).filter(IntroductionDB.id == introduction_id).first()
            if not introduction:
                raise NotFoundError(f"Introduction {introduction_id} not found")

            evidence = ManualReportEvidence(
                recorded_at=datetime.utcnow(),
                recorded_by=actor.label,
                description=description.strip(),
                source=source,
                source_url=source_url,
                reported_salary=salary,
            )
            try:
                flag, created = self.record_signal(introduction, evidence, actor)
                self.db.commit()
                return flag, created
            except IntegrityError:
                self.db.rollback()
                logger.info(f"Active flag for introduction {introduction_id} created concurrently, retrying")

        raise ConflictError(f"Could not record evidence for introduction {introduction_id}; retry")


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None
