"""
Check-in Scheduler

AUTHORITY: SYSTEM
Creates check-ins at fixed day offsets after an introduction and emails them.

Key behaviors:
- Milestones at day 30, 60, 90, 180 and 365 (check-ins #1-#5)
- Creation is idempotent: one check-in per (introduction, number), backed
  by a unique constraint so concurrent runs cannot duplicate
- Dispatch is claim -> send -> confirm. The claim (sent_at) is committed
  before the mail call and rolled back if the call fails, so a failed send
  is retried on the next run and a check-in is never sent twice by racing
  runs
- Per-item isolation: one bad introduction or failed email never aborts
  the batch

The timed background loop and the operator "run now" endpoint both call
run(); running them concurrently is safe.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import PUBLIC_APP_URL
from ...models.db_models import CheckInDB, IntroductionDB
from ...models.monitoring import OperatorContext
from ..collaborators.mail import DeliveryStatus, MailClient
from ..errors import ConflictError, NotFoundError, TransientCollaboratorError, ValidationError


logger = logging.getLogger(__name__)


# =============================================================================
# MILESTONE CONFIGURATION
# =============================================================================

# Days after introduction -> check-in number
MILESTONES = {
    30: 1,
    60: 2,
    90: 3,
    180: 4,
    365: 5,
}

CHECK_IN_LABELS = {
    1: "30-day",
    2: "60-day",
    3: "90-day",
    4: "180-day",
    5: "365-day",
}

FINAL_CHECK_IN_NUMBER = 5
PROTECTION_WINDOW_DAYS = 365

CHECK_IN_TEMPLATE = "candidate_check_in"
FINAL_CHECK_IN_TEMPLATE = "candidate_final_check_in"


def respond_url(token: str) -> str:
    """Self-service link included in every check-in email."""
    return f"{PUBLIC_APP_URL.rstrip('/')}/check-in/respond/{token}"


def new_response_token() -> str:
    return secrets.token_urlsafe(32)


# =============================================================================
# CHECK-IN SCHEDULER
# =============================================================================

class CheckInScheduler:
    """
    Creates and dispatches candidate check-ins.

    AUTHORITY: SYSTEM - run() needs no operator input. resend() and
    send_final_check_in() are operator actions that reuse the same claim path.
    """

    def __init__(self, db_session: Session, mail_client: MailClient):
        """Initialize with database session and mail collaborator."""
        self.db = db_session
        self.mail = mail_client

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Create every due check-in, then send every due unsent check-in.

        Idempotent: a second run at the same instant creates and sends nothing.
        """
        now = now or datetime.utcnow()
        created: List[Dict[str, Any]] = []
        sent: List[Dict[str, Any]] = []
        failures: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        # Phase 1: create due check-ins, one transaction per introduction
        introduction_ids = [
            row.id for row in self.db.query(IntroductionDB.id).filter(
                IntroductionDB.protection_expiry > now,
            ).all()
        ]

        for introduction_id in introduction_ids:
            try:
                new_check_ins = self._create_due_check_ins(introduction_id, now)
                self.db.commit()
                created.extend(new_check_ins)
            except IntegrityError:
                # Another run created them first
                self.db.rollback()
                logger.info(f"Check-ins for introduction {introduction_id} already created by a concurrent run")
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Failed to create check-ins for introduction {introduction_id}")
                errors.append({"introduction_id": introduction_id, "error": str(e)})

        # Phase 2: dispatch, one claim per check-in
        due_ids = [
            row.id for row in self.db.query(CheckInDB.id).filter(
                CheckInDB.sent_at.is_(None),
                CheckInDB.scheduled_for <= now,
            ).order_by(CheckInDB.scheduled_for).all()
        ]
        self.db.commit()

        for check_in_id in due_ids:
            try:
                outcome = self._dispatch(check_in_id, claimed_at=now, expected_sent_at=None)
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Failed to dispatch check-in {check_in_id}")
                errors.append({"check_in_id": check_in_id, "error": str(e)})
                continue

            if outcome is None:
                continue  # claimed by another run
            if outcome["delivered"]:
                sent.append(outcome)
            else:
                failures.append(outcome)

        logger.info(
            f"Check-in run at {now.isoformat()}: {len(created)} created, {len(sent)} sent, "
            f"{len(failures)} send failures, {len(errors)} errors"
        )

        return {
            "run_date": now.isoformat(),
            "check_ins_created": len(created),
            "emails_sent": len(sent),
            "send_failures": len(failures),
            "errors": len(errors),
            "details": {
                "created": created,
                "sent": sent,
                "failures": failures,
                "errors": errors,
            },
        }

    def _create_due_check_ins(self, introduction_id: str, now: datetime) -> List[Dict[str, Any]]:
        """Add the missing due check-ins for one introduction. Caller commits."""
        introduction = self.db.query(IntroductionDB).filter(IntroductionDB.id == introduction_id).first()
        if not introduction:
            return []

        existing = {
            number for (number,) in self.db.query(CheckInDB.check_in_number).filter(
                CheckInDB.introduction_id == introduction_id,
            ).all()
        }

        created = []
        for days, number in sorted(MILESTONES.items()):
            scheduled_for = introduction.introduced_at + timedelta(days=days)
            if scheduled_for > now or number in existing:
                continue

            check_in = self._new_check_in(introduction, number, scheduled_for)
            created.append({
                "check_in_id": check_in.id,
                "introduction_id": introduction_id,
                "check_in_number": number,
                "scheduled_for": scheduled_for.isoformat(),
            })

        if created:
            self.db.flush()
        return created

    def _new_check_in(self, introduction: IntroductionDB, number: int, scheduled_for: datetime) -> CheckInDB:
        check_in = CheckInDB(
            id=str(uuid4()),
            introduction_id=introduction.id,
            check_in_number=number,
            scheduled_for=scheduled_for,
            response_token=new_response_token(),
            send_attempts=0,
            flagged_for_review=False,
        )
        self.db.add(check_in)
        return check_in

    # =========================================================================
    # DISPATCH (CLAIM -> SEND -> CONFIRM)
    # =========================================================================

    def _dispatch(
        self,
        check_in_id: str,
        claimed_at: datetime,
        expected_sent_at: Optional[datetime],
    ) -> Optional[Dict[str, Any]]:
        """
        Send one check-in under a claim.

        expected_sent_at is the sent_at value the caller observed (None for a
        first send). Returns None when the claim was lost to another sender.
        """
        check_in = self.db.query(CheckInDB).filter(CheckInDB.id == check_in_id).first()
        if not check_in:
            raise NotFoundError(f"Check-in {check_in_id} not found")
        message = self._build_message(check_in)

        if not self._claim(check_in_id, expected_sent_at, claimed_at):
            logger.info(f"Check-in {check_in_id} was claimed by another sender")
            return None

        # No transaction is open while the mail service is called
        error = None
        try:
            status = self.mail.send(message["to"], message["template"], message["vars"])
        except Exception as e:
            logger.warning(f"Mail collaborator raised for check-in {check_in_id}: {e}")
            status, error = DeliveryStatus.FAILED, str(e)

        outcome = {
            "check_in_id": check_in_id,
            "introduction_id": message["introduction_id"],
            "check_in_number": message["vars"]["check_in_number"],
            "to": message["to"],
        }

        if status == DeliveryStatus.ACCEPTED:
            self._confirm(check_in_id, claimed_at, message["to"])
            outcome["delivered"] = True
            return outcome

        error = error or "mail service did not accept the message"
        self._release(check_in_id, claimed_at, expected_sent_at, error)
        outcome["delivered"] = False
        outcome["error"] = error
        return outcome

    def _claim(self, check_in_id: str, expected_sent_at: Optional[datetime], claimed_at: datetime) -> bool:
        query = self.db.query(CheckInDB).filter(CheckInDB.id == check_in_id)
        if expected_sent_at is None:
            query = query.filter(CheckInDB.sent_at.is_(None))
        else:
            query = query.filter(CheckInDB.sent_at == expected_sent_at)

        rows = query.update({
            "sent_at": claimed_at,
            "send_attempts": CheckInDB.send_attempts + 1,
            "updated_at": datetime.utcnow(),
        }, synchronize_session=False)
        self.db.commit()
        return rows == 1

    def _confirm(self, check_in_id: str, claimed_at: datetime, sent_to: str):
        self.db.query(CheckInDB).filter(
            CheckInDB.id == check_in_id,
            CheckInDB.sent_at == claimed_at,
        ).update({
            "delivery_confirmed_at": datetime.utcnow(),
            "sent_to": sent_to,
            "last_send_error": None,
            "updated_at": datetime.utcnow(),
        }, synchronize_session=False)
        self.db.commit()

    def _release(self, check_in_id: str, claimed_at: datetime, previous_sent_at: Optional[datetime], error: str):
        """Undo our claim so the next run retries. A newer claim is left alone."""
        self.db.query(CheckInDB).filter(
            CheckInDB.id == check_in_id,
            CheckInDB.sent_at == claimed_at,
        ).update({
            "sent_at": previous_sent_at,
            "last_send_error": error[:1000],
            "updated_at": datetime.utcnow(),
        }, synchronize_session=False)
        self.db.commit()
        logger.warning(f"Check-in {check_in_id} not sent, claim released: {error}")

    def _build_message(self, check_in: CheckInDB) -> Dict[str, Any]:
        """Snapshot everything the mail call needs while the row is loaded."""
        introduction = check_in.introduction
        number = check_in.check_in_number
        first_name = (introduction.candidate_name or "").split(" ")[0] or introduction.candidate_name

        return {
            "introduction_id": introduction.id,
            "to": introduction.candidate_email,
            "template": FINAL_CHECK_IN_TEMPLATE if number == FINAL_CHECK_IN_NUMBER else CHECK_IN_TEMPLATE,
            "vars": {
                "candidate_name": introduction.candidate_name,
                "candidate_first_name": first_name,
                "employer_name": introduction.employer_name,
                "job_title": introduction.job_title,
                "check_in_number": number,
                "check_in_label": CHECK_IN_LABELS.get(number),
                "introduced_at": introduction.introduced_at.date().isoformat(),
                "respond_url": respond_url(check_in.response_token),
            },
        }

    # =========================================================================
    # OPERATOR ACTIONS
    # =========================================================================

    def resend(self, check_in_id: str, actor: OperatorContext) -> Dict[str, Any]:
        """
        Re-send one check-in now, whether or not it was sent before.

        Raises:
            NotFoundError: no such check-in
            ConflictError: another sender claimed it between read and claim
            TransientCollaboratorError: mail failed; sent_at is back to what it was
        """
        check_in = self.db.query(CheckInDB).filter(CheckInDB.id == check_in_id).first()
        if not check_in:
            raise NotFoundError(f"Check-in {check_in_id} not found")

        observed_sent_at = check_in.sent_at
        outcome = self._dispatch(check_in_id, claimed_at=datetime.utcnow(), expected_sent_at=observed_sent_at)

        if outcome is None:
            raise ConflictError(f"Check-in {check_in_id} is being sent by another request")
        if not outcome["delivered"]:
            raise TransientCollaboratorError("mail", outcome["error"])

        logger.info(f"Check-in {check_in_id} resent by {actor.label}")
        return outcome

    def send_final_check_in(self, introduction_id: str, actor: OperatorContext, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Create (if missing) and send the 365-day check-in for an introduction
        whose protection window has ended.

        Raises:
            NotFoundError: no such introduction
            ValidationError: protection window still running
            ConflictError: the final check-in was already sent
            TransientCollaboratorError: mail failed; the check-in stays unsent
                and the scheduler retries it
        """
        now = now or datetime.utcnow()
        introduction = self.db.query(IntroductionDB).filter(IntroductionDB.id == introduction_id).first()
        if not introduction:
            raise NotFoundError(f"Introduction {introduction_id} not found")
        if introduction.protection_expiry > now:
            raise ValidationError(
                f"Protection window for introduction {introduction_id} runs until "
                f"{introduction.protection_expiry.isoformat()}"
            )

        check_in = self.db.query(CheckInDB).filter(
            CheckInDB.introduction_id == introduction_id,
            CheckInDB.check_in_number == FINAL_CHECK_IN_NUMBER,
        ).first()

        if check_in is None:
            try:
                check_in = self._new_check_in(introduction, FINAL_CHECK_IN_NUMBER, introduction.protection_expiry)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                raise ConflictError(f"Final check-in for introduction {introduction_id} is being created by another request")

        if check_in.sent_at is not None:
            raise ConflictError(f"Final check-in for introduction {introduction_id} was already sent")

        check_in_id = check_in.id
        outcome = self._dispatch(check_in_id, claimed_at=now, expected_sent_at=None)

        if outcome is None:
            raise ConflictError(f"Final check-in for introduction {introduction_id} is being sent by another request")
        if not outcome["delivered"]:
            raise TransientCollaboratorError("mail", outcome["error"])

        logger.info(f"Final check-in for introduction {introduction_id} sent by {actor.label}")
        return outcome

    def list_expired_introductions(self, page: int = 1, page_size: int = 20, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Introductions past their protection window, with final check-in status."""
        now = now or datetime.utcnow()
        page = max(page, 1)

        query = self.db.query(IntroductionDB).filter(IntroductionDB.protection_expiry <= now)
        total = query.count()
        introductions = query.order_by(IntroductionDB.protection_expiry.desc()).offset(
            (page - 1) * page_size
        ).limit(page_size).all()

        items = []
        for introduction in introductions:
            final = next(
                (c for c in introduction.check_ins if c.check_in_number == FINAL_CHECK_IN_NUMBER),
                None,
            )
            items.append({
                "introduction_id": introduction.id,
                "candidate_name": introduction.candidate_name,
                "candidate_email": introduction.candidate_email,
                "employer_name": introduction.employer_name,
                "job_title": introduction.job_title,
                "status": introduction.status.value,
                "introduced_at": introduction.introduced_at.isoformat(),
                "protection_expiry": introduction.protection_expiry.isoformat(),
                "check_ins_sent": sum(1 for c in introduction.check_ins if c.sent_at is not None),
                "final_check_in_sent": bool(final and final.sent_at),
                "final_check_in_sent_at": final.sent_at.isoformat() if final and final.sent_at else None,
            })

        return {
            "introductions": items,
            "pagination": _pagination(page, page_size, total),
        }


def _pagination(page: int, page_size: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": (total + page_size - 1) // page_size if page_size else 0,
    }
