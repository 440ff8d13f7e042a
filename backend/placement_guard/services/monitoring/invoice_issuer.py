"""
Invoice Issuer

Financial recovery for a confirmed circumvention case. Sending an invoice
is the only way a flag reaches INVOICE_SENT.

Steps:
1. Claim the flag (conditional UPDATE of invoice_pending_since), so two
   operators clicking "send invoice" at once produce exactly one invoice
2. Call billing with no transaction open
3. On failure release the claim; the flag is exactly as it was
4. On success move the flag to INVOICE_SENT through the state machine,
   guarded by the claim
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...models.db_models import ACTIVE_FLAG_STATUSES, CircumventionFlagDB, FlagStatus
from ...models.monitoring import OperatorContext
from ..collaborators.billing import BillingClient, Payer
from ..errors import ConflictError, InvalidTransitionError, TransientCollaboratorError, ValidationError
from . import fee_calculator
from .flag_state_machine import FlagAction, FlagStateMachine, claim_stale_before


logger = logging.getLogger(__name__)


class InvoiceIssuer:
    """Issues placement fee invoices for circumvention flags."""

    def __init__(self, db_session: Session, billing_client: BillingClient):
        """Initialize with database session and billing collaborator."""
        self.db = db_session
        self.billing = billing_client
        self.state_machine = FlagStateMachine(db_session)

    def send_invoice(
        self,
        flag_id: str,
        amount,
        actor: OperatorContext,
        expected_status: Optional[Union[FlagStatus, str]] = None,
    ) -> Dict[str, Any]:
        """
        Invoice the employer for a flag and move it to INVOICE_SENT.

        Raises:
            NotFoundError: no such flag
            ValidationError: amount <= 0
            InvalidTransitionError: flag not OPEN/INVESTIGATING, or no fee owed
            ConflictError: status is not expected_status, or another invoice
                is in flight
            TransientCollaboratorError: billing failed; flag untouched
        """
        amount = fee_calculator.to_decimal(amount, "amount")
        if amount <= 0:
            raise ValidationError("Invoice amount must be greater than 0")

        flag = self.state_machine.get_flag(flag_id)
        current = FlagStatus(flag.status)
        expected = FlagStatus(expected_status) if expected_status else current

        if expected != current:
            raise ConflictError(
                f"Flag {flag_id} is {current.value}, expected {expected.value}",
                current_status=current.value,
            )
        if expected not in ACTIVE_FLAG_STATUSES:
            raise InvalidTransitionError(expected.value, FlagAction.SEND_INVOICE.value)
        if not (flag.estimated_fee_owed and flag.estimated_fee_owed > 0):
            raise InvalidTransitionError(
                expected.value, FlagAction.SEND_INVOICE.value, "estimated fee owed must be greater than 0"
            )

        introduction = flag.introduction
        payer = Payer(
            employer_id=introduction.employer_id,
            name=introduction.employer_name,
            email=introduction.employer_email,
        )
        memo = (
            f"Placement fee: {introduction.candidate_name} introduced "
            f"{introduction.introduced_at.date().isoformat()}"
            + (f" for {introduction.job_title}" if introduction.job_title else "")
        )

        # Step 1: claim
        claimed_at = datetime.utcnow()
        if not self._claim(flag_id, expected, claimed_at):
            raise ConflictError(
                f"Flag {flag_id} changed or already has an invoice in flight; re-fetch and retry",
                current_status=self._current_status(flag_id),
            )

        # Step 2: bill, outside any transaction
        try:
            invoice_number = self.billing.issue(amount, payer, memo)
        except Exception as e:
            self._release(flag_id, claimed_at)
            if isinstance(e, TransientCollaboratorError):
                raise
            raise TransientCollaboratorError("billing", str(e)) from e

        # Step 3: record, guarded by our claim
        sent_at = datetime.utcnow()
        try:
            self.state_machine.transition(
                flag_id,
                FlagAction.SEND_INVOICE,
                actor,
                expected_status=expected,
                updates={
                    "invoice_number": invoice_number,
                    "invoice_sent_at": sent_at,
                    "invoice_amount": amount,
                    "invoice_pending_since": None,
                },
                extra_criteria=(CircumventionFlagDB.invoice_pending_since == claimed_at,),
            )
        except ConflictError:
            logger.error(
                f"Invoice {invoice_number} was issued for flag {flag_id} but the claim was lost; "
                f"reconcile manually"
            )
            raise

        logger.info(f"Invoice {invoice_number} for {amount} sent on flag {flag_id} by {actor.label}")

        return {
            "flag_id": flag_id,
            "status": FlagStatus.INVOICE_SENT.value,
            "invoice_number": invoice_number,
            "invoice_amount": str(amount),
            "invoice_sent_at": sent_at.isoformat(),
        }

    def _claim(self, flag_id: str, expected: FlagStatus, claimed_at: datetime) -> bool:
        stale_before = claim_stale_before(claimed_at)
        rows = self.db.query(CircumventionFlagDB).filter(
            CircumventionFlagDB.id == flag_id,
            CircumventionFlagDB.status == expected,
            or_(
                CircumventionFlagDB.invoice_pending_since.is_(None),
                CircumventionFlagDB.invoice_pending_since < stale_before,
            ),
        ).update({"invoice_pending_since": claimed_at}, synchronize_session=False)
        self.db.commit()
        return rows == 1

    def _release(self, flag_id: str, claimed_at: datetime):
        self.db.query(CircumventionFlagDB).filter(
            CircumventionFlagDB.id == flag_id,
            CircumventionFlagDB.invoice_pending_since == claimed_at,
        ).update({"invoice_pending_since": None}, synchronize_session=False)
        self.db.commit()
        logger.warning(f"Billing failed for flag {flag_id}; invoice claim released")

    def _current_status(self, flag_id: str) -> Optional[str]:
        status = self.db.query(CircumventionFlagDB.status).filter(CircumventionFlagDB.id == flag_id).scalar()
        return status.value if status is not None else None
