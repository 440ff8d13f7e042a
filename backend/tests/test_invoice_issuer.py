"""
Tests for the invoice issuer: claim -> bill -> record, with the flag left
untouched whenever billing fails or another request holds the claim.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from placement_guard.models.db_models import FlagEventDB, FlagStatus
from placement_guard.services.collaborators.billing import Payer
from placement_guard.services.errors import (
    ConflictError, InvalidTransitionError, NotFoundError, TransientCollaboratorError, ValidationError,
)
from placement_guard.services.monitoring import FlagStateMachine, InvoiceIssuer
from placement_guard.services.monitoring.flag_state_machine import FlagAction


class TestSendInvoice:

    def test_invoice_sent(self, db_session, make_introduction, make_flag, billing_client, operator):
        """Fee 27000 on an INVESTIGATING flag: billed once, flag moves to INVOICE_SENT."""
        flag = make_flag(make_introduction(), status=FlagStatus.INVESTIGATING)

        result = InvoiceIssuer(db_session, billing_client).send_invoice(
            flag.id, Decimal("27000"), operator, expected_status="INVESTIGATING"
        )

        assert result["status"] == "INVOICE_SENT"
        assert result["invoice_number"] == "INV-1001"
        assert result["invoice_amount"] == "27000"

        amount, payer, memo = billing_client.issue.call_args[0]
        assert amount == Decimal("27000")
        assert isinstance(payer, Payer)
        assert payer.name == "Acme Corp"
        assert "Jane Doe" in memo

        db_session.refresh(flag)
        assert flag.status == FlagStatus.INVOICE_SENT
        assert flag.invoice_number == "INV-1001"
        assert flag.invoice_amount == Decimal("27000")
        assert flag.invoice_sent_at is not None
        assert flag.invoice_pending_since is None

        event = db_session.query(FlagEventDB).filter(FlagEventDB.flag_id == flag.id).one()
        assert event.event == "send_invoice"
        assert event.event_metadata["invoice_number"] == "INV-1001"

    def test_amount_may_differ_from_fee(self, db_session, make_introduction, make_flag, billing_client, operator):
        flag = make_flag(make_introduction())

        InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, "25000", operator)

        db_session.refresh(flag)
        assert flag.invoice_amount == Decimal("25000")
        assert flag.estimated_fee_owed == Decimal("27000")

    def test_second_request_conflicts_and_bills_once(self, db_session, make_introduction, make_flag, billing_client, operator):
        """Two operators both saw OPEN; only the first produces an invoice."""
        flag = make_flag(make_introduction())
        issuer = InvoiceIssuer(db_session, billing_client)

        issuer.send_invoice(flag.id, 27000, operator, expected_status="OPEN")

        with pytest.raises(ConflictError) as excinfo:
            issuer.send_invoice(flag.id, 27000, operator, expected_status="OPEN")

        assert excinfo.value.current_status == "INVOICE_SENT"
        assert billing_client.issue.call_count == 1

    def test_billing_failure_leaves_flag_untouched(self, db_session, make_introduction, make_flag, billing_client, operator):
        flag = make_flag(make_introduction())
        billing_client.issue.side_effect = TransientCollaboratorError("billing", "HTTP 502")

        with pytest.raises(TransientCollaboratorError):
            InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, 27000, operator)

        db_session.refresh(flag)
        assert flag.status == FlagStatus.OPEN
        assert flag.invoice_number is None
        assert flag.invoice_pending_since is None
        assert db_session.query(FlagEventDB).filter(FlagEventDB.flag_id == flag.id).count() == 0

    def test_unexpected_billing_exception_is_transient(self, db_session, make_introduction, make_flag, billing_client, operator):
        flag = make_flag(make_introduction())
        billing_client.issue.side_effect = ConnectionResetError("reset by peer")

        with pytest.raises(TransientCollaboratorError) as excinfo:
            InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, 27000, operator)

        assert excinfo.value.collaborator == "billing"
        db_session.refresh(flag)
        assert flag.invoice_pending_since is None

    def test_billing_retry_after_failure_succeeds(self, db_session, make_introduction, make_flag, billing_client, operator):
        flag = make_flag(make_introduction())
        issuer = InvoiceIssuer(db_session, billing_client)
        billing_client.issue.side_effect = [TransientCollaboratorError("billing", "timeout"), "INV-2002"]

        with pytest.raises(TransientCollaboratorError):
            issuer.send_invoice(flag.id, 27000, operator)
        result = issuer.send_invoice(flag.id, 27000, operator)

        assert result["invoice_number"] == "INV-2002"


# =============================================================================
# TEST: CLAIM
# =============================================================================

class TestInvoiceClaim:

    def test_live_claim_blocks_second_invoice(self, db_session, make_introduction, make_flag, billing_client, operator):
        flag = make_flag(make_introduction())
        flag.invoice_pending_since = datetime.utcnow()
        db_session.commit()

        with pytest.raises(ConflictError):
            InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, 27000, operator)

        billing_client.issue.assert_not_called()

    def test_stale_claim_is_taken_over(self, db_session, make_introduction, make_flag, billing_client, operator):
        """A claim left behind by a crashed request expires."""
        flag = make_flag(make_introduction())
        flag.invoice_pending_since = datetime.utcnow() - timedelta(hours=2)
        db_session.commit()

        result = InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, 27000, operator)

        assert result["status"] == "INVOICE_SENT"
        billing_client.issue.assert_called_once()

    def test_status_change_during_billing_is_rejected(self, db_session, make_introduction, make_flag, billing_client, operator):
        """Closing the flag while billing runs must not strand the issued invoice."""
        flag = make_flag(make_introduction())
        attempts = []

        def issue(amount, payer, memo):
            with pytest.raises(ConflictError):
                FlagStateMachine(db_session).transition(
                    flag.id, FlagAction.MARK_FALSE_POSITIVE, operator, resolution_notes="Different Acme"
                )
            attempts.append(flag.id)
            return "INV-9"

        billing_client.issue.side_effect = issue

        result = InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, 27000, operator)

        assert attempts == [flag.id]
        assert result["invoice_number"] == "INV-9"
        db_session.refresh(flag)
        assert flag.status == FlagStatus.INVOICE_SENT
        assert flag.invoice_number == "INV-9"
        assert flag.invoice_pending_since is None


# =============================================================================
# TEST: PRECONDITIONS
# =============================================================================

class TestPreconditions:

    @pytest.mark.parametrize("amount", [0, -100, "0.00"])
    def test_non_positive_amount(self, db_session, make_introduction, make_flag, billing_client, operator, amount):
        flag = make_flag(make_introduction())

        with pytest.raises(ValidationError):
            InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, amount, operator)
        billing_client.issue.assert_not_called()

    @pytest.mark.parametrize("status", [
        FlagStatus.INVOICE_SENT, FlagStatus.PAID, FlagStatus.DISPUTED, FlagStatus.FALSE_POSITIVE, FlagStatus.WROTE_OFF,
    ])
    def test_inactive_flag_cannot_be_invoiced(self, db_session, make_introduction, make_flag, billing_client, operator, status):
        flag = make_flag(make_introduction(), status=status)

        with pytest.raises(InvalidTransitionError):
            InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, 27000, operator)
        billing_client.issue.assert_not_called()

    def test_flag_without_fee_cannot_be_invoiced(self, db_session, make_introduction, make_flag, billing_client, operator):
        flag = make_flag(make_introduction(), estimated_salary=None, fee_percentage=None, estimated_fee_owed=None)

        with pytest.raises(InvalidTransitionError):
            InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, 27000, operator)

    def test_stale_expected_status(self, db_session, make_introduction, make_flag, billing_client, operator):
        flag = make_flag(make_introduction(), status=FlagStatus.INVESTIGATING)

        with pytest.raises(ConflictError):
            InvoiceIssuer(db_session, billing_client).send_invoice(flag.id, 27000, operator, expected_status="OPEN")

    def test_unknown_flag(self, db_session, billing_client, operator):
        with pytest.raises(NotFoundError):
            InvoiceIssuer(db_session, billing_client).send_invoice("missing", 27000, operator)
