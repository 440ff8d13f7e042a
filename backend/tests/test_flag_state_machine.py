"""
Tests for the circumvention flag state machine.

Tests:
1. Every edge in the transition table, and rejection of every other edge
2. Notes and fee preconditions
3. Compare-and-set on the expected status
4. Event log entries for each mutation
5. Fee recalculation
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from placement_guard.models.db_models import CircumventionFlagDB, FlagEventDB, FlagStatus
from placement_guard.services.errors import (
    ConflictError, InvalidTransitionError, NotFoundError, ValidationError,
)
from placement_guard.services.monitoring.flag_state_machine import (
    TERMINAL_STATUSES, TRANSITIONS, FlagAction, FlagStateMachine, action_for, is_terminal, next_states,
)


def _events(db_session, flag):
    return db_session.query(FlagEventDB).filter(FlagEventDB.flag_id == flag.id).order_by(FlagEventDB.created_at).all()


# =============================================================================
# TEST: TRANSITION TABLE
# =============================================================================

class TestTransitionTable:

    @pytest.mark.parametrize("status, expected", [
        (FlagStatus.OPEN, {FlagStatus.INVESTIGATING, FlagStatus.INVOICE_SENT, FlagStatus.FALSE_POSITIVE}),
        (FlagStatus.INVESTIGATING, {FlagStatus.INVOICE_SENT, FlagStatus.FALSE_POSITIVE}),
        (FlagStatus.INVOICE_SENT, {FlagStatus.PAID, FlagStatus.DISPUTED}),
        (FlagStatus.DISPUTED, {FlagStatus.PAID, FlagStatus.WROTE_OFF}),
        (FlagStatus.PAID, set()),
        (FlagStatus.FALSE_POSITIVE, set()),
        (FlagStatus.WROTE_OFF, set()),
    ])
    def test_next_states(self, status, expected):
        assert set(next_states(status)) == expected

    def test_terminal_states_have_no_outgoing_edges(self):
        for status in TERMINAL_STATUSES:
            assert is_terminal(status)
            assert next_states(status) == []

    def test_action_for(self):
        assert action_for(FlagStatus.OPEN, FlagStatus.INVESTIGATING) == FlagAction.BEGIN_REVIEW
        assert action_for(FlagStatus.DISPUTED, FlagStatus.PAID) == FlagAction.RESOLVE_IN_FAVOR
        assert action_for(FlagStatus.OPEN, FlagStatus.PAID) is None


# =============================================================================
# TEST: TRANSITIONS
# =============================================================================

class TestTransition:

    def test_begin_review(self, db_session, make_introduction, make_flag, operator):
        """OPEN -> INVESTIGATING records an event with from/to and actor."""
        flag = make_flag(make_introduction())

        FlagStateMachine(db_session).transition(flag.id, FlagAction.BEGIN_REVIEW, operator)

        db_session.refresh(flag)
        assert flag.status == FlagStatus.INVESTIGATING
        assert flag.resolved_at is None

        events = _events(db_session, flag)
        assert len(events) == 1
        assert events[0].event == "begin_review"
        assert events[0].from_status == FlagStatus.OPEN
        assert events[0].to_status == FlagStatus.INVESTIGATING
        assert events[0].actor_id == "ops@example.com"

    def test_action_accepts_string(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction())

        FlagStateMachine(db_session).transition(flag.id, "begin_review", operator)

        db_session.refresh(flag)
        assert flag.status == FlagStatus.INVESTIGATING

    def test_payment_on_open_flag_is_invalid(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction())

        with pytest.raises(InvalidTransitionError) as excinfo:
            FlagStateMachine(db_session).transition(flag.id, FlagAction.PAYMENT_RECEIVED, operator)

        assert excinfo.value.from_status == "OPEN"
        assert excinfo.value.event == "payment_received"
        db_session.refresh(flag)
        assert flag.status == FlagStatus.OPEN
        assert _events(db_session, flag) == []

    def test_every_edge_outside_the_table_is_rejected(self, db_session, make_introduction, make_flag, operator):
        state_machine = FlagStateMachine(db_session)

        for status in FlagStatus:
            flag = make_flag(make_introduction(), status=status)
            for action in FlagAction:
                if (status, action) in TRANSITIONS:
                    continue
                with pytest.raises(InvalidTransitionError):
                    state_machine.transition(flag.id, action, operator, resolution_notes="notes")
            db_session.refresh(flag)
            assert flag.status == status

    def test_false_positive_requires_notes(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), status=FlagStatus.INVESTIGATING)
        state_machine = FlagStateMachine(db_session)

        with pytest.raises(ValidationError):
            state_machine.transition(flag.id, FlagAction.MARK_FALSE_POSITIVE, operator, resolution_notes="   ")

        state_machine.transition(
            flag.id, FlagAction.MARK_FALSE_POSITIVE, operator, resolution_notes="Candidate joined a different Acme"
        )

        db_session.refresh(flag)
        assert flag.status == FlagStatus.FALSE_POSITIVE
        assert flag.resolution == "false_positive"
        assert flag.resolved_at is not None
        assert flag.resolution_notes == "Candidate joined a different Acme"

    def test_write_off_without_notes(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), status=FlagStatus.DISPUTED)

        FlagStateMachine(db_session).transition(flag.id, FlagAction.WRITE_OFF, operator)

        db_session.refresh(flag)
        assert flag.status == FlagStatus.WROTE_OFF
        assert flag.resolution == "written_off"
        assert flag.resolution_notes is None

    def test_payment_received_sets_paid_fields(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), status=FlagStatus.INVOICE_SENT)

        FlagStateMachine(db_session).transition(flag.id, FlagAction.PAYMENT_RECEIVED, operator)

        db_session.refresh(flag)
        assert flag.status == FlagStatus.PAID
        assert flag.resolution == "paid"
        assert flag.invoice_paid_at is not None
        assert flag.resolved_at is not None

    def test_dispute_path(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), status=FlagStatus.INVOICE_SENT)
        state_machine = FlagStateMachine(db_session)

        state_machine.transition(flag.id, FlagAction.RAISE_DISPUTE, operator)
        state_machine.transition(flag.id, FlagAction.RESOLVE_IN_FAVOR, operator)

        db_session.refresh(flag)
        assert flag.status == FlagStatus.PAID
        assert flag.resolution == "paid_after_dispute"
        assert [e.event for e in _events(db_session, flag)] == ["raise_dispute", "resolve_in_favor"]

    def test_send_invoice_requires_fee(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), estimated_salary=None, fee_percentage=None, estimated_fee_owed=None)

        with pytest.raises(InvalidTransitionError) as excinfo:
            FlagStateMachine(db_session).transition(flag.id, FlagAction.SEND_INVOICE, operator)

        assert "fee" in str(excinfo.value)

    def test_unknown_flag(self, db_session, operator):
        with pytest.raises(NotFoundError):
            FlagStateMachine(db_session).transition("missing", FlagAction.BEGIN_REVIEW, operator)


# =============================================================================
# TEST: COMPARE-AND-SET
# =============================================================================

class TestCompareAndSet:

    def test_stale_expected_status_conflicts(self, db_session, make_introduction, make_flag, operator):
        """Operator saw OPEN, someone else already moved it to INVESTIGATING."""
        flag = make_flag(make_introduction(), status=FlagStatus.INVESTIGATING)

        with pytest.raises(ConflictError) as excinfo:
            FlagStateMachine(db_session).transition(
                flag.id, FlagAction.MARK_FALSE_POSITIVE, operator,
                expected_status=FlagStatus.OPEN, resolution_notes="no hire",
            )

        assert excinfo.value.current_status == "INVESTIGATING"
        db_session.refresh(flag)
        assert flag.status == FlagStatus.INVESTIGATING

    def test_second_of_two_identical_requests_conflicts(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction())
        state_machine = FlagStateMachine(db_session)

        state_machine.transition(flag.id, FlagAction.BEGIN_REVIEW, operator, expected_status="OPEN")

        with pytest.raises(ConflictError):
            state_machine.transition(flag.id, FlagAction.BEGIN_REVIEW, operator, expected_status="OPEN")
        assert len(_events(db_session, flag)) == 1

    def test_lost_update_race_conflicts(self, db_session, make_introduction, make_flag, operator):
        """The conditional UPDATE misses when an extra guard no longer holds."""
        flag = make_flag(make_introduction())

        with pytest.raises(ConflictError) as excinfo:
            FlagStateMachine(db_session).transition(
                flag.id, FlagAction.BEGIN_REVIEW, operator,
                extra_criteria=(CircumventionFlagDB.invoice_number == "never",),
            )

        assert excinfo.value.current_status == "OPEN"
        db_session.refresh(flag)
        assert flag.status == FlagStatus.OPEN
        assert _events(db_session, flag) == []

    def test_live_invoice_claim_blocks_status_change(self, db_session, make_introduction, make_flag, operator):
        """An operator cannot close a flag while its invoice is being issued."""
        flag = make_flag(make_introduction())
        flag.invoice_pending_since = datetime.utcnow()
        db_session.commit()

        with pytest.raises(ConflictError):
            FlagStateMachine(db_session).transition(
                flag.id, FlagAction.MARK_FALSE_POSITIVE, operator, resolution_notes="Different Acme"
            )

        db_session.refresh(flag)
        assert flag.status == FlagStatus.OPEN
        assert flag.invoice_pending_since is not None
        assert _events(db_session, flag) == []

    def test_claim_taken_after_read_still_blocks(self, db_session, make_introduction, make_flag, operator):
        """The conditional UPDATE re-checks the claim the in-memory flag has not seen."""
        flag = make_flag(make_introduction())
        assert flag.invoice_pending_since is None
        db_session.query(CircumventionFlagDB).filter(CircumventionFlagDB.id == flag.id).update(
            {"invoice_pending_since": datetime.utcnow()}, synchronize_session=False
        )

        with pytest.raises(ConflictError):
            FlagStateMachine(db_session).transition(flag.id, FlagAction.BEGIN_REVIEW, operator)

        db_session.refresh(flag)
        assert flag.status == FlagStatus.OPEN

    def test_stale_invoice_claim_is_cleared_by_status_change(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction())
        flag.invoice_pending_since = datetime.utcnow() - timedelta(hours=2)
        db_session.commit()

        FlagStateMachine(db_session).transition(
            flag.id, FlagAction.MARK_FALSE_POSITIVE, operator, resolution_notes="Different Acme"
        )

        db_session.refresh(flag)
        assert flag.status == FlagStatus.FALSE_POSITIVE
        assert flag.invoice_pending_since is None


# =============================================================================
# TEST: NON-STATUS MUTATIONS
# =============================================================================

class TestFeeAndNotes:

    def test_recalculate_fee(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), estimated_salary=None, fee_percentage=None, estimated_fee_owed=None)

        FlagStateMachine(db_session).recalculate_fee(flag.id, Decimal("150000"), operator, fee_percentage=18)

        db_session.refresh(flag)
        assert flag.estimated_fee_owed == Decimal("27000")
        assert flag.status == FlagStatus.OPEN
        event = _events(db_session, flag)[-1]
        assert event.event == "fee_recalculated"
        assert event.event_metadata["estimated_fee_owed"] == "27000"

    def test_recalculate_keeps_existing_percentage(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), fee_percentage=Decimal("20"))

        FlagStateMachine(db_session).recalculate_fee(flag.id, "100000", operator)

        db_session.refresh(flag)
        assert flag.estimated_fee_owed == Decimal("20000")

    def test_recalculate_allowed_while_invoiced(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), status=FlagStatus.INVOICE_SENT)

        FlagStateMachine(db_session).recalculate_fee(flag.id, 100000, operator, fee_percentage=15)

        db_session.refresh(flag)
        assert flag.estimated_fee_owed == Decimal("15000")
        assert flag.status == FlagStatus.INVOICE_SENT

    def test_recalculate_rejected_on_terminal_flag(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), status=FlagStatus.PAID)

        with pytest.raises(ValidationError):
            FlagStateMachine(db_session).recalculate_fee(flag.id, 100000, operator)

    def test_recalculate_rejects_bad_salary(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction())

        with pytest.raises(ValidationError):
            FlagStateMachine(db_session).recalculate_fee(flag.id, 0, operator)

        db_session.refresh(flag)
        assert flag.estimated_fee_owed == Decimal("27000")

    def test_update_notes(self, db_session, make_introduction, make_flag, operator):
        flag = make_flag(make_introduction(), status=FlagStatus.PAID)

        FlagStateMachine(db_session).update_notes(flag.id, "Paid by wire", operator)

        db_session.refresh(flag)
        assert flag.resolution_notes == "Paid by wire"
        assert flag.status == FlagStatus.PAID
        assert _events(db_session, flag)[-1].event == "notes_updated"
