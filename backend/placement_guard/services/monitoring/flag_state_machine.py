"""
Circumvention Flag State Machine

Lifecycle of a circumvention case, from detection to payment or closure.
Every status change goes through TRANSITIONS and a compare-and-set on the
current status; every mutation is written to the flag event log.

    OPEN ──begin_review──> INVESTIGATING
    OPEN / INVESTIGATING ──send_invoice──> INVOICE_SENT
    OPEN / INVESTIGATING ──mark_false_positive──> FALSE_POSITIVE (terminal)
    INVOICE_SENT ──payment_received──> PAID (terminal)
    INVOICE_SENT ──raise_dispute──> DISPUTED
    DISPUTED ──resolve_in_favor──> PAID (terminal)
    DISPUTED ──write_off──> WROTE_OFF (terminal)
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...config import DEFAULT_FEE_PERCENTAGE, INVOICE_CLAIM_TIMEOUT_MINUTES
from ...models.db_models import CircumventionFlagDB, FlagEventDB, FlagStatus
from ...models.monitoring import OperatorContext
from ..errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from . import fee_calculator


logger = logging.getLogger(__name__)


class FlagAction(str, Enum):
    """Events that move a flag between states."""
    BEGIN_REVIEW = "begin_review"
    SEND_INVOICE = "send_invoice"
    MARK_FALSE_POSITIVE = "mark_false_positive"
    PAYMENT_RECEIVED = "payment_received"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_IN_FAVOR = "resolve_in_favor"
    WRITE_OFF = "write_off"


# =============================================================================
# TRANSITION TABLE
# =============================================================================
#
# (from_status, action) -> rule. Anything not listed here is rejected.
# "resolution" is set on the flag when the target state is terminal.
#
# =============================================================================

TRANSITIONS: Dict[tuple, Dict[str, Any]] = {
    (FlagStatus.OPEN, FlagAction.BEGIN_REVIEW): {
        "to": FlagStatus.INVESTIGATING,
        "description": "Operator started reviewing the evidence",
        "requires_notes": False,
        "requires_fee": False,
    },
    (FlagStatus.OPEN, FlagAction.SEND_INVOICE): {
        "to": FlagStatus.INVOICE_SENT,
        "description": "Placement fee invoice issued to the employer",
        "requires_notes": False,
        "requires_fee": True,
    },
    (FlagStatus.INVESTIGATING, FlagAction.SEND_INVOICE): {
        "to": FlagStatus.INVOICE_SENT,
        "description": "Placement fee invoice issued to the employer",
        "requires_notes": False,
        "requires_fee": True,
    },
    (FlagStatus.OPEN, FlagAction.MARK_FALSE_POSITIVE): {
        "to": FlagStatus.FALSE_POSITIVE,
        "description": "Evidence did not hold up",
        "requires_notes": True,
        "requires_fee": False,
        "resolution": "false_positive",
    },
    (FlagStatus.INVESTIGATING, FlagAction.MARK_FALSE_POSITIVE): {
        "to": FlagStatus.FALSE_POSITIVE,
        "description": "Evidence did not hold up",
        "requires_notes": True,
        "requires_fee": False,
        "resolution": "false_positive",
    },
    (FlagStatus.INVOICE_SENT, FlagAction.PAYMENT_RECEIVED): {
        "to": FlagStatus.PAID,
        "description": "Employer paid the invoice",
        "requires_notes": False,
        "requires_fee": False,
        "resolution": "paid",
    },
    (FlagStatus.INVOICE_SENT, FlagAction.RAISE_DISPUTE): {
        "to": FlagStatus.DISPUTED,
        "description": "Employer disputed the invoice",
        "requires_notes": False,
        "requires_fee": False,
    },
    (FlagStatus.DISPUTED, FlagAction.RESOLVE_IN_FAVOR): {
        "to": FlagStatus.PAID,
        "description": "Dispute resolved in our favor and paid",
        "requires_notes": False,
        "requires_fee": False,
        "resolution": "paid_after_dispute",
    },
    (FlagStatus.DISPUTED, FlagAction.WRITE_OFF): {
        "to": FlagStatus.WROTE_OFF,
        "description": "Fee written off",
        "requires_notes": False,
        "requires_fee": False,
        "resolution": "written_off",
    },
}

TERMINAL_STATUSES = (FlagStatus.PAID, FlagStatus.FALSE_POSITIVE, FlagStatus.WROTE_OFF)

# Only the invoice issuer may take these edges
SYSTEM_ONLY_ACTIONS = {FlagAction.SEND_INVOICE}


def is_terminal(status: FlagStatus) -> bool:
    return status in TERMINAL_STATUSES


def claim_stale_before(now: datetime) -> datetime:
    """Invoice claims taken before this moment are abandoned."""
    return now - timedelta(minutes=INVOICE_CLAIM_TIMEOUT_MINUTES)


def invoice_in_flight(flag: CircumventionFlagDB, now: datetime) -> bool:
    """True while an invoice issuer holds a live claim on the flag."""
    return flag.invoice_pending_since is not None and flag.invoice_pending_since >= claim_stale_before(now)


def next_states(status: FlagStatus) -> List[FlagStatus]:
    """States reachable from a status in one step."""
    return [rule["to"] for (from_status, _), rule in TRANSITIONS.items() if from_status == status]


def action_for(from_status: FlagStatus, to_status: FlagStatus) -> Optional[FlagAction]:
    """The action that moves a flag between two states, if any."""
    for (source, action), rule in TRANSITIONS.items():
        if source == from_status and rule["to"] == to_status:
            return action
    return None


def record_flag_event(
    db: Session,
    flag_id: str,
    event: str,
    actor: OperatorContext,
    from_status: Optional[FlagStatus] = None,
    to_status: Optional[FlagStatus] = None,
    notes: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> FlagEventDB:
    """Append an immutable entry to the flag event log. Does not commit."""
    entry = FlagEventDB(
        id=str(uuid4()),
        flag_id=flag_id,
        event=event,
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        actor_type=actor.actor_type,
        actor_id=actor.label,
        event_metadata=metadata or {},
        created_at=datetime.utcnow(),
    )
    db.add(entry)
    return entry


# =============================================================================
# STATE MACHINE
# =============================================================================

class FlagStateMachine:
    """
    Applies TRANSITIONS to circumvention flags.

    Status changes are conditional updates on (id, expected status); when
    another writer got there first the update touches no row and the caller
    gets a ConflictError with the flag left as the other writer left it.
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def get_flag(self, flag_id: str) -> CircumventionFlagDB:
        flag = self.db.query(CircumventionFlagDB).filter(CircumventionFlagDB.id == flag_id).first()
        if not flag:
            raise NotFoundError(f"Circumvention flag {flag_id} not found")
        return flag

    def transition(
        self,
        flag_id: str,
        action: Union[FlagAction, str],
        actor: OperatorContext,
        expected_status: Optional[Union[FlagStatus, str]] = None,
        resolution_notes: Optional[str] = None,
        updates: Optional[Dict[str, Any]] = None,
        extra_criteria: tuple = (),
        commit: bool = True,
    ) -> CircumventionFlagDB:
        """
        Move a flag along one edge of the transition table.

        expected_status defaults to the status as currently read. updates and
        extra_criteria let the invoice issuer write its fields and guard on its
        claim in the same conditional UPDATE.

        Raises:
            NotFoundError: no such flag
            InvalidTransitionError: (status, action) is not in TRANSITIONS, or
                its precondition does not hold
            ValidationError: notes missing where the target state requires them
            ConflictError: the flag's status changed since expected_status
                or an invoice issuer holds a live claim on the flag
        """
        action = FlagAction(action)
        flag = self.get_flag(flag_id)
        current = FlagStatus(flag.status)
        expected = FlagStatus(expected_status) if expected_status else current

        if expected != current:
            raise ConflictError(
                f"Flag {flag_id} is {current.value}, expected {expected.value}",
                current_status=current.value,
            )

        rule = TRANSITIONS.get((expected, action))
        if rule is None:
            raise InvalidTransitionError(expected.value, action.value)

        notes = (resolution_notes or "").strip() or None
        if rule["requires_notes"] and not notes:
            raise ValidationError(f"Resolution notes are required to move a flag to {rule['to'].value}")

        if rule["requires_fee"] and not (flag.estimated_fee_owed and flag.estimated_fee_owed > 0):
            raise InvalidTransitionError(expected.value, action.value, "estimated fee owed must be greater than 0")

        to_status = rule["to"]
        now = datetime.utcnow()
        values: Dict[str, Any] = {"status": to_status, "updated_at": now}
        criteria = tuple(extra_criteria)
        if action not in SYSTEM_ONLY_ACTIONS:
            if invoice_in_flight(flag, now):
                raise ConflictError(
                    f"Flag {flag_id} has an invoice in flight; retry once it is recorded",
                    current_status=current.value,
                )
            criteria += (
                or_(
                    CircumventionFlagDB.invoice_pending_since.is_(None),
                    CircumventionFlagDB.invoice_pending_since < claim_stale_before(now),
                ),
            )
            values["invoice_pending_since"] = None

        if notes:
            values["resolution_notes"] = notes
        if is_terminal(to_status):
            values["resolved_at"] = now
            values["resolution"] = rule.get("resolution")
        if to_status == FlagStatus.PAID:
            values["invoice_paid_at"] = now
        values.update(updates or {})

        rows = self.db.query(CircumventionFlagDB).filter(
            CircumventionFlagDB.id == flag_id,
            CircumventionFlagDB.status == expected,
            *criteria,
        ).update(values, synchronize_session=False)

        if rows == 0:
            self.db.rollback()
            latest = self.db.query(CircumventionFlagDB.status).filter(CircumventionFlagDB.id == flag_id).scalar()
            latest_value = latest.value if latest is not None else None
            raise ConflictError(
                f"Flag {flag_id} changed concurrently (now {latest_value}); re-fetch and retry",
                current_status=latest_value,
            )

        record_flag_event(
            self.db,
            flag_id,
            event=action.value,
            actor=actor,
            from_status=expected,
            to_status=to_status,
            notes=notes,
            metadata={"description": rule["description"], **_json_safe(updates or {})},
        )

        if commit:
            self.db.commit()
        self.db.expire(flag)

        logger.info(f"Flag {flag_id}: {expected.value} -> {to_status.value} ({action.value}) by {actor.label}")
        return flag

    # =========================================================================
    # NON-STATUS MUTATIONS
    # =========================================================================

    def update_notes(self, flag_id: str, resolution_notes: Optional[str], actor: OperatorContext) -> CircumventionFlagDB:
        """Replace a flag's resolution notes. Allowed in any state."""
        flag = self.get_flag(flag_id)
        previous = flag.resolution_notes
        flag.resolution_notes = (resolution_notes or "").strip() or None
        flag.updated_at = datetime.utcnow()

        record_flag_event(
            self.db,
            flag.id,
            event="notes_updated",
            actor=actor,
            notes=flag.resolution_notes,
            metadata={"previous_notes": previous},
        )
        self.db.commit()
        return flag

    def recalculate_fee(
        self,
        flag_id: str,
        estimated_salary,
        actor: OperatorContext,
        fee_percentage=None,
        commit: bool = True,
    ) -> CircumventionFlagDB:
        """
        Set a new salary and/or percentage and recompute the fee owed.

        A missing percentage keeps the flag's current one (or the default).
        Rejected once the flag is terminal. With commit=False the caller
        commits, so a status change can share the transaction.
        """
        flag = self.get_flag(flag_id)
        observed = FlagStatus(flag.status)
        if is_terminal(observed):
            raise ValidationError(f"Fee cannot be changed on a {observed.value} flag")

        if fee_percentage is None:
            fee_percentage = flag.fee_percentage if flag.fee_percentage is not None else DEFAULT_FEE_PERCENTAGE

        fee_owed = fee_calculator.recalculate(estimated_salary, fee_percentage)
        salary = fee_calculator.to_decimal(estimated_salary, "estimated_salary")
        percentage = fee_calculator.to_decimal(fee_percentage, "fee_percentage")
        previous = {
            "estimated_salary": _money(flag.estimated_salary),
            "fee_percentage": _money(flag.fee_percentage),
            "estimated_fee_owed": _money(flag.estimated_fee_owed),
        }

        rows = self.db.query(CircumventionFlagDB).filter(
            CircumventionFlagDB.id == flag_id,
            CircumventionFlagDB.status == observed,
        ).update({
            "estimated_salary": salary,
            "fee_percentage": percentage,
            "estimated_fee_owed": fee_owed,
            "updated_at": datetime.utcnow(),
        }, synchronize_session=False)

        if rows == 0:
            self.db.rollback()
            raise ConflictError(f"Flag {flag_id} changed concurrently; re-fetch and retry")

        record_flag_event(
            self.db,
            flag_id,
            event="fee_recalculated",
            actor=actor,
            metadata={
                "previous": previous,
                "estimated_salary": str(salary),
                "fee_percentage": str(percentage),
                "estimated_fee_owed": str(fee_owed),
            },
        )
        if commit:
            self.db.commit()
        self.db.expire(flag)

        logger.info(f"Flag {flag_id}: fee recalculated to {fee_owed} by {actor.label}")
        return flag


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _json_safe(values: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, value in values.items():
        if isinstance(value, (Decimal, datetime)):
            result[key] = value.isoformat() if isinstance(value, datetime) else str(value)
        elif isinstance(value, Enum):
            result[key] = value.value
        else:
            result[key] = value
    return result
