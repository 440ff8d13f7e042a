"""
Monitoring Stats

Dashboard roll-ups for the check-in and circumvention admin screens.
Revenue figures are Decimal sums serialized as strings.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import (
    ACTIVE_FLAG_STATUSES, CheckInDB, CircumventionFlagDB, FlagStatus, IntroductionDB, RiskLevel,
)
from .check_in_scheduler import CHECK_IN_LABELS, FINAL_CHECK_IN_NUMBER, MILESTONES

PENDING_ATTENTION_DAYS = 7
NO_REPLY_AFTER_DAYS = 14
RECENT_DAYS = 30
UPCOMING_DAYS = 7

ACTION_REQUIRED_STATUSES = ACTIVE_FLAG_STATUSES + (FlagStatus.DISPUTED,)


def _rate(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 1) if whole else 0.0


class MonitoringStats:
    """Counts and revenue roll-ups for check-ins and circumvention flags."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _count(self, *criteria) -> int:
        return self.db.query(func.count(CheckInDB.id)).filter(*criteria).scalar() or 0

    # =========================================================================
    # CHECK-INS
    # =========================================================================

    def check_in_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        sent = CheckInDB.sent_at.isnot(None)
        responded = CheckInDB.responded_at.isnot(None)
        unanswered = CheckInDB.responded_at.is_(None)
        recent = CheckInDB.sent_at >= now - timedelta(days=RECENT_DAYS)

        total_sent = self._count(sent)
        total_responded = self._count(responded)
        recent_sent = self._count(sent, recent)
        recent_responded = self._count(sent, recent, responded)

        by_number = []
        for number in sorted(CHECK_IN_LABELS):
            number_sent = self._count(sent, CheckInDB.check_in_number == number)
            number_responded = self._count(responded, CheckInDB.check_in_number == number)
            by_number.append({
                "check_in_number": number,
                "label": CHECK_IN_LABELS[number],
                "sent": number_sent,
                "responded": number_responded,
                "response_rate": _rate(number_responded, number_sent),
            })

        return {
            "overview": {
                "sent": total_sent,
                "responded": total_responded,
                "pending": self._count(sent, unanswered),
                "no_reply": self._count(
                    sent, unanswered, CheckInDB.sent_at < now - timedelta(days=NO_REPLY_AFTER_DAYS)
                ),
                "flagged": self._count(CheckInDB.flagged_for_review.is_(True)),
            },
            "last_30_days": {
                "sent": recent_sent,
                "responded": recent_responded,
                "response_rate": _rate(recent_responded, recent_sent),
            },
            "risk": {
                "high": self._count(CheckInDB.risk_level == RiskLevel.HIGH),
                "medium": self._count(CheckInDB.risk_level == RiskLevel.MEDIUM),
            },
            "needs_attention": {
                "pending_older_than_7_days": self._count(
                    sent, unanswered, CheckInDB.sent_at < now - timedelta(days=PENDING_ATTENTION_DAYS)
                ),
                "flagged_for_review": self._count(
                    CheckInDB.flagged_for_review.is_(True), CheckInDB.reviewed_at.is_(None)
                ),
                "upcoming": self._upcoming_milestones(now),
            },
            "by_check_in_number": by_number,
            "response_rate": {
                "overall": _rate(total_responded, total_sent),
                "last_30_days": _rate(recent_responded, recent_sent),
            },
        }

    def _upcoming_milestones(self, now: datetime) -> int:
        """Scheduled check-ins that will fall due within the next UPCOMING_DAYS."""
        horizon = now + timedelta(days=UPCOMING_DAYS)
        introduced = self.db.query(IntroductionDB.introduced_at).filter(
            IntroductionDB.protection_expiry > now,
        ).all()

        upcoming = 0
        for (introduced_at,) in introduced:
            for days, number in MILESTONES.items():
                if number == FINAL_CHECK_IN_NUMBER:
                    continue
                if now < introduced_at + timedelta(days=days) <= horizon:
                    upcoming += 1
        return upcoming

    # =========================================================================
    # CIRCUMVENTION
    # =========================================================================

    def circumvention_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()

        counts = dict(
            self.db.query(CircumventionFlagDB.status, func.count(CircumventionFlagDB.id))
            .group_by(CircumventionFlagDB.status)
            .all()
        )
        by_status = {status.value.lower(): counts.get(status, 0) for status in FlagStatus}

        recent_flags = self.db.query(func.count(CircumventionFlagDB.id)).filter(
            CircumventionFlagDB.detected_at >= now - timedelta(days=RECENT_DAYS)
        ).scalar() or 0

        methods = (
            self.db.query(CircumventionFlagDB.detection_method, func.count(CircumventionFlagDB.id))
            .group_by(CircumventionFlagDB.detection_method)
            .all()
        )

        return {
            "by_status": by_status,
            "total": sum(counts.values()),
            "action_required": sum(counts.get(status, 0) for status in ACTION_REQUIRED_STATUSES),
            "recent_flags": recent_flags,
            "revenue": {
                "potential": str(self._sum(CircumventionFlagDB.estimated_fee_owed, ACTIVE_FLAG_STATUSES)),
                "pending": str(self._sum(
                    CircumventionFlagDB.invoice_amount, (FlagStatus.INVOICE_SENT, FlagStatus.DISPUTED)
                )),
                "collected": str(self._sum(CircumventionFlagDB.invoice_amount, (FlagStatus.PAID,))),
            },
            "detection_methods": [
                {"method": method.value, "count": count}
                for method, count in sorted(methods, key=lambda row: row[1], reverse=True)
            ],
        }

    def _sum(self, column, statuses) -> Decimal:
        total = self.db.query(func.sum(column)).filter(CircumventionFlagDB.status.in_(statuses)).scalar()
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))
