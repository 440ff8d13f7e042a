"""
Check-in Review

Operator bookkeeping on a check-in: review notes, the flagged-for-review
marker and the reviewed stamp. Response fields are never touched here.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models.db_models import CheckInDB
from ...models.monitoring import OperatorContext
from ..errors import NotFoundError


logger = logging.getLogger(__name__)


class CheckInReview:

    def __init__(self, db_session: Session):
        self.db = db_session

    def update(
        self,
        check_in_id: str,
        actor: OperatorContext,
        review_notes: Optional[str] = None,
        flagged_for_review: Optional[bool] = None,
        mark_reviewed: bool = False,
    ) -> CheckInDB:
        """Apply whichever review fields were given."""
        check_in = self.db.query(CheckInDB).filter(CheckInDB.id == check_in_id).first()
        if not check_in:
            raise NotFoundError(f"Check-in {check_in_id} not found")

        now = datetime.utcnow()
        if review_notes is not None:
            check_in.review_notes = review_notes.strip() or None
        if flagged_for_review is not None:
            check_in.flagged_for_review = flagged_for_review
        if mark_reviewed:
            check_in.reviewed_at = now
            check_in.reviewed_by = actor.label
        check_in.updated_at = now

        self.db.commit()
        logger.info(f"Check-in {check_in_id} review updated by {actor.label}")
        return check_in
