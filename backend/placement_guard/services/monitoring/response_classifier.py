"""
Response Classifier Adapter

Bridges free-form check-in replies and the structured risk model.
Interpretation is the text classifier's job; this adapter owns the
transaction around it:

1. Read the context the classifier needs, then end the read transaction
2. Call the classifier with no transaction open
3. In one transaction: write the parse onto the check-in and, when the
   reply names the introduced employer at HIGH or MEDIUM risk, hand it to
   the flag generator

A failure at any step leaves the check-in and flags exactly as they were.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import CheckInDB, CheckInResponseType, RiskLevel
from ...models.monitoring import (
    ClassificationContext, ClassifierEvidence, OperatorContext, ParsedResponse,
)
from ..collaborators.classifier import TextClassifier
from ..errors import ConflictError, NotFoundError, TransientCollaboratorError, ValidationError
from .company_matcher import companies_match
from .flag_generator import FlagGenerator


logger = logging.getLogger(__name__)

FLAGGING_RISK_LEVELS = (RiskLevel.HIGH, RiskLevel.MEDIUM)
RAW_EXCERPT_LENGTH = 500


def should_flag(parsed: ParsedResponse, employer_name: str) -> bool:
    """HIGH/MEDIUM risk and the company mentioned is the introduced employer."""
    return parsed.risk_level in FLAGGING_RISK_LEVELS and companies_match(parsed.company_mentioned, employer_name)


class ResponseClassifierAdapter:
    """Classifies a check-in reply and records the result."""

    def __init__(self, db_session: Session, classifier: TextClassifier):
        """Initialize with database session and text classifier collaborator."""
        self.db = db_session
        self.classifier = classifier

    def classify_reply(self, check_in_id: str, raw_text: str, actor: OperatorContext) -> Dict[str, Any]:
        """
        Classify (or re-classify) a reply to a check-in.

        Re-classification overwrites the previous parse.

        Raises:
            ValidationError: raw_text missing
            NotFoundError: no such check-in
            TransientCollaboratorError: classifier unreachable or returned a
                malformed result; nothing was written
        """
        if raw_text is None:
            raise ValidationError("raw_text is required")

        check_in = self.db.query(CheckInDB).filter(CheckInDB.id == check_in_id).first()
        if not check_in:
            raise NotFoundError(f"Check-in {check_in_id} not found")

        introduction = check_in.introduction
        context = ClassificationContext(
            candidate_name=introduction.candidate_name,
            employer_name=introduction.employer_name,
            job_title=introduction.job_title,
        )
        # End the read transaction before the slow call
        self.db.commit()

        parsed = self._classify(raw_text, context)

        for attempt in range(2):
            try:
                result = self._persist(check_in_id, raw_text, parsed, actor)
                self.db.commit()
                return result
            except IntegrityError:
                # An active flag was opened concurrently; the retry appends to it
                self.db.rollback()
                logger.info(f"Concurrent flag creation while classifying check-in {check_in_id}, retrying")
            except Exception:
                self.db.rollback()
                raise

        raise ConflictError(f"Could not record classification for check-in {check_in_id}; retry")

    def _classify(self, raw_text: str, context: ClassificationContext) -> ParsedResponse:
        result = self.classifier.classify(raw_text, context)
        if isinstance(result, ParsedResponse):
            return result
        try:
            return ParsedResponse.model_validate(result)
        except PydanticValidationError as e:
            raise TransientCollaboratorError("classifier", f"malformed classification: {e}") from e

    def _persist(
        self,
        check_in_id: str,
        raw_text: str,
        parsed: ParsedResponse,
        actor: OperatorContext,
    ) -> Dict[str, Any]:
        check_in = self.db.query(CheckInDB).filter(CheckInDB.id == check_in_id).first()
        if not check_in:
            raise NotFoundError(f"Check-in {check_in_id} not found")
        introduction = check_in.introduction
        now = datetime.utcnow()

        check_in.response_raw = raw_text
        check_in.response_parsed = parsed.to_record()
        check_in.response_type = CheckInResponseType.EMAIL_REPLY
        check_in.responded_at = now
        check_in.risk_level = parsed.risk_level
        check_in.risk_reason = parsed.summary or parsed.suggested_action or None
        check_in.updated_at = now

        flag_id: Optional[str] = None
        flag_created = False

        if should_flag(parsed, introduction.employer_name):
            check_in.flagged_for_review = True
            evidence = ClassifierEvidence(
                recorded_at=now,
                recorded_by=actor.label,
                check_in_id=check_in.id,
                check_in_number=check_in.check_in_number,
                parsed=parsed,
                raw_excerpt=raw_text[:RAW_EXCERPT_LENGTH],
            )
            flag, flag_created = FlagGenerator(self.db).record_signal(introduction, evidence, actor)
            flag_id = flag.id

        logger.info(
            f"Check-in {check_in_id} classified {parsed.risk_level.value} "
            f"(company={parsed.company_mentioned!r}, flag={flag_id})"
        )

        return {
            "check_in_id": check_in_id,
            "parsed": parsed.to_record(),
            "risk_level": parsed.risk_level.value,
            "flagged_for_review": bool(check_in.flagged_for_review),
            "flag_id": flag_id,
            "flag_created": flag_created,
        }
