"""
Placement Guard - Monitoring Value Models

Structured shapes that flow between the classifier, the flag generator and
the flag audit trail:

- ParsedResponse: validated classifier output for one check-in reply
- Evidence: tagged union of flag evidence entries, keyed by detection_method
- OperatorContext: explicit attribution passed into every mutating call
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .db_models import ActorType, RiskLevel


# =============================================================================
# CLASSIFIER OUTPUT
# =============================================================================

class EmploymentStatus(str, Enum):
    """Candidate employment status at the introduced employer, as read from a reply."""
    STILL_EMPLOYED = "STILL_EMPLOYED"
    LEFT_JOB = "LEFT_JOB"
    NOT_HIRED = "NOT_HIRED"
    UNCLEAR = "UNCLEAR"


class ParsedResponse(BaseModel):
    """Structured risk assessment of one check-in reply."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: EmploymentStatus
    risk_level: RiskLevel
    confidence: float = Field(..., ge=0.0, le=1.0)
    company_mentioned: Optional[str] = None
    hire_date: Optional[str] = None
    separation_date: Optional[str] = None
    summary: str = ""
    suggested_action: str = ""

    def to_record(self) -> dict:
        """JSON-safe dict as persisted on the check-in and in evidence."""
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class ClassificationContext:
    """Names the classifier needs to interpret a reply."""
    candidate_name: str
    employer_name: str
    job_title: Optional[str]


# =============================================================================
# EVIDENCE (TAGGED UNION)
# =============================================================================

class _EvidenceBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    recorded_at: datetime
    recorded_by: Optional[str] = None


class ClassifierEvidence(_EvidenceBase):
    """A classified check-in reply that named the introduced employer."""
    detection_method: Literal["CHECK_IN_RESPONSE"] = "CHECK_IN_RESPONSE"
    check_in_id: str
    check_in_number: int
    parsed: ParsedResponse
    raw_excerpt: Optional[str] = None


class SelfReportEvidence(_EvidenceBase):
    """The candidate told us through the check-in link that they were hired there."""
    detection_method: Literal["CANDIDATE_SELF_REPORT"] = "CANDIDATE_SELF_REPORT"
    check_in_id: str
    check_in_number: int
    reported_status: str
    start_date: Optional[str] = None
    job_title: Optional[str] = None
    reported_salary: Optional[Decimal] = None


class ManualReportEvidence(_EvidenceBase):
    """Evidence an operator found elsewhere (public profile, tip, employer disclosure)."""
    detection_method: Literal["MANUAL_REPORT"] = "MANUAL_REPORT"
    description: str
    source: Optional[str] = None
    source_url: Optional[str] = None
    reported_salary: Optional[Decimal] = None


Evidence = Annotated[
    Union[ClassifierEvidence, SelfReportEvidence, ManualReportEvidence],
    Field(discriminator="detection_method"),
]

EVIDENCE_LIST = TypeAdapter(List[Evidence])


def load_evidence(raw: Optional[list]) -> List[Evidence]:
    """Parse a flag's stored evidence column back into typed entries."""
    return EVIDENCE_LIST.validate_python(raw or [])


def dump_evidence(entries: List[Evidence]) -> list:
    """Serialize typed evidence entries for the JSON column."""
    return EVIDENCE_LIST.dump_python(entries, mode="json", by_alias=True)


# =============================================================================
# ATTRIBUTION
# =============================================================================

@dataclass(frozen=True)
class OperatorContext:
    """Who is performing a mutation. Passed explicitly; never read from request globals."""
    actor_id: Optional[str]
    actor_type: ActorType = ActorType.OPERATOR
    email: Optional[str] = None

    @classmethod
    def system(cls, name: str = "check-in-scheduler") -> "OperatorContext":
        return cls(actor_id=name, actor_type=ActorType.SYSTEM)

    @classmethod
    def candidate(cls, candidate_id: str) -> "OperatorContext":
        return cls(actor_id=candidate_id, actor_type=ActorType.CANDIDATE)

    @property
    def label(self) -> str:
        return self.email or self.actor_id or self.actor_type.value
