"""
Placement Guard - SQLAlchemy ORM Models
PostgreSQL database models for introductions, check-ins and circumvention flags
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
    Boolean, Numeric, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class IntroductionStatus(str, Enum):
    """Where the candidate stands with the introduced employer, as last reported by the platform."""
    INTRODUCED = "INTRODUCED"
    INTERVIEWING = "INTERVIEWING"
    HIRED = "HIRED"
    NOT_HIRED = "NOT_HIRED"
    WITHDRAWN = "WITHDRAWN"


class CheckInResponseType(str, Enum):
    """How a check-in reply reached the engine."""
    EMAIL_REPLY = "EMAIL_REPLY"      # Reply text pasted by an operator and classified
    SELF_SERVICE = "SELF_SERVICE"    # Candidate used the link in the check-in email


class RiskLevel(str, Enum):
    """Classifier severity rating of a check-in reply."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    CLEAR = "CLEAR"


class FlagStatus(str, Enum):
    """States in the circumvention flag state machine."""
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    INVOICE_SENT = "INVOICE_SENT"
    PAID = "PAID"
    DISPUTED = "DISPUTED"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    WROTE_OFF = "WROTE_OFF"


ACTIVE_FLAG_STATUSES = (FlagStatus.OPEN, FlagStatus.INVESTIGATING)


class DetectionMethod(str, Enum):
    """Signal that opened (or added evidence to) a flag."""
    CHECK_IN_RESPONSE = "CHECK_IN_RESPONSE"
    CANDIDATE_SELF_REPORT = "CANDIDATE_SELF_REPORT"
    MANUAL_REPORT = "MANUAL_REPORT"


class ActorType(str, Enum):
    """Actor types for the flag audit log."""
    OPERATOR = "OPERATOR"
    SYSTEM = "SYSTEM"
    CANDIDATE = "CANDIDATE"


# =============================================================================
# INTRODUCTIONS
# =============================================================================

class IntroductionDB(Base):
    """
    A candidate presented to an employer for a job.
    Starts the 365-day fee-protection window. Immutable except status.
    """
    __tablename__ = "introductions"

    id = Column(String(36), primary_key=True)  # UUID

    # Candidate
    candidate_id = Column(String(36), nullable=False, index=True)
    candidate_name = Column(String(255), nullable=False)
    candidate_email = Column(String(255), nullable=False)

    # Employer
    employer_id = Column(String(36), nullable=False, index=True)
    employer_name = Column(String(255), nullable=False)
    employer_email = Column(String(255), nullable=True)

    # Job
    job_id = Column(String(36), nullable=True)
    job_title = Column(String(255), nullable=True)
    job_salary_min = Column(Numeric(12, 2), nullable=True)
    job_salary_max = Column(Numeric(12, 2), nullable=True)

    # Protection window
    introduced_at = Column(DateTime, nullable=False)
    protection_expiry = Column(DateTime, nullable=False, index=True)  # introduced_at + 365 days

    status = Column(SQLEnum(IntroductionStatus), default=IntroductionStatus.INTRODUCED, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    check_ins = relationship(
        "CheckInDB", back_populates="introduction", order_by="CheckInDB.check_in_number"
    )
    flags = relationship("CircumventionFlagDB", back_populates="introduction")


# =============================================================================
# CHECK-INS
# =============================================================================

class CheckInDB(Base):
    """
    Scheduled outreach to the candidate at a fixed day offset.
    Never deleted. sent_at doubles as the dispatch claim.
    """
    __tablename__ = "check_ins"
    __table_args__ = (
        UniqueConstraint("introduction_id", "check_in_number", name="uq_check_in_number_per_introduction"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    introduction_id = Column(String(36), ForeignKey("introductions.id", ondelete="CASCADE"), nullable=False, index=True)

    check_in_number = Column(Integer, nullable=False)  # 1-5
    scheduled_for = Column(DateTime, nullable=False, index=True)

    # Dispatch
    sent_at = Column(DateTime, nullable=True, index=True)
    sent_to = Column(String(255), nullable=True)
    send_attempts = Column(Integer, default=0, nullable=False)
    delivery_confirmed_at = Column(DateTime, nullable=True)
    last_send_error = Column(Text, nullable=True)

    # Self-service link
    response_token = Column(String(64), nullable=False, unique=True, index=True)

    # Response (responded_at and response_type are always written together)
    responded_at = Column(DateTime, nullable=True)
    response_type = Column(SQLEnum(CheckInResponseType), nullable=True)
    response_raw = Column(Text, nullable=True)
    response_parsed = Column(JSON, nullable=True)
    risk_level = Column(SQLEnum(RiskLevel), nullable=True, index=True)
    risk_reason = Column(Text, nullable=True)

    # Review
    flagged_for_review = Column(Boolean, default=False, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(255), nullable=True)
    review_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    introduction = relationship("IntroductionDB", back_populates="check_ins")


# =============================================================================
# CIRCUMVENTION FLAGS
# =============================================================================

class CircumventionFlagDB(Base):
    """
    Case record tracking investigation and fee recovery for a suspected circumvention.
    Status changes go through the flag state machine only.
    """
    __tablename__ = "circumvention_flags"
    __table_args__ = (
        # At most one active (OPEN/INVESTIGATING) flag per introduction
        Index(
            "uq_active_flag_per_introduction",
            "introduction_id",
            unique=True,
            postgresql_where=text("status IN ('OPEN', 'INVESTIGATING')"),
            sqlite_where=text("status IN ('OPEN', 'INVESTIGATING')"),
        ),
    )

    id = Column(String(36), primary_key=True)  # UUID
    introduction_id = Column(String(36), ForeignKey("introductions.id", ondelete="CASCADE"), nullable=False, index=True)

    # State Machine
    status = Column(SQLEnum(FlagStatus), default=FlagStatus.OPEN, nullable=False, index=True)

    # Detection
    detected_at = Column(DateTime, nullable=False)
    detection_method = Column(SQLEnum(DetectionMethod), nullable=False)
    evidence = Column(JSON, nullable=False, default=list)  # List of tagged evidence entries

    # Fee (estimated_fee_owed is always the fee calculator's output for the other two)
    estimated_salary = Column(Numeric(12, 2), nullable=True)
    fee_percentage = Column(Numeric(5, 2), nullable=True)
    estimated_fee_owed = Column(Numeric(12, 2), nullable=True)

    # Invoice
    invoice_pending_since = Column(DateTime, nullable=True)  # Claim held while billing is called
    invoice_number = Column(String(64), nullable=True)
    invoice_sent_at = Column(DateTime, nullable=True)
    invoice_amount = Column(Numeric(12, 2), nullable=True)
    invoice_paid_at = Column(DateTime, nullable=True)

    # Resolution
    resolved_at = Column(DateTime, nullable=True)
    resolution = Column(String(50), nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    introduction = relationship("IntroductionDB", back_populates="flags")
    events = relationship(
        "FlagEventDB", back_populates="flag", cascade="all, delete-orphan", order_by="FlagEventDB.created_at"
    )


class FlagEventDB(Base):
    """
    Immutable log of flag mutations.
    Append-only - records creation, evidence, fee changes and every state change.
    """
    __tablename__ = "flag_events"

    id = Column(String(36), primary_key=True)  # UUID
    flag_id = Column(String(36), ForeignKey("circumvention_flags.id", ondelete="CASCADE"), nullable=False, index=True)

    # What happened
    event = Column(String(50), nullable=False)  # flag_created, evidence_appended, begin_review, ...
    from_status = Column(SQLEnum(FlagStatus), nullable=True)
    to_status = Column(SQLEnum(FlagStatus), nullable=True)
    notes = Column(Text, nullable=True)

    # Who did it
    actor_type = Column(SQLEnum(ActorType), nullable=False)
    actor_id = Column(String(255), nullable=True)

    # Event Metadata (renamed from 'metadata' which is reserved in SQLAlchemy)
    event_metadata = Column(JSON, nullable=True)

    # Timestamps (immutable)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    flag = relationship("CircumventionFlagDB", back_populates="events")
