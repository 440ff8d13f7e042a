"""Placement Guard - Data Models"""
from .db_models import (
    # Enums
    IntroductionStatus, CheckInResponseType, RiskLevel, FlagStatus, DetectionMethod, ActorType,
    ACTIVE_FLAG_STATUSES,
    # Tables
    IntroductionDB, CheckInDB, CircumventionFlagDB, FlagEventDB,
)
from .monitoring import (
    EmploymentStatus, ParsedResponse, ClassificationContext,
    ClassifierEvidence, SelfReportEvidence, ManualReportEvidence, Evidence,
    load_evidence, dump_evidence,
    OperatorContext,
)

__all__ = [
    "IntroductionStatus", "CheckInResponseType", "RiskLevel", "FlagStatus", "DetectionMethod", "ActorType",
    "ACTIVE_FLAG_STATUSES",
    "IntroductionDB", "CheckInDB", "CircumventionFlagDB", "FlagEventDB",
    "EmploymentStatus", "ParsedResponse", "ClassificationContext",
    "ClassifierEvidence", "SelfReportEvidence", "ManualReportEvidence", "Evidence",
    "load_evidence", "dump_evidence",
    "OperatorContext",
]
