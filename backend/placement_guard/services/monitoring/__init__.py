"""
Placement Guard - Check-in & Circumvention Monitoring

Check-in scheduling, reply classification, circumvention flags and fee
recovery for introduced candidates.
"""
from . import fee_calculator
from .company_matcher import companies_match
from .check_in_scheduler import CheckInScheduler, MILESTONES, CHECK_IN_LABELS
from .response_classifier import ResponseClassifierAdapter
from .flag_generator import FlagGenerator
from .flag_state_machine import FlagStateMachine, FlagAction, TRANSITIONS
from .invoice_issuer import InvoiceIssuer
from .self_service import SelfServiceResponses, STATUS_OPTIONS
from .introductions import IntroductionRegistry
from .check_in_review import CheckInReview
from .queries import CheckInQueries, FlagQueries
from .monitoring_stats import MonitoringStats

__all__ = [
    "fee_calculator",
    "companies_match",
    "CheckInScheduler",
    "MILESTONES",
    "CHECK_IN_LABELS",
    "ResponseClassifierAdapter",
    "FlagGenerator",
    "FlagStateMachine",
    "FlagAction",
    "TRANSITIONS",
    "InvoiceIssuer",
    "SelfServiceResponses",
    "STATUS_OPTIONS",
    "IntroductionRegistry",
    "CheckInReview",
    "CheckInQueries",
    "FlagQueries",
    "MonitoringStats",
]
