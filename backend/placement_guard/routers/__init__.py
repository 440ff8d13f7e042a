"""Placement Guard - API Routers"""
from .check_ins import router as check_ins_router
from .circumvention import router as circumvention_router
from .introductions import router as introductions_router
from .check_in_responses import router as check_in_responses_router
from .scheduler import router as scheduler_router

__all__ = [
    "check_ins_router",
    "circumvention_router",
    "introductions_router",
    "check_in_responses_router",
    "scheduler_router",
]
