"""
Placement Guard - Collaborators & Background Scheduler

Process-wide collaborator clients (used as FastAPI dependencies so tests
can override them) and the timed check-in loop started by the app lifespan.
"""
import asyncio
import logging
from functools import lru_cache
from typing import Any, Dict

from .config import CHECK_IN_SCHEDULER_INTERVAL_SECONDS
from .database import SessionLocal
from .services.collaborators import HttpBillingClient, HttpMailClient, OpenAIResponseClassifier
from .services.monitoring import CheckInScheduler


logger = logging.getLogger(__name__)


@lru_cache()
def get_mail_client() -> HttpMailClient:
    return HttpMailClient()


@lru_cache()
def get_classifier() -> OpenAIResponseClassifier:
    return OpenAIResponseClassifier()


@lru_cache()
def get_billing_client() -> HttpBillingClient:
    return HttpBillingClient()


def run_scheduled_check_ins() -> Dict[str, Any]:
    """One scheduler pass with its own session. Runs in a worker thread."""
    db = SessionLocal()
    try:
        return CheckInScheduler(db, get_mail_client()).run()
    finally:
        db.close()


async def check_in_scheduler_loop(interval_seconds: int = CHECK_IN_SCHEDULER_INTERVAL_SECONDS):
    """Run the check-in scheduler every interval until cancelled."""
    logger.info(f"Check-in scheduler started, interval {interval_seconds}s")
    while True:
        try:
            result = await asyncio.to_thread(run_scheduled_check_ins)
            if result["errors"]:
                logger.warning(f"Scheduled check-in run finished with {result['errors']} errors")
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled check-in run failed")
        await asyncio.sleep(interval_seconds)
