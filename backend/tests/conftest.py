"""
Shared fixtures: an in-memory SQLite session per test and mocked
collaborators (mail, classifier, billing).
"""
import os

# Must be set before placement_guard is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CHECK_IN_SCHEDULER_ENABLED"] = "false"

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from placement_guard.database import Base
from placement_guard.models import db_models  # noqa: F401
from placement_guard.models.db_models import (
    CheckInDB, CircumventionFlagDB, DetectionMethod, FlagStatus, IntroductionDB, IntroductionStatus,
)
from placement_guard.models.monitoring import OperatorContext
from placement_guard.services.collaborators.mail import DeliveryStatus
from placement_guard.services.monitoring import FlagGenerator


INTRODUCED_AT = datetime(2025, 1, 1, 9, 0, 0)


@pytest.fixture
def db_session():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def operator():
    return OperatorContext(actor_id="op-1", email="ops@example.com")


@pytest.fixture
def mail_client():
    client = MagicMock()
    client.send.return_value = DeliveryStatus.ACCEPTED
    return client


@pytest.fixture
def classifier():
    return MagicMock()


@pytest.fixture
def billing_client():
    client = MagicMock()
    client.issue.return_value = "INV-1001"
    return client


@pytest.fixture
def make_introduction(db_session):
    """Factory for committed introductions."""
    def _make(
        introduced_at: datetime = INTRODUCED_AT,
        employer_name: str = "Acme Corp",
        candidate_name: str = "Jane Doe",
        candidate_email: str = "jane@example.com",
        job_salary_min=None,
        job_salary_max=None,
    ) -> IntroductionDB:
        introduction = IntroductionDB(
            id=str(uuid4()),
            candidate_id=str(uuid4()),
            candidate_name=candidate_name,
            candidate_email=candidate_email,
            employer_id=str(uuid4()),
            employer_name=employer_name,
            employer_email="billing@acme.example",
            job_id=str(uuid4()),
            job_title="Backend Engineer",
            job_salary_min=job_salary_min,
            job_salary_max=job_salary_max,
            introduced_at=introduced_at,
            protection_expiry=introduced_at + timedelta(days=365),
            status=IntroductionStatus.INTRODUCED,
        )
        db_session.add(introduction)
        db_session.commit()
        return introduction

    return _make


@pytest.fixture
def make_check_in(db_session):
    """Factory for committed check-ins, sent unless sent_at=None is passed."""
    def _make(introduction: IntroductionDB, number: int = 1, sent_at="default") -> CheckInDB:
        scheduled_for = introduction.introduced_at + timedelta(days={1: 30, 2: 60, 3: 90, 4: 180, 5: 365}[number])
        check_in = CheckInDB(
            id=str(uuid4()),
            introduction_id=introduction.id,
            check_in_number=number,
            scheduled_for=scheduled_for,
            sent_at=scheduled_for if sent_at == "default" else sent_at,
            response_token=uuid4().hex,
            send_attempts=1,
            flagged_for_review=False,
        )
        db_session.add(check_in)
        db_session.commit()
        return check_in

    return _make


@pytest.fixture
def make_flag(db_session):
    """Factory for committed flags with a fee already calculated."""
    def _make(
        introduction: IntroductionDB,
        status: FlagStatus = FlagStatus.OPEN,
        estimated_salary=Decimal("150000"),
        fee_percentage=Decimal("18"),
        estimated_fee_owed=Decimal("27000"),
    ) -> CircumventionFlagDB:
        flag = CircumventionFlagDB(
            id=str(uuid4()),
            introduction_id=introduction.id,
            status=status,
            detected_at=datetime.utcnow(),
            detection_method=DetectionMethod.MANUAL_REPORT,
            evidence=[],
            estimated_salary=estimated_salary,
            fee_percentage=fee_percentage,
            estimated_fee_owed=estimated_fee_owed,
        )
        db_session.add(flag)
        db_session.commit()
        return flag

    return _make


@pytest.fixture
def miss_active_flag_once():
    """
    Make the first active-flag lookup come back empty, as if another writer
    opened the flag between the lookup and the insert. Yields the lookups made.
    """
    real_lookup = FlagGenerator.get_active_flag
    lookups = []

    def lookup(self, introduction_id, for_update=False):
        lookups.append(introduction_id)
        if len(lookups) == 1:
            return None
        return real_lookup(self, introduction_id, for_update)

    with patch.object(FlagGenerator, "get_active_flag", new=lookup):
        yield lookups
