"""
Tests for candidate self-service check-in responses.
"""
from datetime import datetime

import pytest

from placement_guard.models.db_models import (
    CheckInResponseType, CircumventionFlagDB, DetectionMethod, RiskLevel,
)
from placement_guard.services.errors import ConflictError, NotFoundError, ValidationError
from placement_guard.services.monitoring import STATUS_OPTIONS, SelfServiceResponses


# Check-in #1 for an introduction on 2025-01-01 is sent 2025-01-31
NOW = datetime(2025, 2, 5, 12, 0, 0)


def _flags(db_session, introduction):
    return db_session.query(CircumventionFlagDB).filter(
        CircumventionFlagDB.introduction_id == introduction.id
    ).all()


class TestGetForm:

    def test_pending_form(self, db_session, make_introduction, make_check_in):
        check_in = make_check_in(make_introduction())

        form = SelfServiceResponses(db_session).get_form(check_in.response_token, now=NOW)

        assert form["check_in"]["status"] == "pending"
        assert form["check_in"]["candidate_first_name"] == "Jane"
        assert form["check_in"]["employer_name"] == "Acme Corp"
        assert [o["id"] for o in form["status_options"]] == list(STATUS_OPTIONS)

    def test_expired_link(self, db_session, make_introduction, make_check_in):
        check_in = make_check_in(make_introduction())

        form = SelfServiceResponses(db_session).get_form(check_in.response_token, now=datetime(2025, 6, 1))

        assert form["check_in"]["status"] == "expired"

    def test_unknown_token(self, db_session):
        with pytest.raises(NotFoundError):
            SelfServiceResponses(db_session).get_form("nope", now=NOW)

    def test_unsent_check_in_is_not_exposed(self, db_session, make_introduction, make_check_in):
        check_in = make_check_in(make_introduction(), sent_at=None)

        with pytest.raises(NotFoundError):
            SelfServiceResponses(db_session).get_form(check_in.response_token, now=NOW)


class TestSubmit:

    def test_hired_there_opens_flag(self, db_session, make_introduction, make_check_in):
        introduction = make_introduction(job_salary_min=100000, job_salary_max=120000)
        check_in = make_check_in(introduction)

        result = SelfServiceResponses(db_session).submit(
            check_in.response_token,
            "hired_there",
            start_date="2025-02-01",
            role_title="Backend Engineer",
            now=NOW,
        )

        assert result["risk_level"] == "HIGH"
        assert result["flag_id"] is not None

        db_session.refresh(check_in)
        assert check_in.response_type == CheckInResponseType.SELF_SERVICE
        assert check_in.responded_at == NOW
        assert check_in.risk_level == RiskLevel.HIGH
        assert check_in.flagged_for_review is True
        assert "Start date: 2025-02-01" in check_in.response_raw

        flags = _flags(db_session, introduction)
        assert len(flags) == 1
        assert flags[0].detection_method == DetectionMethod.CANDIDATE_SELF_REPORT
        assert flags[0].evidence[0]["startDate"] == "2025-02-01"
        assert flags[0].evidence[0]["recordedBy"] == introduction.candidate_id

    def test_reported_salary_sets_fee(self, db_session, make_introduction, make_check_in):
        introduction = make_introduction()
        check_in = make_check_in(introduction)

        SelfServiceResponses(db_session).submit(check_in.response_token, "hired_there", salary="150000", now=NOW)

        assert _flags(db_session, introduction)[0].estimated_fee_owed == 27000

    @pytest.mark.parametrize("status, risk_level", [
        ("still_looking", RiskLevel.LOW),
        ("interviewing", RiskLevel.LOW),
        ("offer", RiskLevel.MEDIUM),
        ("rejected", RiskLevel.CLEAR),
        ("withdrew", RiskLevel.CLEAR),
        ("no_response", RiskLevel.LOW),
    ])
    def test_non_hire_answers_do_not_flag(self, db_session, make_introduction, make_check_in, status, risk_level):
        introduction = make_introduction()
        check_in = make_check_in(introduction)

        result = SelfServiceResponses(db_session).submit(check_in.response_token, status, now=NOW)

        assert result["flag_id"] is None
        db_session.refresh(check_in)
        assert check_in.risk_level == risk_level
        assert check_in.flagged_for_review is False
        assert _flags(db_session, introduction) == []

    def test_hired_elsewhere_at_introduced_employer_flags(self, db_session, make_introduction, make_check_in):
        """Candidate picked "hired elsewhere" but named the employer we introduced them to."""
        introduction = make_introduction(employer_name="Acme Corp")
        check_in = make_check_in(introduction)

        result = SelfServiceResponses(db_session).submit(
            check_in.response_token, "hired_elsewhere", company_name="ACME Corporation", now=NOW
        )

        assert result["status"] == "hired_there"
        assert result["flag_id"] is not None

    def test_hired_elsewhere_at_other_company(self, db_session, make_introduction, make_check_in):
        introduction = make_introduction(employer_name="Acme Corp")
        check_in = make_check_in(introduction)

        result = SelfServiceResponses(db_session).submit(
            check_in.response_token, "hired_elsewhere", company_name="Globex", now=NOW
        )

        assert result["status"] == "hired_elsewhere"
        assert result["risk_level"] == "CLEAR"
        assert result["flag_id"] is None

    def test_second_submission_conflicts(self, db_session, make_introduction, make_check_in):
        check_in = make_check_in(make_introduction())
        responses = SelfServiceResponses(db_session)

        responses.submit(check_in.response_token, "still_looking", now=NOW)

        with pytest.raises(ConflictError):
            responses.submit(check_in.response_token, "hired_there", now=NOW)

        db_session.refresh(check_in)
        assert check_in.risk_level == RiskLevel.LOW

    def test_expired_link_rejected(self, db_session, make_introduction, make_check_in):
        check_in = make_check_in(make_introduction())

        with pytest.raises(ConflictError):
            SelfServiceResponses(db_session).submit(check_in.response_token, "still_looking", now=datetime(2025, 6, 1))

    def test_unknown_status(self, db_session, make_introduction, make_check_in):
        check_in = make_check_in(make_introduction())

        with pytest.raises(ValidationError):
            SelfServiceResponses(db_session).submit(check_in.response_token, "retired", now=NOW)

    def test_bad_salary(self, db_session, make_introduction, make_check_in):
        check_in = make_check_in(make_introduction())

        with pytest.raises(ValidationError):
            SelfServiceResponses(db_session).submit(check_in.response_token, "hired_there", salary="lots", now=NOW)


class TestConcurrentFlagCreation:

    def test_submission_retries_and_appends(self, db_session, make_introduction, make_check_in, make_flag, miss_active_flag_once):
        introduction = make_introduction()
        existing = make_flag(introduction)
        check_in = make_check_in(introduction)

        result = SelfServiceResponses(db_session).submit(check_in.response_token, "hired_there", now=NOW)

        assert result["flag_id"] == existing.id
        assert len(miss_active_flag_once) == 2

        flags = _flags(db_session, introduction)
        assert len(flags) == 1
        assert flags[0].evidence[0]["detectionMethod"] == "CANDIDATE_SELF_REPORT"
        db_session.refresh(check_in)
        assert check_in.responded_at == NOW
