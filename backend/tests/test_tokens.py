from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

import config

from errors import InvalidStateError, TokenAlreadyUsed, TokenExpired, TokenNotFound
from models import Employee
from recorder import finalize_response, upsert_response
from schemas import SurveyCreate
from surveys import create_survey
from tokens import find_token, issue_token, mark_token_used, require_valid_token, validate_token

NOW = datetime(2024, 5, 20, tzinfo=timezone.utc)


def _survey(db, end=datetime(2024, 6, 1, tzinfo=timezone.utc)):
    payload = SurveyCreate(
        title="Token Survey",
        questions=[{"id": "q1", "text": "How was your week?"}],
        schedule={"start_date": datetime(2024, 5, 1, tzinfo=timezone.utc), "end_date": end},
    )
    survey = create_survey(db, 1, payload, now=NOW)
    emp = Employee(store_id=1, name="Alex", email="alex@example.com")
    db.add(emp)
    db.flush()
    return survey, emp

def test_issue_token_sets_expiry_and_is_unique(db):
    survey, emp = _survey(db)
    other = Employee(store_id=1, name="Sam")
    db.add(other)
    db.flush()

    t1 = issue_token(survey, emp.id, NOW)
    t2 = issue_token(survey, other.id, NOW)
    assert t1 != t2
    assert len(t1) >= 32
    assert [t.token for t in survey.tokens] == [t1, t2]
    assert survey.tokens[0].expires_at == datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert survey.tokens[0].used is False

def test_issue_token_is_one_per_respondent(db):
    survey, emp = _survey(db)
    assert issue_token(survey, emp.id, NOW) == issue_token(survey, emp.id, NOW)
    assert len(survey.tokens) == 1

def test_issue_token_rejects_closed_survey(db):
    survey, emp = _survey(db)
    survey.status = "closed"
    with pytest.raises(InvalidStateError):
        issue_token(survey, emp.id, NOW)

def test_validate_token_reasons_in_order(db):
    survey, emp = _survey(db)
    token = issue_token(survey, emp.id, NOW)

    assert validate_token(survey, "nope", NOW).reason == "TokenNotFound"
    ok = validate_token(survey, token, NOW)
    assert ok.valid and ok.reason is None

    # used wins over expired
    mark_token_used(survey, token, NOW)
    late = datetime(2024, 7, 1, tzinfo=timezone.utc)
    assert validate_token(survey, token, late).reason == "TokenAlreadyUsed"

def test_token_expired_day_after_end_date(db):
    survey, emp = _survey(db, end=datetime(2024, 6, 1, tzinfo=timezone.utc))
    token = issue_token(survey, emp.id, NOW)

    result = validate_token(survey, token, datetime(2024, 6, 2, tzinfo=timezone.utc))
    assert result.valid is False
    assert result.reason == "TokenExpired"
    # the end instant itself is still valid
    assert validate_token(survey, token, datetime(2024, 6, 1, tzinfo=timezone.utc)).valid

def test_require_valid_token_raises_matching_error(db):
    survey, emp = _survey(db)
    token = issue_token(survey, emp.id, NOW)
    with pytest.raises(TokenNotFound):
        require_valid_token(survey, "missing", NOW)
    with pytest.raises(TokenExpired):
        require_valid_token(survey, token, datetime(2025, 1, 1, tzinfo=timezone.utc))
    mark_token_used(survey, token, NOW)
    with pytest.raises(TokenAlreadyUsed):
        require_valid_token(survey, token, NOW)

def test_token_used_only_after_finalize(db):
    survey, emp = _survey(db)
    token = issue_token(survey, emp.id, NOW)
    survey.status = "active"
    db.flush()

    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 7}], now=NOW)
    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 8}], now=NOW)
    assert validate_token(survey, token, NOW).valid

    finalize_response(db, survey, token, NOW)
    assert validate_token(survey, token, NOW).reason == "TokenAlreadyUsed"

def test_find_token_across_surveys(db):
    survey, emp = _survey(db)
    token = issue_token(survey, emp.id, NOW)
    db.flush()
    assert find_token(db, token).survey_id == survey.id
    assert find_token(db, "unknown") is None

def test_find_token_rolls_back_before_retrying(monkeypatch):
    monkeypatch.setattr(config, "RETRY_DELAY_SECONDS", 0)
    row = object()

    class Found:
        def scalar_one_or_none(self):
            return row

    class DroppedSession:
        def __init__(self):
            self.calls = 0
            self.rollbacks = 0

        def execute(self, statement):
            self.calls += 1
            if self.calls == 1:
                raise OperationalError("SELECT", {}, Exception("connection lost"))
            return Found()

        def rollback(self):
            self.rollbacks += 1

    session = DroppedSession()
    assert find_token(session, "abc") is row
    assert session.calls == 2
    assert session.rollbacks == 1
