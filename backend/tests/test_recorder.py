from datetime import datetime, timedelta, timezone

import pytest

from errors import (
    AlreadyCompletedError, IncompleteResponseError, InvalidAnswerError, InvalidStateError, InvalidSurveyError,
    ResponseClosedError, ResponseNotFoundError, TokenAlreadyUsed,
)
from models import Employee, Survey, SurveyQuestion
from recorder import (
    completion_percentage, finalize_response, find_response, rating_bounds, round_half_up, upsert_response,
)
from schemas import SurveyCreate
from surveys import create_survey
from tokens import issue_token

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)

QUESTIONS = [
    {"id": "q1", "text": "Rate your shift", "type": "rating"},
    {"id": "q2", "text": "Rate your manager", "type": "rating", "rating_scale": {"min": 1, "max": 5}},
    {"id": "q3", "text": "Anything else?", "type": "text", "required": False},
    {"id": "q4", "text": "Preferred shift", "type": "multiple_choice", "options": ["Morning", "Evening"]},
]


@pytest.fixture
def active(db):
    payload = SurveyCreate(
        title="Recorder",
        questions=QUESTIONS,
        schedule={"start_date": datetime(2024, 5, 1, tzinfo=timezone.utc),
                  "end_date": datetime(2024, 6, 1, tzinfo=timezone.utc)},
    )
    survey = create_survey(db, 1, payload, now=NOW)
    emp = Employee(store_id=1, name="Jo")
    db.add(emp)
    db.flush()
    token = issue_token(survey, emp.id, NOW)
    survey.status = "active"
    db.flush()
    return survey, token

def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(62.5) == 63
    assert round_half_up(7.25, 1) == 7.3

def test_upsert_creates_response_with_demographics(db, active):
    survey, token = active
    r = upsert_response(db, survey, token,
                        answers=[{"question_id": "q1", "value": 8}],
                        demographics={"department": "Back of House", "experience_level": "1-2 years"},
                        now=NOW)
    assert r.status == "in_progress"
    assert r.department == "Back of House"
    assert r.experience_level == "1-2 years"
    assert r.completion_percentage == 25
    assert r.started_at == NOW
    assert find_response(db, token) is r

def test_upsert_replaces_answer_for_same_question(db, active):
    survey, token = active
    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 3}], now=NOW)
    r = upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 9}], now=NOW)
    assert len(r.answers) == 1
    assert r.answers[0].value == 9

def test_completion_is_non_decreasing(db, active):
    survey, token = active
    seen = []
    for qid, value in [("q1", 5), ("q1", 6), ("q2", 4), ("q3", "fine"), ("q4", "Morning")]:
        r = upsert_response(db, survey, token, answers=[{"question_id": qid, "value": value}], now=NOW)
        seen.append(r.completion_percentage)
    assert seen == sorted(seen)
    assert seen[-1] == 100

def test_empty_values_count_as_skipped(db, active):
    survey, token = active
    r = upsert_response(db, survey, token, answers=[
        {"question_id": "q1", "value": None},
        {"question_id": "q3", "value": ""},
    ], now=NOW)
    assert r.completion_percentage == 0
    assert all(a.skipped for a in r.answers)
    assert completion_percentage(survey, r) == 0

def test_invalid_answers_rejected(db, active):
    survey, token = active
    with pytest.raises(InvalidAnswerError):
        upsert_response(db, survey, token, answers=[{"question_id": "q99", "value": 1}], now=NOW)
    with pytest.raises(InvalidAnswerError):
        upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": "great"}], now=NOW)
    with pytest.raises(InvalidAnswerError):
        upsert_response(db, survey, token, answers=[{"question_id": "q2", "value": 9}], now=NOW)
    with pytest.raises(InvalidAnswerError):
        upsert_response(db, survey, token, answers=[{"question_id": "q4", "value": "Night"}], now=NOW)

def test_numeric_string_ratings_are_stored_as_numbers(db, active):
    survey, token = active
    r = upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": "7"}], now=NOW)
    assert r.answers[0].value == 7

def test_finalize_sets_time_spent_and_consumes_token(db, active):
    survey, token = active
    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 8}], now=NOW)
    done_at = NOW + timedelta(minutes=4, seconds=30)
    r = finalize_response(db, survey, token, done_at)
    assert r.status == "completed"
    assert r.completed_at == done_at
    assert r.time_spent == 270
    assert survey.tokens[0].used is True
    assert survey.tokens[0].used_at == done_at

def test_second_finalize_rejected_and_record_unchanged(db, active):
    survey, token = active
    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 8}], now=NOW)
    first = finalize_response(db, survey, token, NOW + timedelta(minutes=1))
    snapshot = (first.status, first.completed_at, first.time_spent, first.completion_percentage)

    with pytest.raises(AlreadyCompletedError):
        finalize_response(db, survey, token, NOW + timedelta(minutes=5))
    again = find_response(db, token)
    assert (again.status, again.completed_at, again.time_spent, again.completion_percentage) == snapshot

def test_upsert_after_finalize_is_closed(db, active):
    survey, token = active
    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 8}], now=NOW)
    finalize_response(db, survey, token, NOW)
    with pytest.raises(ResponseClosedError):
        upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 1}], now=NOW)
    assert find_response(db, token).answers[0].value == 8

def test_upsert_after_finalize_with_multiple_responses_hits_used_token(db, active):
    survey, token = active
    survey.allow_multiple_responses = True
    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 8}], now=NOW)
    finalize_response(db, survey, token, NOW)
    with pytest.raises(TokenAlreadyUsed):
        upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 1}], now=NOW)

def test_finalize_without_saved_response(db, active):
    survey, token = active
    with pytest.raises(ResponseNotFoundError):
        finalize_response(db, survey, token, NOW)

def test_require_all_questions(db, active):
    survey, token = active
    survey.require_all_questions = True
    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 8}], now=NOW)
    with pytest.raises(IncompleteResponseError):
        finalize_response(db, survey, token, NOW)
    # q3 is optional
    upsert_response(db, survey, token, answers=[
        {"question_id": "q2", "value": 4},
        {"question_id": "q4", "value": ["Evening"]},
    ], now=NOW)
    assert finalize_response(db, survey, token, NOW).completion_percentage == 75

def test_writes_need_active_survey(db, active):
    survey, token = active
    survey.status = "draft"
    with pytest.raises(InvalidStateError):
        upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 8}], now=NOW)

def test_rating_bounds_keep_configured_ends():
    assert rating_bounds(SurveyQuestion(key="a", rating_min=None, rating_max=None)) == (1, 10)
    assert rating_bounds(SurveyQuestion(key="b", rating_min=2, rating_max=5)) == (2, 5)
    assert rating_bounds(SurveyQuestion(key="c", rating_min=0, rating_max=4)) == (0, 4)

def test_rating_scale_must_start_at_one(db):
    payload = SurveyCreate(questions=[{"id": "q1", "text": "Score", "rating_scale": {"min": 0, "max": 10}}])
    with pytest.raises(InvalidSurveyError):
        create_survey(db, 1, payload, now=NOW)

def test_rating_scale_lower_end_enforced(db, active):
    survey, token = active
    survey.question_by_key("q2").rating_min = 2
    with pytest.raises(InvalidAnswerError):
        upsert_response(db, survey, token, answers=[{"question_id": "q2", "value": 1}], now=NOW)
    r = upsert_response(db, survey, token, answers=[{"question_id": "q2", "value": 2}], now=NOW)
    assert r.answers[0].value == 2

def test_concurrent_finalize_consumes_token_once(TestingSessionLocal, db, active):
    survey, token = active
    upsert_response(db, survey, token, answers=[{"question_id": "q1", "value": 8}], now=NOW)
    db.commit()
    survey_id = survey.id

    first, second = TestingSessionLocal(), TestingSessionLocal()
    try:
        # both sessions see the token unused before either submits
        s1, s2 = first.get(Survey, survey_id), second.get(Survey, survey_id)
        for session, s in ((first, s1), (second, s2)):
            assert not s.tokens[0].used
            assert find_response(session, token).status == "in_progress"

        finalize_response(first, s1, token, NOW)
        first.commit()

        with pytest.raises(TokenAlreadyUsed):
            finalize_response(second, s2, token, NOW)
        second.rollback()
    finally:
        first.close()
        second.close()

    db.expire_all()
    assert find_response(db, token).status == "completed"
