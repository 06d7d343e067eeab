"""Response recorder: resumable partial saves and one-way finalization."""
from __future__ import annotations
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from clock import utcnow, as_utc
from errors import (
    AlreadyCompletedError, IncompleteResponseError, InvalidAnswerError,
    InvalidStateError, ResponseClosedError, ResponseNotFoundError,
)
from models import Survey, SurveyQuestion, SurveyResponse, ResponseAnswer
from tokens import consume_token, require_valid_token

logger = logging.getLogger(__name__)

DEMOGRAPHIC_FIELDS = ("department", "position", "experience_level", "employment_type")


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like a person would (2.5 -> 3), not banker's rounding."""
    q = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))

def rating_bounds(question: SurveyQuestion) -> tuple[int, int]:
    """Configured scale of a rating question; unset ends fall back to 1..10."""
    low = 1 if question.rating_min is None else question.rating_min
    high = 10 if question.rating_max is None else question.rating_max
    return low, high

def is_answered(value: Any) -> bool:
    return value is not None and value != "" and value != []

def _normalize_value(question: SurveyQuestion, value: Any) -> Any:
    """Coerce an incoming answer to the stored shape for ``question``.

    Raises:
        InvalidAnswerError: If the value does not fit the question type.
    """
    if not is_answered(value):
        return value
    if question.type == "rating":
        if isinstance(value, bool):
            raise InvalidAnswerError(f"Question {question.key} expects a number")
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                raise InvalidAnswerError(f"Question {question.key} expects a number")
        if not isinstance(value, (int, float)):
            raise InvalidAnswerError(f"Question {question.key} expects a number")
        if float(value).is_integer():
            value = int(value)
        low, high = rating_bounds(question)
        if not low <= value <= high:
            raise InvalidAnswerError(f"Question {question.key} expects a rating between {low} and {high}")
        return value
    if question.type == "multiple_choice":
        selected = value if isinstance(value, list) else [value]
        if not all(isinstance(v, str) for v in selected):
            raise InvalidAnswerError(f"Question {question.key} expects option labels")
        if question.options and any(v not in question.options for v in selected):
            raise InvalidAnswerError(f"Question {question.key} received an unknown option")
        return value
    if not isinstance(value, str):
        raise InvalidAnswerError(f"Question {question.key} expects text")
    return value

def completion_percentage(survey: Survey, response: SurveyResponse) -> int:
    """round(100 * answered / total questions); 0 for a survey without questions."""
    total = len(survey.questions)
    if total == 0:
        return 0
    answered = sum(1 for a in response.answers if is_answered(a.value))
    return int(round_half_up(100 * answered / total))

def set_answer(survey: Survey, response: SurveyResponse, question_id: str, value: Any) -> ResponseAnswer:
    """Replace the answer to ``question_id`` or append it (last write wins)."""
    question = survey.question_by_key(question_id)
    if question is None:
        raise InvalidAnswerError(f"Unknown question: {question_id}")
    value = _normalize_value(question, value)

    row = next((a for a in response.answers if a.question_id == question_id), None)
    if row is None:
        row = ResponseAnswer(question_id=question_id)
        response.answers.append(row)
    row.question_text = question.text
    row.question_type = question.type
    row.value = value
    row.skipped = not is_answered(value)
    return row

def find_response(db: Session, token: str) -> SurveyResponse | None:
    return db.execute(
        select(SurveyResponse).where(SurveyResponse.anonymous_token == token)
    ).scalar_one_or_none()

def _require_active(survey: Survey) -> None:
    if survey.status != "active":
        raise InvalidStateError("Survey is not active")

def upsert_response(
    db: Session,
    survey: Survey,
    token: str,
    answers: Iterable[Mapping[str, Any]] = (),
    demographics: Optional[Mapping[str, Any]] = None,
    now: datetime | None = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> SurveyResponse:
    """Save partial answers under ``token`` without completing the response.

    Args:
        db (Session): DB session; the caller commits.
        survey (Survey): Survey the token belongs to.
        token (str): Anonymous token.
        answers: Items of ``{"question_id": str, "value": Any}``.
        demographics: Snapshot fields; seeds a new response, merged into an existing one.
        now (datetime|None): Current time.
        metadata: Optional ``device_type`` / ``user_agent`` / ``ip_hash``.

    Returns:
        SurveyResponse: The created or updated response.

    Raises:
        ResponseClosedError: The response was already finalized.
        TokenNotFound | TokenAlreadyUsed | TokenExpired: Token rejected.
        InvalidStateError: Survey not active.
        InvalidAnswerError: Unknown question or malformed value.
    """
    now = now or utcnow()
    response = find_response(db, token)
    if response is not None and response.status == "completed" and not survey.allow_multiple_responses:
        raise ResponseClosedError()
    require_valid_token(survey, token, now)
    _require_active(survey)

    if response is None:
        response = SurveyResponse(
            survey_id=survey.id,
            store_id=survey.store_id,
            anonymous_token=token,
            status="in_progress",
            completion_percentage=0,
            started_at=now,
            time_spent=0,
        )
        for key, value in (metadata or {}).items():
            setattr(response, key, value)
        db.add(response)

    for field in DEMOGRAPHIC_FIELDS:
        if demographics and demographics.get(field) is not None:
            setattr(response, field, demographics[field])

    for item in answers:
        set_answer(survey, response, item["question_id"], item.get("value"))

    response.completion_percentage = completion_percentage(survey, response)
    db.flush()
    return response

def finalize_response(
    db: Session,
    survey: Survey,
    token: str,
    now: datetime | None = None,
) -> SurveyResponse:
    """Complete the response for ``token`` and consume the token.

    Raises:
        AlreadyCompletedError: Second finalization of the same response.
        ResponseNotFoundError: Nothing was saved under the token.
        IncompleteResponseError: ``require_all_questions`` is set and a required question is unanswered.
    """
    now = now or utcnow()
    response = find_response(db, token)
    if response is not None and response.status == "completed":
        raise AlreadyCompletedError()
    require_valid_token(survey, token, now)
    _require_active(survey)
    if response is None:
        raise ResponseNotFoundError()

    if survey.require_all_questions:
        answered = {a.question_id for a in response.answers if is_answered(a.value)}
        missing = [q.key for q in survey.questions if q.required and q.key not in answered]
        if missing:
            raise IncompleteResponseError(f"Required questions are unanswered: {', '.join(missing)}")

    response.status = "completed"
    response.completed_at = now
    response.time_spent = int(round_half_up((as_utc(now) - as_utc(response.started_at)).total_seconds()))
    response.completion_percentage = completion_percentage(survey, response)
    consume_token(db, token, now)
    db.flush()
    logger.info("Response %s completed for survey %s", response.id, survey.id)
    return response
