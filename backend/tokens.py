"""Anonymous survey tokens: issuance, validation and single-use marking.

A token is the only link between a respondent and a survey response. The
respondent reference lives on the token row; responses only carry the token
string, so nothing on the response identifies who wrote it.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from clock import utcnow, as_utc
from errors import InvalidStateError, TOKEN_ERRORS, TokenAlreadyUsed, TokenExpired, TokenNotFound
from models import Survey, SurveyToken
from retry import with_retry

logger = logging.getLogger(__name__)

ISSUABLE_STATUSES = ("draft", "active")


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    reason: Optional[str] = None
    token: Optional[SurveyToken] = None


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"

def new_token_value(now: datetime | None = None) -> str:
    """128 random bits followed by a base36 millisecond timestamp."""
    now = now or utcnow()
    return uuid.uuid4().hex + _base36(int(now.timestamp() * 1000))

def issue_token(survey: Survey, respondent_id: int, now: datetime | None = None) -> str:
    """Attach an anonymous token for ``respondent_id`` to ``survey``.

    A respondent holds at most one token per survey; calling this again for
    the same respondent returns the token already issued. The caller persists
    the survey and keeps ``total_invited`` in step.

    Args:
        survey (Survey): Survey in draft or active state.
        respondent_id (int): Employee the token is issued to.
        now (datetime|None): Issuance time, used for the time component.

    Returns:
        str: The token value.

    Raises:
        InvalidStateError: If the survey is closed or archived.
    """
    if survey.status not in ISSUABLE_STATUSES:
        raise InvalidStateError(f"Cannot issue tokens for a {survey.status} survey")

    for existing in survey.tokens:
        if existing.employee_id == respondent_id:
            return existing.token

    taken = {t.token for t in survey.tokens}
    value = new_token_value(now)
    while value in taken:
        value = new_token_value(now)

    survey.tokens.append(SurveyToken(
        employee_id=respondent_id,
        token=value,
        used=False,
        expires_at=as_utc(survey.end_date),
    ))
    logger.debug("Issued token for respondent %s on survey %s", respondent_id, survey.id)
    return value

def validate_token(survey: Survey, token: str, now: datetime | None = None) -> TokenValidation:
    """Decide whether ``token`` may be used to take ``survey``.

    Checks, in order: presence, prior use, expiry. Has no side effects.
    """
    now = as_utc(now) if now else utcnow()
    row = next((t for t in survey.tokens if t.token == token), None)
    if row is None:
        return TokenValidation(False, TokenNotFound.reason)
    if row.used:
        return TokenValidation(False, TokenAlreadyUsed.reason, row)
    if now > as_utc(row.expires_at):
        return TokenValidation(False, TokenExpired.reason, row)
    return TokenValidation(True, None, row)

def require_valid_token(survey: Survey, token: str, now: datetime | None = None) -> SurveyToken:
    """Like :func:`validate_token` but raises the matching token error."""
    result = validate_token(survey, token, now)
    if not result.valid:
        raise TOKEN_ERRORS[result.reason]()
    return result.token

def mark_token_used(survey: Survey, token: str, now: datetime | None = None) -> None:
    """Flag ``token`` as used on the in-memory survey."""
    row = next((t for t in survey.tokens if t.token == token), None)
    if row is None:
        raise TokenNotFound()
    row.used = True
    row.used_at = now or utcnow()

def consume_token(db: Session, token: str, now: datetime | None = None) -> None:
    """Consume ``token`` in the database. Only final submission calls this.

    The update only matches a row that is still unused, so of two concurrent
    submissions exactly one wins.

    Raises:
        TokenAlreadyUsed: Another transaction consumed the token first.
    """
    result = db.execute(
        update(SurveyToken)
        .where(SurveyToken.token == token, SurveyToken.used == False)
        .values(used=True, used_at=now or utcnow())
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount != 1:
        raise TokenAlreadyUsed()

def _select_token(db: Session, token: str) -> SurveyToken | None:
    return db.execute(select(SurveyToken).where(SurveyToken.token == token)).scalar_one_or_none()

def find_token(db: Session, token: str) -> SurveyToken | None:
    """Look up a token row across all surveys.

    A failed attempt leaves the session unusable, so it is rolled back
    before the next try.
    """
    return with_retry(_select_token, db, token, on_retry=db.rollback)
