"""Survey lifecycle: definition, activation, closing, stats and export."""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Optional

import pandas as pd
from sqlalchemy import select, func
from sqlalchemy.orm import Session

from analytics import AnalyticsFilters
from audience import eligible_employees
from clock import utcnow, as_utc
from errors import InvalidStateError, InvalidSurveyError
from models import Employee, Survey, SurveyQuestion, SurveyResponse, default_target_audience
from recorder import round_half_up
from schemas import QuestionCreate, SurveyCreate, SurveyUpdate
from tokens import issue_token

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Team Experience Survey"
DEFAULT_DESCRIPTION = "Anonymous survey to gather feedback on team member experience"
DEFAULT_DURATION = timedelta(days=14)

DEFAULT_QUESTIONS = [
    ("How satisfied are you with your overall work experience here?", "rating"),
    ("How would you rate your work-life balance?", "rating"),
    ("Do you feel that the company values and respects your contributions?", "rating"),
    ("How comfortable are you with the working conditions (e.g., cleanliness, equipment, facilities)?", "rating"),
    ("How would you rate the communication between team members and leadership?", "rating"),
    ("Do you feel you received sufficient training to perform your job effectively?", "rating"),
    ("Are you given enough opportunities for growth and advancement within the company?", "rating"),
    ("How helpful do you find the feedback you receive from your managers/supervisors?", "rating"),
    ("How satisfied are you with your current pay and benefits package?", "rating"),
    ("Do you believe the compensation you receive is fair for the work you do?", "rating"),
    ("How is the communication between leadership and you regarding your schedule and hours?", "rating"),
    ("How would you rate the team dynamic and camaraderie among your coworkers?", "rating"),
    ("Do you feel that the work culture aligns with our core values (e.g., hospitality, integrity, teamwork)?", "rating"),
    ("Do you feel comfortable communicating openly with your manager about concerns or ideas?", "rating"),
    ("How effective do you think your manager(s) are in leading and supporting the team?", "rating"),
    ("Do you feel recognized and appreciated for the work you do by your manager(s)?", "rating"),
    ("How motivated do you feel to do your best work here?", "rating"),
    ("Do you believe your role here is meaningful and impactful?", "rating"),
    ("What do you enjoy most about working here?", "text"),
    ("What areas of improvement would you suggest to make your work experience better?", "text"),
    ("Would you recommend this restaurant as a great place to work to friends and family?", "rating"),
    ("Is there anything else you would like to share regarding your experience working here?", "text"),
]

ACTIVE_EDITABLE = ("description", "end_date", "settings")


def default_template_questions() -> list[QuestionCreate]:
    return [QuestionCreate(id=f"q{i}", text=text, type=qtype) for i, (text, qtype) in enumerate(DEFAULT_QUESTIONS, start=1)]

# ------------------------
# Question definitions
# ------------------------
def _question_keys(questions: list[QuestionCreate]) -> list[str]:
    """Resolve stable keys, auto-assigning ``q<n>`` where none was given."""
    taken = {q.id for q in questions if q.id}
    keys, n = [], 0
    for q in questions:
        if q.id:
            keys.append(q.id)
            continue
        n += 1
        while f"q{n}" in taken:
            n += 1
        taken.add(f"q{n}")
        keys.append(f"q{n}")
    if len(set(keys)) != len(keys):
        raise InvalidSurveyError("Question ids must be unique within a survey")
    return keys

def _check_question(q: QuestionCreate) -> None:
    if not (q.text or "").strip():
        raise InvalidSurveyError("Question text is required")
    if q.type == "multiple_choice" and not q.options:
        raise InvalidSurveyError("Multiple choice questions need options")
    if q.type == "rating" and q.rating_scale.min < 1:
        raise InvalidSurveyError("Rating scales start at 1 or above")
    if q.type == "rating" and q.rating_scale.min >= q.rating_scale.max:
        raise InvalidSurveyError("Rating scale min must be below max")

def set_questions(survey: Survey, questions: list[QuestionCreate]) -> None:
    """Replace the survey's questions, updating rows in place by key."""
    keys = _question_keys(questions)
    existing = {q.key: q for q in survey.questions}
    ordered = []
    for position, (key, q) in enumerate(zip(keys, questions)):
        _check_question(q)
        row = existing.pop(key, None) or SurveyQuestion(key=key)
        row.position = position
        row.text = q.text.strip()
        row.type = q.type
        row.required = q.required
        row.options = list(q.options) if q.options else None
        row.rating_min = q.rating_scale.min
        row.rating_max = q.rating_scale.max
        ordered.append(row)
    survey.questions = ordered

def _apply_schedule(survey: Survey, schedule: dict) -> None:
    recurring = schedule.pop("recurring", None) or {}
    for field in ("start_date", "end_date", "next_scheduled_date"):
        if field in schedule and schedule[field] is not None:
            schedule[field] = as_utc(schedule[field])
    for field, value in schedule.items():
        setattr(survey, field, value)
    for field, value in recurring.items():
        setattr(survey, field, value)

def _check_window(survey: Survey) -> None:
    if as_utc(survey.end_date) <= as_utc(survey.start_date):
        raise InvalidSurveyError("End date must be after start date")

# ------------------------
# CRUD
# ------------------------
def create_survey(db: Session, store_id: int, payload: SurveyCreate,
                  created_by: Optional[str] = None, now: datetime | None = None) -> Survey:
    """Create a draft survey; an empty question list uses the default template."""
    now = now or utcnow()
    schedule = payload.schedule.model_dump()
    schedule["start_date"] = schedule["start_date"] or now
    schedule["end_date"] = schedule["end_date"] or as_utc(schedule["start_date"]) + DEFAULT_DURATION

    survey = Survey(
        store_id=store_id,
        created_by=created_by,
        title=(payload.title or "").strip() or DEFAULT_TITLE,
        description=(payload.description or "").strip() or DEFAULT_DESCRIPTION,
        status="draft",
        target_audience=payload.target_audience.model_dump() if payload.target_audience else default_target_audience(),
        reminders_sent=[],
    )
    _apply_schedule(survey, schedule)
    _check_window(survey)
    for field, value in payload.settings.model_dump().items():
        setattr(survey, field, value)
    set_questions(survey, payload.questions or default_template_questions())

    db.add(survey)
    db.flush()
    logger.info("Survey created: %s in store %s", survey.id, store_id)
    return survey

def update_survey(db: Session, survey: Survey, payload: SurveyUpdate) -> Survey:
    """Drafts take any change; active surveys only description, end date and settings."""
    if survey.status in ("closed", "archived"):
        raise InvalidStateError(f"A {survey.status} survey cannot be edited")

    data = payload.model_dump(exclude_unset=True)
    schedule = data.pop("schedule", None) or {}
    if survey.status == "active":
        ignored = sorted(set(data) - set(ACTIVE_EDITABLE)) + sorted(set(schedule) - {"end_date"})
        if ignored:
            logger.info("Ignoring edits to %s on active survey %s", ", ".join(ignored), survey.id)
        data = {k: v for k, v in data.items() if k in ACTIVE_EDITABLE}
        schedule = {k: v for k, v in schedule.items() if k == "end_date"}

    if data.get("title") is not None:
        survey.title = data["title"].strip() or survey.title
    if data.get("description") is not None:
        survey.description = data["description"].strip()
    if data.get("target_audience") is not None:
        survey.target_audience = data["target_audience"]
    if data.get("settings") is not None:
        for field, value in data["settings"].items():
            setattr(survey, field, value)
    if payload.questions is not None and "questions" in data:
        set_questions(survey, payload.questions)
    if schedule:
        _apply_schedule(survey, {k: v for k, v in schedule.items() if v is not None or k == "next_scheduled_date"})
        _check_window(survey)
        end = as_utc(survey.end_date)
        for t in survey.tokens:
            if as_utc(t.expires_at) > end:
                t.expires_at = end

    db.flush()
    return survey

def delete_survey(db: Session, survey: Survey) -> None:
    if survey.status == "active":
        raise InvalidStateError("Cannot delete active survey. Close it first.")
    db.delete(survey)
    db.flush()

# ------------------------
# Lifecycle
# ------------------------
def activate_survey(db: Session, survey: Survey, now: datetime | None = None) -> list[tuple[Employee, str]]:
    """Issue a token to every eligible employee and open the survey.

    Returns:
        list[tuple[Employee, str]]: (employee, token) invitations.
    """
    if survey.status != "draft":
        raise InvalidStateError("Only draft surveys can be activated")
    now = now or utcnow()
    invitations = []
    for employee in eligible_employees(db, survey, now):
        invitations.append((employee, issue_token(survey, employee.id, now)))
    survey.status = "active"
    survey.total_invited = len(survey.tokens)
    survey.last_calculated = now
    db.flush()
    logger.info("Survey activated: %s, tokens generated for %s users", survey.id, len(invitations))
    return invitations

def generate_tokens(db: Session, survey: Survey, employee_ids: list[int],
                    now: datetime | None = None) -> list[dict]:
    """Issue tokens to specific employees, skipping those who already hold one."""
    now = now or utcnow()
    employees = db.execute(
        select(Employee).where(Employee.id.in_(employee_ids), Employee.store_id == survey.store_id)
    ).scalars().all()
    found = {e.id for e in employees}
    missing = [i for i in employee_ids if i not in found]
    if missing:
        raise InvalidSurveyError(f"Unknown employees: {missing}")

    holders = {t.employee_id for t in survey.tokens}
    issued = []
    for employee_id in dict.fromkeys(employee_ids):
        if employee_id in holders:
            continue
        issued.append({"employee_id": employee_id, "token": issue_token(survey, employee_id, now)})
    survey.total_invited = len(survey.tokens)
    db.flush()
    return issued

def refresh_survey_stats(db: Session, survey: Survey, now: datetime | None = None) -> Survey:
    count = db.execute(
        select(func.count()).select_from(SurveyResponse)
        .where(SurveyResponse.survey_id == survey.id, SurveyResponse.status == "completed")
    ).scalar_one()
    survey.total_responses = count
    survey.response_rate = int(round_half_up(100 * count / survey.total_invited)) if survey.total_invited else 0
    survey.last_calculated = now or utcnow()
    return survey

def close_survey(db: Session, survey: Survey, now: datetime | None = None) -> Survey:
    if survey.status != "active":
        raise InvalidStateError("Only active surveys can be closed")
    survey.status = "closed"
    survey.survey_completed = True
    refresh_survey_stats(db, survey, now)
    db.flush()
    logger.info("Survey closed: %s (%s responses)", survey.id, survey.total_responses)
    return survey

def archive_survey(db: Session, survey: Survey) -> Survey:
    if survey.status != "closed":
        raise InvalidStateError("Only closed surveys can be archived")
    survey.status = "archived"
    db.flush()
    return survey

# ------------------------
# Queries
# ------------------------
def completed_responses(db: Session, survey_id: int, filters: AnalyticsFilters | None = None) -> list[SurveyResponse]:
    q = select(SurveyResponse).where(SurveyResponse.survey_id == survey_id, SurveyResponse.status == "completed")
    for field in ("department", "position", "experience_level", "employment_type"):
        value = getattr(filters, field) if filters else None
        if value is not None:
            q = q.where(getattr(SurveyResponse, field) == value)
    return db.execute(q.order_by(SurveyResponse.started_at, SurveyResponse.id)).scalars().all()

def dashboard_stats(db: Session, store_id: int, now: datetime | None = None) -> dict:
    now = now or utcnow()
    active = db.execute(
        select(func.count()).select_from(Survey).where(Survey.store_id == store_id, Survey.status == "active")
    ).scalar_one()
    since = now - timedelta(days=90)
    recent_responses = db.execute(
        select(func.count()).select_from(SurveyResponse)
        .where(SurveyResponse.store_id == store_id, SurveyResponse.status == "completed",
               SurveyResponse.completed_at >= since)
    ).scalar_one()
    rates = db.execute(
        select(Survey.response_rate).where(Survey.store_id == store_id, Survey.status.in_(("active", "closed")))
    ).scalars().all()
    recent = db.execute(
        select(Survey).where(Survey.store_id == store_id).order_by(Survey.updated_at.desc(), Survey.id.desc()).limit(5)
    ).scalars().all()
    return {
        "active_surveys": active,
        "total_responses": recent_responses,
        "average_response_rate": round_half_up(sum(rates) / len(rates), 1) if rates else 0,
        "recent_surveys": [
            {"id": s.id, "title": s.title, "status": s.status, "response_rate": s.response_rate}
            for s in recent
        ],
    }

# ------------------------
# Serialization / export
# ------------------------
def serialize_question(q: SurveyQuestion) -> dict:
    return {
        "id": q.key,
        "text": q.text,
        "type": q.type,
        "required": bool(q.required),
        "options": q.options,
        "rating_scale": {"min": q.rating_min, "max": q.rating_max},
    }

def serialize_settings(s: Survey) -> dict:
    return {
        "allow_multiple_responses": bool(s.allow_multiple_responses),
        "show_progress_bar": bool(s.show_progress_bar),
        "require_all_questions": bool(s.require_all_questions),
        "send_reminders": bool(s.send_reminders),
        "reminder_days": list(s.reminder_days or []),
    }

def serialize_survey(s: Survey) -> dict:
    """Admin view of a survey. Token values and their holders are never listed."""
    return {
        "id": s.id,
        "title": s.title,
        "description": s.description,
        "status": s.status,
        "questions": [serialize_question(q) for q in s.questions],
        "target_audience": s.target_audience,
        "schedule": {
            "start_date": as_utc(s.start_date),
            "end_date": as_utc(s.end_date),
            "frequency": s.frequency,
            "auto_activate": bool(s.auto_activate),
            "next_scheduled_date": as_utc(s.next_scheduled_date),
            "is_recurring": bool(s.is_recurring),
            "recurring": {
                "day_of_period": s.day_of_period,
                "duration_days": s.duration_days,
                "auto_close": bool(s.auto_close),
            },
        },
        "settings": serialize_settings(s),
        "analytics": {
            "total_invited": s.total_invited or 0,
            "total_responses": s.total_responses or 0,
            "response_rate": s.response_rate or 0,
            "last_calculated": as_utc(s.last_calculated),
        },
        "notifications": {
            "invites_sent": bool(s.invites_sent),
            "invites_sent_at": as_utc(s.invites_sent_at),
            "reminders_sent": list(s.reminders_sent or []),
            "invite_emails_sent": s.invite_emails_sent or 0,
            "reminder_emails_sent": s.reminder_emails_sent or 0,
        },
        "tokens_issued": len(s.tokens),
        "created_at": as_utc(s.created_at),
        "updated_at": as_utc(s.updated_at),
    }

def serialize_response(r: SurveyResponse) -> dict:
    return {
        "id": r.id,
        "status": r.status,
        "completion_percentage": r.completion_percentage,
        "demographics": r.demographics,
        "answers": [
            {
                "question_id": a.question_id,
                "question_text": a.question_text,
                "question_type": a.question_type,
                "value": a.value,
                "skipped": bool(a.skipped),
            }
            for a in r.answers
        ],
    }

def export_results(db: Session, survey: Survey) -> dict:
    responses = completed_responses(db, survey.id)
    return {
        "survey": {
            "title": survey.title,
            "description": survey.description,
            "created_at": as_utc(survey.created_at),
            "total_responses": len(responses),
        },
        "questions": [{"id": q.key, "text": q.text, "type": q.type} for q in survey.questions],
        "responses": [
            {
                **serialize_response(r),
                "submitted_at": as_utc(r.completed_at),
            }
            for r in sorted(responses, key=lambda r: as_utc(r.completed_at), reverse=True)
        ],
    }

EXPORT_COLUMNS = ["response_id", "submitted_at", "department", "position", "experience_level",
                  "employment_type", "question_id", "question", "question_type", "answer", "skipped"]

def export_frame(db: Session, survey: Survey) -> pd.DataFrame:
    """One row per answer of every completed response, in question order."""
    order = {q.key: i for i, q in enumerate(survey.questions)}
    rows = []
    for r in completed_responses(db, survey.id):
        for a in sorted(r.answers, key=lambda a: order.get(a.question_id, len(order))):
            value = a.value
            if isinstance(value, list):
                value = "; ".join(value)
            rows.append({
                "response_id": r.id,
                "submitted_at": as_utc(r.completed_at).isoformat() if r.completed_at else None,
                "department": r.department,
                "position": r.position,
                "experience_level": r.experience_level,
                "employment_type": r.employment_type,
                "question_id": a.question_id,
                "question": a.question_text,
                "question_type": a.question_type,
                "answer": value,
                "skipped": bool(a.skipped),
            })
    return pd.DataFrame(rows, columns=EXPORT_COLUMNS)
