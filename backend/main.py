import hashlib
import logging
from dataclasses import asdict
from typing import Callable, Optional
from datetime import datetime

from fastapi import FastAPI, Depends, HTTPException, Query, Request, Response, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from analytics import AnalyticsFilters, compute_analytics
from audience import suggested_demographics
from clock import as_utc, utcnow
from db import Base, engine, get_db
from errors import AlreadyCompletedError, SurveyError, TOKEN_ERRORS, TokenNotFound
from mailer import Mailer
from models import Employee, Survey
from recorder import find_response, finalize_response, upsert_response
from scheduler import SurveyScheduler
from schemas import EmployeeCreate, EmployeeOut, GenerateTokens, ResponseSave, SurveyCreate, SurveyUpdate
from security import get_store_id, verify_admin
from surveys import (
    archive_survey, close_survey, completed_responses, create_survey, dashboard_stats, delete_survey,
    export_frame, export_results, generate_tokens, refresh_survey_stats, serialize_question,
    serialize_response, serialize_settings, serialize_survey, update_survey,
)
from tokens import find_token, validate_token

config.configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Team Survey API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)


@app.exception_handler(SurveyError)
def survey_error_handler(request: Request, exc: SurveyError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "reason": exc.reason})

@app.exception_handler(SQLAlchemyError)
def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Persistence failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

# Injectable collaborators (overridden in tests)
def get_clock() -> Callable[[], datetime]:
    return utcnow

def get_mailer() -> Mailer:
    return Mailer()

def _store_survey(db: Session, survey_id: int, store_id: int) -> Survey:
    """Fetch a survey owned by ``store_id``.

    Raises:
        HTTPException: 404 if the survey does not exist in this store.
    """
    s = db.get(Survey, survey_id)
    if not s or s.store_id != store_id:
        raise HTTPException(404, "Survey not found")
    return s

def _token_survey(db: Session, token: str, now: datetime):
    """Resolve a token to its survey, enforcing the token checks.

    Returns:
        tuple[SurveyToken, Survey]

    Raises:
        TokenNotFound | TokenAlreadyUsed | TokenExpired: Per validation.
        HTTPException: 404 if the survey is not active.
    """
    row = find_token(db, token)
    if not row:
        raise TokenNotFound()
    survey = row.survey
    result = validate_token(survey, token, now)
    if not result.valid:
        raise TOKEN_ERRORS[result.reason]()
    if survey.status != "active":
        raise HTTPException(404, "Survey not found or no longer active")
    return row, survey

def _request_metadata(request: Request, body: Optional[ResponseSave]) -> dict:
    device = body.device_info if body and body.device_info else None
    host = request.client.host if request.client else ""
    return {
        "device_type": device.device_type if device else None,
        "user_agent": (device.user_agent if device else None) or request.headers.get("user-agent"),
        "ip_hash": hashlib.sha256(host.encode("utf-8")).hexdigest(),
    }

@app.get("/health")
def health():
    """Basic readiness check.

    Returns:
        dict: {"ok": True}
    """
    return {"ok": True}

# ------------------------
# Admin: team members
# ------------------------
@app.post("/admin/employees", dependencies=[Depends(verify_admin)], response_model=EmployeeOut)
def create_employee(payload: EmployeeCreate, db: Session = Depends(get_db), store_id: int = Depends(get_store_id)):
    """Register a team member who can be invited to surveys.

    Args:
        payload (EmployeeCreate): Name and demographic profile.
        db (Session): DB session.
        store_id (int): Tenant.

    Returns:
        EmployeeOut: The stored employee.
    """
    name = (payload.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    row = Employee(store_id=store_id, **{**payload.model_dump(), "name": name})
    db.add(row)
    db.commit()
    return row

@app.get("/admin/employees", dependencies=[Depends(verify_admin)], response_model=list[EmployeeOut])
def list_employees(db: Session = Depends(get_db), store_id: int = Depends(get_store_id)):
    return db.execute(select(Employee).where(Employee.store_id == store_id).order_by(Employee.id)).scalars().all()

# ------------------------
# Admin: surveys
# ------------------------
@app.get("/surveys/dashboard", dependencies=[Depends(verify_admin)])
def get_dashboard(db: Session = Depends(get_db), store_id: int = Depends(get_store_id),
                  clock: Callable[[], datetime] = Depends(get_clock)):
    """Store-level survey overview: active count, recent responses, response rate."""
    return dashboard_stats(db, store_id, clock())

@app.post("/surveys", status_code=201, dependencies=[Depends(verify_admin)])
def create_survey_route(payload: SurveyCreate, db: Session = Depends(get_db),
                        store_id: int = Depends(get_store_id),
                        clock: Callable[[], datetime] = Depends(get_clock)):
    """Create a draft survey (default question template when none are given).

    Args:
        payload (SurveyCreate): Title, description, questions, audience, schedule, settings.
        db (Session): DB session.
        store_id (int): Tenant.

    Returns:
        dict: {"message", "survey"}

    Raises:
        InvalidSurveyError: Bad questions or schedule window.
    """
    survey = create_survey(db, store_id, payload, now=clock())
    db.commit()
    return {"message": "Survey created successfully", "survey": serialize_survey(survey)}

@app.get("/surveys", dependencies=[Depends(verify_admin)])
def list_surveys(status: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                 db: Session = Depends(get_db), store_id: int = Depends(get_store_id)):
    """List the store's surveys, newest first.

    Returns:
        dict: {"surveys": [...], "pagination": {"current", "pages", "total"}}
    """
    q = select(Survey).where(Survey.store_id == store_id)
    if status:
        q = q.where(Survey.status == status)
    total = db.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = db.execute(
        q.order_by(Survey.created_at.desc(), Survey.id.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return {
        "surveys": [serialize_survey(s) for s in rows],
        "pagination": {"current": page, "pages": -(-total // limit), "total": total},
    }

@app.get("/surveys/{survey_id}", dependencies=[Depends(verify_admin)])
def get_survey(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id)):
    return serialize_survey(_store_survey(db, survey_id, store_id))

@app.put("/surveys/{survey_id}", dependencies=[Depends(verify_admin)])
def update_survey_route(survey_id: int, payload: SurveyUpdate, db: Session = Depends(get_db),
                        store_id: int = Depends(get_store_id)):
    """Edit a survey. Active surveys only accept description, end date and settings.

    Raises:
        HTTPException: 404 if survey not found.
        InvalidStateError: Survey is closed or archived.
    """
    survey = update_survey(db, _store_survey(db, survey_id, store_id), payload)
    db.commit()
    return {"message": "Survey updated successfully", "survey": serialize_survey(survey)}

@app.delete("/surveys/{survey_id}", dependencies=[Depends(verify_admin)])
def delete_survey_route(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id)):
    """Hard-delete a non-active survey with its tokens and responses.

    Returns:
        dict: {"ok": True}
    """
    delete_survey(db, _store_survey(db, survey_id, store_id))
    db.commit()
    return {"ok": True}

# ------------------------
# Admin: lifecycle
# ------------------------
@app.post("/surveys/{survey_id}/activate", dependencies=[Depends(verify_admin)])
def activate_survey_route(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id),
                          clock: Callable[[], datetime] = Depends(get_clock),
                          mailer: Mailer = Depends(get_mailer)):
    """Issue tokens to the eligible audience, open the survey and send invitations.

    Returns:
        dict: {"message", "survey", "tokens_generated"}

    Raises:
        InvalidStateError: Survey is not a draft.
    """
    survey = _store_survey(db, survey_id, store_id)
    issued = SurveyScheduler(db, clock=clock, mailer=mailer).activate(survey)
    db.commit()
    return {"message": "Survey activated successfully", "survey": serialize_survey(survey), "tokens_generated": issued}

@app.post("/surveys/{survey_id}/activate-now", dependencies=[Depends(verify_admin)])
def activate_survey_now(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id),
                        clock: Callable[[], datetime] = Depends(get_clock),
                        mailer: Mailer = Depends(get_mailer)):
    _store_survey(db, survey_id, store_id)
    SurveyScheduler(db, clock=clock, mailer=mailer).activate_survey_now(survey_id)
    return {"message": "Survey activated successfully"}

@app.post("/surveys/{survey_id}/close", dependencies=[Depends(verify_admin)])
def close_survey_route(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id),
                       clock: Callable[[], datetime] = Depends(get_clock)):
    survey = close_survey(db, _store_survey(db, survey_id, store_id), clock())
    db.commit()
    return {"message": "Survey closed successfully", "survey": serialize_survey(survey)}

@app.post("/surveys/{survey_id}/archive", dependencies=[Depends(verify_admin)])
def archive_survey_route(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id)):
    survey = archive_survey(db, _store_survey(db, survey_id, store_id))
    db.commit()
    return {"message": "Survey archived successfully", "survey": serialize_survey(survey)}

@app.post("/surveys/{survey_id}/generate-tokens", dependencies=[Depends(verify_admin)])
def generate_tokens_route(survey_id: int, body: GenerateTokens, db: Session = Depends(get_db),
                          store_id: int = Depends(get_store_id),
                          clock: Callable[[], datetime] = Depends(get_clock)):
    """Manually issue tokens to specific employees (existing holders are skipped).

    Returns:
        dict: {"message", "tokens": [{"employee_id", "token"}]}
    """
    tokens = generate_tokens(db, _store_survey(db, survey_id, store_id), body.employee_ids, clock())
    db.commit()
    return {"message": "Tokens generated successfully", "tokens": tokens}

@app.post("/surveys/{survey_id}/send-reminders", dependencies=[Depends(verify_admin)])
def send_reminders_route(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id),
                         clock: Callable[[], datetime] = Depends(get_clock),
                         mailer: Mailer = Depends(get_mailer)):
    survey = _store_survey(db, survey_id, store_id)
    if survey.status != "active":
        raise HTTPException(400, "Reminders can only be sent for active surveys")
    SurveyScheduler(db, clock=clock, mailer=mailer).send_reminders_now(survey_id)
    return {"message": "Reminders sent successfully"}

# ------------------------
# Admin: analytics / export
# ------------------------
@app.get("/surveys/{survey_id}/analytics", dependencies=[Depends(verify_admin)])
def survey_analytics(
    survey_id: int,
    department: Optional[str] = None,
    position: Optional[str] = None,
    experience_level: Optional[str] = Query(None, alias="experienceLevel"),
    employment_type: Optional[str] = Query(None, alias="employmentType"),
    db: Session = Depends(get_db),
    store_id: int = Depends(get_store_id),
):
    """Per-question statistics, overall score and demographics over completed responses.

    Args:
        survey_id (int): Survey PK.
        department, position, experience_level, employment_type: Optional equality filters.

    Returns:
        dict: {"survey", "total_responses", "overall_score", "questions", "demographics", "timeline"}
    """
    survey = _store_survey(db, survey_id, store_id)
    filters = AnalyticsFilters(department=department or None, position=position or None,
                               experience_level=experience_level or None,
                               employment_type=employment_type or None)
    report = compute_analytics(survey, completed_responses(db, survey.id, filters), filters)
    return {
        "survey": {
            "id": survey.id,
            "title": survey.title,
            "status": survey.status,
            "analytics": serialize_survey(survey)["analytics"],
        },
        **asdict(report),
    }

@app.get("/surveys/{survey_id}/export", dependencies=[Depends(verify_admin)])
def export_survey(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id)):
    return export_results(db, _store_survey(db, survey_id, store_id))

@app.get("/surveys/{survey_id}/export.csv", dependencies=[Depends(verify_admin)])
def export_csv(survey_id: int, db: Session = Depends(get_db), store_id: int = Depends(get_store_id)):
    """Export completed answers as CSV (one row per answer, question order).

    Returns:
        Response: text/csv attachment `survey_<id>_responses.csv`.
    """
    df = export_frame(db, _store_survey(db, survey_id, store_id))
    csv_bytes = df.to_csv(index=False).encode("utf-8")
    return Response(content=csv_bytes, media_type="text/csv",
                    headers={"Content-Disposition": f"attachment; filename=survey_{survey_id}_responses.csv"})

# ------------------------
# Public: take a survey by anonymous token
# ------------------------
@app.get("/surveys/token/{token}")
def get_survey_by_token(token: str, db: Session = Depends(get_db),
                        clock: Callable[[], datetime] = Depends(get_clock)):
    """Load the question set and any saved progress for a token.

    Args:
        token (str): Anonymous token.
        db (Session): DB session.

    Returns:
        dict: {"survey", "existing_response", "suggested_demographics"}

    Raises:
        TokenNotFound (404), TokenAlreadyUsed / TokenExpired (400).
        HTTPException: 404 if the survey is not active.
    """
    now = clock()
    row, survey = _token_survey(db, token, now)
    existing = find_response(db, token)
    return {
        "survey": {
            "id": survey.id,
            "title": survey.title,
            "description": survey.description,
            "questions": [serialize_question(q) for q in survey.questions],
            "settings": serialize_settings(survey),
            "end_date": as_utc(survey.end_date),
        },
        "existing_response": serialize_response(existing) if existing else None,
        "suggested_demographics": suggested_demographics(row.employee, now),
    }

@app.post("/surveys/token/{token}/response")
def save_survey_progress(token: str, body: ResponseSave, request: Request, db: Session = Depends(get_db),
                         clock: Callable[[], datetime] = Depends(get_clock)):
    """Save partial answers; each question keeps only its latest answer.

    Returns:
        dict: {"message", "response": {"id", "completion_percentage", "status"}}

    Raises:
        ResponseClosedError: The response was already submitted.
        InvalidAnswerError: Unknown question or malformed value.
    """
    now = clock()
    row = find_token(db, token)
    if not row:
        raise TokenNotFound()
    response = upsert_response(
        db, row.survey, token,
        answers=[a.model_dump() for a in body.answers],
        demographics=body.demographics.model_dump() if body.demographics else None,
        now=now,
        metadata=_request_metadata(request, body),
    )
    db.commit()
    return {
        "message": "Survey progress saved successfully",
        "response": {
            "id": response.id,
            "completion_percentage": response.completion_percentage,
            "status": response.status,
        },
    }

@app.post("/surveys/token/{token}/submit")
def submit_survey(token: str, request: Request, body: Optional[ResponseSave] = Body(default=None),
                  db: Session = Depends(get_db), clock: Callable[[], datetime] = Depends(get_clock)):
    """Finalize the response for a token, optionally saving last answers first.

    Returns:
        dict: {"message", "response_id", "completion_percentage", "time_spent"}

    Raises:
        AlreadyCompletedError: Already submitted.
        ResponseNotFoundError: Nothing saved under this token.
        TokenNotFound | TokenAlreadyUsed | TokenExpired: Token rejected.
    """
    now = clock()
    row = find_token(db, token)
    if not row:
        raise TokenNotFound()
    survey = row.survey
    existing = find_response(db, token)
    if existing is not None and existing.status == "completed":
        raise AlreadyCompletedError()

    if body and (body.answers or body.demographics):
        upsert_response(
            db, survey, token,
            answers=[a.model_dump() for a in body.answers],
            demographics=body.demographics.model_dump() if body.demographics else None,
            now=now,
            metadata=_request_metadata(request, body),
        )
    response = finalize_response(db, survey, token, now)
    refresh_survey_stats(db, survey, now)
    db.commit()
    return {
        "message": "Survey response submitted successfully",
        "response_id": response.id,
        "completion_percentage": response.completion_percentage,
        "time_spent": response.time_spent,
    }
