# Who gets invited to a survey, and the demographic prefill shown to them.
from __future__ import annotations
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from clock import utcnow
from models import Employee, Survey

def experience_level(hire_date: date | None, now: datetime | None = None) -> str:
    """Bucket tenure by 30-day months since hire."""
    if not hire_date:
        return "0-6 months"
    today = (now or utcnow()).date()
    months = (today - hire_date).days // 30
    if months >= 24:
        return "2+ years"
    if months >= 12:
        return "1-2 years"
    if months >= 6:
        return "6-12 months"
    return "0-6 months"

def eligible_employees(db: Session, survey: Survey, now: datetime | None = None) -> list[Employee]:
    """Active employees of the survey's store matching its target audience.

    Args:
        db (Session): DB session.
        survey (Survey): Survey whose ``target_audience`` drives the filter.
        now (datetime|None): Reference time for experience buckets.

    Returns:
        list[Employee]: Ordered by id.
    """
    audience = survey.target_audience or {}
    q = select(Employee).where(Employee.store_id == survey.store_id, Employee.is_active == True)
    if not audience.get("include_all", True):
        if audience.get("departments"):
            q = q.where(Employee.department.in_(audience["departments"]))
        if audience.get("positions"):
            q = q.where(Employee.position.in_(audience["positions"]))
        if audience.get("employment_types"):
            q = q.where(Employee.employment_type.in_(audience["employment_types"]))
    employees = db.execute(q.order_by(Employee.id)).scalars().all()

    levels = audience.get("experience_levels") or []
    if not levels:
        return list(employees)
    return [e for e in employees if experience_level(e.hire_date, now) in levels]

def suggested_demographics(employee: Employee | None, now: datetime | None = None) -> dict:
    return {
        "department": (employee.department if employee else None) or "Front of House",
        "position": (employee.position if employee else None) or "Team Member",
        "experience_level": experience_level(employee.hire_date if employee else None, now),
        "employment_type": (employee.employment_type if employee else None) or "Part-time",
    }
