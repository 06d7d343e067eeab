"""Periodic survey automation.

Each job is a single pass over the database and is meant to be triggered by
an external scheduler (cron, a managed job runner), e.g.::

    0 * * * *  python scheduler.py activate
    0 9 * * *  python scheduler.py remind
    0 0 * * *  python scheduler.py close
    0 1 * * *  python scheduler.py recurring

The clock, session and mailer are injected so every job can run against a
fake clock in tests.
"""
from __future__ import annotations
import argparse
import logging
import math
import smtplib
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.orm import Session

import config
from clock import utcnow, as_utc
from mailer import Mailer
from models import Employee, Survey, SurveyQuestion
from surveys import activate_survey, close_survey, refresh_survey_stats

logger = logging.getLogger(__name__)

PERIOD_MONTHS = {"monthly": 1, "biannual": 6, "annual": 12}


def next_scheduled_date(survey: Survey, now: datetime) -> Optional[datetime]:
    """Start of the next occurrence of a recurring survey, at midnight UTC."""
    if not survey.is_recurring:
        return None
    day = survey.day_of_period or 1
    now = as_utc(now)
    if survey.frequency == "quarterly":
        next_quarter = ((now.month - 1) // 3 + 1) % 4
        year = now.year + 1 if next_quarter == 0 else now.year
        return datetime(year, next_quarter * 3 + 1, day, tzinfo=timezone.utc)
    months = PERIOD_MONTHS.get(survey.frequency)
    if months is None:
        return None
    nxt = now + relativedelta(months=months)
    return datetime(nxt.year, nxt.month, day, tzinfo=timezone.utc)

def build_next_survey(template: Survey, now: datetime) -> Optional[Survey]:
    """Draft the next occurrence of ``template`` with fresh notification state."""
    start = next_scheduled_date(template, now)
    if start is None:
        return None
    end = start + timedelta(days=template.duration_days or 14)
    return Survey(
        store_id=template.store_id,
        created_by=template.created_by,
        title=template.title,
        description=template.description,
        status="draft",
        target_audience=dict(template.target_audience or {}),
        start_date=start,
        end_date=end,
        frequency=template.frequency,
        auto_activate=template.auto_activate,
        next_scheduled_date=start,
        is_recurring=True,
        day_of_period=template.day_of_period,
        duration_days=template.duration_days,
        auto_close=template.auto_close,
        allow_multiple_responses=template.allow_multiple_responses,
        show_progress_bar=template.show_progress_bar,
        require_all_questions=template.require_all_questions,
        send_reminders=template.send_reminders,
        reminder_days=list(template.reminder_days or []),
        email_subject=template.email_subject,
        invite_message=template.invite_message,
        reminder_message=template.reminder_message,
        reminders_sent=[],
        questions=[
            SurveyQuestion(key=q.key, position=q.position, text=q.text, type=q.type, required=q.required,
                           options=list(q.options) if q.options else None,
                           rating_min=q.rating_min, rating_max=q.rating_max)
            for q in template.questions
        ],
    )


class SurveyScheduler:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow,
                 mailer: Optional[Mailer] = None, client_url: Optional[str] = None):
        self.db = db
        self.clock = clock
        self.mailer = mailer or Mailer()
        self.client_url = (client_url or config.CLIENT_URL).rstrip("/")

    @property
    def now(self) -> datetime:
        return as_utc(self.clock())

    def survey_url(self, token: str) -> str:
        return f"{self.client_url}/survey/{token}"

    def _for_each(self, surveys, action: Callable[[Survey], bool], label: str) -> int:
        """Run ``action`` per survey, committing each one on its own."""
        done = 0
        for survey in surveys:
            survey_id = survey.id
            try:
                if action(survey):
                    done += 1
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception("Error while trying to %s survey %s", label, survey_id)
        return done

    # ------------------------
    # Activation
    # ------------------------
    def activate(self, survey: Survey) -> int:
        """Activate one draft survey and email invitations; returns tokens issued.

        The activation is committed before any email goes out, so every link
        sent points at a stored token.
        """
        now = self.now
        invitations = activate_survey(self.db, survey, now)
        self.db.commit()
        if survey.send_reminders:
            self.send_invitations(survey, invitations)
            self.db.commit()
        return len(invitations)

    def _deliver(self, send: Callable[..., bool], to_email: str, **context) -> bool:
        """One email; relay failures are logged and reported as not sent."""
        try:
            return send(to_email, **context)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send survey email to %s", to_email)
            return False

    def send_invitations(self, survey: Survey, invitations: list[tuple[Employee, str]]) -> int:
        sent = 0
        for employee, token in invitations:
            if not employee.email:
                continue
            if self._deliver(
                self.mailer.send_invite,
                employee.email,
                subject=survey.email_subject,
                user_name=employee.name,
                survey_title=survey.title,
                survey_url=self.survey_url(token),
                expiry=as_utc(survey.end_date),
                message=survey.invite_message,
            ):
                sent += 1
        survey.invites_sent = True
        survey.invites_sent_at = self.now
        survey.invite_emails_sent = sent
        logger.info("Sent %s invitation emails for survey: %s", sent, survey.title)
        return sent

    def activate_due_surveys(self) -> int:
        now = self.now
        drafts = self.db.execute(
            select(Survey).where(Survey.status == "draft", Survey.auto_activate == True)
        ).scalars().all()
        due = [s for s in drafts if as_utc(s.next_scheduled_date or s.start_date) <= now]

        def activate(survey: Survey) -> bool:
            self.activate(survey)
            return True

        count = self._for_each(due, activate, "activate")
        if count:
            logger.info("Activated %s scheduled surveys", count)
        return count

    def activate_survey_now(self, survey_id: int) -> bool:
        survey = self.db.get(Survey, survey_id)
        if survey is None:
            return False
        self.activate(survey)
        self.db.commit()
        return True

    # ------------------------
    # Reminders
    # ------------------------
    def send_reminders(self, survey: Survey, days_left) -> int:
        """Email every holder of an unused token; returns emails sent."""
        unused = [t for t in survey.tokens if not t.used]
        sent = 0
        for token in unused:
            employee = token.employee
            if employee is None or not employee.email:
                continue
            if self._deliver(
                self.mailer.send_reminder,
                employee.email,
                subject=f"Reminder: {survey.email_subject}",
                user_name=employee.name,
                survey_title=survey.title,
                survey_url=self.survey_url(token.token),
                days_left=days_left,
                message=survey.reminder_message,
            ):
                sent += 1
        survey.reminders_sent = list(survey.reminders_sent or []) + [self.now.isoformat()]
        survey.reminder_emails_sent = (survey.reminder_emails_sent or 0) + sent
        logger.info("Sent %s reminder emails for survey: %s (%s days left)", sent, survey.title, days_left)
        return sent

    def _reminder_due(self, survey: Survey) -> Optional[int]:
        now = self.now
        days_left = math.ceil((as_utc(survey.end_date) - now).total_seconds() / 86400)
        if days_left not in (survey.reminder_days or []):
            return None
        today = now.date()
        if any(as_utc(datetime.fromisoformat(ts)).date() == today for ts in (survey.reminders_sent or [])):
            return None
        return days_left

    def send_due_reminders(self) -> int:
        now = self.now
        active = self.db.execute(
            select(Survey).where(Survey.status == "active", Survey.send_reminders == True)
        ).scalars().all()
        open_surveys = [s for s in active if as_utc(s.end_date) > now]

        def remind(survey: Survey) -> bool:
            days_left = self._reminder_due(survey)
            if days_left is None:
                return False
            self.send_reminders(survey, days_left)
            return True

        return self._for_each(open_surveys, remind, "send reminders for")

    def send_reminders_now(self, survey_id: int) -> bool:
        survey = self.db.get(Survey, survey_id)
        if survey is None:
            return False
        self.send_reminders(survey, "manual")
        self.db.commit()
        return True

    # ------------------------
    # Closing and recurrence
    # ------------------------
    def close_expired_surveys(self) -> int:
        now = self.now
        active = self.db.execute(
            select(Survey).where(Survey.status == "active", Survey.auto_close == True)
        ).scalars().all()
        expired = [s for s in active if as_utc(s.end_date) <= now]
        count = self._for_each(expired, lambda s: close_survey(self.db, s, now) is not None, "close")
        if count:
            logger.info("Auto-closed %s surveys", count)
        return count

    def create_recurring_surveys(self) -> int:
        now = self.now
        templates = self.db.execute(
            select(Survey).where(Survey.status == "closed", Survey.is_recurring == True,
                                 Survey.recurrence_created == False)
        ).scalars().all()

        def spawn(template: Survey) -> bool:
            nxt = build_next_survey(template, now)
            if nxt is None:
                return False
            self.db.add(nxt)
            template.recurrence_created = True
            self.db.flush()
            logger.info("Created next recurring survey: %s scheduled for %s", nxt.title, nxt.start_date)
            return True

        count = self._for_each(templates, spawn, "create the next occurrence of")
        if count:
            logger.info("Created %s recurring surveys", count)
        return count

    def refresh_active_stats(self) -> int:
        active = self.db.execute(select(Survey).where(Survey.status == "active")).scalars().all()
        return self._for_each(active, lambda s: refresh_survey_stats(self.db, s, self.now) is not None, "refresh stats for")

    # ------------------------
    # Entry points
    # ------------------------
    def run(self, job: str) -> dict:
        jobs = {
            "activate": self.activate_due_surveys,
            "remind": self.send_due_reminders,
            "close": self.close_expired_surveys,
            "recurring": self.create_recurring_surveys,
            "stats": self.refresh_active_stats,
        }
        selected = list(jobs) if job == "all" else [job]
        return {name: jobs[name]() for name in selected}


JOBS = ("activate", "remind", "close", "recurring", "stats", "all")

def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one pass of the survey automation jobs")
    parser.add_argument("job", choices=JOBS, help="job to run")
    args = parser.parse_args(argv)

    from db import Base, SessionLocal, engine
    config.configure_logging()
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        results = SurveyScheduler(db).run(args.job)
    logger.info("Scheduler run finished: %s", results)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
