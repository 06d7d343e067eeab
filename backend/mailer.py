"""Outbound survey email over SMTP."""
from __future__ import annotations
import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from html import escape

import config
from retry import with_retry

logger = logging.getLogger(__name__)


def _layout(heading: str, body: str) -> str:
    return f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #E4002B;">{escape(heading)}</h1>
  {body}
  <p>Your answers are anonymous. Managers only ever see combined results.</p>
</div>
"""

def invite_html(user_name: str, survey_title: str, survey_url: str, expiry: datetime, message: str) -> str:
    return _layout("Team Experience Survey", f"""
  <p>Hello {escape(user_name)},</p>
  <p>{escape(message)}</p>
  <p><strong>Survey:</strong> {escape(survey_title)}</p>
  <p><strong>Open until:</strong> {expiry.strftime("%B %d, %Y")}</p>
  <p><a href="{escape(survey_url)}" style="background:#E4002B;color:#fff;padding:10px 20px;text-decoration:none;border-radius:4px;">Take the survey</a></p>
""")

def reminder_html(user_name: str, survey_title: str, survey_url: str, days_left, message: str) -> str:
    left = f"{days_left} day(s) left" if isinstance(days_left, int) else "Closing soon"
    return _layout("Survey Reminder", f"""
  <p>Hello {escape(user_name)},</p>
  <p>{escape(message)}</p>
  <p><strong>Survey:</strong> {escape(survey_title)} ({left})</p>
  <p><a href="{escape(survey_url)}">Finish the survey</a></p>
""")


class Mailer:
    """Send HTML email through the configured SMTP relay.

    Without ``SMTP_HOST`` every send is logged and skipped.
    """

    def __init__(self, host: str | None = None, port: int | None = None,
                 user: str | None = None, password: str | None = None,
                 use_tls: bool | None = None, sender: str | None = None):
        self.host = config.SMTP_HOST if host is None else host
        self.port = port or config.SMTP_PORT
        self.user = config.SMTP_USER if user is None else user
        self.password = config.SMTP_PASSWORD if password is None else password
        self.use_tls = config.SMTP_USE_TLS if use_tls is None else use_tls
        self.sender = sender or config.EMAIL_FROM

    def _deliver(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.use_tls:
                server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.send_message(msg)

    def send_html(self, to_email: str, subject: str, html_content: str) -> bool:
        """Send one HTML email, retrying transient SMTP failures.

        Returns:
            bool: True if handed to the relay, False if email is not configured.
        """
        if not self.host:
            logger.warning("SMTP not configured; skipping email to %s (%s)", to_email, subject)
            return False
        msg = MIMEMultipart()
        msg["From"] = self.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg.attach(MIMEText(html_content, "html"))
        with_retry(self._deliver, msg)
        logger.info("Sent email to %s: %s", to_email, subject)
        return True

    def send_invite(self, to_email: str, **context) -> bool:
        return self.send_html(to_email, context.pop("subject"), invite_html(**context))

    def send_reminder(self, to_email: str, **context) -> bool:
        return self.send_html(to_email, context.pop("subject"), reminder_html(**context))
