from sqlalchemy import Column, Integer, String, Text, DateTime, Date, ForeignKey, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

EXPERIENCE_LEVELS = ("0-6 months", "6-12 months", "1-2 years", "2+ years")
EMPLOYMENT_TYPES = ("Full-time", "Part-time")

def default_target_audience() -> dict:
    return {
        "departments": ["Front of House", "Back of House", "Management"],
        "positions": [],
        "experience_levels": list(EXPERIENCE_LEVELS),
        "employment_types": list(EMPLOYMENT_TYPES),
        "include_all": True,
    }

class Employee(Base):
    __tablename__ = "employees"
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    department = Column(String(50), nullable=True)
    position = Column(String(100), nullable=True)
    employment_type = Column(String(20), nullable=True)
    hire_date = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class Survey(Base):
    __tablename__ = "surveys"
    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(Integer, index=True, nullable=False)
    created_by = Column(String(255), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(String(20), nullable=False, default="draft", index=True)
    target_audience = Column(JSON, nullable=False, default=default_target_audience)

    # schedule
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    frequency = Column(String(20), nullable=False, default="quarterly")
    auto_activate = Column(Boolean, default=False)
    next_scheduled_date = Column(DateTime(timezone=True), nullable=True)
    is_recurring = Column(Boolean, default=False)
    day_of_period = Column(Integer, default=1)
    duration_days = Column(Integer, default=14)
    auto_close = Column(Boolean, default=True)
    recurrence_created = Column(Boolean, default=False)

    # settings
    allow_multiple_responses = Column(Boolean, default=False)
    show_progress_bar = Column(Boolean, default=True)
    require_all_questions = Column(Boolean, default=False)
    send_reminders = Column(Boolean, default=True)
    reminder_days = Column(JSON, nullable=False, default=lambda: [7, 3, 1])

    # notifications
    invites_sent = Column(Boolean, default=False)
    invites_sent_at = Column(DateTime(timezone=True), nullable=True)
    reminders_sent = Column(JSON, nullable=False, default=list)   # ISO timestamps
    survey_completed = Column(Boolean, default=False)
    email_subject = Column(String(255), default="Your Voice Matters - Team Experience Survey")
    invite_message = Column(Text, default="We value your feedback! Please take a few minutes to complete our anonymous team experience survey.")
    reminder_message = Column(Text, default="Reminder: Please complete the team experience survey. Your feedback helps us improve.")
    invite_emails_sent = Column(Integer, default=0)
    reminder_emails_sent = Column(Integer, default=0)

    # cached analytics
    total_invited = Column(Integer, default=0)
    total_responses = Column(Integer, default=0)
    response_rate = Column(Integer, default=0)
    last_calculated = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    questions = relationship("SurveyQuestion", back_populates="survey", cascade="all, delete-orphan",
                             order_by="SurveyQuestion.position")
    tokens = relationship("SurveyToken", back_populates="survey", cascade="all, delete-orphan",
                          order_by="SurveyToken.id")
    responses = relationship("SurveyResponse", back_populates="survey", cascade="all, delete-orphan")

    def question_by_key(self, key: str):
        for q in self.questions:
            if q.key == key:
                return q
        return None

class SurveyQuestion(Base):
    __tablename__ = "survey_questions"
    __table_args__ = (UniqueConstraint("survey_id", "key", name="uq_question_key"),)
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    key = Column(String(64), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    text = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="rating")
    required = Column(Boolean, default=True)
    options = Column(JSON, nullable=True)
    rating_min = Column(Integer, default=1)
    rating_max = Column(Integer, default=10)
    survey = relationship("Survey", back_populates="questions")

class SurveyToken(Base):
    __tablename__ = "survey_tokens"
    __table_args__ = (UniqueConstraint("survey_id", "employee_id", name="uq_token_respondent"),)
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    employee_id = Column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    token = Column(String(64), unique=True, index=True, nullable=False)
    used = Column(Boolean, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    survey = relationship("Survey", back_populates="tokens")
    employee = relationship("Employee")

class SurveyResponse(Base):
    __tablename__ = "survey_responses"
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    store_id = Column(Integer, index=True, nullable=False)
    anonymous_token = Column(String(64), unique=True, index=True, nullable=False)

    # demographic snapshot, deliberately not linked to an employee row
    department = Column(String(50), nullable=True, index=True)
    position = Column(String(100), nullable=True)
    experience_level = Column(String(20), nullable=True)
    employment_type = Column(String(20), nullable=True)

    status = Column(String(20), nullable=False, default="in_progress", index=True)
    completion_percentage = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    time_spent = Column(Integer, default=0)   # seconds
    device_type = Column(String(20), nullable=True)
    user_agent = Column(Text, nullable=True)
    ip_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    survey = relationship("Survey", back_populates="responses")
    answers = relationship("ResponseAnswer", back_populates="response", cascade="all, delete-orphan",
                           order_by="ResponseAnswer.id")

    @property
    def demographics(self) -> dict:
        return {
            "department": self.department,
            "position": self.position,
            "experience_level": self.experience_level,
            "employment_type": self.employment_type,
        }

class ResponseAnswer(Base):
    __tablename__ = "survey_answers"
    id = Column(Integer, primary_key=True, index=True)
    response_id = Column(Integer, ForeignKey("survey_responses.id", ondelete="CASCADE"), index=True, nullable=False)
    question_id = Column(String(64), nullable=False)
    question_text = Column(Text, nullable=False)
    question_type = Column(String(20), nullable=False)
    value = Column(JSON, nullable=True)
    skipped = Column(Boolean, default=False)
    response = relationship("SurveyResponse", back_populates="answers")
