# schemas.py
from datetime import date, datetime
from typing import List, Optional, Literal, Union
from pydantic import BaseModel, Field

QuestionType = Literal["rating", "text", "multiple_choice"]
Department = Literal["Front of House", "Back of House", "Management", "Other"]
ExperienceLevel = Literal["0-6 months", "6-12 months", "1-2 years", "2+ years"]
EmploymentType = Literal["Full-time", "Part-time"]
Frequency = Literal["one-time", "quarterly", "monthly", "biannual", "annual"]

AnswerValue = Union[int, float, str, List[str], None]

class EmployeeCreate(BaseModel):
    name: str
    email: Optional[str] = None
    department: Optional[Department] = None
    position: Optional[str] = None
    employment_type: Optional[EmploymentType] = None
    hire_date: Optional[date] = None
    is_active: bool = True

class EmployeeOut(EmployeeCreate):
    id: int
    class Config:
        from_attributes = True

class RatingScale(BaseModel):
    min: int = 1
    max: int = 10

class QuestionCreate(BaseModel):
    id: Optional[str] = None              # stable key, auto-assigned q<n> when omitted
    text: str
    type: QuestionType = "rating"
    required: bool = True
    options: Optional[List[str]] = None
    rating_scale: RatingScale = Field(default_factory=RatingScale)

class TargetAudience(BaseModel):
    departments: List[str] = ["Front of House", "Back of House", "Management"]
    positions: List[str] = []
    experience_levels: List[ExperienceLevel] = ["0-6 months", "6-12 months", "1-2 years", "2+ years"]
    employment_types: List[EmploymentType] = ["Full-time", "Part-time"]
    include_all: bool = True

class RecurringSettings(BaseModel):
    day_of_period: int = Field(1, ge=1, le=28)
    duration_days: int = Field(14, ge=1)
    auto_close: bool = True

class Schedule(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    frequency: Frequency = "quarterly"
    auto_activate: bool = False
    next_scheduled_date: Optional[datetime] = None
    is_recurring: bool = False
    recurring: RecurringSettings = Field(default_factory=RecurringSettings)

class SurveySettings(BaseModel):
    allow_multiple_responses: bool = False
    show_progress_bar: bool = True
    require_all_questions: bool = False
    send_reminders: bool = True
    reminder_days: List[int] = [7, 3, 1]

class SurveyCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    questions: List[QuestionCreate] = []
    target_audience: Optional[TargetAudience] = None
    schedule: Schedule = Field(default_factory=Schedule)
    settings: SurveySettings = Field(default_factory=SurveySettings)

class ScheduleUpdate(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    frequency: Optional[Frequency] = None
    auto_activate: Optional[bool] = None
    next_scheduled_date: Optional[datetime] = None
    is_recurring: Optional[bool] = None
    recurring: Optional[RecurringSettings] = None

class SurveyUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    questions: Optional[List[QuestionCreate]] = None
    target_audience: Optional[TargetAudience] = None
    schedule: Optional[ScheduleUpdate] = None
    settings: Optional[SurveySettings] = None

class GenerateTokens(BaseModel):
    employee_ids: List[int]

class Demographics(BaseModel):
    department: Optional[Department] = None
    position: Optional[str] = None
    experience_level: Optional[ExperienceLevel] = None
    employment_type: Optional[EmploymentType] = None

class AnswerIn(BaseModel):
    question_id: str
    value: AnswerValue = None

class DeviceInfo(BaseModel):
    device_type: Optional[Literal["mobile", "tablet", "desktop"]] = None
    user_agent: Optional[str] = None

class ResponseSave(BaseModel):
    demographics: Optional[Demographics] = None
    answers: List[AnswerIn] = []
    device_info: Optional[DeviceInfo] = None
