"""
Survey analytics over completed responses.

Computes per-question statistics, a pooled overall score, demographic
frequency tables and a per-day submission timeline. Everything here is a
pure function of the survey's question order and the response set passed in.
"""
from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field, fields
from typing import Any, Iterable, Mapping, Optional

from clock import as_utc
from recorder import is_answered, rating_bounds, round_half_up

DIMENSIONS = ("department", "position", "experience_level", "employment_type")


@dataclass(frozen=True)
class AnalyticsFilters:
    """Demographic equality filters; ``None`` means no restriction."""

    department: Optional[str] = None
    position: Optional[str] = None
    experience_level: Optional[str] = None
    employment_type: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "AnalyticsFilters":
        data = data or {}
        return cls(**{f.name: (data.get(f.name) or None) for f in fields(cls)})

    def matches(self, response) -> bool:
        for name in DIMENSIONS:
            wanted = getattr(self, name)
            if wanted is not None and getattr(response, name) != wanted:
                return False
        return True


@dataclass
class QuestionAnalytics:
    question_id: str
    question_text: str
    question_type: str
    total_responses: int
    average_rating: Optional[float] = None
    rating_distribution: Optional[list[int]] = None
    # index i counts answers equal to i + 1
    text_responses: Optional[list[str]] = None
    option_counts: Optional[dict[str, int]] = None


@dataclass
class DemographicBreakdown:
    total_responses: int
    department: list[dict[str, Any]] = field(default_factory=list)
    position: list[dict[str, Any]] = field(default_factory=list)
    experience_level: list[dict[str, Any]] = field(default_factory=list)
    employment_type: list[dict[str, Any]] = field(default_factory=list)
    # Each entry: {"value": str | None, "count": int}


@dataclass
class AnalyticsReport:
    total_responses: int
    overall_score: Optional[float]
    questions: list[QuestionAnalytics] = field(default_factory=list)
    demographics: Optional[DemographicBreakdown] = None
    timeline: list[dict[str, Any]] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)

def _creation_key(response) -> tuple:
    started = as_utc(getattr(response, "started_at", None))
    return (started.timestamp() if started else 0.0, getattr(response, "id", None) or 0)

def _answer_map(response) -> dict[str, Any]:
    return {a.question_id: a for a in response.answers}

def _frequency(values: Iterable[Optional[str]]) -> list[dict[str, Any]]:
    counts = Counter(values)
    ordered = sorted(counts.items(), key=lambda kv: (-kv[1], "" if kv[0] is None else str(kv[0])))
    return [{"value": v, "count": c} for v, c in ordered]

def _question_analytics(question, answer_maps: list[dict[str, Any]]) -> QuestionAnalytics:
    values = []
    for answers in answer_maps:
        row = answers.get(question.key)
        if row is not None and not row.skipped and is_answered(row.value):
            values.append(row.value)

    out = QuestionAnalytics(
        question_id=question.key,
        question_text=question.text,
        question_type=question.type,
        total_responses=len(values),
    )

    if question.type == "rating":
        ratings = [v for v in values if _is_number(v)]
        _, scale = rating_bounds(question)
        out.rating_distribution = [0] * scale
        for r in ratings:
            if float(r).is_integer() and 1 <= r <= scale:
                out.rating_distribution[int(r) - 1] += 1
        if ratings:
            out.average_rating = round_half_up(sum(ratings) / len(ratings), 1)
    elif question.type == "text":
        out.text_responses = [v for v in values if isinstance(v, str)]
    elif question.type == "multiple_choice":
        counts: dict[str, int] = {opt: 0 for opt in (question.options or [])}
        for v in values:
            for choice in (v if isinstance(v, list) else [v]):
                counts[choice] = counts.get(choice, 0) + 1
        out.option_counts = counts

    return out

def _timeline(responses) -> list[dict[str, Any]]:
    days = Counter(
        as_utc(r.completed_at).date().isoformat()
        for r in responses if r.completed_at is not None
    )
    return [{"date": d, "count": days[d]} for d in sorted(days)]

def compute_analytics(
    survey,
    responses: Iterable,
    filters: AnalyticsFilters | Mapping[str, Any] | None = None,
) -> AnalyticsReport:
    """
    Summarize the completed responses of ``survey``.

    Args:
        survey: Survey with ordered ``questions``.
        responses: Responses to aggregate; anything not completed is ignored.
        filters: Optional demographic equality filters. Filtering here gives
            the same report as filtering the responses beforehand.

    Returns:
        AnalyticsReport
    """
    if not isinstance(filters, AnalyticsFilters):
        filters = AnalyticsFilters.from_mapping(filters)

    selected = sorted(
        (r for r in responses if r.status == "completed" and filters.matches(r)),
        key=_creation_key,
    )
    answer_maps = [_answer_map(r) for r in selected]

    questions = [_question_analytics(q, answer_maps) for q in survey.questions]

    # pooled: every individual numeric rating answer counts once
    pooled = []
    for q in survey.questions:
        if q.type != "rating":
            continue
        for answers in answer_maps:
            row = answers.get(q.key)
            if row is not None and not row.skipped and _is_number(row.value):
                pooled.append(row.value)
    overall = round_half_up(sum(pooled) / len(pooled), 1) if pooled else None

    demographics = DemographicBreakdown(
        total_responses=len(selected),
        **{dim: _frequency(getattr(r, dim) for r in selected) for dim in DIMENSIONS},
    )

    return AnalyticsReport(
        total_responses=len(selected),
        overall_score=overall,
        questions=questions,
        demographics=demographics,
        timeline=_timeline(selected),
    )
