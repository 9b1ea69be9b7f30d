"""Pydantic schemas for performance context and normalized model outputs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

__all__ = [
    "AnswerEvent",
    "PerformanceSnapshot",
    "SkillAccuracy",
    "SkillProgress",
    "CompetencyProgress",
    "QuestionContext",
    "FeedbackResult",
    "Recommendation",
    "ProgressAnalysis",
    "MotivationalMessage",
    "SupportingText",
    "EssayTheme",
    "EssayCriterion",
    "EssayEvaluation",
]


class AnswerEvent(BaseModel):
    """Raw answer record supplied by the storage reader."""

    correct: bool
    response_time_seconds: Optional[float] = None
    answered_at: Optional[datetime] = None


class PerformanceSnapshot(BaseModel):
    total_answered: int = Field(default=0, ge=0)
    correct_count: int = Field(default=0, ge=0)
    accuracy_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    recent_answered: int = Field(default=0, ge=0)
    recent_accuracy_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    avg_response_time_seconds: float = Field(default=0.0, ge=0.0)


class SkillAccuracy(BaseModel):
    total_answered: int = Field(default=0, ge=0)
    correct_count: int = Field(default=0, ge=0)
    accuracy_pct: float = Field(default=0.0, ge=0.0, le=100.0)


class SkillProgress(BaseModel):
    skill_code: str = Field(description="Skill identifier such as 'H7'.")
    competency_code: str = Field(description="Competency identifier such as 'C2'.")
    competency_number: int = 0
    description: str = ""
    competency_description: str = ""
    total_answered: int = Field(default=0, ge=0)
    correct_count: int = Field(default=0, ge=0)
    accuracy_pct: float = Field(default=0.0, ge=0.0, le=100.0)


class CompetencyProgress(BaseModel):
    competency_code: str
    number: int = 0
    description: str = ""
    total_answered: int = Field(default=0, ge=0)
    correct_count: int = Field(default=0, ge=0)
    accuracy_pct: float = Field(default=0.0, ge=0.0, le=100.0)


class QuestionContext(BaseModel):
    """Question payload the caller hands to feedback generation."""

    question_id: Optional[int] = None
    subject: str
    skill_id: Optional[int] = None
    skill_number: Optional[int] = None
    difficulty: float = Field(default=0.5, ge=0.0, le=1.0)
    statement: str = ""
    alternatives: dict[str, str] = Field(
        default_factory=dict,
        description="Alternative letter (A–E) mapped to its text.",
    )
    chosen_answer: str = ""
    correct_answer: str = ""


class FeedbackResult(BaseModel):
    feedback_text: str = ""
    correct_answer_explanation: str = ""
    error_root_cause: str = ""
    misconception_point: str = ""
    review_steps: List[str] = Field(default_factory=list, max_length=3)
    concepts_to_review: List[str] = Field(
        default_factory=list,
        description="Entries formatted as '<code> - <description>' from the subject taxonomy.",
    )
    study_strategy: str = ""
    suggested_difficulty: float = Field(default=0.5, ge=0.0, le=1.0)
    improvement_areas: str = ""
    is_fallback: bool = False


class Recommendation(BaseModel):
    type: Literal["study", "practice", "review"] = "practice"
    content: str
    priority: int = Field(default=3, ge=1, le=5)
    focus_skills: List[str] = Field(default_factory=list)


class ProgressAnalysis(BaseModel):
    progress_summary: str = ""
    recommendations: List[Recommendation] = Field(default_factory=list)
    ideal_difficulty: float = Field(default=0.5, ge=0.0, le=1.0)
    focus_areas: List[str] = Field(default_factory=list)
    priority_skills: List[str] = Field(default_factory=list)
    motivational_message: str = ""
    weekly_goal: str = ""
    is_fallback: bool = False


class MotivationalMessage(BaseModel):
    message: str
    type: Literal["congratulations", "encouragement", "tip", "goal"] = "encouragement"
    icon: str = ""
    is_fallback: bool = False


class SupportingText(BaseModel):
    title: str
    type: str = "referencia"
    content: str = ""
    source: str = ""


class EssayTheme(BaseModel):
    id: str
    title: str
    description: str = ""
    problem_statement: str = ""
    intervention_guidelines: str = ""
    supporting_texts: List[SupportingText] = Field(default_factory=list)


class EssayCriterion(BaseModel):
    number: int = Field(ge=1, le=5)
    title: str
    score: int = Field(ge=0, le=200, multiple_of=20)
    justification: str
    errors: List[str] = Field(default_factory=list)
    remarks: str = ""
    cited_passages: List[str] = Field(default_factory=list)


class EssayEvaluation(BaseModel):
    evaluation_id: Optional[int] = None
    restated_theme: str
    word_count: int = Field(default=0, ge=0)
    criteria: List[EssayCriterion] = Field(min_length=5, max_length=5)
    total_score: int = Field(ge=0, le=1000)
    general_comments: str = ""
    suggestions: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
