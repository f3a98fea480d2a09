"""
Pydantic schemas for the grading pipeline.

Capability output is loosely typed JSON; everything the model returns is
validated and coerced into these models at the parse boundary. A shape that
cannot be coerced is treated as a malformed response by the calling stage.
"""
import math
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


# =============================================================================
# Coercion helpers
# =============================================================================

def _to_text(value: Any) -> str:
    """Coerce a JSON scalar into a stripped string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "" if value is False else "true"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, (dict, list)):
        raise ValueError("expected a scalar value")
    return str(value).strip()


def clamp_score(value: Any) -> float:
    """Coerce anything into a finite quality score in [0, 100]."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(score):
        return 0.0
    return max(0.0, min(100.0, score))


# =============================================================================
# Enums
# =============================================================================

class GradingMode(str, Enum):
    """How the uploaded pages should be read."""
    STANDARD = "standard"    # question and answer on the same page
    SEPARATE = "separate"    # answer sheet only, questions on a separate paper
    TRAINING = "training"    # harvest teacher markings, never grade


class ScoringPolicy(str, Enum):
    """Aggregation policy used for the final grade."""
    RELATIVE = "relative"                  # points-weighted, every question declares points
    AVERAGE = "average"                    # no question declares points
    FALLBACK_AVERAGE = "fallback_average"  # some, but not all, questions declare points


class FileStatus(str, Enum):
    """Per-file processing state."""
    PENDING = "pending"
    EXTRACTED = "extracted"
    TRAINING_SAVED = "training_saved"
    PER_SEGMENT_SCORED = "per_segment_scored"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Extraction schemas
# =============================================================================

class Segment(BaseModel):
    """A single question/answer unit extracted from one page image."""
    model_config = ConfigDict(frozen=True)

    question_number: str = Field("", description="Question label, not guaranteed numeric (e.g. '3', 'ב', '2א')")
    question_text: str = Field("", description="Printed question text, or a placeholder")
    student_answer_text: str = Field("", description="Transcribed handwriting; empty means no answer")
    teacher_notes_detected: Optional[str] = Field(None, description="Teacher annotation found on the page")
    manual_score_detected: Optional[str] = Field(None, description="Raw teacher mark token, e.g. 'V', '-2', '90'")

    @field_validator("question_number", "question_text", "student_answer_text", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _to_text(value)

    @field_validator("teacher_notes_detected", "manual_score_detected", mode="before")
    @classmethod
    def _coerce_optional_text(cls, value: Any) -> Optional[str]:
        text = _to_text(value)
        return text or None

    @property
    def has_answer(self) -> bool:
        return bool(self.student_answer_text)

    @property
    def shows_human_grading(self) -> bool:
        return bool(self.manual_score_detected or self.teacher_notes_detected)


class ExtractionResult(BaseModel):
    """Parsed output of the vision extraction stage for one page."""
    segments: List[Segment] = Field(default_factory=list)

    @field_validator("segments", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class ExamQuestion(BaseModel):
    """
    A question definition declared by the teacher (or read off a question sheet).

    When present, its rubric overrides the general rubric for that question and
    its points enable the relative (points-weighted) aggregation policy.
    """
    number: str = Field(..., description="Question number as printed")
    text: Optional[str] = Field(None, description="Full question text")
    rubric: Optional[str] = Field(None, description="Question-specific rubric / expected answer")
    points: Optional[float] = Field(None, description="Point value of the question")

    @model_validator(mode="before")
    @classmethod
    def _accept_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "number" not in data:
                for key in ("question_number", "id"):
                    if key in data:
                        data["number"] = data[key]
                        break
            if data.get("rubric") is None and data.get("answer") is not None:
                data["rubric"] = data["answer"]
        return data

    @field_validator("number", mode="before")
    @classmethod
    def _coerce_number(cls, value: Any) -> str:
        text = _to_text(value)
        if not text:
            raise ValueError("question number is required")
        return text

    @field_validator("points", mode="before")
    @classmethod
    def _coerce_points(cls, value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            points = float(value)
        except (TypeError, ValueError):
            return None
        return points if math.isfinite(points) else None


# =============================================================================
# Scoring schemas
# =============================================================================

class ScoringResponse(BaseModel):
    """The JSON object the scoring prompt asks the model for."""
    quality_score: float
    feedback_hebrew: str = ""
    carry_forward_error_detected: bool = False
    correct_answer: Optional[str] = None
    reasoning_english: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _score_alias(cls, data: Any) -> Any:
        # Older prompts asked for "score" instead of "quality_score"
        if isinstance(data, dict) and data.get("quality_score") is None and data.get("score") is not None:
            data = {**data, "quality_score": data["score"]}
        return data

    @field_validator("feedback_hebrew", mode="before")
    @classmethod
    def _coerce_feedback(cls, value: Any) -> str:
        return _to_text(value)

    @field_validator("carry_forward_error_detected", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("correct_answer", "reasoning_english", mode="before")
    @classmethod
    def _coerce_optional_text(cls, value: Any) -> Optional[str]:
        if isinstance(value, (dict, list)):
            return str(value)
        return _to_text(value) or None


class GradedResult(BaseModel):
    """The scored outcome for one segment."""
    model_config = ConfigDict(frozen=True)

    question_number: str
    question_text: str = ""
    student_answer: str = ""
    score: float = Field(0, description="Quality score 0-100, independent of point value")
    feedback: str = Field("", description="Feedback in Hebrew")
    is_carry_forward: bool = False
    points_possible: Optional[float] = None
    points_earned: Optional[float] = None
    source: Literal["ai", "manual"] = "ai"
    scoring_failed: bool = False
    failure_reason: Optional[str] = None
    reasoning: Optional[str] = None
    correct_answer: Optional[str] = None

    @field_validator("question_number", mode="before")
    @classmethod
    def _coerce_number(cls, value: Any) -> str:
        return _to_text(value)

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> float:
        return clamp_score(value)


# =============================================================================
# Teacher memory schemas
# =============================================================================

class TeacherRemark(BaseModel):
    """Input for TeacherMemory.save_remark."""
    question_id: Optional[str] = None
    question_text: str = ""
    student_answer_text: str = ""
    teacher_remark: Optional[str] = None
    grade_awarded: int = 0

    @field_validator("question_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        return _to_text(value) or None

    @field_validator("question_text", "student_answer_text", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _to_text(value)

    @field_validator("grade_awarded", mode="before")
    @classmethod
    def _coerce_grade(cls, value: Any) -> int:
        return int(round(clamp_score(value)))


class TrainingRecord(BaseModel):
    """A stored row of the teacher memory."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    question_hash: str
    question_text: str = ""
    student_answer_text: str = ""
    teacher_remark: Optional[str] = None
    grade_awarded: int = 0
    created_at: datetime


# =============================================================================
# Report schemas
# =============================================================================

class FileOutcome(BaseModel):
    """What happened to one uploaded page."""
    filename: str
    status: FileStatus = FileStatus.PENDING
    segments_detected: int = 0
    results_count: int = 0
    remarks_saved: int = 0
    error: Optional[str] = None


class AggregatedReport(BaseModel):
    """Final output of one grading run."""
    model_config = ConfigDict(frozen=True)

    total_score: float = 0
    scoring_mode: ScoringPolicy = ScoringPolicy.AVERAGE
    total_possible: float = 100
    questions: List[GradedResult] = Field(default_factory=list)
    expected_questions: Optional[int] = None
    detected_questions: int = 0
    is_complete: Optional[bool] = None
    files: List[FileOutcome] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @computed_field
    @property
    def has_errors(self) -> bool:
        return bool(self.errors) or any(f.status == FileStatus.FAILED for f in self.files)

    @computed_field
    @property
    def failed_questions(self) -> int:
        return sum(1 for q in self.questions if q.scoring_failed)


class GradingEvent(BaseModel):
    """Ordered status update emitted while a grading run progresses."""
    type: Literal["progress", "complete", "error"]
    event_id: int
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
