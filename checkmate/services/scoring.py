"""
Scoring stage: grade one segment with the capability.

Returns a ScoringOutcome rather than raising. Malformed responses and
capability failures both produce a zero-scored result flagged for manual
review.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from ..schemas.grading import GradedResult, ScoringResponse, Segment
from .capability import VisionCapability, extract_json_object
from .prompts import build_scoring_prompt

logger = logging.getLogger(__name__)

MALFORMED_RESPONSE_FEEDBACK = "שגיאה בפענוח תשובת הבודק. אנא בדוק ידנית."
SCORING_FAILED_FEEDBACK = "שגיאה בבדיקת שאלה זו. אנא בדוק ידנית."


@dataclass(frozen=True)
class ScoringOutcome:
    ok: bool
    result: GradedResult
    failure_reason: Optional[str] = None


class ScoringStage:
    """Score a segment against a rubric, optionally guided by past teacher remarks."""

    def __init__(self, capability: VisionCapability):
        self.capability = capability

    def _failed(self, segment: Segment, feedback: str, reason: str,
                points_possible: Optional[float]) -> ScoringOutcome:
        result = GradedResult(
            question_number=segment.question_number,
            question_text=segment.question_text,
            student_answer=segment.student_answer_text,
            score=0,
            feedback=feedback,
            points_possible=points_possible,
            source="ai",
            scoring_failed=True,
            failure_reason=reason,
        )
        return ScoringOutcome(ok=False, result=result, failure_reason=reason)

    async def score(
        self,
        segment: Segment,
        rubric: str,
        historical_context: Optional[str] = None,
        question_text: Optional[str] = None,
        points_possible: Optional[float] = None,
    ) -> ScoringOutcome:
        """
        Score one answered segment.

        Args:
            segment: The extracted segment
            rubric: Rubric text for this question (or the general rubric)
            historical_context: Rendered teacher history, appended as guidance
            question_text: Question text from a definition, overriding the segment's
            points_possible: Point value carried onto the result
        """
        prompt = build_scoring_prompt(
            student_answer=segment.student_answer_text,
            rubric=rubric,
            question_text=question_text or segment.question_text,
            question_number=segment.question_number,
        )
        if historical_context:
            prompt += historical_context

        try:
            response = await self.capability.invoke(prompt)
        except Exception as e:
            # CapabilityError after retries, or a bare provider error
            logger.error(f"Scoring failed for question {segment.question_number}: {e}")
            return self._failed(segment, SCORING_FAILED_FEEDBACK, str(e), points_possible)

        data = extract_json_object(response)
        if data is None:
            logger.error(f"Malformed scoring response for question {segment.question_number}")
            return self._failed(segment, MALFORMED_RESPONSE_FEEDBACK, "malformed response", points_possible)

        try:
            parsed = ScoringResponse.model_validate(data)
        except ValidationError as e:
            logger.error(f"Scoring response for question {segment.question_number} has unexpected shape: {e}")
            return self._failed(segment, MALFORMED_RESPONSE_FEEDBACK, "malformed response", points_possible)

        result = GradedResult(
            question_number=segment.question_number,
            question_text=question_text or segment.question_text,
            student_answer=segment.student_answer_text,
            score=parsed.quality_score,
            feedback=parsed.feedback_hebrew,
            is_carry_forward=parsed.carry_forward_error_detected,
            points_possible=points_possible,
            source="ai",
            reasoning=parsed.reasoning_english,
            correct_answer=parsed.correct_answer,
        )
        logger.info(f"Question {segment.question_number}: score {result.score:g}")
        return ScoringOutcome(ok=True, result=result)
