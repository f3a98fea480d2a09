"""
Test: scoring stage outcomes, clamping and prompt content.
"""
import pytest

from checkmate.exceptions import CapabilityError
from checkmate.schemas.grading import Segment
from checkmate.services.scoring import MALFORMED_RESPONSE_FEEDBACK, SCORING_FAILED_FEEDBACK, ScoringStage
from conftest import FakeCapability, scoring_json

SEGMENT = Segment(question_number="3", question_text="כמה זה 2+2?", student_answer_text="4")


def stage_returning(answer):
    capability = FakeCapability(lambda prompt, images: answer)
    return ScoringStage(capability), capability


class TestScore:
    @pytest.mark.asyncio
    async def test_successful_score(self):
        stage, _ = stage_returning(scoring_json(85, "כמעט מושלם", carry_forward=True))

        outcome = await stage.score(SEGMENT, "התשובה היא 4", points_possible=10)

        assert outcome.ok
        assert outcome.result.score == 85
        assert outcome.result.feedback == "כמעט מושלם"
        assert outcome.result.is_carry_forward
        assert outcome.result.points_possible == 10
        assert outcome.result.source == "ai"
        assert outcome.result.correct_answer == "42"
        assert not outcome.result.scoring_failed

    @pytest.mark.asyncio
    async def test_legacy_score_field(self):
        stage, _ = stage_returning('{"score": 60, "feedback_hebrew": "חלקי"}')
        outcome = await stage.score(SEGMENT, "rubric")
        assert outcome.ok
        assert outcome.result.score == 60

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw, expected", [(150, 100), (-20, 0), ("77", 77)])
    async def test_score_clamped(self, raw, expected):
        stage, _ = stage_returning(scoring_json(raw))
        outcome = await stage.score(SEGMENT, "rubric")
        assert outcome.result.score == expected

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        stage, _ = stage_returning("The answer looks fine to me.")

        outcome = await stage.score(SEGMENT, "rubric")

        assert not outcome.ok
        assert outcome.result.score == 0
        assert outcome.result.scoring_failed
        assert outcome.result.feedback == MALFORMED_RESPONSE_FEEDBACK

    @pytest.mark.asyncio
    async def test_missing_score_is_malformed(self):
        stage, _ = stage_returning('{"feedback_hebrew": "אין ציון"}')
        outcome = await stage.score(SEGMENT, "rubric")
        assert not outcome.ok
        assert outcome.result.feedback == MALFORMED_RESPONSE_FEEDBACK

    @pytest.mark.asyncio
    async def test_capability_failure(self):
        stage, _ = stage_returning(CapabilityError("exhausted", attempts=3))

        outcome = await stage.score(SEGMENT, "rubric", points_possible=5)

        assert not outcome.ok
        assert outcome.result.score == 0
        assert outcome.result.feedback == SCORING_FAILED_FEEDBACK
        assert outcome.result.points_possible == 5
        assert "exhausted" in outcome.failure_reason


class TestPrompt:
    @pytest.mark.asyncio
    async def test_prompt_contents(self):
        stage, capability = stage_returning(scoring_json(90))

        await stage.score(SEGMENT, "התשובה היא 4")

        prompt = capability.scoring_calls[0]
        assert "כמה זה 2+2?" in prompt
        assert "התשובה היא 4" in prompt
        assert "טעות נגררת" in prompt
        assert "Historical Teacher Remarks" not in prompt

    @pytest.mark.asyncio
    async def test_history_appended(self):
        stage, capability = stage_returning(scoring_json(90))

        await stage.score(SEGMENT, "rubric", historical_context="\n**Historical Teacher Remarks for Similar Questions:**\n")

        assert capability.scoring_calls[0].rstrip().endswith("**Historical Teacher Remarks for Similar Questions:**")

    @pytest.mark.asyncio
    async def test_question_text_override(self):
        stage, capability = stage_returning(scoring_json(90))

        outcome = await stage.score(SEGMENT, "rubric", question_text="מה סכום 2 ו-2?")

        assert "מה סכום 2 ו-2?" in capability.scoring_calls[0]
        assert outcome.result.question_text == "מה סכום 2 ו-2?"
