"""
Shared test fixtures for the grading pipeline.
The capability is a scripted fake and the teacher memory lives in process.
Zero network calls.
"""
import io
import json
from typing import Callable, List, Optional, Sequence, Tuple

import pytest
from PIL import Image

from checkmate.exceptions import MemoryStoreError
from checkmate.services.capability import VisionCapability
from checkmate.services.imaging import ExamImage
from checkmate.services.teacher_memory import InMemoryMemoryStore, TeacherMemory
from checkmate.services.upload_storage import InMemoryExamFile


class FakeCapability(VisionCapability):
    """Capability whose answers come from a responder(prompt, images) callable.

    A responder may return a string or an exception instance, which is raised.
    Every call is recorded in `calls`.
    """

    def __init__(self, responder: Callable[[str, List[ExamImage]], object]):
        self.responder = responder
        self.calls: List[Tuple[str, List[ExamImage]]] = []

    @property
    def name(self) -> str:
        return "fake"

    async def invoke(self, prompt: str, images: Optional[Sequence[ExamImage]] = None) -> str:
        images = list(images or [])
        self.calls.append((prompt, images))
        answer = self.responder(prompt, images)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    @property
    def scoring_calls(self) -> List[str]:
        return [prompt for prompt, images in self.calls if not images]

    @property
    def vision_calls(self) -> List[str]:
        return [prompt for prompt, images in self.calls if images]


class FailingStore(InMemoryMemoryStore):
    """Store whose writes always fail."""

    async def append(self, question_hash, remark):
        raise MemoryStoreError("disk full")


def make_png(width: int = 40, height: int = 30, color: str = "white") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def image_width(image: ExamImage) -> int:
    """Width of a prepared image; tests tell pages apart by their size."""
    return Image.open(io.BytesIO(image.data)).size[0]


def extraction_json(*segments: dict) -> str:
    return "```json\n" + json.dumps({"segments": list(segments)}, ensure_ascii=False) + "\n```"


def scoring_json(score, feedback: str = "תשובה נכונה", carry_forward: bool = False) -> str:
    return json.dumps({
        "question_number": "1",
        "quality_score": score,
        "feedback_hebrew": feedback,
        "correct_answer": "42",
        "carry_forward_error_detected": carry_forward,
        "reasoning_english": "Looks right",
    }, ensure_ascii=False)


def segment(number, answer="תשובה", text="שאלה", notes=None, mark=None) -> dict:
    return {
        "question_number": number,
        "question_text": text,
        "student_answer_text": answer,
        "teacher_notes_detected": notes,
        "manual_score_detected": mark,
    }


@pytest.fixture
def png_bytes():
    return make_png


@pytest.fixture
def memory():
    return TeacherMemory(InMemoryMemoryStore())


@pytest.fixture
def exam_file():
    def _make(width: int = 40, filename: Optional[str] = None) -> InMemoryExamFile:
        return InMemoryExamFile(make_png(width=width), filename=filename or f"page_{width}.png")
    return _make
