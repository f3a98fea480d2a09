"""
Vision extraction stage.

Turns one exam page image into question/answer segments. The prompt depends
on the grading mode variant; the response is parsed and validated into an
ExtractionResult. A malformed response yields an empty result. Capability
failures and unreadable images are raised so the caller can fail the file.
"""
import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError

from ..config import settings
from ..schemas.grading import ExamQuestion, ExtractionResult
from .capability import VisionCapability, extract_json_array, extract_json_object, strip_code_fences
from .imaging import ExamImage, prepare_image
from .prompts import QUESTION_SHEET_PROMPT, ExamMode, render_question_context

logger = logging.getLogger(__name__)


class VisionExtractionStage:
    """Extract segments, rubric text and question sheets from page images."""

    def __init__(
        self,
        capability: VisionCapability,
        max_image_size: Optional[int] = None,
        enhance_images: Optional[bool] = None,
    ):
        self.capability = capability
        self.max_image_size = max_image_size or settings.vision_max_image_size
        self.enhance_images = settings.vision_enhance_images if enhance_images is None else enhance_images

    def _prepare(self, data: bytes, filename: str) -> ExamImage:
        return prepare_image(data, filename=filename, max_size=self.max_image_size, enhance=self.enhance_images)

    async def extract(self, image: bytes, mode: ExamMode, filename: str = "page") -> ExtractionResult:
        """
        Extract segments from a single page.

        Raises:
            ImageDecodeError: The bytes are not a readable image
            CapabilityError: The capability failed after retries
        """
        page = self._prepare(image, filename)
        response = await self.capability.invoke(mode.vision_prompt(), [page])

        data = extract_json_object(response)
        if data is None:
            logger.error(f"[{filename}] No JSON object in vision response")
            logger.debug(f"[{filename}] Raw response: {(response or '')[:500]}")
            return ExtractionResult()

        try:
            result = ExtractionResult.model_validate(data)
        except ValidationError as e:
            logger.error(f"[{filename}] Vision response has unexpected shape: {e}")
            return ExtractionResult()

        logger.info(f"[{filename}] Extracted {len(result.segments)} segments ({mode.grading_mode.value} mode)")
        return result

    async def extract_text(self, image: bytes, prompt: str, filename: str = "page") -> str:
        """Plain-text OCR of an image, used for rubric images."""
        page = self._prepare(image, filename)
        response = await self.capability.invoke(prompt, [page])
        return strip_code_fences(response)

    async def extract_question_sheet(
        self,
        image: bytes,
        filename: str = "questions",
    ) -> Tuple[List[ExamQuestion], str]:
        """
        Read a question paper.

        Returns the question definitions found and a context block for the
        separate-sheet prompt. When the response is not a JSON array, no
        definitions are returned and the raw text becomes the context.
        """
        page = self._prepare(image, filename)
        response = await self.capability.invoke(QUESTION_SHEET_PROMPT, [page])

        items = extract_json_array(response)
        if items is None:
            logger.warning(f"[{filename}] Question sheet response is not a JSON array, using raw text")
            return [], strip_code_fences(response)

        questions: List[ExamQuestion] = []
        for item in items:
            try:
                questions.append(ExamQuestion.model_validate(item))
            except ValidationError as e:
                logger.warning(f"[{filename}] Skipping unreadable question entry: {e}")

        logger.info(f"[{filename}] Question sheet: {len(questions)} questions")
        return questions, render_question_context(questions)
