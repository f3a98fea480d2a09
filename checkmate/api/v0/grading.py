"""
Grading API endpoints - v0.

Grade uploaded exam pages (JSON report or SSE progress stream) and inspect
the teacher memory.
"""
import json
import logging
from contextlib import AsyncExitStack
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from ...exceptions import InputValidationError, MemoryStoreError
from ...schemas.grading import AggregatedReport, ErrorResponse, ExamQuestion, TrainingRecord
from ...services.grading_pipeline import (
    GradingBatch,
    GradingPipeline,
    get_grading_pipeline,
    get_teacher_memory,
)
from ...services.teacher_memory import TeacherMemory
from ...services.upload_storage import UploadScope, UploadStorage, get_upload_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v0/grading", tags=["grading"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def parse_exam_questions(raw: Optional[str]) -> List[ExamQuestion]:
    """Parse the optional exam_questions form field (a JSON array of question definitions)."""
    if not raw or not raw.strip():
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InputValidationError(f"Invalid JSON in exam_questions: {str(e)}")
    if not isinstance(items, list):
        raise InputValidationError("exam_questions must be a JSON array")
    try:
        return [ExamQuestion.model_validate(item) for item in items]
    except ValidationError as e:
        raise InputValidationError(f"Invalid question definition: {str(e)}")


async def _spool(scope: UploadScope, upload: Optional[UploadFile]):
    if upload is None:
        return None
    content = await upload.read()
    return await scope.spool(content, upload.filename or "upload", upload.content_type or "image/png")


async def _build_batch(
    scope: UploadScope,
    exam_files: List[UploadFile],
    mode: str,
    smart_grading: bool,
    rubric_text: Optional[str],
    rubric_file: Optional[UploadFile],
    question_file: Optional[UploadFile],
    expected_questions: Optional[int],
    exam_questions: Optional[str],
) -> GradingBatch:
    questions = parse_exam_questions(exam_questions)
    files = [await _spool(scope, f) for f in exam_files or []]
    return GradingBatch(
        files=files,
        mode=mode,
        smart_grading=smart_grading,
        rubric_text=rubric_text,
        rubric_file=await _spool(scope, rubric_file),
        question_file=await _spool(scope, question_file),
        expected_questions=expected_questions,
        exam_questions=questions,
    )


# =============================================================================
# Grading Endpoints
# =============================================================================

@router.post(
    "/grade",
    response_model=AggregatedReport,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Grade exam pages",
)
async def grade_exam(
    exam_files: List[UploadFile] = File(..., description="Scanned exam page images"),
    mode: str = Form("standard", description="standard | separate | training"),
    smart_grading: bool = Form(False, description="Use teacher memory as scoring guidance"),
    rubric_text: Optional[str] = Form(None, description="Rubric as text"),
    rubric_file: Optional[UploadFile] = File(None, description="Rubric as an image"),
    question_file: Optional[UploadFile] = File(None, description="Question paper (separate mode)"),
    expected_questions: Optional[int] = Form(None, description="Number of questions on the exam"),
    exam_questions: Optional[str] = Form(None, description="JSON array of {number, text, rubric, points}"),
    pipeline: GradingPipeline = Depends(get_grading_pipeline),
    storage: UploadStorage = Depends(get_upload_storage),
) -> AggregatedReport:
    """
    Grade a batch of exam pages and return the aggregated report.

    In training mode nothing is graded: teacher markings are saved to the
    teacher memory and the report has no questions.
    """
    logger.info(f"Received grading request: {len(exam_files)} files, mode={mode}")
    try:
        async with storage.scope() as scope:
            batch = await _build_batch(
                scope, exam_files, mode, smart_grading, rubric_text,
                rubric_file, question_file, expected_questions, exam_questions,
            )
            return await pipeline.run(batch)
    except InputValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MemoryStoreError as e:
        logger.error(f"Teacher memory failure during grading: {e}")
        raise HTTPException(status_code=500, detail=f"Teacher memory error: {str(e)}")


@router.post(
    "/grade/stream",
    responses={400: {"model": ErrorResponse}},
    summary="Grade exam pages with a progress stream",
    description="SSE stream of grading events. The last event is 'complete' (with the report) or 'error'.",
)
async def grade_exam_stream(
    exam_files: List[UploadFile] = File(..., description="Scanned exam page images"),
    mode: str = Form("standard", description="standard | separate | training"),
    smart_grading: bool = Form(False, description="Use teacher memory as scoring guidance"),
    rubric_text: Optional[str] = Form(None, description="Rubric as text"),
    rubric_file: Optional[UploadFile] = File(None, description="Rubric as an image"),
    question_file: Optional[UploadFile] = File(None, description="Question paper (separate mode)"),
    expected_questions: Optional[int] = Form(None, description="Number of questions on the exam"),
    exam_questions: Optional[str] = Form(None, description="JSON array of {number, text, rubric, points}"),
    pipeline: GradingPipeline = Depends(get_grading_pipeline),
    storage: UploadStorage = Depends(get_upload_storage),
):
    """
    SSE stream of grading events.

    Events:
    - progress: {"type": "progress", "message": "...", "data": {...}}
    - complete: {"type": "complete", "message": "...", "data": <report>}
    - error: {"type": "error", "message": "..."}
    """
    # The upload scope outlives this handler. The stream closes it, and the
    # background task closes it when the body is never iterated.
    stack = AsyncExitStack()
    scope = await stack.enter_async_context(storage.scope())
    try:
        batch = await _build_batch(
            scope, exam_files, mode, smart_grading, rubric_text,
            rubric_file, question_file, expected_questions, exam_questions,
        )
        pipeline.validate_batch(batch)
    except InputValidationError as e:
        await stack.aclose()
        raise HTTPException(status_code=400, detail=str(e))
    except BaseException:
        await stack.aclose()
        raise

    async def event_stream():
        try:
            async for event in pipeline.stream(batch):
                event_data = {"type": event.type}
                if event.data:
                    event_data["data"] = event.data
                if event.message:
                    event_data["message"] = event.message

                yield f"id: {event.event_id}\ndata: {json.dumps(event_data, ensure_ascii=False)}\n\n"
        finally:
            await stack.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(stack.aclose),
    )


# =============================================================================
# Teacher Memory Endpoints
# =============================================================================

@router.get(
    "/memory",
    response_model=List[TrainingRecord],
    summary="List all teacher memory records",
)
async def list_memory(memory: TeacherMemory = Depends(get_teacher_memory)):
    try:
        return await memory.get_all()
    except MemoryStoreError as e:
        raise HTTPException(status_code=500, detail=f"Teacher memory error: {str(e)}")


@router.get(
    "/memory/{question_id}",
    response_model=List[TrainingRecord],
    summary="Teacher memory records for a question",
)
async def get_memory_for_question(
    question_id: str,
    limit: int = Query(5, ge=1, le=50, description="Maximum number of records"),
    memory: TeacherMemory = Depends(get_teacher_memory),
):
    """Most recent records for a question id, newest first."""
    try:
        return await memory.find_similar(question_id, limit=limit)
    except MemoryStoreError as e:
        raise HTTPException(status_code=500, detail=f"Teacher memory error: {str(e)}")
