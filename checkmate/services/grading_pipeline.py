"""
Grading pipeline orchestrator.

One run takes a batch of exam page images, a grading mode and a rubric, and
produces an AggregatedReport:

    validate -> resolve rubric -> read question sheet (separate mode)
             -> per file (concurrently): LangGraph workflow
                    extract -> harvest (training) | score (grading modes) -> finish
             -> aggregate

A file that fails (unreadable image, capability exhausted) is marked FAILED
and contributes no results; the rest of the batch continues. Teacher memory
errors abort the run.

Progress is published as ordered GradingEvents on an optional asyncio.Queue;
stream() exposes the same events as an async generator.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple, TypedDict, Union

from langgraph.graph import END, StateGraph

from ..config import settings
from ..exceptions import InputValidationError, MemoryStoreError
from ..schemas.grading import (
    AggregatedReport,
    ExamQuestion,
    FileOutcome,
    FileStatus,
    GradedResult,
    GradingEvent,
    GradingMode,
    Segment,
    TeacherRemark,
)
from .aggregator import aggregate
from .capability import VisionCapability
from .manual_marks import decode_manual_mark, is_whole_question, parse_question_number
from .prompts import (
    RUBRIC_EXTRACTION_PROMPT,
    ExamMode,
    build_historical_context,
    mode_for,
    render_question_context,
)
from .scoring import ScoringStage
from .teacher_memory import TeacherMemory
from .upload_storage import ExamFile
from .vision_extraction import VisionExtractionStage

logger = logging.getLogger(__name__)

NO_RUBRIC = "No rubric provided."
UNKNOWN_QUESTION_TEXT = "Unknown Question"
MANUAL_GRADE_REMARK = "Manual Grade"


@dataclass
class GradingBatch:
    """Everything one grading request supplies."""
    files: List[ExamFile]
    mode: Union[GradingMode, str] = GradingMode.STANDARD
    smart_grading: bool = False
    rubric_text: Optional[str] = None
    rubric_file: Optional[ExamFile] = None
    question_file: Optional[ExamFile] = None
    expected_questions: Optional[int] = None
    exam_questions: List[ExamQuestion] = field(default_factory=list)


@dataclass
class RunContext:
    """Per-run values shared by every file workflow."""
    mode: ExamMode
    rubric: str
    smart_grading: bool
    questions: List[ExamQuestion]
    events: "EventChannel"
    _by_number: Dict[int, ExamQuestion] = field(default_factory=dict, init=False, repr=False)
    _by_label: Dict[str, ExamQuestion] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        for question in self.questions:
            self._by_label.setdefault(question.number, question)
            number = parse_question_number(question.number)
            if number is not None:
                self._by_number.setdefault(number, question)

    def question_for(self, label: str) -> Optional[ExamQuestion]:
        if label in self._by_label:
            return self._by_label[label]
        return self._by_number.get(parse_question_number(label))

    def points_for(self, label: str) -> Optional[float]:
        """Points of the question a label names in full. Sub-question labels ("2א") get none here."""
        question = self.question_for(label)
        if question is None:
            return None
        if label in self._by_label or is_whole_question(label):
            return question.points
        return None

    def share_sub_question_points(self, results: List[GradedResult]) -> List[GradedResult]:
        """
        Split a question's points equally among its sub-question results.

        "2א" and "2ב" under a 20 point question 2 get 10 points each. When
        question 2 also appears as a whole, its parts keep no points.
        """
        parts: Dict[int, List[str]] = {}
        whole = set()
        for result in results:
            label = result.question_number
            number = parse_question_number(label)
            if number not in self._by_number or label in self._by_label:
                continue
            if is_whole_question(label):
                whole.add(number)
                continue
            labels = parts.setdefault(number, [])
            if label not in labels:
                labels.append(label)

        shared = []
        for result in results:
            number = parse_question_number(result.question_number)
            labels = parts.get(number)
            points = self._by_number[number].points if labels else None
            if labels and points and number not in whole and result.question_number in labels:
                result = result.model_copy(update={"points_possible": points / len(labels)})
            shared.append(result)
        return shared

    def rubric_for(self, question: Optional[ExamQuestion]) -> str:
        if question and question.rubric:
            return question.rubric
        return self.rubric


class EventChannel:
    """Assigns increasing event ids and publishes events in order."""

    def __init__(self, queue: Optional[asyncio.Queue] = None):
        self.queue = queue
        self._next_id = 0

    def emit(self, event_type: str, message: Optional[str] = None, data: Optional[dict] = None) -> GradingEvent:
        self._next_id += 1
        event = GradingEvent(type=event_type, event_id=self._next_id, message=message, data=data)
        if self.queue is not None:
            self.queue.put_nowait(event)
        return event


class FileState(TypedDict):
    """State for the per-file workflow."""
    context: RunContext
    exam_file: ExamFile
    status: FileStatus
    segments: List[Segment]
    results: List[GradedResult]
    remarks_saved: int
    error: Optional[str]


class GradingPipeline:
    """Runs grading batches against a capability and a teacher memory."""

    def __init__(
        self,
        capability: VisionCapability,
        memory: TeacherMemory,
        auto_learn_threshold: Optional[float] = None,
        max_concurrent_files: Optional[int] = None,
        max_files: Optional[int] = None,
        max_file_size_mb: Optional[float] = None,
        extraction: Optional[VisionExtractionStage] = None,
        scoring_capability: Optional[VisionCapability] = None,
    ):
        self.capability = capability
        self.memory = memory
        self.extraction = extraction or VisionExtractionStage(capability)
        self.scoring = ScoringStage(scoring_capability or capability)
        self.auto_learn_threshold = (
            settings.auto_learn_threshold if auto_learn_threshold is None else auto_learn_threshold
        )
        self.max_concurrent_files = max_concurrent_files or settings.max_concurrent_files
        self.max_files = max_files or settings.max_exam_files
        self.max_file_size_mb = max_file_size_mb or settings.max_upload_size_mb
        self.workflow = self._build_workflow()

    # =========================================================================
    # Public API
    # =========================================================================

    def validate_batch(self, batch: GradingBatch) -> GradingMode:
        """Reject bad input before any capability call. Returns the parsed mode."""
        if not batch.files:
            raise InputValidationError("לא הועלו קבצי מבחן")

        try:
            mode = GradingMode(batch.mode)
        except ValueError:
            allowed = ", ".join(m.value for m in GradingMode)
            raise InputValidationError(f"מצב בדיקה לא מוכר: {batch.mode} (אפשרויות: {allowed})") from None

        if len(batch.files) > self.max_files:
            raise InputValidationError(f"ניתן להעלות עד {self.max_files} קבצי מבחן")

        max_bytes = self.max_file_size_mb * 1024 * 1024
        for exam_file in [*batch.files, batch.rubric_file, batch.question_file]:
            if exam_file is None:
                continue
            if exam_file.size == 0:
                raise InputValidationError(f"הקובץ {exam_file.filename} ריק")
            if exam_file.size > max_bytes:
                raise InputValidationError(
                    f"הקובץ {exam_file.filename} גדול מדי. המקסימום הוא {self.max_file_size_mb:g}MB"
                )

        if batch.expected_questions is not None and batch.expected_questions < 0:
            raise InputValidationError("מספר השאלות הצפוי חייב להיות חיובי")

        return mode

    async def run(self, batch: GradingBatch, events: Optional[asyncio.Queue] = None) -> AggregatedReport:
        """
        Grade a batch and return the report.

        Raises:
            InputValidationError: Bad input, before any capability call
            MemoryStoreError: The teacher memory failed

        Any failure is published as an "error" event before it propagates.
        """
        channel = EventChannel(events)
        try:
            report = await self._run(batch, channel)
        except Exception as e:
            channel.emit("error", str(e))
            raise
        channel.emit("complete", "הבדיקה הושלמה", report.model_dump(mode="json"))
        return report

    async def stream(self, batch: GradingBatch) -> AsyncIterator[GradingEvent]:
        """
        Run a batch and yield its events as they happen.

        The last event is "complete" (carrying the report) or "error".
        """
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self.run(batch, events=queue))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if not task.done():
                task.cancel()

        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Grading run failed: {task.exception()}")

    # =========================================================================
    # Batch preprocessing
    # =========================================================================

    async def _run(self, batch: GradingBatch, channel: EventChannel) -> AggregatedReport:
        grading_mode = self.validate_batch(batch)
        errors: List[str] = []

        logger.info("=" * 80)
        logger.info(f"STARTING GRADING RUN: {len(batch.files)} files, mode={grading_mode.value}, "
                    f"smart_grading={batch.smart_grading}")
        logger.info("=" * 80)
        channel.emit("progress", f"מתחיל בדיקה של {len(batch.files)} קבצים", {"files": len(batch.files)})

        rubric = await self._resolve_rubric(batch, errors)
        questions, context = await self._resolve_questions(batch, grading_mode, errors)

        ctx = RunContext(
            mode=mode_for(grading_mode, context),
            rubric=rubric,
            smart_grading=batch.smart_grading,
            questions=questions,
            events=channel,
        )

        semaphore = asyncio.Semaphore(self.max_concurrent_files)
        tasks = [
            asyncio.ensure_future(self._process_file(exam_file, ctx, semaphore))
            for exam_file in batch.files
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        results: List[GradedResult] = []
        files: List[FileOutcome] = []
        for outcome, file_results in outcomes:
            files.append(outcome)
            results.extend(file_results)
            if outcome.status == FileStatus.FAILED:
                errors.append(f"{outcome.filename}: {outcome.error}")

        results = ctx.share_sub_question_points(results)
        report = aggregate(results, batch.expected_questions, files=files, errors=errors)

        logger.info("=" * 80)
        logger.info(f"GRADING RUN COMPLETE: {len(results)} results, total={report.total_score}")
        logger.info("=" * 80)
        return report

    async def _resolve_rubric(self, batch: GradingBatch, errors: List[str]) -> str:
        if batch.rubric_text and batch.rubric_text.strip():
            return batch.rubric_text.strip()

        if batch.rubric_file is None:
            return NO_RUBRIC

        try:
            data = await batch.rubric_file.read()
            rubric = await self.extraction.extract_text(data, RUBRIC_EXTRACTION_PROMPT, batch.rubric_file.filename)
        except Exception as e:
            logger.error(f"Rubric extraction failed: {e}")
            errors.append(f"שגיאה בקריאת המחוון: {e}")
            return NO_RUBRIC
        finally:
            await batch.rubric_file.discard()

        logger.info(f"Extracted rubric from image ({len(rubric)} chars)")
        return rubric or NO_RUBRIC

    async def _resolve_questions(
        self,
        batch: GradingBatch,
        grading_mode: GradingMode,
        errors: List[str],
    ) -> Tuple[List[ExamQuestion], str]:
        """Question definitions for the run and the separate-sheet context block."""
        questions = list(batch.exam_questions)
        context = render_question_context(questions) if questions else ""

        if batch.question_file is None:
            return questions, context

        if grading_mode != GradingMode.SEPARATE:
            logger.info(f"Ignoring question sheet {batch.question_file.filename} in {grading_mode.value} mode")
            await batch.question_file.discard()
            return questions, context

        try:
            data = await batch.question_file.read()
            sheet_questions, sheet_context = await self.extraction.extract_question_sheet(
                data, batch.question_file.filename
            )
        except Exception as e:
            logger.error(f"Question sheet extraction failed: {e}")
            errors.append(f"שגיאה בקריאת דף השאלות: {e}")
            return questions, context
        finally:
            await batch.question_file.discard()

        # Explicit definitions win over what was read off the sheet
        declared = {parse_question_number(q.number) or q.number for q in questions}
        for question in sheet_questions:
            if (parse_question_number(question.number) or question.number) not in declared:
                questions.append(question)

        if sheet_questions:
            context = render_question_context(questions)
        else:
            context = "\n".join(part for part in (context, sheet_context) if part)
        return questions, context

    # =========================================================================
    # Per-file workflow
    # =========================================================================

    def _build_workflow(self):
        """Build the LangGraph workflow run once per file."""
        workflow = StateGraph(FileState)

        workflow.add_node("extract", self._extract)
        workflow.add_node("harvest", self._harvest)
        workflow.add_node("score", self._score)
        workflow.add_node("finish", self._finish)

        workflow.set_entry_point("extract")
        workflow.add_conditional_edges(
            "extract",
            self._route,
            {
                "harvest": "harvest",
                "score": "score",
                "finish": "finish",
            }
        )
        workflow.add_edge("harvest", "finish")
        workflow.add_edge("score", "finish")
        workflow.add_edge("finish", END)
        return workflow.compile()

    async def _process_file(
        self,
        exam_file: ExamFile,
        ctx: RunContext,
        semaphore: asyncio.Semaphore,
    ) -> Tuple[FileOutcome, List[GradedResult]]:
        async with semaphore:
            initial_state: FileState = {
                "context": ctx,
                "exam_file": exam_file,
                "status": FileStatus.PENDING,
                "segments": [],
                "results": [],
                "remarks_saved": 0,
                "error": None,
            }
            final_state = await self.workflow.ainvoke(
                initial_state,
                config={
                    "tags": ["grading-pipeline", f"mode-{ctx.mode.grading_mode.value}"],
                    "metadata": {"filename": exam_file.filename},
                }
            )

        outcome = FileOutcome(
            filename=exam_file.filename,
            status=final_state["status"],
            segments_detected=len(final_state["segments"]),
            results_count=len(final_state["results"]),
            remarks_saved=final_state["remarks_saved"],
            error=final_state["error"],
        )
        return outcome, final_state["results"]

    async def _extract(self, state: FileState) -> Dict:
        ctx = state["context"]
        exam_file = state["exam_file"]
        ctx.events.emit("progress", f"מעבד את הקובץ {exam_file.filename}", {"filename": exam_file.filename})

        try:
            data = await exam_file.read()
            extraction = await self.extraction.extract(data, ctx.mode, exam_file.filename)
        except MemoryStoreError:
            raise
        except Exception as e:
            logger.error(f"Error processing file {exam_file.filename}: {e}")
            ctx.events.emit(
                "progress",
                f"שגיאה בעיבוד הקובץ {exam_file.filename}",
                {"filename": exam_file.filename, "error": str(e)},
            )
            return {"status": FileStatus.FAILED, "error": str(e)}
        finally:
            await exam_file.discard()

        ctx.events.emit(
            "progress",
            f"זוהו {len(extraction.segments)} שאלות בקובץ {exam_file.filename}",
            {"filename": exam_file.filename, "segments": len(extraction.segments)},
        )
        return {"status": FileStatus.EXTRACTED, "segments": extraction.segments}

    def _route(self, state: FileState) -> str:
        if state["status"] == FileStatus.FAILED:
            return "finish"
        if state["context"].mode.grading_mode == GradingMode.TRAINING:
            return "harvest"
        return "score"

    async def _harvest(self, state: FileState) -> Dict:
        """Training mode: store teacher markings, produce no results."""
        saved = 0
        for segment in state["segments"]:
            if not (segment.has_answer and segment.teacher_notes_detected):
                continue
            await self.memory.save_remark(TeacherRemark(
                question_id=segment.question_number,
                question_text=segment.question_text or UNKNOWN_QUESTION_TEXT,
                student_answer_text=segment.student_answer_text,
                teacher_remark=segment.teacher_notes_detected,
                grade_awarded=decode_manual_mark(segment.manual_score_detected),
            ))
            saved += 1
            logger.info(f"Saved training data for Q{segment.question_number}")

        state["context"].events.emit(
            "progress",
            f"נשמרו {saved} הערות מורה מהקובץ {state['exam_file'].filename}",
            {"filename": state["exam_file"].filename, "remarks_saved": saved},
        )
        return {"status": FileStatus.TRAINING_SAVED, "remarks_saved": saved}

    async def _score(self, state: FileState) -> Dict:
        """Grading modes: digitize manual marks, score everything else."""
        ctx = state["context"]
        segments = state["segments"]
        graded_page = any(s.shows_human_grading for s in segments)
        if graded_page:
            logger.info(f"[{state['exam_file'].filename}] Page already carries teacher grading")

        results: List[GradedResult] = []
        saved = 0

        for segment in segments:
            if not segment.has_answer:
                continue

            question = ctx.question_for(segment.question_number)
            points = ctx.points_for(segment.question_number)
            question_text = question.text if question and question.text else None

            if graded_page and segment.manual_score_detected:
                results.append(await self._digitize_manual_mark(segment, points, question_text))
                saved += 1
                continue

            ctx.events.emit(
                "progress",
                f"בודק שאלה {segment.question_number}",
                {"filename": state["exam_file"].filename, "question_number": segment.question_number},
            )

            historical_context = None
            if ctx.smart_grading:
                records = await self.memory.find_similar(segment.question_number)
                historical_context = build_historical_context(records) or None

            outcome = await self.scoring.score(
                segment,
                ctx.rubric_for(question),
                historical_context=historical_context,
                question_text=question_text,
                points_possible=points,
            )
            results.append(outcome.result)

            if outcome.ok and outcome.result.score > self.auto_learn_threshold:
                await self.memory.save_remark(TeacherRemark(
                    question_id=segment.question_number,
                    question_text=outcome.result.question_text,
                    student_answer_text=segment.student_answer_text,
                    teacher_remark=outcome.result.feedback,
                    grade_awarded=outcome.result.score,
                ))
                saved += 1

        return {"status": FileStatus.PER_SEGMENT_SCORED, "results": results, "remarks_saved": saved}

    async def _digitize_manual_mark(
        self,
        segment: Segment,
        points: Optional[float],
        question_text: Optional[str],
    ) -> GradedResult:
        raw = segment.manual_score_detected or ""
        score = decode_manual_mark(raw)
        logger.info(f"[Teacher Memory] Digitizing manual grade for Q{segment.question_number}: '{raw}' -> {score}")

        await self.memory.save_remark(TeacherRemark(
            question_id=segment.question_number,
            question_text=segment.question_text,
            student_answer_text=segment.student_answer_text,
            teacher_remark=segment.teacher_notes_detected or MANUAL_GRADE_REMARK,
            grade_awarded=score,
        ))

        return GradedResult(
            question_number=segment.question_number,
            question_text=question_text or segment.question_text,
            student_answer=segment.student_answer_text,
            score=score,
            feedback=segment.teacher_notes_detected or f'זוהה ציון ידני: "{raw}"',
            points_possible=points,
            source="manual",
            reasoning=f'Manual grade detected: "{raw}" -> converted to {score}%',
        )

    def _finish(self, state: FileState) -> Dict:
        if state["status"] == FileStatus.FAILED:
            return {"status": FileStatus.FAILED}
        logger.info(
            f"[{state['exam_file'].filename}] Done: {len(state['results'])} results, "
            f"{state['remarks_saved']} remarks saved"
        )
        return {"status": FileStatus.DONE}


# Global instance
_grading_pipeline: Optional[GradingPipeline] = None
_teacher_memory: Optional[TeacherMemory] = None


def get_teacher_memory() -> TeacherMemory:
    """Get or create the process-wide TeacherMemory backed by the database."""
    global _teacher_memory
    if _teacher_memory is None:
        from ..database import AsyncSessionLocal
        from .teacher_memory import SqlAlchemyMemoryStore
        _teacher_memory = TeacherMemory(
            SqlAlchemyMemoryStore(AsyncSessionLocal),
            lookup_limit=settings.memory_lookup_limit,
        )
    return _teacher_memory


def get_grading_pipeline() -> GradingPipeline:
    """Get or create the global GradingPipeline instance."""
    global _grading_pipeline
    if _grading_pipeline is None:
        from .capability import get_capability, get_scoring_capability
        _grading_pipeline = GradingPipeline(
            get_capability(),
            get_teacher_memory(),
            scoring_capability=get_scoring_capability(),
        )
    return _grading_pipeline
