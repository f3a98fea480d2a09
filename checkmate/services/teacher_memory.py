"""
Teacher memory: an append-only log of teacher correction patterns.

Each record pairs a question identifier with what a student wrote, what the
teacher remarked and the grade awarded. Smart grading looks up the most
recent records for a question and shows them to the scoring model as
guidance.

The storage backend is injected (MemoryStore). SqlAlchemyMemoryStore is the
production store; InMemoryMemoryStore keeps records in process for tests and
local runs.
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import MemoryStoreError
from ..models.teacher_annotation import TeacherAnnotation
from ..schemas.grading import TeacherRemark, TrainingRecord

logger = logging.getLogger(__name__)

UNKNOWN_QUESTION = "unknown"
QUESTION_PREFIX_LENGTH = 50
DEFAULT_LOOKUP_LIMIT = 5


def question_hash_for(remark: TeacherRemark) -> str:
    """
    Derive the lookup key for a remark.

    The question id when present, else the first 50 characters of the
    question text, else "unknown". Best-effort, not guaranteed unique.
    """
    if remark.question_id:
        return remark.question_id
    if remark.question_text:
        return remark.question_text[:QUESTION_PREFIX_LENGTH]
    return UNKNOWN_QUESTION


# =============================================================================
# Storage backends
# =============================================================================

class MemoryStore(ABC):
    """Persistence interface behind TeacherMemory."""

    @abstractmethod
    async def append(self, question_hash: str, remark: TeacherRemark) -> TrainingRecord:
        """Append one record and return it as stored."""

    @abstractmethod
    async def query_by_key(self, question_hash: str, limit: int) -> List[TrainingRecord]:
        """Records whose key equals question_hash exactly, newest first."""

    @abstractmethod
    async def all(self) -> List[TrainingRecord]:
        """Every record, in insertion order."""


class InMemoryMemoryStore(MemoryStore):
    """Process-local store. Safe for concurrent appends and lookups."""

    def __init__(self):
        self._records: List[TrainingRecord] = []
        self._lock = threading.Lock()

    async def append(self, question_hash: str, remark: TeacherRemark) -> TrainingRecord:
        with self._lock:
            record = TrainingRecord(
                id=len(self._records) + 1,
                question_hash=question_hash,
                question_text=remark.question_text,
                student_answer_text=remark.student_answer_text,
                teacher_remark=remark.teacher_remark,
                grade_awarded=remark.grade_awarded,
                created_at=datetime.utcnow(),
            )
            self._records.append(record)
        return record

    async def query_by_key(self, question_hash: str, limit: int) -> List[TrainingRecord]:
        with self._lock:
            matches = [r for r in reversed(self._records) if r.question_hash == question_hash]
        return matches[:limit]

    async def all(self) -> List[TrainingRecord]:
        with self._lock:
            return list(self._records)


class SqlAlchemyMemoryStore(MemoryStore):
    """
    Store backed by the teacher_annotations table.

    Every operation opens its own session, so concurrent file workers never
    share one.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def append(self, question_hash: str, remark: TeacherRemark) -> TrainingRecord:
        try:
            async with self._session_factory() as session:
                row = TeacherAnnotation(
                    question_hash=question_hash,
                    question_text=remark.question_text,
                    student_answer_text=remark.student_answer_text,
                    teacher_remark=remark.teacher_remark,
                    grade_awarded=remark.grade_awarded,
                    created_at=datetime.utcnow(),
                )
                session.add(row)
                await session.commit()
                await session.refresh(row)
                return TrainingRecord.model_validate(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save teacher remark for {question_hash}: {e}")
            raise MemoryStoreError(f"Failed to save teacher remark: {e}") from e

    async def query_by_key(self, question_hash: str, limit: int) -> List[TrainingRecord]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(TeacherAnnotation)
                    .where(TeacherAnnotation.question_hash == question_hash)
                    .order_by(TeacherAnnotation.created_at.desc(), TeacherAnnotation.id.desc())
                    .limit(limit)
                )
                return [TrainingRecord.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to query teacher memory for {question_hash}: {e}")
            raise MemoryStoreError(f"Failed to query teacher memory: {e}") from e

    async def all(self) -> List[TrainingRecord]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(TeacherAnnotation).order_by(TeacherAnnotation.id))
                return [TrainingRecord.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to read teacher memory: {e}")
            raise MemoryStoreError(f"Failed to read teacher memory: {e}") from e


# =============================================================================
# Teacher memory
# =============================================================================

class TeacherMemory:
    """Save and look up teacher correction patterns."""

    def __init__(self, store: MemoryStore, lookup_limit: int = DEFAULT_LOOKUP_LIMIT):
        self.store = store
        self.lookup_limit = lookup_limit

    async def save_remark(self, remark: TeacherRemark) -> TrainingRecord:
        """Append a correction. Storage errors propagate as MemoryStoreError."""
        question_hash = question_hash_for(remark)
        record = await self.store.append(question_hash, remark)
        logger.info(f"Saved teacher remark for question '{question_hash}' (grade {record.grade_awarded})")
        return record

    async def find_similar(self, identifier: Optional[str], limit: Optional[int] = None) -> List[TrainingRecord]:
        """Up to `limit` (default 5) records with exactly this identifier, newest first."""
        if not identifier:
            return []
        return await self.store.query_by_key(str(identifier), limit or self.lookup_limit)

    async def get_all(self) -> List[TrainingRecord]:
        """Full dump, for inspection tooling."""
        return await self.store.all()
