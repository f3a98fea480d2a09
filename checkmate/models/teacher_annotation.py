"""
SQLAlchemy ORM model for the teacher memory store.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text

from ..database import Base


class TeacherAnnotation(Base):
    """
    One teacher correction pattern: what the student wrote, what the
    teacher said, and the grade awarded.

    Rows are append-only. Lookups go through question_hash, which is the
    question number when known, else a 50-character prefix of the
    question text, else "unknown".
    """
    __tablename__ = "teacher_annotations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    question_hash = Column(String(255), nullable=False, index=True)
    question_text = Column(Text, nullable=False, default="")
    student_answer_text = Column(Text, nullable=False, default="")
    teacher_remark = Column(Text, nullable=True)
    grade_awarded = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<TeacherAnnotation(id={self.id}, question_hash={self.question_hash}, grade={self.grade_awarded})>"
