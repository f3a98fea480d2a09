# Models package
from .teacher_annotation import TeacherAnnotation

__all__ = [
    "TeacherAnnotation",
]
