"""
Domain-facing helpers built on the data context.
"""
from .portal_data import (
    STUDENT_METHODS,
    TEACHER_METHODS,
    use_student_data,
    use_teacher_data,
)

__all__ = [
    "STUDENT_METHODS",
    "TEACHER_METHODS",
    "use_student_data",
    "use_teacher_data",
]
