"""Student and teacher data accessors.

The domain services themselves (database queries) live outside this
package; they are injected as objects exposing one coroutine per method,
e.g. ``await student_service.get_student_groups(student_id)``.
"""
from typing import Any, Dict, Optional

from portal.cache import CacheType, FetchOrchestrator
from portal.data_context import DataContext

STUDENT_METHODS: Dict[str, str] = {
    "getStudentGroups": "get_student_groups",
    "getStudentAttendance": "get_student_attendance",
    "getStudentPayments": "get_student_payments",
    "getStudentCalendar": "get_student_calendar",
    "getUpcomingSessions": "get_upcoming_sessions",
}

TEACHER_METHODS: Dict[str, str] = {
    "getTeacherGroups": "get_teacher_groups",
    "getAllTeacherSessions": "get_all_teacher_sessions",
    "getUpcomingSessions": "get_upcoming_sessions",
    "getAttendanceStats": "get_attendance_stats",
}


def _domain_call(service_obj: Any, methods: Dict[str, str], method: str, entity_id: str):
    attr = methods.get(method)
    if attr is None:
        raise ValueError(f"Unsupported method: {method}")
    bound = getattr(service_obj, attr, None)
    if not callable(bound):
        raise TypeError(f"{type(service_obj).__name__} has no callable {attr}()")
    return lambda: bound(entity_id)


def _use_entity_data(
    context: DataContext,
    service: str,
    id_param: str,
    methods: Dict[str, str],
    service_obj: Any,
    entity_id: str,
    method: str,
    cache_type: CacheType,
    auto_refresh: bool,
    refresh_interval: Optional[float],
) -> FetchOrchestrator:
    if not entity_id:
        raise ValueError(f"{id_param} must not be empty")
    return context.use_fetch(
        service,
        method,
        {id_param: entity_id},
        _domain_call(service_obj, methods, method, entity_id),
        cache_type=cache_type,
        auto_refresh=auto_refresh,
        refresh_interval=refresh_interval,
    )


def use_student_data(
    context: DataContext,
    student_service: Any,
    student_id: str,
    method: str,
    cache_type: CacheType = CacheType.MEDIUM_PRIORITY,
    auto_refresh: bool = True,
    refresh_interval: Optional[float] = None,
) -> FetchOrchestrator:
    """
    Orchestrator for one of a student's data sets.

    Args:
        context: Data context owning the cache
        student_service: Domain service with the STUDENT_METHODS coroutines
        student_id: Student identifier
        method: One of STUDENT_METHODS, e.g. "getStudentGroups"

    Raises:
        ValueError: If the method is not supported or student_id is empty
    """
    return _use_entity_data(
        context, "student", "studentId", STUDENT_METHODS,
        student_service, student_id, method,
        cache_type, auto_refresh, refresh_interval,
    )


def use_teacher_data(
    context: DataContext,
    teacher_service: Any,
    teacher_id: str,
    method: str,
    cache_type: CacheType = CacheType.MEDIUM_PRIORITY,
    auto_refresh: bool = True,
    refresh_interval: Optional[float] = None,
) -> FetchOrchestrator:
    """
    Orchestrator for one of a teacher's data sets.

    See use_student_data; `method` is one of TEACHER_METHODS.
    """
    return _use_entity_data(
        context, "teacher", "teacherId", TEACHER_METHODS,
        teacher_service, teacher_id, method,
        cache_type, auto_refresh, refresh_interval,
    )
