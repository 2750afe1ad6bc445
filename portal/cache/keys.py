"""Cache key builders.

Keys have the form ``{service}_{method}_{params}`` where ``params`` is the
compact JSON form of the parameter mapping with sorted keys, so logically
identical requests always produce identical keys.
"""
import json
from typing import Any, Callable, Mapping, Optional

KEY_SEPARATOR = "_"


def _serialize_params(params: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(
        dict(params or {}),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def generate_key(
    service: str,
    method: str,
    params: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Build the cache key for a (service, method, params) request.

    Args:
        service: Service identifier, e.g. "teacher"
        method: Method identifier, e.g. "getTeacherGroups"
        params: Request parameters (order does not matter)

    Returns:
        Deterministic key, e.g. 'teacher_getTeacherGroups_{"teacherId":"T1"}'

    Raises:
        ValueError: If service or method is empty
    """
    if not service:
        raise ValueError("service identifier must not be empty")
    if not method:
        raise ValueError("method identifier must not be empty")
    return f"{service}{KEY_SEPARATOR}{method}{KEY_SEPARATOR}{_serialize_params(params)}"


def service_prefix(service: str) -> str:
    """Prefix shared by every key of a service."""
    if not service:
        raise ValueError("service identifier must not be empty")
    return f"{service}{KEY_SEPARATOR}"


def param_matcher(service: str, **params: Any) -> Callable[[str], bool]:
    """
    Predicate selecting the keys of `service` that were built with all of
    the given parameter values.

    Example:
        param_matcher("student", studentId="S1") matches
        'student_getStudentGroups_{"studentId":"S1"}' but not
        'student_getStudentGroups_{"studentId":"S2"}'.
    """
    prefix = service_prefix(service)
    expected = json.loads(_serialize_params(params))

    def matches(key: str) -> bool:
        if not key.startswith(prefix):
            return False
        start = key.find(KEY_SEPARATOR + "{", len(prefix))
        if start < 0:
            return False
        try:
            actual = json.loads(key[start + 1:])
        except ValueError:
            return False
        if not isinstance(actual, dict):
            return False
        return all(actual.get(name) == value for name, value in expected.items())

    return matches
