"""
Safe serialization of arbitrary captured values.

Values passed to an intercepted diagnostic call can be anything: cyclic
structures, live host objects, exceptions, callables. safe_serialize()
turns them into JSON-compatible data without ever raising.

Rules:
- Primitives pass through
- Mappings keep at most max_keys keys, sequences at most max_items items
- Nesting deeper than max_depth becomes a placeholder
- Cycles become "[Circular]"
- Callables become "[Function: name]"
- Exceptions become {name, message, stack}
- Any failure becomes "[Serialization Error: ...]" and is logged once per
  exception type
"""

import dataclasses
import logging
import traceback
from typing import Any, List, Set

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_reported_failures: Set[str] = set()

MAX_DEPTH_PLACEHOLDER = "[Object: max depth reached]"
CIRCULAR_PLACEHOLDER = "[Circular]"


def _report_once(error: Exception) -> None:
    name = type(error).__name__
    if name not in _reported_failures:
        _reported_failures.add(name)
        logger.warning(f"[VIGIL:SERIALIZER] Could not serialize captured value: {error}")


def serialize_exception(error: BaseException) -> dict:
    stack = traceback.format_exception(type(error), error, error.__traceback__)
    return {
        "name": type(error).__name__,
        "message": str(error),
        "stack": "".join(stack).strip(),
    }


def safe_serialize(value: Any, max_depth: int = 3, max_keys: int = 20, max_items: int = 10) -> Any:
    """
    Convert value to JSON-compatible data within the given bounds.

    Never raises.
    """
    try:
        return _serialize(value, 0, max_depth, max_keys, max_items, set())
    except Exception as e:
        _report_once(e)
        return f"[Serialization Error: {e}]"


def _serialize(value: Any, depth: int, max_depth: int, max_keys: int, max_items: int, seen: Set[int]) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, bytes):
        return value[:256].decode("utf-8", errors="replace")
    if isinstance(value, BaseException):
        return serialize_exception(value)
    if isinstance(value, type):
        return f"[Class: {value.__name__}]"
    if callable(value) and not isinstance(value, BaseModel):
        return f"[Function: {getattr(value, '__name__', None) or 'anonymous'}]"

    if depth >= max_depth:
        return MAX_DEPTH_PLACEHOLDER
    marker = id(value)
    if marker in seen:
        return CIRCULAR_PLACEHOLDER

    seen.add(marker)
    try:
        if isinstance(value, BaseModel):
            value = value.model_dump()
        elif dataclasses.is_dataclass(value):
            value = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}

        if isinstance(value, dict):
            result = {}
            for key in list(value.keys())[:max_keys]:
                try:
                    result[str(key)] = _serialize(value[key], depth + 1, max_depth, max_keys, max_items, seen)
                except Exception as e:
                    _report_once(e)
                    result[str(key)] = f"[Error accessing property: {e}]"
            return result

        if isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)[:max_items]
            return [_serialize(item, depth + 1, max_depth, max_keys, max_items, seen) for item in items]

        attrs = getattr(value, "__dict__", None)
        if isinstance(attrs, dict):
            result = {"__type__": type(value).__name__}
            for key in list(attrs)[:max_keys]:
                result[key] = _serialize(attrs[key], depth + 1, max_depth, max_keys, max_items, seen)
            return result

        return repr(value)
    finally:
        seen.discard(marker)


def capture_stack(max_depth: int = 8, skip: int = 2) -> List[str]:
    """
    Capture the caller's stack as formatted frame lines.

    Args:
        max_depth: Maximum frames kept
        skip: Innermost frames dropped (besides this function's own)

    Returns:
        Frames innermost first, "file:line in function"
    """
    try:
        frames = traceback.extract_stack()[:-1]
        if skip:
            frames = frames[:-skip]
        frames = list(reversed(frames))[:max_depth]
        return [f"{f.filename}:{f.lineno} in {f.name}" for f in frames]
    except Exception as e:
        return [f"[Stack trace error: {e}]"]
