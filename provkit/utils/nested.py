"""
Dotted-path access into free-form JSON trees.

Provider responses and config sections are nested dicts/lists; get_nested_value
walks them with paths like ``"choices.0.delta.content"`` where numeric
segments index into lists.
"""

from typing import Any

_MISSING = object()


def get_nested_value(obj: Any, path: str, default: Any = None) -> Any:
    """
    Resolve a dotted path against nested dicts and lists.

    Examples:
        >>> get_nested_value({"choices": [{"delta": {"content": "hi"}}]}, "choices.0.delta.content")
        'hi'
        >>> get_nested_value({"a": [1]}, "a.5", default=0)
        0
    """
    if not path:
        return obj

    current = obj
    for segment in path.split("."):
        current = _step(current, segment)
        if current is _MISSING:
            return default
    return current


def _step(current: Any, segment: str) -> Any:
    if isinstance(current, dict):
        return current.get(segment, _MISSING)
    if isinstance(current, (list, tuple)):
        try:
            index = int(segment)
        except ValueError:
            return _MISSING
        if -len(current) <= index < len(current):
            return current[index]
        return _MISSING
    return _MISSING


__all__ = ["get_nested_value"]
