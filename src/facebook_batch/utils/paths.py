import re
import typing as t

_SEGMENT_PATTERN = re.compile(pattern=r"([^.\[\]]+)|\[(\d+)\]")


def get_path(obj: t.Any, path: str) -> t.Any:
    """Resolve a dotted path with list indexes, e.g. ``data[0].thread_owner``

    Args:
        obj (typing.Any): The parsed JSON value to walk
        path (str): The path to resolve

    Returns:
        typing.Any: The value found at the path, or None when any segment is missing
    """
    current = obj
    for key, index in _SEGMENT_PATTERN.findall(path):
        if key:
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        else:
            position = int(index)
            if not isinstance(current, list) or position >= len(current):
                return None
            current = current[position]
    return current
