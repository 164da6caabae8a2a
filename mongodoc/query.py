"""
Pure helpers shared by Collection and Document: field alias translation
and merging of query fragments.
"""
from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional

ASC = 1
DESC = -1

_LOGICAL_OPERATORS = ('$or', '$and', '$nor')


def translate_field(name: str, aliases: Optional[Mapping] = None, dot_allowed: bool = True) -> str:
    """Map a logical field name to the stored one.

    ``id`` and ``_id`` always map to ``_id``. For dotted paths only the first
    segment goes through the alias table.
    """
    if name in ('id', '_id'):
        return '_id'
    aliases = aliases or {}
    if not dot_allowed or '.' not in name:
        return aliases.get(name, name)
    head, rest = name.split('.', 1)
    return f"{translate_field(head, aliases, False)}.{rest}"


def translate_keys(criteria: Mapping, translate: Callable[[str], str]) -> Dict[str, Any]:
    """Translate the field names of a criteria mapping, leaving operators alone."""
    translated = {}
    for key, value in criteria.items():
        if key in _LOGICAL_OPERATORS and isinstance(value, (list, tuple)):
            value = [translate_keys(v, translate) if isinstance(v, Mapping) else v for v in value]
        elif key in _LOGICAL_OPERATORS and isinstance(value, Mapping):
            value = translate_keys(value, translate)
        if not key.startswith('$'):
            key = translate(key)
        translated[key] = value
    return translated


def _ordered_intersection(left, right):
    return [v for v in left if v in right]


def _ordered_union(left, right):
    merged = list(left)
    for v in right:
        if v not in merged:
            merged.append(v)
    return merged


def merge_criteria(left: Mapping, right: Mapping) -> Dict[str, Any]:
    """Merge the ``right`` query fragment into ``left`` and return the result.

    * ``$or`` fragments accumulate into one list
    * ``$where`` is replaced
    * ``$in`` lists intersect, ``$nin`` and ``$all`` lists are unioned
    * nested mappings merge recursively, anything else is overwritten
    """
    merged = dict(left)
    for key, value in right.items():
        current = merged.get(key)
        if key == '$or':
            if current is None:
                fragments = []
            elif isinstance(current, (list, tuple)):
                fragments = list(current)
            else:
                fragments = [current]
            if isinstance(value, (list, tuple)):
                fragments.extend(value)
            else:
                fragments.append(value)
            merged[key] = fragments
        elif key == '$where':
            merged[key] = value
        elif isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_criteria(current, value)
        elif key == '$in' and isinstance(current, (list, tuple)) and isinstance(value, (list, tuple)):
            merged[key] = _ordered_intersection(current, value)
        elif key in ('$nin', '$all') and isinstance(current, (list, tuple)) and isinstance(value, (list, tuple)):
            merged[key] = _ordered_union(current, value)
        else:
            merged[key] = value
    return merged


def merge_recursive_distinct(left: Mapping, right: Mapping) -> Dict[str, Any]:
    """Deep merge of two mappings; non-mapping values from ``right`` win."""
    merged = dict(left)
    for key, value in right.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_recursive_distinct(current, value)
        else:
            merged[key] = value
    return merged


def normalize_direction(direction: Any) -> int:
    """``1``, ``'1'`` and ``'asc'`` sort ascending, anything else descending."""
    if isinstance(direction, str):
        return ASC if direction.strip().lower() in ('asc', '1') else DESC
    return ASC if direction == 1 else DESC
