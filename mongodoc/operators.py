"""
In-memory equivalents of the atomic update operators.

Every function takes a mutable document (or sub-mapping), a dotted path and
the operator payload and changes the document in place the way the server
would. Missing intermediate containers are created as mappings, so
``set(doc, 'foo.0', 'x')`` on an empty document gives ``{'foo': {'0': 'x'}}``,
the same as a native ``$set``.
"""
from collections.abc import Mapping
from typing import Any, List, Tuple

from .errors import InvalidOperand

_MISSING = object()


def _index(container: list, key: str):
    if key.isdigit():
        return int(key)
    raise InvalidOperand(f"Cannot address array element with non-numeric key {key!r}")


def _get(container: Any, key: str) -> Any:
    if isinstance(container, dict):
        return container.get(key, _MISSING)
    if isinstance(container, list):
        idx = _index(container, key)
        return container[idx] if idx < len(container) else _MISSING
    return _MISSING


def _put(container: Any, key: str, value: Any):
    if isinstance(container, dict):
        container[key] = value
    elif isinstance(container, list):
        idx = _index(container, key)
        if idx < len(container):
            container[idx] = value
        else:
            container.extend([None] * (idx - len(container)))
            container.append(value)
    else:
        raise InvalidOperand(f"Cannot set {key!r} on a {type(container).__name__} value")


def _walk(doc: dict, path: str, create: bool) -> Tuple[Any, str]:
    """Return the container holding the last segment of ``path``."""
    parts = path.split('.')
    container: Any = doc
    for part in parts[:-1]:
        child = _get(container, part)
        if child is _MISSING or child is None:
            if not create:
                return None, parts[-1]
            child = {}
            _put(container, part, child)
        container = child
    return container, parts[-1]


def get_path(doc: Any, path: str, default: Any = None) -> Any:
    container: Any = doc
    for part in path.split('.'):
        if not isinstance(container, (dict, list)):
            return default
        try:
            container = _get(container, part)
        except InvalidOperand:
            return default
        if container is _MISSING:
            return default
    return container


def _array(container: Any, key: str, create: bool) -> List:
    current = _get(container, key)
    if current is _MISSING or current is None:
        if not create:
            return []
        current = []
        _put(container, key, current)
    if not isinstance(current, list):
        raise InvalidOperand(f"Field {key!r} is a {type(current).__name__}, not an array")
    return current


def set_value(doc: dict, path: str, value: Any):
    container, key = _walk(doc, path, create=True)
    _put(container, key, value)


def unset(doc: dict, path: str, value: Any = 1):
    container, key = _walk(doc, path, create=False)
    if isinstance(container, dict):
        container.pop(key, None)
    elif isinstance(container, list) and _get(container, key) is not _MISSING:
        # arrays keep their length, the element becomes null
        container[_index(container, key)] = None


def inc(doc: dict, path: str, value: Any = 1):
    container, key = _walk(doc, path, create=True)
    current = _get(container, key)
    if current is _MISSING or current is None:
        current = 0
    if isinstance(current, bool) or not isinstance(current, (int, float)):
        raise InvalidOperand(f"Cannot increment non-numeric field {path!r}")
    _put(container, key, current + value)


def push(doc: dict, path: str, value: Any):
    if isinstance(value, Mapping) and '$each' in value:
        return push_all(doc, path, value['$each'])
    container, key = _walk(doc, path, create=True)
    _array(container, key, create=True).append(value)


def push_all(doc: dict, path: str, values: Any):
    container, key = _walk(doc, path, create=True)
    _array(container, key, create=True).extend(values)


def pull(doc: dict, path: str, value: Any):
    pull_all(doc, path, [value])


def pull_all(doc: dict, path: str, values: Any):
    container, key = _walk(doc, path, create=False)
    if container is None or _get(container, key) is _MISSING:
        return
    current = _array(container, key, create=False)
    current[:] = [v for v in current if v not in values]


def pop(doc: dict, path: str, value: Any = 1):
    container, key = _walk(doc, path, create=False)
    if container is None or _get(container, key) is _MISSING:
        return
    current = _array(container, key, create=False)
    if current:
        current.pop(0 if value == -1 else -1)


def add_to_set(doc: dict, path: str, value: Any):
    values = value['$each'] if isinstance(value, Mapping) and '$each' in value else [value]
    container, key = _walk(doc, path, create=True)
    current = _array(container, key, create=True)
    for v in values:
        if v not in current:
            current.append(v)


def bit(doc: dict, path: str, value: Mapping):
    container, key = _walk(doc, path, create=True)
    current = _get(container, key)
    if current is _MISSING or current is None:
        current = 0
    if not isinstance(current, int) or isinstance(current, bool):
        raise InvalidOperand(f"Cannot apply bitwise operation to non-integer field {path!r}")
    for op, operand in value.items():
        if op == 'and':
            current &= operand
        elif op == 'or':
            current |= operand
        elif op == 'xor':
            current ^= operand
        else:
            raise InvalidOperand(f"Unknown bitwise operation {op!r}")
    _put(container, key, current)


OPERATORS = {
    '$set': set_value,
    '$unset': unset,
    '$inc': inc,
    '$push': push,
    '$pushAll': push_all,
    '$pull': pull,
    '$pullAll': pull_all,
    '$pop': pop,
    '$addToSet': add_to_set,
    '$bit': bit,
}


def apply(doc: dict, operator: str, path: str, value: Any = None):
    """Apply one update operator to ``doc`` in place."""
    try:
        func = OPERATORS[operator]
    except KeyError:
        raise InvalidOperand(f"Operator {operator} has no in-memory equivalent") from None
    func(doc, path, value)
    return doc


def apply_update(doc: dict, update: Mapping):
    """Apply a whole update document (``{'$inc': {...}, ...}``) in place."""
    for operator, fields in update.items():
        for path, value in fields.items():
            apply(doc, operator, path, value)
    return doc
