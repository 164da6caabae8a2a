"""
Lenient parsing of hand-typed query shorthand and shell-style rendering.

``loads_lenient("{name: 'x'}")`` is not supported (values must still be
valid JSON), but bare keys are: ``{number: {$gt: 10}}`` parses.
"""
import re
from typing import Any

from bson import json_util

from .errors import InvalidQuery

_BARE_KEY = re.compile(r'([{,])\s*([^"{}\[\],:\s]+)\s*:')


def quote_keys(text: str) -> str:
    return _BARE_KEY.sub(r'\1"\2":', text)


def loads_lenient(text: str) -> Any:
    """Parse a JSON string whose object keys may be unquoted."""
    cleaned = quote_keys(text.replace("\r", " ").replace("\n", " "))
    try:
        return json_util.loads(cleaned)
    except ValueError as exc:
        raise InvalidQuery(f"Unable to parse query {text!r}: {exc}") from exc


def is_json_query(value: Any) -> bool:
    return isinstance(value, str) and value.lstrip().startswith("{")


def dumps(value: Any) -> str:
    return json_util.dumps(value)
