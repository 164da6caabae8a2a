from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, Dict, Iterator, List, Optional


class Subdocument:
    """
    A view over the region of a Document found at a dotted ``path``.

    It offers the document's operator vocabulary rooted at that path, so
    ``Subdocument(doc, 'address').set('city', 'Kyiv')`` is
    ``doc.set('address.city', 'Kyiv')``. Passing ``name=None`` addresses the
    subdocument itself, e.g. ``Subdocument(doc, 'counts.3').inc()``.

    Item assignment always writes into the parent's buffered value, so new
    nested structures are complete when the parent is first inserted.
    ``emulation`` overrides the parent's emulation flag for this view.
    """

    def __init__(self, document, path: str, emulation: Optional[bool] = None):
        self._document = document
        self._path = document.get_field_name(path)
        self._emulation = emulation

    def __repr__(self):
        return f"<{self.__class__.__name__} {self._document!r}.{self._path}>"

    @classmethod
    def iterate(cls, document, path: str, emulation: Optional[bool] = None) -> Iterator["Subdocument"]:
        """Yield one subdocument per element of the array at ``path``."""
        values = document.get(path)
        if not isinstance(values, list):
            return
        path = document.get_field_name(path)
        for index in range(len(values)):
            yield cls(document, f"{path}.{index}", emulation)

    @property
    def document(self):
        return self._document

    @property
    def path(self) -> str:
        return self._path

    @property
    def key(self) -> str:
        return self._path.rsplit('.', 1)[-1]

    def _field(self, name: Optional[str]) -> str:
        return self._path if name is None else f"{self._path}.{name}"

    def _emulate(self, emulate: Optional[bool]) -> Optional[bool]:
        return self._emulation if emulate is None else emulate

    # --- Field access ---

    def get(self, name: Optional[str] = None, default: Any = None) -> Any:
        return self._document.get(self._field(name), default)

    def __getitem__(self, name: str):
        return self.get(name)

    def __setitem__(self, name: str, value: Any):
        self._document.set(self._field(name), value, True)

    def __delitem__(self, name: str):
        self.unset(name)

    def as_dict(self) -> Dict[str, Any]:
        value = self.get()
        return copy.deepcopy(dict(value)) if isinstance(value, Mapping) else {}

    def is_changed(self) -> bool:
        return self._document.is_changed(self._path.split('.', 1)[0])

    def pending_operations(self) -> Dict[str, Dict[str, Any]]:
        """The parent's pending operators on this path, keyed relative to it."""
        prefix = self._path + '.'
        pending: Dict[str, Dict[str, Any]] = {}
        for operator, fields in self._document.operations.items():
            for field, value in fields.items():
                if field.startswith(prefix):
                    pending.setdefault(operator, {})[field[len(prefix):]] = value
        return pending

    # --- Operators ---

    def set(self, name: Optional[str], value: Any, emulate: Optional[bool] = None) -> "Subdocument":
        self._document.set(self._field(name), value, self._emulate(emulate))
        return self

    def unset(self, name: Optional[str] = None, emulate: Optional[bool] = None) -> "Subdocument":
        self._document.unset(self._field(name), self._emulate(emulate))
        return self

    def inc(self, name: Optional[str] = None, value: Any = 1, emulate: Optional[bool] = None) -> "Subdocument":
        self._document.inc(self._field(name), value, self._emulate(emulate))
        return self

    def push(self, name: Optional[str], value: Any, emulate: Optional[bool] = None) -> "Subdocument":
        self._document.push(self._field(name), value, self._emulate(emulate))
        return self

    def push_all(self, name: Optional[str], values: List[Any], emulate: Optional[bool] = None) -> "Subdocument":
        self._document.push_all(self._field(name), values, self._emulate(emulate))
        return self

    def pull(self, name: Optional[str], value: Any, emulate: Optional[bool] = None) -> "Subdocument":
        self._document.pull(self._field(name), value, self._emulate(emulate))
        return self

    def pull_all(self, name: Optional[str], values: List[Any], emulate: Optional[bool] = None) -> "Subdocument":
        self._document.pull_all(self._field(name), values, self._emulate(emulate))
        return self

    def pop(self, name: Optional[str] = None, last: bool = True, emulate: Optional[bool] = None) -> "Subdocument":
        self._document.pop(self._field(name), last, self._emulate(emulate))
        return self

    def shift(self, name: Optional[str] = None, emulate: Optional[bool] = None) -> "Subdocument":
        return self.pop(name, False, emulate)

    def add_to_set(self, name: Optional[str], value: Any, emulate: Optional[bool] = None) -> "Subdocument":
        self._document.add_to_set(self._field(name), value, self._emulate(emulate))
        return self

    def bit(self, name: Optional[str], value: Mapping) -> "Subdocument":
        self._document.bit(self._field(name), value)
        return self
