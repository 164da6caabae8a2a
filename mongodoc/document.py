from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from enum import Enum
from typing import Any, Dict, List, Optional

from bson import ObjectId
from loguru import logger

from . import operators
from .errors import (EmptyInsert, InsertFailed, MissingCriteria, ReferenceTypeError, RemoveFailed,
                     MongoDocError, UnsupportedOperation, UpdateFailed, UpsertFailed)
from .fields import Field, Reference, ReferenceField
from .json_util import is_json_query, loads_lenient
from .query import merge_recursive_distinct, translate_field

DOCUMENT_REGISTRY: List[type] = []

_MISSING = object()


class SaveAction(str, Enum):
    INSERT = 'insert'
    UPDATE = 'update'
    UPSERT = 'upsert'


class DocumentMeta(type):
    """
    Metaclass for all document types. It's responsible for:
    1. Collecting declared fields and references (including inherited ones).
    2. Building the alias table from ``__aliases__`` and ``Field(db_field=...)``.
    3. Normalizing ``__searches__``.
    4. Collecting index definitions from the ``Meta`` class.
    5. Adding concrete classes to DOCUMENT_REGISTRY for ``Registry.start()``.
    """

    def __new__(mcs, name, bases, attrs):
        new_class = super().__new__(mcs, name, bases, attrs)

        fields, references, aliases, searches = {}, {}, {}, {}
        for base in reversed(new_class.__mro__[1:]):
            fields.update(getattr(base, '_fields', {}))
            references.update(getattr(base, '_references', {}))
            aliases.update(getattr(base, '_aliases', {}))
            searches.update(getattr(base, '_searches', {}))

        aliases.update(attrs.get('__aliases__', {}))
        for attr_name, value in attrs.items():
            if isinstance(value, Reference):
                value.name = attr_name
                references[attr_name] = value
            elif isinstance(value, Field):
                value.name = attr_name
                fields[attr_name] = value
                if value.db_field and value.db_field != attr_name:
                    aliases[attr_name] = value.db_field

        for search_name, search in attrs.get('__searches__', {}).items():
            if isinstance(search, Mapping):
                search = (search['model'], search['field'])
            searches[search_name] = tuple(search)

        indexes = []
        if 'Meta' in attrs:
            indexes.extend(attrs['Meta'].__dict__.get('indexes', []))

        new_class._fields = fields
        new_class._references = references
        new_class._aliases = aliases
        new_class._searches = searches
        new_class._indexes = indexes

        if bases and not attrs.get('__abstract__'):
            if new_class not in DOCUMENT_REGISTRY:
                DOCUMENT_REGISTRY.append(new_class)

        return new_class


class Document(metaclass=DocumentMeta):
    """
    One record of a collection with change tracking.

    Values assigned directly (``doc['name'] = 'x'``) are tracked as changed
    fields and written with ``$set``. Atomic operators (``inc``, ``push``,
    ``pull``, ...) are accumulated and sent as one update on ``save()``;
    the fields they touch become dirty and are reloaded on the next read,
    since their real value is only known to the server. With emulation
    enabled the operators are computed in memory instead and saved as
    plain values.

    Class options::

        class User(Document):
            __collection__ = 'users'
            __aliases__ = {'name': 'n'}
            __searches__ = {'posts': ('Post', '_author')}
            __emulation__ = False

            group = ReferenceField('Group')
    """

    __collection__: Optional[str] = None
    __database__: str = 'default'
    __gridfs__: bool = False
    __collection_class__ = None
    __aliases__: Dict[str, str] = {}
    __searches__: Dict[str, Any] = {}
    __emulation__: bool = False

    # set by Registry.register()
    _registry = None

    def __init__(self, id_or_criteria: Any = None):
        self._object: Dict[str, Any] = {}
        self._changed: Dict[str, bool] = {}
        self._operations: Dict[str, Dict[str, Any]] = {}
        self._dirty = set()
        self._related: Dict[str, Any] = {}
        self._loaded: Optional[bool] = None
        self._emulation = type(self).__emulation__

        if id_or_criteria is not None:
            if isinstance(id_or_criteria, Mapping):
                for key, value in id_or_criteria.items():
                    self._object[self.get_field_name(key)] = value
            else:
                self._object['_id'] = self._cast('_id', id_or_criteria)

    def __repr__(self):
        return f"<{self.__class__.__name__}: {self._object.get('_id')}>"

    @classmethod
    def collection_name(cls) -> str:
        if cls.__collection__:
            return cls.__collection__
        if cls.__collection_class__ is not None and cls.__collection_class__.name:
            return cls.__collection_class__.name
        return re.sub(r'(?<!^)(?=[A-Z])', '_', cls.__name__).lower()

    @classmethod
    def get_field_name(cls, name: str, dot_allowed: bool = True) -> str:
        return translate_field(name, cls._aliases, dot_allowed)

    @classmethod
    def _cast(cls, field: str, value: Any) -> Any:
        """Override to cast values set from untrusted data.

        A 24 character ``_id`` string becomes an ObjectId only if it converts
        back to the very same string.
        """
        if field == '_id' and isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value):
            oid = ObjectId(value)
            if str(oid) == value:
                return oid
        return value

    # --- Class level queries ---

    @classmethod
    def _bound_registry(cls):
        if cls._registry is None:
            raise MongoDocError(f"{cls.__name__} is not registered, call Registry.start() first")
        return cls._registry

    @classmethod
    def find(cls, query=None, value=None):
        """A new query on this document's collection."""
        return cls._bound_registry().collection_for(cls, fresh=True).find(query, value)

    @classmethod
    def find_one(cls, query=None, fields=None):
        return cls._bound_registry().collection_for(cls).find_one(query, fields)

    def collection(self, fresh: bool = False):
        """The collection singleton of this model, or a new instance when ``fresh``."""
        return self._bound_registry().collection_for(type(self), fresh)

    def db(self):
        return self.collection().db()

    # --- Field access ---

    @property
    def id(self):
        return self._object.get('_id')

    @id.setter
    def id(self, value):
        self._set('_id', value)

    def get(self, name: str, default: Any = None) -> Any:
        """Read a field (or dotted path), resolving references and loading as needed."""
        name = self.get_field_name(name)
        top = name.split('.', 1)[0]
        if name in self._references:
            return self._resolve_reference(name)
        self._read(top)
        if '.' in name:
            return operators.get_path(self._object, name, default)
        return self._object.get(name, default)

    def __getitem__(self, name):
        return self.get(name)

    def __setitem__(self, name, value):
        self._set(name, value)

    def __delitem__(self, name):
        self.unset(name)

    def __contains__(self, name):
        return self.get_field_name(name) in self._object

    def _read(self, top: str):
        """Bring the in-memory value of ``top`` up to date before it is read."""
        if self._loaded and not self._operations and not self._changed and top in self._dirty:
            self.load()
        elif self._loaded is None and '_id' in self._object and '_id' not in self._changed and top != '_id':
            self._lazy_load()

    def _lazy_load(self):
        # pending direct changes survive the implicit load
        changed = {name: self._object[name] for name in self._changed if name in self._object}
        operations, dirty = self._operations, self._dirty
        known_id = self._object.get('_id')
        self.load()
        if not self._loaded and known_id is not None:
            self._object['_id'] = known_id
        self._object.update(changed)
        self._changed = dict.fromkeys(changed, True)
        # fields just fetched are current unless operators are still queued on them
        pending = {field.split('.', 1)[0] for fields in operations.values() for field in fields}
        self._operations, self._dirty = operations, dirty & pending

    def _set(self, name: str, value: Any):
        name = self.get_field_name(name, False)
        reference = self._references.get(name)
        if reference is not None:
            if not isinstance(value, Document):
                raise ReferenceTypeError(f"Cannot set reference {name} to {type(value).__name__}, a Document is required")
            if not isinstance(reference, ReferenceField):
                raise ReferenceTypeError(f"Reference {name} is read-only, change {reference.id_field} instead")
            self._related[name] = value
            if value.id is not None:
                self._set_field(reference.id_field, value.id)
            return
        self._set_field(name, self._cast(name, value))

    def _set_field(self, name: str, value: Any):
        current = self._object.get(name, _MISSING)
        if (current is not _MISSING and type(current) is type(value) and current == value
                and name not in self._dirty and not self._pending(name)):
            return
        self._object[name] = value
        self._changed[name] = True
        # a direct write supersedes pending operators on the same field
        self._drop_operations(name)
        self._dirty.discard(name)

    def _pending(self, top: str) -> Dict[str, Dict[str, Any]]:
        """The queued operators touching ``top`` or a path below it."""
        prefix = top + '.'
        pending = {}
        for operator, fields in self._operations.items():
            for field, value in fields.items():
                if field == top or field.startswith(prefix):
                    pending.setdefault(operator, {})[field] = value
        return pending

    def _drop_operations(self, top: str):
        prefix = top + '.'
        for operator in list(self._operations):
            fields = self._operations[operator]
            for field in [f for f in fields if f == top or f.startswith(prefix)]:
                del fields[field]
            if not fields:
                del self._operations[operator]

    def _set_dirty(self, name: str) -> "Document":
        self._dirty.add(name.split('.', 1)[0])
        return self

    # --- Emulation ---

    @property
    def emulation(self) -> bool:
        return self._emulation

    def set_emulation(self, emulation: bool) -> "Document":
        self._emulation = emulation
        return self

    def _emulates(self, emulate: Optional[bool], name: str) -> bool:
        if name.split('.', 1)[0] in self._changed:
            return True
        return self._emulation if emulate is None else emulate

    def _emulate(self, operator: str, name: str, value: Any) -> "Document":
        """Apply ``operator`` in memory to the buffered value and store it as a direct change."""
        top = name.split('.', 1)[0]
        self._read(top)
        holder = {}
        if top in self._object:
            holder[top] = copy.deepcopy(self._object[top])
        # queued native operators on the field are folded in before it becomes a direct change
        operators.apply_update(holder, copy.deepcopy(self._pending(top)))
        operators.apply(holder, operator, name, value)
        if top in holder:
            self._set_field(top, holder[top])
        else:
            self._object.pop(top, None)
            self._changed.pop(top, None)
            self._drop_operations(top)
            self._operations.setdefault('$unset', {})[top] = 1
            self._dirty.discard(top)
        return self

    # --- Atomic operators ---

    def set(self, name: str, value: Any, emulate: Optional[bool] = None) -> "Document":
        """Set a field; dotted paths are sent as ``$set`` since nested writes can't be verified locally."""
        field = self.get_field_name(name)
        if '.' not in field:
            self._set(name, value)
            return self
        if self._emulates(emulate, field):
            return self._emulate('$set', field, value)
        self._operations.setdefault('$set', {})[field] = value
        return self._set_dirty(field)

    def unset(self, name: str, emulate: Optional[bool] = None) -> "Document":
        name = self.get_field_name(name)
        if self._emulates(emulate, name):
            return self._emulate('$unset', name, 1)
        self._operations.setdefault('$unset', {})[name] = 1
        return self._set_dirty(name)

    def inc(self, name: str, value: Any = 1, emulate: Optional[bool] = None) -> "Document":
        name = self.get_field_name(name)
        if self._emulates(emulate, name):
            return self._emulate('$inc', name, value)
        inc = self._operations.setdefault('$inc', {})
        inc[name] = inc.get(name, 0) + value
        return self._set_dirty(name)

    def push(self, name: str, value: Any, emulate: Optional[bool] = None) -> "Document":
        """Append a value to an array; repeated pushes are sent as one ``$pushAll``."""
        name = self.get_field_name(name)
        if self._emulates(emulate, name):
            return self._emulate('$push', name, value)
        push_all = self._operations.get('$pushAll', {})
        push = self._operations.get('$push', {})
        if name in push_all:
            push_all[name].append(value)
        elif name in push:
            self._operations.setdefault('$pushAll', {})[name] = [push.pop(name), value]
            if not push:
                del self._operations['$push']
        else:
            self._operations.setdefault('$push', {})[name] = value
        return self._set_dirty(name)

    def push_all(self, name: str, values: List[Any], emulate: Optional[bool] = None) -> "Document":
        name = self.get_field_name(name)
        if self._emulates(emulate, name):
            return self._emulate('$pushAll', name, list(values))
        push_all = self._operations.setdefault('$pushAll', {})
        push_all[name] = push_all.get(name, []) + list(values)
        return self._set_dirty(name)

    def pop(self, name: str, last: bool = True, emulate: Optional[bool] = None) -> "Document":
        """Remove the last (or with ``last=False`` the first) element of an array."""
        name = self.get_field_name(name)
        direction = 1 if last else -1
        if self._emulates(emulate, name):
            return self._emulate('$pop', name, direction)
        self._operations.setdefault('$pop', {})[name] = direction
        return self._set_dirty(name)

    def shift(self, name: str, emulate: Optional[bool] = None) -> "Document":
        return self.pop(name, False, emulate)

    def pull(self, name: str, value: Any, emulate: Optional[bool] = None) -> "Document":
        name = self.get_field_name(name)
        if self._emulates(emulate, name):
            return self._emulate('$pull', name, value)
        pull_all = self._operations.get('$pullAll', {})
        pull = self._operations.get('$pull', {})
        if name in pull_all:
            pull_all[name].append(value)
        elif name in pull:
            self._operations.setdefault('$pullAll', {})[name] = [pull.pop(name), value]
            if not pull:
                del self._operations['$pull']
        else:
            self._operations.setdefault('$pull', {})[name] = value
        return self._set_dirty(name)

    def pull_all(self, name: str, values: List[Any], emulate: Optional[bool] = None) -> "Document":
        name = self.get_field_name(name)
        if self._emulates(emulate, name):
            return self._emulate('$pullAll', name, list(values))
        pull_all = self._operations.setdefault('$pullAll', {})
        pull_all[name] = pull_all.get(name, []) + list(values)
        return self._set_dirty(name)

    def add_to_set(self, name: str, value: Any, emulate: Optional[bool] = None) -> "Document":
        name = self.get_field_name(name)
        if self._emulates(emulate, name):
            return self._emulate('$addToSet', name, value)
        add_to_set = self._operations.setdefault('$addToSet', {})
        if name not in add_to_set:
            add_to_set[name] = value
            return self._set_dirty(name)
        current = add_to_set[name]
        if not (isinstance(current, Mapping) and '$each' in current):
            current = add_to_set[name] = {'$each': [current]}
        if isinstance(value, Mapping) and '$each' in value:
            current['$each'].extend(value['$each'])
        else:
            current['$each'].append(value)
        return self._set_dirty(name)

    def bit(self, name: str, value: Mapping) -> "Document":
        """Bitwise update, e.g. ``bit('flags', {'or': 4})``."""
        name = self.get_field_name(name)
        if self._emulates(False, name):
            return self._emulate('$bit', name, value)
        self._operations.setdefault('$bit', {})[name] = value
        return self._set_dirty(name)

    # --- State ---

    @property
    def operations(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._operations)

    @property
    def changed(self) -> List[str]:
        return list(self._changed)

    def is_changed(self, name: Optional[str] = None) -> bool:
        if name is None:
            return bool(self._changed or self._operations)
        name = self.get_field_name(name)
        return name in self._changed or name in self._dirty

    def is_dirty(self, name: str) -> bool:
        return self.get_field_name(name) in self._dirty

    def clear(self) -> "Document":
        self._object = {}
        self._changed = {}
        self._operations = {}
        self._dirty = set()
        self._related = {}
        self._loaded = None
        return self

    def loaded(self) -> bool:
        """Whether the record exists, loading it first if that was never tried."""
        if self._loaded is None:
            if not self._object:
                return False
            self._lazy_load()
        return bool(self._loaded)

    def as_dict(self, clean: bool = False) -> Dict[str, Any]:
        """The in-memory values; unless ``clean``, aliased fields use their alias."""
        values = dict(self._object)
        if not clean:
            for alias, name in self._aliases.items():
                if name in values:
                    values[alias] = values.pop(name)
        return values

    def load_values(self, values: Mapping, clean: bool = False) -> "Document":
        """Set several fields at once; ``clean`` values are taken as the stored state."""
        if clean:
            self.before_load(values)
            self._object = dict(values or {})
            self._loaded = bool(self._object)
            self.after_load()
        else:
            for name, value in values.items():
                self._set(name, value)
        return self

    # --- Persistence ---

    def load(self, criteria: Any = None, fields: Optional[List[str]] = None) -> bool:
        """Load the record by id, criteria or the current values. Returns whether it was found."""
        if is_json_query(criteria):
            criteria = loads_lenient(criteria)
        elif criteria is not None and not isinstance(criteria, Mapping):
            criteria = {'_id': criteria}
        elif criteria:
            criteria = dict(criteria)
        elif '_id' in self._object:
            criteria = {'_id': self._object['_id']}
        else:
            criteria = dict(self._object)

        if not criteria:
            raise MissingCriteria(f"Cannot find {self.__class__.__name__} without _id or other search criteria.")

        query = {}
        for key, value in criteria.items():
            key = self.get_field_name(key)
            query[key] = self._cast(key, value)
        projection = {self.get_field_name(name): 1 for name in fields} if fields else None

        values = self.collection().find_record(query, projection)

        if self._loaded is not None or self._changed or self._operations or self._dirty:
            self.clear()

        self.load_values(values or {}, clean=True)
        return self._loaded

    def _update_references(self):
        for name, reference in self._references.items():
            related = self._related.get(name)
            if isinstance(reference, ReferenceField) and isinstance(related, Document) and related.id is not None:
                if self._object.get(reference.id_field) != related.id:
                    self._set_field(reference.id_field, related.id)

    def save(self, safe: bool = True) -> "Document":
        """Insert the document if it has no _id (or the _id was changed), otherwise update it.

        An update by a known _id leaves ``loaded`` to the next read: ``loaded()``
        then fetches the record and is False when the _id matched nothing.
        """
        self._update_references()
        collection = self.collection()

        if '_id' not in self._object or '_id' in self._changed:
            action = SaveAction.INSERT
            self.before_save(action)

            values = {name: self._object[name] for name in self._changed if name in self._object}
            if not values:
                raise EmptyInsert(f"Cannot insert empty {self.__class__.__name__}.")

            result = collection.insert(values, safe)
            if safe and not result.ok:
                raise InsertFailed(f"Unable to insert {self.__class__.__name__}: {result.error}",
                                   result.code, result.raw)

            if '_id' not in self._object:
                self._object['_id'] = values.get('_id', result.inserted_id)
            self._loaded = True

            # TODO: fold the operators into the insert to save the second round trip
            if self._operations:
                self._flush_operations(collection, safe)
        else:
            action = SaveAction.UPDATE
            self.before_save(action)

            if self._changed:
                set_values = self._operations.setdefault('$set', {})
                for name in self._changed:
                    set_values[name] = self._object[name]

            if self._operations:
                self._flush_operations(collection, safe)

        self._changed = {}
        self._operations = {}
        logger.debug(f"Saved {self!r} ({action.value})")

        self.after_save(action)
        return self

    def _flush_operations(self, collection, safe: bool):
        result = collection.update({'_id': self._object['_id']}, self._operations, safe=safe)
        if safe and not result.ok:
            raise UpdateFailed(f"Update of {self.__class__.__name__} failed: {result.error}",
                               result.code, result.raw)
        if safe and not result.matched_existing:
            logger.warning(f"Update of {self!r} matched no stored record")

    def upsert(self, operations: Optional[Dict[str, Any]] = None) -> "Document":
        """Update the record matching the current values, inserting it when missing.

        The id of an inserted record is not fetched; call ``load()`` for it.
        """
        if not self._object:
            raise MissingCriteria(f"Cannot upsert {self.__class__.__name__}: no criteria")

        self.before_save(SaveAction.UPSERT)

        operations = merge_recursive_distinct(self._operations, operations or {})
        if not operations:
            operations = {'$set': {k: v for k, v in self._object.items() if k != '_id'}}

        result = self.collection().update(dict(self._object), operations, upsert=True)
        if not result.ok:
            raise UpsertFailed(f"Upsert of {self.__class__.__name__} failed: {result.error}",
                               result.code, result.raw)

        self._changed = {}
        self._operations = {}

        self.after_save(SaveAction.UPSERT)
        return self

    def delete(self) -> "Document":
        """Remove this record by its _id and reset the instance."""
        if '_id' not in self._object:
            raise MissingCriteria(f"Cannot delete {self.__class__.__name__} without the _id.")
        self.before_delete()

        result = self.collection().remove({'_id': self._object['_id']}, just_one=True)
        if not result.ok:
            raise RemoveFailed(f"Failed to delete {self.__class__.__name__}: {result.error}",
                               result.code, result.raw)

        self.clear()
        self.after_delete()
        return self

    # --- References ---

    def _resolve_reference(self, name: str):
        reference = self._references[name]
        if reference.memoized and name in self._related:
            return self._related[name]
        resolved = reference.resolve(self)
        if reference.memoized:
            self._related[name] = resolved
        return resolved

    def search(self, name: str):
        """Run a predefined search from ``__searches__`` for documents pointing at this one."""
        try:
            model, field = self._searches[name]
        except KeyError:
            raise UnsupportedOperation(f"Predefined search not found by {self.__class__.__name__}: {name}") from None
        registry = self._bound_registry()
        return registry.collection_for(registry.model(model), fresh=True).find({field: self.id})

    # --- Hooks ---

    def before_save(self, action: SaveAction):
        pass

    def after_save(self, action: SaveAction):
        pass

    def before_load(self, values: Mapping):
        pass

    def after_load(self):
        pass

    def before_delete(self):
        pass

    def after_delete(self):
        pass
