from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, Iterator, List, Optional, Union

from loguru import logger
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .errors import CursorAlreadyStarted, InvalidQuery, MongoDocError, QueryFailed, UnsupportedOperation
from .json_util import dumps, is_json_query, loads_lenient
from .query import ASC, DESC, merge_criteria, merge_recursive_distinct, normalize_direction, translate_keys
from .database import FIND_ARGS, find_args

# options that may still change once the cursor exists
LIVE_OPTIONS = ('batch_size', 'timeout', 'max_time_ms')
KNOWN_OPTIONS = ('sort', 'skip', 'limit', 'hint', 'snapshot') + FIND_ARGS + LIVE_OPTIONS


class Collection:
    """
    A lazy query over one collection.

    The query is built with chained calls and executed once, on the first
    iteration, ``count()`` or explicit ``load()``. From then on the criteria,
    projection and options are frozen and the results can be walked exactly
    once::

        for doc in Collection('users', model=User).find({'age': {'$gt': 18}}).sort_desc('age').limit(5):
            ...

    When ``model`` is given records are returned as instances of that
    Document class and field names go through its alias table; without it
    (direct mode) raw dicts are returned and names are used verbatim.

    Subclasses may set ``name``, ``database`` and ``gridfs`` as class
    attributes and be used as a document's ``__collection_class__``.
    """

    ASC = ASC
    DESC = DESC

    name: Optional[str] = None
    database: str = 'default'
    gridfs: bool = False

    def __init__(self, name: Optional[str] = None, database: Optional[str] = None, gridfs: Optional[bool] = None,
                 model=None, registry=None):
        self._model = model
        self.name = name or type(self).name or (model.collection_name() if model is not None else None)
        if not self.name:
            raise MongoDocError(f"{type(self).__name__} has no collection name")
        self.database = database or type(self).database
        self.gridfs = type(self).gridfs if gridfs is None else gridfs
        if registry is None and model is not None:
            registry = model._registry
        if registry is None:
            raise MongoDocError(f"Collection '{self.name}' is not bound to a Registry")
        self._registry = registry
        self.reset()

    def __repr__(self):
        return f"<{type(self).__name__} {self.inspect()}>"

    def __str__(self):
        return self.name

    @property
    def model(self):
        return self._model

    def reset(self) -> "Collection":
        """Discard the query and the cursor so the instance can be reused."""
        self._criteria: Dict[str, Any] = {}
        self._fields: Dict[str, Any] = {}
        self._options: Dict[str, Any] = {}
        self._cursor = None
        return self

    def db(self):
        return self._registry.database(self.database)

    def collection(self):
        """The underlying pymongo collection."""
        return self.db().collection(self.name, self.gridfs)

    def get_field_name(self, name: str) -> str:
        if self._model is None:
            return name
        return self._model.get_field_name(name)

    def _translate(self, query: Mapping) -> Dict[str, Any]:
        return translate_keys(query, self.get_field_name)

    def _guard(self, action: str):
        if self._cursor is not None:
            raise CursorAlreadyStarted(f"Cannot {action} on {self.name}: the cursor was already created")

    @property
    def criteria(self) -> Dict[str, Any]:
        return dict(self._criteria)

    @property
    def projection(self) -> Dict[str, Any]:
        return dict(self._fields)

    @property
    def options(self) -> Dict[str, Any]:
        return dict(self._options)

    # --- Query building ---

    def find(self, query: Union[Mapping, str, None] = None, value: Any = None) -> "Collection":
        """Add criteria: a mapping, a ``(field, value)`` pair or a shorthand JSON string.

        Criteria from repeated calls are merged. ``$or`` lists are joined into
        one list, so ``find({'$or': [a, b]}).find({'$or': [c, d]})`` matches any
        of a, b, c or d. To require both groups pass them in one ``$and`` list.
        """
        self._guard("add criteria")
        if query is None:
            return self
        if isinstance(query, str):
            if is_json_query(query) and value is None:
                query = loads_lenient(query)
                if not isinstance(query, Mapping):
                    raise InvalidQuery(f"Query must be an object, got {type(query).__name__}")
            else:
                query = {query: value}
        self._criteria = merge_criteria(self._criteria, self._translate(query))
        return self

    def fields(self, fields: Union[Mapping, List[str]], include: int = 1) -> "Collection":
        """Restrict (or exclude, with ``include=0``) the returned fields."""
        self._guard("change fields")
        if not isinstance(fields, Mapping):
            fields = {name: include for name in fields}
        fields = {self.get_field_name(name): flag for name, flag in fields.items()}
        self._fields = merge_recursive_distinct(self._fields, fields)
        return self

    def sort(self, fields: Union[str, Mapping, list], direction: Any = ASC) -> "Collection":
        if isinstance(fields, str):
            items = [(fields, direction)]
        elif isinstance(fields, Mapping):
            items = list(fields.items())
        else:
            items = list(fields)
        sort = dict(self._options.get('sort', {}))
        for field, field_direction in items:
            sort[self.get_field_name(field)] = normalize_direction(field_direction)
        return self.set_option('sort', sort)

    def sort_asc(self, field: str) -> "Collection":
        return self.sort(field, ASC)

    def sort_desc(self, field: str) -> "Collection":
        return self.sort(field, DESC)

    def limit(self, limit: int) -> "Collection":
        return self.set_option('limit', int(limit))

    def skip(self, skip: int) -> "Collection":
        return self.set_option('skip', int(skip))

    def hint(self, index: Union[str, Mapping]) -> "Collection":
        return self.set_option('hint', index)

    def slave_okay(self, okay: bool = True) -> "Collection":
        return self.set_option('slave_okay', okay)

    def snapshot(self) -> "Collection":
        return self.set_option('snapshot', True)

    def tailable(self, tail: bool = True) -> "Collection":
        return self.set_option('tailable', tail)

    def immortal(self, live_forever: bool = True) -> "Collection":
        return self.set_option('immortal', live_forever)

    def batch_size(self, size: int) -> "Collection":
        return self.set_option('batch_size', int(size))

    def timeout(self, ms: int) -> "Collection":
        return self.set_option('timeout', int(ms))

    def set_option(self, name: str, value: Any) -> "Collection":
        if name not in KNOWN_OPTIONS:
            raise UnsupportedOperation(f"Unknown cursor option: {name}")
        if name not in LIVE_OPTIONS:
            self._guard(f"set option {name}")
        self._options[name] = value
        if self._cursor is not None:
            self._cursor.apply_option(name, value)
        return self

    def get_option(self, name: str, default: Any = None) -> Any:
        return self._options.get(name, default)

    def has_option(self, name: str) -> bool:
        return name in self._options

    def unset_option(self, name: str) -> "Collection":
        if name not in LIVE_OPTIONS:
            self._guard(f"unset option {name}")
        self._options.pop(name, None)
        return self

    # --- Execution ---

    @property
    def loaded(self) -> bool:
        return self._cursor is not None

    def load(self) -> "Collection":
        """Create the cursor. Calling it again is a no-op."""
        if self._cursor is not None:
            return self
        try:
            cursor = self.db().find(self.name, self._criteria, self._fields, self.gridfs,
                                    **find_args(self._options))
            for name, value in self._options.items():
                cursor.apply_option(name, value)
        except PyMongoError as e:
            raise QueryFailed(str(e), self.inspect()) from e
        self._cursor = cursor
        return self

    def cursor(self):
        """The live cursor handle, creating it when needed."""
        if self._cursor is None:
            self.load()
        return self._cursor

    def _rewind(self, handle):
        try:
            handle.rewind()
        except PyMongoError as e:
            raise QueryFailed(str(e), self.inspect()) from e

    def _wrap(self, record: Optional[dict]):
        if record is None or self._model is None:
            return record
        return self._model().load_values(record, clean=True)

    def _records(self) -> Iterator[dict]:
        handle = self.cursor()
        self._rewind(handle)
        while handle.valid():
            yield handle.current()
            handle.next()

    def __iter__(self):
        """Walk the results once; iterating again raises CursorAlreadyStarted."""
        for record in self._records():
            yield self._wrap(record)

    def get_next(self):
        """Step the cursor and return the next record, or None at the end."""
        handle = self.cursor()
        if not handle.started:
            self._rewind(handle)
        else:
            handle.next()
        return self._wrap(handle.current())

    def has_next(self) -> bool:
        return self.cursor().has_next()

    def key(self) -> Optional[str]:
        return self.cursor().key()

    def as_list(self, objects: bool = True) -> list:
        if objects:
            return list(self)
        return list(self._records())

    def select_list(self, key: str = '_id', val: Optional[str] = None):
        """A list of ``key`` values, or a ``{str(key): val}`` mapping when ``val`` is given."""
        if val is None:
            val = self.get_field_name(key)
            return [record[val] for record in self._records() if record.get(val) is not None]
        key, val = self.get_field_name(key), self.get_field_name(val)
        return {str(record[key]): record.get(val) for record in self._records()}

    def find_one(self, query: Any = None, fields: Optional[Union[Mapping, List[str]]] = None):
        """Fetch a single record without touching the query state."""
        if query is None:
            query = {}
        elif is_json_query(query):
            query = loads_lenient(query)
        elif not isinstance(query, Mapping):
            query = {'_id': self._model._cast('_id', query) if self._model is not None else query}
        projection = None
        if fields:
            if not isinstance(fields, Mapping):
                fields = {name: 1 for name in fields}
            projection = {self.get_field_name(name): flag for name, flag in fields.items()}
        return self._wrap(self.find_record(self._translate(query), projection))

    def find_record(self, criteria: Dict[str, Any], projection: Optional[Dict[str, Any]] = None) -> Optional[dict]:
        """Raw ``findOne`` with already translated criteria."""
        return self.db().find_one(self.name, criteria, projection, self.gridfs)

    def count(self, query: Union[bool, Mapping, str] = True) -> int:
        """Count the current query (``True`` honours limit/skip) or an independent criteria."""
        if isinstance(query, bool):
            try:
                return self.cursor().count(query)
            except PyMongoError as e:
                raise QueryFailed(str(e), f"{self.inspect()}.count({dumps(query)})") from e
        if isinstance(query, str):
            query = loads_lenient(query)
        return self.db().count(self.name, self._translate(query), self.gridfs)

    def inspect(self) -> str:
        """Shell-style rendering of the query, e.g. ``db.users.find({"a": 1}).limit(5)``."""
        parts = []
        if self._criteria or self._fields:
            parts.append(dumps(self._criteria))
        if self._fields:
            parts.append(dumps(self._fields))
        text = f"db.{self.name}.find({', '.join(parts)})"
        for name, value in self._options.items():
            text += f".{name}({dumps(value)})"
        return text

    # --- Pass-through operations ---

    def insert(self, document: Dict[str, Any], safe: bool = True):
        return self.db().insert(self.name, document, safe, self.gridfs)

    def batch_insert(self, documents: List[Dict[str, Any]], safe: bool = True):
        return self.db().insert_many(self.name, documents, safe, self.gridfs)

    def update(self, criteria: Dict[str, Any], update: Dict[str, Any], multi: bool = False,
               upsert: bool = False, safe: bool = True):
        return self.db().update(self.name, criteria, update, multi=multi, upsert=upsert,
                                safe=safe, gridfs=self.gridfs)

    def remove(self, criteria: Optional[Dict[str, Any]] = None, just_one: bool = False, safe: bool = True):
        return self.db().remove(self.name, criteria or {}, just_one=just_one, safe=safe, gridfs=self.gridfs)

    def distinct(self, key: str, criteria: Optional[Dict[str, Any]] = None) -> list:
        return self.collection().distinct(self.get_field_name(key), criteria or {})

    def aggregate(self, pipeline: List[Dict[str, Any]], **kwargs) -> list:
        return list(self.collection().aggregate(pipeline, **kwargs))

    def find_and_modify(self, criteria: Dict[str, Any], update: Optional[Dict[str, Any]] = None,
                        upsert: bool = False, new: bool = True, fields=None, sort=None, remove: bool = False):
        """findAndModify: update (or remove) one document and return it."""
        coll = self.collection()
        sort = list(sort.items()) if isinstance(sort, Mapping) else sort
        if remove:
            record = coll.find_one_and_delete(criteria, projection=fields, sort=sort)
        else:
            record = coll.find_one_and_update(
                criteria, update, projection=fields, sort=sort, upsert=upsert,
                return_document=ReturnDocument.AFTER if new else ReturnDocument.BEFORE)
        return self._wrap(record)

    def ensure_index(self, keys: Union[str, Mapping, list], **kwargs) -> str:
        if isinstance(keys, Mapping):
            keys = list(keys.items())
        name = self.collection().create_index(keys, **kwargs)
        logger.debug(f"Ensured index {name} on {self.name}")
        return name

    def drop(self):
        self.collection().drop()
        logger.info(f"Dropped collection {self.name}")
