"""
Database collaborator: wraps pymongo behind the small contract the
Collection and Document layers consume, plus the Registry that owns
databases, model classes and collection singletons.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type

from loguru import logger
from pymongo import MongoClient, ReadPreference, ReturnDocument
from pymongo.cursor import CursorType
from pymongo.errors import InvalidOperation, PyMongoError
from pymongo.write_concern import WriteConcern

from .config import DatabaseSettings, MongoConfig
from .errors import CommandFailed, CursorAlreadyStarted, MongoDocError, UnsupportedOperation
from .json_util import dumps

_END = object()

# options that must be given when the cursor is created
FIND_ARGS = ('tailable', 'immortal', 'slave_okay')


@dataclass
class WriteResult:
    """Outcome of a write as reported by the server."""
    ok: bool = True
    inserted_id: Any = None
    matched_existing: bool = False
    upserted_id: Any = None
    removed_count: int = 0
    error: Optional[str] = None
    code: Optional[int] = None
    raw: Any = None

    def __bool__(self):
        return self.ok

    @classmethod
    def failed(cls, exc: PyMongoError) -> "WriteResult":
        return cls(ok=False, error=str(exc), code=getattr(exc, 'code', None),
                   raw=getattr(exc, 'details', None))


def compile_update(update: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite ``$pushAll`` (rejected by current servers) into ``$push``/``$each``."""
    if '$pushAll' not in update:
        return update
    compiled = {op: dict(fields) for op, fields in update.items() if op != '$pushAll'}
    push = compiled.setdefault('$push', {})
    for field, values in update['$pushAll'].items():
        values = list(values)
        if field in push:
            existing = push[field]
            if isinstance(existing, dict) and '$each' in existing:
                values = list(existing['$each']) + values
            else:
                values = [existing] + values
        push[field] = {'$each': values}
    return compiled


def find_args(options: Dict[str, Any]) -> Dict[str, Any]:
    """Translate the cursor-creation options into pymongo ``find`` arguments."""
    args = {}
    if options.get('tailable'):
        args['cursor_type'] = CursorType.TAILABLE
    if options.get('immortal'):
        args['no_cursor_timeout'] = True
    if options.get('slave_okay'):
        args['read_preference'] = ReadPreference.SECONDARY_PREFERRED
    return args


class CursorHandle:
    """
    Single-pass cursor with one record of lookahead.

    ``rewind`` positions on the first record and may only be called once;
    ``valid``/``current``/``next`` step through the results the way the
    Collection iterator needs, ``has_next`` peeks without consuming.
    """

    def __init__(self, cursor, collection, criteria: Dict[str, Any]):
        self._cursor = cursor
        self._collection = collection
        self._criteria = criteria
        self._skip = 0
        self._limit = 0
        self._buffer = []
        self._current = None
        self._position = -1
        self.started = False
        self.exhausted = False

    def apply_option(self, name: str, value: Any):
        if name == 'sort':
            self._cursor.sort(list(value.items()))
        elif name == 'skip':
            self._skip = value
            self._cursor.skip(value)
        elif name == 'limit':
            self._limit = value
            self._cursor.limit(value)
        elif name == 'hint':
            self._cursor.hint(list(value.items()) if isinstance(value, dict) else value)
        elif name in ('batch_size', 'timeout', 'max_time_ms'):
            try:
                if name == 'batch_size':
                    self._cursor.batch_size(value)
                else:
                    self._cursor.max_time_ms(value)
            except InvalidOperation:
                logger.warning(f"Cursor already running, {name}={value} only applies to new queries")
        elif name == 'snapshot':
            logger.warning("The snapshot option is not available on current servers and is ignored")
        elif name in FIND_ARGS:
            pass
        else:
            raise UnsupportedOperation(f"Unknown cursor option: {name}")

    def _fetch(self):
        if self._buffer:
            return self._buffer.pop(0)
        try:
            return next(self._cursor)
        except StopIteration:
            return _END

    def _advance(self):
        record = self._fetch()
        if record is _END:
            self._current = None
            self.exhausted = True
        else:
            self._current = record
            self._position += 1

    def rewind(self):
        if self.started:
            raise CursorAlreadyStarted("The cursor cannot be restarted, build a new query instead")
        self.started = True
        self._advance()

    def valid(self) -> bool:
        return self.started and not self.exhausted

    def current(self) -> Optional[dict]:
        return self._current if self.valid() else None

    def next(self):
        if not self.started:
            self.rewind()
        else:
            self._advance()

    def key(self) -> Optional[str]:
        if not self.valid():
            return None
        if isinstance(self._current, dict) and '_id' in self._current:
            return str(self._current['_id'])
        return str(self._position)

    def has_next(self) -> bool:
        if self.exhausted:
            return False
        if not self._buffer:
            record = self._fetch()
            if record is _END:
                return False
            self._buffer.append(record)
        return True

    def count(self, apply_limits: bool = True) -> int:
        kwargs = {}
        if apply_limits:
            if self._skip:
                kwargs['skip'] = self._skip
            if self._limit:
                kwargs['limit'] = self._limit
        return self._collection.count_documents(self._criteria, **kwargs)


class Database:
    """One named database configuration and its lazily created client."""

    def __init__(self, name: str, settings: DatabaseSettings, client: Optional[MongoClient] = None):
        self.name = name
        self.settings = settings
        self._client = client
        self._owns_client = client is None
        self._db = None
        self._collections: Dict[Tuple[str, bool], Any] = {}

    def __repr__(self):
        return f"<Database {self.name}: {self.settings.database}>"

    def __str__(self):
        return self.settings.database

    @property
    def connected(self) -> bool:
        return self._db is not None

    def connect(self):
        if self._db is not None:
            return self._db
        if self._client is None:
            self._client = MongoClient(self.settings.server, **self.settings.options)
            logger.info(f"Connected to MongoDB at {self.settings.server}")
        self._db = self._client[self.settings.database]
        return self._db

    def close(self):
        if self._client is not None and self._owns_client:
            self._client.close()
            logger.info(f"MongoDB connection '{self.name}' closed.")
            self._client = None
        self._db = None
        self._collections.clear()

    def collection(self, name: str, gridfs: bool = False):
        """Return the (cached) pymongo collection, ``<name>.files`` for gridFS."""
        key = (name, gridfs)
        if key not in self._collections:
            db = self.connect()
            self._collections[key] = db[f"{name}.files"] if gridfs else db[name]
        return self._collections[key]

    @contextmanager
    def _profile(self, label: str):
        if not self.settings.profiling:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = (time.perf_counter() - start) * 1000
            logger.bind(profile=True, database=self.settings.database).debug(f"{label} took {elapsed:.2f} ms")

    # --- Reads ---

    def find(self, collection: str, criteria: Dict[str, Any], projection: Optional[Dict[str, Any]] = None,
             gridfs: bool = False, **kwargs) -> CursorHandle:
        coll = self.collection(collection, gridfs)
        read_preference = kwargs.pop('read_preference', None)
        if read_preference is not None:
            coll = coll.with_options(read_preference=read_preference)
        with self._profile(f"db.{collection}.find({dumps(criteria)})"):
            cursor = coll.find(criteria, projection or None, **kwargs)
        return CursorHandle(cursor, coll, criteria)

    def find_one(self, collection: str, criteria: Dict[str, Any], projection: Optional[Dict[str, Any]] = None,
                 gridfs: bool = False) -> Optional[dict]:
        with self._profile(f"db.{collection}.findOne({dumps(criteria)})"):
            return self.collection(collection, gridfs).find_one(criteria, projection or None)

    def count(self, collection: str, criteria: Dict[str, Any], gridfs: bool = False) -> int:
        with self._profile(f"db.{collection}.count({dumps(criteria)})"):
            return self.collection(collection, gridfs).count_documents(criteria)

    # --- Writes ---

    def _writer(self, collection: str, gridfs: bool, safe: bool):
        coll = self.collection(collection, gridfs)
        if not safe:
            coll = coll.with_options(write_concern=WriteConcern(w=0))
        return coll

    def insert(self, collection: str, document: Dict[str, Any], safe: bool = True, gridfs: bool = False) -> WriteResult:
        """Insert one document; pymongo stores the assigned ``_id`` into ``document``."""
        try:
            with self._profile(f"db.{collection}.insert()"):
                result = self._writer(collection, gridfs, safe).insert_one(document)
        except PyMongoError as e:
            logger.error(f"Insert into {collection} failed: {e}")
            return WriteResult.failed(e)
        return WriteResult(inserted_id=result.inserted_id, raw=result)

    def insert_many(self, collection: str, documents, safe: bool = True, gridfs: bool = False) -> WriteResult:
        try:
            with self._profile(f"db.{collection}.insertMany()"):
                result = self._writer(collection, gridfs, safe).insert_many(list(documents))
        except PyMongoError as e:
            logger.error(f"Batch insert into {collection} failed: {e}")
            return WriteResult.failed(e)
        return WriteResult(inserted_id=result.inserted_ids, raw=result)

    def update(self, collection: str, criteria: Dict[str, Any], update: Dict[str, Any], multi: bool = False,
               upsert: bool = False, safe: bool = True, gridfs: bool = False) -> WriteResult:
        coll = self._writer(collection, gridfs, safe)
        is_replacement = not any(key.startswith('$') for key in update)
        try:
            with self._profile(f"db.{collection}.update({dumps(criteria)}, {dumps(update)})"):
                if is_replacement:
                    result = coll.replace_one(criteria, update, upsert=upsert)
                elif multi:
                    result = coll.update_many(criteria, compile_update(update), upsert=upsert)
                else:
                    result = coll.update_one(criteria, compile_update(update), upsert=upsert)
        except PyMongoError as e:
            logger.error(f"Update of {collection} failed: {e}")
            return WriteResult.failed(e)
        if not safe:
            return WriteResult(raw=result)
        return WriteResult(matched_existing=result.matched_count > 0, upserted_id=result.upserted_id, raw=result)

    def remove(self, collection: str, criteria: Dict[str, Any], just_one: bool = False, safe: bool = True,
               gridfs: bool = False) -> WriteResult:
        coll = self._writer(collection, gridfs, safe)
        try:
            with self._profile(f"db.{collection}.remove({dumps(criteria)})"):
                result = coll.delete_one(criteria) if just_one else coll.delete_many(criteria)
        except PyMongoError as e:
            logger.error(f"Remove from {collection} failed: {e}")
            return WriteResult.failed(e)
        if not safe:
            return WriteResult(raw=result)
        return WriteResult(removed_count=result.deleted_count, raw=result)

    # --- Commands ---

    def command(self, name: str, value: Any = 1, **kwargs) -> Dict[str, Any]:
        try:
            with self._profile(f"db.runCommand({name})"):
                return self.connect().command(name, value, **kwargs)
        except PyMongoError as e:
            raise CommandFailed(f"Command {name} failed: {e}", getattr(e, 'code', None),
                                getattr(e, 'details', None)) from e

    def next_sequence(self, name: str, counters: str = "counters") -> int:
        """Atomically increment and return the counter ``name``."""
        try:
            with self._profile(f"db.{counters}.findAndModify({name})"):
                record = self.collection(counters).find_one_and_update(
                    {'_id': name}, {'$inc': {'seq': 1}},
                    upsert=True, return_document=ReturnDocument.AFTER)
        except PyMongoError as e:
            raise CommandFailed(f"Sequence {name} could not be incremented: {e}",
                                getattr(e, 'code', None)) from e
        return record['seq']

    def list_collection_names(self):
        return self.connect().list_collection_names()

    def drop(self):
        self.connect()
        self._client.drop_database(self.settings.database)
        self._collections.clear()
        self._db = None


class Registry:
    """
    Composition root owning database connections, document classes and the
    per-model Collection singletons. ``start()`` binds every declared
    Document class to this registry.
    """

    def __init__(self, config: Optional[MongoConfig] = None, client: Optional[MongoClient] = None):
        self.config = config or MongoConfig()
        self._client = client
        self._databases: Dict[str, Database] = {}
        self._models: Dict[str, Type] = {}
        self._collections: Dict[str, Any] = {}

    def start(self):
        """Register all declared Document classes, bind them to this registry and create their indexes."""
        from .document import DOCUMENT_REGISTRY
        for cls in DOCUMENT_REGISTRY:
            self.register(cls)
        for cls in DOCUMENT_REGISTRY:
            self.ensure_indexes(cls)
        logger.info(f"Registry started with {len(self._models)} document classes.")
        return self

    def ensure_indexes(self, cls: Type):
        """Create the indexes declared in the model's ``Meta.indexes``.

        Each entry is a list of ``(field, direction)`` pairs or a mapping
        ``{'fields': [...], 'unique': True, ...}``.
        """
        if not cls._indexes:
            return
        collection = self.collection_for(cls)
        for index in cls._indexes:
            if isinstance(index, dict):
                options = {k: v for k, v in index.items() if k != 'fields'}
                keys = index['fields']
            else:
                options, keys = {}, index
            keys = [(cls.get_field_name(field), direction) for field, direction in keys]
            collection.ensure_index(keys, **options)

    def stop(self):
        self.close()

    def register(self, cls: Type):
        name = cls.__name__
        if name in self._models and self._models[name] is not cls:
            logger.warning(f"Document class {name} registered twice, replacing {self._models[name].__module__}.{name}")
        self._models[name] = cls
        cls._registry = self
        logger.debug(f"Registered document {name} for collection '{cls.collection_name()}'.")
        return cls

    def database(self, name: str = "default") -> Database:
        if name not in self._databases:
            settings = self.config.get(name)
            if settings is None:
                raise MongoDocError(f"No database configuration named '{name}'")
            self._databases[name] = Database(name, settings, client=self._client)
        return self._databases[name]

    def model(self, name):
        """Resolve a document class from a class, its name or a snake_case name."""
        if isinstance(name, type):
            return name
        if name in self._models:
            return self._models[name]
        camel = ''.join(part[:1].upper() + part[1:] for part in name.split('_'))
        if camel in self._models:
            return self._models[camel]
        raise MongoDocError(f"Unknown document model '{name}'")

    def factory(self, name, load=None):
        """Instantiate a model by name, optionally seeded with an id or criteria."""
        return self.model(name)(load)

    def collection_for(self, model: Type, fresh: bool = False):
        """Return the Collection bound to ``model``, a new one when ``fresh``."""
        from .collection import Collection
        collection_class = model.__collection_class__
        if collection_class is not None:
            key = f"{collection_class.__module__}.{collection_class.__qualname__}:{model.__name__}"
            if fresh or key not in self._collections:
                collection = collection_class(model=model, registry=self)
        else:
            key = f"{model.__database__}.{model.collection_name()}.{model.__gridfs__}:{model.__name__}"
            if fresh or key not in self._collections:
                collection = Collection(model.collection_name(), model.__database__, model.__gridfs__,
                                        model=model, registry=self)
        if fresh:
            return collection
        if key not in self._collections:
            self._collections[key] = collection
        return self._collections[key]

    def close(self):
        for db in self._databases.values():
            db.close()
        self._databases.clear()
        self._collections.clear()
