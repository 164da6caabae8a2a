"""
mongodoc: an object-document mapper for MongoDB built on pymongo.

    registry = Registry(load_config("mongodoc.toml")).start()
    user = User()
    user['name'] = 'Bugs Bunny'
    user.push('friends', 'Daffy Duck').save()
"""
from .errors import (MongoDocError, InvalidQuery, CursorAlreadyStarted, MissingCriteria, EmptyInsert,
                     InvalidOperand, ReferenceTypeError, UnsupportedOperation, QueryFailed, OperationFailed,
                     InsertFailed, UpdateFailed, RemoveFailed, UpsertFailed, CommandFailed)
from .config import DatabaseSettings, MongoConfig, load_config
from .logging import setup_logging
from .query import ASC, DESC, merge_criteria, merge_recursive_distinct, normalize_direction, translate_field
from .database import CursorHandle, Database, Registry, WriteResult
from .collection import Collection
from .fields import Field, ReferenceField, ReferenceListField, ReverseReferenceField
from .document import DOCUMENT_REGISTRY, Document, SaveAction
from .subdocument import Subdocument

__version__ = "0.1.0"
