from collections.abc import Mapping

from bson.dbref import DBRef


class Field:
    """
    A plain document field.

    Declaring fields is optional (documents accept any field name); a
    declared field gives attribute access and may store under another
    name with ``db_field``.
    """

    def __init__(self, db_field=None):
        self.db_field = db_field
        self.name = None  # will be set by the metaclass

    def __get__(self, instance, owner):
        if instance is None:
            return self
        return instance.get(self.name)

    def __set__(self, instance, value):
        instance[self.name] = value

    def __delete__(self, instance):
        instance.unset(self.name)


class Reference:
    """Base class for declared references between documents."""

    # single references are cached on the document once resolved
    memoized = False

    def __init__(self, model, field=None):
        # A class or a registered class name, resolved lazily for self/forward references
        self.model = model
        self.field = field
        self.name = None  # will be set by the metaclass

    def __repr__(self):
        model = self.model if isinstance(self.model, str) else self.model.__name__
        return f"<{self.__class__.__name__} {self.name} -> {model}>"

    @property
    def id_field(self):
        return self.field or f"_{self.name}"

    def __get__(self, instance, owner):
        if instance is None:
            return self
        return instance.get(self.name)

    def __set__(self, instance, value):
        instance[self.name] = value

    def target(self, document):
        return document._registry.model(self.model)

    def query(self, document):
        return document._registry.collection_for(self.target(document), fresh=True)

    def resolve(self, document):
        raise NotImplementedError


class ReferenceField(Reference):
    """
    Reference to a single document whose id is stored in ``field``
    (``_<name>`` by default). Resolves to an unloaded instance of the
    target model which loads itself on first read.
    """
    memoized = True

    def resolve(self, document):
        value = document.get(self.id_field)
        if isinstance(value, DBRef):
            value = value.id
        elif isinstance(value, Mapping) and '$id' in value:
            value = value['$id']
        return self.target(document)(value)


class ReferenceListField(Reference):
    """Reference to many documents whose ids are stored as an array in ``field``."""

    def resolve(self, document):
        ids = document.get(self.id_field)
        if ids is None:
            ids = []
        elif not isinstance(ids, (list, tuple)):
            ids = [ids]
        return self.query(document).find({'_id': {'$in': list(ids)}})


class ReverseReferenceField(Reference):
    """The documents of ``model`` whose ``foreign_field`` holds this document's id."""

    def __init__(self, model, foreign_field):
        super().__init__(model)
        self.foreign_field = foreign_field

    def resolve(self, document):
        return self.query(document).find({self.foreign_field: document.id})
