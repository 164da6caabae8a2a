import pytest

from mongodoc import (Collection, CursorAlreadyStarted, Document, InvalidQuery, MongoDocError,
                      UnsupportedOperation)


class Number(Document):
    __collection__ = "numbers"
    __aliases__ = {'label': 'l'}


class Numbers(Collection):
    name = "numbers"


@pytest.fixture
def numbers(registry):
    """Fixture inserting 20 numbered records."""
    col = Collection("numbers", registry=registry)
    col.batch_insert([{'name': f"n{i:02d}", 'number': i, 'l': f"label{i}"} for i in range(20)])
    return col


def test_batch_insert_and_count(numbers, registry):
    """Test that an independent count ignores the query state."""
    assert numbers.count({}) == 20
    assert Collection("numbers", registry=registry).find({'number': {'$gt': 10}}).count({}) == 20


def test_find_limit_sort(numbers, registry):
    col = Collection("numbers", registry=registry).find({'number': {'$gt': 10}}).limit(6).sort_asc('name')
    records = col.as_list()
    assert len(records) == 6
    assert [r['number'] for r in records] == [11, 12, 13, 14, 15, 16]


def test_count_honours_limit_and_skip(numbers, registry):
    col = Collection("numbers", registry=registry).find({'number': {'$gt': 10}}).limit(3).skip(2)
    assert col.count(True) == 3
    assert col.count(False) == 9


def test_find_json_string_and_pair(numbers, registry):
    col = Collection("numbers", registry=registry).find("{number: {$gte: 18}}").find('name', 'n19')
    assert col.criteria == {'number': {'$gte': 18}, 'name': 'n19'}
    assert [r['number'] for r in col] == [19]


def test_invalid_json_raises(registry):
    with pytest.raises(InvalidQuery):
        Collection("numbers", registry=registry).find("{number: ")


def test_modifying_after_start_raises(numbers, registry):
    col = Collection("numbers", registry=registry).find({'number': 1})
    col.load()
    with pytest.raises(CursorAlreadyStarted):
        col.find({'name': 'x'})
    with pytest.raises(CursorAlreadyStarted):
        col.limit(1)
    with pytest.raises(CursorAlreadyStarted):
        col.fields(['name'])
    with pytest.raises(CursorAlreadyStarted):
        col.sort_desc('name')
    # batch size may still change on a live cursor
    col.batch_size(10)
    assert col.get_option('batch_size') == 10


def test_iteration_is_single_pass(numbers, registry):
    col = Collection("numbers", registry=registry).find({'number': {'$lt': 3}})
    assert len(list(col)) == 3
    with pytest.raises(CursorAlreadyStarted):
        list(col)


def test_reset_allows_new_query(numbers, registry):
    col = Collection("numbers", registry=registry).find({'number': 1})
    assert len(col.as_list()) == 1
    col.reset().find({'number': 2})
    assert col.as_list()[0]['name'] == 'n02'


def test_get_next_and_has_next(numbers, registry):
    col = Collection("numbers", registry=registry).find({'number': {'$lt': 2}}).sort('number', 'asc')
    assert col.has_next()
    assert col.get_next()['number'] == 0
    assert col.has_next()
    assert col.get_next()['number'] == 1
    assert not col.has_next()
    assert col.get_next() is None


def test_fields_projection(numbers, registry):
    record = Collection("numbers", registry=registry).find({'number': 5}).fields(['name']).as_list()[0]
    assert set(record) == {'_id', 'name'}


def test_select_list(numbers, registry):
    col = Collection("numbers", registry=registry).find({'number': {'$lt': 3}}).sort_asc('number')
    assert col.select_list('name') == ['n00', 'n01', 'n02']
    col = Collection("numbers", registry=registry).find({'number': {'$lt': 2}})
    assert col.select_list('name', 'number') == {'n00': 0, 'n01': 1}


def test_find_one_variants(numbers, registry):
    col = Collection("numbers", registry=registry)
    record = col.find_one({'number': 7})
    assert record['name'] == 'n07'
    assert col.find_one(record['_id'])['number'] == 7
    assert col.find_one("{name: \"n08\"}")['number'] == 8
    assert col.find_one({'number': 99}) is None


def test_model_mode_translates_and_wraps(numbers, registry):
    col = Number.find({'label': 'label3'})
    assert col.criteria == {'l': 'label3'}
    docs = col.as_list()
    assert len(docs) == 1
    assert isinstance(docs[0], Number)
    assert docs[0].get('label') == 'label3'
    assert docs[0].as_dict()['label'] == 'label3'
    assert Number.find_one({'number': 4})['name'] == 'n04'


def test_row_data_gateway_subclass(numbers, registry):
    assert Numbers(registry=registry).find({'number': {'$gte': 15}}).count() == 5


def test_inspect_renders_query_in_call_order(registry):
    col = (Collection("numbers", registry=registry)
           .find({'number': {'$gt': 10}})
           .fields(['name'])
           .limit(6)
           .sort_asc('name')
           .immortal()
           .hint({'name': 1}))
    assert col.inspect() == (
        'db.numbers.find({"number": {"$gt": 10}}, {"name": 1})'
        '.limit(6).sort({"name": 1}).immortal(true).hint({"name": 1})'
    )
    assert str(col) == "numbers"
    assert Collection("numbers", registry=registry).inspect() == "db.numbers.find()"


def test_unknown_option_raises(registry):
    with pytest.raises(UnsupportedOperation):
        Collection("numbers", registry=registry).set_option('bogus', 1)


def test_option_accessors(registry):
    col = Collection("numbers", registry=registry).limit(3)
    assert col.has_option('limit')
    assert col.get_option('limit') == 3
    col.unset_option('limit')
    assert not col.has_option('limit')
    assert col.get_option('limit', 0) == 0


def test_sort_directions(registry):
    col = Collection("numbers", registry=registry).sort({'a': 'asc', 'b': 'desc'}).sort('c', -1).sort('d', '1')
    assert col.get_option('sort') == {'a': 1, 'b': -1, 'c': -1, 'd': 1}


def test_pass_throughs(numbers, registry):
    col = Collection("numbers", registry=registry)
    result = col.update({'number': 1}, {'$set': {'name': 'one'}})
    assert result.ok and result.matched_existing
    assert col.find_one({'number': 1})['name'] == 'one'
    assert col.update({'number': {'$lt': 5}}, {'$inc': {'number': 100}}, multi=True).ok
    assert col.count({'number': {'$gte': 100}}) == 5
    assert sorted(col.distinct('number'))[:2] == [5, 6]
    result = col.remove({'number': {'$gte': 100}})
    assert result.removed_count == 5
    assert col.count({}) == 15
    modified = col.find_and_modify({'number': 5}, {'$set': {'name': 'five'}})
    assert modified['name'] == 'five'
    col.drop()
    assert col.count({}) == 0


def test_collection_requires_registry():
    with pytest.raises(MongoDocError):
        Collection("numbers")


def test_or_fragments_from_repeated_find_are_joined(numbers, registry):
    col = (Collection("numbers", registry=registry)
           .find({'$or': [{'number': 1}, {'number': 2}]})
           .find({'$or': [{'number': 3}]}))
    assert col.criteria == {'$or': [{'number': 1}, {'number': 2}, {'number': 3}]}
    assert col.count() == 3

    both = Collection("numbers", registry=registry).find(
        {'$and': [{'$or': [{'number': 1}, {'number': 2}]}, {'$or': [{'number': 2}, {'number': 3}]}]})
    assert [r['number'] for r in both] == [2]
