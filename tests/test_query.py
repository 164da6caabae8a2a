import pytest

from mongodoc.query import (merge_criteria, merge_recursive_distinct, normalize_direction,
                            translate_field, translate_keys)


ALIASES = {'name': 'n', 'address': 'addr'}


@pytest.mark.parametrize("name, expected", [
    ('id', '_id'),
    ('_id', '_id'),
    ('name', 'n'),
    ('age', 'age'),
    ('address.city', 'addr.city'),
    ('city.address', 'city.address'),
])
def test_translate_field(name, expected):
    assert translate_field(name, ALIASES) == expected


def test_translate_field_without_dots_looks_up_whole_name():
    assert translate_field('address.city', {'address.city': 'ac'}, dot_allowed=False) == 'ac'


def test_translate_keys_skips_operators():
    translated = translate_keys({'name': 'x', '$where': 'this.a', '$or': [{'name': 'y'}]},
                                lambda f: translate_field(f, ALIASES))
    assert translated == {'n': 'x', '$where': 'this.a', '$or': [{'n': 'y'}]}


def test_merge_in_intersects():
    merged = merge_criteria({'a': {'$in': [1, 2, 3]}}, {'a': {'$in': [2, 3, 4]}})
    assert merged == {'a': {'$in': [2, 3]}}


def test_merge_nin_and_all_union():
    assert merge_criteria({'a': {'$nin': [1]}}, {'a': {'$nin': [2]}}) == {'a': {'$nin': [1, 2]}}
    assert merge_criteria({'a': {'$all': [1, 2]}}, {'a': {'$all': [2, 3]}}) == {'a': {'$all': [1, 2, 3]}}


def test_merge_or_accumulates():
    merged = merge_criteria({}, {'$or': [{'a': 1}]})
    merged = merge_criteria(merged, {'$or': {'b': 2}})
    merged = merge_criteria(merged, {'$or': [{'c': 3}, {'d': 4}]})
    assert merged == {'$or': [{'a': 1}, {'b': 2}, {'c': 3}, {'d': 4}]}


def test_merge_where_overwrites():
    merged = merge_criteria({'$where': 'this.a > 1'}, {'$where': 'this.b > 1'})
    assert merged == {'$where': 'this.b > 1'}


def test_merge_nested_and_scalar():
    merged = merge_criteria({'a': {'$gt': 1}, 'b': 1}, {'a': {'$lt': 5}, 'b': 2})
    assert merged == {'a': {'$gt': 1, '$lt': 5}, 'b': 2}


def test_merge_does_not_mutate_inputs():
    left = {'a': {'$in': [1, 2]}}
    merge_criteria(left, {'a': {'$in': [2]}})
    assert left == {'a': {'$in': [1, 2]}}


def test_merge_recursive_distinct():
    merged = merge_recursive_distinct({'$push': {'a': 1}, '$set': {'b': 1}}, {'$push': {'c': 2}, '$set': {'b': 3}})
    assert merged == {'$push': {'a': 1, 'c': 2}, '$set': {'b': 3}}


@pytest.mark.parametrize("direction, expected", [
    (1, 1), ('1', 1), ('asc', 1), ('ASC', 1),
    (-1, -1), ('desc', -1), ('-1', -1), (0, -1),
])
def test_normalize_direction(direction, expected):
    assert normalize_direction(direction) == expected
