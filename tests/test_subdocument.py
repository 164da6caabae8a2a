import pytest

from mongodoc import Document, Subdocument


class Holder(Document):
    __collection__ = "mongotest"


class Counter(Subdocument):
    """A subdocument exposing a domain operation."""

    def increment(self):
        return self.inc('n', 1)


def test_create_nested_structure(registry):
    doc = Holder()
    doc['name'] = 'holder'
    sub = Subdocument(doc, 'sub')
    sub['foo'] = 'bar'
    sub['nested.x'] = 1
    assert sub.as_dict() == {'foo': 'bar', 'nested': {'x': 1}}
    assert sub.is_changed()
    doc.save()

    doc = Holder(doc.id)
    assert doc['sub'] == {'foo': 'bar', 'nested': {'x': 1}}
    assert Subdocument(doc, 'sub')['nested.x'] == 1


def test_create_inside_array(registry):
    doc = Holder()
    doc['list'] = []
    Subdocument(doc, 'list.0')['a'] = 1
    Subdocument(doc, 'list.1')['a'] = 2
    assert doc['list'] == [{'a': 1}, {'a': 2}]
    doc.save()
    doc = Holder(doc.id)
    assert doc['list'] == [{'a': 1}, {'a': 2}]


def test_iterate_and_increment(registry):
    doc = Holder().load_values({'counts': [{'n': 1}, {'n': 5}]}).save()
    counters = list(Counter.iterate(doc, 'counts'))
    assert [c.path for c in counters] == ['counts.0', 'counts.1']
    assert [c.key for c in counters] == ['0', '1']
    for counter in counters:
        counter.increment()
    assert doc.operations == {'$inc': {'counts.0.n': 1, 'counts.1.n': 1}}
    assert counters[1].pending_operations() == {'$inc': {'n': 1}}
    doc.save()
    assert [c['n'] for c in Counter.iterate(doc, 'counts')] == [2, 6]


def test_iterate_emulated(registry):
    doc = Holder().load_values({'counts': [{'n': 1}, {'n': 5}]}).save()
    for counter in Counter.iterate(doc, 'counts', emulation=True):
        counter.increment()
    assert doc.operations == {}
    assert doc.as_dict()['counts'] == [{'n': 2}, {'n': 6}]


def test_iterate_missing_array(registry):
    doc = Holder().load_values({'name': 'empty'})
    assert list(Subdocument.iterate(doc, 'counts')) == []


def test_operator_on_subdocument_itself(registry):
    doc = Holder().load_values({'totals': [0, 0, 0, 7]}).save()
    Subdocument(doc, 'totals.3').inc()
    assert doc.operations == {'$inc': {'totals.3': 1}}
    doc.save()
    assert doc['totals'] == [0, 0, 0, 8]


SUB_CASES = [
    ('set', lambda s, e: s.set('foo', 'baz', e), {'foo': 'baz', 'num': 1, 'list': ['a', 'b']}),
    ('unset', lambda s, e: s.unset('foo', e), {'num': 1, 'list': ['a', 'b']}),
    ('inc', lambda s, e: s.inc('num', 2, e), {'foo': 'bar', 'num': 3, 'list': ['a', 'b']}),
    ('push', lambda s, e: s.push('list', 'c', e), {'foo': 'bar', 'num': 1, 'list': ['a', 'b', 'c']}),
    ('pull', lambda s, e: s.pull('list', 'a', e), {'foo': 'bar', 'num': 1, 'list': ['b']}),
    ('pop', lambda s, e: s.pop('list', True, e), {'foo': 'bar', 'num': 1, 'list': ['a']}),
    ('shift', lambda s, e: s.shift('list', e), {'foo': 'bar', 'num': 1, 'list': ['b']}),
    ('add_to_set', lambda s, e: s.add_to_set('list', 'a', e), {'foo': 'bar', 'num': 1, 'list': ['a', 'b']}),
]


@pytest.mark.parametrize("sub_emulation", [None, False, True])
@pytest.mark.parametrize("emulate", [None, False, True])
@pytest.mark.parametrize("name, operation, expected", SUB_CASES, ids=[c[0] for c in SUB_CASES])
def test_subdocument_operators(registry, sub_emulation, emulate, name, operation, expected):
    doc = Holder().load_values({'sub': {'foo': 'bar', 'num': 1, 'list': ['a', 'b']}}).save()
    sub = Subdocument(doc, 'sub', sub_emulation)
    operation(sub, emulate)

    emulated = bool(sub_emulation if emulate is None else emulate)
    if emulated:
        assert doc.operations == {}
        assert sub.as_dict() == expected
    else:
        assert sub.pending_operations()

    doc.save()
    assert Holder(doc.id)['sub'] == expected


def test_emulated_push_before_first_save(registry):
    """Test that an emulated push on a new parent lands in the insert."""
    doc = Holder()
    doc['name'] = 'new'
    Subdocument(doc, 'sub', emulation=True).push('list', 'a').push('list', 'b')
    assert doc.operations == {}
    doc.save()
    assert Holder(doc.id)['sub'] == {'list': ['a', 'b']}

    saved = Holder().load_values({'name': 'old'}).save()
    Subdocument(saved, 'sub').push('list', 'a').push('list', 'b')
    assert saved.operations == {'$pushAll': {'sub.list': ['a', 'b']}}
    saved.save()
    assert Holder(saved.id)['sub'] == Holder(doc.id)['sub']
