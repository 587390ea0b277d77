from __future__ import annotations

import pytest

from rendezvous.exceptions import BadRequestError
from rendezvous.exceptions import IdentityConflictError
from rendezvous.exceptions import NotSignedInError
from rendezvous.registry import ConnectionRecord
from rendezvous.registry import RecordState
from rendezvous.registry import Registry
from testing.utils import mock_connection


def _record() -> ConnectionRecord:
    return ConnectionRecord(mock_connection())


def test_record_states() -> None:
    record = _record()
    assert record.state is RecordState.ANONYMOUS
    with pytest.raises(NotSignedInError):
        record.require_identity()

    record.identity = 'alice'
    assert record.state is RecordState.IDENTIFIED
    assert record.require_identity() == 'alice'

    record.closed = True
    assert record.state is RecordState.CLOSED


def test_record_repr() -> None:
    record = _record()
    record.identity = 'alice'
    record_repr = repr(record)
    assert "identity='alice'" in record_repr
    assert 'IDENTIFIED' in record_repr
    assert '127.0.0.1' in record_repr


def test_records_compare_by_identity() -> None:
    connection = mock_connection()
    assert ConnectionRecord(connection) != ConnectionRecord(connection)


def test_sign_in() -> None:
    registry = Registry()
    record = _record()

    registry.sign_in(record, 'alice')

    assert record.identity == 'alice'
    assert registry.is_online('alice')
    assert registry.get_record('alice') is record
    assert registry.get_records() == [record]
    assert registry.get_topics('alice') == frozenset()


def test_sign_in_identity_conflict() -> None:
    registry = Registry()
    first = _record()
    second = _record()
    registry.sign_in(first, 1)

    with pytest.raises(
        IdentityConflictError,
        match='A client is already registered with ID: 1',
    ):
        registry.sign_in(second, 1)

    assert registry.get_record(1) is first
    assert second.identity is None


def test_sign_in_twice_on_same_record() -> None:
    registry = Registry()
    record = _record()
    registry.sign_in(record, 'alice')

    with pytest.raises(BadRequestError, match='already signed in'):
        registry.sign_in(record, 'bob')

    assert not registry.is_online('bob')


def test_sign_in_closed_record() -> None:
    registry = Registry()
    record = _record()
    record.closed = True

    with pytest.raises(BadRequestError, match='closed'):
        registry.sign_in(record, 'alice')


def test_int_and_str_identities_are_distinct() -> None:
    registry = Registry()
    registry.sign_in(_record(), 1)
    registry.sign_in(_record(), '1')
    assert len(registry.get_records()) == 2


def test_subscribe() -> None:
    registry = Registry()
    registry.sign_in(_record(), 1)
    registry.sign_in(_record(), 2)

    assert registry.get_subscribers('topic') == frozenset()

    registry.subscribe(1, 'topic')
    assert registry.get_subscribers('topic') == {1}

    registry.subscribe(2, 'topic')
    registry.subscribe(2, 'topic')
    registry.subscribe(2, 'other')
    assert registry.get_subscribers('topic') == {1, 2}
    assert registry.get_topics(2) == {'topic', 'other'}


def test_remove_anonymous_record() -> None:
    registry = Registry()
    record = _record()
    assert registry.remove(record) is None
    assert record.closed


def test_remove_cleans_up_topics() -> None:
    registry = Registry()
    first = _record()
    second = _record()
    registry.sign_in(first, 1)
    registry.sign_in(second, 2)
    registry.subscribe(1, 'shared')
    registry.subscribe(1, 'solo')
    registry.subscribe(2, 'shared')

    assert registry.remove(first) == 1

    assert first.state is RecordState.CLOSED
    assert not registry.is_online(1)
    assert registry.get_record(1) is None
    assert registry.get_topics(1) == frozenset()
    assert registry.get_subscribers('shared') == {2}
    assert registry.get_subscribers('solo') == frozenset()

    # Removing twice is a no-op
    assert registry.remove(first) is None


def test_identity_reusable_after_remove() -> None:
    registry = Registry()
    first = _record()
    registry.sign_in(first, 'alice')
    registry.subscribe('alice', 'topic')
    registry.remove(first)

    second = _record()
    registry.sign_in(second, 'alice')
    assert registry.get_record('alice') is second
    # Subscriptions do not carry over to the new connection
    assert registry.get_subscribers('topic') == frozenset()


def test_status_listeners() -> None:
    registry = Registry()
    alice = _record()
    bob = _record()
    registry.sign_in(alice, 'alice')
    registry.sign_in(bob, 'bob')

    registry.add_status_listener('alice', 'bob')
    registry.add_status_listener('alice', 'carol')
    assert registry.get_status_listeners('bob') == {'alice'}
    assert registry.get_status_listeners('carol') == {'alice'}

    # Listeners of an identity survive the identity going offline
    registry.remove(bob)
    assert registry.get_status_listeners('bob') == {'alice'}

    # A listener that goes offline is removed from all listener sets
    registry.remove(alice)
    assert registry.get_status_listeners('bob') == frozenset()
    assert registry.get_status_listeners('carol') == frozenset()
