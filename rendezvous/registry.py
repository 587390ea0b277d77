"""Server-side registry of identities, topics, and status listeners."""
from __future__ import annotations

import dataclasses
import datetime
import enum

from rendezvous.connection import Connection
from rendezvous.exceptions import BadRequestError
from rendezvous.exceptions import IdentityConflictError
from rendezvous.exceptions import NotSignedInError
from rendezvous.messages import Identity


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


class RecordState(enum.Enum):
    """State of a connection known to the registry."""

    ANONYMOUS = 'ANONYMOUS'
    IDENTIFIED = 'IDENTIFIED'
    CLOSED = 'CLOSED'


@dataclasses.dataclass(eq=False)
class ConnectionRecord:
    """Pairs a live connection with the identity it signed in as.

    Attributes:
        connection: Connection to the client.
        identity: Identity bound to the connection or `None` if the
            connection has not signed in.
        closed: If the connection has been closed.
        created: Time the record was created at.
    """

    connection: Connection
    identity: Identity | None = None
    closed: bool = False
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    @property
    def state(self) -> RecordState:
        """Current state of the record."""
        if self.closed:
            return RecordState.CLOSED
        elif self.identity is None:
            return RecordState.ANONYMOUS
        else:
            return RecordState.IDENTIFIED

    def require_identity(self) -> Identity:
        """Get the bound identity.

        Raises:
            NotSignedInError: If the connection has not signed in.
        """
        if self.identity is None:
            raise NotSignedInError(
                'The connection must sign in before making this request.',
            )
        return self.identity

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.connection.remote_address)
        return (
            f'{self.__class__.__name__}(identity={self.identity!r}, '
            f'state={self.state.value}, address={address}, '
            f'created={created})'
        )


class Registry:
    """Authoritative state of a rendezvous server.

    The registry maps identities to connection records, topics to
    subscribers (and the reverse), and identities to status listeners
    (and the reverse). Every method completes without awaiting so each
    call is atomic with respect to other messages handled on the same
    event loop.

    Warning:
        This class is intended for internal use by the
        [`RendezvousServer`][rendezvous.server.RendezvousServer].
    """

    def __init__(self) -> None:
        self._records_by_identity: dict[Identity, ConnectionRecord] = {}
        self._topic_to_identities: dict[str, set[Identity]] = {}
        self._identity_to_topics: dict[Identity, set[str]] = {}
        self._status_listeners: dict[Identity, set[Identity]] = {}
        self._listening_to: dict[Identity, set[Identity]] = {}

    def get_records(self) -> list[ConnectionRecord]:
        """Get a list of all identified connection records."""
        return list(self._records_by_identity.values())

    def get_record(self, identity: Identity) -> ConnectionRecord | None:
        """Get the record bound to an identity."""
        return self._records_by_identity.get(identity, None)

    def is_online(self, identity: Identity) -> bool:
        """Check if an identity is bound to a live connection."""
        return identity in self._records_by_identity

    def sign_in(self, record: ConnectionRecord, identity: Identity) -> None:
        """Bind an identity to a connection record.

        Raises:
            IdentityConflictError: If the identity is already bound.
            BadRequestError: If the record is already signed in or closed.
        """
        if identity in self._records_by_identity:
            raise IdentityConflictError(
                f'A client is already registered with ID: {identity}',
            )
        if record.closed:
            raise BadRequestError('The connection is closed.')
        if record.identity is not None:
            raise BadRequestError(
                f'The connection is already signed in as {record.identity}.',
            )

        record.identity = identity
        self._records_by_identity[identity] = record
        self._identity_to_topics[identity] = set()

    def subscribe(self, identity: Identity, topic: str) -> None:
        """Subscribe a signed-in identity to a topic.

        The topic is created if it does not exist yet.
        """
        self._topic_to_identities.setdefault(topic, set()).add(identity)
        self._identity_to_topics[identity].add(topic)

    def get_subscribers(self, topic: str) -> frozenset[Identity]:
        """Get the identities currently subscribed to a topic.

        Returns an empty set for topics without any subscribers.
        """
        return frozenset(self._topic_to_identities.get(topic, ()))

    def get_topics(self, identity: Identity) -> frozenset[str]:
        """Get the topics an identity is subscribed to."""
        return frozenset(self._identity_to_topics.get(identity, ()))

    def add_status_listener(
        self,
        listener: Identity,
        target: Identity,
    ) -> None:
        """Register `listener` to be notified of status changes of `target`."""
        self._status_listeners.setdefault(target, set()).add(listener)
        self._listening_to.setdefault(listener, set()).add(target)

    def get_status_listeners(self, target: Identity) -> frozenset[Identity]:
        """Get the identities listening to status changes of `target`."""
        return frozenset(self._status_listeners.get(target, ()))

    def remove(self, record: ConnectionRecord) -> Identity | None:
        """Remove a closed connection and all state derived from it.

        The identity is removed from the identity map, from the subscriber
        set of every topic it subscribed to, and from the listener set of
        every identity it was listening to. Listeners of the identity are
        kept so they are notified if the identity signs in again.

        Returns:
            The identity that was bound to the record or `None` if the
            connection never signed in.
        """
        record.closed = True
        identity = record.identity
        if identity is None:
            return None
        if self._records_by_identity.get(identity) is not record:
            return None

        del self._records_by_identity[identity]

        for topic in self._identity_to_topics.pop(identity, set()):
            subscribers = self._topic_to_identities[topic]
            subscribers.discard(identity)
            if len(subscribers) == 0:
                del self._topic_to_identities[topic]

        for target in self._listening_to.pop(identity, set()):
            listeners = self._status_listeners[target]
            listeners.discard(identity)
            if len(listeners) == 0:
                del self._status_listeners[target]

        return identity
