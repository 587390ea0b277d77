"""Rendezvous server implementation.

The rendezvous server (or signaling server) is a lightweight server
accessible by all peers (e.g., has a public IP address). Peers sign in with
a unique identity, discover each other by subscribing to shared topics,
and relay opaque signaling payloads (e.g., session descriptions used to
establish a direct peer-to-peer connection) to each other by identity.
"""
from __future__ import annotations

import logging
from typing import Any

import websockets.exceptions
from websockets.asyncio.server import ServerConnection

from rendezvous.connection import Connection
from rendezvous.dispatcher import MessageDispatcher
from rendezvous.exceptions import BadRequestError
from rendezvous.exceptions import PeerNotOnlineError
from rendezvous.exceptions import RendezvousServerError
from rendezvous.messages import ClientStatus
from rendezvous.messages import decode_message
from rendezvous.messages import Identity
from rendezvous.messages import is_identity
from rendezvous.messages import MessageDecodeError
from rendezvous.messages import MessageEncodeError
from rendezvous.messages import MessageType
from rendezvous.registry import ConnectionRecord
from rendezvous.registry import Registry

logger = logging.getLogger(__name__)


def _validate_identity(value: Any, field: str) -> Identity:
    if not is_identity(value):
        raise BadRequestError(
            f'Field `{field}` must be a string or integer identity but got '
            f'{value!r}.',
        )
    return value


def _validate_topic(value: Any) -> str:
    if not isinstance(value, str):
        raise BadRequestError(
            f'Field `topic` must be a string but got {value!r}.',
        )
    return value


class RendezvousServer:
    """Topic-based rendezvous and relay server.

    The server holds a [`Registry`][rendezvous.registry.Registry] of
    signed-in identities and a
    [`MessageDispatcher`][rendezvous.dispatcher.MessageDispatcher] with a
    handler for each request type. Handlers run synchronously on the event
    loop so the handling of one message, including all registry updates and
    queued replies, completes before the next message is handled.

    Rejected requests are answered with an `ERROR` message on the
    originating connection and never close the connection.

    The server is built on websockets and designed to be
    served using [`serve()`][rendezvous.run.serve].

    Args:
        max_queued_messages: Maximum number of messages queued for a single
            client before the connection to that client is closed. If
            `None`, outgoing messages are queued without limit.
    """

    def __init__(self, max_queued_messages: int | None = None) -> None:
        self._max_queued_messages = max_queued_messages
        self._registry = Registry()
        self._dispatcher = MessageDispatcher()

        self._dispatcher.register_handler(
            MessageType.GET_TOPIC_INFO_REQ,
            self.get_topic_info,
        )
        self._dispatcher.register_handler(
            MessageType.REGISTER_CLIENT_STATUS,
            self.register_client_status,
        )
        self._dispatcher.register_handler(MessageType.RELAY, self.relay)
        self._dispatcher.register_handler(MessageType.SIGN_IN, self.sign_in)
        self._dispatcher.register_handler(
            MessageType.SUBSCRIBE,
            self.subscribe,
        )

    @property
    def registry(self) -> Registry:
        """Registry of connected clients."""
        return self._registry

    @property
    def dispatcher(self) -> MessageDispatcher:
        """Dispatcher of inbound messages."""
        return self._dispatcher

    def send(
        self,
        record: ConnectionRecord,
        message_type: MessageType,
        *args: Any,
    ) -> None:
        """Queue a message to the client of a connection record.

        Args:
            record: Record of the connection to send on.
            message_type: Type of the message.
            args: Values of the payload fields of the message type.
        """
        try:
            self._dispatcher.send(record.connection, message_type, *args)
        except MessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')

    def send_error(self, record: ConnectionRecord, reason: str) -> None:
        """Reply to a client with an `ERROR` message."""
        logger.warning(f'Rejected request from {record}: {reason}')
        self.send(record, MessageType.ERROR, reason)

    def sign_in(
        self,
        record: ConnectionRecord,
        payload: dict[str, Any],
    ) -> None:
        """Bind the requested identity to the connection.

        Listeners of the identity are notified that it is online.

        Raises:
            IdentityConflictError: If the identity is already bound to
                another connection.
            BadRequestError: If the identity is invalid or the connection
                has already signed in.
        """
        identity = _validate_identity(payload['id'], 'id')
        self.registry.sign_in(record, identity)
        logger.info(f'Signed in client: {record}')
        self._notify_status(identity, ClientStatus.ONLINE)

    def subscribe(
        self,
        record: ConnectionRecord,
        payload: dict[str, Any],
    ) -> None:
        """Subscribe the signed-in identity to a topic.

        Raises:
            NotSignedInError: If the connection has not signed in.
            BadRequestError: If the payload identity does not match the
                identity of the connection or the topic is not a string.
        """
        identity = record.require_identity()
        if payload['id'] != identity:
            raise BadRequestError(
                f'Cannot subscribe as {payload["id"]!r} on a connection '
                f'signed in as {identity!r}.',
            )
        topic = _validate_topic(payload['topic'])
        self.registry.subscribe(identity, topic)
        logger.info(f'Client {identity!r} subscribed to topic {topic!r}')

    def get_topic_info(
        self,
        record: ConnectionRecord,
        payload: dict[str, Any],
    ) -> None:
        """Reply with the current subscribers of a topic.

        Topics that have never been subscribed to have no subscribers.

        Raises:
            BadRequestError: If the topic is not a string.
        """
        topic = _validate_topic(payload['topic'])
        peers = self.registry.get_subscribers(topic)
        self.send(record, MessageType.GET_TOPIC_INFO_RSP, topic, peers)

    def relay(self, record: ConnectionRecord, payload: dict[str, Any]) -> None:
        """Forward an opaque payload to another identity.

        The `from` field of the forwarded message is always the identity
        bound to the source connection.

        Raises:
            NotSignedInError: If the connection has not signed in.
            BadRequestError: If the target identity is invalid.
            PeerNotOnlineError: If the target identity is not signed in.
        """
        source = record.require_identity()
        target = _validate_identity(payload['to'], 'to')
        target_record = self.registry.get_record(target)
        if target_record is None:
            raise PeerNotOnlineError(f'Client `{target}` is not online')

        logger.info(f'Relaying message from {source!r} to {target!r}')
        self.send(
            target_record,
            MessageType.RELAY,
            source,
            target,
            payload['relay'],
        )

    def register_client_status(
        self,
        record: ConnectionRecord,
        payload: dict[str, Any],
    ) -> None:
        """Register for status updates of another identity.

        If the target is currently online, the requester is immediately
        sent an `ONLINE` status update.

        Raises:
            NotSignedInError: If the connection has not signed in.
            BadRequestError: If the payload identity does not match the
                identity of the connection or the target is invalid.
        """
        listener = record.require_identity()
        if payload['id'] != listener:
            raise BadRequestError(
                f'Cannot register status updates for {payload["id"]!r} on a '
                f'connection signed in as {listener!r}.',
            )
        target = _validate_identity(payload['target'], 'target')
        self.registry.add_status_listener(listener, target)
        logger.info(
            f'Client {listener!r} registered for status updates of '
            f'{target!r}',
        )

        if self.registry.is_online(target):
            self.send(
                record,
                MessageType.UPDATE_CLIENT_STATUS,
                target,
                ClientStatus.ONLINE,
            )

    def disconnect(self, record: ConnectionRecord, expected: bool) -> None:
        """Remove a closed connection from the registry.

        Listeners of the identity bound to the connection, if any, are
        notified that it is offline.

        Args:
            record: Record of the closed connection.
            expected: If the connection was closed intentionally or due to an
                error.
        """
        identity = self.registry.remove(record)
        self._dispatcher.abandon(record.connection)
        if identity is None:
            return

        reason = 'ok' if expected else 'unexpected'
        logger.info(f'Unregistered client {identity!r} for {reason} reason')
        self._notify_status(identity, ClientStatus.OFFLINE)

    def _notify_status(self, identity: Identity, status: ClientStatus) -> None:
        for listener in self.registry.get_status_listeners(identity):
            listener_record = self.registry.get_record(listener)
            if listener_record is None or listener == identity:
                continue
            self.send(
                listener_record,
                MessageType.UPDATE_CLIENT_STATUS,
                identity,
                status,
            )

    def process_frame(
        self,
        record: ConnectionRecord,
        frame: str | bytes,
    ) -> None:
        """Decode and handle a single frame received from a client.

        Frames that cannot be decoded and rejected requests are answered
        with an `ERROR` message.
        """
        try:
            message = decode_message(frame)
        except MessageDecodeError as e:
            self.send_error(record, str(e))
            return

        try:
            self._dispatcher.handle(
                record.connection,
                message,
                lambda reason: self.send_error(record, reason),
                record,
                message.payload,
            )
        except RendezvousServerError as e:
            self.send_error(record, str(e))

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Handles every frame received on the websocket until it is closed
        and then removes the connection from the registry.

        Args:
            websocket: Websocket connection with the client.
        """
        record = ConnectionRecord(
            Connection(websocket, max_queued=self._max_queued_messages),
        )
        logger.debug(f'Opened connection from {websocket.remote_address}')

        expected = True
        try:
            async for frame in websocket:
                self.process_frame(record, frame)
        except websockets.exceptions.ConnectionClosedError:
            expected = False
        finally:
            self.disconnect(record, expected)
            await record.connection.close()
