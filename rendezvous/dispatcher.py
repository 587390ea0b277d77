"""Message dispatching and reliable delivery for clients and servers."""
from __future__ import annotations

import logging
from typing import Any
from typing import Callable

from rendezvous.connection import Connection
from rendezvous.messages import encode_message
from rendezvous.messages import Message
from rendezvous.messages import MessageType
from rendezvous.utils.counter import MessageIdCounter

logger = logging.getLogger(__name__)

Handler = Callable[..., None]
ErrorCallback = Callable[[str], None]


class MessageDispatcher:
    """Routes decoded messages to handlers and tracks acknowledgements.

    Both the [`RendezvousServer`][rendezvous.server.RendezvousServer] and the
    [`RendezvousClient`][rendezvous.client.RendezvousClient] hold a
    dispatcher. Handlers are registered per
    [`MessageType`][rendezvous.messages.MessageType] and invoked with the
    context passed to [`dispatch()`][rendezvous.dispatcher.MessageDispatcher.dispatch].

    `ACK` messages are always supported and handled by the dispatcher
    itself. When `acknowledge` is enabled, every non-`ACK` message that
    carries a message id is acknowledged before being dispatched, and
    completion callbacks passed to
    [`send()`][rendezvous.dispatcher.MessageDispatcher.send] are invoked
    when the matching `ACK` is received. Otherwise, completion callbacks
    are invoked as soon as the message is written.

    Args:
        acknowledge: Use acknowledgements for reliable delivery.
    """

    def __init__(self, acknowledge: bool = True) -> None:
        self._acknowledge = acknowledge
        self._handlers: dict[MessageType, Handler] = {}
        self._msg_ids = MessageIdCounter()
        self._pending: dict[int, tuple[Connection, Callable[[], None]]] = {}

    @property
    def supported_types(self) -> frozenset[MessageType]:
        """Message types with a registered handler (including `ACK`)."""
        return frozenset(self._handlers) | {MessageType.ACK}

    @property
    def pending_count(self) -> int:
        """Number of sent messages still waiting on an `ACK`."""
        return len(self._pending)

    def register_handler(
        self,
        message_type: MessageType,
        handler: Handler,
    ) -> None:
        """Register the handler of a message type.

        Registering the same handler for a type more than once is a no-op.

        Raises:
            ValueError: If `message_type` is `ACK` or a different handler is
                already registered for `message_type`.
        """
        if message_type is MessageType.ACK:
            raise ValueError('ACK messages are handled by the dispatcher.')
        existing = self._handlers.get(message_type)
        if existing is not None and existing != handler:
            raise ValueError(
                f'A handler is already registered for {message_type.value}.',
            )
        self._handlers[message_type] = handler

    def dispatch(
        self,
        message: Message,
        on_error: ErrorCallback,
        *context: Any,
    ) -> None:
        """Invoke the handler registered for the type of a message.

        Args:
            message: Message to dispatch.
            on_error: Called with the reason if the message type is not
                supported.
            context: Positional arguments passed to the handler.
        """
        handler = self._handlers.get(message.type)
        if handler is None:
            on_error(
                f'The message type `{message.type.value}` is not supported',
            )
            return
        handler(*context)

    def handle(
        self,
        connection: Connection,
        message: Message,
        on_error: ErrorCallback,
        *context: Any,
    ) -> None:
        """Process a message received on a connection.

        `ACK` messages complete the pending send with the referenced id.
        Unknown or duplicate `ACK` messages are ignored. All other messages
        are acknowledged (if enabled and the message has an id) and then
        passed to [`dispatch()`][rendezvous.dispatcher.MessageDispatcher.dispatch].

        Args:
            connection: Connection the message was received on.
            message: Received message.
            on_error: Called with the reason if the message type is not
                supported.
            context: Positional arguments passed to the handler.
        """
        if message.type is MessageType.ACK:
            self._complete(connection, message.payload['ackMsgId'])
            return

        if self._acknowledge and message.msg_id is not None:
            self.send(connection, MessageType.ACK, message.msg_id)

        self.dispatch(message, on_error, *context)

    def send(
        self,
        connection: Connection,
        message_type: MessageType,
        *args: Any,
        callback: Callable[[], None] | None = None,
    ) -> int | None:
        """Encode and send a message on a connection.

        Messages are written in the order this method is called, even if
        the connection is not open yet.

        Args:
            connection: Connection to send the message on.
            message_type: Type of the message.
            args: Values of the payload fields of the message type.
            callback: Optional callable invoked when the message is
                acknowledged by the receiver (or written, if
                acknowledgements are disabled).

        Returns:
            Id assigned to the message or `None` for `ACK` messages.

        Raises:
            MessageEncodeError: If the message cannot be encoded.
        """
        if message_type is MessageType.ACK:
            connection.send(encode_message(message_type, *args))
            return None

        msg_id = self._msg_ids.next_id()
        data = encode_message(message_type, *args, msg_id=msg_id)

        if callback is not None and self._acknowledge:
            self._pending[msg_id] = (connection, callback)
            connection.send(data)
        else:
            connection.send(data, callback)
        return msg_id

    def abandon(self, connection: Connection) -> None:
        """Discard callbacks waiting on `ACK` messages from a connection."""
        abandoned = [
            msg_id
            for msg_id, (conn, _) in self._pending.items()
            if conn is connection
        ]
        for msg_id in abandoned:
            del self._pending[msg_id]
        if len(abandoned) > 0:
            logger.debug(
                f'Abandoned {len(abandoned)} unacknowledged message(s) '
                f'on {connection}',
            )

    def _complete(self, connection: Connection, ack_msg_id: Any) -> None:
        if not isinstance(ack_msg_id, int) or isinstance(ack_msg_id, bool):
            logger.debug(f'Ignoring ACK with invalid id {ack_msg_id!r}')
            return
        entry = self._pending.get(ack_msg_id)
        if entry is None or entry[0] is not connection:
            logger.debug(f'Ignoring ACK for unknown message id {ack_msg_id}')
            return
        del self._pending[ack_msg_id]
        entry[1]()
