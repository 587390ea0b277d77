"""Message types and codec for rendezvous client and server communication.

Every message on the wire is a single JSON object of the form
`#!json {"msgId": 1, "type": "SIGN_IN", "payload": {"id": "alice"}}`.
The `msgId` key is omitted for messages that do not request an
acknowledgement (i.e., `ACK` messages themselves).
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import Union

Identity = Union[str, int]
"""Opaque, caller-supplied client identifier."""


class MessageType(enum.Enum):
    """Types of messages supported."""

    ERROR = 'ERROR'
    """Error message with a human-readable reason."""
    ACK = 'ACK'
    """Acknowledgement of a previously received message id."""
    SIGN_IN = 'SIGN_IN'
    """Bind an identity to the connection."""
    SUBSCRIBE = 'SUBSCRIBE'
    """Subscribe the signed-in identity to a topic."""
    GET_TOPIC_INFO_REQ = 'GET_TOPIC_INFO_REQ'
    """Request the current subscribers of a topic."""
    GET_TOPIC_INFO_RSP = 'GET_TOPIC_INFO_RSP'
    """Reply containing the current subscribers of a topic."""
    RELAY = 'RELAY'
    """Opaque payload forwarded from one identity to another."""
    REGISTER_CLIENT_STATUS = 'REGISTER_CLIENT_STATUS'
    """Request to be notified of status changes of another identity."""
    UPDATE_CLIENT_STATUS = 'UPDATE_CLIENT_STATUS'
    """Online/offline status change of an identity."""


class ClientStatus(enum.Enum):
    """Presence status of an identity."""

    ONLINE = 'ONLINE'
    OFFLINE = 'OFFLINE'


# Payload fields for each message type. Formatting a payload zips the
# positional arguments with these fields so each type has a fixed shape.
_PAYLOAD_FIELDS: dict[MessageType, tuple[str, ...]] = {
    MessageType.ERROR: ('message',),
    MessageType.ACK: ('ackMsgId',),
    MessageType.SIGN_IN: ('id',),
    MessageType.SUBSCRIBE: ('id', 'topic'),
    MessageType.GET_TOPIC_INFO_REQ: ('topic',),
    MessageType.GET_TOPIC_INFO_RSP: ('topic', 'peers'),
    MessageType.RELAY: ('from', 'to', 'relay'),
    MessageType.REGISTER_CLIENT_STATUS: ('id', 'target'),
    MessageType.UPDATE_CLIENT_STATUS: ('id', 'status'),
}


@dataclasses.dataclass
class Message:
    """Decoded message.

    Attributes:
        type: Type of the message.
        payload: Type-specific payload fields.
        msg_id: Id assigned by the sender if an acknowledgement is
            requested.
    """

    type: MessageType
    payload: dict[str, Any]
    msg_id: int | None = None


class MessageError(Exception):
    """Base exception type for rendezvous messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when a message cannot be encoded."""

    pass


def is_identity(value: Any) -> bool:
    """Check if a value is a valid client identity.

    Note:
        `bool` is a subclass of `int` but is not a valid identity.
    """
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def format_payload(message_type: MessageType, *args: Any) -> dict[str, Any]:
    """Format the payload of a message type from positional arguments.

    Args:
        message_type: Type of the message.
        args: Values of the payload fields in order.

    Returns:
        Payload dictionary.

    Raises:
        MessageEncodeError: If the message type is unknown or the number of
            arguments does not match the fields of the message type.
    """
    try:
        fields = _PAYLOAD_FIELDS[message_type]
    except KeyError as e:
        raise MessageEncodeError(
            f'Unsupported message type: {message_type!r}.',
        ) from e

    if len(args) != len(fields):
        raise MessageEncodeError(
            f'{message_type.value} expects {len(fields)} payload values '
            f'({", ".join(fields)}) but got {len(args)}.',
        )

    payload = dict(zip(fields, args))
    if message_type is MessageType.GET_TOPIC_INFO_RSP:
        payload['peers'] = list(payload['peers'])
    elif message_type is MessageType.UPDATE_CLIENT_STATUS and isinstance(
        payload['status'],
        ClientStatus,
    ):
        payload['status'] = payload['status'].value
    return payload


def encode_message(
    message_type: MessageType,
    *args: Any,
    msg_id: int | None = None,
) -> str:
    """Encode message as JSON string.

    Args:
        message_type: Type of the message.
        args: Values of the payload fields in order.
        msg_id: Optional message id to include.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    data: dict[str, Any] = {}
    if msg_id is not None:
        data['msgId'] = msg_id
    data['type'] = message_type.value
    data['payload'] = format_payload(message_type, *args)

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise MessageEncodeError(f'Error encoding message: {e}') from e


def decode_message(message: str | bytes) -> Message:
    """Decode JSON string into a message.

    Args:
        message: JSON string or UTF-8 encoded bytes to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    # JSONDecodeError and UnicodeDecodeError are ValueErrors. json also
    # raises a plain ValueError for oversized integer literals and
    # RecursionError for deeply nested arrays or objects.
    try:
        data = json.loads(message)
    except (ValueError, RecursionError) as e:
        raise MessageDecodeError('Failed to load message as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )

    try:
        message_type_name = data['type']
    except KeyError as e:
        raise MessageDecodeError(
            'Message does not contain a type key.',
        ) from e

    try:
        message_type = MessageType(message_type_name)
    except ValueError as e:
        raise MessageDecodeError(
            f'The message type `{message_type_name}` is not supported',
        ) from e

    msg_id = data.get('msgId')
    if msg_id is not None and (
        not isinstance(msg_id, int) or isinstance(msg_id, bool)
    ):
        raise MessageDecodeError(
            f'Message id must be an integer but got {msg_id!r}.',
        )

    payload = data.get('payload', {})
    if not isinstance(payload, dict):
        raise MessageDecodeError(
            f'Payload of {message_type.value} must be a JSON object.',
        )

    missing = [f for f in _PAYLOAD_FIELDS[message_type] if f not in payload]
    if len(missing) > 0:
        raise MessageDecodeError(
            f'Payload of {message_type.value} is missing fields: '
            f'{", ".join(missing)}.',
        )

    return Message(type=message_type, payload=payload, msg_id=msg_id)
