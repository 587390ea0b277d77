"""Client interface to a rendezvous server."""
from __future__ import annotations

import asyncio
import enum
import logging
import ssl
import sys
from types import TracebackType
from typing import Any
from typing import Callable

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect

from rendezvous.connection import Connection
from rendezvous.connection import ConnectionState
from rendezvous.dispatcher import MessageDispatcher
from rendezvous.exceptions import ClientClosedError
from rendezvous.messages import ClientStatus
from rendezvous.messages import decode_message
from rendezvous.messages import Identity
from rendezvous.messages import is_identity
from rendezvous.messages import MessageDecodeError
from rendezvous.messages import MessageType
from rendezvous.utils.tasks import cancel_and_wait
from rendezvous.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

Listener = Callable[..., None]


class ClientEvent(enum.Enum):
    """Events emitted by a rendezvous client.

    Listeners are invoked with the following positional arguments.
    """

    ERROR = 'ERROR'
    """`(message: str)`: server rejected a request or sent a bad message."""
    RELAY = 'RELAY'
    """`(from_id: Identity, payload: Any)`: payload relayed by a peer."""
    TOPIC_INFO = 'TOPIC_INFO'
    """`(topic: str, peers: set[Identity])`: current subscribers of a topic."""
    ONLINE = 'ONLINE'
    """`(id: Identity)`: a watched identity signed in."""
    OFFLINE = 'OFFLINE'
    """`(id: Identity)`: a watched identity disconnected."""


class RendezvousClient:
    """Client interface to a rendezvous server.

    Requests are queued on the connection and written in order, so requests
    can be made before
    [`connect()`][rendezvous.client.RendezvousClient.connect] is called.
    Each request returns a future that completes when the server
    acknowledges receiving the request. Acknowledgement does not mean the
    request succeeded; rejected requests are reported via
    [`ClientEvent.ERROR`][rendezvous.client.ClientEvent.ERROR] and responses
    via the other [`ClientEvent`][rendezvous.client.ClientEvent] types.

    Tip:
        This class can be used as an async context manager!
        ```python
        from rendezvous.client import ClientEvent
        from rendezvous.client import RendezvousClient

        async with RendezvousClient('ws://localhost:8080', 'alice') as client:
            client.on(ClientEvent.RELAY, print)
            await client.sign_in()
            await client.relay('bob', {'sdp': '...'})
        ```

    Note:
        Futures of requests whose acknowledgement never arrives (e.g.,
        because the connection closes) never complete. Use
        [`asyncio.wait_for()`][asyncio.wait_for] to bound the wait.

    Args:
        address: Address of the rendezvous server. Should start with `ws://`
            or `wss://`.
        client_id: Identity to sign in with.
        ssl_context: Custom SSL context to pass to
            [`connect()`][websockets.asyncio.client.connect]. A TLS context
            is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on opening the connection.
        verify_certificate: Verify the server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://` or
            `client_id` is not a string or integer.
    """

    def __init__(
        self,
        address: str,
        client_id: Identity,
        *,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Rendezvous server address must start with ws:// or wss://. '
                f'Got {address}.',
            )
        if not is_identity(client_id):
            raise ValueError(
                'Client identity must be a string or integer. '
                f'Got {client_id!r}.',
            )

        self._address = address
        self._id = client_id
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self._ssl_context = ssl_context

        self._closed = False
        self._connection = Connection()
        self._reader_task: asyncio.Task[None] | None = None
        self._listeners: dict[ClientEvent, list[Listener]] = {
            event: [] for event in ClientEvent
        }

        self._dispatcher = MessageDispatcher()
        self._dispatcher.register_handler(MessageType.ERROR, self._on_error)
        self._dispatcher.register_handler(
            MessageType.GET_TOPIC_INFO_RSP,
            self._on_topic_info,
        )
        self._dispatcher.register_handler(MessageType.RELAY, self._on_relay)
        self._dispatcher.register_handler(
            MessageType.UPDATE_CLIENT_STATUS,
            self._on_status_update,
        )

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def id(self) -> Identity:
        """Identity of the client."""
        return self._id

    @property
    def state(self) -> ConnectionState:
        """State of the connection to the rendezvous server."""
        return self._connection.state

    def on(self, event: ClientEvent, listener: Listener) -> None:
        """Add a listener for an event."""
        self._listeners[event].append(listener)

    def off(self, event: ClientEvent, listener: Listener) -> None:
        """Remove a listener for an event.

        Raises:
            ValueError: If the listener was not added for the event.
        """
        self._listeners[event].remove(listener)

    def _emit(self, event: ClientEvent, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(*args)
            except Exception:
                logger.exception(f'Error in {event.value} event listener')

    async def connect(self) -> None:
        """Connect to the rendezvous server.

        Requests made before connecting are sent once the connection is
        open. This method is a no-op if the connection is already open.

        Raises:
            ClientClosedError: If the client has been closed.
            OSError: If the server could not be connected to.
            TimeoutError: If the connection was not opened within the timeout.
        """
        if self._closed or self.state is ConnectionState.CLOSED:
            raise ClientClosedError('The client has been closed.')
        if self.state is ConnectionState.OPEN:
            return

        websocket = await connect(
            self._address,
            open_timeout=self._timeout,
            ssl=self._ssl_context,
        )
        self._connection.open(websocket)
        self._reader_task = spawn_guarded_background_task(
            self._listen,
            websocket,
            name='rendezvous-client-reader',
        )
        logger.info(
            f'Established client connection to rendezvous server at '
            f'{self._address} with client id={self.id!r}',
        )

    async def close(self) -> None:
        """Close the connection to the rendezvous server.

        Requests already made are written before the connection is closed.
        Futures still waiting on acknowledgements are abandoned.
        """
        if self._closed:
            return
        self._closed = True
        await self._connection.close()
        await cancel_and_wait(self._reader_task)
        self._dispatcher.abandon(self._connection)
        logger.info(f'Closed client connection with client id={self.id!r}')

    async def _listen(self, websocket: ClientConnection) -> None:
        try:
            async for frame in websocket:
                self._process_frame(frame)
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(
                f'Connection to rendezvous server at {self._address} '
                f'closed unexpectedly: {e}',
            )
        self._connection.mark_closed()
        self._dispatcher.abandon(self._connection)

    def _process_frame(self, frame: str | bytes) -> None:
        try:
            message = decode_message(frame)
        except MessageDecodeError as e:
            logger.warning(f'Failed to decode message from server: {e}')
            self._emit(ClientEvent.ERROR, str(e))
            return

        self._dispatcher.handle(
            self._connection,
            message,
            lambda reason: self._emit(ClientEvent.ERROR, reason),
            message.payload,
        )

    def _on_error(self, payload: dict[str, Any]) -> None:
        logger.warning(f'Rendezvous server error: {payload["message"]}')
        self._emit(ClientEvent.ERROR, payload['message'])

    def _on_topic_info(self, payload: dict[str, Any]) -> None:
        self._emit(
            ClientEvent.TOPIC_INFO,
            payload['topic'],
            set(payload['peers']),
        )

    def _on_relay(self, payload: dict[str, Any]) -> None:
        self._emit(ClientEvent.RELAY, payload['from'], payload['relay'])

    def _on_status_update(self, payload: dict[str, Any]) -> None:
        status = payload['status']
        if status == ClientStatus.ONLINE.value:
            self._emit(ClientEvent.ONLINE, payload['id'])
        elif status == ClientStatus.OFFLINE.value:
            self._emit(ClientEvent.OFFLINE, payload['id'])
        else:
            self._emit(
                ClientEvent.ERROR,
                f'Unknown status {status!r} for client {payload["id"]!r}',
            )

    def _request(
        self,
        message_type: MessageType,
        *args: Any,
    ) -> asyncio.Future[None]:
        if self._closed or self.state is ConnectionState.CLOSED:
            raise ClientClosedError('The client has been closed.')

        future: asyncio.Future[None] = (
            asyncio.get_running_loop().create_future()
        )

        def _acknowledged() -> None:
            if not future.done():
                future.set_result(None)

        self._dispatcher.send(
            self._connection,
            message_type,
            *args,
            callback=_acknowledged,
        )
        return future

    def sign_in(self) -> asyncio.Future[None]:
        """Sign in to the server with the identity of this client.

        Returns:
            Future that completes when the server acknowledges the request.

        Raises:
            ClientClosedError: If the client has been closed.
        """
        return self._request(MessageType.SIGN_IN, self.id)

    def subscribe(self, topic: str) -> asyncio.Future[None]:
        """Subscribe to a topic.

        Returns:
            Future that completes when the server acknowledges the request.

        Raises:
            ClientClosedError: If the client has been closed.
        """
        return self._request(MessageType.SUBSCRIBE, self.id, topic)

    def get_topic_info(self, topic: str) -> asyncio.Future[None]:
        """Request the subscribers of a topic.

        The subscribers are delivered via a
        [`ClientEvent.TOPIC_INFO`][rendezvous.client.ClientEvent.TOPIC_INFO]
        event.

        Returns:
            Future that completes when the server acknowledges the request.

        Raises:
            ClientClosedError: If the client has been closed.
        """
        return self._request(MessageType.GET_TOPIC_INFO_REQ, topic)

    def relay(self, to_id: Identity, payload: Any) -> asyncio.Future[None]:
        """Relay an opaque JSON-serializable payload to another client.

        Returns:
            Future that completes when the server acknowledges the request.

        Raises:
            ClientClosedError: If the client has been closed.
            MessageEncodeError: If the payload is not JSON-serializable.
        """
        return self._request(MessageType.RELAY, self.id, to_id, payload)

    def register_for_status_updates(
        self,
        target_id: Identity,
    ) -> asyncio.Future[None]:
        """Register to be notified when another client goes online or offline.

        Status changes are delivered via
        [`ClientEvent.ONLINE`][rendezvous.client.ClientEvent.ONLINE] and
        [`ClientEvent.OFFLINE`][rendezvous.client.ClientEvent.OFFLINE] events.
        If the target is online, an `ONLINE` event is received right away.

        Returns:
            Future that completes when the server acknowledges the request.

        Raises:
            ClientClosedError: If the client has been closed.
        """
        return self._request(
            MessageType.REGISTER_CLIENT_STATUS,
            self.id,
            target_id,
        )
