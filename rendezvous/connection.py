"""Ordered, message-oriented channel over a websocket connection."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any
from typing import Callable
from typing import Union

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.server import ServerConnection

from rendezvous.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

WebSocket = Union[ClientConnection, ServerConnection]


class ConnectionState(enum.Enum):
    """Lifecycle state of a connection."""

    CONNECTING = 'CONNECTING'
    OPEN = 'OPEN'
    CLOSED = 'CLOSED'


class Connection:
    """Ordered, message-oriented channel over a websocket.

    Messages passed to [`send()`][rendezvous.connection.Connection.send]
    are appended to an outbox which is drained by a single writer task so
    messages are written in the order `send()` was called. Messages sent
    while the connection is still `CONNECTING` stay in the outbox and are
    written once [`open()`][rendezvous.connection.Connection.open] is called.

    Note:
        [`send()`][rendezvous.connection.Connection.send] never blocks so
        it can be called from synchronous message handlers. The actual
        network write happens in the writer task.

    Args:
        websocket: Optional websocket that is already open. If `None`, the
            connection starts in the `CONNECTING` state.
        max_queued: Maximum number of messages waiting to be written. If a
            slow peer lets the outbox reach this size, queued messages are
            discarded and the websocket is closed with code 1008 (policy
            violation). If `None`, the outbox is unbounded.
    """

    def __init__(
        self,
        websocket: WebSocket | None = None,
        max_queued: int | None = None,
    ) -> None:
        self._state = ConnectionState.CONNECTING
        self._max_queued = max_queued
        self._abort_task: asyncio.Task[None] | None = None
        self._websocket: WebSocket | None = None
        self._outbox: asyncio.Queue[
            tuple[str, Callable[[], None] | None] | None
        ] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None

        if websocket is not None:
            self.open(websocket)

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(state={self.state.value}, '
            f'address={self.remote_address})'
        )

    @property
    def state(self) -> ConnectionState:
        """Current state of the connection."""
        return self._state

    @property
    def remote_address(self) -> Any:
        """Remote address of the websocket or `None` if not opened."""
        if self._websocket is None:
            return None
        return self._websocket.remote_address

    def open(self, websocket: WebSocket) -> None:
        """Attach an open websocket and start writing queued messages.

        Raises:
            RuntimeError: If the connection is already open or closed.
        """
        if self._state is not ConnectionState.CONNECTING:
            raise RuntimeError(
                f'Cannot open a connection in the {self._state.value} state.',
            )
        self._websocket = websocket
        self._state = ConnectionState.OPEN
        self._writer_task = spawn_guarded_background_task(
            self._write_outbox,
            name='connection-writer',
        )

    def send(
        self,
        data: str,
        callback: Callable[[], None] | None = None,
    ) -> None:
        """Queue a message to be written to the websocket.

        Args:
            data: Encoded message.
            callback: Optional callable invoked after the message has been
                written to the websocket.
        """
        if self._state is ConnectionState.CLOSED:
            logger.debug(f'Dropping message on closed connection: {data}')
            return
        if (
            self._max_queued is not None
            and self._outbox.qsize() >= self._max_queued
        ):
            self._abort_overflowed()
            return
        self._outbox.put_nowait((data, callback))

    def _abort_overflowed(self) -> None:
        logger.warning(
            f'Closing {self} after {self._outbox.qsize()} messages were '
            'queued without being written',
        )
        while not self._outbox.empty():
            self._outbox.get_nowait()
        self.mark_closed()
        if self._websocket is not None:
            self._abort_task = spawn_guarded_background_task(
                self._websocket.close,
                code=1008,
                reason='Outbox limit exceeded',
                name='connection-abort',
            )

    def mark_closed(self) -> None:
        """Mark the connection closed after the transport has closed.

        Stops the writer task once it reaches the end of the outbox.
        """
        self._state = ConnectionState.CLOSED
        if self._writer_task is not None and not self._writer_task.done():
            self._outbox.put_nowait(None)

    async def _write_outbox(self) -> None:
        assert self._websocket is not None
        while True:
            item = await self._outbox.get()
            if item is None:
                return
            data, callback = item
            try:
                await self._websocket.send(data)
            except websockets.exceptions.ConnectionClosed:
                logger.error(
                    'Connection closed while attempting to send message',
                )
                self._state = ConnectionState.CLOSED
                return
            if callback is not None:
                callback()

    async def close(self) -> None:
        """Flush queued messages and close the websocket.

        Messages already queued are written before the websocket is closed.
        Messages sent after calling this method are dropped.
        """
        self.mark_closed()
        if self._abort_task is not None:
            await self._abort_task
        if self._writer_task is not None:
            await self._writer_task
        if self._websocket is not None:
            await self._websocket.close()
