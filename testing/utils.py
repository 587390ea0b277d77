"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
from typing import Any
from typing import Callable
from unittest import mock

from rendezvous.client import ClientEvent
from rendezvous.client import RendezvousClient
from rendezvous.connection import Connection
from rendezvous.messages import decode_message
from rendezvous.messages import Message


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


class EventRecorder:
    """Records events emitted by a client.

    Args:
        client: Client to record events of.
    """

    def __init__(self, client: RendezvousClient) -> None:
        self.events: list[tuple[ClientEvent, tuple[Any, ...]]] = []
        for event in ClientEvent:
            client.on(event, self._listener(event))

    def _listener(self, event: ClientEvent) -> Callable[..., None]:
        def _record(*args: Any) -> None:
            self.events.append((event, args))

        return _record

    def of(self, event: ClientEvent) -> list[tuple[Any, ...]]:
        """Get the arguments of each recorded event of a type."""
        return [args for e, args in self.events if e is event]

    async def wait_for(
        self,
        event: ClientEvent,
        count: int = 1,
        timeout: float = 1,
    ) -> list[tuple[Any, ...]]:
        """Wait until at least `count` events of a type are recorded.

        Returns:
            Arguments of each recorded event of the type.

        Raises:
            TimeoutError: If fewer than `count` events are recorded within
                `timeout` seconds.
        """

        async def _wait() -> None:
            while len(self.of(event)) < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_wait(), timeout)
        return self.of(event)


def mock_connection() -> Any:
    """Create a mock [`Connection`][rendezvous.connection.Connection].

    Messages passed to `send()` are recorded and can be decoded with
    [`sent_messages()`][testing.utils.sent_messages].
    """
    connection = mock.create_autospec(Connection, instance=True)
    connection.remote_address = ('127.0.0.1', 0)
    return connection


def sent_messages(connection: Any) -> list[Message]:
    """Decode all messages sent on a mock connection."""
    return [
        decode_message(call.args[0])
        for call in connection.send.call_args_list
    ]
