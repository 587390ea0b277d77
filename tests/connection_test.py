from __future__ import annotations

import asyncio
import logging
from typing import Any
from unittest import mock

import pytest
import websockets

from rendezvous.connection import Connection
from rendezvous.connection import ConnectionState


def get_mock_websocket() -> Any:
    websocket = mock.MagicMock()
    websocket.send = mock.AsyncMock()
    websocket.close = mock.AsyncMock()
    websocket.remote_address = ('127.0.0.1', 1234)
    return websocket


@pytest.mark.asyncio()
async def test_connection_starts_connecting() -> None:
    connection = Connection()
    assert connection.state is ConnectionState.CONNECTING
    assert connection.remote_address is None
    assert 'CONNECTING' in repr(connection)


@pytest.mark.asyncio()
async def test_connection_open_with_websocket() -> None:
    websocket = get_mock_websocket()
    connection = Connection(websocket)
    assert connection.state is ConnectionState.OPEN
    assert connection.remote_address == ('127.0.0.1', 1234)
    await connection.close()
    assert connection.state is ConnectionState.CLOSED
    websocket.close.assert_awaited_once()


@pytest.mark.asyncio()
async def test_connection_open_twice() -> None:
    connection = Connection(get_mock_websocket())
    with pytest.raises(RuntimeError, match='OPEN'):
        connection.open(get_mock_websocket())
    await connection.close()

    with pytest.raises(RuntimeError, match='CLOSED'):
        connection.open(get_mock_websocket())


@pytest.mark.asyncio()
async def test_messages_queued_before_open_are_sent_in_order() -> None:
    connection = Connection()
    for i in range(5):
        connection.send(f'message-{i}')

    websocket = get_mock_websocket()
    connection.open(websocket)
    connection.send('message-5')
    await connection.close()

    sent = [call.args[0] for call in websocket.send.await_args_list]
    assert sent == [f'message-{i}' for i in range(6)]


@pytest.mark.asyncio()
async def test_callback_invoked_after_write() -> None:
    websocket = get_mock_websocket()
    connection = Connection(websocket)

    written = asyncio.Event()

    def _callback() -> None:
        websocket.send.assert_awaited_once_with('message')
        written.set()

    connection.send('message', _callback)
    await asyncio.wait_for(written.wait(), 1)
    await connection.close()


@pytest.mark.asyncio()
async def test_send_on_closed_connection_dropped(caplog) -> None:
    caplog.set_level(logging.DEBUG)
    websocket = get_mock_websocket()
    connection = Connection(websocket)
    await connection.close()

    connection.send('message')
    websocket.send.assert_not_awaited()
    assert any(
        'Dropping message on closed connection' in record.message
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_mark_closed_without_writer() -> None:
    connection = Connection()
    connection.mark_closed()
    assert connection.state is ConnectionState.CLOSED
    # Closing a connection that was never opened is a no-op
    await connection.close()


@pytest.mark.asyncio()
async def test_connection_closed_while_writing(caplog) -> None:
    caplog.set_level(logging.ERROR)
    websocket = get_mock_websocket()
    websocket.send = mock.AsyncMock(
        side_effect=websockets.exceptions.ConnectionClosedOK(None, None),
    )
    connection = Connection(websocket)
    callback = mock.MagicMock()

    connection.send('first', callback)
    connection.send('second', callback)
    await connection.close()

    websocket.send.assert_awaited_once_with('first')
    callback.assert_not_called()
    assert connection.state is ConnectionState.CLOSED
    assert any(
        'Connection closed while attempting to send message' in record.message
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_outbox_limit_closes_connection(caplog) -> None:
    caplog.set_level(logging.WARNING)
    websocket = get_mock_websocket()
    connection = Connection(websocket, max_queued=2)
    callback = mock.MagicMock()

    # The writer task has not run yet so every message stays queued
    connection.send('first', callback)
    connection.send('second', callback)
    assert connection.state is ConnectionState.OPEN
    connection.send('third', callback)
    assert connection.state is ConnectionState.CLOSED

    await connection.close()

    websocket.send.assert_not_awaited()
    callback.assert_not_called()
    websocket.close.assert_any_await(
        code=1008,
        reason='Outbox limit exceeded',
    )
    assert any(
        'queued without being written' in record.message
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_outbox_limit_not_reached() -> None:
    websocket = get_mock_websocket()
    connection = Connection(websocket, max_queued=2)

    for i in range(5):
        connection.send(f'message-{i}')
        # Let the writer drain the outbox
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    await connection.close()

    assert connection.state is ConnectionState.CLOSED
    assert websocket.send.await_count == 5
    websocket.close.assert_awaited_once_with()
