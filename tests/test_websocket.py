"""Tests for the websocket transport against a local server."""

import asyncio
import socket
from http import HTTPStatus

import pytest
from websockets.asyncio.server import serve

from bbbab_messenger.api.websocket import CloseEvent, TransportHandlers, WebSocketTransport
from bbbab_messenger.errors import TransportClosedError


class Recorder:
    """Collects transport callbacks."""

    def __init__(self) -> None:
        self.opened = asyncio.Event()
        self.closed: asyncio.Future[CloseEvent] = asyncio.get_running_loop().create_future()
        self.messages: list[str] = []
        self.errors: list[BaseException] = []

    @property
    def handlers(self) -> TransportHandlers:
        return TransportHandlers(
            on_open=self.opened.set,
            on_message=self.messages.append,
            on_error=self.errors.append,
            on_close=self._on_close,
        )

    def _on_close(self, event: CloseEvent) -> None:
        if self.closed.done():
            raise AssertionError(f"second close reported: {event}")
        self.closed.set_result(event)


def port_of(server) -> int:
    return next(iter(server.sockets)).getsockname()[1]


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestWebSocketTransport:
    """Test the lifecycle callbacks of a real websocket connection."""

    @pytest.mark.asyncio
    async def test_messages_and_server_close(self) -> None:
        from_client: list[str] = []

        async def handler(ws) -> None:
            await ws.send('{"type":"ping"}{"type":"message"}')
            async for raw in ws:
                from_client.append(raw)
                await ws.close(4001, "token expired")

        async with serve(handler, "127.0.0.1", 0) as server:
            rec = Recorder()
            transport = WebSocketTransport(f"ws://127.0.0.1:{port_of(server)}/chat/1/ws?token=T", rec.handlers)
            transport.open()
            await asyncio.wait_for(rec.opened.wait(), 5)
            assert transport.is_open

            transport.send('{"type":"typing","message":"true"}')
            event = await asyncio.wait_for(rec.closed, 5)

        assert rec.messages == ['{"type":"ping"}{"type":"message"}']
        assert from_client == ['{"type":"typing","message":"true"}']
        assert event.code == 4001
        assert event.reason == "token expired"
        assert not transport.is_open
        with pytest.raises(TransportClosedError):
            transport.send("{}")

    @pytest.mark.asyncio
    async def test_client_close_reports_normal_closure(self) -> None:
        async def handler(ws) -> None:
            async for _ in ws:
                pass

        async with serve(handler, "127.0.0.1", 0) as server:
            rec = Recorder()
            transport = WebSocketTransport(f"ws://127.0.0.1:{port_of(server)}/chat/1/ws", rec.handlers)
            transport.open()
            await asyncio.wait_for(rec.opened.wait(), 5)

            transport.close()
            event = await asyncio.wait_for(rec.closed, 5)

        assert event.code == 1000

    @pytest.mark.asyncio
    async def test_rejected_handshake_carries_http_status(self) -> None:
        def reject(connection, request):
            return connection.respond(HTTPStatus.UNAUTHORIZED, "bad token\n")

        async def handler(ws) -> None:
            pass

        async with serve(handler, "127.0.0.1", 0, process_request=reject) as server:
            rec = Recorder()
            transport = WebSocketTransport(f"ws://127.0.0.1:{port_of(server)}/chat/1/ws?token=x", rec.handlers)
            transport.open()
            event = await asyncio.wait_for(rec.closed, 5)

        assert event.code == 1006
        assert event.http_status == 401
        assert not rec.opened.is_set()

    @pytest.mark.asyncio
    async def test_unreachable_server_reports_error_then_close(self) -> None:
        rec = Recorder()
        transport = WebSocketTransport(f"ws://127.0.0.1:{free_port()}/chat/1/ws", rec.handlers)
        transport.open()
        event = await asyncio.wait_for(rec.closed, 5)

        assert event.code == 1006
        assert len(rec.errors) == 1
        assert isinstance(rec.errors[0], OSError)

    def test_url_for_log_hides_token(self) -> None:
        transport = WebSocketTransport(
            "ws://host/chat/1/ws?token=secret",
            TransportHandlers(lambda: None, lambda raw: None, lambda exc: None, lambda event: None),
        )
        assert transport.url_for_log == "ws://host/chat/1/ws"
