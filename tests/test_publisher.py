"""Tests for Socket.IO event publishing."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from pullpreview.events.publisher import (
    NullEventPublisher,
    SocketIOEventPublisher,
    preview_room,
    register_socket_handlers,
)


@pytest.fixture
def mock_sio() -> MagicMock:
    sio = MagicMock()
    sio.emit = AsyncMock()
    sio.enter_room = AsyncMock()
    sio.leave_room = AsyncMock()
    return sio


def test_preview_room():
    assert preview_room("abc") == "preview:abc"


async def test_publish_broadcasts(mock_sio):
    publisher = SocketIOEventPublisher(mock_sio)

    await publisher.publish("preview-status-update", {"status": "live"})

    mock_sio.emit.assert_awaited_once_with("preview-status-update", {"status": "live"})


async def test_publish_scoped_targets_room(mock_sio):
    publisher = SocketIOEventPublisher(mock_sio)

    await publisher.publish_scoped("p1", "log", {"previewId": "p1", "chunk": "x"})

    mock_sio.emit.assert_awaited_once_with(
        "log", {"previewId": "p1", "chunk": "x"}, room="preview:p1"
    )


async def test_publish_failures_are_swallowed(mock_sio):
    mock_sio.emit.side_effect = ConnectionError("transport closed")
    publisher = SocketIOEventPublisher(mock_sio)

    await publisher.publish("preview-status-update", {})
    await publisher.publish_scoped("p1", "log", {})


async def test_null_publisher():
    publisher = NullEventPublisher()
    assert await publisher.publish("t", {}) is None
    assert await publisher.publish_scoped("p1", "e", {}) is None


class TestSocketHandlers:
    @pytest.fixture
    def handlers(self, mock_sio) -> dict:
        registered: dict = {}

        def event(func):
            registered[func.__name__] = func
            return func

        mock_sio.event = event
        register_socket_handlers(mock_sio)
        return registered

    def test_registers_handlers(self, handlers):
        assert set(handlers) == {"connect", "disconnect", "join_preview", "leave_preview"}

    async def test_join_preview(self, handlers, mock_sio):
        await handlers["join_preview"]("sid-1", {"previewId": "p1"})

        mock_sio.enter_room.assert_awaited_once_with("sid-1", "preview:p1")

    async def test_join_preview_requires_id(self, handlers, mock_sio):
        await handlers["join_preview"]("sid-1", {})

        mock_sio.enter_room.assert_not_awaited()
        mock_sio.emit.assert_awaited_once_with("error", {"error": "previewId required"}, to="sid-1")

    async def test_leave_preview(self, handlers, mock_sio):
        await handlers["leave_preview"]("sid-1", {"previewId": "p1"})

        mock_sio.leave_room.assert_awaited_once_with("sid-1", "preview:p1")
