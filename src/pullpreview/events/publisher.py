"""Event publishing for preview state transitions and build logs.

Delivery is best-effort and at-most-once. A failed publish is logged and
never propagates into the operation that triggered it.
"""

from __future__ import annotations

from typing import Any, Protocol

import socketio
import structlog

logger = structlog.get_logger()

# Project-wide state updates
STATUS_UPDATE_EVENT = "preview-status-update"

# Scoped to observers of a single preview
LOG_EVENT = "log"
LOG_FINISH_EVENT = "log-finish"
LOG_ERROR_EVENT = "log-error"


def preview_room(preview_id: str) -> str:
    """Socket.IO room holding the observers of one preview."""
    return f"preview:{preview_id}"


class EventPublisher(Protocol):
    """Transport-agnostic publisher used by the orchestrator and build executor."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Broadcast an event to every observer."""
        ...

    async def publish_scoped(self, preview_id: str, event: str, payload: dict[str, Any]) -> None:
        """Send an event only to observers of one preview."""
        ...


class SocketIOEventPublisher:
    """Publishes events through a python-socketio server."""

    def __init__(self, sio: socketio.AsyncServer) -> None:
        self._sio = sio

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            await self._sio.emit(topic, payload)
        except Exception as e:
            logger.warning("Failed to publish event", topic=topic, error=str(e))

    async def publish_scoped(self, preview_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            await self._sio.emit(event, payload, room=preview_room(preview_id))
        except Exception as e:
            logger.warning(
                "Failed to publish scoped event",
                preview_id=preview_id,
                event_name=event,
                error=str(e),
            )


class NullEventPublisher:
    """Discards every event."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        return None

    async def publish_scoped(self, preview_id: str, event: str, payload: dict[str, Any]) -> None:
        return None


def register_socket_handlers(sio: socketio.AsyncServer) -> None:
    """Let clients subscribe to the log stream of a single preview."""

    @sio.event
    async def connect(sid: str, _environ: dict[str, Any]) -> None:
        logger.info("Client connected", sid=sid)

    @sio.event
    async def disconnect(sid: str) -> None:
        logger.info("Client disconnected", sid=sid)

    @sio.event
    async def join_preview(sid: str, data: dict[str, Any]) -> None:
        preview_id = (data or {}).get("previewId")
        if not preview_id:
            await sio.emit("error", {"error": "previewId required"}, to=sid)
            return
        await sio.enter_room(sid, preview_room(preview_id))
        logger.debug("Client joined preview room", sid=sid, preview_id=preview_id)

    @sio.event
    async def leave_preview(sid: str, data: dict[str, Any]) -> None:
        preview_id = (data or {}).get("previewId")
        if preview_id:
            await sio.leave_room(sid, preview_room(preview_id))
