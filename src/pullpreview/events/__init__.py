"""Event publishing for preview observers."""

from pullpreview.events.publisher import (
    LOG_ERROR_EVENT,
    LOG_EVENT,
    LOG_FINISH_EVENT,
    STATUS_UPDATE_EVENT,
    EventPublisher,
    NullEventPublisher,
    SocketIOEventPublisher,
    preview_room,
    register_socket_handlers,
)

__all__ = [
    "LOG_ERROR_EVENT",
    "LOG_EVENT",
    "LOG_FINISH_EVENT",
    "STATUS_UPDATE_EVENT",
    "EventPublisher",
    "NullEventPublisher",
    "SocketIOEventPublisher",
    "preview_room",
    "register_socket_handlers",
]
