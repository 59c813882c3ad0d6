"""Connection supervision and the chat sync service."""

from .service import ChatSyncService
from .supervisor import ConnectionState, ReconnectionSupervisor, StatusEvent, StatusKind

__all__ = [
    "ChatSyncService",
    "ConnectionState",
    "ReconnectionSupervisor",
    "StatusEvent",
    "StatusKind",
]
