"""BBBAB Messenger REST and realtime API module."""

from .client import ChatApiClient
from .frames import FrameDecoder
from .models import Chat, Dialog, HistoryPage, Message, User
from .websocket import CloseEvent, Transport, TransportHandlers, WebSocketTransport

__all__ = [
    "ChatApiClient",
    "FrameDecoder",
    "Chat",
    "Dialog",
    "HistoryPage",
    "Message",
    "User",
    "CloseEvent",
    "Transport",
    "TransportHandlers",
    "WebSocketTransport",
]
