"""In-memory state of the sync core."""

from .dialogs import DialogIndex
from .presence import TypingTracker, TypingUser
from .profiles import UserProfileCache
from .timeline import TimelineChange, TimelinePage, TimelineStore, UpsertResult

__all__ = [
    "DialogIndex",
    "TypingTracker",
    "TypingUser",
    "UserProfileCache",
    "TimelineChange",
    "TimelinePage",
    "TimelineStore",
    "UpsertResult",
]
