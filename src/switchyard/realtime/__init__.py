"""
Switchyard Realtime Module

Connection management, channel state machines, request/reply correlation
and presence synchronization.
"""

from .connection import ConnectionManager
from .channel import Binding, BindingKind, Channel
from .push import Push
from .presence import Presence
from .timer import Timer
from .transport import Transport, WebSocketTransport
from .errors import (
    AuthCallbackError,
    FrameDecodeError,
    JoinRejectedError,
    JoinTimeoutError,
    PushBeforeJoinError,
    RealtimeError,
    TransportError,
    UnmatchedReplyError,
)
from .protocol import (
    ChannelConfig,
    ChannelEvent,
    ChannelState,
    ConnectionState,
    Message,
    PushStatus,
    SubscribeStatus,
)

__all__ = [
    # Connection management
    "ConnectionManager",
    "Transport",
    "WebSocketTransport",
    # Channels
    "Channel",
    "Binding",
    "BindingKind",
    "Push",
    "Timer",
    # Presence
    "Presence",
    # Protocol
    "ChannelConfig",
    "ChannelEvent",
    "ChannelState",
    "ConnectionState",
    "Message",
    "PushStatus",
    "SubscribeStatus",
    # Errors
    "RealtimeError",
    "AuthCallbackError",
    "FrameDecodeError",
    "JoinRejectedError",
    "JoinTimeoutError",
    "PushBeforeJoinError",
    "TransportError",
    "UnmatchedReplyError",
]
