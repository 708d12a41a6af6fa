"""
Switchyard

Client engine multiplexing realtime channels over one duplex connection.
"""

__version__ = "0.1.0"

from switchyard.realtime import (  # noqa: E402
    Channel,
    ConnectionManager,
    Presence,
    Push,
    SubscribeStatus,
)

__all__ = [
    "__version__",
    "Channel",
    "ConnectionManager",
    "Presence",
    "Push",
    "SubscribeStatus",
]
