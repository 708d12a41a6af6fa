"""
Realtime Errors

Typed failures raised or reported by the channel engine.
"""

from typing import Any


class RealtimeError(Exception):
    """Base class for all switchyard errors."""


class TransportError(RealtimeError):
    """The underlying connection dropped or failed."""


class AuthCallbackError(RealtimeError):
    """The access token provider raised."""


class FrameDecodeError(RealtimeError):
    """An inbound frame could not be decoded."""


class JoinTimeoutError(RealtimeError):
    """The server did not acknowledge a join in time."""

    def __init__(self, topic: str, timeout: float) -> None:
        super().__init__(f"join of '{topic}' timed out after {timeout:.2f}s")
        self.topic = topic
        self.timeout = timeout


class JoinRejectedError(RealtimeError):
    """The server replied with an error to a join."""

    def __init__(self, topic: str, response: dict[str, Any] | None = None) -> None:
        reason = (response or {}).get("reason") or (response or {}).get("message")
        super().__init__(f"join of '{topic}' rejected: {reason or response}")
        self.topic = topic
        self.response = response or {}


class PushBeforeJoinError(RealtimeError):
    """A push was attempted on a channel that cannot accept one."""

    def __init__(self, topic: str, event: str) -> None:
        super().__init__(
            f"tried to push '{event}' to '{topic}' before joining. "
            "Use channel.subscribe() before pushing events"
        )
        self.topic = topic
        self.event = event


class UnmatchedReplyError(RealtimeError):
    """A reply arrived for a ref with no pending push."""

    def __init__(self, topic: str, ref: str | None) -> None:
        super().__init__(f"no pending push for ref {ref!r} on '{topic}'")
        self.topic = topic
        self.ref = ref
