"""
Channel Push

A single outstanding request on a channel, correlated to its reply by ref.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable

from .protocol import DEFAULT_TIMEOUT, Message, PushStatus

if TYPE_CHECKING:
    from .channel import Channel

PushCallback = Callable[[dict[str, Any]], Any]


class Push:
    """
    One request awaiting a correlated reply or timeout.

    The ref is assigned and the timeout clock started only when the push is
    actually transmitted. A push resolves at most once per ref; triggers
    carrying any other ref are ignored.
    """

    def __init__(
        self,
        channel: Channel,
        event: str,
        payload: dict[str, Any] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.channel = channel
        self.event = event
        self.timeout = timeout

        self.ref: str | None = None
        self.sent = False
        self.received_status: PushStatus | None = None
        self.received_response: dict[str, Any] | None = None

        self._payload: dict[str, Any] = dict(payload or {})
        self._hooks: list[tuple[PushStatus, PushCallback]] = []
        self._waiters: list[asyncio.Future] = []
        self._timeout_handle: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        return (
            f"Push(topic={self.channel.topic!r}, event={self.event!r}, "
            f"ref={self.ref!r}, status={self.received_status})"
        )

    @property
    def payload(self) -> dict[str, Any]:
        return dict(self._payload)

    @property
    def resolved(self) -> bool:
        return self.received_status is not None

    def update_payload(self, extra: dict[str, Any]) -> None:
        """Merge keys into the payload used by the next transmission."""
        self._payload.update(extra)

    def send(self) -> None:
        """Assign a ref, start the timeout clock and transmit."""
        if self.received_status is PushStatus.TIMEOUT:
            return

        self._start_timeout()
        self.sent = True
        self.channel.connection.push(
            Message(
                topic=self.channel.topic,
                event=self.event,
                payload=self.payload,
                ref=self.ref,
                join_ref=self.channel.join_ref(),
            )
        )

    def resend(self, timeout: float | None = None) -> None:
        """Forget any previous attempt and transmit again under a new ref."""
        if timeout is not None:
            self.timeout = timeout
        self.reset()
        self.send()

    def reset(self) -> None:
        self._cancel_timeout()
        self.channel._unregister_push(self)
        self.ref = None
        self.sent = False
        self.received_status = None
        self.received_response = None

    def destroy(self) -> None:
        """Stop timing out and stop accepting replies, without resolving."""
        self._cancel_timeout()
        self.channel._unregister_push(self)

    def receive(self, status: PushStatus | str, callback: PushCallback) -> Push:
        """Register a hook for a resolution status. Chainable."""
        status = PushStatus(status)
        if self.received_status is status:
            callback(self.received_response or {})
        self._hooks.append((status, callback))
        return self

    def trigger(
        self,
        status: PushStatus | str,
        response: dict[str, Any] | None = None,
        ref: str | None = None,
    ) -> bool:
        """
        Resolve the push.

        Returns False when the trigger was stale (ref mismatch) or the push
        had already resolved.
        """
        if ref is not None and ref != self.ref:
            return False
        if self.received_status is not None:
            return False

        status = PushStatus(status)
        response = response or {}

        self._cancel_timeout()
        self.channel._unregister_push(self)
        self.received_status = status
        self.received_response = response

        for hook_status, callback in list(self._hooks):
            if hook_status is status:
                try:
                    callback(response)
                except Exception as e:
                    self.channel.logger.error(
                        "Push callback failed",
                        topic=self.channel.topic,
                        push_event=self.event,
                        status=status.value,
                        error=str(e),
                    )

        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result((status, response))
        self._waiters.clear()
        return True

    async def wait(self) -> tuple[PushStatus, dict[str, Any]]:
        """Wait until the push resolves and return (status, response)."""
        if self.received_status is not None:
            return self.received_status, self.received_response or {}

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return await waiter

    def _start_timeout(self) -> None:
        self._cancel_timeout()
        self.ref = self.channel.connection.make_ref()
        self.channel._register_push(self)

        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(
            self.timeout, self.trigger, PushStatus.TIMEOUT, {}, self.ref
        )

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
