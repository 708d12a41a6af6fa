"""
Realtime Channel

Per-topic join/leave state machine multiplexed over the shared connection.
Owns its bindings, its buffered pushes and its rejoin timer.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from .errors import (
    JoinRejectedError,
    JoinTimeoutError,
    PushBeforeJoinError,
    TransportError,
    UnmatchedReplyError,
)
from .presence import Presence
from .protocol import (
    LIFECYCLE_EVENTS,
    TOPIC_PREFIX,
    ChannelConfig,
    ChannelEvent,
    ChannelState,
    PostgresChangesFilter,
    PushStatus,
    SubscribeStatus,
)
from .push import Push
from .timer import Timer

if TYPE_CHECKING:
    from .connection import ConnectionManager

BindingCallback = Callable[[dict[str, Any]], Any]
SubscribeCallback = Callable[[SubscribeStatus, Exception | None], Any]


# ══════════════════════════════════════════════════════════════
# Bindings
# ══════════════════════════════════════════════════════════════


class BindingKind(str, Enum):
    """How a binding is matched against inbound frames."""

    EXACT = "exact"
    WILDCARD = "wildcard"
    FILTERED = "filtered"
    POSTGRES = "postgres"


WILDCARD = "*"

# Events whose payload embeds a sub-event that bindings may filter on
FILTERED_EVENTS = frozenset(
    {
        ChannelEvent.BROADCAST.value,
        ChannelEvent.PRESENCE.value,
        ChannelEvent.SYSTEM.value,
    }
)


@dataclass
class Binding:
    """A registered event listener."""

    id: int
    event: str
    kind: BindingKind
    callback: BindingCallback
    filter: dict[str, Any] = field(default_factory=dict)

    # Assigned by the server on join for database change bindings
    server_id: int | None = None

    def matches(self, event: str, payload: dict[str, Any]) -> bool:
        return _MATCHERS[self.kind](self, event, payload)


def binding_kind(event: str) -> BindingKind:
    if event == WILDCARD:
        return BindingKind.WILDCARD
    if event == ChannelEvent.POSTGRES_CHANGES.value:
        return BindingKind.POSTGRES
    if event in FILTERED_EVENTS:
        return BindingKind.FILTERED
    return BindingKind.EXACT


def _match_exact(binding: Binding, event: str, payload: dict[str, Any]) -> bool:
    return binding.event == event


def _match_wildcard(binding: Binding, event: str, payload: dict[str, Any]) -> bool:
    return event not in LIFECYCLE_EVENTS


def _match_filtered(binding: Binding, event: str, payload: dict[str, Any]) -> bool:
    if binding.event != event:
        return False
    wanted = binding.filter.get("event")
    return wanted is None or wanted == WILDCARD or wanted == payload.get("event")


def _match_postgres(binding: Binding, event: str, payload: dict[str, Any]) -> bool:
    if binding.event != event or binding.server_id is None:
        return False
    if binding.server_id not in (payload.get("ids") or []):
        return False
    wanted = str(binding.filter.get("event", WILDCARD))
    change_type = str((payload.get("data") or {}).get("type", ""))
    return wanted == WILDCARD or wanted.lower() == change_type.lower()


_MATCHERS: dict[BindingKind, Callable[[Binding, str, dict[str, Any]], bool]] = {
    BindingKind.EXACT: _match_exact,
    BindingKind.WILDCARD: _match_wildcard,
    BindingKind.FILTERED: _match_filtered,
    BindingKind.POSTGRES: _match_postgres,
}

_OUTCOMES = {
    PushStatus.OK: "ok",
    PushStatus.TIMEOUT: "timed out",
    PushStatus.ERROR: "error",
}


# ══════════════════════════════════════════════════════════════
# Channel
# ══════════════════════════════════════════════════════════════


class Channel:
    """
    A logical subscription to one topic.

    States move closed -> joining -> joined, fall back to errored on server
    errors, join timeouts or transport loss (retrying on the rejoin timer
    while connected), and end in closed after a leave.
    """

    def __init__(
        self,
        topic: str,
        connection: ConnectionManager,
        config: ChannelConfig | dict[str, Any] | None = None,
    ) -> None:
        self.topic = topic
        self.sub_topic = topic.removeprefix(TOPIC_PREFIX)
        self.connection = connection

        if isinstance(config, ChannelConfig):
            self.config = config
        else:
            # Accept both {"private": ...} and the wire shape {"config": {...}}
            config = config or {}
            self.config = ChannelConfig.model_validate(config.get("config", config))

        self.state = ChannelState.CLOSED
        self.joined_once = False
        self.timeout = connection.options.timeout
        self.max_push_buffer_size = connection.options.max_push_buffer_size

        self.bindings: list[Binding] = []
        self.push_buffer: deque[Push] = deque()

        self._binding_ref = 0
        self._pending: dict[str, Push] = {}
        self._status_callbacks: list[SubscribeCallback] = []
        self._tasks: set[asyncio.Task] = set()

        self.join_push = Push(self, ChannelEvent.JOIN.value, self._join_payload(), self.timeout)
        self.join_push.receive(PushStatus.OK, self._on_join_ok)
        self.join_push.receive(PushStatus.ERROR, self._on_join_error)
        self.join_push.receive(PushStatus.TIMEOUT, self._on_join_timeout)

        self.rejoin_timer = Timer(self._rejoin_until_connected, connection.options.rejoin_after)
        self.presence = Presence(self)

    def __repr__(self) -> str:
        return f"Channel(topic={self.topic!r}, state={self.state.value})"

    @property
    def logger(self):
        return self.connection.logger

    # ──────────────────────────────────────────────────────────
    # Subscription lifecycle
    # ──────────────────────────────────────────────────────────

    def subscribe(
        self,
        callback: SubscribeCallback | None = None,
        timeout: float | None = None,
    ) -> Push:
        """
        Join the topic.

        Calling again while the channel is joining, joined or errored returns
        the existing join push instead of sending a second join.
        """
        if not self.connection.is_connected():
            self.connection.connect()

        if self.joined_once and self.state not in (ChannelState.CLOSED, ChannelState.LEAVING):
            if callback is not None:
                self._status_callbacks.append(callback)
                if self.state is ChannelState.JOINED:
                    callback(SubscribeStatus.SUBSCRIBED, None)
            return self.join_push

        if callback is not None:
            self._status_callbacks.append(callback)

        self.connection._add_channel(self)
        self.joined_once = True

        self.config.postgres_changes = [
            PostgresChangesFilter.model_validate(binding.filter)
            for binding in self.bindings
            if binding.kind is BindingKind.POSTGRES
        ]
        if any(binding.event == ChannelEvent.PRESENCE.value for binding in self.bindings):
            self.config.presence.enabled = True

        self.join_push.update_payload(self._join_payload())
        self._rejoin(timeout)
        return self.join_push

    async def unsubscribe(self, timeout: float | None = None) -> str:
        """
        Leave the topic.

        The channel moves to leaving immediately and to closed once the
        server acknowledges or the leave times out. Returns "ok",
        "timed out" or "error".
        """
        if not self.joined_once or self.state is ChannelState.CLOSED:
            self._teardown("leave")
            return "ok"

        self.rejoin_timer.reset()
        self.join_push.destroy()
        self.state = ChannelState.LEAVING

        leave_push = Push(
            self,
            ChannelEvent.LEAVE.value,
            {},
            timeout if timeout is not None else self.timeout,
        )
        for status in PushStatus:
            leave_push.receive(status, lambda _response: self._teardown("leave"))

        if self.connection.is_connected():
            leave_push.send()
        else:
            leave_push.trigger(PushStatus.OK, {})

        status, _ = await leave_push.wait()
        return _OUTCOMES[status]

    # ──────────────────────────────────────────────────────────
    # Outbound
    # ──────────────────────────────────────────────────────────

    def push(
        self,
        event: str,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Push:
        """
        Send an event on the channel.

        Raises PushBeforeJoinError if the channel was never joined or is
        closing. While the channel cannot transmit, the push is buffered and
        its timeout does not start until it is flushed.
        """
        if not self.joined_once or self.state in (ChannelState.CLOSED, ChannelState.LEAVING):
            raise PushBeforeJoinError(self.topic, event)

        push = Push(self, event, payload, timeout if timeout is not None else self.timeout)
        if self.can_push():
            push.send()
        else:
            self._buffer_push(push)
        return push

    async def send(
        self,
        type: str,
        event: str,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> str:
        """
        Send a typed message (broadcast, presence) and wait for the outcome.

        Broadcasts without server acknowledgement resolve "ok" as soon as
        they are queued.
        """
        push = self.push(
            type,
            {"type": type, "event": event, "payload": payload or {}},
            timeout,
        )
        if type == ChannelEvent.BROADCAST.value and not self.config.broadcast.ack:
            return "ok"

        status, _ = await push.wait()
        return _OUTCOMES[status]

    async def track(self, payload: dict[str, Any], timeout: float | None = None) -> str:
        """Publish this client's presence meta."""
        return await self.send(ChannelEvent.PRESENCE.value, "track", payload, timeout)

    async def untrack(self, timeout: float | None = None) -> str:
        return await self.send(ChannelEvent.PRESENCE.value, "untrack", {}, timeout)

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        return self.presence.state

    def update_join_payload(self, extra: dict[str, Any]) -> None:
        self.join_push.update_payload(extra)

    # ──────────────────────────────────────────────────────────
    # Bindings
    # ──────────────────────────────────────────────────────────

    def on(
        self,
        event: str,
        callback: BindingCallback,
        filter: dict[str, Any] | None = None,
    ) -> int:
        """Register a listener and return its binding id."""
        self._binding_ref += 1
        self.bindings.append(
            Binding(
                id=self._binding_ref,
                event=event,
                kind=binding_kind(event),
                callback=callback,
                filter=dict(filter or {}),
            )
        )
        return self._binding_ref

    def off(self, event: str, binding_id: int | None = None) -> None:
        """Remove one binding by id, or every binding for the event."""
        self.bindings = [
            binding
            for binding in self.bindings
            if not (binding.event == event and (binding_id is None or binding.id == binding_id))
        ]

    # ──────────────────────────────────────────────────────────
    # State queries
    # ──────────────────────────────────────────────────────────

    def join_ref(self) -> str | None:
        return self.join_push.ref

    def can_push(self) -> bool:
        return self.connection.is_connected() and self.state is ChannelState.JOINED

    def is_joined(self) -> bool:
        return self.state is ChannelState.JOINED

    def is_joining(self) -> bool:
        return self.state is ChannelState.JOINING

    def is_errored(self) -> bool:
        return self.state is ChannelState.ERRORED

    def is_leaving(self) -> bool:
        return self.state is ChannelState.LEAVING

    def is_closed(self) -> bool:
        return self.state is ChannelState.CLOSED

    # ──────────────────────────────────────────────────────────
    # Inbound (called by the connection manager)
    # ──────────────────────────────────────────────────────────

    def _is_member(
        self,
        topic: str,
        event: str,
        payload: dict[str, Any],
        join_ref: str | None,
    ) -> bool:
        if self.topic != topic:
            return False

        if join_ref and event in LIFECYCLE_EVENTS and join_ref != self.join_ref():
            self.logger.debug(
                "Dropping outdated message",
                topic=topic,
                frame_event=event,
                join_ref=join_ref,
            )
            return False
        return True

    def _trigger(
        self,
        event: str,
        payload: dict[str, Any] | None = None,
        ref: str | None = None,
        join_ref: str | None = None,
    ) -> None:
        payload = payload or {}

        if event == ChannelEvent.REPLY.value:
            self._on_reply(payload, ref)
            return
        if event == ChannelEvent.CLOSE.value:
            self._teardown("server close")
        elif event == ChannelEvent.ERROR.value:
            self._on_error(payload)

        for binding in list(self.bindings):
            if not binding.matches(event, payload):
                continue
            try:
                if binding.kind is BindingKind.POSTGRES:
                    binding.callback(payload.get("data") or {})
                else:
                    binding.callback(payload)
            except Exception as e:
                self.logger.error(
                    "Binding callback failed",
                    topic=self.topic,
                    binding_event=event,
                    binding_id=binding.id,
                    error=str(e),
                )

    def _on_reply(self, payload: dict[str, Any], ref: str | None) -> None:
        push = self._pending.get(ref) if ref is not None else None
        if push is None:
            self.logger.debug(
                "Ignoring reply",
                error=str(UnmatchedReplyError(self.topic, ref)),
            )
            return

        status = payload.get("status")
        if status not in (PushStatus.OK.value, PushStatus.ERROR.value):
            status = PushStatus.ERROR.value
        push.trigger(status, payload.get("response") or {}, ref)

    def _on_error(self, payload: dict[str, Any], error: Exception | None = None) -> None:
        if self.state in (ChannelState.ERRORED, ChannelState.LEAVING, ChannelState.CLOSED):
            return

        self.logger.warning("Channel errored", topic=self.topic, reason=payload.get("reason"))
        if self.state is ChannelState.JOINING:
            self.join_push.reset()
        self.state = ChannelState.ERRORED

        if self.connection.is_connected():
            self.rejoin_timer.schedule_timeout()
        self._notify(
            SubscribeStatus.CHANNEL_ERROR,
            error or JoinRejectedError(self.topic, payload),
        )

    def _on_connection_open(self) -> None:
        self.rejoin_timer.reset()
        if self.state is ChannelState.ERRORED:
            self._rejoin()

    def _on_connection_lost(self) -> None:
        if self.state not in (ChannelState.ERRORED, ChannelState.LEAVING, ChannelState.CLOSED):
            self._on_error(
                {"reason": "connection lost"},
                TransportError(f"connection lost while on '{self.topic}'"),
            )

    # ──────────────────────────────────────────────────────────
    # Join handling
    # ──────────────────────────────────────────────────────────

    def _join_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"config": self.config.to_payload()}
        if self.connection.access_token_value:
            payload["access_token"] = self.connection.access_token_value
        return payload

    def _rejoin(self, timeout: float | None = None) -> None:
        if self.state is ChannelState.LEAVING:
            return
        self.state = ChannelState.JOINING
        self.join_push.resend(timeout)

    def _rejoin_until_connected(self) -> None:
        if self.connection.is_connected():
            self._rejoin()

    def _on_join_ok(self, response: dict[str, Any]) -> None:
        postgres_bindings = [b for b in self.bindings if b.kind is BindingKind.POSTGRES]
        if postgres_bindings and not self._assign_postgres_ids(
            postgres_bindings, response.get("postgres_changes") or []
        ):
            self.state = ChannelState.ERRORED
            self._notify(
                SubscribeStatus.CHANNEL_ERROR,
                JoinRejectedError(
                    self.topic,
                    {"reason": "mismatch between server and client bindings for postgres changes"},
                ),
            )
            self._spawn(self.unsubscribe())
            return

        self.state = ChannelState.JOINED
        self.rejoin_timer.reset()
        self.logger.info("Channel joined", topic=self.topic, join_ref=self.join_ref())

        while self.push_buffer and self.can_push():
            self.push_buffer.popleft().send()

        self._notify(SubscribeStatus.SUBSCRIBED, None)

    def _on_join_error(self, response: dict[str, Any]) -> None:
        if self.state in (ChannelState.LEAVING, ChannelState.CLOSED):
            return

        self.state = ChannelState.ERRORED
        self.logger.warning("Channel join rejected", topic=self.topic, response=response)
        if self.connection.is_connected():
            self.rejoin_timer.schedule_timeout()
        self._notify(SubscribeStatus.CHANNEL_ERROR, JoinRejectedError(self.topic, response))

    def _on_join_timeout(self, _response: dict[str, Any]) -> None:
        if self.state in (ChannelState.LEAVING, ChannelState.CLOSED):
            return

        timeout = self.join_push.timeout
        self.logger.warning("Channel join timed out", topic=self.topic, timeout=timeout)

        if self.connection.is_connected():
            Push(self, ChannelEvent.LEAVE.value, {}, self.timeout).send()

        self.state = ChannelState.ERRORED
        self.join_push.reset()
        if self.connection.is_connected():
            self.rejoin_timer.schedule_timeout()
        self._notify(SubscribeStatus.TIMED_OUT, JoinTimeoutError(self.topic, timeout))

    def _assign_postgres_ids(
        self,
        bindings: list[Binding],
        server_changes: list[dict[str, Any]],
    ) -> bool:
        if len(server_changes) != len(bindings):
            return False

        for binding, server in zip(bindings, server_changes):
            client = PostgresChangesFilter.model_validate(binding.filter)
            if (
                server.get("event") != client.event
                or server.get("schema") != client.schema_
                or server.get("table") != client.table
                or server.get("filter") != client.filter
            ):
                return False

        for binding, server in zip(bindings, server_changes):
            binding.server_id = server.get("id")
        return True

    # ──────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────

    def _buffer_push(self, push: Push) -> None:
        if len(self.push_buffer) >= self.max_push_buffer_size:
            dropped = self.push_buffer.popleft()
            self.logger.warning(
                "Push buffer full, dropping oldest push",
                topic=self.topic,
                push_event=dropped.event,
                max_size=self.max_push_buffer_size,
            )
            dropped.trigger(PushStatus.ERROR, {"reason": "push buffer overflow"})
        self.push_buffer.append(push)

    def _register_push(self, push: Push) -> None:
        if push.ref is not None:
            self._pending[push.ref] = push

    def _unregister_push(self, push: Push) -> None:
        if push.ref is not None and self._pending.get(push.ref) is push:
            del self._pending[push.ref]

    def _teardown(self, reason: str) -> None:
        """Close the channel and resolve every outstanding push."""
        was_closed = self.state is ChannelState.CLOSED

        self.rejoin_timer.reset()
        self.join_push.destroy()
        self.state = ChannelState.CLOSED

        outstanding = list(self.push_buffer) + list(self._pending.values())
        self.push_buffer.clear()
        self._pending.clear()
        for push in outstanding:
            push.trigger(PushStatus.ERROR, {"reason": "channel closed"})

        self.connection._remove_channel(self)

        if not was_closed:
            self.logger.info("Channel closed", topic=self.topic, reason=reason)
            self._notify(SubscribeStatus.CLOSED, None)

    def _notify(self, status: SubscribeStatus, error: Exception | None) -> None:
        for callback in list(self._status_callbacks):
            try:
                callback(status, error)
            except Exception as e:
                self.logger.error(
                    "Subscribe callback failed",
                    topic=self.topic,
                    status=status.value,
                    error=str(e),
                )

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
