"""
Pytest Configuration and Fixtures

Shared fixtures for unit and integration tests.
"""

from typing import Any, Callable

import pytest
import structlog

from switchyard.config import ClientOptions, Settings
from switchyard.realtime.connection import ConnectionManager
from switchyard.realtime.protocol import ConnectionState, Message, decode, encode
from switchyard.realtime.transport import Transport


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo global structlog configuration (e.g. from CLI tests) between tests."""
    yield
    structlog.reset_defaults()


# ══════════════════════════════════════════════════════════════
# Fake Transport
# ══════════════════════════════════════════════════════════════


class FakeTransport(Transport):
    """In-memory transport; tests drive open/message/close by hand."""

    def __init__(self, vsn: str = "1.0.0") -> None:
        super().__init__()
        self.vsn = vsn
        self.url: str | None = None
        self.sent: list[str] = []
        self.close_calls: list[tuple[int, str | None]] = []

    # Transport interface

    def connect(self, url: str) -> None:
        self.url = url
        self.state = ConnectionState.CONNECTING

    def send(self, data: str) -> None:
        self.sent.append(data)

    def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_calls.append((code, reason))
        self.state = ConnectionState.CLOSED

    # Test helpers

    def open(self) -> None:
        self.state = ConnectionState.OPEN
        self.on_open()

    def drop(self, code: int = 1006, reason: str = "") -> None:
        self.state = ConnectionState.CLOSED
        self.on_close(code, reason)

    @property
    def frames(self) -> list[Message]:
        return [decode(raw, self.vsn) for raw in self.sent]

    def frames_for(self, event: str, topic: str | None = None) -> list[Message]:
        return [
            frame
            for frame in self.frames
            if frame.event == event and (topic is None or frame.topic == topic)
        ]

    def last(self, event: str, topic: str | None = None) -> Message:
        frames = self.frames_for(event, topic)
        assert frames, f"no {event!r} frame sent"
        return frames[-1]

    def deliver(
        self,
        topic: str,
        event: str,
        payload: dict[str, Any] | None = None,
        ref: str | None = None,
        join_ref: str | None = None,
    ) -> None:
        message = Message(topic=topic, event=event, payload=payload or {}, ref=ref, join_ref=join_ref)
        self.on_message(encode(message, self.vsn))

    def reply(
        self,
        frame: Message,
        status: str = "ok",
        response: dict[str, Any] | None = None,
    ) -> None:
        self.deliver(
            frame.topic,
            "phx_reply",
            {"status": status, "response": response or {}},
            ref=frame.ref,
            join_ref=frame.join_ref,
        )


# ══════════════════════════════════════════════════════════════
# Client Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def fast_options() -> ClientOptions:
    """Options with short timers for tests."""
    return ClientOptions(
        params={"apikey": "test-key"},
        timeout=0.05,
        heartbeat_interval=30.0,
        reconnect_after=(0.01, 0.02),
        rejoin_after=(0.01, 0.02),
    )


@pytest.fixture
def transports() -> list[FakeTransport]:
    """Every transport created by clients in the test, in order."""
    return []


@pytest.fixture
def make_client(
    transports: list[FakeTransport],
    fast_options: ClientOptions,
) -> Callable[..., ConnectionManager]:
    """Factory for clients wired to FakeTransport."""

    def factory(options: ClientOptions | None = None, **kwargs: Any) -> ConnectionManager:
        options = options or fast_options

        def transport_factory() -> FakeTransport:
            transport = FakeTransport(options.vsn)
            transports.append(transport)
            return transport

        return ConnectionManager(
            "ws://realtime.test/socket",
            options,
            transport_factory=transport_factory,
            **kwargs,
        )

    return factory


@pytest.fixture
def test_settings() -> Settings:
    """Settings independent of the environment."""
    return Settings(
        realtime_url="ws://realtime.test/socket",
        api_key="test-key",
        timeout=2.5,
        heartbeat_interval=15.0,
        reconnect_after="0.5,1,2",
        rejoin_after=[1.0, 3.0],
    )


# ══════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════


def _join(client: ConnectionManager, transport: FakeTransport, topic: str, **config: Any):
    channel = client.channel(topic, config or None)
    channel.subscribe()
    transport.reply(transport.last("phx_join", channel.topic))
    return channel


@pytest.fixture
def connected(
    make_client: Callable[..., ConnectionManager],
    transports: list[FakeTransport],
) -> Callable[..., tuple[ConnectionManager, FakeTransport]]:
    """Factory returning a client whose transport is already open."""

    def factory(**kwargs: Any) -> tuple[ConnectionManager, FakeTransport]:
        client = make_client(**kwargs)
        client.connect()
        transport = transports[-1]
        transport.open()
        return client, transport

    return factory


@pytest.fixture
def join() -> Callable[..., Any]:
    """Subscribe to a topic and acknowledge the join."""
    return _join
