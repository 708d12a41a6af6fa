"""
Realtime Connection Manager

Owns the single transport shared by every channel: connection lifecycle,
reconnect backoff, heartbeat liveness, access token propagation and
demultiplexing of inbound frames to channels.
"""

import asyncio
from typing import Any, Awaitable, Callable, Coroutine
from urllib.parse import urlencode

import structlog

from switchyard.config import ClientOptions
from .channel import Channel
from .errors import AuthCallbackError, FrameDecodeError, TransportError
from .protocol import (
    SYSTEM_TOPIC,
    TOPIC_PREFIX,
    TRANSPORT_PATH,
    WS_CLOSE_NORMAL,
    ChannelConfig,
    ChannelEvent,
    ChannelState,
    ConnectionState,
    Message,
    decode,
    encode,
)
from .timer import Timer
from .transport import Transport, WebSocketTransport

logger = structlog.get_logger()

AccessTokenProvider = Callable[[], Awaitable[str | None]]
TransportFactory = Callable[[], Transport]
HeartbeatCallback = Callable[[str], Any]


class ConnectionManager:
    """
    Multiplexes channels over one long-lived connection.

    All state lives on the event loop. Every transport gets an epoch; frames
    and lifecycle callbacks from a transport whose epoch is no longer
    current are ignored, as are reconnect and token refresh results that
    complete after a newer connect or disconnect.
    """

    def __init__(
        self,
        endpoint: str,
        options: ClientOptions | None = None,
        *,
        access_token: AccessTokenProvider | None = None,
        transport_factory: TransportFactory | None = None,
        logger: Any = None,
        heartbeat_callback: HeartbeatCallback | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.options = options or ClientOptions()
        self.vsn = self.options.vsn
        self.timeout = self.options.timeout
        self.logger = logger or structlog.get_logger()

        self.access_token_value: str | None = self.options.access_token
        self.heartbeat_callback = heartbeat_callback

        self.transport: Transport | None = None
        self.channels: list[Channel] = []
        self.send_buffer: list[Message] = []
        self.pending_heartbeat_ref: str | None = None

        self.reconnect_timer = Timer(self._reconnect, self.options.reconnect_after)

        self._access_token_provider = access_token
        self._transport_factory = transport_factory or WebSocketTransport
        self._ref = 0
        self._epoch = 0
        self._close_was_clean = False
        self._heartbeat_handle: asyncio.TimerHandle | None = None
        self._auth_generation = 0
        self._auth_applied_generation = 0
        self._tasks: set[asyncio.Task] = set()

        self._open_callbacks: list[Callable[[], Any]] = []
        self._close_callbacks: list[Callable[[int, str], Any]] = []
        self._error_callbacks: list[Callable[[Exception], Any]] = []

    # ──────────────────────────────────────────────────────────
    # Connection lifecycle
    # ──────────────────────────────────────────────────────────

    def endpoint_url(self) -> str:
        """Endpoint with the transport path and query parameters."""
        base = self.endpoint
        if not base.endswith(f"/{TRANSPORT_PATH}"):
            base = f"{base}/{TRANSPORT_PATH}"
        query = urlencode({**self.options.params, "vsn": self.vsn})
        return f"{base}?{query}"

    def connect(self) -> None:
        """Open the transport. A no-op while a transport is already live."""
        if self.transport is not None:
            return

        self._epoch += 1
        epoch = self._epoch
        self._close_was_clean = False

        transport = self._transport_factory()
        transport.on_open = lambda: self._on_conn_open(epoch)
        transport.on_message = lambda raw: self._on_conn_message(epoch, raw)
        transport.on_close = lambda code, reason: self._on_conn_close(epoch, code, reason)
        transport.on_error = lambda error: self._on_conn_error(epoch, error)
        self.transport = transport

        self.logger.info("Connecting", url=self.endpoint_url(), epoch=epoch)
        if self._access_token_provider is not None:
            self._spawn(self.set_auth())
        transport.connect(self.endpoint_url())

    def disconnect(self, code: int = WS_CLOSE_NORMAL, reason: str | None = None) -> None:
        """
        Close the transport and tear everything down.

        Cancels the reconnect and heartbeat timers and any in-flight token
        refresh, closes every channel and discards them. No reconnect
        follows.
        """
        self._close_was_clean = True
        self._epoch += 1

        self.reconnect_timer.reset()
        self._stop_heartbeat()
        for task in list(self._tasks):
            task.cancel()

        transport, self.transport = self.transport, None
        if transport is not None:
            transport.close(code, reason)
        self.send_buffer.clear()

        for channel in list(self.channels):
            channel._teardown("disconnect")
        self.channels.clear()

        self.logger.info("Disconnected", code=code, reason=reason)
        self._heartbeat_status("disconnected")

    def connection_state(self) -> ConnectionState:
        if self.transport is None:
            return ConnectionState.CLOSED
        return self.transport.state

    def is_connected(self) -> bool:
        return self.connection_state() is ConnectionState.OPEN

    def on_open(self, callback: Callable[[], Any]) -> None:
        self._open_callbacks.append(callback)

    def on_close(self, callback: Callable[[int, str], Any]) -> None:
        self._close_callbacks.append(callback)

    def on_error(self, callback: Callable[[Exception], Any]) -> None:
        self._error_callbacks.append(callback)

    # ──────────────────────────────────────────────────────────
    # Channel registry
    # ──────────────────────────────────────────────────────────

    def channel(
        self,
        topic: str,
        config: ChannelConfig | dict[str, Any] | None = None,
    ) -> Channel:
        """Return the channel for a topic, creating it on first request."""
        full_topic = f"{TOPIC_PREFIX}{topic}"
        for channel in self.channels:
            if channel.topic == full_topic:
                return channel

        channel = Channel(full_topic, self, config)
        self.channels.append(channel)
        return channel

    def get_channels(self) -> list[Channel]:
        return list(self.channels)

    async def remove_channel(self, channel: Channel) -> str:
        """Unsubscribe and drop a channel. Disconnects when none remain."""
        status = await channel.unsubscribe()
        self._remove_channel(channel)
        if not self.channels:
            self.disconnect()
        return status

    async def remove_all_channels(self) -> list[str]:
        statuses = [await channel.unsubscribe() for channel in list(self.channels)]
        self.channels.clear()
        self.disconnect()
        return statuses

    def _add_channel(self, channel: Channel) -> None:
        if not any(existing is channel for existing in self.channels):
            self.channels.append(channel)

    def _remove_channel(self, channel: Channel) -> None:
        self.channels = [existing for existing in self.channels if existing is not channel]

    # ──────────────────────────────────────────────────────────
    # Outbound
    # ──────────────────────────────────────────────────────────

    def make_ref(self) -> str:
        """Next message ref, strictly increasing for this manager."""
        self._ref += 1
        return str(self._ref)

    def push(self, message: Message) -> None:
        """Write a frame now, or hold it until the connection opens."""
        if self.is_connected():
            self._send(message)
        else:
            self.send_buffer.append(message)

    def _send(self, message: Message) -> None:
        self.logger.debug(
            "Sending frame",
            topic=message.topic,
            frame_event=message.event,
            ref=message.ref,
        )
        self.transport.send(encode(message, self.vsn))

    def _flush_send_buffer(self) -> None:
        buffered, self.send_buffer = self.send_buffer, []
        for message in buffered:
            self._send(message)

    # ──────────────────────────────────────────────────────────
    # Heartbeat
    # ──────────────────────────────────────────────────────────

    def send_heartbeat(self) -> None:
        """
        Send one heartbeat, or force a reconnect if the previous one was
        never answered.
        """
        if not self.is_connected():
            return

        if self.pending_heartbeat_ref is not None:
            self.pending_heartbeat_ref = None
            self.logger.warning("Heartbeat timeout. Attempting to re-establish connection")
            self._heartbeat_status("timeout")
            self._abnormal_close("heartbeat timeout")
            return

        self.pending_heartbeat_ref = self.make_ref()
        payload = {"access_token": self.access_token_value} if self.access_token_value else {}
        self.push(
            Message(
                topic=SYSTEM_TOPIC,
                event=ChannelEvent.HEARTBEAT.value,
                payload=payload,
                ref=self.pending_heartbeat_ref,
            )
        )
        self._heartbeat_status("sent")

        if self._access_token_provider is not None:
            self._spawn(self.set_auth())

    def _reset_heartbeat(self) -> None:
        self._stop_heartbeat()
        self.pending_heartbeat_ref = None
        self._schedule_heartbeat()

    def _schedule_heartbeat(self) -> None:
        loop = asyncio.get_running_loop()
        self._heartbeat_handle = loop.call_later(
            self.options.heartbeat_interval, self._heartbeat_tick
        )

    def _heartbeat_tick(self) -> None:
        self._heartbeat_handle = None
        self.send_heartbeat()
        if self.is_connected():
            self._schedule_heartbeat()

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_handle is not None:
            self._heartbeat_handle.cancel()
            self._heartbeat_handle = None

    def _heartbeat_status(self, status: str) -> None:
        if self.heartbeat_callback is None:
            return
        try:
            self.heartbeat_callback(status)
        except Exception as e:
            self.logger.error("Heartbeat callback failed", status=status, error=str(e))

    # ──────────────────────────────────────────────────────────
    # Authentication
    # ──────────────────────────────────────────────────────────

    async def set_auth(self, token: str | None = None) -> None:
        """
        Set the access token and propagate it to live channels.

        With no token, the provider callback is consulted; without a provider
        the cached token is kept. Provider failures are logged and leave the
        cache untouched. A result is dropped if a later call has already
        applied its own.
        """
        self._auth_generation += 1
        generation = self._auth_generation

        if token is None and self._access_token_provider is not None:
            try:
                resolved = await self._access_token_provider()
            except Exception as e:
                self.logger.error(
                    "Error fetching access token from callback",
                    error=str(AuthCallbackError(str(e))),
                )
                return
        else:
            resolved = token

        if generation < self._auth_applied_generation:
            self.logger.debug("Discarding stale access token", generation=generation)
            return
        self._auth_applied_generation = generation

        if resolved is None or resolved == self.access_token_value:
            return

        self.access_token_value = resolved
        self.logger.info("Access token updated", channels=len(self.channels))

        for channel in list(self.channels):
            channel.update_join_payload({"access_token": resolved})
            if channel.joined_once and channel.state not in (
                ChannelState.CLOSED,
                ChannelState.LEAVING,
            ):
                channel.push(ChannelEvent.ACCESS_TOKEN.value, {"access_token": resolved})

    # ──────────────────────────────────────────────────────────
    # Transport callbacks
    # ──────────────────────────────────────────────────────────

    def _on_conn_open(self, epoch: int) -> None:
        if epoch != self._epoch:
            return

        self.logger.info("Connected", url=self.endpoint_url())
        self.reconnect_timer.reset()
        self._flush_send_buffer()
        self._reset_heartbeat()

        for channel in list(self.channels):
            channel._on_connection_open()
        for callback in list(self._open_callbacks):
            callback()

    def _on_conn_close(self, epoch: int, code: int, reason: str) -> None:
        if epoch != self._epoch:
            return
        self._handle_close(code, reason)

    def _on_conn_error(self, epoch: int, error: Exception) -> None:
        if epoch != self._epoch:
            return

        self.logger.error("Transport error", error=str(error))
        if not isinstance(error, TransportError):
            error = TransportError(str(error))
        for channel in list(self.channels):
            channel._on_connection_lost()
        for callback in list(self._error_callbacks):
            callback(error)

    def _on_conn_message(self, epoch: int, raw: str) -> None:
        if epoch != self._epoch:
            return

        try:
            message = decode(raw, self.vsn)
        except FrameDecodeError as e:
            self.logger.warning("Dropping undecodable frame", error=str(e))
            return

        if message.ref is not None and message.ref == self.pending_heartbeat_ref:
            self.pending_heartbeat_ref = None
            ok = message.payload.get("status") == "ok"
            self._heartbeat_status("ok" if ok else "error")

        self.logger.debug(
            "Received frame",
            topic=message.topic,
            frame_event=message.event,
            ref=message.ref,
        )

        for channel in list(self.channels):
            if channel._is_member(message.topic, message.event, message.payload, message.join_ref):
                channel._trigger(message.event, message.payload, message.ref, message.join_ref)

    def _handle_close(self, code: int, reason: str) -> None:
        self.logger.info("Connection closed", code=code, reason=reason)
        self.transport = None
        self._stop_heartbeat()
        self.pending_heartbeat_ref = None
        # Joins queued for the lost transport are re-sent by the rejoin
        self.send_buffer.clear()

        for channel in list(self.channels):
            channel._on_connection_lost()

        if not self._close_was_clean:
            self.reconnect_timer.schedule_timeout()

        for callback in list(self._close_callbacks):
            callback(code, reason)

    def _abnormal_close(self, reason: str) -> None:
        self._close_was_clean = False
        self._epoch += 1

        transport = self.transport
        if transport is not None:
            transport.close(WS_CLOSE_NORMAL, reason)
        self._handle_close(WS_CLOSE_NORMAL, reason)

    async def _reconnect(self) -> None:
        epoch = self._epoch
        await self.set_auth()

        if epoch != self._epoch or self._close_was_clean or self.transport is not None:
            return
        self.logger.info("Reconnecting", attempt=self.reconnect_timer.tries)
        self.connect()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
