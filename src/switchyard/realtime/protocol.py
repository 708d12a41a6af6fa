"""
Realtime Channel Protocol

Defines the frame shape, event names, states and wire codecs shared by the
connection manager, channels and pushes.
"""

from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, Field, ValidationError

from switchyard import __version__
from .errors import FrameDecodeError

# ══════════════════════════════════════════════════════════════
# Constants
# ══════════════════════════════════════════════════════════════

DEFAULT_VERSION = f"switchyard/{__version__}"

VSN_1_0_0 = "1.0.0"
VSN_2_0_0 = "2.0.0"
DEFAULT_VSN = VSN_1_0_0

DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_HEARTBEAT_INTERVAL = 25.0  # seconds
DEFAULT_RECONNECT_AFTER = (1.0, 2.0, 5.0, 10.0)
DEFAULT_REJOIN_AFTER = (1.0, 2.0, 5.0, 10.0)

WS_CLOSE_NORMAL = 1000
MAX_PUSH_BUFFER_SIZE = 100

SYSTEM_TOPIC = "phoenix"
TOPIC_PREFIX = "realtime:"
TRANSPORT_PATH = "websocket"


class ConnectionState(str, Enum):
    """Transport connection states."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ChannelState(str, Enum):
    """Channel join states."""

    CLOSED = "closed"
    ERRORED = "errored"
    JOINED = "joined"
    JOINING = "joining"
    LEAVING = "leaving"


class ChannelEvent(str, Enum):
    """Event names with protocol-level meaning."""

    # Lifecycle
    CLOSE = "phx_close"
    ERROR = "phx_error"
    JOIN = "phx_join"
    REPLY = "phx_reply"
    LEAVE = "phx_leave"

    # Client -> Server
    ACCESS_TOKEN = "access_token"
    HEARTBEAT = "heartbeat"

    # Server -> Client
    PRESENCE_STATE = "presence_state"
    PRESENCE_DIFF = "presence_diff"
    BROADCAST = "broadcast"
    PRESENCE = "presence"
    POSTGRES_CHANGES = "postgres_changes"
    SYSTEM = "system"


LIFECYCLE_EVENTS = frozenset(
    {
        ChannelEvent.CLOSE.value,
        ChannelEvent.ERROR.value,
        ChannelEvent.JOIN.value,
        ChannelEvent.REPLY.value,
        ChannelEvent.LEAVE.value,
    }
)


class SubscribeStatus(str, Enum):
    """Statuses reported to the subscribe callback."""

    SUBSCRIBED = "SUBSCRIBED"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"


class PushStatus(str, Enum):
    """Resolution statuses of a push."""

    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"


# ══════════════════════════════════════════════════════════════
# Channel Configuration
# ══════════════════════════════════════════════════════════════


class BroadcastConfig(BaseModel):
    """Broadcast delivery options."""

    ack: bool = False
    self_: bool = Field(default=False, alias="self")

    model_config = {"populate_by_name": True}


class PresenceConfig(BaseModel):
    """Presence tracking options."""

    key: str = ""
    enabled: bool = False


class PostgresChangesFilter(BaseModel):
    """A database change subscription as sent in the join payload."""

    event: str = "*"
    schema_: str = Field(default="public", alias="schema")
    table: str | None = None
    filter: str | None = None

    model_config = {"populate_by_name": True}


class ChannelConfig(BaseModel):
    """Configuration merged into every join payload."""

    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    private: bool = False
    postgres_changes: list[PostgresChangesFilter] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Dump using wire field names."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ══════════════════════════════════════════════════════════════
# Frames
# ══════════════════════════════════════════════════════════════


class Message(BaseModel):
    """A single protocol frame."""

    topic: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ref: str | None = None
    join_ref: str | None = None


def encode(message: Message, vsn: str = DEFAULT_VSN) -> str:
    """Serialize a frame for the given protocol version."""
    if vsn == VSN_2_0_0:
        return orjson.dumps(
            [
                message.join_ref,
                message.ref,
                message.topic,
                message.event,
                message.payload,
            ]
        ).decode()
    return message.model_dump_json()


def decode(raw: str | bytes, vsn: str = DEFAULT_VSN) -> Message:
    """Parse a frame for the given protocol version."""
    try:
        if vsn == VSN_2_0_0:
            data = orjson.loads(raw)
            if not isinstance(data, list) or len(data) != 5:
                raise FrameDecodeError(f"expected a 5 element array, got {data!r}")
            join_ref, ref, topic, event, payload = data
            return Message(
                topic=topic,
                event=event,
                payload=payload or {},
                ref=_ref_str(ref),
                join_ref=_ref_str(join_ref),
            )

        data = orjson.loads(raw)
        if isinstance(data, dict):
            data["ref"] = _ref_str(data.get("ref"))
            data["join_ref"] = _ref_str(data.get("join_ref"))
            if data.get("payload") is None:
                data["payload"] = {}
        return Message.model_validate(data)
    except (ValueError, TypeError, ValidationError) as e:
        raise FrameDecodeError(str(e)) from e


def _ref_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
