"""
Realtime Presence

Tracks shared presence state for a channel and derives join/leave diffs
from full snapshots (presence_state) and incremental deltas (presence_diff).
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, Callable

from .protocol import ChannelEvent

if TYPE_CHECKING:
    from .channel import Channel

# Raw server shape: {key: {"metas": [{"phx_ref": ..., "phx_ref_prev": ..., ...}]}}
RawState = dict[str, dict[str, Any]]
# Exposed shape: {key: [{"presence_ref": ..., ...}]}
PresenceState = dict[str, list[dict[str, Any]]]

JoinCallback = Callable[[str, list[dict[str, Any]], list[dict[str, Any]]], Any]
LeaveCallback = Callable[[str, list[dict[str, Any]], list[dict[str, Any]]], Any]
SyncCallback = Callable[[], Any]

RawCallback = Callable[[str, dict[str, Any] | None, dict[str, Any]], Any]


def _refs(presence: dict[str, Any] | None) -> list[Any]:
    return [meta.get("phx_ref") for meta in (presence or {}).get("metas", [])]


class Presence:
    """
    Presence state synchronized over a channel.

    Diffs that arrive before the first snapshot of the current join are
    held back and applied right after that snapshot.
    """

    def __init__(self, channel: Channel) -> None:
        self.channel = channel

        self._state: RawState = {}
        self._pending_diffs: list[dict[str, Any]] = []
        self._join_ref: str | None = None

        self._join_callbacks: list[JoinCallback] = []
        self._leave_callbacks: list[LeaveCallback] = []
        self._sync_callbacks: list[SyncCallback] = []

        channel.on(ChannelEvent.PRESENCE_STATE.value, self._handle_state)
        channel.on(ChannelEvent.PRESENCE_DIFF.value, self._handle_diff)

    # ──────────────────────────────────────────────────────────
    # Public accessors
    # ──────────────────────────────────────────────────────────

    @property
    def state(self) -> PresenceState:
        """Current presence state with internal ref lineage stripped."""
        return transform_state(self._state)

    def list(self, chooser: Callable[[str, list[dict[str, Any]]], Any] | None = None) -> list[Any]:
        state = self.state
        if chooser is None:
            return list(state.values())
        return [chooser(key, metas) for key, metas in state.items()]

    def on_join(self, callback: JoinCallback) -> None:
        self._join_callbacks.append(callback)

    def on_leave(self, callback: LeaveCallback) -> None:
        self._leave_callbacks.append(callback)

    def on_sync(self, callback: SyncCallback) -> None:
        self._sync_callbacks.append(callback)

    def in_pending_sync_state(self) -> bool:
        return self._join_ref is None or self._join_ref != self.channel.join_ref()

    # ──────────────────────────────────────────────────────────
    # Frame handlers
    # ──────────────────────────────────────────────────────────

    def _handle_state(self, new_state: dict[str, Any]) -> None:
        self._join_ref = self.channel.join_ref()
        self._state = self.sync_state(self._state, new_state, self._fire_join, self._fire_leave)

        for diff in self._pending_diffs:
            self._state = self.sync_diff(self._state, diff, self._fire_join, self._fire_leave)
        self._pending_diffs = []

        self._fire_sync()

    def _handle_diff(self, diff: dict[str, Any]) -> None:
        if self.in_pending_sync_state():
            self._pending_diffs.append(diff)
            return

        self._state = self.sync_diff(self._state, diff, self._fire_join, self._fire_leave)
        self._fire_sync()

    def _fire_join(
        self,
        key: str,
        current: dict[str, Any] | None,
        joined: dict[str, Any],
    ) -> None:
        current_presences = transform_metas(current)
        new_presences = transform_metas(joined)
        for callback in list(self._join_callbacks):
            callback(key, current_presences, new_presences)
        self.channel._trigger(
            ChannelEvent.PRESENCE.value,
            {
                "event": "join",
                "key": key,
                "current_presences": current_presences,
                "new_presences": new_presences,
            },
        )

    def _fire_leave(
        self,
        key: str,
        current: dict[str, Any] | None,
        left: dict[str, Any],
    ) -> None:
        current_presences = transform_metas(current)
        left_presences = transform_metas(left)
        for callback in list(self._leave_callbacks):
            callback(key, current_presences, left_presences)
        self.channel._trigger(
            ChannelEvent.PRESENCE.value,
            {
                "event": "leave",
                "key": key,
                "current_presences": current_presences,
                "left_presences": left_presences,
            },
        )

    def _fire_sync(self) -> None:
        for callback in list(self._sync_callbacks):
            callback()
        self.channel._trigger(ChannelEvent.PRESENCE.value, {"event": "sync"})

    # ──────────────────────────────────────────────────────────
    # Diff algorithm
    # ──────────────────────────────────────────────────────────

    @staticmethod
    def sync_state(
        current_state: RawState,
        new_state: RawState,
        on_join: RawCallback | None = None,
        on_leave: RawCallback | None = None,
    ) -> RawState:
        """
        Replace the state with a full snapshot.

        Metas are compared by phx_ref: refs only in the new snapshot are
        joins, refs only in the current state are leaves.
        """
        state = copy.deepcopy(current_state)
        new_state = copy.deepcopy(new_state)
        joins: RawState = {}
        leaves: RawState = {}

        for key, presence in state.items():
            if key not in new_state:
                leaves[key] = presence

        for key, new_presence in new_state.items():
            current = state.get(key)
            if current is None:
                joins[key] = new_presence
                continue

            new_refs = _refs(new_presence)
            current_refs = _refs(current)
            joined_metas = [m for m in new_presence.get("metas", []) if m.get("phx_ref") not in current_refs]
            left_metas = [m for m in current.get("metas", []) if m.get("phx_ref") not in new_refs]

            if joined_metas:
                joins[key] = {**new_presence, "metas": joined_metas}
            if left_metas:
                leaves[key] = {**copy.deepcopy(current), "metas": left_metas}

        return Presence.sync_diff(state, {"joins": joins, "leaves": leaves}, on_join, on_leave)

    @staticmethod
    def sync_diff(
        state: RawState,
        diff: dict[str, Any],
        on_join: RawCallback | None = None,
        on_leave: RawCallback | None = None,
    ) -> RawState:
        """
        Apply a join/leave delta. Joins are applied before leaves so a key
        that leaves and rejoins in one diff is never observably absent.
        """
        state = copy.deepcopy(state)
        diff = copy.deepcopy(diff)

        for key, new_presence in (diff.get("joins") or {}).items():
            current = state.get(key)
            state[key] = copy.deepcopy(new_presence)
            if current is not None:
                joined_refs = _refs(state[key])
                kept = [m for m in current.get("metas", []) if m.get("phx_ref") not in joined_refs]
                state[key]["metas"] = kept + state[key].get("metas", [])
            if on_join is not None:
                on_join(key, current, new_presence)

        for key, left_presence in (diff.get("leaves") or {}).items():
            current = state.get(key)
            if current is None:
                continue
            refs_to_remove = _refs(left_presence)
            current["metas"] = [m for m in current.get("metas", []) if m.get("phx_ref") not in refs_to_remove]
            if on_leave is not None:
                on_leave(key, current, left_presence)
            if not current["metas"]:
                del state[key]

        return state


def transform_metas(presence: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Rename phx_ref to presence_ref and drop phx_ref_prev."""
    if presence is None:
        return []
    if "metas" not in presence:
        return copy.deepcopy(presence) if isinstance(presence, list) else []

    metas = []
    for meta in presence["metas"]:
        meta = copy.deepcopy(meta)
        meta["presence_ref"] = meta.pop("phx_ref", None)
        meta.pop("phx_ref_prev", None)
        metas.append(meta)
    return metas


def transform_state(state: RawState) -> PresenceState:
    return {key: transform_metas(presence) for key, presence in state.items()}
