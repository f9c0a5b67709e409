# services/room_registry.py
"""
Participant lifecycle and delta broadcasting.

A participant moves through absent -> provisional (slot reserved on admission)
-> named (after its first rename) -> absent (disconnect, slot released). Every
mutation enqueues its deltas before returning, so deltas reach each client in
the order the mutations happened.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from server.constants import DEFAULT_DISPLAY_NAME, DISPLAY_NAME_MAX_LENGTH
from server.services.errors import InvalidRequest, NotFound, RoomFull
from server.services.messaging import build_message
from server.services.slot_allocator import SlotAllocator

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("audio", "video")


@dataclass
class Participant:
    """One admitted connection and the slot it is displayed under."""

    conn_id: str
    user_slot: int
    name: str = DEFAULT_DISPLAY_NAME
    video_enabled: bool = True
    audio_enabled: bool = True
    named: bool = False

    def to_dict(self) -> dict:
        return {
            "conn_id": self.conn_id,
            "name": self.name,
            "user_slot": self.user_slot,
            "video_enabled": self.video_enabled,
            "audio_enabled": self.audio_enabled,
        }


@dataclass
class Departure:
    """What `RoomRegistry.remove` tore down for one connection."""

    participant: Participant
    resources: List[object] = field(default_factory=list)


class RoomRegistry:
    """
    Authoritative roster of the room.

    Owns the user slot pool and the outbound channel of every admitted
    connection. A `MediaResourceDirectory` binds itself on construction so
    admission snapshots include live resources and departures close them.
    """

    def __init__(self, user_slots: SlotAllocator) -> None:
        self._slots = user_slots
        self._participants: Dict[str, Participant] = {}
        self._channels: Dict[str, object] = {}
        self._directory = None

    def bind_directory(self, directory) -> None:
        self._directory = directory

    # ----- Queries -----

    def __contains__(self, conn_id) -> bool:
        return conn_id in self._participants

    def __len__(self) -> int:
        return len(self._participants)

    @property
    def max_users(self) -> int:
        return self._slots.capacity

    def participant(self, conn_id: str) -> Participant:
        """
        Look up an admitted participant.

        Raises:
            NotFound: If `conn_id` holds no slot.
        """
        participant = self._participants.get(conn_id)
        if participant is None:
            raise NotFound(f"Participant {conn_id} is not in the room.")
        return participant

    def get(self, conn_id: str) -> Optional[Participant]:
        return self._participants.get(conn_id)

    def roster(self, exclude: str = None) -> List[dict]:
        return [
            p.to_dict()
            for conn_id, p in self._participants.items()
            if conn_id != exclude
        ]

    def room_status(self) -> dict:
        presentations = self._directory.presentation_count if self._directory else 0
        max_presentations = self._directory.max_presentations if self._directory else 0
        return {
            "user_count": len(self._participants),
            "max_users": self.max_users,
            "presentation_count": presentations,
            "max_presentations": max_presentations,
        }

    # ----- Delivery -----

    def send_to(self, conn_id: str, message: dict) -> None:
        channel = self._channels.get(conn_id)
        if channel is not None:
            channel.deliver(message)

    def broadcast(self, message: dict, exclude: str = None) -> None:
        """
        Enqueue `message` on every admitted connection except `exclude`.

        Args:
            message (dict): Structured message from `build_message`.
            exclude (str, optional): Connection that must not receive it.
        """
        for conn_id, channel in list(self._channels.items()):
            if conn_id != exclude:
                channel.deliver(message)

    def broadcast_room_status(self) -> None:
        self.broadcast(build_message("room_status", payload=self.room_status()))

    # ----- Lifecycle -----

    def admit(self, conn_id: str, channel) -> dict:
        """
        Reserve a user slot for a new connection and bring it up to date.

        The joiner's `init` snapshot is enqueued before the `user_joined` delta
        goes to everyone else, so no client can see a live delta for this
        connection ahead of its own snapshot.

        Args:
            conn_id (str): Identifier of the new connection.
            channel: Outbound channel exposing `deliver(message)`.

        Returns:
            dict: Snapshot `{conn_id, user_slot, roster, resources, room_status}`
                (fresh copies).

        Raises:
            RoomFull: If no user slot is free. Nothing is mutated.
            InvalidRequest: If `conn_id` is already admitted.
        """
        if conn_id in self._participants:
            raise InvalidRequest(f"Connection {conn_id} is already admitted.")

        slot = self._slots.acquire()
        if slot is None:
            raise RoomFull(f"Room is full. Maximum {self.max_users} users allowed.")

        participant = Participant(conn_id=conn_id, user_slot=slot)
        self._participants[conn_id] = participant
        self._channels[conn_id] = channel

        snapshot = {
            "conn_id": conn_id,
            "user_slot": slot,
            "roster": self.roster(exclude=conn_id),
            "resources": self._directory.list_producers() if self._directory else [],
            "room_status": self.room_status(),
        }
        channel.deliver(build_message("init", payload=snapshot))
        self.broadcast(build_message("user_joined", payload=participant.to_dict()), exclude=conn_id)
        self.broadcast_room_status()

        logger.info(f"Participant {conn_id} admitted on scr{slot}")
        return snapshot

    def rename(self, conn_id: str, name) -> Participant:
        """
        Set a participant's display name. `user_updated` goes to everyone
        else; the `room_status` that follows goes to every participant,
        the renamed one included.

        Raises:
            NotFound: If `conn_id` is not admitted.
        """
        participant = self.participant(conn_id)
        participant.name = _clean_name(name)
        participant.named = True

        self.broadcast(build_message("user_updated", payload=participant.to_dict()), exclude=conn_id)
        self.broadcast_room_status()
        logger.info(f"Participant {conn_id} is now named {participant.name!r}")
        return participant

    def set_media_enabled(self, conn_id: str, kind: str, enabled) -> Participant:
        """
        Record that a participant muted or unmuted its camera or microphone.

        Raises:
            NotFound: If `conn_id` is not admitted.
            InvalidRequest: If `kind` is not audio or video.
        """
        if kind not in MEDIA_KINDS:
            raise InvalidRequest(f"Unknown media kind {kind!r}.")
        participant = self.participant(conn_id)
        enabled = bool(enabled)
        if kind == "video":
            participant.video_enabled = enabled
        else:
            participant.audio_enabled = enabled

        self.broadcast(
            build_message("media_toggled", payload={"conn_id": conn_id, "kind": kind, "enabled": enabled}),
            exclude=conn_id,
        )
        return participant

    def remove(self, conn_id: str) -> Optional[Departure]:
        """
        Drop a connection: release its slot, close everything it owns and
        announce the departure.

        Presentation slots are released by the directory before their
        `presentation_ended` deltas go out; `user_left` follows.

        Returns:
            Optional[Departure]: None if `conn_id` was never admitted. The
            departure lists the resource records whose engine objects still
            need closing.
        """
        self._channels.pop(conn_id, None)
        participant = self._participants.pop(conn_id, None)
        if participant is None:
            return None

        self._slots.release(participant.user_slot)
        resources = self._directory.close_all_for(conn_id) if self._directory else []

        self.broadcast(build_message("user_left", payload={"conn_id": conn_id}))
        self.broadcast_room_status()

        logger.info(f"Participant {conn_id} left, released scr{participant.user_slot}")
        return Departure(participant=participant, resources=resources)

    def reset(self) -> None:
        for channel in self._channels.values():
            close = getattr(channel, "close", None)
            if close:
                close()
        self._participants.clear()
        self._channels.clear()
        self._slots.reset()


def _clean_name(name) -> str:
    if not isinstance(name, str):
        return DEFAULT_DISPLAY_NAME
    name = name.strip()[:DISPLAY_NAME_MAX_LENGTH]
    return name or DEFAULT_DISPLAY_NAME
