# client/session_replicator.py
"""
Client-side mirror of the room.

The server's `init` snapshot and the deltas that follow are folded into a
local view of participants, presentations and room capacity. Resources that
need consuming are buffered until the media device is ready and then handed
to the consumption callbacks exactly once, camera producers first.
"""
import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RemoteParticipant:
    conn_id: str
    name: str = "Anonymous"
    user_slot: Optional[int] = None
    video_enabled: bool = True
    audio_enabled: bool = True

    @classmethod
    def from_payload(cls, payload: dict) -> "RemoteParticipant":
        return cls(
            conn_id=payload["conn_id"],
            name=payload.get("name") or "Anonymous",
            user_slot=payload.get("user_slot"),
            video_enabled=payload.get("video_enabled", True),
            audio_enabled=payload.get("audio_enabled", True),
        )


@dataclass
class PresentationRecord:
    presentation_id: str
    owner_id: str
    owner_name: str
    slot: Optional[int]


@dataclass
class RoomStatus:
    user_count: int = 0
    max_users: int = 0
    presentation_count: int = 0
    max_presentations: int = 0


class SessionReplicator:
    """
    Mirrors room state from server deltas and gates consumption on readiness.

    Args:
        consume_producer: Coroutine function taking a camera producer descriptor.
        consume_presentation: Coroutine function taking a screen producer descriptor.
    """

    def __init__(self, consume_producer, consume_presentation):
        self._consume_producer = consume_producer
        self._consume_presentation = consume_presentation
        self.reset()

    def reset(self) -> None:
        """Return to the state of a client that never joined."""
        self.ready = False
        self.my_id: Optional[str] = None
        self.my_slot: Optional[int] = None
        self.participants: Dict[str, RemoteParticipant] = {}
        self.presentations: Dict[str, PresentationRecord] = {}
        self.status = RoomStatus()
        self.pending_producers = deque()
        self.pending_presentations = deque()

    # ----- Snapshot and creation deltas -----

    async def apply_init(self, payload: dict) -> None:
        """
        Load the admission snapshot: own id and slot, roster, and every
        resource that already exists.
        """
        self.my_id = payload.get("conn_id")
        self.my_slot = payload.get("user_slot")
        for user in payload.get("roster", []):
            if user.get("conn_id") != self.my_id:
                self.participants[user["conn_id"]] = RemoteParticipant.from_payload(user)
        if "room_status" in payload:
            self.apply_room_status(payload["room_status"])
        for descriptor in payload.get("resources", []):
            if descriptor.get("is_screen"):
                self.pending_presentations.append(descriptor)
            else:
                self.pending_producers.append(descriptor)
        if self.ready:
            await self._drain()

    async def on_new_producer(self, descriptor: dict) -> None:
        if not self.ready:
            self.pending_producers.append(descriptor)
            return
        await self._dispatch(self._consume_producer, descriptor)

    async def on_new_presentation(self, descriptor: dict) -> None:
        if not self.ready:
            self.pending_presentations.append(descriptor)
            return
        await self._dispatch(self._consume_presentation, descriptor)

    async def mark_ready(self) -> None:
        """
        Flip to ready and drain the buffers, producers before presentations,
        each in arrival order.
        """
        self.ready = True
        logger.info(f"Device ready, draining {len(self.pending_producers)} producers "
                    f"and {len(self.pending_presentations)} presentations")
        await self._drain()

    async def _drain(self):
        while self.pending_producers:
            await self._dispatch(self._consume_producer, self.pending_producers.popleft())
        while self.pending_presentations:
            await self._dispatch(self._consume_presentation, self.pending_presentations.popleft())

    async def _dispatch(self, consume, descriptor):
        try:
            await consume(descriptor)
        except Exception as e:
            logger.error(f"Failed to consume {descriptor.get('id')}", exc_info=e)

    # ----- State deltas -----

    def apply_user_joined(self, payload: dict) -> RemoteParticipant:
        participant = RemoteParticipant.from_payload(payload)
        self.participants[participant.conn_id] = participant
        return participant

    def apply_user_updated(self, payload: dict) -> Optional[RemoteParticipant]:
        conn_id = payload.get("conn_id")
        if conn_id == self.my_id:
            return None
        participant = self.participants.get(conn_id)
        if participant is None:
            return self.apply_user_joined(payload)
        participant.name = payload.get("name") or participant.name
        if payload.get("user_slot") is not None:
            participant.user_slot = payload["user_slot"]
        return participant

    def apply_user_left(self, payload: dict) -> Optional[RemoteParticipant]:
        """
        Forget a departed participant, its presentations and anything of its
        still waiting in the buffers.
        """
        conn_id = payload.get("conn_id")
        self._drop_pending(lambda d: d.get("owner_id") == conn_id)
        for presentation_id in [p.presentation_id for p in self.presentations.values()
                                if p.owner_id == conn_id]:
            self.release_presentation(presentation_id)
        return self.participants.pop(conn_id, None)

    def apply_media_toggled(self, payload: dict) -> Optional[RemoteParticipant]:
        participant = self.participants.get(payload.get("conn_id"))
        if participant is None:
            return None
        enabled = bool(payload.get("enabled"))
        if payload.get("kind") == "video":
            participant.video_enabled = enabled
        elif payload.get("kind") == "audio":
            participant.audio_enabled = enabled
        return participant

    def apply_presentation_ended(self, payload: dict) -> None:
        producer_id = payload.get("producer_id")
        self._drop_pending(lambda d: d.get("id") == producer_id)
        if payload.get("presentation_id") == producer_id:
            self.release_presentation(producer_id)

    def apply_room_status(self, payload: dict) -> RoomStatus:
        self.status = RoomStatus(
            user_count=payload.get("user_count", 0),
            max_users=payload.get("max_users", 0),
            presentation_count=payload.get("presentation_count", 0),
            max_presentations=payload.get("max_presentations", 0),
        )
        return self.status

    def _drop_pending(self, predicate) -> None:
        for queue in (self.pending_producers, self.pending_presentations):
            kept = [d for d in queue if not predicate(d)]
            queue.clear()
            queue.extend(kept)

    # ----- Called by the consumption pipeline -----

    def ensure_participant(self, conn_id: str, name: str, user_slot: Optional[int]) -> RemoteParticipant:
        participant = self.participants.get(conn_id)
        if participant is None:
            participant = RemoteParticipant(conn_id=conn_id, name=name, user_slot=user_slot)
            self.participants[conn_id] = participant
        return participant

    def record_presentation(self, descriptor: dict) -> PresentationRecord:
        presentation_id = descriptor.get("presentation_id") or descriptor["id"]
        record = self.presentations.get(presentation_id)
        if record is None:
            record = PresentationRecord(
                presentation_id=presentation_id,
                owner_id=descriptor["owner_id"],
                owner_name=descriptor.get("owner_name") or "Unknown",
                slot=descriptor.get("presentation_slot"),
            )
            self.presentations[presentation_id] = record
        return record

    def release_presentation(self, presentation_id: str) -> Optional[PresentationRecord]:
        return self.presentations.pop(presentation_id, None)

    @property
    def occupied_presentation_slots(self):
        return sorted(p.slot for p in self.presentations.values() if p.slot is not None)
