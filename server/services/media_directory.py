# services/media_directory.py
"""
Directory of transports, producers and consumers and the participants owning them.

The synchronous `register_*` and `close_*` methods are the single-step
mutations: they validate, apply and broadcast without yielding. The async
methods wrap a media engine call and re-validate once it resumes, because the
room may have changed while the engine was working.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from server.services.errors import (
    Incompatible, InvalidRequest, NotFound, PresentationFull, RoomError, RoomFull
)
from server.services.messaging import build_message

logger = logging.getLogger(__name__)

DIRECTIONS = ("send", "recv")
SOURCES = ("camera", "screen")


@dataclass
class TransportRecord:
    id: str
    owner_id: str
    direction: str


@dataclass
class ProducerRecord:
    id: str
    owner_id: str
    kind: str
    source: str = "camera"
    transport_id: Optional[str] = None
    presentation_slot: Optional[int] = None
    # Screen video producer whose presentation slot this producer shows under.
    presentation_id: Optional[str] = None

    @property
    def is_screen(self) -> bool:
        return self.source == "screen"

    @property
    def holds_slot(self) -> bool:
        """True for the screen producer that owns its presentation slot."""
        return self.is_screen and self.presentation_id == self.id


@dataclass
class ConsumerRecord:
    id: str
    owner_id: str
    transport_id: str
    producer_id: str
    kind: str


class MediaResourceDirectory:
    """
    Authoritative map of media resources per owner.

    Screen producers are announced to every participant, the owner included, so
    the owner learns the canonical presentation slot. Camera producers are
    announced to everyone but the owner, who already renders its local track.
    """

    def __init__(self, engine, presentation_slots, registry) -> None:
        """
        Args:
            engine (MediaEngine): Media engine creating the underlying objects.
            presentation_slots (SlotAllocator): Pool of presentation slots.
            registry (RoomRegistry): Roster used for ownership checks and broadcasts.
        """
        self._engine = engine
        self._slots = presentation_slots
        self._registry = registry
        self._transports: Dict[str, TransportRecord] = {}
        self._producers: Dict[str, ProducerRecord] = {}
        self._consumers: Dict[str, ConsumerRecord] = {}
        registry.bind_directory(self)

    # ----- Queries -----

    @property
    def presentation_count(self) -> int:
        return self._slots.in_use

    @property
    def max_presentations(self) -> int:
        return self._slots.capacity

    @property
    def transport_count(self) -> int:
        return len(self._transports)

    @property
    def producer_count(self) -> int:
        return len(self._producers)

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    def transport(self, transport_id: str) -> Optional[TransportRecord]:
        return self._transports.get(transport_id)

    def producer(self, producer_id: str) -> Optional[ProducerRecord]:
        return self._producers.get(producer_id)

    def consumer(self, consumer_id: str) -> Optional[ConsumerRecord]:
        return self._consumers.get(consumer_id)

    def producers_of(self, owner_id: str) -> List[ProducerRecord]:
        return [p for p in self._producers.values() if p.owner_id == owner_id]

    def describe_producer(self, record: ProducerRecord) -> dict:
        owner = self._registry.get(record.owner_id)
        return {
            "id": record.id,
            "owner_id": record.owner_id,
            "kind": record.kind,
            "source": record.source,
            "is_screen": record.is_screen,
            "owner_name": owner.name if owner else "Unknown",
            "user_slot": owner.user_slot if owner else None,
            "presentation_slot": record.presentation_slot,
            "presentation_id": record.presentation_id,
        }

    def list_producers(self) -> List[dict]:
        return [self.describe_producer(p) for p in self._producers.values()]

    def _owned_transport(self, owner_id, transport_id, direction=None) -> TransportRecord:
        record = self._transports.get(transport_id)
        if record is None or record.owner_id != owner_id:
            raise NotFound(f"Transport {transport_id} not found.")
        if direction and record.direction != direction:
            raise InvalidRequest(f"Transport {transport_id} is not a {direction} transport.")
        return record

    def _active_presentation(self, owner_id) -> Optional[ProducerRecord]:
        for record in self._producers.values():
            if record.owner_id == owner_id and record.holds_slot and record.kind == "video":
                return record
        return None

    # ----- Single-step mutations -----

    def register_transport(self, transport_id: str, owner_id: str, direction: str) -> TransportRecord:
        """
        Record a transport created by the engine.

        Raises:
            InvalidRequest: If `direction` is neither send nor recv.
            NotFound: If the owner is no longer in the room.
        """
        if direction not in DIRECTIONS:
            raise InvalidRequest(f"Unknown transport direction {direction!r}.")
        self._registry.participant(owner_id)
        record = TransportRecord(id=transport_id, owner_id=owner_id, direction=direction)
        self._transports[transport_id] = record
        logger.info(f"Created {direction} transport {transport_id} for {owner_id}")
        return record

    def register_producer(self, producer_id: str, owner_id: str, kind: str, source: str = "camera",
                          transport_id: str = None) -> Optional[int]:
        """
        Record a producer and announce it.

        A screen video producer takes a presentation slot. A screen audio
        producer shows under the owner's current presentation and takes none.

        Args:
            producer_id (str): Engine id of the producer.
            owner_id (str): Connection that published it.
            kind (str): "audio" or "video".
            source (str): "camera" or "screen".
            transport_id (str, optional): Send transport it arrived on.

        Returns:
            Optional[int]: The presentation slot, or None for camera producers.

        Raises:
            PresentationFull: If a screen video producer finds no free slot.
                Neither the pool nor the directory is changed.
            NotFound: If the owner or the transport is gone.
            InvalidRequest: On bad kind/source, or screen audio without a
                screen video to attach to.
        """
        if kind not in ("audio", "video"):
            raise InvalidRequest(f"Unknown media kind {kind!r}.")
        if source not in SOURCES:
            raise InvalidRequest(f"Unknown producer source {source!r}.")
        self._registry.participant(owner_id)
        if transport_id is not None:
            self._owned_transport(owner_id, transport_id, "send")

        record = ProducerRecord(id=producer_id, owner_id=owner_id, kind=kind,
                                source=source, transport_id=transport_id)

        if source == "screen":
            if kind == "video":
                slot = self._slots.acquire()
                if slot is None:
                    raise PresentationFull(
                        f"Maximum {self.max_presentations} screen shares allowed.")
                record.presentation_slot = slot
                record.presentation_id = producer_id
            else:
                head = self._active_presentation(owner_id)
                if head is None:
                    raise InvalidRequest("Screen audio needs an active screen share.")
                record.presentation_slot = head.presentation_slot
                record.presentation_id = head.id

        self._producers[producer_id] = record

        if record.is_screen:
            logger.info(f"New screen {kind} from {owner_id}: {producer_id} (pr{record.presentation_slot})")
            self._registry.broadcast(build_message("new_presentation", payload=self.describe_producer(record)))
            self._registry.broadcast_room_status()
        else:
            logger.info(f"New {kind} producer from {owner_id}: {producer_id}")
            self._registry.broadcast(
                build_message("new_producer", payload=self.describe_producer(record)),
                exclude=owner_id,
            )
        return record.presentation_slot

    def register_consumer(self, consumer_id: str, owner_id: str, transport_id: str,
                          producer_id: str) -> ConsumerRecord:
        """
        Record a consumer created by the engine.

        Raises:
            NotFound: If the owner, its transport or the producer is gone.
        """
        self._registry.participant(owner_id)
        self._owned_transport(owner_id, transport_id, "recv")
        producer = self._producers.get(producer_id)
        if producer is None:
            raise NotFound(f"Producer {producer_id} not found.")
        record = ConsumerRecord(id=consumer_id, owner_id=owner_id, transport_id=transport_id,
                                producer_id=producer_id, kind=producer.kind)
        self._consumers[consumer_id] = record
        return record

    def close_producers(self, producer_ids) -> list:
        """
        Remove producers, every consumer reading them, and announce ended
        presentations.

        All presentation slots are returned to the pool before any
        `presentation_ended` delta is broadcast, so a share started in reaction
        to the delta can reuse the index.

        Returns:
            list: Removed producer and consumer records.
        """
        producer_ids = list(producer_ids)
        # a presentation's audio goes with its video
        for record in self._producers.values():
            if record.is_screen and record.presentation_id in producer_ids and record.id not in producer_ids:
                producer_ids.append(record.id)

        removed = []
        ended = []
        for producer_id in producer_ids:
            record = self._producers.pop(producer_id, None)
            if record is None:
                continue
            removed.append(record)
            if record.holds_slot:
                self._slots.release(record.presentation_slot)
            if record.is_screen:
                ended.append(record)
            for consumer in [c for c in self._consumers.values() if c.producer_id == producer_id]:
                del self._consumers[consumer.id]
                removed.append(consumer)

        for record in ended:
            self._registry.broadcast(build_message(
                "presentation_ended",
                payload={"producer_id": record.id, "owner_id": record.owner_id,
                         "presentation_id": record.presentation_id},
            ))
        if ended:
            self._registry.broadcast_room_status()
        return removed

    def stop_screen_share(self, owner_id: str) -> list:
        """
        Close only the owner's screen producers; camera media keeps flowing.

        Returns:
            list: Removed records, empty when the owner was not sharing.
        """
        ids = [p.id for p in self._producers.values() if p.owner_id == owner_id and p.is_screen]
        removed = self.close_producers(ids)
        logger.info(f"Stopped {len(ids)} screen producers for {owner_id}, "
                    f"{self.presentation_count} screen shares active")
        return removed

    def close_transport(self, owner_id: str, transport_id: str) -> list:
        """
        Remove one of the owner's transports along with the producers
        published on it and the consumers reading through it.

        Returns:
            list: Removed records whose engine objects still need closing.

        Raises:
            NotFound: If the transport is unknown or owned by someone else.
        """
        self._owned_transport(owner_id, transport_id)
        removed = self.close_producers(
            [p.id for p in self._producers.values() if p.transport_id == transport_id])

        for consumer in [c for c in self._consumers.values() if c.transport_id == transport_id]:
            del self._consumers[consumer.id]
            removed.append(consumer)
        removed.append(self._transports.pop(transport_id))
        logger.info(f"Closed transport {transport_id} for {owner_id}, "
                    f"{self.transport_count} transports open")
        return removed

    def close_all_for(self, owner_id: str) -> list:
        """
        Remove every transport, producer and consumer owned by `owner_id`.

        Returns:
            list: Removed records whose engine objects still need closing.
        """
        removed = self.close_producers([p.id for p in self.producers_of(owner_id)])

        for consumer in [c for c in self._consumers.values() if c.owner_id == owner_id]:
            del self._consumers[consumer.id]
            removed.append(consumer)
        for transport in [t for t in self._transports.values() if t.owner_id == owner_id]:
            del self._transports[transport.id]
            removed.append(transport)
        return removed

    def reset(self) -> None:
        self._transports.clear()
        self._producers.clear()
        self._consumers.clear()
        self._slots.reset()

    # ----- Engine-backed operations -----

    async def create_transport(self, owner_id: str, direction: str) -> dict:
        """
        Create a transport for an admitted participant.

        Returns:
            dict: Engine transport descriptor (includes `id`).

        Raises:
            RoomFull: If the connection holds no user slot.
            InvalidRequest: On an unknown direction.
        """
        if direction not in DIRECTIONS:
            raise InvalidRequest(f"Unknown transport direction {direction!r}.")
        if owner_id not in self._registry:
            raise RoomFull(f"Room is full. Maximum {self._registry.max_users} users allowed.")

        descriptor = await self._engine.create_transport(direction)

        if owner_id not in self._registry:
            await self._engine.close_transport(descriptor["id"])
            raise RoomFull("Participant left while its transport was created.")
        self.register_transport(descriptor["id"], owner_id, direction)
        return descriptor

    async def connect_transport(self, owner_id: str, transport_id: str, params: dict) -> dict:
        """
        Pass the client's handshake parameters to the engine.

        Returns:
            dict: The engine's handshake answer, empty when there is none.

        Raises:
            NotFound: If the transport is unknown or owned by someone else.
        """
        self._owned_transport(owner_id, transport_id)
        result = await self._engine.connect_transport(transport_id, params or {})
        return result or {}

    async def create_producer(self, owner_id: str, transport_id: str, kind: str, source: str,
                              params: dict) -> dict:
        """
        Publish a track on a send transport.

        Presentation capacity is checked before the engine call and again
        when the producer exists, since another share may have taken the last
        slot meanwhile. A producer that fails the second check is closed.

        Returns:
            dict: `{id, presentation_slot}`.

        Raises:
            PresentationFull, NotFound, InvalidRequest, NegotiationTimeout
        """
        source = source or "camera"
        if source not in SOURCES:
            raise InvalidRequest(f"Unknown producer source {source!r}.")
        self._owned_transport(owner_id, transport_id, "send")
        if source == "screen":
            if kind == "video" and self._slots.exhausted:
                raise PresentationFull(f"Maximum {self.max_presentations} screen shares allowed.")
            if kind == "audio" and self._active_presentation(owner_id) is None:
                raise InvalidRequest("Screen audio needs an active screen share.")

        producer_id = await self._engine.produce(transport_id, kind, params or {})

        try:
            slot = self.register_producer(producer_id, owner_id, kind, source, transport_id)
        except RoomError:
            await self._engine.close_producer(producer_id)
            raise
        return {"id": producer_id, "presentation_slot": slot}

    async def consume(self, owner_id: str, transport_id: str, producer_id: str,
                      receiver_caps: dict) -> dict:
        """
        Create a consumer of `producer_id` on the owner's receive transport.

        Returns:
            dict: Consumer descriptor `{id, producer_id, kind, rtp_parameters, ...}`.

        Raises:
            NotFound: If the transport or producer is unknown, or the producer
                closed while the consumer was being created.
            Incompatible: If the receiver capabilities cannot decode the producer.
        """
        self._owned_transport(owner_id, transport_id, "recv")
        if producer_id not in self._producers:
            raise NotFound(f"Producer {producer_id} not found.")
        if not self._engine.can_consume(producer_id, receiver_caps or {}):
            raise Incompatible(f"Cannot consume producer {producer_id}.")

        descriptor = await self._engine.consume(transport_id, producer_id, receiver_caps or {})

        try:
            self.register_consumer(descriptor["id"], owner_id, transport_id, producer_id)
        except RoomError:
            await self._engine.close_consumer(descriptor["id"])
            raise
        return descriptor

    async def dispose(self, records) -> None:
        """
        Close the engine objects behind removed records, consumers first.

        Failures are logged; the directory is already consistent.
        """
        order = {ConsumerRecord: 0, ProducerRecord: 1, TransportRecord: 2}
        for record in sorted(records, key=lambda r: order.get(type(r), 3)):
            try:
                if isinstance(record, ConsumerRecord):
                    await self._engine.close_consumer(record.id)
                elif isinstance(record, ProducerRecord):
                    await self._engine.close_producer(record.id)
                elif isinstance(record, TransportRecord):
                    await self._engine.close_transport(record.id)
            except Exception as e:
                logger.error(f"Failed to close {type(record).__name__} {record.id}", exc_info=e)
